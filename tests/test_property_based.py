"""
בדיקות property-based עם hypothesis.

בודקים אינווריאנטים על:
1. היסטוריית שיחה — תקרה, ללא שני תורות user ברצף
2. RateLimiter — לעולם לא מאשר יותר מהמכסה בחלון
3. פירוק פרטי לקוח — לא נכשל על קלט אקראי
4. נרמול טקסט — אידמפוטנטי
"""
import pytest
from hypothesis import HealthCheck, given, settings as h_settings
from hypothesis.strategies import (
    composite,
    floats,
    integers,
    lists,
    sampled_from,
    text,
    tuples,
)

from app.core.rate_limiter import RateLimiter
from app.domain.services.conversation_history import ConversationHistory
from app.state_machine.intents import normalize_text
from app.state_machine.order_flow import parse_customer_details


# ============================================================================
# אסטרטגיות (strategies)
# ============================================================================

TURNS = lists(
    tuples(sampled_from(["user", "assistant"]), text(min_size=1, max_size=30)),
    max_size=60,
)

CUSTOMER_TEXT = text(
    alphabet=sampled_from(list("abcdeéאבגد ,;\n@.0123456789")),
    max_size=120,
)


# fixture ה-autouse של איפוס circuit breakers הוא function-scoped
_FIXTURES_OK = [HealthCheck.function_scoped_fixture]


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@composite
def message_bursts(draw):
    """(שולח, הפרש זמן) — עד שלושה שולחים, צעדי זמן קטנים"""
    return draw(lists(
        tuples(sampled_from(["a@c.us", "b@c.us", "c@c.us"]), floats(min_value=0, max_value=5)),
        min_size=1,
        max_size=80,
    ))


# ============================================================================
# היסטוריה
# ============================================================================

class TestHistoryProperties:
    @pytest.mark.unit
    @h_settings(suppress_health_check=_FIXTURES_OK)
    @given(turns=TURNS, cap=integers(min_value=2, max_value=10))
    def test_cap_and_no_consecutive_user(self, turns, cap):
        history = ConversationHistory(max_messages=cap)
        for role, content in turns:
            history.append("s_c", role, content)

        stored = history.get("s_c")
        assert len(stored) <= cap
        for previous, current in zip(stored, stored[1:]):
            assert not (previous["role"] == "user" and current["role"] == "user")

    @pytest.mark.unit
    @h_settings(suppress_health_check=_FIXTURES_OK)
    @given(turns=TURNS)
    def test_last_turn_kept(self, turns):
        history = ConversationHistory(max_messages=20)
        for role, content in turns:
            history.append("s_c", role, content)

        if turns:
            assert history.get("s_c")[-1]["content"] == turns[-1][1]


# ============================================================================
# RateLimiter
# ============================================================================

class TestRateLimiterProperties:
    @pytest.mark.unit
    @h_settings(max_examples=50, suppress_health_check=_FIXTURES_OK)
    @given(bursts=message_bursts(), limit=integers(min_value=1, max_value=5))
    def test_per_sender_never_exceeds_limit(self, bursts, limit):
        clock = _Clock()
        window = 60.0
        limiter = RateLimiter(
            per_sender_requests=limit,
            per_sender_window_seconds=window,
            block_seconds=window,
            global_requests=10_000,
            clock=clock,
        )
        admitted: dict[str, list[float]] = {}

        for sender, step in bursts:
            clock.now += step
            if limiter.check_limit(sender).allowed:
                admitted.setdefault(sender, []).append(clock.now)

        # פרק זמן באורך חלון חוצה לכל היותר שני חלונות קבועים
        for times in admitted.values():
            for i, start in enumerate(times):
                in_window = [t for t in times[i:] if t < start + window]
                assert len(in_window) <= 2 * limit

    @pytest.mark.unit
    @h_settings(max_examples=50, suppress_health_check=_FIXTURES_OK)
    @given(count=integers(min_value=1, max_value=200), limit=integers(min_value=1, max_value=50))
    def test_global_window_admits_exactly_limit(self, count, limit):
        limiter = RateLimiter(
            per_sender_requests=1_000,
            global_requests=limit,
            clock=_Clock(),
        )

        allowed = sum(limiter.check_limit(f"{i % 7}@c.us").allowed for i in range(count))

        assert allowed == min(count, limit)

    @pytest.mark.unit
    @h_settings(suppress_health_check=_FIXTURES_OK)
    @given(bursts=message_bursts())
    def test_rejections_carry_retry_after(self, bursts):
        clock = _Clock()
        limiter = RateLimiter(per_sender_requests=2, block_seconds=30, clock=clock)

        for sender, step in bursts:
            clock.now += step
            decision = limiter.check_limit(sender)
            if not decision.allowed:
                assert decision.retry_after_seconds > 0
                assert decision.reason


# ============================================================================
# טקסט חופשי
# ============================================================================

class TestTextProperties:
    @pytest.mark.unit
    @h_settings(suppress_health_check=_FIXTURES_OK)
    @given(value=CUSTOMER_TEXT)
    def test_parse_never_fails(self, value):
        details = parse_customer_details(value)
        if details.name is not None:
            assert details.name.strip()

    @pytest.mark.unit
    @h_settings(suppress_health_check=_FIXTURES_OK)
    @given(value=text(alphabet=sampled_from(list("abcABCéÉàçÇ \tאבגد")), max_size=80))
    def test_normalize_idempotent(self, value):
        once = normalize_text(value)
        assert normalize_text(once) == once
