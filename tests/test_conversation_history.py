"""
Tests for ConversationHistory and KeyedLock
"""
import asyncio

import pytest

from app.core.keyed_lock import KeyedLock
from app.domain.services.conversation_history import ConversationHistory, conversation_key


class TestConversationHistory:
    @pytest.mark.unit
    def test_conversation_key(self):
        assert conversation_key("shop1", "331@c.us") == "shop1_331@c.us"

    @pytest.mark.unit
    def test_append_and_get_in_order(self):
        history = ConversationHistory(max_messages=8)
        history.append_user("c1", "hi")
        history.append_assistant("c1", "hello")

        assert history.get("c1") == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    @pytest.mark.unit
    def test_cap_evicts_oldest(self):
        history = ConversationHistory(max_messages=4)
        for i in range(5):
            history.append_user("c1", f"q{i}")
            history.append_assistant("c1", f"a{i}")

        messages = history.get("c1")
        assert len(messages) == 4
        assert messages[0] == {"role": "user", "content": "q3"}
        assert messages[-1] == {"role": "assistant", "content": "a4"}

    @pytest.mark.unit
    def test_no_consecutive_user_turns(self):
        """תור משתמש שלא נענה מוחלף בבא אחריו"""
        history = ConversationHistory()
        history.append_user("c1", "first")
        history.append_user("c1", "second")

        assert history.get("c1") == [{"role": "user", "content": "second"}]

    @pytest.mark.unit
    def test_discard_trailing_user(self):
        history = ConversationHistory()
        history.append_user("c1", "q")
        history.append_assistant("c1", "a")
        history.append_user("c1", "pending")

        assert history.discard_trailing_user("c1") is True
        assert history.get("c1")[-1]["role"] == "assistant"
        assert history.discard_trailing_user("c1") is False

    @pytest.mark.unit
    def test_discard_last_turn_removes_empty_conversation(self):
        history = ConversationHistory()
        history.append_user("c1", "q")
        history.discard_trailing_user("c1")

        assert "c1" not in history
        assert history.get("c1") == []

    @pytest.mark.unit
    def test_get_returns_copies(self):
        history = ConversationHistory()
        history.append_user("c1", "q")
        history.get("c1")[0]["content"] = "mutated"

        assert history.get("c1")[0]["content"] == "q"

    @pytest.mark.unit
    def test_last_assistant_message(self):
        history = ConversationHistory()
        assert history.last_assistant_message("c1") is None
        history.append_user("c1", "q")
        history.append_assistant("c1", "T-shirt is 20 EUR")
        history.append_user("c1", "I want it")

        assert history.last_assistant_message("c1") == "T-shirt is 20 EUR"

    @pytest.mark.unit
    def test_clear_prefix_drops_whole_session(self):
        history = ConversationHistory()
        history.append_user("shop1_a", "q")
        history.append_user("shop1_b", "q")
        history.append_user("shop2_a", "q")

        assert history.clear_prefix("shop1_") == 2
        assert len(history) == 1

    @pytest.mark.unit
    def test_cap_below_two_rejected(self):
        with pytest.raises(ValueError):
            ConversationHistory(max_messages=1)


class TestKeyedLock:
    @pytest.mark.unit
    async def test_same_key_serialized(self):
        lock = KeyedLock()
        order: list[str] = []

        async def worker(name: str):
            async with lock.acquire(("s1", "c1")):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.unit
    async def test_different_keys_run_in_parallel(self):
        lock = KeyedLock()
        both_inside = asyncio.Event()
        inside = 0

        async def worker(key):
            nonlocal inside
            async with lock.acquire(key):
                inside += 1
                if inside == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(worker("a"), worker("b"))
        assert both_inside.is_set()

    @pytest.mark.unit
    async def test_entries_dropped_when_released(self):
        lock = KeyedLock()
        async with lock.acquire("k"):
            assert lock.locked("k")
            assert len(lock) == 1

        assert len(lock) == 0
        assert not lock.locked("k")

    @pytest.mark.unit
    async def test_entry_released_on_error(self):
        lock = KeyedLock()
        with pytest.raises(RuntimeError):
            async with lock.acquire("k"):
                raise RuntimeError("boom")

        assert len(lock) == 0
