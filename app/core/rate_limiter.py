"""
Rate Limiter — admission control להודעות נכנסות.

שני חלונות קבועים (fixed window):
- לכל שולח: מונה + זמן איפוס. חריגה חוסמת את השולח לזמן קבוע (ארוך מהחלון).
- גלובלי: מונה אחד לכל המערכת. חריגה דוחה את כולם — המערכת בעומס.

Per-sender entries live in lock-sharded maps; the global window has its own
lock. A global slot is reserved first and released again when the sender
itself is rejected, so rejected messages never consume global capacity.
"""
import math
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Callable

from app.core.config import settings
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator

logger = get_logger(__name__)

GLOBAL_LIMIT_REASON = "Global rate limit exceeded. System is at capacity."


@dataclass
class RateLimitDecision:
    """Outcome of a single admission check"""
    allowed: bool
    retry_after_seconds: int = 0
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "retryAfter": self.retry_after_seconds,
            "reason": self.reason,
        }


@dataclass
class _SenderWindow:
    count: int
    reset_at: float
    blocked_until: float = 0.0


@dataclass
class _GlobalWindow:
    count: int = 0
    reset_at: float = 0.0


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, _SenderWindow] = {}


def _ceil_seconds(value: float) -> int:
    return max(1, math.ceil(value))


class RateLimiter:
    """Per-sender and global fixed-window admission control."""

    def __init__(
        self,
        per_sender_requests: int = settings.RATE_LIMIT_PER_SENDER_REQUESTS,
        per_sender_window_seconds: float = settings.RATE_LIMIT_PER_SENDER_WINDOW_SECONDS,
        block_seconds: float = settings.RATE_LIMIT_BLOCK_SECONDS,
        global_requests: int = settings.RATE_LIMIT_GLOBAL_REQUESTS,
        global_window_seconds: float = settings.RATE_LIMIT_GLOBAL_WINDOW_SECONDS,
        *,
        shard_count: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if per_sender_requests < 1 or global_requests < 1:
            raise ValueError("rate limit thresholds must be at least 1")
        self.per_sender_requests = per_sender_requests
        self.per_sender_window_seconds = per_sender_window_seconds
        self.block_seconds = block_seconds
        self.global_requests = global_requests
        self.global_window_seconds = global_window_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(shard_count)]
        self._global = _GlobalWindow()
        self._global_lock = threading.Lock()

    def _shard_for(self, sender_id: str) -> _Shard:
        return self._shards[zlib.crc32(sender_id.encode("utf-8")) % len(self._shards)]

    @property
    def block_reason(self) -> str:
        minutes = _ceil_seconds(self.block_seconds / 60)
        unit = "minute" if minutes == 1 else "minutes"
        return f"Too many messages. Please wait {minutes} {unit}."

    # ── global window ──

    def _reserve_global(self, now: float) -> RateLimitDecision | None:
        with self._global_lock:
            if now >= self._global.reset_at:
                self._global.count = 0
                self._global.reset_at = now + self.global_window_seconds
            if self._global.count >= self.global_requests:
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=_ceil_seconds(self._global.reset_at - now),
                    reason=GLOBAL_LIMIT_REASON,
                )
            self._global.count += 1
            return None

    def _release_global(self) -> None:
        with self._global_lock:
            if self._global.count > 0:
                self._global.count -= 1

    # ── public API ──

    def check_limit(self, sender_id: str) -> RateLimitDecision:
        """
        Admit or reject one message from ``sender_id``.

        Returns:
            RateLimitDecision — ``retry_after_seconds`` is positive on rejection.
        """
        now = self._clock()

        rejected = self._reserve_global(now)
        if rejected is not None:
            logger.warning(
                "Global rate limit exceeded",
                extra_data={"limit": self.global_requests, "retry_after": rejected.retry_after_seconds},
            )
            return rejected

        shard = self._shard_for(sender_id)
        with shard.lock:
            entry = shard.entries.get(sender_id)

            if entry is not None and entry.blocked_until:
                if now < entry.blocked_until:
                    decision = RateLimitDecision(
                        allowed=False,
                        retry_after_seconds=_ceil_seconds(entry.blocked_until - now),
                        reason=self.block_reason,
                    )
                    self._release_global()
                    return decision
                # החסימה הסתיימה — מתחילים חלון נקי
                entry = None

            if entry is None or now >= entry.reset_at:
                entry = _SenderWindow(count=0, reset_at=now + self.per_sender_window_seconds)
                shard.entries[sender_id] = entry

            if entry.count >= self.per_sender_requests:
                entry.blocked_until = now + self.block_seconds
                self._release_global()
                logger.warning(
                    "Sender blocked by rate limiter",
                    extra_data={
                        "sender": PhoneNumberValidator.mask(sender_id),
                        "limit": self.per_sender_requests,
                        "block_seconds": self.block_seconds,
                    },
                )
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=_ceil_seconds(self.block_seconds),
                    reason=self.block_reason,
                )

            entry.count += 1
            return RateLimitDecision(allowed=True)

    def cleanup(self) -> int:
        """Evict expired, unblocked windows and lapsed blocks. Returns evicted count."""
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [
                    sender_id
                    for sender_id, entry in shard.entries.items()
                    if (entry.blocked_until and now >= entry.blocked_until)
                    or (not entry.blocked_until and now >= entry.reset_at)
                ]
                for sender_id in stale:
                    del shard.entries[sender_id]
                removed += len(stale)

        if removed:
            logger.debug("Rate limiter cleanup", extra_data={"removed": removed})
        return removed

    def reset_sender(self, sender_id: str) -> bool:
        """Forget a sender's window and block. Returns True if one existed."""
        shard = self._shard_for(sender_id)
        with shard.lock:
            return shard.entries.pop(sender_id, None) is not None

    def get_stats(self) -> dict:
        now = self._clock()
        tracked = 0
        blocked = 0
        for shard in self._shards:
            with shard.lock:
                tracked += len(shard.entries)
                blocked += sum(1 for e in shard.entries.values() if e.blocked_until > now)
        with self._global_lock:
            global_count = self._global.count if now < self._global.reset_at else 0

        return {
            "tracked_senders": tracked,
            "blocked_senders": blocked,
            "global_count": global_count,
            "global_limit": self.global_requests,
            "per_sender_limit": self.per_sender_requests,
            "per_sender_window_seconds": self.per_sender_window_seconds,
            "block_seconds": self.block_seconds,
        }
