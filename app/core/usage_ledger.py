"""
Usage Ledger - per-user token accounting
=========================================

Gates paid provider calls:
- ``reserve``: holds the estimate against the budget before the call
- ``commit``: releases the hold and deducts actual usage after the call
- ``release``: drops a hold when the call never completed

Every mutation runs under the per-user ledger lock, so concurrent requests
see each other's holds. One ledger document per (user, day). Within a period
``tokens_used`` only grows and ``remaining`` never drops below zero. A new
period starts from zero.

Also hosts ``L1RateLimiter``: sliding-window request caps for the expensive
L1 tier (3/minute, 15/hour, 50/day by default).
"""
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Optional
import logging

from app.core.keyed_lock import KeyedLock
from app.core.types import Tier
from app.memory.stores import KeyedStore

logger = logging.getLogger(__name__)


@dataclass
class UsageLedgerEntry:
    user_id: str
    period: str
    token_limit: int
    tokens_used: int = 0
    reserved_tokens: int = 0
    request_count: int = 0
    free_tier_requests: int = 0
    tier: Optional[str] = None
    provider: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.token_limit - self.tokens_used - self.reserved_tokens)

    @property
    def is_at_limit(self) -> bool:
        return self.tokens_used >= self.token_limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "period": self.period,
            "token_limit": self.token_limit,
            "tokens_used": self.tokens_used,
            "reserved_tokens": self.reserved_tokens,
            "request_count": self.request_count,
            "free_tier_requests": self.free_tier_requests,
            "tier": self.tier,
            "provider": self.provider,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLedgerEntry":
        return cls(
            user_id=data["user_id"],
            period=data["period"],
            token_limit=data["token_limit"],
            tokens_used=data.get("tokens_used", 0),
            reserved_tokens=data.get("reserved_tokens", 0),
            request_count=data.get("request_count", 0),
            free_tier_requests=data.get("free_tier_requests", 0),
            tier=data.get("tier"),
            provider=data.get("provider"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Reservation:
    """Result of the pre-call budget check."""
    estimated_tokens: int
    remaining: int
    # Tokens held against the budget until commit/release (0 when degraded)
    held_tokens: int = 0

    @property
    def force_free_tier(self) -> bool:
        return self.remaining < self.estimated_tokens


class UsageLedger:
    """
    Usage:
        ledger = UsageLedger(store, daily_token_limit=50_000)
        reservation = await ledger.reserve(user_id, estimate.total)
        if reservation.force_free_tier: ...
        try:
            ... provider call ...
        except ProviderError:
            await ledger.release(user_id, reservation.held_tokens)
            raise
        await ledger.commit(user_id, usage.total, Tier.L2, "gemini",
                            reserved_tokens=reservation.held_tokens)
    """

    def __init__(
        self,
        store: KeyedStore,
        daily_token_limit: int = 50_000,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.daily_token_limit = daily_token_limit
        self.locks = locks or KeyedLock()
        self.clock = clock

        # Per-user limit overrides (e.g. premium users)
        self._limits: Dict[str, int] = {}

    def period_for(self, when: Optional[datetime] = None) -> str:
        return (when or self.clock()).strftime("%Y-%m-%d")

    def _key(self, user_id: str, period: str) -> str:
        return f"{user_id}:{period}"

    def limit_for(self, user_id: str) -> int:
        return self._limits.get(user_id, self.daily_token_limit)

    def set_token_limit(self, user_id: str, limit: int) -> None:
        self._limits[user_id] = max(0, limit)

    async def get_entry(self, user_id: str) -> UsageLedgerEntry:
        """Current period's entry (a zeroed one when nothing is recorded yet)."""
        period = self.period_for()
        doc = await self.store.get(self._key(user_id, period))
        if doc:
            entry = UsageLedgerEntry.from_dict(doc)
            entry.token_limit = self.limit_for(user_id)
            return entry
        return UsageLedgerEntry(
            user_id=user_id,
            period=period,
            token_limit=self.limit_for(user_id),
        )

    async def _save(self, entry: UsageLedgerEntry) -> None:
        entry.updated_at = self.clock()
        await self.store.put(self._key(entry.user_id, entry.period), entry.to_dict())

    async def remaining(self, user_id: str) -> int:
        return (await self.get_entry(user_id)).remaining

    async def reserve(self, user_id: str, estimated_tokens: int) -> Reservation:
        """
        Pre-call check. Never rejects; the caller degrades to the free tier.

        When the estimate fits, it is held against the budget so concurrent
        requests cannot spend the same tokens twice.
        """
        estimated_tokens = max(0, int(estimated_tokens))
        async with self.locks.hold(f"ledger:{user_id}"):
            entry = await self.get_entry(user_id)
            reservation = Reservation(estimated_tokens=estimated_tokens, remaining=entry.remaining)
            if not reservation.force_free_tier and estimated_tokens:
                entry.reserved_tokens += estimated_tokens
                reservation.held_tokens = estimated_tokens
                await self._save(entry)

        if reservation.force_free_tier:
            logger.info(
                f"💸 Budget exhausted for {user_id}: remaining={reservation.remaining}, "
                f"estimate={estimated_tokens} -> free tier"
            )
        return reservation

    async def release(self, user_id: str, reserved_tokens: int) -> None:
        """Drop a hold whose call never completed."""
        if reserved_tokens <= 0:
            return
        async with self.locks.hold(f"ledger:{user_id}"):
            entry = await self.get_entry(user_id)
            entry.reserved_tokens = max(0, entry.reserved_tokens - reserved_tokens)
            await self._save(entry)

    async def commit(
        self,
        user_id: str,
        tokens: int,
        tier: Tier,
        provider: str,
        free_tier: bool = False,
        reserved_tokens: int = 0
    ) -> UsageLedgerEntry:
        """
        Record actual usage after a call and release its hold.

        Free-tier calls count as requests but do not deduct tokens.
        """
        async with self.locks.hold(f"ledger:{user_id}"):
            entry = await self.get_entry(user_id)
            entry.reserved_tokens = max(0, entry.reserved_tokens - max(0, reserved_tokens))
            if not free_tier:
                entry.tokens_used += max(0, int(tokens))
            else:
                entry.free_tier_requests += 1
            entry.request_count += 1
            entry.tier = tier.value
            entry.provider = provider
            await self._save(entry)

        logger.debug(
            f"Ledger {user_id} [{entry.period}]: {entry.tokens_used}/{entry.token_limit} "
            f"(+{0 if free_tier else tokens}, {provider})"
        )
        return entry

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        entry = await self.get_entry(user_id)
        return {
            "period": entry.period,
            "daily_used": entry.tokens_used,
            "daily_reserved": entry.reserved_tokens,
            "daily_limit": entry.token_limit,
            "daily_remaining": entry.remaining,
            "request_count": entry.request_count,
            "free_tier_requests": entry.free_tier_requests,
            "is_at_limit": entry.is_at_limit,
            "should_fallback_to_free": entry.is_at_limit,
        }


# =============================================================================
# L1 RATE LIMITER
# =============================================================================

@dataclass
class RateLimitInfo:
    blocked: bool
    remaining: int
    reset_in_seconds: float = 0.0
    window: Optional[str] = None


class L1RateLimiter:
    """
    Sliding-window caps on L1 requests per user.

    Process-local (like a cache-backed limiter); a blocked user is
    downgraded to L2 by the routing engine rather than refused.
    """

    def __init__(
        self,
        per_minute: int = 3,
        per_hour: int = 15,
        per_day: int = 50,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.windows = (
            ("minute", timedelta(minutes=1), per_minute),
            ("hour", timedelta(hours=1), per_hour),
            ("day", timedelta(days=1), per_day),
        )
        self.clock = clock
        self._lock = threading.RLock()
        self._requests: Dict[str, Deque[datetime]] = {}

    def _prune(self, user_id: str, now: datetime) -> Deque[datetime]:
        history = self._requests.get(user_id)
        if history is None:
            return deque()
        horizon = now - self.windows[-1][1]
        while history and history[0] <= horizon:
            history.popleft()
        if not history:
            del self._requests[user_id]
        return history

    def check(self, user_id: str) -> RateLimitInfo:
        with self._lock:
            now = self.clock()
            history = self._prune(user_id, now)
            remaining = None
            for name, span, limit in self.windows:
                in_window = [t for t in history if t > now - span]
                if len(in_window) >= limit:
                    reset = (in_window[0] + span - now).total_seconds()
                    logger.warning(
                        f"L1 rate limit ({name}) hit for {user_id}, resets in {reset:.0f}s"
                    )
                    return RateLimitInfo(
                        blocked=True, remaining=0, reset_in_seconds=max(0.0, reset), window=name
                    )
                left = limit - len(in_window)
                remaining = left if remaining is None else min(remaining, left)
            return RateLimitInfo(blocked=False, remaining=remaining or 0)

    def record(self, user_id: str) -> None:
        with self._lock:
            now = self.clock()
            self._prune(user_id, now)
            self._requests.setdefault(user_id, deque()).append(now)

    def reset(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._requests.clear()
            else:
                self._requests.pop(user_id, None)

    def cleanup(self) -> int:
        """Drop users with no request inside the longest window."""
        with self._lock:
            now = self.clock()
            before = len(self._requests)
            for user_id in list(self._requests):
                self._prune(user_id, now)
            return before - len(self._requests)

    def __len__(self) -> int:
        return len(self._requests)
