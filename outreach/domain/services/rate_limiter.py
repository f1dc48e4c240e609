"""
Rate Limiter
Per-tenant hourly quota and concurrency gate for outbound dispatch
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Optional

from outreach.domain.errors import RateLimitDeferred
from outreach.domain.models.lead import utc_now

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=1)


@dataclass
class RateWindow:
    """Fixed counting window for one tenant."""
    count: int
    window_start: datetime


@dataclass
class TenantQuotaState:
    """Mutable quota state for one tenant, guarded by its own lock."""
    window: RateWindow
    hourly_limit: int
    max_concurrent: int
    in_flight: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter:
    """
    Gates outbound dispatch per tenant.

    Two checks are applied together:
    1. Hourly quota - at most ``hourly_limit`` acquisitions per fixed window
    2. Concurrency gate - at most ``max_concurrent`` dispatches in flight

    Both are evaluated and consumed under the tenant's lock, so two callers
    can never both observe capacity for the same marginal unit. Tenants never
    share a lock. The lock is released before the caller does any I/O.

    A consumed quota unit is not refunded when the dispatch later fails.
    """

    def __init__(
        self,
        hourly_limit: int = 60,
        max_concurrent: int = 5,
        window: timedelta = DEFAULT_WINDOW,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.default_hourly_limit = hourly_limit
        self.default_max_concurrent = max_concurrent
        self.window_length = window
        self._clock = clock or utc_now
        self._tenants: Dict[str, TenantQuotaState] = {}

    def _state(self, tenant_id: str) -> TenantQuotaState:
        # No await between lookup and insert, so creation is atomic on the loop
        state = self._tenants.get(tenant_id)
        if state is None:
            state = TenantQuotaState(
                window=RateWindow(count=0, window_start=self._clock()),
                hourly_limit=self.default_hourly_limit,
                max_concurrent=self.default_max_concurrent,
            )
            self._tenants[tenant_id] = state
        return state

    def configure_tenant(
        self,
        tenant_id: str,
        hourly_limit: Optional[int] = None,
        max_concurrent: Optional[int] = None
    ) -> None:
        """Apply tenant quotas. None keeps the global default."""
        state = self._state(tenant_id)
        state.hourly_limit = self.default_hourly_limit if hourly_limit is None else hourly_limit
        state.max_concurrent = self.default_max_concurrent if max_concurrent is None else max_concurrent

    def _reset_window_if_elapsed(self, state: TenantQuotaState, now: datetime) -> None:
        if now - state.window.window_start >= self.window_length:
            state.window.count = 0
            state.window.window_start = now

    async def try_acquire(self, tenant_id: str) -> bool:
        """
        Try to take one quota unit and one concurrency slot.

        Returns:
            True if both were taken. False leaves all counters untouched;
            callers should defer, not retry immediately.
        """
        state = self._state(tenant_id)
        async with state.lock:
            self._reset_window_if_elapsed(state, self._clock())

            if state.window.count >= state.hourly_limit:
                logger.debug(
                    f"Hourly quota reached for tenant {tenant_id}: "
                    f"{state.window.count}/{state.hourly_limit}"
                )
                return False

            if state.in_flight >= state.max_concurrent:
                logger.debug(
                    f"Concurrency gate full for tenant {tenant_id}: "
                    f"{state.in_flight}/{state.max_concurrent}"
                )
                return False

            state.window.count += 1
            state.in_flight += 1
            return True

    async def release(self, tenant_id: str) -> None:
        """Return a concurrency slot. The quota unit stays consumed."""
        state = self._state(tenant_id)
        async with state.lock:
            if state.in_flight > 0:
                state.in_flight -= 1

    @asynccontextmanager
    async def acquire(self, tenant_id: str) -> AsyncIterator[None]:
        """
        Hold a dispatch slot for the duration of the block.

        Raises:
            RateLimitDeferred: if the tenant has no quota or slot available
        """
        if not await self.try_acquire(tenant_id):
            raise RateLimitDeferred()
        try:
            yield
        finally:
            await self.release(tenant_id)

    def available_slots(self, tenant_id: str) -> int:
        """Free concurrency slots (advisory; not a reservation)."""
        state = self._state(tenant_id)
        return max(0, state.max_concurrent - state.in_flight)

    def snapshot(self, tenant_id: str) -> dict:
        """Get current counters for a tenant."""
        state = self._state(tenant_id)
        return {
            "count": state.window.count,
            "window_start": state.window.window_start.isoformat(),
            "hourly_limit": state.hourly_limit,
            "in_flight": state.in_flight,
            "max_concurrent": state.max_concurrent,
        }

    def reset(self) -> None:
        """Reset all counters (for testing)."""
        self._tenants.clear()
