"""
Batch Selector
Chooses which leads are eligible for the next contact attempt
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional, Tuple

from outreach.domain.interfaces.repositories import LeadRepository
from outreach.domain.models.lead import ContactStatus, Lead, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=24)


def is_eligible(lead: Lead, stale_before: datetime) -> bool:
    """
    A lead is eligible when it is pending, or when it is not delivered and
    was last attempted before the staleness threshold (or never attempted).
    """
    if lead.contact_status == ContactStatus.PENDING.value:
        return True
    if lead.contact_status == ContactStatus.DELIVERED.value:
        return False
    return lead.last_attempt_at is None or lead.last_attempt_at < stale_before


def starvation_order(lead: Lead) -> Tuple[int, float]:
    """Sort key: never-attempted leads first, then oldest attempt first."""
    if lead.last_attempt_at is None:
        return (0, 0.0)
    return (1, lead.last_attempt_at.timestamp())


class BatchSelector:
    """
    Selects the next batch of leads for a tenant.

    The repository runs the query; the selector re-checks eligibility and
    ordering so a lax backend can never hand out a recently delivered lead.
    Each call re-queries current state and yields a one-shot iterator.
    """

    def __init__(
        self,
        leads: LeadRepository,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._leads = leads
        self.stale_after = stale_after
        self._clock = clock or utc_now

    async def select_eligible(self, tenant_id: str, limit: int) -> Iterator[Lead]:
        """
        Get up to ``limit`` eligible leads, starved leads first.

        Args:
            tenant_id: Tenant whose leads to select
            limit: Maximum batch size

        Returns:
            Iterator over the selected leads
        """
        if limit <= 0:
            return iter(())

        stale_before = self._clock() - self.stale_after
        candidates = await self._leads.find_batch_candidates(tenant_id, stale_before, limit)

        eligible = [
            lead for lead in candidates
            if lead.tenant_id == tenant_id and is_eligible(lead, stale_before)
        ]
        eligible.sort(key=starvation_order)

        if len(eligible) < len(candidates):
            logger.debug(
                f"Dropped {len(candidates) - len(eligible)} ineligible candidates for tenant {tenant_id}"
            )

        return iter(eligible[:limit])
