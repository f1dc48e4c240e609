"""
Repository Interfaces
Abstract persistence contracts for leads, call logs and tenant configuration.
The dispatch core never talks to a database directly.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional, Tuple

from outreach.domain.models.lead import Lead, AttemptRecord
from outreach.domain.models.call_log import CallLog
from outreach.domain.models.tenant_config import TenantDispatchConfig


class LeadRepository(ABC):
    """
    Lead storage with an append-only attempt log.

    Attempt records are appended, never rewritten wholesale, and are indexed
    by external id so status callbacks can locate them without scanning.
    """

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        """Load a lead with its attempt history."""
        pass

    @abstractmethod
    async def find_batch_candidates(
        self,
        tenant_id: str,
        stale_before: datetime,
        limit: int
    ) -> List[Lead]:
        """
        Query leads that may be contacted next.

        Returns leads that are pending, or not delivered and last attempted
        before ``stale_before`` (never-attempted leads included), ordered by
        last attempt with never-attempted first.
        """
        pass

    @abstractmethod
    async def append_attempt(
        self,
        lead_id: str,
        record: AttemptRecord,
        contact_status: Optional[str] = None
    ) -> Lead:
        """
        Append an attempt to the lead's history.

        Sets attempt_count to the new history length, last_attempt_at to the
        record timestamp and, when given, the aggregate contact status.
        """
        pass

    @abstractmethod
    async def update_attempt(
        self,
        lead_id: str,
        attempt_id: str,
        status: str,
        external_id: Optional[str] = None,
        error: Optional[str] = None,
        contact_status: Optional[str] = None
    ) -> Optional[AttemptRecord]:
        """Update one attempt in place. Returns None if it does not exist."""
        pass

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> Optional[Tuple[Lead, AttemptRecord]]:
        """Locate the lead and attempt carrying a provider id."""
        pass

    @abstractmethod
    async def update_lead(self, lead_id: str, **fields: Any) -> Optional[Lead]:
        """Update scalar lead fields (contact_status, call_durations)."""
        pass


class CallLogRepository(ABC):
    """Call log storage"""

    @abstractmethod
    async def create(self, call_log: CallLog) -> CallLog:
        pass

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallLog]:
        pass

    @abstractmethod
    async def update(self, call_id: str, **fields: Any) -> Optional[CallLog]:
        pass


class TenantConfigRepository(ABC):
    """Read-only access to tenant dispatch configuration"""

    @abstractmethod
    async def get_config(self, tenant_id: str) -> Optional[TenantDispatchConfig]:
        pass

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        """Tenants that currently have leads to work."""
        pass
