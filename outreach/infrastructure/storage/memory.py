"""
In-Memory Repositories
Process-local storage used in development and tests when Supabase is not
configured. Reads return copies, mirroring a database round trip.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from outreach.domain.interfaces.repositories import (
    CallLogRepository,
    LeadRepository,
    TenantConfigRepository,
)
from outreach.domain.models.call_log import CallLog
from outreach.domain.models.lead import AttemptRecord, ContactStatus, Lead
from outreach.domain.models.tenant_config import TenantDispatchConfig
from outreach.domain.services.batch_selector import starvation_order

logger = logging.getLogger(__name__)


class InMemoryLeadRepository(LeadRepository):
    """
    Leads with an append-only attempt log.

    ``_attempt_index`` maps attempt id -> (lead id, position) and
    ``_external_index`` maps provider id -> attempt id, so updates touch a
    single record instead of rewriting the whole history.
    """

    def __init__(self, leads: Optional[Iterable[Lead]] = None):
        self._leads: Dict[str, Lead] = {}
        self._attempt_index: Dict[str, Tuple[str, int]] = {}
        self._external_index: Dict[str, str] = {}
        for lead in leads or []:
            self.add_lead(lead)

    def add_lead(self, lead: Lead) -> None:
        """Seed a lead (import is handled outside the dispatch core)."""
        stored = lead.model_copy(deep=True)
        self._leads[stored.id] = stored
        for position, record in enumerate(stored.history):
            self._index(stored.id, position, record)

    def _index(self, lead_id: str, position: int, record: AttemptRecord) -> None:
        self._attempt_index[record.attempt_id] = (lead_id, position)
        if record.external_id:
            self._external_index[record.external_id] = record.attempt_id

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def find_batch_candidates(
        self,
        tenant_id: str,
        stale_before: datetime,
        limit: int
    ) -> List[Lead]:
        candidates = [
            lead for lead in self._leads.values()
            if lead.tenant_id == tenant_id and (
                lead.contact_status == ContactStatus.PENDING.value
                or (
                    lead.contact_status != ContactStatus.DELIVERED.value
                    and (lead.last_attempt_at is None or lead.last_attempt_at < stale_before)
                )
            )
        ]
        candidates.sort(key=starvation_order)
        return [lead.model_copy(deep=True) for lead in candidates[:limit]]

    async def append_attempt(
        self,
        lead_id: str,
        record: AttemptRecord,
        contact_status: Optional[str] = None
    ) -> Lead:
        lead = self._leads.get(lead_id)
        if lead is None:
            raise KeyError(f"Lead {lead_id} not found")

        stored = record.model_copy(deep=True)
        lead.history.append(stored)
        self._index(lead_id, len(lead.history) - 1, stored)

        lead.attempt_count = len(lead.history)
        lead.last_attempt_at = stored.timestamp
        if contact_status:
            lead.contact_status = contact_status

        return lead.model_copy(deep=True)

    async def update_attempt(
        self,
        lead_id: str,
        attempt_id: str,
        status: str,
        external_id: Optional[str] = None,
        error: Optional[str] = None,
        contact_status: Optional[str] = None
    ) -> Optional[AttemptRecord]:
        location = self._attempt_index.get(attempt_id)
        if location is None or location[0] != lead_id:
            return None

        lead = self._leads[lead_id]
        record = lead.history[location[1]]
        record.status = status
        if external_id and record.external_id is None:
            record.external_id = external_id
            self._external_index[external_id] = attempt_id
        if error is not None:
            record.error = error
        if contact_status:
            lead.contact_status = contact_status

        return record.model_copy(deep=True)

    async def find_by_external_id(self, external_id: str) -> Optional[Tuple[Lead, AttemptRecord]]:
        attempt_id = self._external_index.get(external_id)
        if attempt_id is None:
            return None
        lead_id, position = self._attempt_index[attempt_id]
        lead = self._leads[lead_id]
        return lead.model_copy(deep=True), lead.history[position].model_copy(deep=True)

    async def update_lead(self, lead_id: str, **fields: Any) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        if lead is None:
            return None
        for key, value in fields.items():
            setattr(lead, key, value)
        return lead.model_copy(deep=True)

    def tenant_ids(self) -> List[str]:
        return sorted({lead.tenant_id for lead in self._leads.values()})


class InMemoryCallLogRepository(CallLogRepository):
    """Call logs kept in a dict keyed by id."""

    def __init__(self):
        self._calls: Dict[str, CallLog] = {}

    async def create(self, call_log: CallLog) -> CallLog:
        self._calls[call_log.id] = call_log.model_copy(deep=True)
        return call_log.model_copy(deep=True)

    async def get(self, call_id: str) -> Optional[CallLog]:
        call_log = self._calls.get(call_id)
        return call_log.model_copy(deep=True) if call_log else None

    async def update(self, call_id: str, **fields: Any) -> Optional[CallLog]:
        call_log = self._calls.get(call_id)
        if call_log is None:
            return None
        for key, value in fields.items():
            setattr(call_log, key, value)
        return call_log.model_copy(deep=True)


class InMemoryTenantConfigRepository(TenantConfigRepository):
    """Static tenant configs, optionally listing tenants from a lead repository."""

    def __init__(
        self,
        configs: Optional[Iterable[TenantDispatchConfig]] = None,
        leads: Optional[InMemoryLeadRepository] = None
    ):
        self._configs: Dict[str, TenantDispatchConfig] = {c.tenant_id: c for c in configs or []}
        self._leads = leads

    def put(self, config: TenantDispatchConfig) -> None:
        self._configs[config.tenant_id] = config

    async def get_config(self, tenant_id: str) -> Optional[TenantDispatchConfig]:
        config = self._configs.get(tenant_id)
        return config.model_copy(deep=True) if config else None

    async def list_tenant_ids(self) -> List[str]:
        tenant_ids = set(self._configs)
        if self._leads is not None:
            tenant_ids.update(self._leads.tenant_ids())
        return sorted(tenant_ids)
