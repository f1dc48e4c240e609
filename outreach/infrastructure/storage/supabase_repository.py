"""
Supabase Repositories
Postgres-backed persistence for leads, attempts, call logs and tenant config.

Tables:
    leads          - one row per lead (aggregate status, counters, call_durations)
    lead_attempts  - append-only attempt log, unique index on external_id
    call_logs      - outbound call records
    tenants        - tenant dispatch settings (ami_config is JSONB)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from outreach.domain.interfaces.repositories import (
    CallLogRepository,
    LeadRepository,
    TenantConfigRepository,
)
from outreach.domain.models.call_log import CallLog
from outreach.domain.models.lead import AttemptRecord, ContactStatus, Lead
from outreach.domain.models.tenant_config import TenantDispatchConfig

logger = logging.getLogger(__name__)

LEAD_COLUMNS = "id, tenant_id, name, phone, email, contact_status, attempt_count, last_attempt_at, call_durations"
ATTEMPT_COLUMNS = "attempt_id, lead_id, external_id, channel, template_or_action, timestamp, status, error, content"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Postgres timestamptz string into an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: format_timestamp(value) if isinstance(value, datetime) else value
        for key, value in fields.items()
    }


def _attempt_from_row(row: Dict[str, Any]) -> AttemptRecord:
    return AttemptRecord(
        attempt_id=row["attempt_id"],
        external_id=row.get("external_id"),
        channel=row["channel"],
        template_or_action=row.get("template_or_action") or "",
        timestamp=parse_timestamp(row["timestamp"]),
        status=row["status"],
        error=row.get("error"),
        content=row.get("content"),
    )


def _lead_from_row(row: Dict[str, Any], attempts: Optional[List[Dict[str, Any]]] = None) -> Lead:
    history = sorted(
        (_attempt_from_row(a) for a in attempts or []),
        key=lambda record: record.timestamp,
    )
    return Lead(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row.get("name"),
        phone=row["phone"],
        email=row.get("email"),
        contact_status=row.get("contact_status") or ContactStatus.PENDING.value,
        attempt_count=row.get("attempt_count") or 0,
        last_attempt_at=parse_timestamp(row.get("last_attempt_at")),
        history=history,
        call_durations=row.get("call_durations") or [],
    )


def _call_log_from_row(row: Dict[str, Any]) -> CallLog:
    return CallLog(
        id=row["id"],
        tenant_id=row["tenant_id"],
        lead_id=row.get("lead_id"),
        to=row["to_number"],
        from_number=row["from_number"],
        transfer_number=row["transfer_number"],
        status=row["status"],
        start_time=parse_timestamp(row["start_time"]),
        end_time=parse_timestamp(row.get("end_time")),
        duration=row.get("duration"),
        last_status_update=parse_timestamp(row["last_status_update"]),
    )


class SupabaseLeadRepository(LeadRepository):
    """Lead repository on the leads and lead_attempts tables."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        response = self.supabase.table("leads").select(
            f"{LEAD_COLUMNS}, lead_attempts({ATTEMPT_COLUMNS})"
        ).eq("id", lead_id).limit(1).execute()

        if not response.data:
            return None
        row = response.data[0]
        return _lead_from_row(row, row.get("lead_attempts"))

    async def find_batch_candidates(
        self,
        tenant_id: str,
        stale_before: datetime,
        limit: int
    ) -> List[Lead]:
        stale = stale_before.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        response = self.supabase.table("leads").select(
            f"{LEAD_COLUMNS}, lead_attempts({ATTEMPT_COLUMNS})"
        ).eq("tenant_id", tenant_id).or_(
            f"contact_status.eq.{ContactStatus.PENDING.value},"
            f"and(contact_status.neq.{ContactStatus.DELIVERED.value},"
            f"or(last_attempt_at.is.null,last_attempt_at.lt.{stale}))"
        ).order("last_attempt_at", nullsfirst=True).limit(limit).execute()

        return [_lead_from_row(row, row.get("lead_attempts")) for row in response.data or []]

    async def append_attempt(
        self,
        lead_id: str,
        record: AttemptRecord,
        contact_status: Optional[str] = None
    ) -> Lead:
        row = _serialize(record.model_dump())
        row["lead_id"] = lead_id
        self.supabase.table("lead_attempts").insert(row).execute()

        # attempt_count mirrors the persisted log length, not a local increment
        count_response = self.supabase.table("lead_attempts").select(
            "attempt_id", count="exact"
        ).eq("lead_id", lead_id).execute()
        attempt_count = count_response.count or 0

        lead_update: Dict[str, Any] = {
            "attempt_count": attempt_count,
            "last_attempt_at": format_timestamp(record.timestamp),
        }
        if contact_status:
            lead_update["contact_status"] = contact_status
        self.supabase.table("leads").update(lead_update).eq("id", lead_id).execute()

        lead = await self.get_lead(lead_id)
        if lead is None:
            raise KeyError(f"Lead {lead_id} not found")
        return lead

    async def update_attempt(
        self,
        lead_id: str,
        attempt_id: str,
        status: str,
        external_id: Optional[str] = None,
        error: Optional[str] = None,
        contact_status: Optional[str] = None
    ) -> Optional[AttemptRecord]:
        update_data: Dict[str, Any] = {"status": status}
        if external_id:
            update_data["external_id"] = external_id
        if error is not None:
            update_data["error"] = error

        response = self.supabase.table("lead_attempts").update(update_data).eq(
            "attempt_id", attempt_id
        ).eq("lead_id", lead_id).execute()

        if not response.data:
            return None

        if contact_status:
            self.supabase.table("leads").update(
                {"contact_status": contact_status}
            ).eq("id", lead_id).execute()

        return _attempt_from_row(response.data[0])

    async def find_by_external_id(self, external_id: str) -> Optional[Tuple[Lead, AttemptRecord]]:
        response = self.supabase.table("lead_attempts").select(
            ATTEMPT_COLUMNS
        ).eq("external_id", external_id).limit(1).execute()

        if not response.data:
            return None

        record = _attempt_from_row(response.data[0])
        lead = await self.get_lead(response.data[0]["lead_id"])
        if lead is None:
            return None
        return lead, record

    async def update_lead(self, lead_id: str, **fields: Any) -> Optional[Lead]:
        self.supabase.table("leads").update(_serialize(fields)).eq("id", lead_id).execute()
        return await self.get_lead(lead_id)


class SupabaseCallLogRepository(CallLogRepository):
    """Call log repository on the call_logs table."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def create(self, call_log: CallLog) -> CallLog:
        row = _serialize(call_log.model_dump())
        row["to_number"] = row.pop("to")
        response = self.supabase.table("call_logs").insert(row).execute()
        return _call_log_from_row(response.data[0]) if response.data else call_log

    async def get(self, call_id: str) -> Optional[CallLog]:
        response = self.supabase.table("call_logs").select("*").eq("id", call_id).limit(1).execute()
        return _call_log_from_row(response.data[0]) if response.data else None

    async def update(self, call_id: str, **fields: Any) -> Optional[CallLog]:
        response = self.supabase.table("call_logs").update(_serialize(fields)).eq("id", call_id).execute()
        return _call_log_from_row(response.data[0]) if response.data else None


class SupabaseTenantConfigRepository(TenantConfigRepository):
    """Tenant dispatch settings from the tenants table."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_config(self, tenant_id: str) -> Optional[TenantDispatchConfig]:
        response = self.supabase.table("tenants").select(
            "id, company_name, default_message, sms_from_number, sms_templates, "
            "hourly_limit, max_concurrent, ami_config"
        ).eq("id", tenant_id).limit(1).execute()

        if not response.data:
            return None

        row = dict(response.data[0])
        row["tenant_id"] = row.pop("id")
        row["sms_templates"] = row.get("sms_templates") or {}
        return TenantDispatchConfig.from_dict(row)

    async def list_tenant_ids(self) -> List[str]:
        response = self.supabase.table("leads").select("tenant_id").neq(
            "contact_status", ContactStatus.DELIVERED.value
        ).execute()
        return sorted({row["tenant_id"] for row in response.data or []})
