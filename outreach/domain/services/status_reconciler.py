"""
Status Reconciler
Applies asynchronous provider callbacks and call status updates to the
attempt records they belong to.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from outreach.domain.errors import (
    CallNotFoundError,
    InvalidParameters,
    InvalidStatusTransition,
    ReconciliationMismatch,
)
from outreach.domain.interfaces.repositories import CallLogRepository, LeadRepository
from outreach.domain.models.call_log import CallLog, CallStatus, can_transition
from outreach.domain.models.lead import AttemptStatus, ContactStatus, utc_now
from outreach.domain.services.attempt_tracker import ContactAttemptTracker

logger = logging.getLogger(__name__)


# Provider (Twilio) delivery vocabulary -> internal terminal status.
# Anything else is stored verbatim on the attempt only.
PROVIDER_TERMINAL_STATUS_MAP: Dict[str, str] = {
    "delivered": AttemptStatus.DELIVERED.value,
    "failed": AttemptStatus.FAILED.value,
    "undelivered": AttemptStatus.FAILED.value,
}

# Attempt statuses a later non-terminal callback may not overwrite
TERMINAL_ATTEMPT_STATUSES = frozenset(PROVIDER_TERMINAL_STATUS_MAP.values())

# A completed call shorter than this does not count as a completed contact
MIN_COMPLETED_CALL_SECONDS = 30


@dataclass
class ReconcileResult:
    """Outcome of applying one status callback."""
    success: bool
    matched: bool
    external_id: str
    status: Optional[str] = None
    lead_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "matched": self.matched,
            "external_id": self.external_id,
            "status": self.status,
            "lead_id": self.lead_id,
            "error": self.error,
        }


class StatusReconciler:
    """
    Keeps attempt history consistent with provider callbacks and with
    locally driven call status changes.

    Updates are in place (never appended), so applying the same callback
    twice yields the same end state.
    """

    def __init__(
        self,
        leads: LeadRepository,
        call_logs: Optional[CallLogRepository] = None,
        tracker: Optional[ContactAttemptTracker] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._leads = leads
        self._call_logs = call_logs
        self._tracker = tracker or ContactAttemptTracker(leads)
        self._clock = clock or utc_now

    async def apply_callback_status(self, external_id: str, provider_status: str) -> ReconcileResult:
        """
        Apply a provider delivery callback.

        ``delivered`` maps to delivered, ``failed``/``undelivered`` to failed;
        both also update the lead's aggregate contact status. Other values are
        recorded verbatim on the attempt, unless the attempt already holds a
        terminal status; such late callbacks are logged and left unapplied.

        Unknown ids are logged and reported with ``matched=False``; they are
        never raised to the webhook caller.
        """
        raw_status = (provider_status or "").strip()
        status = PROVIDER_TERMINAL_STATUS_MAP.get(raw_status.lower(), raw_status)
        contact_status = status if raw_status.lower() in PROVIDER_TERMINAL_STATUS_MAP else None

        found = await self._leads.find_by_external_id(external_id)
        if found is None:
            mismatch = ReconciliationMismatch(f"No attempt found for external id {external_id}")
            logger.warning(f"Status callback ignored: {mismatch.message} (status={raw_status})")
            return ReconcileResult(
                success=False,
                matched=False,
                external_id=external_id,
                status=status,
                error=mismatch.message,
            )

        lead, record = found
        if contact_status is None and record.status in TERMINAL_ATTEMPT_STATUSES:
            logger.info(
                f"Stale callback '{status}' for attempt {external_id} ignored; "
                f"already {record.status}"
            )
            return ReconcileResult(
                success=True,
                matched=True,
                external_id=external_id,
                status=record.status,
                lead_id=lead.id,
            )

        updated = await self._tracker.mark_terminal(
            lead,
            external_id,
            status,
            contact_status=contact_status,
        )

        logger.info(
            f"Applied status '{status}' to attempt {external_id} (lead {lead.id})"
        )

        return ReconcileResult(
            success=updated is not None,
            matched=updated is not None,
            external_id=external_id,
            status=status,
            lead_id=lead.id,
        )

    async def apply_call_status(self, tenant_id: str, call_id: str, status: str) -> CallLog:
        """
        Move a CallLog forward and propagate the outcome to its lead.

        Terminal statuses stamp end time and duration. For a linked lead:
        the duration is appended to call_durations, ``completed`` of at least
        30 seconds marks the lead completed, ``failed`` marks it failed and
        ``transferred`` marks it transferred. The lead's voice attempt is
        updated to the same status.

        Raises:
            InvalidParameters: unknown status or call not found for tenant
            InvalidStatusTransition: backward or post-terminal move
        """
        if self._call_logs is None:
            raise InvalidParameters("Call log repository not configured")

        try:
            target = CallStatus(status).value
        except ValueError:
            raise InvalidParameters(f"Invalid status: {status}")

        call_log = await self._call_logs.get(call_id)
        if call_log is None or call_log.tenant_id != tenant_id:
            raise CallNotFoundError()

        if not can_transition(call_log.status, target):
            raise InvalidStatusTransition(
                f"Cannot move call {call_id} from {call_log.status} to {target}"
            )

        now = self._clock()
        fields = {"status": target, "last_status_update": now}
        duration = None
        if target in (CallStatus.COMPLETED.value, CallStatus.FAILED.value):
            duration = max(0, int((now - call_log.start_time).total_seconds()))
            fields["end_time"] = now
            fields["duration"] = duration

        updated = await self._call_logs.update(call_id, **fields)
        logger.info(f"Call {call_id} status {call_log.status} -> {target}")

        if call_log.lead_id:
            await self._apply_call_outcome_to_lead(call_log.lead_id, call_id, target, duration)

        return updated

    async def _apply_call_outcome_to_lead(
        self,
        lead_id: str,
        call_id: str,
        status: str,
        duration: Optional[int]
    ) -> None:
        lead = await self._leads.get_lead(lead_id)
        if lead is None:
            logger.warning(f"Lead {lead_id} for call {call_id} no longer exists")
            return

        lead_fields = {}
        if duration is not None:
            lead_fields["call_durations"] = [*lead.call_durations, duration]

        if status == CallStatus.COMPLETED.value and duration is not None and duration >= MIN_COMPLETED_CALL_SECONDS:
            lead_fields["contact_status"] = ContactStatus.COMPLETED.value
        elif status == CallStatus.FAILED.value:
            lead_fields["contact_status"] = ContactStatus.FAILED.value
        elif status == CallStatus.TRANSFERRED.value:
            lead_fields["contact_status"] = ContactStatus.TRANSFERRED.value

        if lead_fields:
            await self._leads.update_lead(lead_id, **lead_fields)

        if lead.find_attempt(call_id) is not None:
            await self._tracker.mark_terminal(lead, call_id, status)
