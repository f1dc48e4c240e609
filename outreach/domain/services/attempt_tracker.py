"""
Contact Attempt Tracker
Owns the attempt history lifecycle of a lead
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from outreach.domain.interfaces.repositories import LeadRepository
from outreach.domain.models.lead import (
    AttemptRecord,
    AttemptStatus,
    Channel,
    ContactStatus,
    Lead,
    utc_now,
)

logger = logging.getLogger(__name__)

# Status an attempt is appended with, before the provider has answered
_INITIAL_ATTEMPT_STATUS = {
    Channel.SMS.value: (AttemptStatus.SENT.value, ContactStatus.SENT.value),
    Channel.VOICE.value: (AttemptStatus.INITIATED.value, ContactStatus.CONTACTED.value),
}


class ContactAttemptTracker:
    """
    Records outbound attempts on a lead's append-only history.

    Attempts are appended optimistically before dispatch and corrected to
    ``failed`` if the dispatch raises, so no attempt is ever left un-logged.
    History length and attempt_count move together.
    """

    def __init__(self, leads: LeadRepository, clock: Optional[Callable[[], datetime]] = None):
        self._leads = leads
        self._clock = clock or utc_now

    async def record_attempt(
        self,
        lead: Lead,
        channel: Channel,
        content: Optional[str],
        template_or_action: str,
        external_id: Optional[str] = None
    ) -> AttemptRecord:
        """
        Append a new attempt with status ``sent`` (sms) or ``initiated`` (voice).

        Returns:
            The appended AttemptRecord
        """
        channel_value = Channel(channel).value
        status, contact_status = _INITIAL_ATTEMPT_STATUS[channel_value]

        record = AttemptRecord(
            external_id=external_id,
            channel=channel_value,
            template_or_action=template_or_action,
            timestamp=self._clock(),
            status=status,
            content=content,
        )

        updated = await self._leads.append_attempt(lead.id, record, contact_status=contact_status)
        logger.debug(
            f"Recorded {channel_value} attempt {record.attempt_id} for lead {lead.id} "
            f"(attempt {updated.attempt_count})"
        )
        return record

    async def mark_dispatched(
        self,
        lead: Lead,
        record: AttemptRecord,
        external_id: Optional[str],
        status: Optional[str] = None
    ) -> Optional[AttemptRecord]:
        """Attach the provider id (and initial provider status) to an attempt."""
        return await self._leads.update_attempt(
            lead.id,
            record.attempt_id,
            status=status or record.status,
            external_id=external_id,
        )

    async def mark_failed(self, lead: Lead, record: AttemptRecord, error: str) -> Optional[AttemptRecord]:
        """Correct an optimistically appended attempt to ``failed``."""
        logger.warning(f"Attempt {record.attempt_id} for lead {lead.id} failed: {error}")
        return await self._leads.update_attempt(
            lead.id,
            record.attempt_id,
            status=AttemptStatus.FAILED.value,
            error=error or "Unknown error",
            contact_status=ContactStatus.FAILED.value,
        )

    async def mark_terminal(
        self,
        lead: Lead,
        external_id: str,
        status: str,
        contact_status: Optional[str] = None
    ) -> Optional[AttemptRecord]:
        """
        Update the status of the attempt carrying ``external_id`` in place.

        An unknown id is a logged no-op: out-of-order or duplicate provider
        callbacks must not crash the caller.
        """
        record = lead.find_attempt(external_id)
        if record is None:
            logger.warning(f"No attempt with external id {external_id} on lead {lead.id}")
            return None

        return await self._leads.update_attempt(
            lead.id,
            record.attempt_id,
            status=status,
            contact_status=contact_status,
        )
