"""
Call Log Domain Models
"""
import uuid
from pydantic import BaseModel, Field
from typing import Optional, Dict, Set
from datetime import datetime
from enum import Enum

from outreach.domain.models.lead import utc_now


class CallStatus(str, Enum):
    """Call status"""
    INITIATED = "initiated"
    ANSWERED = "answered"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_CALL_STATUSES: Set[str] = {CallStatus.COMPLETED.value, CallStatus.FAILED.value}

# Forward-only progression; failed may be reached from any non-terminal state
_CALL_STATUS_RANK: Dict[str, int] = {
    CallStatus.INITIATED.value: 0,
    CallStatus.ANSWERED.value: 1,
    CallStatus.TRANSFERRED.value: 2,
    CallStatus.COMPLETED.value: 3,
}


def can_transition(current: str, target: str) -> bool:
    """
    Check whether a CallLog may move from ``current`` to ``target``.

    Terminal states never re-open. Re-applying the current non-terminal
    status is rejected as well so a duplicate event cannot reset timestamps.
    """
    if current in TERMINAL_CALL_STATUSES:
        return False
    if target == CallStatus.FAILED.value:
        return True
    return _CALL_STATUS_RANK.get(target, -1) > _CALL_STATUS_RANK.get(current, -1)


class CallLog(BaseModel):
    """Outbound call record, created before the AMI session is opened"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    lead_id: Optional[str] = None
    to: str
    from_number: str
    transfer_number: str
    status: CallStatus = CallStatus.INITIATED
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    last_status_update: datetime = Field(default_factory=utc_now)

    model_config = {"use_enum_values": True, "validate_default": True, "validate_assignment": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES
