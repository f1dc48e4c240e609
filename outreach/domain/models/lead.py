"""
Lead Domain Models
"""
import uuid
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class ContactStatus(str, Enum):
    """Aggregate contact status of a lead"""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CONTACTED = "contacted"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"


class Channel(str, Enum):
    """Outbound contact channel"""
    SMS = "sms"
    VOICE = "voice"


class AttemptStatus(str, Enum):
    """Attempt statuses produced locally. Provider statuses are stored verbatim."""
    SENT = "sent"
    INITIATED = "initiated"
    DELIVERED = "delivered"
    FAILED = "failed"


class AttemptRecord(BaseModel):
    """
    A single outbound contact try toward a lead.

    Appended to Lead.history and never removed. Only ``status`` changes after
    the record has been reconciled with its provider id.
    """
    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    external_id: Optional[str] = None  # Provider message sid / CallLog id
    channel: Channel
    template_or_action: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: str
    error: Optional[str] = None
    content: Optional[str] = None

    model_config = {"use_enum_values": True, "validate_default": True, "validate_assignment": True}


class Lead(BaseModel):
    """Lead/Contact for outbound SMS and calls"""
    id: str
    tenant_id: str
    name: Optional[str] = None
    phone: str
    email: Optional[str] = None
    contact_status: ContactStatus = ContactStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    history: List[AttemptRecord] = Field(default_factory=list)
    call_durations: List[int] = Field(default_factory=list)

    model_config = {"use_enum_values": True, "validate_default": True, "validate_assignment": True}

    def find_attempt(self, external_id: str) -> Optional[AttemptRecord]:
        """Return the attempt with the given provider id, if any."""
        for record in self.history:
            if record.external_id == external_id:
                return record
        return None
