"""
Shared test fixtures
"""
import pytest
from datetime import datetime, timedelta, timezone

from outreach.domain.models.lead import Lead
from outreach.domain.models.tenant_config import AMIConfig, TenantDispatchConfig


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_lead():
    """Factory for leads with sensible defaults."""
    counter = {"n": 0}

    def factory(lead_id=None, tenant_id="tenant-a", **fields):
        counter["n"] += 1
        fields.setdefault("name", "Ada")
        fields.setdefault("phone", f"+1555000{counter['n']:04d}")
        return Lead(id=lead_id or f"lead-{counter['n']}", tenant_id=tenant_id, **fields)

    return factory


@pytest.fixture
def tenant_config():
    return TenantDispatchConfig(
        tenant_id="tenant-a",
        company_name="Acme Solar",
        default_message="Reply YES to book a call.",
        sms_from_number="+15550009999",
        hourly_limit=60,
        max_concurrent=5,
        ami=AMIConfig(
            host="127.0.0.1",
            port=5038,
            username="dialer",
            password="secret",
            trunk="twilio-trunk",
            context="outbound-transfer",
        ),
    )
