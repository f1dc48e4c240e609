"""
Tests for the HTTP API
Webhook, SMS and call endpoints with in-memory repositories.
"""
import pytest
import jwt
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from outreach.api.v1 import dependencies
from outreach.domain.models.tenant_config import AMIConfig, TenantDispatchConfig
from outreach.domain.services.attempt_tracker import ContactAttemptTracker
from outreach.domain.services.message_composer import MessageComposer
from outreach.domain.services.rate_limiter import RateLimiter
from outreach.domain.services.status_reconciler import StatusReconciler
from outreach.infrastructure.storage.memory import (
    InMemoryCallLogRepository,
    InMemoryLeadRepository,
    InMemoryTenantConfigRepository,
)
from outreach.infrastructure.telephony.call_origination import CallOriginationGateway
from outreach.main import app
from outreach.services.sms_service import SMSDispatchService

from fakes import FakeSMSProvider

TENANT_HEADERS = {"X-Tenant-ID": "tenant-a"}


class Backend:
    """In-memory wiring shared by one test"""

    def __init__(self, make_lead, clock):
        self.clock = clock
        self.leads = InMemoryLeadRepository([make_lead("lead-1", name="Jo")])
        self.calls = InMemoryCallLogRepository()
        self.configs = InMemoryTenantConfigRepository(
            [TenantDispatchConfig(
                tenant_id="tenant-a",
                company_name="Acme Solar",
                ami=AMIConfig(host="pbx.local", port=5038, username="u", password="p",
                              trunk="trunk", context="outbound-transfer"),
            )],
            leads=self.leads,
        )
        self.tracker = ContactAttemptTracker(self.leads, clock=clock)
        self.provider = FakeSMSProvider()
        self.limiter = RateLimiter(clock=clock)
        self.sms_service = SMSDispatchService(
            leads=self.leads,
            tenant_configs=self.configs,
            limiter=self.limiter,
            composer=MessageComposer(),
            tracker=self.tracker,
            provider=self.provider,
        )
        self.reconciler = StatusReconciler(self.leads, call_logs=self.calls, tracker=self.tracker, clock=clock)
        self.ami_actions = []
        self.ami_response = "Success"
        self.gateway = CallOriginationGateway(
            self.calls,
            tracker=self.tracker,
            leads=self.leads,
            limiter=self.limiter,
            session_factory=self._session_factory,
            clock=clock,
        )

    @asynccontextmanager
    async def _session_factory(self, ami):
        if self.ami_response is None:
            raise ConnectionRefusedError("Connection refused")
        backend = self

        class Session:
            async def send_action(self, fields, timeout):
                backend.ami_actions.append(dict(fields))
                return {"Response": backend.ami_response, "ActionID": "1", "Message": "Originate successfully queued"}

        yield Session()

    def install(self):
        app.dependency_overrides[dependencies.get_status_reconciler] = lambda: self.reconciler
        app.dependency_overrides[dependencies.get_sms_dispatch_service] = lambda: self.sms_service
        app.dependency_overrides[dependencies.get_tenant_config_repository] = lambda: self.configs
        app.dependency_overrides[dependencies.get_call_gateway] = lambda: self.gateway
        return TestClient(app)


@pytest.fixture
def backend(make_lead, clock):
    backend = Backend(make_lead, clock)
    yield backend
    app.dependency_overrides.clear()


class TestHealth:
    """Tests for /health"""

    def test_health_check(self, backend):
        client = backend.install()
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSMSStatusWebhook:
    """Tests for POST /api/v1/webhooks/sms/status"""

    def _send_sms(self, backend, client):
        response = client.post("/api/v1/sms/send/lead-1", json={"template": "default"}, headers=TENANT_HEADERS)
        assert response.status_code == 200
        return response.json()["externalId"]

    def test_form_callback_marks_delivered(self, backend):
        client = backend.install()
        sid = self._send_sms(backend, client)

        response = client.post(
            "/api/v1/webhooks/sms/status",
            data={"MessageSid": sid, "MessageStatus": "delivered"},
        )

        assert response.status_code == 200
        assert response.text == "OK"
        history = client.get("/api/v1/sms/history/lead-1", headers=TENANT_HEADERS).json()["history"]
        assert history[0]["status"] == "delivered"

    def test_json_callback_accepted(self, backend):
        client = backend.install()
        sid = self._send_sms(backend, client)

        response = client.post(
            "/api/v1/webhooks/sms/status",
            json={"MessageSid": sid, "MessageStatus": "undelivered"},
        )

        assert response.status_code == 200
        assert response.text == "OK"

    def test_unknown_message_sid_still_ok(self, backend):
        client = backend.install()

        response = client.post(
            "/api/v1/webhooks/sms/status",
            data={"MessageSid": "SM-unknown", "MessageStatus": "delivered"},
        )

        assert response.status_code == 200
        assert response.text == "OK"

    def test_internal_error_returns_500_without_trace(self, backend):
        client = backend.install()
        broken = MagicMock()
        broken.apply_callback_status = AsyncMock(side_effect=RuntimeError("db exploded"))
        app.dependency_overrides[dependencies.get_status_reconciler] = lambda: broken

        response = client.post(
            "/api/v1/webhooks/sms/status",
            data={"MessageSid": "SM1", "MessageStatus": "delivered"},
        )

        assert response.status_code == 500
        assert response.text == "Error processing webhook"
        assert "db exploded" not in response.text

    def test_webhook_needs_no_tenant(self, backend):
        client = backend.install()

        response = client.post("/api/v1/webhooks/sms/status", data={})

        assert response.status_code == 200


class TestSMSEndpoints:
    """Tests for /api/v1/sms"""

    def test_send_requires_tenant(self, backend):
        client = backend.install()

        response = client.post("/api/v1/sms/send/lead-1", json={})

        assert response.status_code == 401

    def test_send_with_jwt_tenant_claim(self, backend):
        client = backend.install()
        token = jwt.encode({"sub": "user-1", "tenant_id": "tenant-a"}, "test-secret", algorithm="HS256")

        response = client.post(
            "/api/v1/sms/send/lead-1",
            json={"template": "followUp", "customData": {"company": "Partner Co"}},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "Partner Co" in backend.provider.sent[0][1]

    def test_send_unknown_lead(self, backend):
        client = backend.install()

        response = client.post("/api/v1/sms/send/nope", json={}, headers=TENANT_HEADERS)

        assert response.status_code == 404

    def test_send_other_tenant_lead(self, backend):
        client = backend.install()

        response = client.post("/api/v1/sms/send/lead-1", json={}, headers={"X-Tenant-ID": "tenant-b"})

        assert response.status_code == 404

    def test_send_deferred_returns_429(self, backend, make_lead):
        backend.leads.add_lead(make_lead("lead-2"))
        backend.configs.put(TenantDispatchConfig(tenant_id="tenant-a", hourly_limit=1))
        client = backend.install()

        assert client.post("/api/v1/sms/send/lead-1", json={}, headers=TENANT_HEADERS).status_code == 200
        response = client.post("/api/v1/sms/send/lead-2", json={}, headers=TENANT_HEADERS)

        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limit reached"

    def test_send_without_provider_returns_503(self, backend):
        backend.provider.configured = False
        client = backend.install()

        response = client.post("/api/v1/sms/send/lead-1", json={}, headers=TENANT_HEADERS)

        assert response.status_code == 503

    def test_history_unknown_lead(self, backend):
        client = backend.install()

        response = client.get("/api/v1/sms/history/nope", headers=TENANT_HEADERS)

        assert response.status_code == 404


class TestOriginateEndpoint:
    """Tests for POST /api/v1/calls/originate"""

    def _body(self, **overrides):
        body = {"to": "+15551112222", "transfer_number": "+15556667777", "from": "+15553334444"}
        body.update(overrides)
        return body

    def test_originate_success(self, backend):
        client = backend.install()

        response = client.post("/api/v1/calls/originate", json=self._body(leadId="lead-1"), headers=TENANT_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Call initiated successfully"
        assert data["context"] == "outbound-transfer"
        assert data["providerResponse"]["response"] == "Success"
        assert backend.ami_actions[0]["Channel"] == "PJSIP/+15551112222@trunk"
        assert backend.ami_actions[0]["CallerID"] == "+15553334444"

    def test_originate_missing_parameters(self, backend):
        client = backend.install()

        response = client.post("/api/v1/calls/originate", json={"to": "+15551112222"}, headers=TENANT_HEADERS)

        assert response.status_code == 400
        assert backend.calls._calls == {}

    def test_originate_unknown_tenant(self, backend):
        client = backend.install()

        response = client.post("/api/v1/calls/originate", json=self._body(), headers={"X-Tenant-ID": "ghost"})

        assert response.status_code == 404

    def test_originate_ami_failure(self, backend):
        backend.ami_response = None
        client = backend.install()

        response = client.post("/api/v1/calls/originate", json=self._body(), headers=TENANT_HEADERS)

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "AMI connection failed"
        assert "refused" in data["details"].lower()
        [call] = backend.calls._calls.values()
        assert call.status == "failed"

    def test_originate_shares_tenant_quota_with_sms(self, backend):
        backend.configs.put(TenantDispatchConfig(
            tenant_id="tenant-a",
            hourly_limit=1,
            ami=AMIConfig(host="pbx.local", port=5038, trunk="trunk", context="outbound-transfer"),
        ))
        client = backend.install()

        assert client.post("/api/v1/sms/send/lead-1", json={}, headers=TENANT_HEADERS).status_code == 200
        response = client.post("/api/v1/calls/originate", json=self._body(), headers=TENANT_HEADERS)

        assert response.status_code == 429
        assert backend.ami_actions == []
        assert backend.calls._calls == {}


class TestCallStatusEndpoint:
    """Tests for PUT /api/v1/calls/{call_id}/status"""

    def _originate(self, client):
        response = client.post(
            "/api/v1/calls/originate",
            json={"to": "+15551112222", "transfer_number": "+15556667777", "from": "+15553334444", "leadId": "lead-1"},
            headers=TENANT_HEADERS,
        )
        return response.json()["callId"]

    def test_status_progression(self, backend):
        client = backend.install()
        call_id = self._originate(client)

        assert client.put(f"/api/v1/calls/{call_id}/status", json={"status": "answered"}, headers=TENANT_HEADERS).status_code == 200
        backend.clock.advance(seconds=40)
        response = client.put(f"/api/v1/calls/{call_id}/status", json={"status": "completed"}, headers=TENANT_HEADERS)

        assert response.status_code == 200
        assert response.json()["duration"] == 40

    def test_backward_transition_conflict(self, backend):
        client = backend.install()
        call_id = self._originate(client)
        client.put(f"/api/v1/calls/{call_id}/status", json={"status": "transferred"}, headers=TENANT_HEADERS)

        response = client.put(f"/api/v1/calls/{call_id}/status", json={"status": "answered"}, headers=TENANT_HEADERS)

        assert response.status_code == 409

    def test_unknown_status(self, backend):
        client = backend.install()
        call_id = self._originate(client)

        response = client.put(f"/api/v1/calls/{call_id}/status", json={"status": "exploded"}, headers=TENANT_HEADERS)

        assert response.status_code == 400

    def test_unknown_call(self, backend):
        client = backend.install()

        response = client.put("/api/v1/calls/nope/status", json={"status": "answered"}, headers=TENANT_HEADERS)

        assert response.status_code == 404
