"""
Unit tests for CallOriginationGateway
Validation, Originate fields, failure handling and session scoping.
"""
import asyncio
import pytest
from contextlib import asynccontextmanager

from outreach.domain.errors import (
    InvalidParameters,
    InvalidTenantConfig,
    OriginationFailed,
    RateLimitDeferred,
)
from outreach.domain.models.call_log import CallStatus
from outreach.domain.models.lead import Channel, ContactStatus
from outreach.domain.models.tenant_config import AMIConfig, TenantDispatchConfig
from outreach.domain.services.attempt_tracker import ContactAttemptTracker
from outreach.domain.services.rate_limiter import RateLimiter
from outreach.infrastructure.storage.memory import (
    InMemoryCallLogRepository,
    InMemoryLeadRepository,
)
from outreach.infrastructure.telephony.ami_session import AMIError
from outreach.infrastructure.telephony.call_origination import (
    CallOriginationGateway,
    OriginateParams,
    build_variable_string,
)

from fakes import FakeAMIServer


def _tenant(port, tenant_fields=None, **ami_fields):
    ami = dict(
        host="127.0.0.1",
        port=port,
        username="dialer",
        password="secret",
        trunk="twilio-trunk",
        context="outbound-transfer",
    )
    ami.update(ami_fields)
    return TenantDispatchConfig(tenant_id="tenant-a", ami=AMIConfig(**ami), **(tenant_fields or {}))


def _params(**fields):
    values = dict(to="+15551112222", transfer_number="+15556667777", from_number="+15553334444")
    values.update(fields)
    return OriginateParams(**values)


class TestVariableString:
    """Tests for build_variable_string"""

    def test_fixed_fields_first_then_caller_order(self):
        result = build_variable_string(
            "+1999", "+1555", "call-1", "tenant-a", {"campaign": "spring", "agent": "bob"}
        )

        assert result == (
            "transfer_number=+1999,to=+1555,call_log_id=call-1,tenant_id=tenant-a,"
            "campaign=spring,agent=bob"
        )


class TestValidation:
    """Requests rejected before any CallLog exists"""

    @pytest.mark.asyncio
    async def test_missing_parameters(self, clock):
        calls = InMemoryCallLogRepository()
        gateway = CallOriginationGateway(calls, clock=clock)

        with pytest.raises(InvalidParameters):
            await gateway.originate(_tenant(5038), _params(transfer_number=None))

        assert calls._calls == {}

    @pytest.mark.asyncio
    async def test_incomplete_ami_config(self, clock):
        gateway = CallOriginationGateway(InMemoryCallLogRepository(), clock=clock)

        with pytest.raises(InvalidTenantConfig):
            await gateway.originate(_tenant(None), _params())

        with pytest.raises(InvalidTenantConfig):
            await gateway.originate(TenantDispatchConfig(tenant_id="tenant-a"), _params())

    @pytest.mark.asyncio
    async def test_missing_context(self, clock):
        gateway = CallOriginationGateway(InMemoryCallLogRepository(), clock=clock)

        with pytest.raises(InvalidTenantConfig, match="context"):
            await gateway.originate(_tenant(5038, context=None), _params())

    @pytest.mark.asyncio
    async def test_unknown_lead(self, clock):
        gateway = CallOriginationGateway(
            InMemoryCallLogRepository(),
            leads=InMemoryLeadRepository(),
            clock=clock,
        )

        with pytest.raises(InvalidParameters):
            await gateway.originate(_tenant(5038), _params(lead_id="missing"))


class TestOriginate:
    """Originate against a local AMI peer"""

    @pytest.mark.asyncio
    async def test_successful_originate(self, clock):
        async with FakeAMIServer() as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(calls, clock=clock)

            result = await gateway.originate(
                _tenant(server.port),
                _params(variables={"campaign": "spring"}, timeout=30000),
            )

            assert await server.wait_for_disconnects(1)

        call = await calls.get(result.call_id)
        assert call.status == CallStatus.INITIATED.value
        assert result.message == "Call initiated successfully"
        assert result.context == "outbound-transfer"
        assert result.provider_response["response"] == "Success"

        originate = server.actions_named("Originate")[0]
        assert originate["Channel"] == "PJSIP/+15551112222@twilio-trunk"
        assert originate["Context"] == "outbound-transfer"
        assert originate["Exten"] == "s"
        assert originate["Priority"] == "1"
        assert originate["CallerID"] == "+15553334444"
        assert originate["Timeout"] == "30000"
        assert originate["Async"] == "true"
        assert originate["Variable"] == (
            f"transfer_number=+15556667777,to=+15551112222,"
            f"call_log_id={result.call_id},tenant_id=tenant-a,campaign=spring"
        )

        body = result.to_dict()
        assert set(body) == {"message", "callId", "providerResponse", "context"}

    @pytest.mark.asyncio
    async def test_request_overrides_tenant_defaults(self, clock):
        async with FakeAMIServer() as server:
            gateway = CallOriginationGateway(InMemoryCallLogRepository(), clock=clock)

            await gateway.originate(
                _tenant(server.port),
                _params(trunk="other", context="sales", exten="200", priority=2, async_="false"),
            )

        originate = server.actions_named("Originate")[0]
        assert originate["Channel"] == "PJSIP/+15551112222@other"
        assert originate["Context"] == "sales"
        assert originate["Exten"] == "200"
        assert originate["Priority"] == "2"
        assert originate["Timeout"] == "40000"
        assert originate["Async"] == "false"

    @pytest.mark.asyncio
    async def test_records_voice_attempt_for_lead(self, clock, make_lead):
        leads = InMemoryLeadRepository([make_lead("lead-1")])
        async with FakeAMIServer() as server:
            gateway = CallOriginationGateway(
                InMemoryCallLogRepository(),
                tracker=ContactAttemptTracker(leads, clock=clock),
                leads=leads,
                clock=clock,
            )
            result = await gateway.originate(_tenant(server.port), _params(lead_id="lead-1"))

        lead = await leads.get_lead("lead-1")
        record = lead.find_attempt(result.call_id)
        assert record is not None
        assert record.channel == Channel.VOICE.value
        assert record.status == "initiated"
        assert lead.attempt_count == 1

    @pytest.mark.asyncio
    async def test_session_open_failure_marks_call_failed(self, clock):
        """A refused connection never leaves the CallLog initiated"""
        server = await FakeAMIServer().start()
        port = server.port
        await server.stop()

        calls = InMemoryCallLogRepository()
        gateway = CallOriginationGateway(calls, clock=clock, connect_timeout=1)

        with pytest.raises(OriginationFailed) as exc_info:
            await gateway.originate(_tenant(port), _params())

        assert isinstance(exc_info.value.cause, OSError)
        [call] = calls._calls.values()
        assert call.status == CallStatus.FAILED.value
        assert call.end_time is not None

    @pytest.mark.asyncio
    async def test_login_rejected_marks_call_failed(self, clock):
        async with FakeAMIServer(login_ok=False) as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(calls, clock=clock)

            with pytest.raises(OriginationFailed):
                await gateway.originate(_tenant(server.port), _params())

            assert await server.wait_for_disconnects(1)

        [call] = calls._calls.values()
        assert call.status == CallStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_originate_rejected_marks_call_failed(self, clock):
        async with FakeAMIServer(originate_response="Error") as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(calls, clock=clock)

            with pytest.raises(OriginationFailed) as exc_info:
                await gateway.originate(_tenant(server.port), _params())

        assert isinstance(exc_info.value.cause, AMIError)
        [call] = calls._calls.values()
        assert call.status == CallStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_ack_timeout_closes_session_and_fails_call(self, clock):
        async with FakeAMIServer(originate_response=None) as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(calls, clock=clock, response_timeout=0.1)

            with pytest.raises(OriginationFailed) as exc_info:
                await gateway.originate(_tenant(server.port), _params())

            assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
            assert await server.wait_for_disconnects(1)

        [call] = calls._calls.values()
        assert call.status == CallStatus.FAILED.value


class TestSessionScoping:
    """Each origination owns its own session"""

    @pytest.mark.asyncio
    async def test_concurrent_calls_use_separate_sessions(self, clock):
        opened = []
        closed = []

        class RecordingSession:
            def __init__(self, delay):
                self.delay = delay

            async def send_action(self, fields, timeout):
                await asyncio.wait_for(asyncio.sleep(self.delay), timeout)
                return {"Response": "Success", "ActionID": fields.get("ActionID", "x")}

        @asynccontextmanager
        async def factory(ami):
            session = RecordingSession(delay=5 if ami.context == "slow" else 0)
            opened.append(session)
            try:
                yield session
            finally:
                closed.append(session)

        calls = InMemoryCallLogRepository()
        gateway = CallOriginationGateway(calls, session_factory=factory, response_timeout=0.1, clock=clock)

        results = await asyncio.gather(
            gateway.originate(_tenant(5038, context="slow"), _params()),
            gateway.originate(_tenant(5038), _params()),
            return_exceptions=True,
        )

        assert isinstance(results[0], OriginationFailed)
        assert results[1].message == "Call initiated successfully"
        assert len(opened) == 2
        assert opened[0] is not opened[1]
        assert sorted(map(id, closed)) == sorted(map(id, opened))


class TestRateLimiting:
    """Originations draw from the tenant's quota and concurrency gate"""

    @pytest.mark.asyncio
    async def test_hourly_quota_defers_further_calls(self, clock):
        async with FakeAMIServer() as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(calls, limiter=RateLimiter(clock=clock), clock=clock)
            tenant = _tenant(server.port, tenant_fields={"hourly_limit": 1})

            await gateway.originate(tenant, _params())
            with pytest.raises(RateLimitDeferred):
                await gateway.originate(tenant, _params())

        assert len(server.actions_named("Originate")) == 1
        assert len(calls._calls) == 1
        assert gateway.limiter.snapshot("tenant-a")["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_deferral_records_nothing_for_lead(self, clock, make_lead):
        leads = InMemoryLeadRepository([make_lead("lead-1")])
        calls = InMemoryCallLogRepository()
        gateway = CallOriginationGateway(
            calls,
            tracker=ContactAttemptTracker(leads, clock=clock),
            leads=leads,
            clock=clock,
        )

        with pytest.raises(RateLimitDeferred):
            await gateway.originate(_tenant(5038, tenant_fields={"hourly_limit": 0}), _params(lead_id="lead-1"))

        lead = await leads.get_lead("lead-1")
        assert calls._calls == {}
        assert lead.history == []
        assert lead.attempt_count == 0

    @pytest.mark.asyncio
    async def test_concurrency_gate_held_until_ack(self, clock):
        release = asyncio.Event()

        class HeldSession:
            async def send_action(self, fields, timeout):
                await release.wait()
                return {"Response": "Success", "ActionID": "1"}

        @asynccontextmanager
        async def factory(ami):
            yield HeldSession()

        gateway = CallOriginationGateway(InMemoryCallLogRepository(), session_factory=factory, clock=clock)
        tenant = _tenant(5038, tenant_fields={"max_concurrent": 1})

        first = asyncio.create_task(gateway.originate(tenant, _params()))
        await asyncio.sleep(0.01)

        with pytest.raises(RateLimitDeferred):
            await gateway.originate(tenant, _params())

        release.set()
        assert (await first).message == "Call initiated successfully"
        assert gateway.limiter.snapshot("tenant-a")["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_quota_not_refunded_on_failure(self, clock):
        server = await FakeAMIServer().start()
        port = server.port
        await server.stop()
        gateway = CallOriginationGateway(InMemoryCallLogRepository(), clock=clock, connect_timeout=1)
        tenant = _tenant(port, tenant_fields={"hourly_limit": 1})

        with pytest.raises(OriginationFailed):
            await gateway.originate(tenant, _params())
        with pytest.raises(RateLimitDeferred):
            await gateway.originate(tenant, _params())

        snapshot = gateway.limiter.snapshot("tenant-a")
        assert snapshot["count"] == 1
        assert snapshot["in_flight"] == 0


class TestVoiceAttemptOnFailure:
    """A failed or cancelled origination still leaves a failed attempt"""

    @pytest.mark.asyncio
    async def test_refused_connection_records_failed_attempt(self, clock, make_lead):
        leads = InMemoryLeadRepository([make_lead("lead-1")])
        server = await FakeAMIServer().start()
        port = server.port
        await server.stop()

        calls = InMemoryCallLogRepository()
        gateway = CallOriginationGateway(
            calls,
            tracker=ContactAttemptTracker(leads, clock=clock),
            leads=leads,
            clock=clock,
            connect_timeout=1,
        )

        with pytest.raises(OriginationFailed):
            await gateway.originate(_tenant(port), _params(lead_id="lead-1"))

        lead = await leads.get_lead("lead-1")
        [call] = calls._calls.values()
        assert lead.attempt_count == 1
        assert len(lead.history) == 1
        record = lead.history[0]
        assert record.channel == Channel.VOICE.value
        assert record.external_id == call.id
        assert record.status == "failed"
        assert record.error
        assert lead.contact_status == ContactStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_cancelled_origination_marks_call_failed(self, clock, make_lead):
        """Cancelling the caller while Originate is unanswered fails that call"""
        leads = InMemoryLeadRepository([make_lead("lead-1")])
        async with FakeAMIServer(originate_response=None) as server:
            calls = InMemoryCallLogRepository()
            gateway = CallOriginationGateway(
                calls,
                tracker=ContactAttemptTracker(leads, clock=clock),
                leads=leads,
                clock=clock,
                response_timeout=5,
            )

            task = asyncio.create_task(gateway.originate(_tenant(server.port), _params(lead_id="lead-1")))
            for _ in range(200):
                if server.actions_named("Originate"):
                    break
                await asyncio.sleep(0.01)
            assert server.actions_named("Originate")

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            assert await server.wait_for_disconnects(1)

        [call] = calls._calls.values()
        assert call.status == CallStatus.FAILED.value
        assert call.end_time is not None
        lead = await leads.get_lead("lead-1")
        assert [r.status for r in lead.history] == ["failed"]
        assert gateway.limiter.snapshot("tenant-a")["in_flight"] == 0


class TestConfiguredDefaults:
    """Gateway-level defaults for channel and Originate fields"""

    @pytest.mark.asyncio
    async def test_configured_defaults_used(self, clock):
        async with FakeAMIServer() as server:
            gateway = CallOriginationGateway(
                InMemoryCallLogRepository(),
                channel_technology="SIP",
                default_exten="100",
                default_priority=3,
                originate_timeout_ms=25000,
                clock=clock,
            )
            await gateway.originate(_tenant(server.port), _params())

        originate = server.actions_named("Originate")[0]
        assert originate["Channel"] == "SIP/+15551112222@twilio-trunk"
        assert originate["Exten"] == "100"
        assert originate["Priority"] == "3"
        assert originate["Timeout"] == "25000"
