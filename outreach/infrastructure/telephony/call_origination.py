"""
Call Origination Gateway
Places outbound calls by issuing an AMI Originate over a transient session.

Flow per call:
    validate -> rate limit -> CallLog(initiated) + voice attempt
    -> open session -> Originate -> close session
A failure or cancellation anywhere after the CallLog exists marks it failed,
together with the lead's voice attempt.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from outreach.domain.errors import (
    InvalidParameters,
    InvalidTenantConfig,
    OriginationFailed,
    RateLimitDeferred,
)
from outreach.domain.interfaces.repositories import CallLogRepository, LeadRepository
from outreach.domain.models.call_log import CallLog, CallStatus
from outreach.domain.models.lead import AttemptRecord, Channel, Lead, utc_now
from outreach.domain.models.tenant_config import AMIConfig, TenantDispatchConfig
from outreach.domain.services.attempt_tracker import ContactAttemptTracker
from outreach.domain.services.rate_limiter import RateLimiter
from outreach.infrastructure.telephony.ami_session import AMIError, AMISession

logger = logging.getLogger(__name__)

DEFAULT_ORIGINATE_TIMEOUT_MS = 40000
DEFAULT_EXTEN = "s"
DEFAULT_PRIORITY = 1
CHANNEL_TECHNOLOGY = "PJSIP"

SessionFactory = Callable[[AMIConfig], AsyncContextManager[AMISession]]


@dataclass
class OriginateParams:
    """Caller-supplied origination request."""
    to: Optional[str]
    transfer_number: Optional[str]
    from_number: Optional[str]
    trunk: Optional[str] = None
    context: Optional[str] = None
    exten: Optional[str] = None
    priority: Optional[int] = None
    timeout: Optional[int] = None  # milliseconds
    async_: Any = True
    variables: Dict[str, Any] = field(default_factory=dict)
    lead_id: Optional[str] = None


@dataclass
class OriginationResult:
    """Provider acknowledgment of an accepted origination."""
    message: str
    call_id: str
    provider_response: Dict[str, Any]
    context: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "callId": self.call_id,
            "providerResponse": self.provider_response,
            "context": self.context,
        }


def build_variable_string(
    transfer_number: str,
    to: str,
    call_log_id: str,
    tenant_id: str,
    variables: Optional[Dict[str, Any]] = None
) -> str:
    """
    Comma-joined ``key=value`` list for the Originate ``Variable`` field.

    Transfer number and destination always come first; caller variables are
    appended in the order given.
    """
    pairs = [
        f"transfer_number={transfer_number}",
        f"to={to}",
        f"call_log_id={call_log_id}",
        f"tenant_id={tenant_id}",
    ]
    for key, value in (variables or {}).items():
        pairs.append(f"{key}={value}")
    return ",".join(pairs)


def default_session_factory(connect_timeout: float) -> SessionFactory:
    def factory(ami: AMIConfig) -> AMISession:
        return AMISession(
            ami.host,
            ami.port,
            username=ami.username,
            secret=ami.password,
            connect_timeout=connect_timeout,
        )
    return factory


class CallOriginationGateway:
    """
    AMI call origination with a scoped session per call.

    Every origination takes a quota unit and a concurrency slot from the
    tenant's RateLimiter, shared with SMS dispatch. The slot is held until
    the Originate is acknowledged or fails.

    Sessions are never shared between concurrent calls and never outlive the
    origination request. The session is released on every exit path,
    including an acknowledgment timeout and cancellation.

    Only the provider's acceptance of the Originate is awaited, not the call
    itself. Call progress arrives later through call status updates.
    """

    def __init__(
        self,
        call_logs: CallLogRepository,
        tracker: Optional[ContactAttemptTracker] = None,
        leads: Optional[LeadRepository] = None,
        limiter: Optional[RateLimiter] = None,
        session_factory: Optional[SessionFactory] = None,
        response_timeout: float = 10.0,
        connect_timeout: float = 5.0,
        channel_technology: str = CHANNEL_TECHNOLOGY,
        default_exten: str = DEFAULT_EXTEN,
        default_priority: int = DEFAULT_PRIORITY,
        originate_timeout_ms: int = DEFAULT_ORIGINATE_TIMEOUT_MS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._call_logs = call_logs
        self._tracker = tracker
        self._leads = leads
        self._clock = clock or utc_now
        self.limiter = limiter or RateLimiter(clock=self._clock)
        self._session_factory = session_factory or default_session_factory(connect_timeout)
        self.response_timeout = response_timeout
        self.channel_technology = channel_technology
        self.default_exten = default_exten
        self.default_priority = default_priority
        self.originate_timeout_ms = originate_timeout_ms

    async def originate(self, tenant: TenantDispatchConfig, params: OriginateParams) -> OriginationResult:
        """
        Place an outbound call for a tenant.

        Returns:
            OriginationResult carrying the CallLog id and AMI acknowledgment

        Raises:
            InvalidParameters: to/from/transfer number missing, or unknown lead
            InvalidTenantConfig: tenant has no AMI host/port or no context
            RateLimitDeferred: tenant quota or concurrency exhausted (nothing recorded)
            OriginationFailed: session or Originate failure (CallLog marked failed)
        """
        # 1. Parameters
        if not params.to or not params.transfer_number or not params.from_number:
            raise InvalidParameters("Missing required parameters")

        # 2. Tenant AMI configuration
        ami = tenant.ami
        if ami is None or not ami.is_complete():
            raise InvalidTenantConfig("Invalid AMI configuration")

        context = params.context or ami.context
        if not context:
            raise InvalidTenantConfig("No dialplan context configured")

        lead = None
        if params.lead_id and self._leads is not None:
            lead = await self._leads.get_lead(params.lead_id)
            if lead is None or lead.tenant_id != tenant.tenant_id:
                raise InvalidParameters("Lead not found")

        # 3. Quota and concurrency slot
        self.limiter.configure_tenant(
            tenant.tenant_id,
            hourly_limit=tenant.hourly_limit,
            max_concurrent=tenant.max_concurrent,
        )
        if not await self.limiter.try_acquire(tenant.tenant_id):
            logger.info(f"Origination deferred for tenant {tenant.tenant_id}: rate limit reached")
            raise RateLimitDeferred()

        try:
            return await self._place_call(tenant, ami, params, context, lead)
        finally:
            await self.limiter.release(tenant.tenant_id)

    async def _place_call(
        self,
        tenant: TenantDispatchConfig,
        ami: AMIConfig,
        params: OriginateParams,
        context: str,
        lead: Optional[Lead]
    ) -> OriginationResult:
        # 4. Auditable records before any network I/O
        call_log = await self._call_logs.create(CallLog(
            tenant_id=tenant.tenant_id,
            lead_id=params.lead_id,
            to=params.to,
            from_number=params.from_number,
            transfer_number=params.transfer_number,
            status=CallStatus.INITIATED.value,
            start_time=self._clock(),
            last_status_update=self._clock(),
        ))

        record = None
        if lead is not None and self._tracker is not None:
            record = await self._tracker.record_attempt(
                lead,
                Channel.VOICE,
                content=None,
                template_or_action=f"originate:{context}",
                external_id=call_log.id,
            )

        action = self._build_originate_action(tenant, ami, params, call_log, context)

        # 5. Scoped session: open, Originate, always close
        try:
            async with self._session_factory(ami) as session:
                logger.info(
                    f"Sending AMI Originate for call {call_log.id}",
                    extra={
                        "channel": action["Channel"],
                        "context": context,
                        "variable": action["Variable"][:30] + "...",
                    }
                )
                response = await session.send_action(action, timeout=self.response_timeout)

            if response.get("Response", "").lower() != "success":
                raise AMIError(response.get("Message") or "Originate rejected")

        except asyncio.CancelledError:
            logger.warning(f"AMI origination cancelled for call {call_log.id}")
            await asyncio.shield(self._fail(call_log, lead, record, "Origination cancelled"))
            raise
        except Exception as e:
            # 6. Failure path: the call never re-opens
            logger.error(f"AMI origination failed for call {call_log.id}: {e!r}", exc_info=True)
            await self._fail(call_log, lead, record, str(e) or type(e).__name__)
            raise OriginationFailed(f"AMI connection failed: {e}", cause=e) from e

        provider_response = {
            "actionId": response.get("ActionID"),
            "uniqueId": response.get("Uniqueid") or response.get("UniqueID"),
            "message": response.get("Message"),
            "response": response.get("Response"),
        }

        logger.info(f"Call initiated: {call_log.id} to {params.to[:6]}... (tenant {tenant.tenant_id})")

        return OriginationResult(
            message="Call initiated successfully",
            call_id=call_log.id,
            provider_response=provider_response,
            context=context,
        )

    def _build_originate_action(
        self,
        tenant: TenantDispatchConfig,
        ami: AMIConfig,
        params: OriginateParams,
        call_log: CallLog,
        context: str
    ) -> Dict[str, Any]:
        trunk = params.trunk or ami.trunk
        technology = self.channel_technology
        channel = f"{technology}/{params.to}@{trunk}" if trunk else f"{technology}/{params.to}"

        return {
            "Action": "Originate",
            "Channel": channel,
            "Context": context,
            "Exten": params.exten or ami.exten or self.default_exten,
            "Priority": params.priority or ami.priority or self.default_priority,
            "CallerID": params.from_number,
            "Timeout": params.timeout or self.originate_timeout_ms,
            "Async": _async_flag(params.async_),
            "Variable": build_variable_string(
                params.transfer_number,
                params.to,
                call_log.id,
                tenant.tenant_id,
                params.variables,
            ),
        }

    async def _fail(
        self,
        call_log: CallLog,
        lead: Optional[Lead],
        record: Optional[AttemptRecord],
        error: str
    ) -> None:
        now = self._clock()
        await self._call_logs.update(
            call_log.id,
            status=CallStatus.FAILED.value,
            end_time=now,
            duration=max(0, int((now - call_log.start_time).total_seconds())),
            last_status_update=now,
        )
        if record is not None:
            await self._tracker.mark_failed(lead, record, error)


def _async_flag(value: Any) -> str:
    if isinstance(value, str):
        return "false" if value.strip().lower() in ("false", "0", "no") else "true"
    return "true" if value or value is None else "false"
