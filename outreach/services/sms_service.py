"""
SMS Dispatch Service
Orchestrates a single SMS dispatch: quota, template, attempt log, provider.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from outreach.domain.errors import (
    DispatchFailed,
    InvalidTenantConfig,
    LeadNotFoundError,
)
from outreach.domain.interfaces.repositories import LeadRepository, TenantConfigRepository
from outreach.domain.models.lead import Channel, Lead
from outreach.domain.models.tenant_config import TenantDispatchConfig
from outreach.domain.services.attempt_tracker import ContactAttemptTracker
from outreach.domain.services.message_composer import DEFAULT_TEMPLATE_NAME, MessageComposer
from outreach.domain.services.rate_limiter import RateLimiter
from outreach.infrastructure.connectors.sms import SMSProvider

logger = logging.getLogger(__name__)


class SMSNotConfiguredError(InvalidTenantConfig):
    """Raised when the SMS provider has no credentials."""

    default_message = "SMS provider not configured. Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN."


@dataclass
class DispatchResult:
    """Outcome of one dispatch request."""
    success: bool
    external_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    deferred: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "externalId": self.external_id,
            "status": self.status,
            "error": self.error,
            "deferred": self.deferred,
        }


class SMSDispatchService:
    """
    Sends templated SMS to leads.

    Flow per dispatch:
    1. Load lead and tenant config
    2. Take a rate limiter slot (deferral records nothing)
    3. Compose the message
    4. Record the attempt optimistically
    5. Send through the provider
    6. Attach the provider id, or correct the attempt to failed

    The concurrency slot is returned on every exit path. Provider errors are
    reported in the result, never raised to the caller.
    """

    def __init__(
        self,
        leads: LeadRepository,
        tenant_configs: TenantConfigRepository,
        limiter: RateLimiter,
        composer: MessageComposer,
        tracker: ContactAttemptTracker,
        provider: SMSProvider
    ):
        self._leads = leads
        self._tenant_configs = tenant_configs
        self.limiter = limiter
        self.composer = composer
        self.tracker = tracker
        self._provider = provider

    async def load_tenant_config(self, tenant_id: str) -> TenantDispatchConfig:
        """Get stored tenant config, or defaults when tenant management has none."""
        config = await self._tenant_configs.get_config(tenant_id)
        return config or TenantDispatchConfig.default(tenant_id)

    async def _load_lead(self, lead_id: str, tenant_id: Optional[str]) -> Lead:
        lead = await self._leads.get_lead(lead_id)
        if lead is None or (tenant_id is not None and lead.tenant_id != tenant_id):
            raise LeadNotFoundError()
        return lead

    async def send(
        self,
        lead_id: str,
        template_name: str = DEFAULT_TEMPLATE_NAME,
        custom_data: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        lead: Optional[Lead] = None
    ) -> DispatchResult:
        """
        Dispatch one SMS to a lead.

        Args:
            lead_id: Lead to contact
            template_name: Template name (unknown names use the default)
            custom_data: Extra template variables
            tenant_id: Caller's tenant; the lead must belong to it
            lead: Already loaded lead (batch callers), skips the lookup

        Returns:
            DispatchResult. ``deferred=True`` means the tenant is at quota or
            concurrency capacity and nothing was recorded.

        Raises:
            LeadNotFoundError: Lead does not exist for this tenant
            SMSNotConfiguredError: Provider has no credentials
        """
        if lead is None:
            lead = await self._load_lead(lead_id, tenant_id)
        tenant = await self.load_tenant_config(lead.tenant_id)

        if not self._provider.is_configured():
            raise SMSNotConfiguredError()

        self.limiter.configure_tenant(
            lead.tenant_id,
            hourly_limit=tenant.hourly_limit,
            max_concurrent=tenant.max_concurrent,
        )
        if not await self.limiter.try_acquire(lead.tenant_id):
            logger.info(f"SMS to lead {lead.id} deferred: rate limit reached for tenant {lead.tenant_id}")
            return DispatchResult(success=False, error="Rate limit reached", deferred=True)

        try:
            template, message = self.composer.compose(template_name, lead, custom_data, tenant)
            record = await self.tracker.record_attempt(
                lead,
                Channel.SMS,
                content=message,
                template_or_action=template.name,
            )

            try:
                result = await self._provider.send_sms(
                    to_number=lead.phone,
                    message=message,
                    from_number=tenant.sms_from_number,
                )
                result.raise_for_rejection()
            except Exception as e:
                error = e.message if isinstance(e, DispatchFailed) else str(e)
                logger.error(f"SMS to lead {lead.id} failed: {error}", exc_info=not isinstance(e, DispatchFailed))
                await self.tracker.mark_failed(lead, record, error)
                return DispatchResult(success=False, error=error)

            await self.tracker.mark_dispatched(lead, record, result.message_id, result.status)
            logger.info(f"SMS sent to lead {lead.id}: {result.message_id}")

            return DispatchResult(
                success=True,
                external_id=result.message_id,
                status=result.status or record.status,
            )
        finally:
            await self.limiter.release(lead.tenant_id)

    async def history(self, lead_id: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get a lead's attempt history, oldest first.

        Raises:
            LeadNotFoundError: Lead does not exist for this tenant
        """
        lead = await self._load_lead(lead_id, tenant_id)
        return [
            {
                "attemptId": record.attempt_id,
                "messageId": record.external_id,
                "channel": record.channel,
                "template": record.template_or_action,
                "timestamp": record.timestamp.isoformat(),
                "status": record.status,
                "content": record.content,
                "error": record.error,
            }
            for record in lead.history
        ]
