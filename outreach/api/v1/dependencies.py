"""
API Dependencies
Shared singletons for repositories and dispatch services.

Supabase-backed repositories are used when SUPABASE_URL and
SUPABASE_SERVICE_KEY are configured, in-memory repositories otherwise.
"""
import logging
from datetime import timedelta
from typing import Optional

from supabase import create_client, Client

from outreach.core.config import ConfigManager, get_settings
from outreach.domain.interfaces.repositories import (
    CallLogRepository,
    LeadRepository,
    TenantConfigRepository,
)
from outreach.domain.services.attempt_tracker import ContactAttemptTracker
from outreach.domain.services.batch_selector import BatchSelector
from outreach.domain.services.message_composer import MessageComposer
from outreach.domain.services.rate_limiter import RateLimiter
from outreach.domain.services.status_reconciler import StatusReconciler
from outreach.infrastructure.connectors.sms import get_twilio_sms_provider
from outreach.infrastructure.storage.memory import (
    InMemoryCallLogRepository,
    InMemoryLeadRepository,
    InMemoryTenantConfigRepository,
)
from outreach.infrastructure.storage.supabase_repository import (
    SupabaseCallLogRepository,
    SupabaseLeadRepository,
    SupabaseTenantConfigRepository,
)
from outreach.infrastructure.telephony.call_origination import (
    CHANNEL_TECHNOLOGY,
    DEFAULT_EXTEN,
    DEFAULT_ORIGINATE_TIMEOUT_MS,
    DEFAULT_PRIORITY,
    CallOriginationGateway,
)
from outreach.services.sms_service import SMSDispatchService

logger = logging.getLogger(__name__)

_supabase: Optional[Client] = None
_lead_repository: Optional[LeadRepository] = None
_call_log_repository: Optional[CallLogRepository] = None
_tenant_config_repository: Optional[TenantConfigRepository] = None
_rate_limiter: Optional[RateLimiter] = None
_config_manager: Optional[ConfigManager] = None
_message_composer: Optional[MessageComposer] = None
_sms_service: Optional[SMSDispatchService] = None
_call_gateway: Optional[CallOriginationGateway] = None


def get_supabase() -> Optional[Client]:
    """
    Get Supabase client, or None when persistence is not configured.
    """
    global _supabase
    settings = get_settings()
    if _supabase is None and settings.supabase_url and settings.supabase_service_key:
        _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
        logger.info("Using Supabase repositories")
    return _supabase


def get_lead_repository() -> LeadRepository:
    global _lead_repository
    if _lead_repository is None:
        supabase = get_supabase()
        if supabase is not None:
            _lead_repository = SupabaseLeadRepository(supabase)
        else:
            logger.warning("SUPABASE_URL not set - using in-memory lead storage")
            _lead_repository = InMemoryLeadRepository()
    return _lead_repository


def get_call_log_repository() -> CallLogRepository:
    global _call_log_repository
    if _call_log_repository is None:
        supabase = get_supabase()
        _call_log_repository = SupabaseCallLogRepository(supabase) if supabase else InMemoryCallLogRepository()
    return _call_log_repository


def get_tenant_config_repository() -> TenantConfigRepository:
    global _tenant_config_repository
    if _tenant_config_repository is None:
        supabase = get_supabase()
        if supabase is not None:
            _tenant_config_repository = SupabaseTenantConfigRepository(supabase)
        else:
            leads = get_lead_repository()
            _tenant_config_repository = InMemoryTenantConfigRepository(
                leads=leads if isinstance(leads, InMemoryLeadRepository) else None
            )
    return _tenant_config_repository


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter; every dispatch path must share it."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            hourly_limit=settings.sms_rate_limit_per_hour,
            max_concurrent=settings.sms_concurrent_jobs,
            window=timedelta(seconds=settings.rate_window_seconds),
        )
    return _rate_limiter


def get_config_manager() -> ConfigManager:
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(env=get_settings().environment)
    return _config_manager


def get_message_composer() -> MessageComposer:
    global _message_composer
    if _message_composer is None:
        settings = get_settings()
        config = get_config_manager()
        reserved = {"company": config.get("dispatch.default_company", settings.default_company_name)}
        default_message = config.get("dispatch.default_message")
        if default_message:
            reserved["message"] = default_message
        _message_composer = MessageComposer(
            templates=config.get_sms_templates(),
            reserved_defaults=reserved,
            max_length=config.get("sms.max_length", 160),
        )
    return _message_composer


def get_attempt_tracker() -> ContactAttemptTracker:
    return ContactAttemptTracker(get_lead_repository())


def get_batch_selector() -> BatchSelector:
    stale_after_hours = get_config_manager().get(
        "dispatch.stale_after_hours", get_settings().stale_after_hours
    )
    return BatchSelector(
        get_lead_repository(),
        stale_after=timedelta(hours=stale_after_hours),
    )


def get_status_reconciler() -> StatusReconciler:
    leads = get_lead_repository()
    return StatusReconciler(
        leads,
        call_logs=get_call_log_repository(),
        tracker=ContactAttemptTracker(leads),
    )


def get_sms_dispatch_service() -> SMSDispatchService:
    global _sms_service
    if _sms_service is None:
        _sms_service = SMSDispatchService(
            leads=get_lead_repository(),
            tenant_configs=get_tenant_config_repository(),
            limiter=get_rate_limiter(),
            composer=get_message_composer(),
            tracker=get_attempt_tracker(),
            provider=get_twilio_sms_provider(),
        )
    return _sms_service


def get_call_gateway() -> CallOriginationGateway:
    global _call_gateway
    if _call_gateway is None:
        settings = get_settings()
        ami_defaults = get_config_manager().get("telephony.ami", {}) or {}
        _call_gateway = CallOriginationGateway(
            get_call_log_repository(),
            tracker=get_attempt_tracker(),
            leads=get_lead_repository(),
            limiter=get_rate_limiter(),
            response_timeout=settings.ami_response_timeout,
            connect_timeout=settings.ami_connect_timeout,
            channel_technology=ami_defaults.get("channel_technology", CHANNEL_TECHNOLOGY),
            default_exten=ami_defaults.get("default_exten", DEFAULT_EXTEN),
            default_priority=ami_defaults.get("default_priority", DEFAULT_PRIORITY),
            originate_timeout_ms=ami_defaults.get("originate_timeout_ms", DEFAULT_ORIGINATE_TIMEOUT_MS),
        )
    return _call_gateway
