"""Domain models"""

from .lead import (
    ContactStatus,
    Channel,
    AttemptStatus,
    AttemptRecord,
    Lead,
    utc_now,
)

from .call_log import (
    CallStatus,
    CallLog,
    TERMINAL_CALL_STATUSES,
    can_transition,
)

from .tenant_config import (
    AMIConfig,
    TenantDispatchConfig,
)
