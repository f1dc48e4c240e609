"""
Tenant Dispatch Config Model
Per-tenant settings for SMS dispatch and AMI call origination
"""
from pydantic import BaseModel, Field
from typing import Dict, Optional


class AMIConfig(BaseModel):
    """
    Asterisk Manager Interface endpoint for a tenant.

    Stored in the tenants table as JSONB in the ami_config column.
    """
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    trunk: Optional[str] = None
    context: Optional[str] = None
    # None falls back to the gateway defaults
    exten: Optional[str] = None
    priority: Optional[int] = None

    def is_complete(self) -> bool:
        """Host and port are the minimum needed to open a session."""
        return bool(self.host) and bool(self.port)


class TenantDispatchConfig(BaseModel):
    """
    Tenant-configurable dispatch settings.

    Read-only to the dispatch core; owned by tenant management.
    """
    tenant_id: str
    company_name: Optional[str] = None
    default_message: Optional[str] = None
    sms_from_number: Optional[str] = None
    sms_templates: Dict[str, str] = Field(default_factory=dict)

    # Quotas
    hourly_limit: Optional[int] = Field(
        default=None,
        ge=0,
        description="Maximum SMS sends and call originations per hour (None = global default)"
    )
    max_concurrent: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum simultaneous in-flight dispatches (None = global default)"
    )

    ami: Optional[AMIConfig] = None

    @classmethod
    def default(cls, tenant_id: str) -> "TenantDispatchConfig":
        """Config used when tenant management has nothing stored."""
        return cls(tenant_id=tenant_id)

    @classmethod
    def from_dict(cls, data: dict) -> "TenantDispatchConfig":
        """Create from a database row."""
        data = dict(data)
        ami = data.pop("ami_config", None) or data.pop("ami", None)
        if ami:
            data["ami"] = AMIConfig(**ami)
        return cls(**data)
