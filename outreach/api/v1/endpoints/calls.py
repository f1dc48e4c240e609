"""
Call Endpoints
Outbound call origination over AMI and call status updates
"""
import logging
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from outreach.api.v1.dependencies import (
    get_call_gateway,
    get_status_reconciler,
    get_tenant_config_repository,
)
from outreach.core.tenant_middleware import require_tenant
from outreach.domain.errors import (
    CallNotFoundError,
    InvalidParameters,
    InvalidStatusTransition,
    InvalidTenantConfig,
    OriginationFailed,
    RateLimitDeferred,
)
from outreach.domain.interfaces.repositories import TenantConfigRepository
from outreach.domain.services.status_reconciler import StatusReconciler
from outreach.infrastructure.telephony.call_origination import (
    CallOriginationGateway,
    OriginateParams,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


class OriginateRequest(BaseModel):
    """Outbound call request"""
    to: Optional[str] = None
    transfer_number: Optional[str] = None
    from_number: Optional[str] = Field(default=None, alias="from")
    trunk: Optional[str] = None
    context: Optional[str] = None
    exten: Optional[str] = None
    priority: Optional[int] = None
    timeout: Optional[int] = Field(default=None, description="Ring timeout in milliseconds")
    async_: Union[bool, str, None] = Field(default=True, alias="async")
    variables: Dict[str, Any] = Field(default_factory=dict)
    lead_id: Optional[str] = Field(default=None, alias="leadId")

    model_config = {"populate_by_name": True}


class CallStatusUpdate(BaseModel):
    """Call status update request"""
    status: str


@router.post("/originate")
async def originate_call(
    body: OriginateRequest,
    tenant_id: str = Depends(require_tenant),
    tenant_configs: TenantConfigRepository = Depends(get_tenant_config_repository),
    gateway: CallOriginationGateway = Depends(get_call_gateway)
):
    """
    Place an outbound call through the tenant's Asterisk server.

    Returns once the AMI Originate is acknowledged; call progress arrives
    later through PUT /calls/{call_id}/status. Originations share the
    tenant's SMS quota and concurrency gate; a deferral is returned with 429.
    """
    tenant = await tenant_configs.get_config(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

    params = OriginateParams(
        to=body.to,
        transfer_number=body.transfer_number,
        from_number=body.from_number,
        trunk=body.trunk,
        context=body.context,
        exten=body.exten,
        priority=body.priority,
        timeout=body.timeout,
        async_=body.async_,
        variables=body.variables,
        lead_id=body.lead_id,
    )

    try:
        result = await gateway.originate(tenant, params)
    except RateLimitDeferred as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.message)
    except (InvalidParameters, InvalidTenantConfig) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except OriginationFailed as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "AMI connection failed", "details": str(e.cause or e.message)},
        )

    return result.to_dict()


@router.put("/{call_id}/status")
async def update_call_status(
    call_id: str,
    body: CallStatusUpdate,
    tenant_id: str = Depends(require_tenant),
    reconciler: StatusReconciler = Depends(get_status_reconciler)
):
    """Move a call forward (answered, transferred, completed, failed)."""
    try:
        call_log = await reconciler.apply_call_status(tenant_id, call_id, body.status)
    except CallNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except InvalidParameters as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return {
        "id": call_log.id,
        "status": call_log.status,
        "startTime": call_log.start_time.isoformat(),
        "endTime": call_log.end_time.isoformat() if call_log.end_time else None,
        "duration": call_log.duration,
        "leadId": call_log.lead_id,
    }
