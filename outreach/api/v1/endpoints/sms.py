"""
SMS Endpoints
Manual SMS dispatch and per-lead contact history
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from outreach.api.v1.dependencies import get_sms_dispatch_service
from outreach.core.tenant_middleware import require_tenant
from outreach.domain.errors import InvalidTenantConfig, LeadNotFoundError
from outreach.services.sms_service import SMSDispatchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])


class SendSMSRequest(BaseModel):
    """Manual send request"""
    template: str = "default"
    custom_data: Dict[str, Any] = Field(default_factory=dict, alias="customData")

    model_config = {"populate_by_name": True}


@router.post("/send/{lead_id}")
async def send_sms(
    lead_id: str,
    body: Optional[SendSMSRequest] = None,
    tenant_id: str = Depends(require_tenant),
    service: SMSDispatchService = Depends(get_sms_dispatch_service)
):
    """
    Send a templated SMS to one lead.

    A deferred result (tenant at capacity) is returned with 429.
    """
    body = body or SendSMSRequest()
    try:
        result = await service.send(
            lead_id,
            template_name=body.template,
            custom_data=body.custom_data,
            tenant_id=tenant_id,
        )
    except LeadNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except InvalidTenantConfig as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    if result.deferred:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=result.error)

    return result.to_dict()


@router.get("/history/{lead_id}")
async def sms_history(
    lead_id: str,
    tenant_id: str = Depends(require_tenant),
    service: SMSDispatchService = Depends(get_sms_dispatch_service)
):
    """Get a lead's contact attempt history."""
    try:
        history = await service.history(lead_id, tenant_id=tenant_id)
    except LeadNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    return {"leadId": lead_id, "history": history}
