"""
Webhooks API Endpoints
Handles delivery status callbacks from the SMS provider (Twilio)
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from outreach.api.v1.dependencies import get_status_reconciler
from outreach.domain.services.status_reconciler import StatusReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Twilio posts form-encoded bodies; JSON is accepted for test tooling."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return await request.json()
    form = await request.form()
    return dict(form)


@router.post("/sms/status", response_class=PlainTextResponse)
async def sms_status_callback(
    request: Request,
    reconciler: StatusReconciler = Depends(get_status_reconciler)
):
    """
    Handle SMS delivery status callback.

    Always acknowledges with 200 once the payload is processed, including
    for unknown message ids, so the provider does not retry forever.
    """
    try:
        data = await _read_payload(request)
        message_sid = data.get("MessageSid")
        message_status = data.get("MessageStatus")

        logger.info(f"SMS status webhook: {message_sid} -> {message_status}")

        if message_sid and message_status:
            await reconciler.apply_callback_status(message_sid, message_status)
        else:
            logger.warning("SMS status webhook missing MessageSid or MessageStatus")

        return PlainTextResponse("OK", status_code=200)

    except Exception as e:
        logger.error(f"Error processing SMS status webhook: {e}", exc_info=True)
        return PlainTextResponse("Error processing webhook", status_code=500)
