"""
Twilio SMS Provider
SMS implementation using the Twilio Messaging API.
"""
import asyncio
import logging
import re
from typing import Optional

from twilio.rest import Client as TwilioClient
from twilio.base.exceptions import TwilioRestException

from outreach.core.config import Settings, get_settings
from .base import SMSProvider, SMSResult

logger = logging.getLogger(__name__)

_FORMATTING = re.compile(r"[\s\-().]")


def normalize_number(number: str) -> str:
    """
    Strip formatting and add the leading + Twilio expects for E.164.

    Numbers shorter than 10 digits are returned without a prefix.
    """
    number = _FORMATTING.sub("", number)
    if not number.startswith("+") and len(number) >= 10:
        number = "+" + number
    return number


class TwilioSMSProvider(SMSProvider):
    """
    Twilio SMS provider.

    Uses credentials from settings:
    - TWILIO_ACCOUNT_SID
    - TWILIO_AUTH_TOKEN
    - TWILIO_PHONE_NUMBER (default sender)
    - SMS_STATUS_CALLBACK_URL (optional delivery webhook)

    The Twilio REST client is synchronous; sends run in a worker thread so
    the event loop is never blocked.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[TwilioClient] = None):
        settings = settings or get_settings()
        self._account_sid = settings.twilio_account_sid
        self._auth_token = settings.twilio_auth_token
        self._default_from = settings.twilio_phone_number
        self._status_callback = settings.sms_status_callback_url
        self._client = client

    @property
    def provider_name(self) -> str:
        return "twilio"

    def is_configured(self) -> bool:
        """Check if Twilio credentials are configured."""
        return self._client is not None or bool(self._account_sid and self._auth_token)

    def _ensure_client(self) -> TwilioClient:
        if self._client is None:
            self._client = TwilioClient(self._account_sid, self._auth_token)
            logger.info("TwilioSMSProvider initialized")
        return self._client

    async def send_sms(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None
    ) -> SMSResult:
        """
        Send an SMS via Twilio.

        Provider rejections (TwilioRestException) are returned as a failed
        SMSResult. Transport errors propagate to the caller.
        """
        to_number = normalize_number(to_number)
        from_number = from_number or self._default_from

        if not from_number:
            return SMSResult.rejected(
                to_number,
                "No from_number configured. Set TWILIO_PHONE_NUMBER environment variable."
            )

        client = self._ensure_client()
        create_kwargs = {"body": message, "from_": from_number, "to": to_number}
        if self._status_callback:
            create_kwargs["status_callback"] = self._status_callback

        logger.info(f"Sending SMS via Twilio: {from_number} -> {to_number[:6]}...")

        try:
            sent = await asyncio.to_thread(client.messages.create, **create_kwargs)
        except TwilioRestException as e:
            logger.error(f"Twilio SMS rejected ({e.code}): {e.msg}")
            return SMSResult.rejected(to_number, str(e.msg))

        logger.info(f"SMS sent successfully: {sent.sid}")

        return SMSResult(
            success=True,
            message_id=sent.sid,
            status=sent.status,
            to_number=to_number,
        )


# Singleton instance
_twilio_provider: Optional[TwilioSMSProvider] = None


def get_twilio_sms_provider() -> TwilioSMSProvider:
    """Get or create TwilioSMSProvider singleton."""
    global _twilio_provider
    if _twilio_provider is None:
        _twilio_provider = TwilioSMSProvider()
    return _twilio_provider
