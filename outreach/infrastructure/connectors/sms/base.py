"""
SMS Provider Interface
Contract between SMSDispatchService and a concrete SMS gateway.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from outreach.domain.errors import DispatchFailed


@dataclass
class SMSResult:
    """
    Provider answer to one send.

    ``status`` is the provider's own delivery status at acceptance time
    (e.g. ``queued``, ``sent``). It seeds the attempt status and is later
    overwritten by delivery callbacks matched on ``message_id``.
    """
    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    to_number: str = ""
    error: Optional[str] = None

    @classmethod
    def rejected(cls, to_number: str, error: str) -> "SMSResult":
        return cls(success=False, to_number=to_number, error=error)

    def raise_for_rejection(self) -> None:
        """Raise DispatchFailed if the provider did not accept the message."""
        if not self.success:
            raise DispatchFailed(self.error)


class SMSProvider(ABC):
    """
    SMS gateway used by the dispatch core.

    A provider reports a rejection it understood (bad number, blocked
    sender) as ``SMSResult(success=False, error=...)``; the service turns
    that into DispatchFailed and a failed attempt. Transport failures are
    raised and handled the same way by the service. A provider never
    retries on its own: one call is one attempt on the lead's history.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None
    ) -> SMSResult:
        """
        Hand one message to the gateway.

        Returns as soon as the gateway accepts or rejects the message;
        delivery is reported later through the status webhook.
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """False when credentials are missing; the service then sends nothing."""
