"""
SMS Connectors Package
Provides SMS sending capabilities via various providers.
"""
from .base import SMSProvider, SMSResult
from .twilio_sms import TwilioSMSProvider, get_twilio_sms_provider

__all__ = [
    "SMSProvider",
    "SMSResult",
    "TwilioSMSProvider",
    "get_twilio_sms_provider",
]
