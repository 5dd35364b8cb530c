"""
Outbound delivery through Twilio.

Routes depend on `get_sender()` rather than on the Twilio client directly,
so tests can swap in a fake through `app.dependency_overrides`.
"""

import logging
from typing import Optional

from twilio.rest import Client

from inbox.config import Settings, settings
from inbox.utils import WHATSAPP_PREFIX

logger = logging.getLogger(__name__)


class MessagingNotConfigured(RuntimeError):
    """Twilio credentials or the sender number for a channel are missing."""


class TwilioSender:
    """Sends SMS and WhatsApp messages with the Twilio REST client."""

    def __init__(self, config: Settings, client: Optional[Client] = None):
        self._config = config
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self._config.twilio_configured:
                raise MessagingNotConfigured("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set")
            self._client = Client(self._config.TWILIO_ACCOUNT_SID, self._config.TWILIO_AUTH_TOKEN)
        return self._client

    def _addresses(self, channel: str, to_phone: str) -> tuple[str, str]:
        if channel == "whatsapp":
            sender = self._config.TWILIO_WHATSAPP_NUMBER
            if not sender:
                raise MessagingNotConfigured("TWILIO_WHATSAPP_NUMBER not set")
            return WHATSAPP_PREFIX + sender, WHATSAPP_PREFIX + to_phone

        sender = self._config.TWILIO_PHONE_NUMBER
        if not sender:
            raise MessagingNotConfigured("TWILIO_PHONE_NUMBER not set")
        return sender, to_phone

    def send(self, channel: str, to_phone: str, body: str) -> str:
        """
        Send a message and return the provider message sid.

        Raises:
            MessagingNotConfigured: credentials or sender number missing
            twilio.base.exceptions.TwilioRestException: provider rejected the message
        """
        from_address, to_address = self._addresses(channel, to_phone)
        logger.info(f"Sending {channel} message to {to_phone}")
        message = self.client.messages.create(from_=from_address, to=to_address, body=body)
        logger.info(f"Provider accepted message: sid={message.sid}, status={message.status}")
        return message.sid


_sender: Optional[TwilioSender] = None


def get_sender() -> TwilioSender:
    """FastAPI dependency returning the process-wide sender."""
    global _sender
    if _sender is None:
        _sender = TwilioSender(settings)
    return _sender
