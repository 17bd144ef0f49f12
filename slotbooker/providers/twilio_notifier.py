import asyncio
import logging
import re

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from slotbooker.config import settings
from slotbooker.providers.notifier_base import NotificationResult, Notifier

logger = logging.getLogger(__name__)

HTML_TAG = re.compile(r"</?[a-z]+>")


class TwilioNotifier(Notifier):
    """Twilio implementation of the notifier interface.

    Supports both SMS and WhatsApp channels via the twilio_channel setting.
    WhatsApp uses the same Twilio Messages API but with 'whatsapp:' prefix on phone numbers.
    """

    def __init__(self, to_number: str | None = None) -> None:
        self._client: Client | None = None
        self._to_number = to_number or settings.user_phone_number

    @property
    def client(self) -> Client:
        """Lazily initialize and return the Twilio client."""
        if self._client is None:
            self._client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return self._client

    @property
    def is_whatsapp(self) -> bool:
        """Check if WhatsApp channel is configured."""
        return settings.twilio_channel.lower() == "whatsapp"

    def _format_phone_for_channel(self, phone_number: str) -> str:
        """
        Format a phone number for the configured channel.

        For WhatsApp, adds 'whatsapp:' prefix if not already present.
        For SMS, returns the number as-is (E.164 format).
        """
        if self.is_whatsapp and not phone_number.startswith("whatsapp:"):
            return f"whatsapp:{phone_number}"
        return phone_number

    async def send_message(self, text: str) -> NotificationResult:
        """
        Send a message via Twilio (SMS or WhatsApp based on channel setting).

        The Twilio client is synchronous, so the request runs in a worker thread.
        """
        body = HTML_TAG.sub("", text)
        try:
            result = await asyncio.to_thread(
                self.client.messages.create,
                body=body,
                from_=self._format_phone_for_channel(settings.twilio_phone_number),
                to=self._format_phone_for_channel(self._to_number),
            )
            return NotificationResult(success=True, message_id=result.sid)
        except TwilioException as e:
            channel = "WhatsApp" if self.is_whatsapp else "SMS"
            logger.error(f"Error sending {channel}: {e}")
            return NotificationResult(success=False, error_message=str(e))
