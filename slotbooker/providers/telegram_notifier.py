import logging

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from slotbooker.config import settings
from slotbooker.providers.notifier_base import NotificationResult, Notifier

logger = logging.getLogger(__name__)


class TelegramNotifier(Notifier):
    """Sends operator messages to a Telegram chat through a bot."""

    def __init__(self, bot_token: str | None = None, chat_id: str | None = None) -> None:
        self._bot_token = bot_token or settings.telegram_bot_token
        self._chat_id = chat_id or settings.telegram_chat_id
        self._bot: Bot | None = None

    @property
    def bot(self) -> Bot:
        """Lazily initialize and return the Telegram bot."""
        if self._bot is None:
            self._bot = Bot(token=self._bot_token)
        return self._bot

    async def send_message(self, text: str) -> NotificationResult:
        try:
            message = await self.bot.send_message(
                chat_id=self._chat_id, text=text, parse_mode=ParseMode.HTML
            )
        except TelegramError as e:
            logger.error(f"Error sending Telegram message: {e}")
            return NotificationResult(success=False, error_message=str(e))

        return NotificationResult(success=True, message_id=str(message.message_id))
