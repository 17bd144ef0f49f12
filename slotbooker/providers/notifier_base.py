from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class NotificationResult:
    success: bool
    message_id: str | None = None
    error_message: str | None = None


class Notifier(ABC):
    """Abstract base class for outbound notification channels."""

    @abstractmethod
    async def send_message(self, text: str) -> NotificationResult:
        """
        Send a message to the operator.

        Args:
            text: The message content. May contain simple HTML (<b>...</b>);
                channels that cannot render it strip the tags.

        Returns:
            NotificationResult with success status and message id or error.
        """
        pass

    @property
    def channel(self) -> str:
        return type(self).__name__.removesuffix("Notifier").lower()
