from abc import ABC, abstractmethod


class Channel(ABC):
    """A notification channel. `send` returns True on delivery, False or raises on failure."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def is_subscribed(self, recipient) -> bool:
        """Whether this recipient has linked this channel."""
        pass

    @abstractmethod
    async def send(self, user_id: str, message: str, payload: dict) -> bool:
        pass
