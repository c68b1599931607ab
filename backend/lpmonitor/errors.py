class MonitorError(Exception):
    """Base class for monitoring errors."""


class ChainUnavailable(MonitorError):
    """Chain read failed after the retry budget was spent."""


class PositionNotFound(MonitorError):
    """The chain has no such position (closed or never existed)."""


class MalformedEvent(MonitorError):
    """Webhook payload could not be parsed or validated."""


class UnknownPosition(MonitorError):
    """Webhook references a position whose wallet is not tracked."""


class DeliveryFailure(MonitorError):
    """A notification channel could not deliver a message."""
