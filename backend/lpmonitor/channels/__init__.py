from lpmonitor.channels.base import Channel
from lpmonitor.channels.telegram import TelegramChannel
from lpmonitor.channels.webhook import WebhookChannel


def build_channels(settings) -> dict[str, Channel]:
    channels: list[Channel] = [
        TelegramChannel(settings.telegram_bot_token),
        WebhookChannel(timeout=settings.delivery_timeout_seconds),
    ]
    return {c.name: c for c in channels}
