"""Outbound webhook channel for agents: JSON POST signed with HMAC-SHA256."""
import hashlib
import hmac
import json
import httpx

from lpmonitor.channels.base import Channel
from lpmonitor.db import repository
from lpmonitor.errors import DeliveryFailure

USER_AGENT = "lp-position-monitor/1.0"


def sign_payload(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookChannel(Channel):
    def __init__(self, timeout: float = 10):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "webhook"

    def is_subscribed(self, recipient) -> bool:
        return bool(recipient and recipient.webhook_url)

    async def send(self, user_id: str, message: str, payload: dict) -> bool:
        recipient = repository.get_recipient(user_id)
        if not recipient or not recipient.webhook_url:
            return False

        body = json.dumps({**payload, "message": message}, default=str).encode()
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if recipient.webhook_secret:
            headers["X-Signature"] = sign_payload(body, recipient.webhook_secret)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(recipient.webhook_url, content=body, headers=headers)

        if not 200 <= resp.status_code < 300:
            raise DeliveryFailure(f"{recipient.webhook_url} returned HTTP {resp.status_code}")
        return True
