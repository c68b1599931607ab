"""Telegram message sender with retry logic."""
import asyncio
import httpx

from lpmonitor.channels.base import Channel
from lpmonitor.db import repository
from lpmonitor.log import log


async def send_message(
    bot_token: str,
    chat_id: str,
    text: str,
    parse_mode: str = "HTML",
    max_retries: int = 3,
) -> bool:
    if not bot_token or not chat_id:
        log("[telegram] Missing bot_token or chat_id", level="WARN")
        return False

    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}

    for attempt in range(max_retries):
        try:
            async with httpx.AsyncClient(timeout=15) as client:
                resp = await client.post(url, json=payload)
                data = resp.json()

                if resp.status_code == 200 and data.get("ok"):
                    return True

                if resp.status_code == 429:
                    retry_after = data.get("parameters", {}).get("retry_after", 5)
                    log(f"[telegram] Rate limited, waiting {retry_after}s", level="WARN")
                    await asyncio.sleep(retry_after)
                    continue

                log(f"[telegram] API error (attempt {attempt + 1}): {data}", level="WARN")

                if 400 <= resp.status_code < 500:
                    return False

        except httpx.TimeoutException:
            log(f"[telegram] Timeout (attempt {attempt + 1})", level="WARN")
        except (httpx.HTTPError, ValueError) as e:
            log(f"[telegram] Error (attempt {attempt + 1}): {e}", level="WARN")

        if attempt < max_retries - 1:
            await asyncio.sleep(2 ** attempt)

    return False


class TelegramChannel(Channel):
    def __init__(self, bot_token: str, max_retries: int = 1):
        self.bot_token = bot_token
        self.max_retries = max_retries

    @property
    def name(self) -> str:
        return "telegram"

    def is_subscribed(self, recipient) -> bool:
        return bool(self.bot_token and recipient and recipient.telegram_chat_id)

    async def send(self, user_id: str, message: str, payload: dict) -> bool:
        recipient = repository.get_recipient(user_id)
        if not recipient or not recipient.telegram_chat_id:
            return False
        return await send_message(self.bot_token, recipient.telegram_chat_id, message, max_retries=self.max_retries)
