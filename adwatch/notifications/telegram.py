from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from ..errors import TelegramDeliveryError

logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_API = "https://api.telegram.org"


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


class TelegramTransport:
    """Bot API delivery: send (chunked) and delete messages in one chat."""

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig):
        self.client = client
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    def _redact(self, msg: str) -> str:
        if self.config.bot_token:
            msg = msg.replace(self.config.bot_token, "<redacted>")
        return msg

    async def _call(self, method: str, payload: dict) -> dict:
        url = f"{TELEGRAM_API}/bot{self.config.bot_token}/{method}"
        try:
            resp = await self.client.post(url, json=payload, timeout=15.0)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TelegramDeliveryError(self._redact(f"{method}: {type(e).__name__}: {e}")) from None
        if not data.get("ok"):
            raise TelegramDeliveryError(f"{method}: {data.get('description') or 'not ok'}")
        return data

    async def send(self, text: str) -> list[int]:
        """Send text, split into chunks if needed; returns the message ids."""
        ids: list[int] = []
        for part in split_telegram_message(text):
            data = await self._call(
                "sendMessage",
                {"chat_id": self.config.chat_id, "text": part, "disable_web_page_preview": True},
            )
            result = data.get("result")
            if isinstance(result, dict) and result.get("message_id") is not None:
                ids.append(int(result["message_id"]))
        return ids

    async def delete(self, message_id: int) -> bool:
        await self._call("deleteMessage", {"chat_id": self.config.chat_id, "message_id": int(message_id)})
        return True
