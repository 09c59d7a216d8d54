"""Deduplicating, superseding front for site notifications.

Messages are keyed by (site, topic). A repeat of the same normalized text
within the cooldown is dropped. Informational messages are remembered so
that the next alert or error for the same site can retract them.
"""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import structlog

from ..errors import TelegramDeliveryError

logger = structlog.get_logger(__name__)

DUPLICATE_COOLDOWN_SECONDS = 2 * 60 * 60

_WS_RE = re.compile(r"\s+")


class Severity(str, enum.Enum):
    INFO = "info"
    ALERT = "alert"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def supersedes_info(self) -> bool:
        return self in (Severity.ALERT, Severity.ERROR)


class Transport(Protocol):
    @property
    def configured(self) -> bool: ...

    async def send(self, text: str) -> list[int]: ...

    async def delete(self, message_id: int) -> bool: ...


@dataclass
class NotificationRecord:
    normalized_text: str
    sent_at: float
    related_message_ids: list[int] = field(default_factory=list)


def normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def notification_key(site_id: str, topic: str | None) -> tuple[str, str]:
    return (site_id or "").strip(), (topic or "").strip().lower()


class NotificationGateway:
    def __init__(
        self,
        transport: Transport,
        *,
        cooldown_seconds: float = DUPLICATE_COOLDOWN_SECONDS,
        info_dedup_forever: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.cooldown_seconds = cooldown_seconds
        # Identical informational text stays suppressed after the cooldown too.
        self.info_dedup_forever = info_dedup_forever
        self.clock = clock
        self._last: dict[tuple[str, str], NotificationRecord] = {}
        self._info_ids: dict[str, list[int]] = {}

    def info_message_ids(self, site_id: str) -> list[int]:
        return list(self._info_ids.get((site_id or "").strip(), []))

    def _is_duplicate(self, key: tuple[str, str], normalized: str, severity: Severity) -> bool:
        record = self._last.get(key)
        if record is None or record.normalized_text != normalized:
            return False
        if self.clock() - record.sent_at < self.cooldown_seconds:
            return True
        return severity is Severity.INFO and self.info_dedup_forever

    async def _retract_info(self, site_id: str) -> None:
        ids = self._info_ids.pop(site_id, [])
        for message_id in ids:
            try:
                await self.transport.delete(message_id)
            except TelegramDeliveryError as exc:
                logger.warning("Failed to retract info message", site_id=site_id, message_id=message_id, error=str(exc))
        if ids:
            logger.info("Retracted info messages", site_id=site_id, count=len(ids))

    async def notify(
        self,
        site_id: str,
        topic: str | None,
        text: str,
        severity: Severity = Severity.UNKNOWN,
        *,
        force: bool = False,
        prefix: str | None = None,
        header: bool = True,
    ) -> bool:
        """Send a site message unless it repeats the last one for this topic.

        Returns True when a message was delivered.
        """
        if not self.transport.configured:
            logger.warning("Telegram not configured, skipping notification", site_id=site_id, topic=topic)
            return False

        key = notification_key(site_id, topic)
        site_key = key[0]
        normalized = normalize_text(text)

        if not force and self._is_duplicate(key, normalized, severity):
            logger.debug("Duplicate notification suppressed", site_id=site_key, topic=key[1])
            return False

        if severity.supersedes_info:
            await self._retract_info(site_key)

        header_text = ""
        if header:
            header_text = " ".join(p for p in (f"[{site_key}]" if site_key else "", (topic or "").strip()) if p)
        display = " ".join(p for p in (prefix or "", header_text, text) if p).strip()

        try:
            ids = await self.transport.send(display)
        except TelegramDeliveryError as exc:
            logger.error("Failed to send notification", site_id=site_key, topic=key[1], error=str(exc))
            return False

        self._last[key] = NotificationRecord(normalized_text=normalized, sent_at=self.clock(), related_message_ids=ids)
        if severity is Severity.INFO:
            self._info_ids.setdefault(site_key, []).extend(ids)

        logger.info("Notification sent", site_id=site_key, topic=key[1], severity=severity.value)
        return True

    async def send_plain(self, text: str) -> bool:
        """Ungated broadcast, used before any site is known."""
        if not self.transport.configured:
            logger.warning("Telegram not configured, skipping notification")
            return False
        try:
            await self.transport.send(text)
        except TelegramDeliveryError as exc:
            logger.error("Failed to send notification", error=str(exc))
            return False
        return True

    def reset(self, site_id: str, topic: str | None = None) -> None:
        self._last.pop(notification_key(site_id, topic), None)

    def reset_all(self) -> None:
        self._last.clear()
