"""Error types raised by site tasks."""

from __future__ import annotations


class AdwatchError(Exception):
    """Base class for adwatch errors."""


class SelectorNotFound(AdwatchError):
    """A required control never appeared within its timeout."""

    def __init__(self, site_id: str, selector: str, stage: str):
        self.site_id = site_id
        self.selector = selector
        self.stage = stage
        super().__init__(f"Selector not found at stage='{stage}': {selector} [{site_id}]")


class InvalidConfiguration(AdwatchError):
    """A site entry failed structural validation."""

    def __init__(self, reason: str, site_id: str | None = None):
        self.reason = reason
        self.site_id = site_id
        super().__init__(reason if not site_id else f"{reason} [{site_id}]")


class UnknownActionFunction(InvalidConfiguration):
    def __init__(self, name: str, site_id: str | None = None):
        self.name = name
        super().__init__(f"action function '{name}' is not registered", site_id=site_id)


class ConfigLoadError(AdwatchError):
    """The site roster file could not be read at all."""


class TelegramDeliveryError(AdwatchError):
    """The Bot API rejected or failed a delivery."""
