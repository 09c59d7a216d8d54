"""Configuration management for adwatch."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, PrivateAttr, TypeAdapter, ValidationError, field_validator

from .errors import ConfigLoadError, InvalidConfiguration

DEFAULT_CONFIG_PATH = "config/sites.yaml"
DEFAULT_PERIOD_SECONDS = 300
MIN_PERIOD_SECONDS = 15
PERIOD_FLOOR_SECONDS = 30
DEFAULT_ACTION_SELECTOR = 'a[onclick*="UpdateModifiedDate"], button.bump, a.bump'
DEFAULT_ACTION_LABELS = ["нет", "Свободно"]

WaitUntil = Literal["load", "domcontentloaded", "networkidle", "commit"]


class AdClick(BaseModel):
    """How the first listing link is opened."""
    navigate: bool = Field(default=True, description="Clicking the ad link triggers a navigation")
    wait_until: WaitUntil = Field(default="domcontentloaded", description="Navigation wait policy")


class LoginConfig(BaseModel):
    """Login form descriptor for bump sites."""
    url: str = Field(min_length=1, description="Login page URL")
    username_selector: str = Field(min_length=1)
    password_selector: str = Field(min_length=1)
    submit_selector: Optional[str] = Field(default=None, description="Submit control; Enter is pressed when absent")
    username: str = ""
    password: str = ""
    open_selector: Optional[str] = Field(default=None, description="Control that reveals the login form")
    open_click_navigates: bool = False
    modal_selector: Optional[str] = Field(default=None, description="Login modal waited for after the open control")


class _SiteBase(BaseModel):
    id: str = Field(min_length=1, description="Site identifier")
    disabled: bool = False
    period_seconds: int = Field(default=DEFAULT_PERIOD_SECONDS, ge=MIN_PERIOD_SECONDS)
    ephemeral_session: bool = Field(default=False, description="Run each tick in a throwaway browser profile")

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @property
    def effective_period(self) -> int:
        return max(PERIOD_FLOOR_SECONDS, int(self.period_seconds))


class MonitorSite(_SiteBase):
    """A listing page whose top slot must show one of our phones."""
    type: Literal["monitor"] = "monitor"
    list_url: str = Field(min_length=1)
    ad_link_selector: Optional[str] = Field(default=None, description="Link to the first listing")
    phone_selector: str = Field(min_length=1)
    show_phone_selector: Optional[str] = Field(default=None, description="Control that reveals the phone")
    phone_dialog_selectors: list[str] = Field(default_factory=list)
    ad_click: AdClick = Field(default_factory=AdClick)


class BumpSite(_SiteBase):
    """A logged-in account whose own listings are periodically renewed."""
    type: Literal["bump"] = "bump"
    login: LoginConfig
    target_urls: list[str] = Field(default_factory=list)
    action_selector: str = Field(default=DEFAULT_ACTION_SELECTOR, min_length=1)
    action_function: Optional[str] = Field(default=None, description="Registered action function name")
    action_labels: list[str] = Field(default_factory=lambda: list(DEFAULT_ACTION_LABELS))
    press_sleep_seconds: float = Field(default=0.0, ge=0.0)
    max_total_presses: Optional[int] = Field(default=None, ge=1)

    _action: Any = PrivateAttr(default=None)

    @field_validator("target_urls")
    @classmethod
    def _dedupe_urls(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for url in value:
            url = str(url or "").strip()
            if url and url not in seen:
                seen.append(url)
        if not seen:
            raise ValueError("at least one target URL is required")
        return seen

    @property
    def action(self):
        """The resolved action function, or None for the default press."""
        return self._action


Site = Annotated[Union[MonitorSite, BumpSite], Field(discriminator="type")]
_SITE_ADAPTER: TypeAdapter = TypeAdapter(Site)


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    parts = [str(p) for p in first.get("loc", ())]
    # Discriminated unions prefix the location with the matched tag.
    if parts and parts[0] in ("monitor", "bump"):
        parts = parts[1:]
    loc = ".".join(parts)
    msg = first.get("msg", "invalid value")
    return f'invalid "{loc}": {msg}' if loc else msg


def site_key(entry: Any, index: int) -> str:
    if isinstance(entry, dict):
        sid = str(entry.get("id") or "").strip()
        if sid:
            return sid
    return f"site#{index}"


def parse_site(entry: Any) -> MonitorSite | BumpSite:
    """Validate one raw site entry.

    Raises InvalidConfiguration with a short human readable reason. Named
    action functions are resolved here so an unknown name never reaches a
    bump run.
    """
    from .bump.actions import ACTIONS

    if not isinstance(entry, dict):
        raise InvalidConfiguration(f"site entry must be a mapping, got {type(entry).__name__}")

    sid = str(entry.get("id") or "").strip() or None
    try:
        site = _SITE_ADAPTER.validate_python(entry)
    except ValidationError as exc:
        raise InvalidConfiguration(_describe_validation_error(exc), site_id=sid) from exc

    if isinstance(site, BumpSite) and site.action_function:
        site._action = ACTIONS.resolve(site.action_function, site_id=site.id)
    return site


class AppConfig(BaseModel):
    """Operator phones plus the raw, per-tick validated site entries."""
    phones: list[str] = Field(default_factory=list)
    sites: list[Any] = Field(default_factory=list)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load the site roster from YAML (or JSON)."""
    if path is None:
        path = os.getenv("ADWATCH_CONFIG", DEFAULT_CONFIG_PATH)
    path = Path(path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigLoadError(f"cannot read {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigLoadError(f"{path}: top level must be a mapping")

    phones = data.get("phones") or []
    sites = data.get("sites") or []
    if not isinstance(phones, list) or not isinstance(sites, list):
        raise ConfigLoadError(f"{path}: 'phones' and 'sites' must be lists")
    return AppConfig(phones=[str(p) for p in phones], sites=list(sites))


def is_disabled(entry: Any) -> bool:
    return isinstance(entry, dict) and bool(entry.get("disabled"))


def entry_period(entry: Any) -> int:
    """Scheduling period for a raw entry, floored even when it is invalid."""
    raw = entry.get("period_seconds") if isinstance(entry, dict) else None
    try:
        period = int(raw) if raw else DEFAULT_PERIOD_SECONDS
    except (TypeError, ValueError):
        period = DEFAULT_PERIOD_SECONDS
    return max(PERIOD_FLOOR_SECONDS, period)


class RuntimeSettings(BaseModel):
    """Process-level settings taken from the environment."""
    config_path: str = Field(default=DEFAULT_CONFIG_PATH)
    log_level: str = Field(default="INFO")
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")
    state_path: str = Field(default="data/state.json", description="Latch store location")
    profile_dir: str = Field(default=".chrome-profile", description="Base path of per-site browser profiles")
    browser_headless: bool = True
    chromium_path: Optional[str] = None
    info_dedup_forever: bool = Field(
        default=True,
        description="Suppress identical informational messages even after the cooldown",
    )


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def load_settings() -> RuntimeSettings:
    env_overrides = {
        "config_path": os.getenv("ADWATCH_CONFIG"),
        "log_level": os.getenv("LOG_LEVEL"),
        "telegram_bot_token": os.getenv("TELEGRAM_BOT_TOKEN"),
        "telegram_chat_id": os.getenv("TELEGRAM_CHAT_ID"),
        "state_path": os.getenv("ADWATCH_STATE_PATH"),
        "profile_dir": os.getenv("ADWATCH_PROFILE_DIR"),
        "browser_headless": os.getenv("BROWSER_HEADLESS"),
        "chromium_path": os.getenv("CHROMIUM_PATH"),
        "info_dedup_forever": os.getenv("ADWATCH_INFO_DEDUP_FOREVER"),
    }

    data: dict[str, Any] = {}
    for key, value in env_overrides.items():
        if value is None:
            continue
        if key in ("browser_headless", "info_dedup_forever"):
            data[key] = _env_bool(value)
        else:
            data[key] = value
    return RuntimeSettings(**data)
