from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def _coerce_bool_dict(value: Any) -> dict[str, bool]:
    if not isinstance(value, dict):
        return {}
    return {str(k): bool(v) for k, v in value.items()}


def _write_state_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2), encoding="utf-8")
    tmp.replace(path)


class LatchStore:
    """Persisted "already alerted" flags, keyed like "<site>:selector"."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._notified = self._load()

    def _load(self) -> dict[str, bool]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read state file", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return _coerce_bool_dict(data.get("notified"))

    def _save(self) -> None:
        try:
            _write_state_atomic(self.path, {"notified": self._notified})
        except OSError as exc:
            logger.warning("Failed to write state file", path=str(self.path), error=str(exc))

    def is_set(self, key: str) -> bool:
        return self._notified.get(key, False)

    def mark_once(self, key: str) -> bool:
        """Set the latch; True only on the first call of an episode."""
        if self._notified.get(key):
            return False
        self._notified[key] = True
        self._save()
        return True

    def clear(self, key: str) -> bool:
        """Reset the latch; True if it was set."""
        if not self._notified.get(key):
            return False
        self._notified[key] = False
        self._save()
        return True

    def snapshot(self) -> dict[str, bool]:
        return dict(self._notified)
