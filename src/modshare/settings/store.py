"""
JSON-backed settings store.

The services are built once from `load_effective()`. Later changes are
written immediately but only take effect on the next start;
`pending_restart()` lists the settings that differ from the ones in effect.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import fields
from pathlib import Path
from typing import Any, Optional

from .models import GlobalSettings

logger = logging.getLogger(__name__)

SETTING_KEYS = frozenset(f.name for f in fields(GlobalSettings))


def changed_keys(before: dict[str, Any], after: dict[str, Any]) -> list[str]:
    """Top-level persisted keys whose values differ, sorted."""
    return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))


class SettingsStore:
    def __init__(self, *, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._effective: Optional[dict[str, Any]] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> GlobalSettings:
        with self._lock:
            if not self._path.exists():
                return GlobalSettings()

            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
                return GlobalSettings()

            if not isinstance(raw, dict):
                logger.warning("Ignoring settings file %s: expected a JSON object", self._path)
                return GlobalSettings()

            return GlobalSettings.from_persist_dict(raw)

    def load_effective(self) -> GlobalSettings:
        """Load the settings this run is built from and remember them."""
        with self._lock:
            settings = self.load()
            self._effective = settings.to_persist_dict()
            return settings

    def pending_restart(self) -> list[str]:
        """Settings saved since `load_effective()` that the running services do not use yet."""
        with self._lock:
            if self._effective is None:
                return []
            return changed_keys(self._effective, self.load().to_persist_dict())

    def save(self, settings: GlobalSettings) -> None:
        payload = settings.to_persist_dict()

        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
            tmp_path.replace(self._path)

    def update(self, *, mutator) -> GlobalSettings:
        """
        Apply `mutator` to the stored settings and persist the result.

        Nothing is written when the mutator changes nothing. Changed key
        names are logged, never their values.
        """
        with self._lock:
            current = self.load()
            before = current.to_persist_dict()
            updated = mutator(current)
            if not isinstance(updated, GlobalSettings):
                raise TypeError("mutator must return GlobalSettings")

            changed = changed_keys(before, updated.to_persist_dict())
            if not changed:
                return updated

            self.save(updated)
            logger.info("Settings changed: %s", ", ".join(changed))
            return updated

    def clear_account(self) -> GlobalSettings:
        def mutate(settings: GlobalSettings) -> GlobalSettings:
            settings.account = None
            return settings

        return self.update(mutator=mutate)

    def set_value(self, *, key: str, value: Any) -> GlobalSettings:
        if key not in SETTING_KEYS:
            raise KeyError(key)

        def mutate(settings: GlobalSettings) -> GlobalSettings:
            setattr(settings, key, value)
            return settings

        return self.update(mutator=mutate)
