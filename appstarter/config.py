import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import appstarter.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    Runtime view of the AppStarter settings.

    Values come from `settings.py` (which already folds in the environment and
    `.env`), then from `overrides.json` for the keys in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """
        :param overrides_path: Alternate overrides file, mainly for tests.
        """
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._apply_all(self._read_overrides())

    def _read_overrides(self) -> Dict[str, Any]:
        if not self.OVERRIDES_JSON_PATH.exists():
            return {}
        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return {}
        if not isinstance(overrides, dict):
            log.error(f"Overrides file '{self.OVERRIDES_JSON_PATH}' must contain a JSON object. Ignoring.")
            return {}
        log.info(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
        return overrides

    def _is_overridable(self, key: str) -> bool:
        if not hasattr(self, key):
            log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
            return False
        if key not in self.MODIFIABLE_SETTINGS:
            log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            return False
        return True

    def _apply_all(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Applies the overridable keys, coerced to the type of their default. Returns what was applied."""
        applied = {}
        for key, value in overrides.items():
            if not self._is_overridable(key):
                continue
            current = getattr(self, key)
            if isinstance(current, Path):
                value = Path(value)
            elif isinstance(current, bool):
                value = bool(value)
            setattr(self, key, value)
            applied[key] = value
            log.debug(f"Overridden setting: {key} = {value}")
        return applied

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Applies whitelisted settings and persists them to the overrides file.

        Keys already present in the file are kept unless replaced.

        :param overrides_to_save: Setting names mapped to their new values.
        """
        applied = self._apply_all(overrides_to_save)
        if not applied:
            log.warning("No modifiable settings provided to save.")
            return

        persisted = {**self._read_overrides(), **{k: str(v) if isinstance(v, Path) else v for k, v in applied.items()}}
        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(persisted, f, indent=4)
        except IOError as e:
            log.error(f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return
        log.info(f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}")


# Singleton instance to be imported by other modules
effective_settings = MergedSettings()
