import json
import logging
from pathlib import Path
from typing import Dict, Any, Tuple

import ollama_manager.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    A singleton class that merges default settings with JSON overrides.

    This class provides a unified, attribute-based access point for all
    application configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from `overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides_path: Path = None) -> None:
        """Initializes the settings object by loading defaults and overrides."""
        self.OVERRIDES_JSON_PATH: Path = overrides_path or default_settings.OVERRIDES_JSON_PATH

        self._load_defaults()
        self._load_overrides()

    def _load_defaults(self) -> None:
        """
        Loads all uppercase attributes from the settings.py module as defaults.
        """
        for key in dir(default_settings):
            if key.isupper() and key != "OVERRIDES_JSON_PATH":
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the `overrides.json` file.

        It will only apply overrides for keys that are explicitly listed in
        the `MODIFIABLE_SETTINGS` set in `settings.py`.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)

            log.info(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
            for key, value in overrides.items():
                if not hasattr(self, key):
                    log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                    continue
                if key not in self.MODIFIABLE_SETTINGS:
                    log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                    continue
                try:
                    setattr(self, key, self._coerce(key, value))
                    log.debug(f"Overridden setting: {key} = {value}")
                except (ValueError, TypeError) as e:
                    log.warning(f"Ignoring override '{key}' with invalid value '{value}': {e}")
        except (json.JSONDecodeError, IOError) as e:
            log.error(
                f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )

    def _coerce(self, key: str, value: Any) -> Any:
        """Coerces a new value to the type of the current value of `key`."""
        original_value = getattr(self, key, None)
        if isinstance(original_value, bool):
            return str(value).lower() in ('true', '1', 't', 'yes', 'y')
        if isinstance(original_value, Path):
            return Path(value)
        if original_value is not None:
            return type(original_value)(value)
        return value

    def modifiable_values(self) -> Dict[str, Any]:
        """Returns the current value of every modifiable setting."""
        return {key: getattr(self, key, None) for key in sorted(self.MODIFIABLE_SETTINGS)}

    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Updates a modifiable setting in memory and persists all overrides.

        :param key: The setting name.
        :param value: The new value, coerced to the type of the default.
        :return: A (success, message) tuple.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            message = f"Setting '{key}' is not modifiable."
            log.warning(f"Rejected config update: {message}")
            return False, message

        try:
            new_value = self._coerce(key, value)
        except (ValueError, TypeError) as e:
            message = f"Could not convert value '{value}' for key '{key}'. Error: {e}"
            log.error(f"Config update failed: {message}")
            return False, message

        setattr(self, key, new_value)
        self.save_overrides(self.modifiable_values())
        message = f"Setting '{key}' updated to '{new_value}'. It applies from the next start."
        log.info(message)
        return True, message

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Saves the provided dictionary of settings to the overrides JSON file.

        Only keys present in `MODIFIABLE_SETTINGS` are persisted.

        :param overrides_to_save: A dictionary of settings to persist.
        """
        filtered_overrides = {
            key: value
            for key, value in overrides_to_save.items()
            if key in self.MODIFIABLE_SETTINGS
        }

        if not filtered_overrides:
            log.warning("No modifiable settings provided to save.")
            return

        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(filtered_overrides, f, indent=4)
            log.info(
                f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}"
            )
        except IOError as e:
            log.error(
                f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )

# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
