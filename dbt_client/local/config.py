import json
import logging
from pathlib import Path
from typing import Any, Optional, Tuple

import dbt_client.settings as default_settings

log = logging.getLogger(__name__)


def _check_override(value: Any, default: Any) -> Tuple[bool, str]:
    """
    Checks an override against the shape of its default value.

    :return: (accepted, reason) where reason explains a rejection.
    """
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
            return False, "expected a list of non-empty strings"
    elif isinstance(default, dict):
        if not isinstance(value, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        ):
            return False, "expected an object mapping strings to strings"
    elif isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            return False, "expected a positive number"
    elif isinstance(default, str):
        if not isinstance(value, str) or not value.strip():
            return False, "expected a non-empty string"
    return True, ""


class MergedSettings:
    """
    The client settings: `settings.py` defaults with `overrides.json` applied.

    Precedence:
    1. Base values from `settings.py`.
    2. Environment and `.env` values read by `settings.py` (python-dotenv).
    3. `overrides.json` entries for keys in `MODIFIABLE_SETTINGS` whose value
       has the same shape as the default (list of globs, env mapping, timeout...).
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """
        :param overrides_path: Alternative location of the overrides file.
        """
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._load_overrides()

    def _load_overrides(self) -> None:
        """Applies the whitelisted, well-formed entries of `overrides.json`."""
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return

        if not isinstance(overrides, dict):
            log.error(f"Overrides file '{self.OVERRIDES_JSON_PATH}' must contain a JSON object. Ignoring.")
            return

        log.info(f"Loading client overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Setting '{key}' cannot be overridden. Ignoring.")
                continue

            accepted, reason = _check_override(value, getattr(default_settings, key))
            if not accepted:
                log.warning(f"Rejected override for '{key}' ({reason}): {value!r}")
                continue

            setattr(self, key, value)
            log.debug(f"Overridden setting: {key} = {value}")


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
