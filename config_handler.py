"""
Runtime settings of the transfer client, kept in a small JSON file.

Unlike configs.py these are user preferences: they may change between runs
and the file is rewritten by ``save()``. ``REVERSEQR_RELAY_URL`` in the
environment wins over the file for the relay address.
"""
import inspect
import json
import logging
import os
from typing import Any, TypedDict, Literal, overload

import configs

__all__ = ['ConfigHandler', 'ConfigDict']

logger = logging.getLogger(__name__)

RELAY_URL_ENV: str = "REVERSEQR_RELAY_URL"


class ConfigDict(TypedDict):
    relay_url: str
    verify_tls: bool
    auto_fetch_messages: bool
    show_verification_phrase: bool


BoolKeys = Literal['verify_tls', 'auto_fetch_messages', 'show_verification_phrase']
StrKeys = Literal['relay_url']
ConfigKey = BoolKeys | StrKeys


def create_default_config() -> ConfigDict:
    return ConfigDict(
            relay_url=configs.RELAY_URL,
            verify_tls=True,
            auto_fetch_messages=True,
            show_verification_phrase=True,
    )


def _check_relay_url(url: str) -> None:
    if not url.startswith(("http://", "https://")):
        raise ValueError(f"Relay URL must start with http:// or https://, got {url!r}")


class ConfigHandler:
    """
    Loads, validates and persists ``ConfigDict``.

    Missing keys keep their defaults, unknown keys are logged and ignored,
    a value of the wrong type is a ``ValueError``.
    """

    def __init__(self, config_file: str = "config.json") -> None:
        self.config_file: str = config_file
        self.config: ConfigDict = create_default_config()
        if not os.path.exists(self.config_file):
            ok, error = self.save()
            if not ok:
                logger.warning("Could not create %s: %s", self.config_file, error)
            self._apply_environment()
            return

        with open(self.config_file, "r", encoding="utf-8") as f:
            self._apply(json.load(f))

    def _apply(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            raise ValueError(f"{self.config_file} must contain a JSON object")

        merged = create_default_config()
        fields = inspect.get_annotations(ConfigDict)
        for key, value in raw.items():
            expected_type = fields.get(key)
            if expected_type is None:
                logger.warning("Unknown config key %r in %s, skipping", key, self.config_file)
                continue
            if not isinstance(value, expected_type):
                raise ValueError(f"Config value for key '{key}' must be of type {expected_type.__name__}")
            merged[key] = value  # type: ignore[literal-required]

        _check_relay_url(merged["relay_url"])
        self.config = merged
        self._apply_environment()

    def _apply_environment(self) -> None:
        relay_url = os.environ.get(RELAY_URL_ENV)
        if relay_url:
            _check_relay_url(relay_url)
            self.config["relay_url"] = relay_url

    @overload
    def __getitem__(self, key: BoolKeys) -> bool:
        ...

    @overload
    def __getitem__(self, key: StrKeys) -> str:
        ...

    def __getitem__(self, key: ConfigKey) -> bool | str:
        return self.config[key]

    @overload
    def __setitem__(self, key: BoolKeys, value: bool) -> None:
        ...

    @overload
    def __setitem__(self, key: StrKeys, value: str) -> None:
        ...

    def __setitem__(self, key: ConfigKey, value: bool | str) -> None:
        if key not in self.config:
            raise KeyError(f"Unknown config key '{key}'")
        expected_type = type(self.config[key])
        if not isinstance(value, expected_type):
            raise TypeError(f"Config value for key '{key}' must be of type {expected_type.__name__}")
        if key == "relay_url":
            _check_relay_url(value)  # type: ignore[arg-type]
        self.config[key] = value  # type: ignore[literal-required]

    def save(self) -> tuple[bool, str]:
        """:return: (success, error message)"""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            return False, e.strerror or str(e)
        return True, ""

    def reload(self) -> tuple[bool, str]:
        """Re-read the file. On failure the current settings stay in place."""
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                self._apply(json.load(f))
        except FileNotFoundError:
            return False, "Config file does not exist"
        except json.JSONDecodeError:
            return False, "Config file is not valid JSON"
        except ValueError as e:
            return False, str(e)
        return True, ""

    def __str__(self) -> str:
        return json.dumps(self.config, indent=4)
