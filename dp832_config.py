"""Configuration for the DP832 terminal front-end.

Settings come from a YAML file (``--config`` or the user file
``$XDG_CONFIG_HOME/dp832-tui.yaml``) and the ``--address`` flag, which
overrides any configured address.

Requires: PyYAML (`pip install pyyaml`)
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "dp832-tui.yaml"


class ConfigError(Exception):
    """Configuration file missing, malformed or incomplete."""


@dataclass(frozen=True)
class Config:
    address: Optional[str] = None
    channel_count: int = 3
    tick_interval: float = 0.25
    sample_timeout: float = 0.25
    sample_attempts: int = 3
    settle_delay: float = 0.05
    read_timeout: float = 1.0

    def validate(self):
        if self.channel_count < 1:
            raise ConfigError(f"channel_count must be at least 1, got {self.channel_count}")
        if self.sample_attempts < 1:
            raise ConfigError(f"sample_attempts must be at least 1, got {self.sample_attempts}")
        for name in ("tick_interval", "sample_timeout", "settle_delay", "read_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")


# Accepted YAML types per field; ints are fine where floats are expected
_FIELD_TYPES = {
    "address": (str,),
    "channel_count": (int,),
    "tick_interval": (int, float),
    "sample_timeout": (int, float),
    "sample_attempts": (int,),
    "settle_delay": (int, float),
    "read_timeout": (int, float),
}


def user_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / CONFIG_FILENAME


def parse_config(data) -> Config:
    """Build a Config from a parsed YAML document."""
    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(map(str, unknown))}")

    for key, value in data.items():
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, _FIELD_TYPES[key]):
            raise ConfigError(f"Invalid value for {key}: {value!r}")

    config = Config(**data)
    config.validate()
    return config


def load_config_file(path) -> Config:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Failed to open configuration file at: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to load configuration from file at: {path}: {e}") from e
    logger.debug("Loaded configuration from %s", path)
    return parse_config(data)


def user_config() -> Optional[Config]:
    """The user configuration file, if one exists."""
    path = user_config_path()
    if path.is_file():
        return load_config_file(path)
    return None


def load_settings(config_path=None, address: Optional[str] = None) -> Config:
    """Resolve the effective settings.

    ``config_path`` replaces the user configuration file; ``address``
    overrides every configured address. Raises ConfigError when no address
    is available from either source.
    """
    if config_path is not None:
        config = load_config_file(config_path)
    else:
        config = user_config() or Config()

    if address:
        config = replace(config, address=address)
    if not config.address:
        raise ConfigError("DP832 address not provided")
    return config
