"""Bridge configuration loaded from a YAML file, with hot reload.

A :class:`Config` is an immutable snapshot.  :class:`ConfigSource` watches the
file's modification time and swaps in a complete new snapshot when it
changes, so readers always see either the old or the new configuration.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from uplinkbridge._constants import (
    DEFAULT_INTERVAL,
    DEFAULT_TOPIC_PREFIX,
    MQTT_PORT,
    TOKEN_DIR,
)
from uplinkbridge.codec import DEFAULT_DIVISORS, ParameterBatch, ParameterId, split_into_batches
from uplinkbridge.errors import ConfigError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class MqttSettings:
    """Broker connection settings; a change requires a reconnect."""

    host: str
    port: int = MQTT_PORT
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class Config:
    client_id: str
    client_secret: str
    system_id: int | None = None
    parameters: tuple[ParameterId, ...] = ()
    mqtt_host: str = "localhost"
    mqtt_port: int = MQTT_PORT
    mqtt_username: str = ""
    mqtt_password: str = ""
    interval: float = DEFAULT_INTERVAL
    log_level: str = "INFO"
    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    scaling: Mapping[ParameterId, float] = field(default_factory=lambda: dict(DEFAULT_DIVISORS))
    token_dir: Path = TOKEN_DIR

    @property
    def batches(self) -> list[ParameterBatch]:
        """The configured parameter ids, split into API-sized batches."""
        return split_into_batches(self.parameters)

    @property
    def mqtt_settings(self) -> MqttSettings:
        return MqttSettings(
            self.mqtt_host, self.mqtt_port, self.mqtt_username, self.mqtt_password
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[object, object]) -> Config:
        """Validate a decoded config file.

        Keys may carry a leading colon (``:client_id:``) as written by older
        versions of the authorization wizard.
        """
        data = {str(k).lstrip(":"): v for k, v in raw.items()}

        for key in ("client_id", "client_secret"):
            if not data.get(key):
                raise ConfigError(f"{key} is required")

        parameters = data.get("parameters") or []
        if isinstance(parameters, (str, int)):
            parameters = [parameters]
        if not isinstance(parameters, list):
            raise ConfigError(f"parameters={parameters!r} must be a list of ids")

        log_level = str(data.get("log_level") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level={log_level!r} must be one of {', '.join(LOG_LEVELS)}")

        scaling = dict(DEFAULT_DIVISORS)
        extra = data.get("scaling") or {}
        if not isinstance(extra, Mapping):
            raise ConfigError("scaling must be a mapping of parameter id to divisor")
        for pid, divisor in extra.items():
            scaling[_parameter_id(pid)] = _number("scaling", divisor, 0.0001, 1e9)

        system_id = data.get("system_id")
        return cls(
            client_id=str(data["client_id"]),
            client_secret=str(data["client_secret"]),
            system_id=None if system_id in (None, "") else _integer("system_id", system_id),
            parameters=tuple(_parameter_id(p) for p in parameters),
            mqtt_host=str(data.get("mqtt_host") or "localhost"),
            mqtt_port=_integer("mqtt_port", data.get("mqtt_port", MQTT_PORT), 1, 65535),
            mqtt_username=str(data.get("mqtt_username") or ""),
            mqtt_password=str(data.get("mqtt_password") or ""),
            interval=_number("interval", data.get("interval", DEFAULT_INTERVAL), 5, 3600),
            log_level=log_level,
            topic_prefix=_topic_prefix(data.get("topic_prefix") or DEFAULT_TOPIC_PREFIX),
            scaling=scaling,
            token_dir=Path(str(data.get("token_dir") or TOKEN_DIR)).expanduser(),
        )

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> Config:
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigError(f"Config file {path} does not exist") from None
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls.from_mapping(raw)

    def to_mapping(self) -> dict[str, object]:
        """Plain-data form suitable for :func:`yaml.safe_dump`."""
        data: dict[str, object] = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "system_id": self.system_id,
            "parameters": list(self.parameters),
            "mqtt_host": self.mqtt_host,
            "mqtt_port": self.mqtt_port,
            "mqtt_username": self.mqtt_username,
            "mqtt_password": self.mqtt_password,
            "interval": self.interval,
            "log_level": self.log_level,
            "topic_prefix": self.topic_prefix,
        }
        extra = {k: v for k, v in self.scaling.items() if DEFAULT_DIVISORS.get(k) != v}
        if extra:
            data["scaling"] = extra
        if self.token_dir != TOKEN_DIR:
            data["token_dir"] = str(self.token_dir)
        return data

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write the configuration; the file holds secrets, so it is owner-only."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(self.to_mapping(), sort_keys=False))
        target.chmod(0o600)
        logger.info("Saved configuration to %s", target)

    def log_summary(self) -> None:
        logger.info(
            "Config: system=%s parameters=%d batches=%d interval=%.0fs mqtt=%s:%d prefix=%s",
            self.system_id, len(self.parameters), len(self.batches), self.interval,
            self.mqtt_host, self.mqtt_port, self.topic_prefix,
        )


class ConfigSource:
    """Hold the current :class:`Config` and reload it when the file changes."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._mtime = self._stat()
        self._config = Config.load(self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def current(self) -> Config:
        return self._config

    def changed(self) -> bool:
        """True when the file's modification time differs from the last load."""
        return self._stat() != self._mtime

    def reload(self) -> Config:
        """Load a new snapshot and swap it in.

        On :class:`ConfigError` the previous snapshot stays active and the
        error propagates to the caller.
        """
        mtime = self._stat()
        config = Config.load(self._path)
        self._mtime = mtime
        self._config = config
        return config

    def _stat(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None


def _integer(key: str, raw: object, min_val: int | None = None, max_val: int | None = None) -> int:
    try:
        val = int(str(raw))
    except (ValueError, TypeError):
        raise ConfigError(f"{key}={raw!r} is not a valid integer") from None
    if (min_val is not None and val < min_val) or (max_val is not None and val > max_val):
        raise ConfigError(f"{key}={val} out of range [{min_val}, {max_val}]")
    return val


def _number(key: str, raw: object, min_val: float, max_val: float) -> float:
    try:
        val = float(str(raw))
    except (ValueError, TypeError):
        raise ConfigError(f"{key}={raw!r} is not a valid number") from None
    if not (min_val <= val <= max_val):
        raise ConfigError(f"{key}={val} out of range [{min_val}, {max_val}]")
    return val


def _parameter_id(raw: object) -> ParameterId:
    text = str(raw).strip()
    return int(text) if text.isdigit() else text


def _topic_prefix(raw: object) -> str:
    prefix = str(raw).strip("/")
    if not prefix or any(c in prefix for c in "#+ "):
        raise ConfigError(f"topic_prefix contains invalid characters: {raw!r}")
    return prefix
