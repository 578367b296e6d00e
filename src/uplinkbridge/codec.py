"""Conversion between raw API responses, MQTT payloads and commands.

Everything in this module is pure: no I/O and no logging.  Callers decide
what to publish and what to log.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Union

from uplinkbridge._constants import MAX_BATCH_SIZE
from uplinkbridge.errors import ParseError, UnknownCommand

ParameterId = Union[int, str]
ParameterBatch = tuple[ParameterId, ...]

# Raw value divisors.  Temperatures and pressures are reported in tenths,
# relative humidity in hundredths.
DEFAULT_DIVISORS: dict[ParameterId, float] = {
    40004: 10,
    40007: 10,
    40013: 10,
    40014: 10,
    40032: 10,
    40047: 10,
    40048: 10,
    40050: 10,
    40067: 10,
    40129: 10,
    43005: 10,
    43008: 10,
    43009: 10,
    43136: 10,
    43084: 100,
}

STATUS_ITEMS: tuple[str, ...] = (
    "Ventilation",
    "Heating Medium Pump",
    "Holiday",
    "Hot Water",
    "Compressor",
    "Addition",
    "Heating",
)

CONNECTION_STATUS: dict[str, int] = {"ONLINE": 0, "PENDING": 1}

ON = "ON"
OFF = "OFF"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SetMode:
    """Change the smart-home mode (``DEFAULT_OPERATION``, ``AWAY_FROM_HOME``...)."""

    value: str


@dataclass(frozen=True)
class SetParameter:
    """Write a single device parameter."""

    id: ParameterId
    value: str


@dataclass(frozen=True)
class SetThermostat:
    """Create or update a smart-home thermostat."""

    values: dict[str, object] = field(hash=False)


Command = Union[SetMode, SetParameter, SetThermostat]

COMMAND_FAMILIES = ("mode", "parameters", "thermostats")


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


def split_into_batches(
    ids: Sequence[ParameterId], max_size: int = MAX_BATCH_SIZE
) -> list[ParameterBatch]:
    """Split *ids* into consecutive batches of at most *max_size* ids.

    Order is preserved; only the last batch may be shorter.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be positive, got {max_size}")
    return [tuple(ids[i : i + max_size]) for i in range(0, len(ids), max_size)]


def parse_readings(raw: object) -> dict[ParameterId, object]:
    """Map ``parameterId`` to ``rawValue`` for a parameters read response."""
    items = _load(raw)
    if not isinstance(items, list):
        raise ParseError("Expected a list of parameters.")
    readings: dict[ParameterId, object] = {}
    for item in items:
        if isinstance(item, dict) and "parameterId" in item:
            readings[item["parameterId"]] = item.get("rawValue")
    return readings


def scale(
    readings: Mapping[ParameterId, object],
    divisors: Mapping[ParameterId, float] | None = None,
) -> dict[ParameterId, object]:
    """Apply per-parameter divisors; unlisted or non-numeric values pass through."""
    table = DEFAULT_DIVISORS if divisors is None else divisors
    scaled: dict[ParameterId, object] = {}
    for pid, value in readings.items():
        divisor = table.get(pid)
        if divisor and isinstance(value, (int, float)) and not isinstance(value, bool):
            scaled[pid] = value / divisor
        else:
            scaled[pid] = value
    return scaled


def parse_parameter_response(raw: object) -> dict[ParameterId, object]:
    """Extract ``{parameterId: rawValue}`` from a set-parameters response."""
    items = _load(raw)
    try:
        param = items[0]["parameter"]
        return {param["parameterId"]: param["rawValue"]}
    except (IndexError, KeyError, TypeError) as e:
        raise ParseError("Unexpected set-parameters response.") from e


# ---------------------------------------------------------------------------
# Status, system, software
# ---------------------------------------------------------------------------


def parse_status(raw: object) -> dict[str, str]:
    """Return ``ON``/``OFF`` for each known subsystem.

    A subsystem is ``ON`` when its title appears in the active-items array.
    Unknown titles that the API reports as active are included as well.
    """
    items = _load(raw)
    status = dict.fromkeys(STATUS_ITEMS, OFF)
    for item in items if isinstance(items, list) else []:
        if isinstance(item, dict) and item.get("title"):
            status[str(item["title"])] = ON
    return status


def normalize_status_keys(status: Mapping[str, str]) -> dict[str, str]:
    """Topic-friendly keys: ``"Heating Medium Pump"`` -> ``"Heatingmediumpump"``."""
    return {name.replace(" ", "").capitalize(): value for name, value in status.items()}


def has_alarmed(raw: object) -> bool:
    """Whether a system response reports an active alarm."""
    data = _load(raw)
    return isinstance(data, dict) and bool(data.get("hasAlarmed"))


def parse_system_summary(raw: object, notifications: object = None) -> dict[str, object]:
    """Summarize a system response for publication.

    *notifications* is the result of the notifications call, made by the
    caller only when :func:`has_alarmed` is true.  It is published under
    ``Alarm`` as JSON.
    """
    data = _load(raw)
    if not isinstance(data, dict):
        raise ParseError("Expected a system object.")

    summary: dict[str, object] = {}
    last_activity = data.get("lastActivityDate")
    if isinstance(last_activity, str) and last_activity:
        if last_activity.endswith("Z"):
            last_activity = last_activity[:-1]
        summary["LastActivityDate"] = last_activity + "+0000"
    summary["ConnectionStatus"] = CONNECTION_STATUS.get(str(data.get("connectionStatus")), 2)
    alarmed = bool(data.get("hasAlarmed"))
    summary["HasAlarmed"] = ON if alarmed else OFF
    if alarmed:
        summary["Alarm"] = notifications if isinstance(notifications, str) else json.dumps(
            notifications
        )
    return summary


def software_upgrade(raw: object) -> object:
    """Return the upgrade descriptor of a software response, or ``None``."""
    data = _load(raw)
    if not isinstance(data, dict):
        return None
    return data.get("upgrade")


def parse_software(raw: object) -> str:
    """``ON`` when a software upgrade is available, else ``OFF``."""
    return ON if software_upgrade(raw) is not None else OFF


# ---------------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------------


def parse_inbound_command(topic: str, payload: str | bytes | bytearray) -> Command:
    """Translate an MQTT control message into a :data:`Command`.

    The command family is the first segment after ``Set`` that names a known
    family (``mode``, ``parameters``, ``thermostats``); the segment after it,
    if any, is the subfield.  For ``<prefix>/Set/parameters/40004`` the
    family is ``parameters`` and the subfield ``40004``.

    Raises:
        UnknownCommand: No known family appears in *topic*.
        ParseError: The family is known but the payload or subfield is invalid.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Payload on {topic} is not valid UTF-8.") from e

    segments = topic.split("/")
    lowered = [s.lower() for s in segments]
    start = lowered.index("set") + 1 if "set" in lowered else 0
    for i in range(start, len(segments)):
        family = lowered[i]
        if family not in COMMAND_FAMILIES:
            continue
        subfield = segments[i + 1] if i + 1 < len(segments) else ""
        if family == "mode":
            return SetMode(payload.strip())
        if family == "parameters":
            if not subfield:
                raise ParseError(f"Missing parameter id in topic {topic}.")
            return SetParameter(_parameter_id(subfield), payload.strip())
        return SetThermostat(_thermostat_values(payload))
    raise UnknownCommand(f"Not a valid command topic: {topic}")


def _parameter_id(text: str) -> ParameterId:
    return int(text) if text.isdigit() else text.lower()


def _thermostat_values(payload: str) -> dict[str, object]:
    try:
        values = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseError(f"Thermostat payload is not JSON: {e}") from e
    if not isinstance(values, dict):
        raise ParseError("Thermostat payload must be a JSON object.")
    if values.get("externalId") is None or values.get("name") is None:
        raise ParseError("Thermostat payload must contain externalId and name.")
    return values


def _load(raw: object) -> object:
    """Decode *raw* if it is still JSON text; pass decoded data through."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e
    return raw
