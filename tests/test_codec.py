"""Tests for uplinkbridge.codec."""

from __future__ import annotations

import json

import pytest

from uplinkbridge.codec import (
    DEFAULT_DIVISORS,
    SetMode,
    SetParameter,
    SetThermostat,
    has_alarmed,
    normalize_status_keys,
    parse_inbound_command,
    parse_parameter_response,
    parse_readings,
    parse_software,
    parse_status,
    parse_system_summary,
    scale,
    software_upgrade,
    split_into_batches,
)
from uplinkbridge.errors import ParseError, UnknownCommand

# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


class TestSplitIntoBatches:
    def test_empty(self):
        assert split_into_batches([]) == []

    def test_exact_multiple(self):
        batches = split_into_batches(list(range(30)))
        assert [len(b) for b in batches] == [15, 15]

    def test_remainder_in_last_batch(self):
        batches = split_into_batches(list(range(32)))
        assert [len(b) for b in batches] == [15, 15, 2]

    def test_order_preserved(self):
        ids = [40004, 40067, 43084, 40013, 40014]
        batches = split_into_batches(ids, max_size=2)
        assert batches == [(40004, 40067), (43084, 40013), (40014,)]

    @pytest.mark.parametrize("count", [1, 14, 15, 16, 44, 45, 46])
    def test_concatenation_restores_input(self, count):
        ids = list(range(40000, 40000 + count))
        batches = split_into_batches(ids)
        assert [pid for batch in batches for pid in batch] == ids
        assert all(1 <= len(b) <= 15 for b in batches)
        assert len(batches) == -(-count // 15)

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            split_into_batches([1, 2], max_size=0)


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


class TestScale:
    def test_temperature_divided_by_ten(self):
        assert scale({40004: 215}) == {40004: 21.5}

    def test_humidity_divided_by_hundred(self):
        assert scale({43084: 4550}) == {43084: 45.5}

    def test_unlisted_parameter_unchanged(self):
        assert scale({47011: 3}) == {47011: 3}

    def test_non_numeric_unchanged(self):
        assert scale({40004: "n/a"}) == {40004: "n/a"}

    def test_bool_unchanged(self):
        assert scale({40004: True}) == {40004: True}

    def test_custom_divisors(self):
        assert scale({40004: 215, 47011: 30}, {47011: 10}) == {40004: 215, 47011: 3.0}

    def test_default_table(self):
        assert DEFAULT_DIVISORS[43084] == 100
        assert sum(1 for d in DEFAULT_DIVISORS.values() if d == 10) == 14


class TestParseReadings:
    def test_maps_id_to_raw_value(self):
        raw = [
            {"parameterId": 40004, "rawValue": 215, "displayValue": "21.5°C"},
            {"parameterId": 43084, "rawValue": 4550},
        ]
        assert parse_readings(raw) == {40004: 215, 43084: 4550}

    def test_accepts_json_text(self):
        assert parse_readings('[{"parameterId": 40004, "rawValue": -12}]') == {40004: -12}

    def test_skips_malformed_items(self):
        assert parse_readings([{"rawValue": 1}, "junk"]) == {}

    def test_rejects_non_list(self):
        with pytest.raises(ParseError):
            parse_readings({"parameterId": 1})

    def test_rejects_invalid_json(self):
        with pytest.raises(ParseError):
            parse_readings("not json")


class TestParseParameterResponse:
    def test_extracts_written_value(self):
        raw = [{"status": "DONE", "parameter": {"parameterId": 47011, "rawValue": 2}}]
        assert parse_parameter_response(raw) == {47011: 2}

    def test_unexpected_shape(self):
        with pytest.raises(ParseError):
            parse_parameter_response([])


# ---------------------------------------------------------------------------
# Status, system, software
# ---------------------------------------------------------------------------


class TestParseStatus:
    def test_all_off(self):
        status = parse_status([])
        assert len(status) == 7
        assert set(status.values()) == {"OFF"}

    def test_active_items_on(self):
        status = parse_status([{"title": "Hot Water"}, {"title": "Compressor"}])
        assert status["Hot Water"] == "ON"
        assert status["Compressor"] == "ON"
        assert status["Heating"] == "OFF"

    def test_unknown_title_included(self):
        assert parse_status([{"title": "Cooling"}])["Cooling"] == "ON"

    def test_normalized_keys(self):
        keys = normalize_status_keys(parse_status([]))
        assert "Heatingmediumpump" in keys
        assert "Hotwater" in keys
        assert "Ventilation" in keys


class TestParseSystemSummary:
    def test_online_without_alarm(self):
        raw = {
            "lastActivityDate": "2024-01-15T10:20:30Z",
            "connectionStatus": "ONLINE",
            "hasAlarmed": False,
        }
        assert parse_system_summary(raw) == {
            "LastActivityDate": "2024-01-15T10:20:30+0000",
            "ConnectionStatus": 0,
            "HasAlarmed": "OFF",
        }

    @pytest.mark.parametrize(
        ("status", "expected"),
        [("ONLINE", 0), ("PENDING", 1), ("OFFLINE", 2), (None, 2)],
    )
    def test_connection_status(self, status, expected):
        assert parse_system_summary({"connectionStatus": status})["ConnectionStatus"] == expected

    def test_alarm_serialized(self):
        notifications = {"objects": [{"alarmNumber": 183, "header": "Defrosting"}]}
        summary = parse_system_summary({"hasAlarmed": True}, notifications)
        assert summary["HasAlarmed"] == "ON"
        assert json.loads(summary["Alarm"]) == notifications

    def test_no_alarm_key_without_alarm(self):
        assert "Alarm" not in parse_system_summary({"hasAlarmed": False}, {"objects": []})

    def test_has_alarmed(self):
        assert has_alarmed('{"hasAlarmed": true}') is True
        assert has_alarmed({}) is False

    def test_rejects_non_object(self):
        with pytest.raises(ParseError):
            parse_system_summary([])


class TestSoftware:
    def test_upgrade_available(self):
        raw = {"current": {"name": "1.0"}, "upgrade": {"name": "2.0"}}
        assert parse_software(raw) == "ON"
        assert software_upgrade(raw) == {"name": "2.0"}

    def test_no_upgrade(self):
        assert parse_software({"current": {"name": "1.0"}, "upgrade": None}) == "OFF"


# ---------------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------------


class TestParseInboundCommand:
    def test_mode(self):
        assert parse_inbound_command("Bridge/Set/mode", b"AWAY_FROM_HOME") == SetMode("AWAY_FROM_HOME")

    def test_mode_family_after_extra_segments(self):
        assert parse_inbound_command("Bridge/Set/x/y/mode", b"VACATION") == SetMode("VACATION")

    def test_family_case_insensitive(self):
        assert parse_inbound_command("Bridge/set/Mode", "DEFAULT_OPERATION") == SetMode(
            "DEFAULT_OPERATION"
        )

    def test_parameter(self):
        assert parse_inbound_command("Bridge/Set/parameters/40004", b"215") == SetParameter(
            40004, "215"
        )

    def test_parameter_after_extra_segments(self):
        assert parse_inbound_command("Bridge/Set/x/y/parameters/40004", b"215") == SetParameter(
            40004, "215"
        )

    def test_named_parameter_lowercased(self):
        assert parse_inbound_command("Bridge/Set/parameters/HotWater_Boost", b"1") == SetParameter(
            "hotwater_boost", "1"
        )

    def test_parameter_without_id(self):
        with pytest.raises(ParseError):
            parse_inbound_command("Bridge/Set/parameters", b"1")

    def test_thermostat(self):
        payload = json.dumps({"externalId": 1, "name": "Living room", "actualTemp": 215})
        command = parse_inbound_command("Bridge/Set/thermostats", payload.encode())
        assert isinstance(command, SetThermostat)
        assert command.values["name"] == "Living room"

    def test_thermostat_missing_fields(self):
        with pytest.raises(ParseError, match="externalId"):
            parse_inbound_command("Bridge/Set/thermostats", b'{"name": "x"}')

    def test_thermostat_invalid_json(self):
        with pytest.raises(ParseError):
            parse_inbound_command("Bridge/Set/thermostats", b"{oops")

    def test_thermostat_not_object(self):
        with pytest.raises(ParseError):
            parse_inbound_command("Bridge/Set/thermostats", b"[1, 2]")

    def test_unknown_family(self):
        with pytest.raises(UnknownCommand):
            parse_inbound_command("Bridge/Set/reboot", b"1")

    def test_unknown_command_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_inbound_command("Bridge/Set", b"1")

    def test_invalid_utf8(self):
        with pytest.raises(ParseError):
            parse_inbound_command("Bridge/Set/mode", b"\xff\xfe")
