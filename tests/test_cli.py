"""Tests for uplinkbridge.cli."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, patch

import yaml
from typer.testing import CliRunner

from uplinkbridge.cli import app
from uplinkbridge.client import UplinkClient
from uplinkbridge.config import Config
from uplinkbridge.errors import AuthorizationRequired, ServerError
from uplinkbridge.tokens import TokenManager

runner = CliRunner()


def _config_file(tmp_path: Any, **overrides: Any) -> str:
    path = tmp_path / "bridge.yaml"
    data = {"client_id": "abc", "client_secret": "xyz", "system_id": 42, "token_dir": str(tmp_path)}
    data.update(overrides)
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestQueries:
    def test_status(self, tmp_path):
        config = _config_file(tmp_path)
        with patch.object(UplinkClient, "status", AsyncMock(return_value=[{"title": "Hot Water"}])):
            result = runner.invoke(app, ["status", "-c", config])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["Hot Water"] == "ON"
        assert data["Compressor"] == "OFF"

    def test_systems(self, tmp_path):
        config = _config_file(tmp_path)
        systems = {"objects": [{"systemId": 42, "name": "F1255"}]}
        with patch.object(UplinkClient, "systems", AsyncMock(return_value=systems)):
            result = runner.invoke(app, ["systems", "-c", config])

        assert result.exit_code == 0
        assert json.loads(result.output) == systems

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["status", "-c", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_not_authorized(self, tmp_path):
        config = _config_file(tmp_path)
        with patch.object(UplinkClient, "status", AsyncMock(side_effect=AuthorizationRequired("none"))):
            result = runner.invoke(app, ["status", "-c", config])

        assert result.exit_code == 1
        assert "uplinkbridge authorize" in result.output

    def test_api_error(self, tmp_path):
        config = _config_file(tmp_path)
        with patch.object(UplinkClient, "software", AsyncMock(side_effect=ServerError("HTTP 503", 503))):
            result = runner.invoke(app, ["software", "-c", config])

        assert result.exit_code == 1
        assert "HTTP 503" in result.output


class TestMode:
    def test_get(self, tmp_path):
        config = _config_file(tmp_path)
        with patch.object(UplinkClient, "mode", AsyncMock(return_value={"mode": "DEFAULT_OPERATION"})):
            result = runner.invoke(app, ["mode", "-c", config])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"mode": "DEFAULT_OPERATION"}

    def test_set(self, tmp_path):
        config = _config_file(tmp_path)
        set_mode = AsyncMock(return_value=None)
        with patch.object(UplinkClient, "set_mode", set_mode):
            result = runner.invoke(app, ["mode", "away", "-c", config])

        assert result.exit_code == 0
        set_mode.assert_awaited_once_with("AWAY_FROM_HOME")

    def test_invalid(self, tmp_path):
        config = _config_file(tmp_path)
        result = runner.invoke(app, ["mode", "party", "-c", config])
        assert result.exit_code == 1
        assert "Invalid mode 'party'" in result.output


class TestParameters:
    def test_read_and_write(self, tmp_path):
        config = _config_file(tmp_path)
        set_parameters = AsyncMock(
            return_value=[{"status": "DONE", "parameter": {"parameterId": 47011, "rawValue": 2}}]
        )
        read = AsyncMock(return_value=[{"parameterId": 40004, "rawValue": 215}])
        with (
            patch.object(UplinkClient, "set_parameters", set_parameters),
            patch.object(UplinkClient, "parameters", read),
        ):
            result = runner.invoke(app, ["parameters", "40004", "47011=2", "-c", config])

        assert result.exit_code == 0
        set_parameters.assert_awaited_once_with({"47011": "2"})
        read.assert_awaited_once_with(("40004",))
        assert len(json.loads(result.output)) == 2


class TestAuthorize:
    def _invoke(self, tmp_path: Any, systems: dict[str, Any], user_input: str) -> Any:
        path = tmp_path / "bridge.yaml"
        with (
            patch.object(UplinkClient, "authorize", AsyncMock()),
            patch.object(UplinkClient, "systems", AsyncMock(return_value=systems)),
        ):
            result = runner.invoke(
                app,
                [
                    "authorize",
                    "-c", str(path),
                    "--client-id", "abc",
                    "--client-secret", "xyz",
                    "--callback-url", "https://cb.example.com",
                ],
                input=user_input,
            )
        return result, path

    def test_single_system_selected(self, tmp_path):
        result, path = self._invoke(
            tmp_path, {"objects": [{"systemId": 42, "name": "F1255"}]}, "the-code\n"
        )

        assert result.exit_code == 0, result.output
        assert "/oauth/authorize?response_type=code" in result.output
        config = Config.load(path)
        assert config.system_id == 42
        assert config.client_id == "abc"

    def test_multiple_systems_prompt(self, tmp_path):
        systems = {"objects": [{"systemId": 42, "name": "Main"}, {"systemId": 7, "name": "Cabin"}]}
        result, path = self._invoke(tmp_path, systems, "the-code\n7\n")

        assert result.exit_code == 0, result.output
        assert "Select default system" in result.output
        assert Config.load(path).system_id == 7

    def test_keeps_existing_settings(self, tmp_path):
        _config_file(tmp_path, mqtt_host="broker.local", parameters=[40004])
        result, path = self._invoke(
            tmp_path, {"objects": [{"systemId": 42, "name": "F1255"}]}, "the-code\n"
        )

        assert result.exit_code == 0, result.output
        config = Config.load(path)
        assert config.mqtt_host == "broker.local"
        assert config.parameters == (40004,)


class TestRun:
    def test_requires_authorization(self, tmp_path):
        config = _config_file(tmp_path)
        with patch.object(
            TokenManager, "current_token", AsyncMock(side_effect=AuthorizationRequired("No token."))
        ):
            result = runner.invoke(app, ["run", "-c", config])

        assert result.exit_code == 1
        assert "uplinkbridge authorize" in result.output

    def test_invalid_config(self, tmp_path):
        config = _config_file(tmp_path, interval=1)
        result = runner.invoke(app, ["run", "-c", config])
        assert result.exit_code == 1
        assert "interval" in result.output

    def test_runs_scheduler(self, tmp_path):
        config = _config_file(tmp_path)
        run_async = AsyncMock()
        with patch("uplinkbridge.cli._run_async", run_async):
            result = runner.invoke(app, ["run", "-c", config, "--debug"])

        assert result.exit_code == 0
        run_async.assert_awaited_once()
