"""Dispatch inbound MQTT commands to API write calls."""

from __future__ import annotations

import logging
from typing import Protocol

from uplinkbridge.codec import (
    Command,
    SetMode,
    SetParameter,
    SetThermostat,
    parse_inbound_command,
)
from uplinkbridge.errors import (
    ApiError,
    AuthorizationError,
    ParseError,
    RateLimitError,
    ServerError,
    TokenError,
    TransportError,
)

logger = logging.getLogger(__name__)


class CommandApi(Protocol):
    async def set_mode(self, mode: str) -> object: ...

    async def set_parameters(self, settings: dict[int | str, object]) -> object: ...

    async def set_thermostat(self, values: dict[str, object]) -> object: ...


class CommandRouter:
    def __init__(self, api: CommandApi) -> None:
        self._api = api

    async def route(self, command: Command) -> None:
        """Send *command* to the API.  Errors are logged, never raised."""
        try:
            await self._dispatch(command)
        except (RateLimitError, ServerError) as e:
            logger.debug("Command %s not applied: %r", type(command).__name__, e)
        except (AuthorizationError, TransportError, TokenError) as e:
            logger.warning("Command %s not applied: %s", type(command).__name__, e)
        except (ApiError, ValueError) as e:
            logger.error("Command %s rejected: %s", type(command).__name__, e)
        except Exception:
            logger.exception("Command %s failed", type(command).__name__)

    async def handle(self, topic: str, payload: bytes | str) -> None:
        """Parse a raw MQTT message and route the resulting command."""
        try:
            command = parse_inbound_command(topic, payload)
        except ParseError as e:
            logger.warning("Discarding message on %s: %s", topic, e)
            return
        await self.route(command)

    async def _dispatch(self, command: Command) -> None:
        match command:
            case SetMode(value=value):
                logger.info("Setting mode: %s", value)
                await self._api.set_mode(value)
            case SetParameter(id=pid, value=value):
                logger.info("Setting parameters: %s=%s", pid, value)
                await self._api.set_parameters({pid: value})
            case SetThermostat(values=values):
                await self._api.set_thermostat(values)
