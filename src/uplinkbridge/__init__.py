"""Bridge between the Uplink heat-pump API and an MQTT broker."""

from uplinkbridge.bridge import Backoff, MessageBridge
from uplinkbridge.client import UplinkClient
from uplinkbridge.codec import Command, SetMode, SetParameter, SetThermostat
from uplinkbridge.config import Config, ConfigSource
from uplinkbridge.errors import BridgeError, MqttError
from uplinkbridge.router import CommandRouter
from uplinkbridge.scheduler import Scheduler
from uplinkbridge.tokens import Token, TokenManager, TokenStore

__all__ = [
    "Backoff",
    "BridgeError",
    "Command",
    "CommandRouter",
    "Config",
    "ConfigSource",
    "MessageBridge",
    "MqttError",
    "Scheduler",
    "SetMode",
    "SetParameter",
    "SetThermostat",
    "Token",
    "TokenManager",
    "TokenStore",
    "UplinkClient",
]
