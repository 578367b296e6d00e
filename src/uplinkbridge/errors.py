"""Exception hierarchy shared by the API client, token layer and bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all uplinkbridge errors."""


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------


class ApiError(BridgeError):
    """The API answered with an error status that has no specific class."""

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthorizationError(ApiError):
    """The API rejected the access token (HTTP 401)."""


class RateLimitError(ApiError):
    """The API asked us to slow down (HTTP 429)."""


class ServerError(ApiError):
    """The API failed on its side (HTTP 5xx)."""


class TransportError(ApiError):
    """The request never produced an HTTP response (DNS, TLS, timeout...)."""


Unauthorized = AuthorizationError
RateLimited = RateLimitError


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenError(BridgeError):
    """Base class for token persistence and lifecycle errors."""


class TokenNotFoundError(TokenError, FileNotFoundError):
    """No token has been stored yet (first run)."""


class DecryptionError(TokenError):
    """The stored token could not be decrypted or decoded."""


class AuthorizationRequired(TokenError):
    """No usable token exists; the authorization wizard must be run again."""


class TokenRefreshError(TokenError):
    """The refresh_token exchange failed.  Callers should retry later."""


# ---------------------------------------------------------------------------
# Messages and configuration
# ---------------------------------------------------------------------------


class ParseError(BridgeError, ValueError):
    """An inbound message or API response could not be interpreted."""


class UnknownCommand(ParseError):
    """An inbound topic does not name a known command family."""


class ConfigError(BridgeError):
    """Raised when configuration is invalid."""


class MqttError(ConnectionError):
    """Raised when an MQTT operation fails.

    Wraps :class:`aiomqtt.MqttError` so callers do not need to import
    ``aiomqtt`` to catch broker failures.
    """
