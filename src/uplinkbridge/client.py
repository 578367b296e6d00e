"""Uplink HTTP API client.

:class:`UplinkClient` wraps the REST endpoints the bridge needs.  Every call
asks the :class:`~uplinkbridge.tokens.TokenManager` for a valid token first,
so an expired access token is refreshed transparently::

    import asyncio
    from uplinkbridge import UplinkClient

    client = UplinkClient(client_id, client_secret, system_id)
    status = await client.status()
    await client.set_mode("AWAY_FROM_HOME")
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

import aiohttp

from uplinkbridge._constants import (
    API_BASE,
    API_ENDPOINT,
    APP_HEADERS,
    AUTHORIZE_ENDPOINT,
    DEFAULT_SCOPE,
    REQUEST_TIMEOUT,
    TOKEN_DIR,
    TOKEN_ENDPOINT,
)
from uplinkbridge.codec import ParameterId
from uplinkbridge.errors import (
    ApiError,
    AuthorizationError,
    RateLimitError,
    ServerError,
    TransportError,
)
from uplinkbridge.tokens import Token, TokenManager, TokenStore

logger = logging.getLogger(__name__)


class UplinkClient:
    """Client for one Uplink account and (optionally) one selected system.

    Read methods return the decoded JSON body.  All methods raise one of
    :class:`AuthorizationError`, :class:`RateLimitError`,
    :class:`ServerError`, :class:`TransportError` or the generic
    :class:`ApiError` on failure.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        system_id: int | None = None,
        *,
        base_url: str = API_BASE,
        token_dir: Path = TOKEN_DIR,
        store: TokenStore | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.system_id = system_id
        if store is None:
            store = TokenStore(self._base_url, client_id, client_secret, token_dir)
        self.tokens = TokenManager(store, client_id, client_secret, self.exchange_token)
        self._client_id = client_id

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, callback_url: str, scope: str = DEFAULT_SCOPE) -> str:
        """URL the user opens in a browser to obtain an authorization code."""
        return (
            f"{self._base_url}{AUTHORIZE_ENDPOINT}?response_type=code"
            f"&client_id={self._client_id}&scope={scope}"
            f"&redirect_uri={callback_url}&state=STATE"
        )

    async def authorize(
        self, auth_code: str, callback_url: str, scope: str = DEFAULT_SCOPE
    ) -> Token:
        """Exchange a one-time authorization code and persist the token."""
        return await self.tokens.authorize(auth_code, callback_url, scope)

    async def exchange_token(self, form: dict[str, str]) -> dict[str, object]:
        """POST *form* to the token endpoint and return the decoded response."""
        async with aiohttp.ClientSession() as session:
            try:
                async with session.post(
                    f"{self._base_url}{TOKEN_ENDPOINT}",
                    data=form,
                    headers=APP_HEADERS,
                    timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
                ) as resp:
                    await _raise_for_status(resp)
                    body = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransportError(f"Token request failed: {e}") from e
        if not isinstance(body, dict) or "access_token" not in body:
            raise ApiError("Token endpoint returned no access_token.")
        return body

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def systems(self) -> object:
        """List all systems connected to the account."""
        return await self._request("GET", API_ENDPOINT)

    async def system(self) -> object:
        """Get info on the selected system."""
        return await self._request("GET", self._system_path())

    async def status(self) -> object:
        """Get the subsystems that are currently active."""
        return await self._request("GET", self._system_path("status/system"))

    async def software(self) -> object:
        """Get installed software and available upgrades."""
        return await self._request("GET", self._system_path("software"))

    async def parameters(self, ids: Sequence[ParameterId]) -> object:
        """Read up to 15 parameters in one call."""
        return await self._request(
            "GET",
            self._system_path("parameters"),
            params=[("parameterIds", str(pid)) for pid in ids],
        )

    async def notifications(self) -> object:
        """Get alarms registered on the system."""
        return await self._request("GET", self._system_path("notifications"))

    async def serviceinfo(self, category: str | None = None, *, all_parameters: bool = False) -> object:
        """Get service info categories, one category, or every parameter."""
        path = self._system_path("serviceinfo/categories")
        if category:
            path = f"{path}/{category}"
        params = [("parameters", "true")] if all_parameters and not category else None
        return await self._request("GET", path, params=params)

    async def mode(self) -> object:
        """Get the smart-home mode."""
        return await self._request("GET", self._system_path("smarthome/mode"))

    async def thermostats(self) -> object:
        """List the registered smart-home thermostats."""
        return await self._request("GET", self._system_path("smarthome/thermostats"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_mode(self, mode: str) -> object:
        return await self._request("PUT", self._system_path("smarthome/mode"), body={"mode": mode})

    async def set_parameters(self, settings: dict[ParameterId, object]) -> object:
        return await self._request(
            "PUT",
            self._system_path("parameters"),
            body={"settings": {str(k): v for k, v in settings.items()}},
        )

    async def set_thermostat(self, values: dict[str, object]) -> object:
        """Create or update a smart-home thermostat.

        Raises :class:`ValueError` if *values* lacks ``externalId`` or ``name``.
        """
        if values.get("externalId") is None or values.get("name") is None:
            raise ValueError("Thermostat values must contain externalId and name.")
        return await self._request("POST", self._system_path("smarthome/thermostats"), body=values)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _system_path(self, suffix: str = "") -> str:
        if self.system_id is None:
            raise ValueError("No system_id configured. Run the authorize wizard first.")
        path = f"{API_ENDPOINT}/{self.system_id}"
        return f"{path}/{suffix}" if suffix else path

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        body: object = None,
    ) -> object:
        """Send an authenticated request, refreshing the token once on HTTP 401."""
        token = await self.tokens.current_token()
        async with aiohttp.ClientSession() as session:
            try:
                return await _send(session, method, self._base_url + path, token, params, body)
            except AuthorizationError:
                logger.debug("Got 401 for %s %s, refreshing token", method, path)
                self.tokens.invalidate()
                token = await self.tokens.current_token()
                return await _send(session, method, self._base_url + path, token, params, body)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


async def _send(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    token: Token,
    params: list[tuple[str, str]] | None,
    body: object,
) -> object:
    headers = {**APP_HEADERS, "Authorization": f"Bearer {token.access_token}"}
    try:
        async with session.request(
            method,
            url,
            params=params,
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
        ) as resp:
            await _raise_for_status(resp)
            if resp.status == 204:
                return None
            text = await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportError(f"{method} {url} failed: {e}") from e
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        # Some write endpoints answer with a plain status message.
        return text


async def _raise_for_status(resp: aiohttp.ClientResponse) -> None:
    """Map HTTP error statuses onto the bridge's error taxonomy."""
    if resp.status < 400:
        return
    body = await resp.text()
    message = f"HTTP {resp.status} for {resp.method} {resp.url.path}: {body[:200]}"
    if resp.status == 401:
        raise AuthorizationError(message, resp.status)
    if resp.status == 429:
        raise RateLimitError(message, resp.status)
    if resp.status >= 500:
        raise ServerError(message, resp.status)
    raise ApiError(message, resp.status)
