"""OAuth token model, encrypted persistence and lifecycle management.

:class:`TokenStore` keeps a single token on disk, encrypted with a key
derived from the OAuth client credentials.  :class:`TokenManager` owns the
in-memory token, refreshes it when it expires and persists every new token
before handing it out::

    store = TokenStore(API_BASE, client_id, client_secret)
    manager = TokenManager(store, client_id, client_secret, exchange)
    token = await manager.current_token()
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from uplinkbridge._constants import DEFAULT_SCOPE, TOKEN_DIR, TOKEN_FILE_PREFIX
from uplinkbridge._crypto import derive_key, open_sealed, seal
from uplinkbridge.errors import (
    ApiError,
    AuthorizationRequired,
    DecryptionError,
    TokenNotFoundError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

TokenExchange = Callable[[dict[str, str]], Awaitable[dict[str, object]]]


@dataclass(frozen=True)
class Token:
    """An OAuth2 access/refresh token pair with its validity window."""

    access_token: str
    refresh_token: str
    issued_at: float
    """Unix timestamp at which the token was issued."""

    ttl_seconds: int
    """Lifetime reported by the token endpoint (``expires_in``)."""

    token_type: str = "bearer"

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl_seconds

    def expired(self, now: float | None = None) -> bool:
        """Whether *now* (default: current time) is past :attr:`expires_at`."""
        if now is None:
            now = time.time()
        return now > self.expires_at

    def to_json(self) -> str:
        """Canonical JSON serialization (sorted keys, no whitespace)."""
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> Token:
        raw = json.loads(data)
        return cls(
            access_token=str(raw["access_token"]),
            refresh_token=str(raw.get("refresh_token") or ""),
            issued_at=float(raw["issued_at"]),
            ttl_seconds=int(raw["ttl_seconds"]),
            token_type=str(raw.get("token_type") or "bearer"),
        )

    @classmethod
    def from_response(cls, body: dict[str, object], now: float) -> Token:
        """Build a token from an OAuth token-endpoint response body."""
        try:
            return cls(
                access_token=str(body["access_token"]),
                refresh_token=str(body.get("refresh_token") or ""),
                issued_at=now,
                ttl_seconds=int(str(body["expires_in"])),
                token_type=str(body.get("token_type") or "bearer"),
            )
        except (KeyError, ValueError) as e:
            raise ApiError(f"Malformed token response: {e}") from e


class TokenStore:
    """Persist a single :class:`Token` as an encrypted file.

    The file name contains a hash of the API base URL, so bridges talking to
    different endpoints never overwrite each other's token.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        directory: Path = TOKEN_DIR,
    ) -> None:
        digest = hashlib.md5(base_url.encode("utf-8")).hexdigest()
        self._path = Path(directory) / f"{TOKEN_FILE_PREFIX}{digest}"
        self._key = derive_key(client_secret, client_id)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, token: Token) -> None:
        """Encrypt *token* and write it with owner-only permissions."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(seal(token.to_json().encode("utf-8"), self._key))
        self._path.chmod(0o600)
        logger.debug("Saved token to %s", self._path)

    def load(self) -> Token:
        """Read and decrypt the stored token.

        Raises :class:`TokenNotFoundError` if nothing has been saved yet and
        :class:`DecryptionError` if the file cannot be decrypted with the
        current credentials or does not contain a token.
        """
        try:
            blob = self._path.read_bytes()
        except FileNotFoundError:
            raise TokenNotFoundError(f"No saved token at {self._path}.") from None
        try:
            return Token.from_json(open_sealed(blob, self._key))
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptionError(f"Unable to decrypt token at {self._path}.") from e


class TokenManager:
    """Own the token lifecycle: load, expiry check, refresh-on-demand.

    *exchange* performs the HTTP call to the token endpoint; it receives the
    form fields of the grant and returns the decoded JSON response.
    """

    def __init__(
        self,
        store: TokenStore,
        client_id: str,
        client_secret: str,
        exchange: TokenExchange,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._exchange = exchange
        self._clock = clock
        self._token: Token | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def has_token(self) -> bool:
        """True once a token has been loaded or obtained."""
        return self._token is not None

    async def current_token(self) -> Token:
        """Return a non-expired token, refreshing it first if necessary.

        Raises:
            AuthorizationRequired: No token is stored, or it expired and
                carries no refresh token.
            TokenRefreshError: The refresh exchange failed.
        """
        token = self._token or self._load()
        if not token.expired(self._clock()):
            return token
        return await self.refresh()

    def invalidate(self) -> None:
        """Treat the in-memory token as expired (e.g. after an HTTP 401)."""
        if self._token is not None:
            self._token = replace(self._token, ttl_seconds=0, issued_at=0.0)

    async def refresh(self, force: bool = False) -> Token:
        """Exchange the refresh token for a new token pair.

        Concurrent callers share a single exchange: whoever acquires the lock
        second finds a fresh token and returns it without another request.
        With *force*, the exchange happens even if the token is still valid.
        """
        async with self._refresh_lock:
            token = self._token or self._load()
            if not force and not token.expired(self._clock()):
                return token
            if not token.refresh_token:
                raise AuthorizationRequired("Token expired and no refresh token is available.")

            logger.info("Access token expired, refreshing")
            try:
                body = await self._exchange(
                    {
                        "grant_type": "refresh_token",
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "refresh_token": token.refresh_token,
                    }
                )
                new_token = Token.from_response(body, self._clock())
            except ApiError as e:
                raise TokenRefreshError(f"Unable to refresh token: {e}") from e
            if not new_token.refresh_token:
                new_token = replace(new_token, refresh_token=token.refresh_token)

            self._token = new_token
            self._store.save(new_token)
            return new_token

    async def authorize(
        self, auth_code: str, callback_url: str, scope: str = DEFAULT_SCOPE
    ) -> Token:
        """Exchange a one-time authorization code for the initial token pair."""
        body = await self._exchange(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": auth_code,
                "redirect_uri": callback_url,
                "scope": scope,
            }
        )
        token = Token.from_response(body, self._clock())
        async with self._refresh_lock:
            self._token = token
            self._store.save(token)
        logger.info("Authorization completed, token saved to %s", self._store.path)
        return token

    def _load(self) -> Token:
        try:
            token = self._store.load()
        except TokenNotFoundError as e:
            raise AuthorizationRequired(str(e)) from e
        except DecryptionError as e:
            logger.warning("%s Re-authorization is required.", e)
            raise AuthorizationRequired(str(e)) from e
        self._token = token
        return token
