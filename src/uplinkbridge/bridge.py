"""MQTT side of the bridge: publish, subscribe, receive, reconnect.

:class:`MessageBridge` owns a single :class:`aiomqtt.Client` connection.
Transport failures during :meth:`~MessageBridge.connect`,
:meth:`~MessageBridge.publish` or :meth:`~MessageBridge.receive` are retried
with exponential backoff until the bridge is shut down; recorded
subscriptions are restored after every reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import aiomqtt

from uplinkbridge._constants import BACKOFF_INITIAL, BACKOFF_MAX, MQTT_CLIENT_ID
from uplinkbridge.config import MqttSettings
from uplinkbridge.errors import MqttError

logger = logging.getLogger(__name__)


class Backoff:
    """Exponential backoff state: 1, 2, 4, ... seconds, capped at *maximum*."""

    def __init__(
        self,
        initial: float = BACKOFF_INITIAL,
        maximum: float = BACKOFF_MAX,
        factor: float = 2.0,
    ) -> None:
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.attempt = 0

    def next_delay(self) -> float:
        """Return the delay before the next attempt and advance the counter."""
        delay = min(self.initial * self.factor**self.attempt, self.maximum)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0


class MessageBridge:
    """A self-healing MQTT connection shared by the poller and the listener.

    Reconnects are serialized: when several tasks see the same broken
    connection, only the first reconnects and the others reuse its result.
    """

    def __init__(
        self,
        settings: MqttSettings,
        *,
        identifier: str = MQTT_CLIENT_ID,
        client_factory: Callable[..., Any] = aiomqtt.Client,
        backoff: Backoff | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._identifier = identifier
        self._client_factory = client_factory
        self._backoff = backoff or Backoff()
        self._sleep = sleep
        self._client: Any = None
        self._subscriptions: list[str] = []
        self._lock = asyncio.Lock()
        self._generation = 0
        self._closed = False
        self._stopping = asyncio.Event()

    @property
    def settings(self) -> MqttSettings:
        return self._settings

    def is_connected(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the broker, retrying with backoff until it succeeds.

        Raises :class:`MqttError` if :meth:`begin_shutdown` or
        :meth:`disconnect` is called while retrying.
        """
        self._closed = False
        self._stopping.clear()
        async with self._lock:
            if self._client is None:
                await self._connect_with_backoff()

    def begin_shutdown(self) -> None:
        """Stop reconnecting.

        A live connection stays usable, but any reconnect in progress or
        started later gives up with :class:`MqttError`.
        """
        self._stopping.set()

    async def disconnect(self) -> None:
        """Close the connection.  Pending :meth:`receive` calls fail with :class:`MqttError`."""
        self._closed = True
        self._stopping.set()
        async with self._lock:
            await self._drop()
        logger.info("Disconnected from MQTT broker %s", self._settings.host)

    async def reconfigure(self, settings: MqttSettings) -> None:
        """Switch to new broker settings, reconnecting if they differ."""
        if settings == self._settings:
            return
        logger.info("MQTT settings changed, reconnecting to %s:%d", settings.host, settings.port)
        async with self._lock:
            self._settings = settings
            await self._drop()
            await self._connect_with_backoff()

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    async def subscribe(self, pattern: str) -> None:
        """Subscribe to *pattern* now and after every reconnect."""
        if pattern not in self._subscriptions:
            self._subscriptions.append(pattern)
        while True:
            client, generation = await self._current()
            try:
                await client.subscribe(pattern, qos=1)
                logger.info("Subscribed to %s", pattern)
                return
            except aiomqtt.MqttError as e:
                await self._reconnect(generation, e)

    async def unsubscribe(self, pattern: str) -> None:
        """Stop receiving *pattern*, now and after future reconnects."""
        if pattern in self._subscriptions:
            self._subscriptions.remove(pattern)
        client = self._client
        if client is None:
            return
        try:
            await client.unsubscribe(pattern)
            logger.info("Unsubscribed from %s", pattern)
        except aiomqtt.MqttError as e:
            # Not restored on reconnect, so a dropped connection drops it too.
            logger.debug("Unsubscribe from %s failed: %s", pattern, e)

    async def publish(self, topic: str, value: object) -> None:
        """Publish *value* (converted with :func:`str`) to *topic*."""
        payload = value if isinstance(value, (bytes, bytearray)) else str(value)
        while True:
            client, generation = await self._current()
            try:
                await client.publish(topic, payload)
                return
            except aiomqtt.MqttError as e:
                await self._reconnect(generation, e)

    async def receive(self) -> tuple[str, bytes]:
        """Wait for the next message on any subscribed topic.

        Blocks only the calling task.  A dropped connection is re-established
        transparently; the call raises :class:`MqttError` only once the bridge
        has been disconnected, or when the connection drops after
        :meth:`begin_shutdown`.
        """
        while True:
            client, generation = await self._current()
            try:
                message = await anext(client.messages)
            except StopAsyncIteration:
                # The broker closed the session cleanly; treat it as a drop.
                await self._reconnect(generation, None)
                continue
            except aiomqtt.MqttError as e:
                await self._reconnect(generation, e)
                continue
            payload = message.payload
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            elif payload is None or not isinstance(payload, (bytes, bytearray)):
                payload = str(payload or "").encode("utf-8")
            return str(message.topic), bytes(payload)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _current(self) -> tuple[Any, int]:
        if self._closed:
            raise MqttError("Bridge is disconnected.")
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    await self._connect_with_backoff()
        return self._client, self._generation

    def _check_open(self, error: Exception | None = None) -> None:
        if self._closed:
            raise MqttError("Bridge is disconnected.") from error
        if self._stopping.is_set():
            raise MqttError("Bridge is shutting down.") from error

    async def _reconnect(self, generation: int, error: Exception | None) -> None:
        self._check_open(error)
        async with self._lock:
            if generation != self._generation and self._client is not None:
                # Another task already replaced the broken connection.
                return
            logger.warning("MQTT connection lost (%s), reconnecting", error or "closed by broker")
            await self._drop()
            await self._connect_with_backoff()

    async def _connect_with_backoff(self) -> None:
        while True:
            self._check_open()
            client = self._client_factory(
                hostname=self._settings.host,
                port=self._settings.port,
                username=self._settings.username or None,
                password=self._settings.password or None,
                identifier=self._identifier,
            )
            try:
                await client.__aenter__()
            except aiomqtt.MqttError as e:
                await self._wait_before_retry(e)
                continue
            try:
                for pattern in self._subscriptions:
                    await client.subscribe(pattern, qos=1)
            except aiomqtt.MqttError as e:
                await _close(client)
                await self._wait_before_retry(e)
                continue
            if self._closed or self._stopping.is_set():
                await _close(client)
                self._check_open()

            if self._backoff.attempt:
                logger.info("Reconnect successful after %d attempt(s)", self._backoff.attempt)
            self._backoff.reset()
            self._client = client
            self._generation += 1
            logger.info("Connected to MQTT broker %s:%d", self._settings.host, self._settings.port)
            return

    async def _wait_before_retry(self, error: Exception) -> None:
        delay = self._backoff.next_delay()
        logger.warning(
            "Unable to connect to MQTT broker %s:%d (%s), retrying in %.0fs",
            self._settings.host, self._settings.port, error, delay,
        )
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        self._check_open(error)

    async def _drop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await _close(client)


async def _close(client: Any) -> None:
    try:
        await client.__aexit__(None, None, None)
    except aiomqtt.MqttError as e:
        logger.debug("Error while closing MQTT connection: %s", e)
