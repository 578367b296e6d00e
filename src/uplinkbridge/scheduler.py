"""The bridge daemon: periodic polling, command listening, reload and shutdown.

Each cycle launches one short-lived task per parameter batch, then one for
the status and one for the system summary (plus, once a day, one for the
software check).  Launches are paced by a :class:`Pacer` so consecutive API
calls are at least ``spacing`` seconds apart.  The tasks themselves never
sleep, and each publishes only after the task launched before it (see
:class:`PublishTurn`).  A long-lived listener task turns inbound MQTT
messages into API write calls at the same time.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from datetime import date, datetime
from functools import partial
from typing import Any

from uplinkbridge._constants import HEARTBEAT, POLL_SPACING
from uplinkbridge.bridge import MessageBridge
from uplinkbridge.client import UplinkClient
from uplinkbridge.codec import (
    ParameterBatch,
    has_alarmed,
    normalize_status_keys,
    parse_readings,
    parse_software,
    parse_status,
    parse_system_summary,
    scale,
    software_upgrade,
)
from uplinkbridge.config import Config, ConfigSource
from uplinkbridge.errors import (
    ApiError,
    ConfigError,
    MqttError,
    ParseError,
    RateLimitError,
    ServerError,
    TokenError,
)
from uplinkbridge.router import CommandRouter

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    RELOADING = "reloading"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Pacer:
    """Keep successive :meth:`wait` returns at least *spacing* seconds apart."""

    def __init__(
        self,
        spacing: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.spacing = spacing
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                delay = self._last + self.spacing - self._clock()
                # Always yield once so freshly launched tasks get to run.
                await self._sleep(max(0.0, delay))
            self._last = self._clock()


class PublishTurn:
    """One poll task's place in the publish order of a cycle.

    Used as ``async with turn``: :meth:`ready` waits until the previous task
    has published, and leaving the block passes the turn on, whether or not
    this task published anything.
    """

    def __init__(self, previous: asyncio.Future[None] | None) -> None:
        self._previous = previous
        self.done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    async def ready(self) -> None:
        if self._previous is not None:
            await asyncio.shield(self._previous)

    async def __aenter__(self) -> PublishTurn:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            await self.ready()
        finally:
            if not self.done.done():
                self.done.set_result(None)


class Scheduler:
    """Run the bridge until :meth:`request_stop` is called."""

    def __init__(
        self,
        source: ConfigSource,
        api: UplinkClient,
        bridge: MessageBridge,
        router: CommandRouter | None = None,
        *,
        spacing: float = POLL_SPACING,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._source = source
        self._config = source.current
        self._batches = self._config.batches
        self._api = api
        self._bridge = bridge
        self._router = router or CommandRouter(api)
        self._pacer = Pacer(spacing, clock)
        self._clock = clock
        self._now = now
        self._tasks: set[asyncio.Task[None]] = set()
        self._listener: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._software_checked: date | None = None
        self._last_turn: asyncio.Future[None] | None = None
        self.state = SchedulerState.IDLE

    @property
    def config(self) -> Config:
        return self._config

    @property
    def batches(self) -> list[ParameterBatch]:
        return self._batches

    def command_topic(self, config: Config | None = None) -> str:
        return f"{(config or self._config).topic_prefix}/Set/#"

    def request_stop(self) -> None:
        """Ask the daemon to shut down after the work in flight."""
        if not self._stop.is_set():
            logger.warning("Terminating...")
        self._stop.set()
        self._bridge.begin_shutdown()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        logger.info("Starting Uplink bridge...")
        self._set_state(SchedulerState.CONNECTING)
        try:
            if not await self._until_stopped(self._connect()):
                return
            self._listener = asyncio.create_task(self._listen(), name="listener")
            self._set_state(SchedulerState.RUNNING)

            while not self._stop.is_set():
                started = self._clock()
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Error in polling cycle")
                await self._sleep_remaining(started)
        finally:
            await self.shutdown()

    async def run_cycle(self) -> None:
        """Run one polling cycle: reload, parameters, status, system, software."""
        if self._source.changed():
            await self._reload()
        config = self._config

        for batch in self._batches:
            poll = partial(self._poll_parameters, config, batch)
            if not await self._launch(poll, f"parameters-{batch[0]}"):
                return
        if not await self._launch(partial(self._poll_status, config), "status"):
            return
        if not await self._launch(partial(self._poll_system, config), "system"):
            return
        if self._software_due(config):
            await self._launch(partial(self._poll_software, config), "software")

    async def drain(self) -> None:
        """Wait for every poll and command task launched so far."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        if self.state is SchedulerState.STOPPED:
            return
        self._set_state(SchedulerState.SHUTTING_DOWN)
        self._bridge.begin_shutdown()
        logger.debug("Waiting for %d task(s)...", len(self._tasks))
        await self.drain()
        if self._listener is not None:
            logger.debug("Stopping listener...")
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        await self.drain()
        logger.debug("Disconnecting from MQTT...")
        await self._bridge.disconnect()
        self._set_state(SchedulerState.STOPPED)
        logger.info("Bridge stopped.")

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        await self._bridge.connect()
        await self._bridge.subscribe(self.command_topic())

    async def _reload(self) -> None:
        self._set_state(SchedulerState.RELOADING)
        logger.info("Config changed, reloading...")
        try:
            config = self._source.reload()
        except ConfigError as e:
            logger.error("Invalid configuration, keeping the previous one: %s", e)
            self._set_state(SchedulerState.RUNNING)
            return

        previous, self._config = self._config, config
        self._batches = config.batches
        self._api.system_id = config.system_id
        logging.getLogger().setLevel(config.log_level)
        if (config.client_id, config.client_secret) != (previous.client_id, previous.client_secret):
            logger.warning("Client credentials changed; restart the bridge to use them")
        config.log_summary()

        try:
            await self._bridge.reconfigure(config.mqtt_settings)
            if config.topic_prefix != previous.topic_prefix:
                await self._bridge.unsubscribe(self.command_topic(previous))
                await self._bridge.subscribe(self.command_topic(config))
        except MqttError as e:
            logger.warning("Applying MQTT settings failed: %s", e)
        self._set_state(SchedulerState.RUNNING)

    async def _launch(
        self, poll: Callable[[PublishTurn], Coroutine[Any, Any, None]], name: str
    ) -> bool:
        """Start *poll* as a tracked task once the pacer allows another API call.

        Each task gets the next :class:`PublishTurn`, so results are published
        in launch order.  Returns ``False`` if a stop was requested.
        """
        await self._pacer.wait()
        if self._stop.is_set():
            return False
        turn = PublishTurn(self._last_turn)
        self._last_turn = turn.done
        self._track(asyncio.create_task(poll(turn), name=name))
        return True

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _software_due(self, config: Config) -> bool:
        """True in the first two intervals after local midnight, once per day."""
        now = self._now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if (now - midnight).total_seconds() >= config.interval * 2:
            return False
        if self._software_checked == now.date():
            return False
        self._software_checked = now.date()
        return True

    def remaining(self, started: float) -> float:
        """Seconds left in the current interval; zero if the cycle overran."""
        return max(0.0, self._config.interval - (self._clock() - started))

    async def _sleep_remaining(self, started: float) -> None:
        remaining = self.remaining(started)
        if remaining <= 0:
            return
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(remaining):
                await self._stop.wait()

    async def _until_stopped(self, coro: Coroutine[Any, Any, None]) -> bool:
        """Run *coro* unless a stop is requested first.  True if it completed."""
        work = asyncio.create_task(coro)
        stopper = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if self._stop.is_set():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError, MqttError):
                await work
            return False
        work.result()
        return True

    # ------------------------------------------------------------------
    # Poll tasks
    # ------------------------------------------------------------------

    async def _poll_parameters(
        self, config: Config, batch: ParameterBatch, turn: PublishTurn
    ) -> None:
        async with turn, _guard(f"parameters {batch[0]}..{batch[-1]}"):
            readings = scale(parse_readings(await self._api.parameters(batch)), config.scaling)
            await turn.ready()
            logger.debug("Got parameters from Uplink, publishing to MQTT...")
            for pid, value in readings.items():
                await self._bridge.publish(f"{config.topic_prefix}/Parameters/{pid}", value)

    async def _poll_status(self, config: Config, turn: PublishTurn) -> None:
        async with turn, _guard("status"):
            status = normalize_status_keys(parse_status(await self._api.status()))
            await turn.ready()
            logger.debug("Got status from Uplink, publishing to MQTT...")
            for name, value in status.items():
                await self._bridge.publish(f"{config.topic_prefix}/Status/{name}", value)

    async def _poll_system(self, config: Config, turn: PublishTurn) -> None:
        async with turn, _guard("system"):
            raw = await self._api.system()
            notifications = await self._api.notifications() if has_alarmed(raw) else None
            summary = parse_system_summary(raw, notifications)
            await turn.ready()
            logger.debug("Got system info from Uplink, publishing to MQTT...")
            for name, value in summary.items():
                await self._bridge.publish(f"{config.topic_prefix}/System/{name}", value)
            await self._bridge.publish(f"{config.topic_prefix}/Service/Heartbeat", HEARTBEAT)

    async def _poll_software(self, config: Config, turn: PublishTurn) -> None:
        async with turn, _guard("software"):
            logger.debug("Checking for software upgrade...")
            raw = await self._api.software()
            upgrade = software_upgrade(raw)
            if upgrade is not None:
                logger.info("New software upgrade available: %s", upgrade)
            await turn.ready()
            await self._bridge.publish(f"{config.topic_prefix}/Software", parse_software(raw))

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        while True:
            try:
                topic, payload = await self._bridge.receive()
            except MqttError:
                logger.debug("Listener stopped, bridge disconnected")
                return
            self._track(asyncio.create_task(self._router.handle(topic, payload)))

    def _set_state(self, state: SchedulerState) -> None:
        logger.debug("Scheduler %s -> %s", self.state.value, state.value)
        self.state = state


@contextlib.asynccontextmanager
async def _guard(what: str) -> AsyncIterator[None]:
    """Log and swallow failures of one poll task so the cycle carries on."""
    try:
        yield
    except (RateLimitError, ServerError) as e:
        logger.debug("Polling %s failed: %r", what, e)
    except (ApiError, TokenError, ParseError, ValueError) as e:
        logger.warning("Polling %s failed: %s", what, e)
    except MqttError as e:
        logger.warning("Publishing %s failed: %s", what, e)
    except Exception:
        logger.exception("Unexpected error polling %s", what)
