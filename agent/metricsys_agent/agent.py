"""Registration agent - periodically announces this server to the directory tier."""
import asyncio
import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable, List, Optional, Set

import httpx

from metricsys_agent.config import (
    AgentConfig,
    DEFAULT_INTERVAL,
    REQUEST_TIMEOUT,
    effective_interval,
    is_valid_hostname,
)
from metricsys_agent.delivery import DeliveryOutcome, build_registration_uri, create_transport, deliver
from metricsys_agent.errors import ConfigurationError, LifecycleError, ResolutionError
from metricsys_agent.events import LoggingEventSink, RegistrationEventSink, SafeEventSink
from metricsys_agent.models import CounterCatalog, CounterDescriptor, RegistrationRecord
from metricsys_agent.resolver import IPAddress, Resolver, resolve_host
from metricsys_agent.serializer import CompactBinarySerializer, Serializer, get_serializer

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DISPOSED = "disposed"


class RoundState(str, Enum):
    SCHEDULED = "scheduled"
    RESOLVING = "resolving"
    NO_ADDRESSES = "no_addresses"
    FAN_OUT_DISPATCHED = "fan_out_dispatched"
    ABANDONED = "abandoned"


@dataclass
class RegistrationRound:
    """What one round did. Deliveries may still be running when it is returned."""
    state: RoundState = RoundState.SCHEDULED
    addresses: List[IPAddress] = field(default_factory=list)
    record: Optional[RegistrationRecord] = None
    payload: Optional[bytes] = None
    deliveries: List["asyncio.Task[DeliveryOutcome]"] = field(default_factory=list)


def _seconds(value) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _check_port(port, param: str) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 0xFFFF:
        raise ConfigurationError(param, f"port must be in 1..65535, got {port!r}")
    return port


class RegistrationAgent:
    """Announces ``source`` and the catalog's counters to every address behind
    ``destination_hostname``.

    The first round runs as soon as the agent starts. The next round is armed
    only after the current round has dispatched its deliveries, and it waits
    ``effective_interval`` seconds. Deliveries run as independent tasks.
    Their outcomes go to the event sink only.

    ``start`` must be called on the event loop thread. ``stop`` may be called
    from any thread.
    """

    def __init__(
        self,
        destination_hostname: str,
        destination_port: int,
        source_hostname: str,
        source_port: int,
        machine_function: Optional[str] = None,
        datacenter: Optional[str] = None,
        interval=DEFAULT_INTERVAL,
        catalog: Optional[CounterCatalog] = None,
        *,
        serializer: Optional[Serializer] = None,
        event_sink: Optional[RegistrationEventSink] = None,
        resolver: Optional[Resolver] = None,
        transport_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        request_timeout=REQUEST_TIMEOUT,
        startup_jitter=0.0,
    ):
        if not is_valid_hostname(destination_hostname):
            raise ConfigurationError("destination_hostname", f"invalid hostname {destination_hostname!r}")
        _check_port(destination_port, "destination_port")
        if not is_valid_hostname(source_hostname):
            raise ConfigurationError("source_hostname", f"invalid hostname {source_hostname!r}")
        _check_port(source_port, "source_port")

        interval = _seconds(interval)
        if interval <= 0:
            raise ConfigurationError("interval", f"interval must be positive, got {interval}")
        request_timeout = _seconds(request_timeout)
        if request_timeout <= 0:
            raise ConfigurationError("request_timeout", f"timeout must be positive, got {request_timeout}")
        startup_jitter = _seconds(startup_jitter)
        if startup_jitter < 0:
            raise ConfigurationError("startup_jitter", f"jitter must not be negative, got {startup_jitter}")
        if catalog is None:
            raise ConfigurationError("catalog", "a counter catalog is required")

        self.destination_hostname = destination_hostname
        self.destination_port = destination_port
        self.source_hostname = source_hostname
        self.source_port = source_port
        self.machine_function = machine_function or ""
        self.datacenter = datacenter or ""
        self.interval = interval
        self.request_timeout = request_timeout
        self.effective_interval = effective_interval(interval, request_timeout)
        self.startup_jitter = startup_jitter

        self._catalog = catalog
        self._serializer = serializer or CompactBinarySerializer()
        self._events = SafeEventSink(event_sink or LoggingEventSink())
        self._resolver = resolver or (lambda host: resolve_host(host, timeout=self.request_timeout))
        self._transport_factory = transport_factory or (lambda: create_transport(self.request_timeout))

        # 锁只保护状态与句柄的替换，从不跨网络 I/O 持有
        self._lock = threading.Lock()
        self._state = AgentState.CREATED
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._closing: Optional[asyncio.Task] = None
        self._rounds: Set[asyncio.Task] = set()
        self._deliveries: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cfg: AgentConfig, catalog: CounterCatalog, **kwargs) -> "RegistrationAgent":
        kwargs.setdefault("serializer", get_serializer(cfg.registration.serializer))
        kwargs.setdefault("request_timeout", cfg.registration.request_timeout)
        kwargs.setdefault("startup_jitter", cfg.registration.startup_jitter)
        return cls(
            cfg.destination.host,
            cfg.destination.port,
            cfg.source.host,
            cfg.source.port,
            cfg.source.machine_function,
            cfg.source.datacenter,
            cfg.registration.interval,
            catalog,
            **kwargs,
        )

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_scheduled(self) -> bool:
        """True while a future round is armed on the timer."""
        with self._lock:
            return self._timer is not None

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None, schedule: bool = True) -> None:
        """Open the transport and arm an immediate first round.

        With ``schedule=False`` only the transport is opened; rounds then run
        solely through ``run_round``.
        """
        if loop is None:
            loop = asyncio.get_running_loop()
        with self._lock:
            if self._state is not AgentState.CREATED:
                raise LifecycleError("Cannot start more than once.")
            self._loop = loop
            self._client = self._transport_factory()
            self._state = AgentState.RUNNING
            if schedule:
                delay = random.uniform(0, self.startup_jitter) if self.startup_jitter else 0
                self._timer = loop.call_later(delay, self._fire)
        logger.info(
            "Registration agent started: %s:%d -> %s:%d every %ss",
            self.source_hostname, self.source_port,
            self.destination_hostname, self.destination_port, self.effective_interval,
        )

    def stop(self) -> None:
        """Dispose the agent. Safe from any thread; later calls do nothing.

        Cancels the timer and every in-flight delivery, then releases the
        transport. Rounds still resolving are not interrupted; they find the
        agent disposed and dispatch nothing.
        """
        with self._lock:
            if self._state is AgentState.DISPOSED:
                return
            was_running = self._state is AgentState.RUNNING
            self._state = AgentState.DISPOSED
            timer, self._timer = self._timer, None
            # 不清空 _client：进行中的投递仍持有引用，并会处理取消/已关闭异常
            client = self._client
            deliveries = list(self._deliveries)
            loop = self._loop
        if not was_running:
            return

        if self._on_loop_thread(loop):
            self._shutdown(timer, client, deliveries)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._shutdown, timer, client, deliveries)
        logger.info("Registration agent stopped")

    dispose = stop

    async def close(self) -> None:
        """Stop the agent and wait until the transport is released."""
        self.stop()
        if self._closing is not None:
            await self._closing
        elif self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "RegistrationAgent":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _on_loop_thread(self, loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _shutdown(self, timer, client, deliveries) -> None:
        if timer is not None:
            timer.cancel()
        for task in deliveries:
            task.cancel()
        if client is not None and not client.is_closed:
            self._closing = self._loop.create_task(client.aclose())

    def _track(self, tasks: Set[asyncio.Task], task: asyncio.Task) -> asyncio.Task:
        with self._lock:
            tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            with self._lock:
                tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Registration task failed", exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    def _fire(self) -> None:
        with self._lock:
            if self._state is not AgentState.RUNNING:
                return
            self._timer = None
        self._track(self._rounds, self._loop.create_task(self._scheduled_round()))

    async def _scheduled_round(self) -> None:
        try:
            await self.run_round()
        except Exception:
            logger.exception("Registration round failed")
        finally:
            self._rearm()

    def _rearm(self) -> None:
        with self._lock:
            if self._state is AgentState.RUNNING and self._timer is None:
                self._timer = self._loop.call_later(self.effective_interval, self._fire)

    def build_record(self) -> RegistrationRecord:
        """Snapshot the catalog into a fresh record."""
        return RegistrationRecord(
            hostname=self.source_hostname,
            port=self.source_port,
            machine_function=self.machine_function,
            datacenter=self.datacenter,
            counters=[CounterDescriptor.from_counter(c) for c in self._catalog.counters],
        )

    async def run_round(self) -> RegistrationRound:
        """Resolve, assemble and dispatch one round without awaiting deliveries.

        The scheduler calls this; it may also be called directly on a running
        agent to trigger an extra round.
        """
        rnd = RegistrationRound(state=RoundState.RESOLVING)
        try:
            rnd.addresses = list(await self._resolver(self.destination_hostname))
        except (ResolutionError, OSError) as e:
            self._events.resolution_failed(self.destination_hostname, str(e) or type(e).__name__)
            rnd.state = RoundState.NO_ADDRESSES
            return rnd
        if not rnd.addresses:
            logger.debug("%s resolved to no addresses", self.destination_hostname)
            rnd.state = RoundState.NO_ADDRESSES
            return rnd

        with self._lock:
            client = self._client if self._state is AgentState.RUNNING else None
        if client is None:
            rnd.state = RoundState.ABANDONED
            return rnd

        rnd.record = self.build_record()
        rnd.payload = self._serializer.serialize(rnd.record)
        content_type = getattr(self._serializer, "content_type", "application/octet-stream")
        for address in rnd.addresses:
            uri = build_registration_uri(address, self.destination_port)
            task = self._loop.create_task(deliver(client, uri, rnd.payload, self._events, content_type))
            rnd.deliveries.append(self._track(self._deliveries, task))
        rnd.state = RoundState.FAN_OUT_DISPATCHED
        logger.debug("Dispatched registration to %d address(es)", len(rnd.deliveries))
        return rnd
