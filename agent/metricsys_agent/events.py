"""Observability sink for registration outcomes.

The agent reports every outcome through a sink instead of return values.
Sinks are fire-and-forget: SafeEventSink guarantees that a misbehaving sink
never raises back into a registration round.
"""
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class RegistrationEventSink(Protocol):
    def resolution_failed(self, hostname: str, message: str) -> None:
        ...

    def registration_succeeded(self, uri: str) -> None:
        ...

    def registration_failed(self, uri: str, status_code: int, message: str) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes events to the ``metricsys_agent.events`` logger."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def resolution_failed(self, hostname: str, message: str) -> None:
        self._log.warning("Could not resolve registration destination %s: %s", hostname, message)

    def registration_succeeded(self, uri: str) -> None:
        self._log.debug("Registered with %s", uri)

    def registration_failed(self, uri: str, status_code: int, message: str) -> None:
        self._log.warning("Registration with %s failed (status=%d): %s", uri, status_code, message)


class SafeEventSink:
    """Wraps a sink so its exceptions are logged instead of propagated."""

    def __init__(self, inner: RegistrationEventSink):
        self.inner = inner

    def _emit(self, name: str, *args) -> None:
        try:
            getattr(self.inner, name)(*args)
        except Exception:
            logger.exception("Event sink %s raised in %s", type(self.inner).__name__, name)

    def resolution_failed(self, hostname: str, message: str) -> None:
        self._emit("resolution_failed", hostname, message)

    def registration_succeeded(self, uri: str) -> None:
        self._emit("registration_succeeded", uri)

    def registration_failed(self, uri: str, status_code: int, message: str) -> None:
        self._emit("registration_failed", uri, status_code, message)
