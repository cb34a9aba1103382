"""Rate limiting events and the sinks that receive them.

Events are handed to an injected EventSink rather than a framework-wide bus,
so the limiter core does not depend on the host application. Sinks must not
raise: a failing sink is logged and the request carries on.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from admission.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestThrottled:
    """A request was rejected by one of its limits."""
    key: str
    endpoint: Optional[str]
    binding_spec: Optional[str]
    retry_after: int
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    occurred_at: float = field(default_factory=time.time)

    name = "request_throttled"

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, **asdict(self)}


@dataclass(frozen=True)
class BackendDegraded:
    """The shared backing store failed and checks moved to the fallback store."""
    error: str
    since: float
    backend: str = "redis"
    occurred_at: float = field(default_factory=time.time)

    name = "backend_degraded"

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, **asdict(self)}


RateLimitEvent = Union[RequestThrottled, BackendDegraded]


class EventSink(ABC):
    """Receives rate limiting events."""

    @abstractmethod
    def publish(self, event: RateLimitEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Writes events as structured log records."""

    def __init__(self, logger_name: str = "admission.events") -> None:
        self._logger = get_logger(logger_name)

    def publish(self, event: RateLimitEvent) -> None:
        if isinstance(event, RequestThrottled):
            self._logger.warning(
                f"Request throttled on {event.endpoint} ({event.binding_spec})",
                extra=get_log_context(
                    rate_limit_key=event.key,
                    endpoint=event.endpoint,
                    user_id=event.user_id,
                    client_ip=event.client_ip,
                    retry_after=event.retry_after,
                    event=event.name,
                ),
            )
        else:
            self._logger.error(
                f"Rate limiter degraded to in-memory fallback: {event.error}",
                extra=get_log_context(
                    backend=event.backend,
                    degraded_since=event.since,
                    event=event.name,
                ),
            )


class CallbackEventSink(EventSink):
    """Forwards events to a plain callable (alerting hook, queue, test probe)."""

    def __init__(self, callback: Callable[[RateLimitEvent], Any]) -> None:
        self._callback = callback

    def publish(self, event: RateLimitEvent) -> None:
        self._callback(event)


class CompositeEventSink(EventSink):
    """Fans events out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks: List[EventSink] = list(sinks)

    def publish(self, event: RateLimitEvent) -> None:
        for sink in self._sinks:
            publish_safely(sink, event)


def publish_safely(sink: Optional[EventSink], event: RateLimitEvent) -> None:
    """Publish an event, logging instead of raising if the sink fails."""
    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception as e:
        logger.exception(f"Event sink {type(sink).__name__} failed on {event.name}: {e}")
