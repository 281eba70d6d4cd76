import logging
from collections.abc import Callable, Iterable

from friendgraph.domain.events import DomainEvent, EventType

log = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """In-process fan-out of committed domain events.

    Handlers run after the engine's transaction has committed. A failing
    handler is logged and skipped so delivery problems never reach the caller
    of the transition that produced the event.
    """

    def __init__(self):
        self._handlers: list[tuple[frozenset[EventType] | None, EventHandler]] = []

    def subscribe(self, handler: EventHandler, types: Iterable[EventType] | None = None) -> None:
        wanted = frozenset(EventType(t) for t in types) if types is not None else None
        self._handlers.append((wanted, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers = [(t, h) for t, h in self._handlers if h is not handler]

    def publish(self, event: DomainEvent) -> None:
        for wanted, handler in list(self._handlers):
            if wanted is not None and event.type not in wanted:
                continue
            try:
                handler(event)
            except Exception:
                log.exception("event handler %r failed for %s", handler, event.type.value)


class RecordingHandler:
    """Keeps every event it receives; handy for tests and local debugging."""

    def __init__(self):
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


def log_event(event: DomainEvent) -> None:
    log.info(
        "event %s subject=%s counterparty=%s audience=%s",
        event.type.value,
        event.subject_user_id,
        event.counterparty_user_id,
        list(event.audience),
    )
