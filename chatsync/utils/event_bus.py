import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple, Type, TypeVar


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveChanged:
    conversation_key: str
    active: bool


@dataclass(frozen=True)
class ReadStatusChanged:
    conversation_key: str
    read_through_ms: int


@dataclass(frozen=True)
class UnreadChanged:
    conversation_key: str
    count: int
    total: int


@dataclass(frozen=True)
class MessageReceived:
    conversation_key: str
    message_id: str


@dataclass(frozen=True)
class MessageDeleted:
    conversation_key: str
    message_id: str


@dataclass(frozen=True)
class SyncWarning:
    message: str
    dropped_keys: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ConnectivityWarning:
    scope: str
    failed_resets: int


@dataclass(frozen=True)
class Resubscribed:
    scope: str
    subscription_id: str


E = TypeVar("E")
Handler = Callable[[E], None]


class EventBus:
    """In-process pub/sub keyed by event type.

    Delivery is synchronous, in subscription order. A failing handler is
    logged and does not prevent delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[type, List[Callable]] = {}

    def subscribe(self, event_type: Type[E], handler: Handler) -> Callable[[], None]:
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)
