"""Domain events primitives for the modular monolith."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Type, TypeVar, get_args, get_type_hints
from uuid import UUID, uuid4


@dataclass(frozen=True)
class DomainEvent:
    """Base domain event (immutable)."""

    aggregate_id: UUID
    event_id: UUID = field(default_factory=uuid4)
    occurred_on: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_name: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_name", self.__class__.__name__)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation stored in the outbox."""
        return _normalize_for_json(asdict(self))


def _normalize_for_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_for_json(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize_for_json(val) for key, val in value.items()}
    return value


class DomainEventMixin:
    """Mixin for aggregate roots that collect domain events in memory."""

    _domain_events: list[DomainEvent]

    def add_domain_event(self, event: DomainEvent) -> None:
        if not hasattr(self, "_domain_events"):
            self._domain_events = []
        self._domain_events.append(event)

    def clear_domain_events(self) -> None:
        if hasattr(self, "_domain_events"):
            self._domain_events.clear()

    @property
    def domain_events(self) -> list[DomainEvent]:
        if not hasattr(self, "_domain_events"):
            self._domain_events = []
        return list(self._domain_events)


# ---------------------------------------------------------------------------
# Registry (rehydration of stored events)
# ---------------------------------------------------------------------------

_EVENT_REGISTRY: Dict[str, Type[DomainEvent]] = {}

E = TypeVar("E", bound=Type[DomainEvent])


def register_event(event_class: E) -> E:
    """Class decorator: make ``event_class`` rebuildable from the outbox."""
    _EVENT_REGISTRY[event_class.__name__] = event_class
    return event_class


def event_from_payload(event_type: str, payload: Dict[str, Any]) -> DomainEvent:
    """Rebuild a registered event from its JSON payload.

    Field values are coerced back using the dataclass annotations
    (``UUID``, ``Decimal``, ``datetime``); other values pass through.

    Raises:
        KeyError: ``event_type`` was never registered.
    """
    event_class = _EVENT_REGISTRY[event_type]
    hints = get_type_hints(event_class)
    kwargs: Dict[str, Any] = {}
    for f in fields(event_class):
        if not f.init or f.name not in payload:
            continue
        kwargs[f.name] = _coerce(hints.get(f.name), payload[f.name])
    return event_class(**kwargs)


def _coerce(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    args = [arg for arg in get_args(hint) if arg is not type(None)]
    target = args[0] if args else hint
    if target is UUID:
        return UUID(str(value))
    if target is Decimal:
        return Decimal(str(value))
    if target is datetime:
        return datetime.fromisoformat(value)
    return value
