"""Typed publish/subscribe for ledger notifications.

Subscribers register per event class and receive the concrete dataclass.
Payloads are advisory: subscribers re-query the ledger instead of trusting
them for correctness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

if TYPE_CHECKING:  # pragma: no cover
    from budget_cache import CacheKey

logger = logging.getLogger(__name__)


class TransactionAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class TransactionsChanged:
    action: TransactionAction
    id: Optional[str] = None


@dataclass(frozen=True)
class AccountBalancesChanged:
    pass


@dataclass(frozen=True)
class BudgetProgressInvalidated:
    reason: Optional[str] = None
    keys: frozenset[CacheKey] = field(default_factory=frozenset)


E = TypeVar("E")


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[object], None]]] = {}

    def subscribe(
        self, kind: type[E], handler: Callable[[E], None]
    ) -> Callable[[], None]:
        self._subscribers.setdefault(kind, []).append(handler)
        return lambda: self.unsubscribe(kind, handler)

    def once(self, kind: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        def wrapper(event: E) -> None:
            self.unsubscribe(kind, wrapper)
            handler(event)

        return self.subscribe(kind, wrapper)

    def unsubscribe(self, kind: type[E], handler: Callable[[E], None]) -> None:
        handlers = self._subscribers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: object) -> int:
        handlers = list(self._subscribers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    f"event_handler_failed: event={type(event).__name__}"
                )
        return len(handlers)
