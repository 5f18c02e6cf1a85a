# changefeed.py
"""
In-process real-time change feed.

Every committed write made through RelationalStore is published here as a
ChangeEvent. Subscribers pick what they want with a ChangeFilter (table,
event types, column equality) and read events as an async stream.

Delivery is at-least-once and ordered per row; consumers dedupe by id.
"""
import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Set, Tuple

from courier_service.errors import SubscriptionError

logger = logging.getLogger("courier-service.changefeed")


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_CHANGES = frozenset(ChangeType)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: ChangeType
    new: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None
    seq: int = 0


@dataclass(frozen=True)
class ChangeFilter:
    table: str
    events: FrozenSet[ChangeType] = ALL_CHANGES
    where: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def on(cls, table: str, *events: ChangeType, **where) -> "ChangeFilter":
        return cls(
            table=table,
            events=frozenset(events) if events else ALL_CHANGES,
            where=tuple(sorted(where.items())),
        )

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        row = event.new if event.type != ChangeType.DELETE else (event.old or {})
        return all(row.get(col) == value for col, value in self.where)


class Subscription:
    """
    Cancellable handle shared by every stream in the service.
    close() is idempotent and runs the release hook exactly once.
    """

    def __init__(self, name: str = "subscription", on_close: Optional[Callable[[], None]] = None):
        self.name = name
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        hook, self._on_close = self._on_close, None
        if hook:
            hook()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


_END = object()


class FeedSubscription(Subscription):
    """Queue-backed subscription; iterate with `async for event in sub`."""

    def __init__(self, flt: ChangeFilter, on_close: Callable[[], None]):
        super().__init__(name=f"feed:{flt.table}", on_close=on_close)
        self.filter = flt
        self._queue: asyncio.Queue = asyncio.Queue()

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        self._queue.put_nowait(_END)

    def _deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def _fail(self, exc: BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        # buffered events are dropped once the consumer has unsubscribed
        if item is _END or self.closed:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            super().close()
            raise SubscriptionError(str(item)) from item
        return item


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Set[FeedSubscription] = set()
        self._seq = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, flt: ChangeFilter) -> FeedSubscription:
        sub: Optional[FeedSubscription] = None

        def release():
            self._subscriptions.discard(sub)
            logger.debug(f"[ChangeFeed] Released {flt.table} subscription ({len(self._subscriptions)} active)")

        sub = FeedSubscription(flt, on_close=release)
        self._subscriptions.add(sub)
        logger.debug(f"[ChangeFeed] New {flt.table} subscription ({len(self._subscriptions)} active)")
        return sub

    def publish(
        self,
        table: str,
        change: ChangeType,
        new: Dict[str, Any],
        old: Optional[Dict[str, Any]] = None,
    ) -> ChangeEvent:
        event = ChangeEvent(table=table, type=change, new=dict(new), old=old, seq=next(self._seq))
        self.deliver(event)
        return event

    def deliver(self, event: ChangeEvent) -> None:
        """Fan an event out to matching subscribers. Also used for redelivery."""
        for sub in list(self._subscriptions):
            if sub.filter.matches(event):
                sub._deliver(event)

    def fail_all(self, exc: BaseException) -> None:
        """Transport drop: every live subscription raises SubscriptionError."""
        logger.warning(f"[ChangeFeed] Dropping {len(self._subscriptions)} subscriptions: {exc}")
        for sub in list(self._subscriptions):
            sub._fail(exc)
            self._subscriptions.discard(sub)


async def invoke(callback: Optional[Callable], *args) -> None:
    """Call a listener that may be a plain function or a coroutine function."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
