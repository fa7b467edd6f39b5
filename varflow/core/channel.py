#!/usr/bin/env python3
"""Channels connecting pipeline stages.

A channel is an append-only sequence of tuples with named fields. It is
written by exactly one producer and read through views: every view replays
the full stream independently, so a channel can feed any number of
consumers (fan-out). Derived channels implement keyed joins (fan-in), full
collection, default substitution and merging.

Channels are not thread-safe. The graph scheduler is the only code that
emits into or reads from them.

Besides items, a channel carries *abandoned* keys: samples whose upstream
stage failed or was skipped. Abandoned keys travel downstream with the data
so a join can tell a sample that was dropped on purpose from one that
starved.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Hashable, Iterator, Sequence
from pathlib import Path
from typing import Any

from varflow.core.constants import KEY_FIELD, Element
from varflow.core.exceptions import GraphError, JoinStarvationError
from varflow.core.logging_config import get_logger

logger = get_logger(__name__)


class Channel:
    """Append-only, multi-consumer stream of fixed-arity tuples."""

    def __init__(self, name: str, fields: Sequence[str], parents: Sequence[Channel] = ()):
        fields = tuple(fields)
        if not fields:
            raise GraphError(f"Channel {name} must declare at least one field")
        if len(set(fields)) != len(fields):
            raise GraphError(f"Channel {name} has duplicate field names: {fields}")

        self.name = name
        self.fields = fields
        self.parents = tuple(parents)
        self.producer: str | None = None

        self._items: list[Element] = []
        self._abandoned: list[Hashable] = []
        self._closed = False
        self._subscribers: list[Any] = []

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Channel({self.name!r}, fields={self.fields}, items={len(self._items)}, {state})"

    @property
    def arity(self) -> int:
        return len(self.fields)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def items(self) -> tuple[Element, ...]:
        return tuple(self._items)

    @property
    def abandoned(self) -> frozenset:
        return frozenset(self._abandoned)

    def field_index(self, field: str) -> int:
        try:
            return self.fields.index(field)
        except ValueError:
            raise GraphError(f"Channel {self.name} has no field {field!r} (fields: {self.fields})") from None

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def emit(self, item: Element) -> None:
        """Append one element and push it to every subscriber."""
        if self._closed:
            raise GraphError(f"Cannot emit into closed channel {self.name}")
        item = tuple(item)
        if len(item) != self.arity:
            raise GraphError(f"Channel {self.name} expects {self.arity} fields {self.fields}, got {len(item)}")
        self._items.append(item)
        for subscriber in list(self._subscribers):
            subscriber.on_item(item)

    def abandon(self, key: Hashable) -> None:
        """Record that no element will ever be produced for ``key``."""
        if self._closed:
            raise GraphError(f"Cannot abandon a key on closed channel {self.name}")
        self._abandoned.append(key)
        for subscriber in list(self._subscribers):
            subscriber.on_abandon(key)

    def close(self) -> None:
        """Mark the channel complete. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        for subscriber in list(self._subscribers):
            subscriber.on_close()

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def subscribe(self, subscriber: Any) -> None:
        """Attach a subscriber and replay everything produced so far."""
        self._subscribers.append(subscriber)
        for item in self._items:
            subscriber.on_item(item)
        for key in self._abandoned:
            subscriber.on_abandon(key)
        if self._closed:
            subscriber.on_close()

    def view(self) -> ChannelView:
        """Return a new independent consumer view of this channel."""
        return ChannelView(self)

    def broadcast(self, n: int) -> list[ChannelView]:
        """Return ``n`` independent views of the same ordered element stream."""
        if n < 1:
            raise ValueError(f"broadcast needs at least one consumer, got {n}")
        return [self.view() for _ in range(n)]

    def join(self, other: Channel, by: str = KEY_FIELD, strict: bool = True, name: str | None = None) -> Channel:
        """Inner join with ``other`` on the ``by`` field.

        Emits ``(key, *self_rest, *other_rest)`` once both sides have produced
        an element with the same key, in arrival order of the completing
        element. Keys seen on only one side never emit. When both sides are
        closed, unmatched keys that were not abandoned upstream raise
        :class:`JoinStarvationError` if ``strict``, otherwise they are
        dropped with a warning.
        """
        return _Join(self, other, by, strict, name).output

    def collect(self, sort: bool = False, key: Callable[[Any], Any] | None = None, name: str | None = None) -> Channel:
        """Materialize the whole channel into a single list element.

        The list is emitted once, after the channel closes, and only if the
        channel produced anything (see :meth:`if_empty`). Single-field
        elements are unwrapped. With ``sort`` the list is ordered by ``key``,
        or lexicographically by file name for paths and by value otherwise.
        """
        return _Collect(self, sort, key, name).output

    def if_empty(self, default: Any, name: str | None = None) -> Channel:
        """Forward all elements, or ``default`` if the channel closes empty."""
        return _IfEmpty(self, default, name).output

    def mix(self, *others: Channel, name: str | None = None) -> Channel:
        """Merge this channel with ``others`` into one stream of the same arity."""
        return _Mix((self, *others), name).output


class ChannelView:
    """A single consumer's cursor over a channel.

    Views buffer elements until the consumer drains them. Draining one view
    does not affect any other view of the same channel.
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        self._buffer: deque[Element] = deque()
        self._abandoned: deque[Hashable] = deque()
        self._closed = False
        channel.subscribe(self)

    def __repr__(self) -> str:
        return f"ChannelView({self.channel.name!r}, buffered={len(self._buffer)})"

    def __iter__(self) -> Iterator[Element]:
        while self._buffer:
            yield self._buffer.popleft()

    @property
    def fields(self) -> tuple[str, ...]:
        return self.channel.fields

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exhausted(self) -> bool:
        """True once the channel is closed and every element was drained."""
        return self._closed and not self._buffer

    def drain(self) -> list[Element]:
        return list(self)

    def drain_abandoned(self) -> list[Hashable]:
        keys = list(self._abandoned)
        self._abandoned.clear()
        return keys

    def on_item(self, item: Element) -> None:
        self._buffer.append(item)

    def on_abandon(self, key: Hashable) -> None:
        self._abandoned.append(key)

    def on_close(self) -> None:
        self._closed = True


# =============================================================================
# Derived channels
# =============================================================================


class _JoinSide:
    """Subscriber adapter routing one parent's events into a join."""

    def __init__(self, join: _Join, side: int):
        self._join = join
        self._side = side

    def on_item(self, item: Element) -> None:
        self._join.receive(self._side, item)

    def on_abandon(self, key: Hashable) -> None:
        self._join.abandon(key)

    def on_close(self) -> None:
        self._join.close_side()


class _Join:
    def __init__(self, left: Channel, right: Channel, by: str, strict: bool, name: str | None):
        self._key_index = (left.field_index(by), right.field_index(by))
        self._strict = strict
        self._pending: tuple[dict[Hashable, deque], dict[Hashable, deque]] = ({}, {})
        self._abandoned: set[Hashable] = set()
        self._open_sides = 2

        left_rest = tuple(f for f in left.fields if f != by)
        right_rest = tuple(f for f in right.fields if f != by)
        overlap = set(left_rest) & set(right_rest)
        if overlap:
            raise GraphError(f"Cannot join {left.name} with {right.name}: both carry {sorted(overlap)}")

        self.output = Channel(name or f"{left.name}.join({right.name})", (by, *left_rest, *right_rest), (left, right))
        left.subscribe(_JoinSide(self, 0))
        right.subscribe(_JoinSide(self, 1))

    def _split(self, side: int, item: Element) -> tuple[Hashable, Element]:
        index = self._key_index[side]
        return item[index], item[:index] + item[index + 1 :]

    def receive(self, side: int, item: Element) -> None:
        key, rest = self._split(side, item)
        waiting = self._pending[1 - side].get(key)
        if waiting:
            other_rest = waiting.popleft()
            if not waiting:
                del self._pending[1 - side][key]
            left_rest, right_rest = (rest, other_rest) if side == 0 else (other_rest, rest)
            self.output.emit((key, *left_rest, *right_rest))
        else:
            self._pending[side].setdefault(key, deque()).append(rest)

    def abandon(self, key: Hashable) -> None:
        if key in self._abandoned:
            return
        self._abandoned.add(key)
        self.output.abandon(key)

    def close_side(self) -> None:
        self._open_sides -= 1
        if self._open_sides:
            return

        unmatched = sorted(
            {str(key) for pending in self._pending for key in pending if key not in self._abandoned}
        )
        if unmatched:
            if self._strict:
                raise JoinStarvationError(self.output.name, unmatched)
            logger.warning(f"Join {self.output.name} dropped unmatched keys: {', '.join(unmatched)}")
        self.output.close()


def _default_sort_key(value: Any) -> Any:
    if isinstance(value, Path):
        return value.name
    return value


class _Collect:
    def __init__(self, parent: Channel, sort: bool, key: Callable[[Any], Any] | None, name: str | None):
        self._sort = sort
        self._key = key or _default_sort_key
        self._unwrap = parent.arity == 1
        self._values: list[Any] = []
        field = parent.fields[0] if self._unwrap else parent.name
        self.output = Channel(name or f"{parent.name}.collect()", (field,), (parent,))
        parent.subscribe(self)

    def on_item(self, item: Element) -> None:
        self._values.append(item[0] if self._unwrap else item)

    def on_abandon(self, key: Hashable) -> None:
        pass

    def on_close(self) -> None:
        if self._values:
            values = sorted(self._values, key=self._key) if self._sort else list(self._values)
            self.output.emit((values,))
        self.output.close()


class _IfEmpty:
    def __init__(self, parent: Channel, default: Any, name: str | None):
        if isinstance(default, tuple) and len(default) == parent.arity:
            self._default = default
        elif parent.arity == 1:
            self._default = (default,)
        else:
            raise GraphError(f"Default for {parent.name} must be a tuple of {parent.arity} values")
        self._count = 0
        self.output = Channel(name or f"{parent.name}.if_empty()", parent.fields, (parent,))
        parent.subscribe(self)

    def on_item(self, item: Element) -> None:
        self._count += 1
        self.output.emit(item)

    def on_abandon(self, key: Hashable) -> None:
        self.output.abandon(key)

    def on_close(self) -> None:
        if not self._count:
            logger.debug(f"Channel {self.output.name} was empty, substituting default")
            self.output.emit(self._default)
        self.output.close()


class _Mix:
    def __init__(self, parents: tuple[Channel, ...], name: str | None):
        arities = {parent.arity for parent in parents}
        if len(arities) != 1:
            raise GraphError(f"Cannot mix channels of different arity: {[p.name for p in parents]}")
        self._open = len(parents)
        names = ", ".join(p.name for p in parents[1:])
        self.output = Channel(name or f"{parents[0].name}.mix({names})", parents[0].fields, parents)
        for parent in parents:
            parent.subscribe(self)

    def on_item(self, item: Element) -> None:
        self.output.emit(item)

    def on_abandon(self, key: Hashable) -> None:
        self.output.abandon(key)

    def on_close(self) -> None:
        self._open -= 1
        if not self._open:
            self.output.close()
