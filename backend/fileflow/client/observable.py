"""
Minimal observable values for the client state cache.

    files = Observable([])
    unsubscribe = files.subscribe(print)   # called immediately with []
    files.set([...])                       # every subscriber sees the new value
    unsubscribe()                          # idempotent

A Derived view maps a source observable and only holds a subscription on
the source while it has subscribers of its own. That internal subscription
is uncounted, so on_subscribe / on_unsubscribe see exactly one call per
external handle whether it was taken on the source or on a view.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
S = TypeVar("S")

Subscriber  = Callable[[T], None]
Unsubscribe = Callable[[], None]
Hook        = Callable[[], None]


class Observable(Generic[T]):
    """
    on_first / on_last fire when the subscriber count goes 0 → 1 and 1 → 0.
    on_subscribe / on_unsubscribe fire once per counted handle.
    """

    def __init__(
        self,
        value: T,
        on_first: Hook | None = None,
        on_last:  Hook | None = None,
        on_subscribe:   Hook | None = None,
        on_unsubscribe: Hook | None = None,
    ) -> None:
        self._value = value
        self._subscribers: dict[int, Subscriber] = {}
        self._next_token = 0
        self._on_first = on_first
        self._on_last  = on_last
        self._on_subscribe   = on_subscribe
        self._on_unsubscribe = on_unsubscribe

    @property
    def value(self) -> T:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers.values()):
            try:
                callback(value)
            except Exception:
                logger.exception("Observable subscriber raised")

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self._value))

    def subscribe(self, callback: Subscriber, *, counted: bool = True) -> Unsubscribe:
        token = self._next_token
        self._next_token += 1
        if not self._subscribers and self._on_first is not None:
            self._on_first()
        self._subscribers[token] = callback
        if counted and self._on_subscribe is not None:
            self._on_subscribe()
        callback(self._value)

        def unsubscribe() -> None:
            if self._subscribers.pop(token, None) is None:
                return
            if counted and self._on_unsubscribe is not None:
                self._on_unsubscribe()
            if not self._subscribers and self._on_last is not None:
                self._on_last()

        return unsubscribe


class Derived(Observable[S]):
    """Read-only view: value = transform(source.value)."""

    def __init__(
        self,
        source:    Observable[T],
        transform: Callable[[T], S],
        on_subscribe:   Hook | None = None,
        on_unsubscribe: Hook | None = None,
    ) -> None:
        super().__init__(
            transform(source.value),
            on_first=self._attach,
            on_last=self._detach,
            on_subscribe=on_subscribe,
            on_unsubscribe=on_unsubscribe,
        )
        self._source    = source
        self._transform = transform
        self._source_unsubscribe: Unsubscribe | None = None

    @property
    def value(self) -> S:
        return self._transform(self._source.value)

    def set(self, value: S) -> None:
        raise TypeError("Derived observables are read-only")

    def _attach(self) -> None:
        self._source_unsubscribe = self._source.subscribe(self._push, counted=False)

    def _detach(self) -> None:
        if self._source_unsubscribe is not None:
            self._source_unsubscribe()
            self._source_unsubscribe = None

    def _push(self, source_value: T) -> None:
        Observable.set(self, self._transform(source_value))
