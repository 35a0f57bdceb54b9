"""Publish/subscribe hub fanning state events out to live observers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .state_events import ConnectedEvent, StateEvent

__all__ = ["ChangeBroadcaster", "StateCallback", "Subscription"]

LOGGER = logging.getLogger(__name__)

StateCallback = Callable[[StateEvent], None]


@dataclass(slots=True, eq=False)
class _Subscriber:
    client_id: str
    callback: StateCallback
    active: bool = True


@dataclass(slots=True)
class Subscription:
    """Handle returned from :meth:`ChangeBroadcaster.subscribe`.

    ``client_id`` is for diagnostics only; events are never addressed to it.
    """

    client_id: str
    _release: Callable[[], None] = field(repr=False)

    def unsubscribe(self) -> None:
        self._release()


class ChangeBroadcaster:
    """Deliver state events synchronously to every current subscriber.

    Delivery is in subscription order over a snapshot of the subscriber list,
    so callbacks may subscribe or unsubscribe while an event is in flight.
    A callback that raises is logged and dropped; the others still receive the
    event. Disconnected observers get nothing queued; the changelog covers
    replay.
    """

    def __init__(self) -> None:
        self._subscribers: list[_Subscriber] = []
        self._counter = 0

    def subscribe(self, callback: StateCallback) -> Subscription:
        self._counter += 1
        subscriber = _Subscriber(client_id=f"client-{self._counter}", callback=callback)
        self._subscribers.append(subscriber)
        LOGGER.debug("Subscriber %s connected (%d total)", subscriber.client_id, len(self._subscribers))

        subscription = Subscription(
            client_id=subscriber.client_id,
            _release=lambda: self._remove(subscriber),
        )
        try:
            callback(ConnectedEvent(client_id=subscriber.client_id))
        except Exception:
            LOGGER.exception("Subscriber %s failed on connect; dropping it", subscriber.client_id)
            self._remove(subscriber)
        return subscription

    def unsubscribe(self, callback: StateCallback) -> None:
        """Remove the first subscription registered with ``callback``."""

        for subscriber in self._subscribers:
            if subscriber.callback == callback:
                self._remove(subscriber)
                return

    def emit(self, event: StateEvent) -> None:
        snapshot = list(self._subscribers)
        LOGGER.debug("Emitting %s to %d subscriber(s)", event.type, len(snapshot))
        for subscriber in snapshot:
            if not subscriber.active:
                continue
            try:
                subscriber.callback(event)
            except Exception:
                LOGGER.exception(
                    "Subscriber %s raised while handling %s; unsubscribing",
                    subscriber.client_id,
                    event.type,
                )
                self._remove(subscriber)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def clear(self) -> None:
        for subscriber in self._subscribers:
            subscriber.active = False
        self._subscribers.clear()

    def _remove(self, subscriber: _Subscriber) -> None:
        subscriber.active = False
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            return
        LOGGER.debug("Subscriber %s removed (%d left)", subscriber.client_id, len(self._subscribers))
