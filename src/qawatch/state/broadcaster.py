"""Fan-out of run events to connected observers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from qawatch.state.events import (
    CONNECTED,
    SERVER_SHUTDOWN,
    STATE_SYNC,
    Event,
    make_message,
    to_message,
)
from qawatch.state.store import StateStore

logger = logging.getLogger(__name__)

SEND_TIMEOUT = 5.0


class Observer(Protocol):
    async def send(self, message: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class Subscription:
    id: int


class EventBroadcaster:
    """Applies events to the store, then relays them to every observer.

    Delivery is serialised by a lock so a late subscriber's snapshot and the
    events that follow it arrive in order. An observer whose ``send`` raises,
    or takes longer than ``send_timeout`` seconds, is dropped; nobody else
    notices.
    """

    def __init__(self, store: StateStore | None = None, send_timeout: float = SEND_TIMEOUT):
        self.store = store or StateStore()
        self.send_timeout = send_timeout
        self._observers: dict[int, Observer] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def subscribe(self, observer: Observer) -> Subscription:
        subscription = Subscription(next(self._ids))
        async with self._lock:
            self._observers[subscription.id] = observer
            logger.info("Observer connected (%d total)", len(self._observers))

            if not await self._deliver(subscription.id, observer, make_message(CONNECTED)):
                return subscription

            state = self.store.state
            if state.active:
                await self._deliver(
                    subscription.id, observer, make_message(STATE_SYNC, state.snapshot())
                )
                logger.debug(
                    "Sent state_sync: %d issues, %d completed",
                    len(state.outstanding), len(state.completed),
                )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._observers.pop(subscription.id, None) is not None:
            logger.info("Observer disconnected (%d total)", len(self._observers))

    async def publish(self, event: Event) -> dict[str, Any]:
        async with self._lock:
            self.store.apply(event)
            message = to_message(event)
            for subscription_id, observer in list(self._observers.items()):
                await self._deliver(subscription_id, observer, message)
        return message

    async def shutdown(self) -> None:
        """Tell every observer the channel is closing, then forget them."""
        async with self._lock:
            message = make_message(SERVER_SHUTDOWN)
            for subscription_id, observer in list(self._observers.items()):
                await self._deliver(subscription_id, observer, message)
            self._observers.clear()

    async def _deliver(self, subscription_id: int, observer: Observer, message: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(observer.send(message), self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Dropping observer %d: send timed out", subscription_id)
            self._observers.pop(subscription_id, None)
            return False
        except Exception as e:
            logger.warning("Dropping observer %d after failed send: %s", subscription_id, e)
            self._observers.pop(subscription_id, None)
            return False
