from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("kue.events")

BalanceEvent = dict[str, Any]
Subscriber = Callable[[BalanceEvent], None]


class BalanceBroker:
    """Fan-out of balance-changed events keyed by user id.

    Publishers are ledger mutations running on worker threads; subscribers
    are websocket sessions or in-process listeners. Callbacks run on the
    publishing thread and must not block.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, user_id: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[user_id].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id)
                if not callbacks:
                    return
                try:
                    callbacks.remove(callback)
                except ValueError:
                    return
                if not callbacks:
                    del self._subscribers[user_id]

        return unsubscribe

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def publish(self, user_id: str, event: BalanceEvent) -> int:
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, ()))
        delivered = 0
        for callback in callbacks:
            try:
                callback(dict(event))
            except Exception:
                logger.exception("Balance subscriber failed for user %s.", user_id)
                continue
            delivered += 1
        return delivered
