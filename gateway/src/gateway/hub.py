from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

Frame = Dict[str, Any]
Callback = Callable[[Frame], None]


@dataclass
class Subscription:
    connection_id: str
    room_id: str
    callback: Callback

    def deliver(self, frame: Frame) -> None:
        self.callback(frame)


class SubscriptionHub:
    """Registers room subscriptions and fans frames out to the other listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, connection_id: str, room_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(connection_id=connection_id, room_id=room_id, callback=callback)
        self._subscriptions.setdefault(room_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.room_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.room_id, None)

    def broadcast(self, room_id: str, frame: Frame, *, exclude: str | None = None) -> int:
        """Deliver ``frame`` to every subscriber of ``room_id`` except ``exclude``."""

        delivered = 0
        for subscription in list(self._subscriptions.get(room_id, [])):
            if subscription.connection_id == exclude:
                continue
            subscription.deliver(frame)
            delivered += 1
        return delivered

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscriptions.get(room_id, []))
