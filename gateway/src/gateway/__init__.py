"""Gateway core interfaces and helpers."""

from .history import RoomHistory, room_id_for
from .hub import Subscription, SubscriptionHub
from .server import main, simulate

__all__ = [
    "RoomHistory",
    "Subscription",
    "SubscriptionHub",
    "main",
    "room_id_for",
    "simulate",
]
