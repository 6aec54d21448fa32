from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from chat_client.models import Message

WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


@dataclass
class ChatStats:
    total_messages: int = 0
    sent_by_user: int = 0
    received_by_user: int = 0
    average_length: int = 0
    reaction_count: int = 0
    most_active_day: str = ""
    most_active_hour: int = 0
    message_types: Dict[str, int] = field(default_factory=dict)
    daily_activity: List[Tuple[str, int]] = field(default_factory=list)
    hourly_activity: List[Tuple[int, int]] = field(default_factory=list)


def _weekday(dt: datetime) -> str:
    # datetime.weekday() is Monday=0
    return WEEKDAYS[(dt.weekday() + 1) % 7]


def compute_stats(messages: Iterable[Message], current_user: str, tz: Optional[timezone] = None) -> ChatStats:
    """Summarise a read-only message snapshot from ``current_user``'s side."""

    snapshot = list(messages)
    stats = ChatStats(
        daily_activity=[(day, 0) for day in WEEKDAYS],
        hourly_activity=[(hour, 0) for hour in range(24)],
    )
    if not snapshot:
        return stats

    stats.total_messages = len(snapshot)
    stats.sent_by_user = sum(1 for message in snapshot if message.sender_id == current_user)
    stats.received_by_user = stats.total_messages - stats.sent_by_user
    total_length = sum(len(message.content) for message in snapshot)
    stats.average_length = round(total_length / stats.total_messages)
    stats.reaction_count = sum(reaction.count for message in snapshot for reaction in message.reactions)
    stats.message_types = dict(Counter(message.type.value for message in snapshot))

    zone = tz or timezone.utc
    daily: Counter = Counter()
    hourly: Counter = Counter()
    for message in snapshot:
        moment = datetime.fromtimestamp(message.timestamp / 1000, tz=zone)
        daily[_weekday(moment)] += 1
        hourly[moment.hour] += 1

    stats.daily_activity = [(day, daily.get(day, 0)) for day in WEEKDAYS]
    stats.hourly_activity = [(hour, hourly.get(hour, 0)) for hour in range(24)]
    stats.most_active_day = daily.most_common(1)[0][0]
    stats.most_active_hour = hourly.most_common(1)[0][0]
    return stats
