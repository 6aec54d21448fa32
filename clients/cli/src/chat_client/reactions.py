"""Reaction toggling over immutable reaction tuples."""

from __future__ import annotations

from dataclasses import replace
from typing import Optional, Tuple

from chat_client.models import Message, Reaction

Reactions = Tuple[Reaction, ...]


def toggle(reactions: Reactions, emoji: str, user_id: str) -> Reactions:
    """Add or remove ``user_id`` on ``emoji``.

    Applying the same toggle twice restores the original tuple. A reaction
    whose last user is removed disappears from the list.
    """

    for index, reaction in enumerate(reactions):
        if reaction.emoji != emoji:
            continue
        if user_id in reaction.users:
            users = reaction.users - {user_id}
            if not users:
                return reactions[:index] + reactions[index + 1 :]
            updated = Reaction(emoji=emoji, users=users, has_reacted=False)
        else:
            updated = Reaction(emoji=emoji, users=reaction.users | {user_id}, has_reacted=True)
        return reactions[:index] + (updated,) + reactions[index + 1 :]
    return reactions + (Reaction(emoji=emoji, users=frozenset({user_id}), has_reacted=True),)


def set_reaction(
    reactions: Reactions,
    emoji: str,
    user_id: str,
    active: bool,
    viewer_id: Optional[str],
) -> Reactions:
    """Make ``user_id``'s membership on ``emoji`` equal ``active``.

    Used for updates reported by the peer, so repeated delivery of the same
    update is harmless. ``has_reacted`` stays relative to ``viewer_id``.
    """

    for index, reaction in enumerate(reactions):
        if reaction.emoji != emoji:
            continue
        if (user_id in reaction.users) == active:
            return reactions
        users = reaction.users | {user_id} if active else reaction.users - {user_id}
        if not users:
            return reactions[:index] + reactions[index + 1 :]
        updated = Reaction(emoji=emoji, users=users, has_reacted=viewer_id in users)
        return reactions[:index] + (updated,) + reactions[index + 1 :]
    if not active:
        return reactions
    return reactions + (Reaction(emoji=emoji, users=frozenset({user_id}), has_reacted=viewer_id == user_id),)


def toggle_reaction(message: Message, emoji: str, user_id: str) -> Message:
    return replace(message, reactions=toggle(message.reactions, emoji, user_id))


def reaction_for(message: Message, emoji: str) -> Optional[Reaction]:
    for reaction in message.reactions:
        if reaction.emoji == emoji:
            return reaction
    return None
