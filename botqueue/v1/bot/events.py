"""
Inbound chat events handed to bot handlers.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Actor:
    id: int
    username: str | None = None


@dataclass
class Message:
    message_id: int
    chat_id: int | None
    from_user: Actor | None = None
    text: str | None = None
    photo: list[Any] | None = None
    document: Any | None = None


@dataclass
class AcknowledgmentState:
    """Whether a callback query has been answered already."""

    answered: bool = False


@dataclass
class CallbackQuery:
    """A button press; must be answered exactly once."""

    id: str
    from_user: Actor | None = None
    data: str | None = None
    message: Message | None = None
    ack: AcknowledgmentState = field(default_factory=AcknowledgmentState)


Event = Message | CallbackQuery


def resolve_chat_id(event: Event) -> int | None:
    """Conversation a reply to ``event`` should go to, if any."""
    if isinstance(event, CallbackQuery):
        if event.message and event.message.chat_id is not None:
            return event.message.chat_id
    elif event.chat_id is not None:
        return event.chat_id

    return event.from_user.id if event.from_user else None
