"""Event types for inbound updates and outbound messages."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


CALLBACK_DATA_SEPARATOR = ";"


def parse_callback_data(data: str) -> tuple[str, str]:
    """Split raw callback data into (action, action_data).

    ``"recap:chat123"`` has no payload; ``"recap;{...}"`` carries one.
    """
    action, _, payload = (data or "").partition(CALLBACK_DATA_SEPARATOR)
    return action, payload


@dataclass(frozen=True)
class Event:
    """An inbound occurrence from the chat platform."""

    chat_id: int
    sender_id: int
    text: str = ""
    timestamp: datetime | None = None
    message_id: int | None = None

    @property
    def is_message_like(self) -> bool:
        return False


@dataclass(frozen=True)
class PlainMessage(Event):
    """A new message in a chat."""

    reply_to_message_id: int | None = None
    chat_type: str = "private"
    sender_username: str | None = None

    @property
    def is_message_like(self) -> bool:
        return True


@dataclass(frozen=True)
class EditedMessage(Event):
    """An edit of a previously delivered message."""

    edit_date: datetime | None = None

    @property
    def is_message_like(self) -> bool:
        return True


@dataclass(frozen=True)
class CallbackQuery(Event):
    """An inline keyboard button press."""

    callback_id: str = ""
    data: str = ""  # Raw callback_data as sent by the platform
    action: str = ""
    action_data: str = ""

    @classmethod
    def from_data(cls, data: str, **kwargs: Any) -> "CallbackQuery":
        """Build a callback query, decoding action and payload from ``data``."""
        action, payload = parse_callback_data(data)
        return cls(data=data, action=action, action_data=payload, **kwargs)


@dataclass
class OutboundMessage:
    """Message to send to a chat."""

    chat_id: int
    text: str
    parse_mode: str | None = None  # "HTML" | "MarkdownV2" | None
    reply_to_message_id: int | None = None
    reply_markup: list[list[dict[str, str]]] | None = None  # Inline keyboard rows
    disable_preview: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageReceipt:
    """Platform acknowledgement of a delivered message."""

    chat_id: int
    message_id: int
    date: datetime | None = None
