"""Per-event context passed through middleware to handlers."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from insightsbot.bot.errors import BindError
from insightsbot.bus.events import CallbackQuery, Event, MessageReceipt

if TYPE_CHECKING:
    from insightsbot.bot.service import BotService

T = TypeVar("T")


class ScratchKey(str, Enum):
    """Known keys for data handed from middleware to handlers."""

    CHAT_HISTORY_ID = "chat_history_id"
    EDITED_HISTORY_ID = "edited_history_id"
    COMMAND = "command"
    COMMAND_ARGS = "command_args"
    MATCH = "match"


class Context:
    """Wraps one Event for the duration of its dispatch."""

    def __init__(
        self,
        event: Event,
        service: BotService | None = None,
        deadline: float | None = None,
        callback_payload: str | None = None,
    ):
        self.event = event
        self.service = service
        self.deadline = deadline  # event loop time
        self._scratch: dict[ScratchKey, Any] = {}
        if callback_payload is None and isinstance(event, CallbackQuery):
            callback_payload = event.action_data
        self._callback_payload = callback_payload

    def __repr__(self) -> str:
        return f"Context({type(self.event).__name__}, chat_id={self.event.chat_id})"

    # ------------------------------------------------------------------
    # Scratch space
    # ------------------------------------------------------------------

    @staticmethod
    def _check_key(key: ScratchKey) -> None:
        if not isinstance(key, ScratchKey):
            raise TypeError(f"Scratch keys must be ScratchKey members, got {key!r}")

    def set(self, key: ScratchKey, value: Any) -> None:
        self._check_key(key)
        self._scratch[key] = value

    def get(self, key: ScratchKey, default: Any = None) -> Any:
        self._check_key(key)
        return self._scratch.get(key, default)

    def lookup(self, key: ScratchKey) -> tuple[Any, bool]:
        """Return (value, present) for key."""
        self._check_key(key)
        if key in self._scratch:
            return self._scratch[key], True
        return None, False

    def __contains__(self, key: object) -> bool:
        return key in self._scratch

    # ------------------------------------------------------------------
    # Event shortcuts
    # ------------------------------------------------------------------

    @property
    def chat_id(self) -> int:
        return self.event.chat_id

    @property
    def is_callback_query(self) -> bool:
        return isinstance(self.event, CallbackQuery)

    def time_left(self) -> float | None:
        """Seconds until the dispatch deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    # ------------------------------------------------------------------
    # Callback data
    # ------------------------------------------------------------------

    def bind_callback_data(self, dst: type[T]) -> T:
        """Parse the callback payload (JSON) into ``dst``.

        ``dst`` is anything pydantic can validate: a model class, a
        dataclass, a TypedDict or a plain ``dict``.
        """
        if not self.is_callback_query:
            raise BindError(f"Cannot bind callback data from {type(self.event).__name__}")
        if not self._callback_payload:
            raise BindError("Callback query carries no action data")
        try:
            return TypeAdapter(dst).validate_json(self._callback_payload)
        except ValidationError as e:
            raise BindError(f"Callback data does not match {getattr(dst, '__name__', dst)}: {e}") from e

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def _require_service(self) -> BotService:
        if self.service is None:
            raise RuntimeError("Context is not attached to a BotService")
        return self.service

    async def reply(
        self,
        text: str,
        *,
        parse_mode: str | None = None,
        reply: bool = False,
        reply_markup: list[list[dict[str, str]]] | None = None,
        paginate: bool = False,
    ) -> list[MessageReceipt]:
        """Send text to the originating chat, split into chunks as needed."""
        service = self._require_service()
        return await service.send_text(
            self.event.chat_id,
            text,
            parse_mode=parse_mode,
            reply_to_message_id=self.event.message_id if reply else None,
            reply_markup=reply_markup,
            paginate=paginate,
        )

    async def answer_callback_query(self, text: str | None = None, show_alert: bool = False) -> None:
        """Acknowledge the originating callback query."""
        if not isinstance(self.event, CallbackQuery):
            raise ValueError("answer_callback_query requires a callback query event")
        service = self._require_service()
        await service.answer_callback_query(self.event.callback_id, text=text, show_alert=show_alert)
