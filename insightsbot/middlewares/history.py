"""Keep the chat history store in step with incoming messages.

Both middlewares log persistence failures and let the chain continue, so a
storage outage degrades recaps instead of silencing the bot.
"""

from typing import Any, Protocol

from loguru import logger

from insightsbot.bot.context import Context, ScratchKey
from insightsbot.bot.dispatcher import Middleware, Next, Outcome
from insightsbot.bus.events import EditedMessage, PlainMessage


class MessageRecorder(Protocol):
    """Storage for chat history, implemented outside this package."""

    async def persist_message(self, event: PlainMessage) -> Any:
        """Store a new message; may return the stored record's id."""

    async def update_edited_message(self, event: EditedMessage) -> Any:
        """Replace the stored text of an edited message."""


def record_message(recorder: MessageRecorder) -> Middleware:
    async def middleware(ctx: Context, call_next: Next) -> Outcome:
        event = ctx.event
        if isinstance(event, PlainMessage) and event.text:
            try:
                record_id = await recorder.persist_message(event)
            except Exception as e:
                logger.error(f"Failed to record message {event.message_id} in chat {event.chat_id}: {e}")
            else:
                if record_id is not None:
                    ctx.set(ScratchKey.CHAT_HISTORY_ID, record_id)
        return await call_next()

    return middleware


def sync_edited_message(recorder: MessageRecorder) -> Middleware:
    async def middleware(ctx: Context, call_next: Next) -> Outcome:
        event = ctx.event
        if isinstance(event, EditedMessage):
            try:
                record_id = await recorder.update_edited_message(event)
            except Exception as e:
                logger.error(
                    f"Failed to sync edited message {event.message_id} in chat {event.chat_id}: {e}"
                )
            else:
                if record_id is not None:
                    ctx.set(ScratchKey.EDITED_HISTORY_ID, record_id)
        return await call_next()

    return middleware
