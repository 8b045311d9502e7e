"""Error types raised by the dispatch core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from insightsbot.bus.events import Event, MessageReceipt


class BotError(Exception):
    """Base class for insightsbot errors."""


class ConfigError(BotError):
    """Invalid credentials or configuration. Fatal at startup."""


class TransportError(BotError):
    """Network or API failure talking to the platform."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
        # Receipts of chunks already delivered when a multi-part send failed
        self.delivered: list[MessageReceipt] = []


class RateLimitError(TransportError):
    """The platform throttled the request."""

    def __init__(self, retry_after: float, message: str = ""):
        super().__init__(message or f"Flood control exceeded, retry in {retry_after}s")
        self.retry_after = retry_after


class BindError(BotError):
    """Callback payload is missing or does not fit the requested shape."""


class HandlerError(BotError):
    """A middleware or handler failed while dispatching one event."""

    def __init__(self, event: Event, message: str = ""):
        super().__init__(message or f"Failed to handle {type(event).__name__} in chat {event.chat_id}")
        self.event = event


class CancellationError(BotError):
    """A blocking wait was aborted before it could complete."""


class DispatcherSealedError(BotError):
    """Registration attempted after the dispatcher started running."""
