"""Middlewares that run before handlers for every event."""

from insightsbot.middlewares.history import MessageRecorder, record_message, sync_edited_message

__all__ = ["MessageRecorder", "record_message", "sync_edited_message"]
