"""Callback data encoding with overflow storage.

Telegram caps ``callback_data`` at 64 bytes. Payloads that do not fit are
kept in a ``CallbackDataStore`` and referenced from the button by key.
"""

import hashlib
import json
import time
from collections import OrderedDict
from typing import Any, Callable

from pydantic import BaseModel

from insightsbot.bus.events import CALLBACK_DATA_SEPARATOR

MAX_CALLBACK_DATA_BYTES = 64
STORE_REFERENCE_PREFIX = "#"
DEFAULT_TTL = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 10_000


class CallbackDataStore:
    """In-memory payload store with expiry and a size cap."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, payload: str) -> str:
        """Store payload and return its key."""
        key = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
        self._entries[key] = (self._clock() + self.ttl, payload)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return key

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at < self._clock():
            del self._entries[key]
            return None
        return payload

    def resolve(self, action_data: str) -> str:
        """Expand a ``#key`` reference; other payloads pass through unchanged.

        An unknown or expired key resolves to an empty payload.
        """
        if not action_data.startswith(STORE_REFERENCE_PREFIX):
            return action_data
        return self.get(action_data[len(STORE_REFERENCE_PREFIX):]) or ""


def _dump_payload(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def encode_callback_data(
    action: str,
    payload: Any = None,
    store: CallbackDataStore | None = None,
) -> str:
    """Build the ``callback_data`` string for an inline keyboard button."""
    if CALLBACK_DATA_SEPARATOR in action:
        raise ValueError(f"Callback action must not contain {CALLBACK_DATA_SEPARATOR!r}: {action}")
    if payload is None:
        data = action
    else:
        data = f"{action}{CALLBACK_DATA_SEPARATOR}{_dump_payload(payload)}"

    if len(data.encode("utf-8")) <= MAX_CALLBACK_DATA_BYTES:
        return data
    if store is None:
        raise ValueError(
            f"Callback data for {action!r} exceeds {MAX_CALLBACK_DATA_BYTES} bytes "
            "and no store was provided"
        )

    key = store.put(_dump_payload(payload))
    data = f"{action}{CALLBACK_DATA_SEPARATOR}{STORE_REFERENCE_PREFIX}{key}"
    if len(data.encode("utf-8")) > MAX_CALLBACK_DATA_BYTES:
        raise ValueError(f"Callback action {action!r} is too long")
    return data
