"""Tests for middleware ordering and handler routing."""

import asyncio
import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from insightsbot.bot.callback import CallbackDataStore, encode_callback_data
from insightsbot.bot.context import ScratchKey
from insightsbot.bot.dispatcher import (
    Command,
    Dispatcher,
    EventType,
    Outcome,
    Predicate,
    Prefix,
    Regex,
    as_matcher,
    parse_command,
)
from insightsbot.bot.errors import DispatcherSealedError, HandlerError
from insightsbot.bus.events import CallbackQuery, EditedMessage, PlainMessage


def _make_message(text="hello", chat_id=100, sender_id=7, message_id=1, **kwargs):
    return PlainMessage(
        chat_id=chat_id,
        sender_id=sender_id,
        text=text,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        message_id=message_id,
        **kwargs,
    )


def _make_edited(text="edited", chat_id=100, message_id=1):
    return EditedMessage(chat_id=chat_id, sender_id=7, text=text, message_id=message_id)


def _make_callback(data, chat_id=100, callback_id="cb-1"):
    return CallbackQuery.from_data(
        data, chat_id=chat_id, sender_id=7, message_id=5, callback_id=callback_id,
    )


def _recording_middleware(name, log):
    async def middleware(ctx, call_next):
        log.append(name)
        return await call_next()
    return middleware


class TestMiddlewareChain:
    @pytest.mark.asyncio
    async def test_runs_in_registration_order_every_time(self):
        log = []
        dispatcher = Dispatcher()
        for name in ("m1", "m2", "m3", "m4"):
            dispatcher.use(_recording_middleware(name, log))

        async def handler(ctx):
            log.append("handler")

        dispatcher.handle(PlainMessage, handler)

        for i in range(5):
            log.clear()
            await dispatcher.dispatch(_make_message(message_id=i))
            assert log == ["m1", "m2", "m3", "m4", "handler"]

    @pytest.mark.asyncio
    async def test_short_circuit_stops_chain(self):
        log = []
        dispatcher = Dispatcher()
        dispatcher.use(_recording_middleware("m1", log))

        async def gate(ctx, call_next):
            log.append("gate")
            return Outcome.STOP

        dispatcher.use(gate)
        dispatcher.use(_recording_middleware("m3", log))
        handler = AsyncMock()
        dispatcher.handle(PlainMessage, handler)

        outcome = await dispatcher.dispatch(_make_message())

        assert outcome == Outcome.STOP
        assert log == ["m1", "gate"]
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returning_none_without_continuing_is_a_stop(self):
        dispatcher = Dispatcher()

        async def silent(ctx, call_next):
            return None

        dispatcher.use(silent)
        handler = AsyncMock()
        dispatcher.handle(PlainMessage, handler)

        assert await dispatcher.dispatch(_make_message()) == Outcome.STOP
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_middleware_wraps_handler(self):
        log = []
        dispatcher = Dispatcher()

        async def around(ctx, call_next):
            log.append("before")
            outcome = await call_next()
            log.append("after")
            return outcome

        async def handler(ctx):
            log.append("handler")

        dispatcher.use(around)
        dispatcher.handle(PlainMessage, handler)

        assert await dispatcher.dispatch(_make_message()) == Outcome.CONTINUE
        assert log == ["before", "handler", "after"]

    @pytest.mark.asyncio
    async def test_middleware_passes_data_to_handler(self):
        dispatcher = Dispatcher()
        seen = {}

        async def tag(ctx, call_next):
            ctx.set(ScratchKey.CHAT_HISTORY_ID, 77)
            return await call_next()

        async def handler(ctx):
            seen["id"] = ctx.get(ScratchKey.CHAT_HISTORY_ID)

        dispatcher.use(tag)
        dispatcher.handle(PlainMessage, handler)
        await dispatcher.dispatch(_make_message())

        assert seen == {"id": 77}

    @pytest.mark.asyncio
    async def test_continuing_twice_is_reported(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink)
        handler = AsyncMock()

        async def greedy(ctx, call_next):
            await call_next()
            return await call_next()

        dispatcher.use(greedy)
        dispatcher.handle(PlainMessage, handler)

        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED
        assert handler.await_count == 1
        sink.assert_awaited_once()


class TestRegistration:
    def test_use_after_seal_rejected(self):
        dispatcher = Dispatcher()
        dispatcher.seal()
        with pytest.raises(DispatcherSealedError):
            dispatcher.use(_recording_middleware("late", []))

    def test_handlers_after_seal_rejected(self):
        dispatcher = Dispatcher()
        dispatcher.seal()
        with pytest.raises(DispatcherSealedError):
            dispatcher.handle("/recap", AsyncMock())
        with pytest.raises(DispatcherSealedError):
            dispatcher.handle_callback_query("recap", AsyncMock())

    def test_duplicate_callback_action_rejected(self):
        dispatcher = Dispatcher()
        dispatcher.handle_callback_query("recap", AsyncMock())
        with pytest.raises(ValueError):
            dispatcher.handle_callback_query("recap", AsyncMock())

    def test_lookup_callback_action(self):
        dispatcher = Dispatcher()
        handler = AsyncMock()
        dispatcher.handle_callback_query("recap", handler)
        assert dispatcher.lookup_callback_action("recap") is handler
        assert dispatcher.lookup_callback_action("other") is None

    def test_commands_for_menu(self):
        dispatcher = Dispatcher()
        dispatcher.handle(Command("recap", "Summarize the chat"), AsyncMock())
        dispatcher.handle(Command("hidden"), AsyncMock())
        dispatcher.handle(Command("/help", "Show help"), AsyncMock())
        assert dispatcher.commands == [("recap", "Summarize the chat"), ("help", "Show help")]

    def test_matcher_shorthands(self):
        assert isinstance(as_matcher("/recap"), Command)
        assert isinstance(as_matcher("!ping"), Prefix)
        assert isinstance(as_matcher(re.compile("hi")), Regex)
        assert isinstance(as_matcher(EditedMessage), EventType)
        assert isinstance(as_matcher(lambda e: True), Predicate)
        with pytest.raises(TypeError):
            as_matcher(42)


class TestRouting:
    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        dispatcher = Dispatcher()
        first, second = AsyncMock(), AsyncMock()
        dispatcher.handle(Prefix("/re"), first)
        dispatcher.handle("/recap", second)

        await dispatcher.dispatch(_make_message("/recap"))

        first.assert_awaited_once()
        second.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_command_arguments_recorded(self):
        dispatcher = Dispatcher()
        seen = {}

        async def handler(ctx):
            seen["command"] = ctx.get(ScratchKey.COMMAND)
            seen["args"] = ctx.get(ScratchKey.COMMAND_ARGS)

        dispatcher.handle("/recap", handler)
        await dispatcher.dispatch(_make_message("/recap@insights_bot  last 6h"))

        assert seen == {"command": "recap", "args": "last 6h"}

    @pytest.mark.asyncio
    async def test_command_for_other_bot_ignored(self):
        dispatcher = Dispatcher()
        dispatcher.bot_username = "insights_bot"
        handler = AsyncMock()
        dispatcher.handle("/recap", handler)

        await dispatcher.dispatch(_make_message("/recap@other_bot"))

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_command_needs_word_boundary(self):
        dispatcher = Dispatcher()
        handler = AsyncMock()
        dispatcher.handle("/recap", handler)

        await dispatcher.dispatch(_make_message("/recapitulate"))

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_regex_match_recorded(self):
        dispatcher = Dispatcher()
        seen = {}

        async def handler(ctx):
            seen["url"] = ctx.get(ScratchKey.MATCH).group(0)

        dispatcher.handle(re.compile(r"https?://\S+"), handler)
        await dispatcher.dispatch(_make_message("read https://example.com now"))

        assert seen == {"url": "https://example.com"}

    @pytest.mark.asyncio
    async def test_edited_message_routed_by_type(self):
        dispatcher = Dispatcher()
        plain, edited = AsyncMock(), AsyncMock()
        dispatcher.handle(PlainMessage, plain)
        dispatcher.handle(EditedMessage, edited)

        await dispatcher.dispatch(_make_edited())

        plain.assert_not_awaited()
        edited.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_message_handlers_ignore_callbacks(self):
        dispatcher = Dispatcher()
        handler = AsyncMock()
        dispatcher.handle(lambda event: True, handler)

        await dispatcher.dispatch(_make_callback("recap"))

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unmatched_callback_is_dropped_quietly(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink)
        handler = AsyncMock()
        dispatcher.handle_callback_query("summarize", handler)

        outcome = await dispatcher.dispatch(_make_callback("recap:chat123"))

        assert outcome == Outcome.CONTINUE
        handler.assert_not_awaited()
        sink.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callback_routed_by_action(self):
        dispatcher = Dispatcher()
        handler = AsyncMock()
        dispatcher.handle_callback_query("recap", handler)

        await dispatcher.dispatch(_make_callback('recap;{"chat_id": 1}'))

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stored_callback_payload_resolved(self):
        class Payload(BaseModel):
            note: str

        store = CallbackDataStore()
        dispatcher = Dispatcher(callback_store=store)
        seen = {}

        async def handler(ctx):
            seen["payload"] = ctx.bind_callback_data(Payload)

        dispatcher.handle_callback_query("note", handler)
        data = encode_callback_data("note", Payload(note="n" * 100), store=store)
        await dispatcher.dispatch(_make_callback(data))

        assert seen["payload"].note == "n" * 100


class TestErrorBoundary:
    @pytest.mark.asyncio
    async def test_handler_error_reported_not_raised(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink)

        async def broken(ctx):
            raise KeyError("boom")

        dispatcher.handle(PlainMessage, broken)
        event = _make_message()

        assert await dispatcher.dispatch(event) == Outcome.FAILED

        error = sink.await_args.args[0]
        assert isinstance(error, HandlerError)
        assert error.event is event
        assert isinstance(error.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_middleware_error_reported(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink)

        async def broken(ctx, call_next):
            raise RuntimeError("middleware down")

        dispatcher.use(broken)
        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED
        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_next_event(self):
        dispatcher = Dispatcher(error_sink=AsyncMock())
        handled = []

        async def handler(ctx):
            if ctx.event.text == "bad":
                raise ValueError("bad input")
            handled.append(ctx.event.text)

        dispatcher.handle(PlainMessage, handler)

        await dispatcher.dispatch(_make_message("bad"))
        await dispatcher.dispatch(_make_message("good"))

        assert handled == ["good"]

    @pytest.mark.asyncio
    async def test_sync_error_sink(self):
        errors = []
        dispatcher = Dispatcher(error_sink=errors.append)

        async def broken(ctx):
            raise ValueError("x")

        dispatcher.handle(PlainMessage, broken)
        await dispatcher.dispatch(_make_message())

        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_failing_sink_is_contained(self):
        async def bad_sink(error):
            raise RuntimeError("sink down")

        dispatcher = Dispatcher(error_sink=bad_sink)

        async def broken(ctx):
            raise ValueError("x")

        dispatcher.handle(PlainMessage, broken)
        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED

    @pytest.mark.asyncio
    async def test_handler_timeout(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink, handler_timeout=0.05)

        async def slow(ctx):
            assert ctx.time_left() is not None
            await asyncio.sleep(10)

        dispatcher.handle(PlainMessage, slow)

        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED
        assert "timed out" in str(sink.await_args.args[0])

    @pytest.mark.asyncio
    async def test_handler_raised_timeout_is_not_a_deadline(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink, handler_timeout=5)

        async def upstream_timeout(ctx):
            raise asyncio.TimeoutError("upstream API took too long")

        dispatcher.handle(PlainMessage, upstream_timeout)

        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED
        error = sink.await_args.args[0]
        assert isinstance(error, HandlerError)
        assert "timed out after" not in str(error)
        assert isinstance(error.__cause__, asyncio.TimeoutError)
        assert "upstream API" in str(error.__cause__)

    @pytest.mark.asyncio
    async def test_handler_raised_timeout_without_deadline(self):
        sink = AsyncMock()
        dispatcher = Dispatcher(error_sink=sink)

        async def upstream_timeout(ctx):
            raise asyncio.TimeoutError()

        dispatcher.handle(PlainMessage, upstream_timeout)

        assert await dispatcher.dispatch(_make_message()) == Outcome.FAILED
        assert isinstance(sink.await_args.args[0].__cause__, asyncio.TimeoutError)


def test_parse_command():
    assert parse_command("/Recap@Bot a b") == ("recap", "Bot", "a b")
    assert parse_command("/start") == ("start", None, "")
    assert parse_command("hello") is None
