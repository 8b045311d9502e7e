"""Middleware chain and handler routing for inbound events."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from insightsbot.bot.callback import CallbackDataStore
from insightsbot.bot.context import Context, ScratchKey
from insightsbot.bot.errors import DispatcherSealedError, HandlerError
from insightsbot.bus.events import CallbackQuery, Event

if TYPE_CHECKING:
    from insightsbot.bot.service import BotService


class Outcome(str, Enum):
    """Result of running one event through the chain."""

    CONTINUE = "continue"  # Chain reached the handler stage
    STOP = "stop"  # A middleware short-circuited
    FAILED = "failed"  # An error was reported to the error sink


Next = Callable[[], Awaitable[Outcome]]
Middleware = Callable[[Context, Next], Awaitable[Outcome]]
Handler = Callable[[Context], Awaitable[Any]]
ErrorSink = Callable[[HandlerError], Awaitable[None] | None]

_COMMAND_PATTERN = re.compile(r"^/(\w+)(?:@(\w+))?(?:\s+(.*))?$", re.DOTALL)


def parse_command(text: str) -> tuple[str, str | None, str] | None:
    """Split ``/name@bot args`` into (name, bot, args)."""
    match = _COMMAND_PATTERN.match(text.strip())
    if not match:
        return None
    return match.group(1).lower(), match.group(2), (match.group(3) or "").strip()


class Matcher:
    """Decides whether a message-like event belongs to a handler."""

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        raise NotImplementedError

    def annotate(self, ctx: Context) -> None:
        """Record match details in the context scratch space."""


class Command(Matcher):
    """``/name`` with optional ``@botname`` and arguments."""

    def __init__(self, name: str, description: str = ""):
        self.name = name.lstrip("/").lower()
        self.description = description

    def __repr__(self) -> str:
        return f"Command(/{self.name})"

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        parsed = parse_command(event.text)
        if parsed is None:
            return False
        name, mention, _ = parsed
        if name != self.name:
            return False
        if mention and bot_username and mention.lower() != bot_username.lower():
            return False
        return True

    def annotate(self, ctx: Context) -> None:
        parsed = parse_command(ctx.event.text)
        if parsed:
            ctx.set(ScratchKey.COMMAND, parsed[0])
            ctx.set(ScratchKey.COMMAND_ARGS, parsed[2])


class Prefix(Matcher):
    def __init__(self, prefix: str):
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"Prefix({self.prefix!r})"

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        return event.text.startswith(self.prefix)


class Regex(Matcher):
    def __init__(self, pattern: str | re.Pattern):
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def __repr__(self) -> str:
        return f"Regex({self.pattern.pattern!r})"

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        return self.pattern.search(event.text) is not None

    def annotate(self, ctx: Context) -> None:
        ctx.set(ScratchKey.MATCH, self.pattern.search(ctx.event.text))


class EventType(Matcher):
    def __init__(self, event_type: type[Event]):
        self.event_type = event_type

    def __repr__(self) -> str:
        return f"EventType({self.event_type.__name__})"

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        return isinstance(event, self.event_type)


class Predicate(Matcher):
    def __init__(self, func: Callable[[Event], bool]):
        self.func = func

    def __repr__(self) -> str:
        return f"Predicate({getattr(self.func, '__name__', self.func)})"

    def matches(self, event: Event, bot_username: str | None = None) -> bool:
        return bool(self.func(event))


def as_matcher(matcher: Any) -> Matcher:
    """Coerce the shorthand forms accepted by ``Dispatcher.handle``."""
    if isinstance(matcher, Matcher):
        return matcher
    if isinstance(matcher, str):
        return Command(matcher) if matcher.startswith("/") else Prefix(matcher)
    if isinstance(matcher, re.Pattern):
        return Regex(matcher)
    if isinstance(matcher, type) and issubclass(matcher, Event):
        return EventType(matcher)
    if callable(matcher):
        return Predicate(matcher)
    raise TypeError(f"Unsupported matcher: {matcher!r}")


@dataclass
class HandlerRegistration:
    matcher: Matcher
    handler: Handler


async def _log_handler_error(error: HandlerError) -> None:
    cause = error.__cause__
    logger.opt(exception=cause).error(f"{error}: {cause!r}")


class Dispatcher:
    """Routes each event through the middleware chain to the first matching handler.

    Registration happens before the bot starts; ``seal()`` freezes the
    middleware list and handler registry so dispatch needs no locking.
    """

    def __init__(
        self,
        error_sink: ErrorSink | None = None,
        handler_timeout: float | None = None,
        callback_store: CallbackDataStore | None = None,
    ):
        self._middlewares: list[Middleware] = []
        self._handlers: list[HandlerRegistration] = []
        self._callback_handlers: dict[str, Handler] = {}
        self._sealed = False
        self.error_sink: ErrorSink = error_sink or _log_handler_error
        self.handler_timeout = handler_timeout
        self.callback_store = callback_store or CallbackDataStore()
        self.bot_username: str | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        if not self._sealed:
            self._sealed = True
            self._middlewares = tuple(self._middlewares)
            self._handlers = tuple(self._handlers)
            logger.debug(
                f"Dispatcher sealed: {len(self._middlewares)} middlewares, "
                f"{len(self._handlers)} handlers, {len(self._callback_handlers)} callback actions"
            )

    def _check_open(self, what: str) -> None:
        if self._sealed:
            raise DispatcherSealedError(f"Cannot register {what} after the bot started running")

    def use(self, middleware: Middleware) -> None:
        """Append a middleware to the chain."""
        self._check_open("middleware")
        self._middlewares.append(middleware)

    def handle(self, matcher: Any, handler: Handler) -> None:
        """Register a handler for messages and edited messages matching ``matcher``."""
        self._check_open("handler")
        self._handlers.append(HandlerRegistration(as_matcher(matcher), handler))

    def handle_callback_query(self, action: str, handler: Handler) -> None:
        """Register a handler for callback queries with exactly this action token."""
        self._check_open("callback handler")
        if action in self._callback_handlers:
            raise ValueError(f"Callback action already registered: {action}")
        self._callback_handlers[action] = handler

    def lookup_callback_action(self, action: str) -> Handler | None:
        return self._callback_handlers.get(action)

    @property
    def commands(self) -> list[tuple[str, str]]:
        """Described commands, in registration order, for the bot command menu."""
        seen: dict[str, str] = {}
        for reg in self._handlers:
            if isinstance(reg.matcher, Command) and reg.matcher.description:
                seen.setdefault(reg.matcher.name, reg.matcher.description)
        return list(seen.items())

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _select(self, ctx: Context) -> Handler | None:
        event = ctx.event
        if isinstance(event, CallbackQuery):
            return self.lookup_callback_action(event.action)
        if not event.is_message_like:
            return None
        for reg in self._handlers:
            if reg.matcher.matches(event, self.bot_username):
                reg.matcher.annotate(ctx)
                return reg.handler
        return None

    async def _run_handler(self, ctx: Context) -> Outcome:
        handler = self._select(ctx)
        if handler is None:
            event = ctx.event
            logger.trace(f"No handler for {type(event).__name__} in chat {event.chat_id}")
            return Outcome.CONTINUE
        await handler(ctx)
        return Outcome.CONTINUE

    def _build_chain(self, ctx: Context) -> Next:
        async def handler_stage() -> Outcome:
            return await self._run_handler(ctx)

        chain: Next = handler_stage
        for middleware in reversed(self._middlewares):
            chain = self._link(middleware, ctx, chain)
        return chain

    @staticmethod
    def _link(middleware: Middleware, ctx: Context, call_next: Next) -> Next:
        async def step() -> Outcome:
            called = False
            inner = Outcome.CONTINUE

            async def next_once() -> Outcome:
                nonlocal called, inner
                if called:
                    raise RuntimeError(f"Middleware {middleware!r} continued the chain twice")
                called = True
                inner = await call_next()
                return inner

            outcome = await middleware(ctx, next_once)
            if not called:
                return Outcome.STOP
            return outcome if outcome is not None else inner

        return step

    def _make_context(self, event: Event, service: BotService | None, deadline: float | None) -> Context:
        payload = None
        if isinstance(event, CallbackQuery):
            payload = self.callback_store.resolve(event.action_data)
        return Context(event, service=service, deadline=deadline, callback_payload=payload)

    async def dispatch(self, event: Event, service: BotService | None = None) -> Outcome:
        """Run one event through the chain. Never raises for handler failures."""
        deadline = None
        if self.handler_timeout is not None:
            deadline = asyncio.get_running_loop().time() + self.handler_timeout
        ctx = self._make_context(event, service, deadline)

        chain = self._build_chain(ctx)

        async def guarded() -> Outcome:
            # A TimeoutError raised inside the chain is a handler failure, not the deadline
            try:
                return await chain()
            except asyncio.TimeoutError as e:
                raise HandlerError(event) from e

        try:
            if self.handler_timeout is None:
                return await guarded()
            return await asyncio.wait_for(guarded(), self.handler_timeout)
        except HandlerError as e:
            error = e
        except asyncio.TimeoutError as e:
            error = HandlerError(event, f"Handling {type(event).__name__} timed out after {self.handler_timeout}s")
            error.__cause__ = e
        except Exception as e:
            error = HandlerError(event)
            error.__cause__ = e

        await self._report(error)
        return Outcome.FAILED

    async def _report(self, error: HandlerError) -> None:
        try:
            result = self.error_sink(error)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error sink failed while reporting {error}: {e}")
