"""Bot lifecycle: transport connection, concurrent dispatch and rate-limited sending."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from insightsbot.bot.dispatcher import Dispatcher
from insightsbot.bot.errors import BotError, RateLimitError, TransportError
from insightsbot.bot.ratelimit import RateLimiter, shared_limiter
from insightsbot.bot.splitter import (
    PAGE_INDICATOR_RESERVE,
    paginate as add_page_indicators,
    split_plain_text,
    split_text,
)
from insightsbot.bot.transport import BotIdentity, Transport, create_transport
from insightsbot.bus.events import Event, MessageReceipt, OutboundMessage
from insightsbot.config.schema import Config

T = TypeVar("T")


class ServiceState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class BotService:
    """Owns the transport and feeds inbound events to the dispatcher.

    Each event is dispatched on one of ``max_in_flight`` worker tasks;
    events beyond that wait in the queue. Outbound calls go through the
    rate limiter and are retried on throttling and network errors.
    """

    def __init__(
        self,
        config: Config,
        dispatcher: Dispatcher,
        transport: Transport | None = None,
        limiter: RateLimiter | None = None,
    ):
        config.validate_for_start()
        self.config = config
        self.dispatcher = dispatcher
        self.transport = transport or create_transport(config.telegram)
        self.limiter = limiter or shared_limiter(
            config.rate_limit.capacity, config.rate_limit.refill_rate,
        )
        self.me: BotIdentity | None = None
        self._state = ServiceState.CREATED
        self._queue: asyncio.Queue[Event] | None = None
        self._workers: list[asyncio.Task] = []
        self._listener: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self._in_flight = 0
        self._sleep = asyncio.sleep
        self._failure: Exception | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the transport and begin dispatching inbound events."""
        if self._state != ServiceState.CREATED:
            raise RuntimeError(f"Cannot start a bot service in state {self._state.value}")
        self._state = ServiceState.CONNECTING
        logger.info("Connecting to Telegram...")

        try:
            self.me = await self.transport.connect(self.dispatcher.commands)
        except BaseException:
            self._state = ServiceState.STOPPED
            self._stopped.set()
            await self._close_transport()
            raise

        if self._state != ServiceState.CONNECTING:
            # stop() ran while connecting and already closed the transport
            logger.info(f"Bot was {self._state.value} while connecting, not starting")
            await self._stopped.wait()
            return

        self.dispatcher.bot_username = self.me.username
        self.dispatcher.seal()

        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._queue = queue
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"dispatch-worker-{i}")
            for i in range(self.config.dispatch.max_in_flight)
        ]
        self._state = ServiceState.RUNNING
        self._listener = asyncio.create_task(self._listen(), name="inbound-listener")
        logger.info(
            f"Bot @{self.me.username} running "
            f"(max {self.config.dispatch.max_in_flight} events in flight)"
        )

    async def run_forever(self) -> None:
        """Start and block until ``stop`` completes.

        Raises the inbound transport's error if the bot stopped because it failed.
        """
        await self.start()
        await self._stopped.wait()
        failure = self._failure
        if failure is not None:
            if isinstance(failure, BotError):
                raise failure
            raise TransportError(f"Inbound transport failed: {failure}", retryable=False) from failure

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def submit(self, event: Event) -> bool:
        """Queue an event for dispatch. Returns False if the bot is not running."""
        if self._state != ServiceState.RUNNING or self._queue is None:
            logger.warning(
                f"Dropping {type(event).__name__} from chat {event.chat_id}: "
                f"bot is {self._state.value}"
            )
            return False
        self._queue.put_nowait(event)
        return True

    async def _listen(self) -> None:
        try:
            await self.transport.listen(self.submit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Inbound transport failed: {e}")
            self._failure = e

        if self._state == ServiceState.RUNNING:
            logger.error("Inbound listener ended while running, stopping bot")
            # stop() must not cancel the task it is running in
            self._listener = None
            await self.stop()

    async def _worker(self, queue: asyncio.Queue[Event]) -> None:
        while True:
            event = await queue.get()
            self._in_flight += 1
            try:
                await self.dispatcher.dispatch(event, self)
            finally:
                self._in_flight -= 1
                queue.task_done()

    async def stop(self, timeout: float | None = None) -> None:
        """Stop admitting events, let in-flight ones finish until ``timeout``, then tear down."""
        if self._state in (ServiceState.STOPPING, ServiceState.STOPPED):
            await self._stopped.wait()
            return
        if self._state == ServiceState.CREATED:
            self._state = ServiceState.STOPPED
            self._stopped.set()
            return

        if timeout is None:
            timeout = self.config.dispatch.shutdown_timeout
        self._state = ServiceState.STOPPING
        logger.info(f"Stopping bot (waiting up to {timeout}s for in-flight events)...")

        try:
            await self.transport.close_inbound()
        except Exception as e:
            logger.error(f"Failed to close inbound transport: {e}")
        if self._listener:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None

        if self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Shutdown deadline reached: abandoning {self._in_flight} in-flight "
                    f"and {self._queue.qsize()} queued events"
                )

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self._close_transport()
        self._state = ServiceState.STOPPED
        self._stopped.set()
        logger.info("Bot stopped")

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Failed to close transport: {e}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _deliver(self, call: Callable[[], Awaitable[T]], what: str) -> T:
        delivery = self.config.delivery
        throttled = False
        attempt = 0
        while True:
            await self.limiter.acquire(timeout=self.config.rate_limit.acquire_timeout)
            try:
                return await call()
            except RateLimitError as e:
                if throttled:
                    logger.warning(f"{what} throttled again, giving up")
                    raise
                throttled = True
                logger.warning(f"{what} throttled, retrying in {e.retry_after}s")
                await self._sleep(e.retry_after)
            except TransportError as e:
                attempt += 1
                if not e.retryable or attempt >= delivery.max_attempts:
                    raise
                delay = delivery.backoff_base * 2 ** (attempt - 1)
                logger.warning(
                    f"{what} failed ({e}), attempt {attempt}/{delivery.max_attempts}, "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def send(self, msg: OutboundMessage) -> MessageReceipt:
        """Send one message. Text must already fit the platform limit."""
        return await self._deliver(
            lambda: self.transport.send_message(msg), f"sendMessage to chat {msg.chat_id}",
        )

    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
        reply_to_message_id: int | None = None,
        reply_markup: list[list[dict[str, str]]] | None = None,
        paginate: bool = False,
    ) -> list[MessageReceipt]:
        """Send text of any length as one or more messages, in order.

        If a chunk fails, the raised error's ``delivered`` lists the receipts
        of the chunks that did go out.
        """
        limit = self.config.delivery.max_message_length
        if paginate:
            limit -= PAGE_INDICATOR_RESERVE
        if parse_mode == "HTML":
            chunks = split_text(text, limit)
        else:
            chunks = split_plain_text(text, limit)
        if paginate:
            chunks = add_page_indicators(chunks)

        receipts: list[MessageReceipt] = []
        for i, chunk in enumerate(chunks):
            msg = OutboundMessage(
                chat_id=chat_id,
                text=chunk,
                parse_mode=parse_mode,
                reply_to_message_id=reply_to_message_id if i == 0 else None,
                reply_markup=reply_markup if i == len(chunks) - 1 else None,
            )
            try:
                receipts.append(await self.send(msg))
            except BotError as e:
                if isinstance(e, TransportError):
                    e.delivered = list(receipts)
                logger.warning(
                    f"Reply to chat {chat_id} incomplete: delivered "
                    f"{len(receipts)}/{len(chunks)} chunks ({e})"
                )
                raise
        return receipts

    async def answer_callback_query(
        self, callback_id: str, text: str | None = None, show_alert: bool = False,
    ) -> None:
        await self._deliver(
            lambda: self.transport.answer_callback_query(callback_id, text=text, show_alert=show_alert),
            f"answerCallbackQuery {callback_id}",
        )
