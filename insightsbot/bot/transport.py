"""Telegram transports: inbound updates and outbound Bot API calls.

Both transports wrap python-telegram-bot's ``telegram.Bot``. Long polling
needs no public address; the webhook transport serves an aiohttp endpoint
that receives one JSON update per request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Protocol
from urllib.parse import urlparse

import telegram
from aiohttp import web
from loguru import logger
from telegram import BotCommand, Update
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError

from insightsbot.bot.errors import BotError, ConfigError, RateLimitError, TransportError
from insightsbot.bus.events import (
    CallbackQuery,
    EditedMessage,
    Event,
    MessageReceipt,
    OutboundMessage,
    PlainMessage,
)
from insightsbot.config.schema import TelegramConfig

Feed = Callable[[Event], bool]

SECRET_TOKEN_HEADER = "X-Telegram-Bot-Api-Secret-Token"
MAX_POLL_BACKOFF = 30.0


@dataclass(frozen=True)
class BotIdentity:
    id: int
    username: str


class Transport(Protocol):
    """What BotService needs from the platform connection."""

    async def connect(self, commands: list[tuple[str, str]]) -> BotIdentity: ...

    async def listen(self, feed: Feed) -> None: ...

    async def close_inbound(self) -> None: ...

    async def close(self) -> None: ...

    async def send_message(self, msg: OutboundMessage) -> MessageReceipt: ...

    async def answer_callback_query(
        self, callback_id: str, text: str | None = None, show_alert: bool = False,
    ) -> None: ...


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def translate_error(e: TelegramError) -> BotError:
    """Map python-telegram-bot errors onto the insightsbot taxonomy."""
    if isinstance(e, RetryAfter):
        return RateLimitError(_seconds(e.retry_after), str(e))
    if isinstance(e, InvalidToken):
        return ConfigError(f"Telegram rejected the bot token: {e}")
    # BadRequest subclasses NetworkError but retrying it cannot succeed
    if isinstance(e, (BadRequest, Forbidden)):
        return TransportError(str(e), retryable=False)
    if isinstance(e, NetworkError):
        return TransportError(str(e))
    return TransportError(str(e), retryable=False)


def decode_update(update: Update) -> Event | None:
    """Convert a Bot API update into an Event, or None for unsupported kinds."""
    if update.message:
        msg = update.message
        user = msg.from_user
        return PlainMessage(
            chat_id=msg.chat_id,
            sender_id=user.id if user else msg.chat_id,
            text=msg.text or msg.caption or "",
            timestamp=msg.date,
            message_id=msg.message_id,
            reply_to_message_id=msg.reply_to_message.message_id if msg.reply_to_message else None,
            chat_type=msg.chat.type,
            sender_username=user.username if user else None,
        )

    if update.edited_message:
        msg = update.edited_message
        user = msg.from_user
        return EditedMessage(
            chat_id=msg.chat_id,
            sender_id=user.id if user else msg.chat_id,
            text=msg.text or msg.caption or "",
            timestamp=msg.date,
            message_id=msg.message_id,
            edit_date=msg.edit_date,
        )

    if update.callback_query:
        query = update.callback_query
        message = query.message
        return CallbackQuery.from_data(
            query.data or "",
            chat_id=message.chat.id if message else query.from_user.id,
            sender_id=query.from_user.id,
            message_id=message.message_id if message else None,
            callback_id=query.id,
        )

    return None


def _build_reply_markup(rows: list[list[dict[str, str]]] | None):
    if not rows:
        return None
    from telegram import InlineKeyboardButton, InlineKeyboardMarkup
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton(text=btn["text"], callback_data=btn.get("callback_data"), url=btn.get("url"))
            for btn in row
        ]
        for row in rows
    ])


class TelegramTransport:
    """Outbound Bot API calls shared by both inbound modes."""

    mode = "base"

    def __init__(self, config: TelegramConfig, bot: telegram.Bot | None = None):
        self.config = config
        self.bot = bot or telegram.Bot(token=config.token)
        self._initialized = False

    async def connect(self, commands: list[tuple[str, str]]) -> BotIdentity:
        try:
            await self.bot.initialize()
            self._initialized = True
            me = await self.bot.get_me()
            if commands:
                await self._publish_commands(commands)
            await self._register_inbound()
        except TelegramError as e:
            raise translate_error(e) from e
        logger.info(f"Telegram bot @{me.username} connected ({self.mode} mode)")
        return BotIdentity(id=me.id, username=me.username or "")

    async def _publish_commands(self, commands: list[tuple[str, str]]) -> None:
        """Update the bot command menu only if it differs."""
        target = [BotCommand(name, description) for name, description in commands]
        current = await self.bot.get_my_commands()
        if len(current) == len(target) and all(
            a.command == b.command and a.description == b.description
            for a, b in zip(current, target)
        ):
            logger.debug("Bot commands already up to date")
            return
        await self.bot.set_my_commands(target)
        logger.info(f"Bot commands updated: {[c[0] for c in commands]}")

    async def _register_inbound(self) -> None:
        """Prepare the platform side of the inbound transport."""

    async def listen(self, feed: Feed) -> None:
        raise NotImplementedError

    async def close_inbound(self) -> None:
        """Stop receiving updates."""

    async def close(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False

    async def send_message(self, msg: OutboundMessage) -> MessageReceipt:
        from telegram import LinkPreviewOptions, ReplyParameters

        kwargs = {}
        if msg.reply_to_message_id is not None:
            kwargs["reply_parameters"] = ReplyParameters(
                message_id=msg.reply_to_message_id, allow_sending_without_reply=True,
            )
        if msg.disable_preview:
            kwargs["link_preview_options"] = LinkPreviewOptions(is_disabled=True)
        try:
            sent = await self.bot.send_message(
                chat_id=msg.chat_id,
                text=msg.text,
                parse_mode=msg.parse_mode,
                reply_markup=_build_reply_markup(msg.reply_markup),
                **kwargs,
            )
        except TelegramError as e:
            raise translate_error(e) from e
        return MessageReceipt(chat_id=sent.chat_id, message_id=sent.message_id, date=sent.date)

    async def answer_callback_query(
        self, callback_id: str, text: str | None = None, show_alert: bool = False,
    ) -> None:
        try:
            await self.bot.answer_callback_query(callback_id, text=text, show_alert=show_alert)
        except TelegramError as e:
            raise translate_error(e) from e


class PollingTransport(TelegramTransport):
    """Receives updates with getUpdates long polling."""

    mode = "polling"

    def __init__(self, config: TelegramConfig, bot: telegram.Bot | None = None):
        super().__init__(config, bot)
        self._running = False
        self._offset: int | None = None

    async def _register_inbound(self) -> None:
        # getUpdates is refused while a webhook is set
        await self.bot.delete_webhook()

    async def listen(self, feed: Feed) -> None:
        self._running = True
        backoff = 1.0
        logger.info("Starting Telegram long polling...")
        while self._running:
            try:
                updates = await self.bot.get_updates(
                    offset=self._offset,
                    timeout=self.config.poll_timeout,
                    allowed_updates=self.config.allowed_updates,
                )
            except RetryAfter as e:
                delay = _seconds(e.retry_after)
                logger.warning(f"Polling throttled, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue
            except InvalidToken as e:
                raise ConfigError(f"Telegram rejected the bot token: {e}") from e
            except NetworkError as e:
                logger.warning(f"Polling failed: {e}. Retrying in {backoff:.0f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_POLL_BACKOFF)
                continue
            except TelegramError as e:
                # Conflict while another instance still polls, or a transient refusal
                logger.error(f"Polling rejected: {e}. Retrying in {backoff:.0f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_POLL_BACKOFF)
                continue
            backoff = 1.0

            for update in updates:
                self._offset = update.update_id + 1
                event = decode_update(update)
                if event is None:
                    logger.trace(f"Ignoring update {update.update_id}")
                    continue
                feed(event)
        logger.info("Telegram long polling stopped")

    async def close_inbound(self) -> None:
        self._running = False


class WebhookTransport(TelegramTransport):
    """Receives updates on an aiohttp endpoint registered as the bot webhook."""

    mode = "webhook"

    def __init__(self, config: TelegramConfig, bot: telegram.Bot | None = None):
        super().__init__(config, bot)
        if not config.webhook_url:
            raise ConfigError("Webhook mode requires telegram.webhook_url")
        self.path = urlparse(config.webhook_url).path or "/"
        self._feed: Feed | None = None
        self._runner: web.AppRunner | None = None
        self._closed = asyncio.Event()
        self._webhook_set = False

    async def _register_inbound(self) -> None:
        await self.bot.set_webhook(
            url=self.config.webhook_url,
            secret_token=self.config.webhook_secret,
            allowed_updates=self.config.allowed_updates,
        )
        self._webhook_set = True

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.path, self._handle_update)
        return app

    async def _handle_update(self, request: web.Request) -> web.Response:
        secret = self.config.webhook_secret
        if secret and request.headers.get(SECRET_TOKEN_HEADER) != secret:
            logger.warning(f"Rejected webhook call from {request.remote}: bad secret token")
            raise web.HTTPForbidden(text="forbidden")

        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="invalid json")

        update = Update.de_json(data, self.bot)
        event = decode_update(update) if update else None
        if event is None:
            return web.Response(text="ignored")
        if self._feed is None or not self._feed(event):
            # Telegram redelivers updates that were not acknowledged
            raise web.HTTPServiceUnavailable(text="not accepting updates")
        return web.Response(text="ok")

    async def listen(self, feed: Feed) -> None:
        self._feed = feed
        self._closed.clear()
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.webhook_host, self.config.webhook_port)
        try:
            await site.start()
        except OSError as e:
            raise TransportError(
                f"Cannot listen on {self.config.webhook_host}:{self.config.webhook_port}: {e}",
                retryable=False,
            ) from e
        logger.info(
            "Webhook listening on http://{}:{}{}",
            self.config.webhook_host,
            self.config.webhook_port,
            self.path,
        )
        await self._closed.wait()

    async def close_inbound(self) -> None:
        self._feed = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._closed.set()

    async def close(self) -> None:
        if self._webhook_set:
            try:
                await self.bot.delete_webhook()
            except TelegramError as e:
                logger.warning(f"Failed to delete webhook: {e}")
            self._webhook_set = False
        await super().close()


def create_transport(config: TelegramConfig) -> TelegramTransport:
    if config.mode == "webhook":
        return WebhookTransport(config)
    return PollingTransport(config)
