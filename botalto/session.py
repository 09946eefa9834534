"""Live runtime of a single bot.

A BotSession owns one provider connection and the handler invocations
it spawned. It holds the bot's CommandTable by reference and reads it
on every message, so command edits apply to the next message without
a restart.

Key classes:
    BotSession: Start/stop state machine plus message dispatch.
"""

import asyncio
import time
from typing import Optional, Set

import structlog

from .commands import PING_TRIGGER, CommandTable
from .models import BotState, InboundMessage
from .providers.base import Provider, ProviderConnection
from .sandbox import SandboxExecutor
from .task_utils import retry_once

logger = structlog.get_logger("botalto.session")

PONG_TEXT = "🏓 Pong!"


class BotSession:
    """Runtime state for one Running bot.

    State machine: Stopped -> start() -> Running -> stop() -> Stopped.
    stop() is a no-op on a stopped session; start() on a running
    session restarts it with a fresh connection.

    Args:
        bot_id: Owning bot id (the session never holds the record).
        token: Provider credential.
        commands: The bot's live command table.
        provider: Connection factory.
        executor: Sandbox used for handler source.
        retry_backoff: Delay before the single connect/disconnect retry.
        max_concurrent: Concurrent handler invocations allowed.
        max_pending: Messages that may be queued or running at once;
            further messages are dropped until the backlog drains.
        stop_timeout: How long stop() waits for cancelled invocations.
    """

    def __init__(
        self,
        bot_id: str,
        token: str,
        commands: CommandTable,
        provider: Provider,
        executor: SandboxExecutor,
        *,
        retry_backoff: float = 1.0,
        max_concurrent: int = 4,
        max_pending: int = 32,
        stop_timeout: float = 9.0,
    ):
        self.bot_id = bot_id
        self._token = token
        self._commands = commands
        self._provider = provider
        self._executor = executor
        self._retry_backoff = retry_backoff
        self._stop_timeout = stop_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._max_pending = max_pending
        self._connection: Optional[ProviderConnection] = None
        self._inflight: Set[asyncio.Task] = set()
        self.state = BotState.STOPPED
        self._log = logger.bind(bot_id=bot_id)

    @property
    def is_running(self) -> bool:
        return self.state == BotState.RUNNING

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def _with_retry(self, action: str, op) -> None:
        await retry_once(op, action=action, backoff=self._retry_backoff, log=self._log)

    async def start(self) -> None:
        """Open and connect a provider connection.

        Raises:
            ConnectionFaultError: connect failed twice.
            InvalidCredentialError: the provider rejected the token.
        """
        if self._connection is not None:
            await self.stop()

        connection = self._provider.open(self._token)
        connection.on_message(None, self._on_message)
        try:
            await self._with_retry("connect", connection.connect)
        except Exception:
            self.state = BotState.STOPPED
            raise

        self._connection = connection
        self.state = BotState.RUNNING
        self._log.info("session_started")

    async def stop(self) -> None:
        """Stop receiving, cancel in-flight handlers, then disconnect.

        Raises:
            ConnectionFaultError: disconnect failed twice. The session
                is Stopped regardless.
        """
        connection = self._connection
        if connection is None:
            self.state = BotState.STOPPED
            return

        self._connection = None
        self.state = BotState.STOPPED
        await self._cancel_inflight()
        await self._with_retry("disconnect", connection.disconnect)
        self._log.info("session_stopped")

    async def _cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=self._stop_timeout)
        if pending:
            self._log.warning("handlers_still_running_after_stop", count=len(pending))
        else:
            self._log.info("handlers_cancelled", count=len(tasks))

    async def _on_message(self, message: InboundMessage) -> None:
        """Connection callback: schedule the message and return immediately."""
        connection = self._connection
        if connection is None:
            return
        if len(self._inflight) >= self._max_pending:
            self._log.warning(
                "message_dropped_backlog_full",
                trigger=message.trigger, pending=len(self._inflight),
            )
            return
        task = asyncio.create_task(
            self._handle(message, connection),
            name=f"bot-{self.bot_id}-{message.trigger}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _handle(self, message: InboundMessage, connection: ProviderConnection) -> None:
        async with self._semaphore:
            try:
                await self._dispatch(message, connection)
            except asyncio.CancelledError:
                self._log.info("handler_cancelled", trigger=message.trigger)
                raise
            except Exception as e:
                self._log.error(
                    "message_dispatch_error",
                    trigger=message.trigger,
                    error=str(e),
                    exc_type=type(e).__name__,
                )

    async def _dispatch(self, message: InboundMessage, connection: ProviderConnection) -> None:
        """Resolve the trigger: table entry, then built-in ping, then default start."""
        source = self._commands.get(message.trigger)
        if source is None:
            if message.trigger == PING_TRIGGER:
                await self._ping(message, connection)
            else:
                self._log.debug("unknown_trigger_ignored", trigger=message.trigger)
            return

        async def reply(text: str) -> None:
            await connection.reply(message, text)

        self._log.debug("handler_invoked", trigger=message.trigger, chat_id=message.chat_id)
        await self._executor.execute(
            source, message.handler_context(), reply, bot_id=self.bot_id
        )

    async def _ping(self, message: InboundMessage, connection: ProviderConnection) -> None:
        t0 = time.monotonic()
        await connection.reply(message, PONG_TEXT)
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        await connection.reply(message, f"Round-trip: {elapsed_ms} ms")
