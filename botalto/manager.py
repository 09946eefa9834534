"""Bot lifecycle manager.

The single owner of every bot record. The control API talks only to
BotManager; BotManager creates, replaces, and stops BotSessions.

Lifecycle transitions (start, stop, remove) for one bot are serialized
by that bot's asyncio.Lock, so concurrent start() calls can never leave
two live sessions for the same id. Different bots never share a lock.

Key classes:
    BotRecord: Identity, credential, command table and session of a bot.
    BotManager: Registry and lifecycle operations.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import structlog

from .commands import CommandTable
from .config import Config, get_config
from .exceptions import BotHostError, ConnectionFaultError, ErrorKind
from .models import BotState, BotSummary, OperationResult, RegisterResult
from .providers.base import Provider
from .sandbox import SandboxExecutor
from .session import BotSession
from .task_utils import retry_once

logger = structlog.get_logger("botalto.manager")

DEFAULT_BOT_NAME = "Unnamed"


@dataclass
class BotRecord:
    """Everything the host knows about one bot.

    Attributes:
        bot_id: Opaque unique id.
        token: Provider credential. Never logged or listed.
        name: Display name.
        commands: The bot's command table.
        state: Current lifecycle state.
        session: The live session while Running.
        lock: Serializes lifecycle transitions for this bot.
    """
    bot_id: str
    token: str = field(repr=False)
    name: str
    commands: CommandTable
    state: BotState = BotState.STOPPED
    session: Optional[BotSession] = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def summary(self) -> BotSummary:
        return BotSummary(id=self.bot_id, name=self.name, state=self.state)


class BotManager:
    """Registry of bots and the operations the control API calls.

    Every operation is a coroutine that completes when the transition
    is done. Unknown ids produce a NotFound result, never an exception.

    Args:
        provider: Messaging provider used to verify tokens and connect.
        executor: Sandbox shared by all sessions (it is stateless).
        config: Host configuration. Defaults to the global config.
    """

    def __init__(
        self,
        provider: Provider,
        executor: SandboxExecutor,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._provider = provider
        self._executor = executor
        self._bots: Dict[str, BotRecord] = {}
        self._issued_ids: Set[str] = set()

    # --- helpers ---

    def _allocate_id(self) -> str:
        """Draw a fresh id. Ids are never handed out twice in this process."""
        while True:
            bot_id = uuid.uuid4().hex[:12]
            if bot_id not in self._issued_ids:
                self._issued_ids.add(bot_id)
                return bot_id

    def _new_session(self, record: BotRecord) -> BotSession:
        return BotSession(
            record.bot_id,
            record.token,
            record.commands,
            self._provider,
            self._executor,
            retry_backoff=self.config.provider_retry_backoff,
            max_concurrent=self.config.executor_max_concurrent,
            max_pending=self.config.executor_max_pending,
            stop_timeout=self.config.executor_timeout,
        )

    # --- registration ---

    async def register(self, token: str, name: Optional[str] = None) -> RegisterResult:
        """Verify a token with the provider and admit a new stopped bot.

        No record is created unless the provider accepts the token.
        """
        name = name or DEFAULT_BOT_NAME
        try:
            valid = await retry_once(
                lambda: self._provider.verify_credential(token),
                action="verify_credential",
                backoff=self.config.provider_retry_backoff,
            )
        except ConnectionFaultError as e:
            logger.warning("credential_check_failed", name=name, error=str(e))
            return RegisterResult.failed(ErrorKind.CONNECTION_FAULT)

        if not valid:
            logger.warning("bot_register_rejected", name=name)
            return RegisterResult.failed(ErrorKind.INVALID_CREDENTIAL)

        bot_id = self._allocate_id()
        self._bots[bot_id] = BotRecord(
            bot_id=bot_id,
            token=token,
            name=name,
            commands=CommandTable(self.config.default_start_source),
        )
        logger.info("bot_registered", bot_id=bot_id, name=name)
        return RegisterResult(ok=True, bot_id=bot_id)

    # --- lifecycle ---

    async def start(self, bot_id: str) -> OperationResult:
        """Start a bot, replacing its session if it is already running."""
        record = self._bots.get(bot_id)
        if record is None:
            return OperationResult.failed(ErrorKind.NOT_FOUND)
        async with record.lock:
            if self._bots.get(bot_id) is not record:
                return OperationResult.failed(ErrorKind.NOT_FOUND)
            return await self._start_locked(record)

    async def stop(self, bot_id: str) -> OperationResult:
        """Stop a bot. Stopping a stopped bot succeeds."""
        record = self._bots.get(bot_id)
        if record is None:
            return OperationResult.failed(ErrorKind.NOT_FOUND)
        async with record.lock:
            if self._bots.get(bot_id) is not record:
                return OperationResult.failed(ErrorKind.NOT_FOUND)
            return await self._stop_locked(record)

    async def remove(self, bot_id: str) -> OperationResult:
        """Force-stop a bot, then delete its record and command table."""
        record = self._bots.get(bot_id)
        if record is None:
            return OperationResult.failed(ErrorKind.NOT_FOUND)
        async with record.lock:
            if self._bots.get(bot_id) is not record:
                return OperationResult.failed(ErrorKind.NOT_FOUND)
            stop_result = await self._stop_locked(record)
            if not stop_result.ok:
                logger.warning(
                    "bot_remove_unclean_stop", bot_id=bot_id, error=stop_result.error
                )
            del self._bots[bot_id]
        logger.info("bot_removed", bot_id=bot_id)
        return OperationResult(ok=True)

    async def _start_locked(self, record: BotRecord) -> OperationResult:
        # The token is re-checked before a running session is touched; a
        # provider outage here leaves that session Running
        try:
            valid = await retry_once(
                lambda: self._provider.verify_credential(record.token),
                action="verify_credential",
                backoff=self.config.provider_retry_backoff,
                log=logger.bind(bot_id=record.bot_id),
            )
        except BotHostError as e:
            logger.warning(
                "bot_start_failed", bot_id=record.bot_id, error=str(e), kind=e.kind
            )
            return OperationResult.failed(e.kind or ErrorKind.CONNECTION_FAULT)

        if record.session is not None:
            await self._stop_locked(record)
        if not valid:
            logger.warning("bot_start_rejected", bot_id=record.bot_id)
            return OperationResult.failed(ErrorKind.INVALID_CREDENTIAL)

        session = self._new_session(record)
        try:
            await session.start()
        except BotHostError as e:
            logger.warning(
                "bot_start_failed", bot_id=record.bot_id, error=str(e), kind=e.kind
            )
            return OperationResult.failed(e.kind or ErrorKind.CONNECTION_FAULT)
        except Exception as e:
            logger.error(
                "bot_start_error",
                bot_id=record.bot_id, error=str(e), exc_type=type(e).__name__,
            )
            return OperationResult(ok=False)

        record.session = session
        record.state = BotState.RUNNING
        logger.info("bot_started", bot_id=record.bot_id)
        return OperationResult(ok=True)

    async def _stop_locked(self, record: BotRecord) -> OperationResult:
        session = record.session
        record.session = None
        record.state = BotState.STOPPED
        if session is None:
            return OperationResult(ok=True)
        try:
            await session.stop()
        except BotHostError as e:
            logger.warning("bot_stop_failed", bot_id=record.bot_id, error=str(e))
            return OperationResult.failed(e.kind or ErrorKind.CONNECTION_FAULT)
        except Exception as e:
            logger.error(
                "bot_stop_error",
                bot_id=record.bot_id, error=str(e), exc_type=type(e).__name__,
            )
            return OperationResult(ok=False)
        logger.info("bot_stopped", bot_id=record.bot_id)
        return OperationResult(ok=True)

    # --- commands ---

    async def set_command(self, bot_id: str, trigger: str, source: str) -> OperationResult:
        """Insert or replace a handler. A running bot uses it on its next message."""
        record = self._bots.get(bot_id)
        if record is None:
            return OperationResult.failed(ErrorKind.NOT_FOUND)
        record.commands.set(trigger, source)
        logger.info(
            "command_updated",
            bot_id=bot_id, trigger=trigger, running=record.state == BotState.RUNNING,
        )
        return OperationResult(ok=True)

    async def remove_command(self, bot_id: str, trigger: str) -> OperationResult:
        """Delete a handler. Removing an absent trigger is acknowledged."""
        record = self._bots.get(bot_id)
        if record is None:
            return OperationResult.failed(ErrorKind.NOT_FOUND)
        removed = record.commands.remove(trigger)
        logger.info("command_deleted", bot_id=bot_id, trigger=trigger, existed=removed)
        return OperationResult(ok=True)

    # --- queries ---

    def list_bots(self) -> List[BotSummary]:
        return [record.summary() for record in self._bots.values()]

    def list_commands(self, bot_id: str) -> Dict[str, str]:
        """Trigger -> source for a bot; empty for unknown ids."""
        record = self._bots.get(bot_id)
        if record is None:
            return {}
        return record.commands.snapshot()

    def get(self, bot_id: str) -> Optional[BotSummary]:
        record = self._bots.get(bot_id)
        return record.summary() if record else None

    def __contains__(self, bot_id: str) -> bool:
        return bot_id in self._bots

    def __len__(self) -> int:
        return len(self._bots)

    # --- shutdown ---

    async def shutdown(self) -> None:
        """Stop every bot. Used when the host process exits."""
        running = [r.bot_id for r in self._bots.values() if r.session is not None]
        if not running:
            return
        results = await asyncio.gather(
            *(self.stop(bot_id) for bot_id in running), return_exceptions=True
        )
        failed = [
            bot_id for bot_id, result in zip(running, results)
            if isinstance(result, BaseException) or not result.ok
        ]
        logger.info("manager_shutdown", stopped=len(running) - len(failed), failed=failed)
