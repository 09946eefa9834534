"""Sandboxed execution of user-submitted command handlers.

Every invocation runs in a fresh child interpreter (sandbox_worker.py)
started in isolated mode with an empty environment. The worker lowers
its own rlimits, compiles the handler with RestrictedPython and hands
it a context object whose only capability is ``reply``. Replies stream
back as NDJSON and are relayed through the provider in order.

The parent owns the deadline: the child is killed when the wall-clock
budget runs out or when the invoking task is cancelled, so no
cooperation from handler code is needed.

Key classes:
    SandboxConfig: Limits applied to each invocation.
    ExecutionOutcome: Result of one invocation.
    SandboxExecutor: Runs handler source and contains its failures.

Key functions:
    build_worker_command: Command line used to start a worker.
    format_diagnostic: Chat-facing text for a failed invocation.
"""

import asyncio
import json
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import structlog

from .exceptions import (
    ConnectionFaultError,
    ErrorCategory,
    ErrorKind,
    ExecutionTimeoutError,
    HandlerFaultError,
)

logger = structlog.get_logger("botalto.executor")

WORKER_SCRIPT = Path(__file__).with_name("sandbox_worker.py")

ReplyFn = Callable[[str], Awaitable[None]]


@dataclass
class SandboxConfig:
    """Limits for a single handler invocation.

    Attributes:
        timeout: Wall-clock deadline in seconds, enforced by killing
            the worker.
        cpu_seconds: RLIMIT_CPU for the worker.
        memory_mb: RLIMIT_AS for the worker.
        max_replies: Replies allowed per invocation.
        max_reply_chars: Longer replies are truncated.
        max_output_bytes: Longest protocol line accepted from a worker.
    """

    timeout: float = 9.0
    cpu_seconds: int = 5
    memory_mb: int = 256
    max_replies: int = 20
    max_reply_chars: int = 4096
    max_output_bytes: int = 65536

    @classmethod
    def from_config(cls, config) -> "SandboxConfig":
        return cls(
            timeout=config.executor_timeout,
            cpu_seconds=config.executor_cpu_seconds,
            memory_mb=config.executor_memory_mb,
            max_replies=config.executor_max_replies,
            max_reply_chars=config.executor_max_reply_chars,
            max_output_bytes=config.executor_max_output_bytes,
        )

    def worker_limits(self) -> dict:
        return {
            "cpu_seconds": self.cpu_seconds,
            "memory_mb": self.memory_mb,
            "max_replies": self.max_replies,
        }


@dataclass
class ExecutionOutcome:
    """Result of one handler invocation.

    Attributes:
        ok: True if the handler ran to completion.
        replies: Number of handler replies relayed to the chat.
        error: Failure kind when ok is False.
        error_type: Exception name reported by the worker.
        message: Failure message.
        duration: Wall-clock seconds spent, including reply sends.
    """
    ok: bool
    replies: int = 0
    error: Optional[ErrorKind] = None
    error_type: str = ""
    message: str = ""
    duration: float = 0.0


def build_worker_command(python: str = sys.executable) -> List[str]:
    """Command line for a worker: isolated mode, no site/user paths from env."""
    return [python, "-I", str(WORKER_SCRIPT)]


def format_diagnostic(error: HandlerFaultError) -> str:
    """Chat-facing diagnostic with error category and message."""
    kind = error.kind.value if error.kind else ErrorKind.HANDLER_FAULT.value
    detail = error.message or "no details"
    if error.error_type and error.error_type != kind:
        detail = f"{error.error_type}: {detail}"
    return f"⚠️ Code error [{kind}]: {detail}"


class SandboxExecutor:
    """Runs handler source in worker processes.

    Failures (compile errors, exceptions, deadline, worker crashes) are
    turned into a diagnostic reply and an ExecutionOutcome; they never
    propagate to the caller. Cancellation does propagate, after the
    worker has been killed.

    Args:
        config: Limits applied to every invocation.
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        self.config = config or SandboxConfig()

    async def execute(
        self,
        source: str,
        context: dict,
        reply: ReplyFn,
        bot_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        """Run ``source`` against a single-message context.

        Args:
            source: Untrusted handler source; ``ctx`` is in scope.
            context: Read-only message fields exposed on ``ctx``.
            reply: Async callable that sends one chat reply.
            bot_id: Owning bot, for logging only.

        Returns:
            ExecutionOutcome describing what happened.
        """
        start_time = time.monotonic()
        counter = {"replies": 0}
        log = logger.bind(bot_id=bot_id, trigger=context.get("trigger"))

        try:
            await self._run(source, context, reply, counter)
        except HandlerFaultError as e:
            duration = time.monotonic() - start_time
            if isinstance(e, ExecutionTimeoutError):
                log.warning("handler_timeout", timeout=self.config.timeout, duration=duration)
            else:
                log.warning(
                    "handler_fault",
                    error_type=e.error_type, error=e.message, duration=duration,
                )
            try:
                await reply(format_diagnostic(e))
            except Exception as send_err:
                log.warning("diagnostic_reply_failed", error=str(send_err))
            return ExecutionOutcome(
                ok=False,
                replies=counter["replies"],
                error=e.kind,
                error_type=e.error_type or "",
                message=e.message,
                duration=duration,
            )
        except ConnectionFaultError as e:
            log.warning("handler_reply_failed", error=str(e))
            return ExecutionOutcome(
                ok=False,
                replies=counter["replies"],
                error=ErrorKind.CONNECTION_FAULT,
                message=e.message,
                duration=time.monotonic() - start_time,
            )

        duration = time.monotonic() - start_time
        log.debug("handler_completed", replies=counter["replies"], duration=duration)
        return ExecutionOutcome(ok=True, replies=counter["replies"], duration=duration)

    async def _run(self, source: str, context: dict, reply: ReplyFn, counter: dict) -> None:
        job = json.dumps({
            "source": source,
            "context": context,
            "limits": self.config.worker_limits(),
        }).encode("utf-8")

        try:
            process = await asyncio.create_subprocess_exec(
                *build_worker_command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={},
                limit=self.config.max_output_bytes,
            )
        except OSError as e:
            raise HandlerFaultError(
                f"sandbox unavailable: {e}",
                error_type="SandboxUnavailable",
                category=ErrorCategory.INFRASTRUCTURE,
            )

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            try:
                process.stdin.write(job)
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise HandlerFaultError(
                    f"handler process closed its input: {e}", error_type="WorkerCrash"
                )

            try:
                finished = await asyncio.wait_for(
                    self._relay(process, reply, counter),
                    timeout=self.config.timeout,
                )
            except asyncio.TimeoutError:
                raise ExecutionTimeoutError(
                    f"handler exceeded the {self.config.timeout:g}s deadline",
                    timeout=self.config.timeout,
                )

            if not finished:
                returncode = await process.wait()
                stderr = (await stderr_task).decode("utf-8", "replace")
                xcpu = getattr(signal, "SIGXCPU", None)
                if xcpu is not None and returncode == -xcpu:
                    raise ExecutionTimeoutError(
                        f"handler exceeded its {self.config.cpu_seconds}s CPU budget",
                        timeout=self.config.timeout,
                    )
                logger.debug("worker_stderr", stderr=stderr[-500:])
                raise HandlerFaultError(
                    f"handler process exited unexpectedly (code {returncode})",
                    error_type="WorkerCrash",
                )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def _relay(self, process, reply: ReplyFn, counter: dict) -> bool:
        """Relay worker events until it finishes.

        Each reply is sent and awaited before the next event is read,
        so chat order matches call order.

        Returns:
            True if the worker reported completion, False on EOF.

        Raises:
            HandlerFaultError: The worker reported an error or broke
                the protocol limits.
        """
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError:
                raise HandlerFaultError(
                    f"handler output exceeded {self.config.max_output_bytes} bytes",
                    error_type="OutputLimit",
                )
            if not line:
                return False

            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("worker_invalid_json", data=line[:100])
                continue

            etype = event.get("type")
            if etype == "reply":
                if counter["replies"] >= self.config.max_replies:
                    raise HandlerFaultError(
                        f"reply limit reached ({self.config.max_replies})",
                        error_type="ReplyLimit",
                    )
                text = str(event.get("text", ""))[: self.config.max_reply_chars]
                counter["replies"] += 1
                await reply(text)
            elif etype == "error":
                raise HandlerFaultError(
                    event.get("message", ""),
                    error_type=event.get("error", "Exception"),
                )
            elif etype == "done":
                return True
