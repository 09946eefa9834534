"""Custom exception hierarchy for botalto.

Provides precise error classification across the host, enabling
targeted error handling, retry decisions, and structured logging
context.

ErrorCategory drives retry decisions inside the host. ErrorKind is the
typed value handed back to control-API callers in operation results.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (network error, provider hiccup)
    PERMANENT = "permanent"          # Not worth retrying (bad token, bad handler code)
    INFRASTRUCTURE = "infrastructure"  # Interpreter missing, env issues


class ErrorKind(str, Enum):
    """Typed failure reasons surfaced to callers of the manager."""
    INVALID_CREDENTIAL = "InvalidCredential"
    NOT_FOUND = "NotFound"
    HANDLER_FAULT = "HandlerFault"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    CONNECTION_FAULT = "ConnectionFault"


class BotHostError(Exception):
    """Base exception for all botalto errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "session").
        context: Arbitrary key-value pairs for structured logging.
    """

    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Lifecycle exceptions
# ---------------------------------------------------------------------------

class InvalidCredentialError(BotHostError):
    """The provider rejected a bot token."""

    kind = ErrorKind.INVALID_CREDENTIAL

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "manager", **context
        )


# ---------------------------------------------------------------------------
# Handler execution exceptions
# ---------------------------------------------------------------------------

class HandlerFaultError(BotHostError):
    """Compile or runtime error raised by untrusted handler source.

    Attributes:
        error_type: Exception class name reported by the sandbox.
    """

    kind = ErrorKind.HANDLER_FAULT

    def __init__(
        self,
        message: str = "",
        *,
        error_type: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.error_type = error_type
        super().__init__(
            message, category=category, module=module or "sandbox", **context
        )


class ExecutionTimeoutError(HandlerFaultError):
    """A handler invocation exceeded its deadline and was killed.

    Inherits from HandlerFaultError because both share the same
    recovery path (diagnostic reply, bot keeps running).
    """

    kind = ErrorKind.EXECUTION_TIMEOUT

    def __init__(
        self,
        message: str = "",
        *,
        timeout: Optional[float] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.timeout = timeout
        super().__init__(
            message,
            error_type="ExecutionTimeout",
            category=category,
            module=module or "sandbox",
            **context,
        )


# ---------------------------------------------------------------------------
# Provider exceptions
# ---------------------------------------------------------------------------

class ConnectionFaultError(BotHostError):
    """Transport error talking to the messaging provider.

    Defaults to TRANSIENT: session start/stop retries it once.
    """

    kind = ErrorKind.CONNECTION_FAULT

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "provider", **context
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(BotHostError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )
