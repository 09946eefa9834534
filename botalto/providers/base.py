"""Messaging provider interface.

The host depends only on this capability set, never on a specific
platform. A Provider checks credentials and opens connections; a
ProviderConnection is one live, per-bot link that delivers /command
messages to registered handlers and sends replies.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

from ..models import InboundMessage

logger = structlog.get_logger("botalto.provider")

# Handler signature: async (message: InboundMessage) -> None
MessageHandler = Callable[[InboundMessage], Awaitable[None]]


def parse_command(text: str) -> Optional[Tuple[str, str, Optional[str]]]:
    """Split "/name@target args" into (name, args, target).

    Returns None when text is not a command.
    """
    text = text.strip()
    if not text.startswith("/") or len(text) < 2:
        return None
    parts = text[1:].split(maxsplit=1)
    if not parts:
        return None
    name, _, target = parts[0].partition("@")
    if not name:
        return None
    args = parts[1] if len(parts) > 1 else ""
    return name, args, target or None


class ProviderConnection(ABC):
    """One live connection for one bot token.

    Handlers are keyed by trigger; the ``None`` key is the fallback for
    any command without a dedicated handler.
    """

    def __init__(self):
        self._handlers: Dict[Optional[str], MessageHandler] = {}

    def on_message(self, trigger: Optional[str], handler: MessageHandler) -> None:
        """Register a handler for a trigger (None = any command)."""
        self._handlers[trigger] = handler

    def resolve_handler(self, trigger: str) -> Optional[MessageHandler]:
        return self._handlers.get(trigger) or self._handlers.get(None)

    async def dispatch(self, message: InboundMessage) -> None:
        """Deliver a message to its handler. Handler errors are logged, not raised."""
        handler = self.resolve_handler(message.trigger)
        if handler is None:
            return
        try:
            await handler(message)
        except Exception as e:
            logger.error(
                "message_dispatch_error",
                trigger=message.trigger,
                error=str(e),
                exc_type=type(e).__name__,
            )

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Start receiving messages.

        Raises:
            ConnectionFaultError: transport failure.
            InvalidCredentialError: the provider rejected the token.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop receiving messages and release the connection. Idempotent."""
        ...

    @abstractmethod
    async def reply(self, message: InboundMessage, text: str) -> None:
        """Send text to the chat the message came from.

        Completes once the provider has accepted the message.

        Raises:
            ConnectionFaultError: the send failed.
        """
        ...


class Provider(ABC):
    """Factory for connections plus the credential check."""

    name: str = ""

    @abstractmethod
    async def verify_credential(self, token: str) -> bool:
        """Return True if the provider accepts the token.

        Raises:
            ConnectionFaultError: the provider could not be reached.
        """
        ...

    @abstractmethod
    def open(self, token: str) -> ProviderConnection:
        """Create an unconnected connection for a token."""
        ...
