"""Data models shared by the manager, sessions, providers, and API."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .exceptions import ErrorKind


class BotState(str, Enum):
    """Lifecycle state of a bot."""
    STOPPED = "Stopped"
    RUNNING = "Running"


class BotSummary(BaseModel):
    """Public view of a bot record. Never carries the token."""

    id: str
    name: str
    state: BotState


class InboundMessage(BaseModel):
    """A single /command message delivered by a provider connection."""

    trigger: str = Field(..., description="Command name without the leading '/'")
    args: str = ""
    text: str = ""
    chat_id: str
    message_id: Optional[int] = None
    sender: Optional[str] = None
    sent_at: datetime = Field(default_factory=datetime.now)

    def handler_context(self) -> dict:
        """Read-only fields exposed to handler source as ``ctx.<name>``."""
        return {
            "trigger": self.trigger,
            "args": self.args,
            "text": self.text,
            "chat_id": self.chat_id,
            "sender": self.sender,
        }


@dataclass
class OperationResult:
    """Outcome of a manager operation.

    Attributes:
        ok: True if the operation was applied.
        error: Typed failure reason when ok is False.
    """
    ok: bool
    error: Optional[ErrorKind] = None

    @classmethod
    def failed(cls, error: ErrorKind) -> "OperationResult":
        return cls(ok=False, error=error)


@dataclass
class RegisterResult(OperationResult):
    """Outcome of registering a bot; bot_id is set on success."""
    bot_id: Optional[str] = None
