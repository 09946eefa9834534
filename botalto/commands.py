"""Per-bot command table.

Maps trigger names to handler source. The table is shared between the
control API (writer) and a running session's dispatch path (reader),
so every write builds a new mapping and swaps it in: a reader always
sees either the old or the new table, never a half-applied update.

Key classes:
    CommandTable: Copy-on-write mapping of trigger -> handler source.

Key functions:
    normalize_trigger: Canonical form of a trigger name.

Constants:
    START_TRIGGER: Reserved trigger that always resolves.
    PING_TRIGGER: Reserved built-in latency check.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional

import structlog

from .config import DEFAULT_START_SOURCE

logger = structlog.get_logger("botalto.session")

START_TRIGGER = "start"
PING_TRIGGER = "ping"
BUILTIN_TRIGGERS = frozenset({START_TRIGGER, PING_TRIGGER})


def normalize_trigger(trigger: str) -> str:
    """Strip whitespace and one leading '/' ("/greet" -> "greet")."""
    trigger = trigger.strip()
    if trigger.startswith("/"):
        trigger = trigger[1:]
    return trigger


class CommandTable:
    """Copy-on-write mapping from trigger name to handler source.

    Args:
        default_start_source: Source used for ``start`` when the table
            holds no override.
    """

    def __init__(self, default_start_source: str = DEFAULT_START_SOURCE):
        self._default_start_source = default_start_source
        self._entries: Mapping[str, str] = MappingProxyType({})

    def set(self, trigger: str, source: str) -> None:
        """Insert or overwrite a handler. Visible to the next lookup."""
        trigger = normalize_trigger(trigger)
        entries = dict(self._entries)
        replaced = trigger in entries
        entries[trigger] = source
        self._entries = MappingProxyType(entries)
        logger.debug("command_set", trigger=trigger, replaced=replaced, length=len(source))

    def remove(self, trigger: str) -> bool:
        """Delete a handler. Returns False if the trigger was not set."""
        trigger = normalize_trigger(trigger)
        if trigger not in self._entries:
            return False
        entries = dict(self._entries)
        del entries[trigger]
        self._entries = MappingProxyType(entries)
        logger.debug("command_removed", trigger=trigger)
        return True

    def get(self, trigger: str) -> Optional[str]:
        """Look up handler source for a trigger.

        ``start`` falls back to the default start source. Unknown
        triggers return None.
        """
        trigger = normalize_trigger(trigger)
        source = self._entries.get(trigger)
        if source is None and trigger == START_TRIGGER:
            return self._default_start_source
        return source

    def snapshot(self) -> Dict[str, str]:
        """Plain copy of the current entries (no fallbacks)."""
        return dict(self._entries)

    def __contains__(self, trigger: str) -> bool:
        return normalize_trigger(trigger) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
