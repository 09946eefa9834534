"""Tests for the per-bot command table."""

from botalto.commands import CommandTable, normalize_trigger
from botalto.config import DEFAULT_START_SOURCE


def test_normalize_trigger_strips_slash_and_whitespace():
    """"/greet " and "greet" name the same trigger."""
    assert normalize_trigger("/greet") == "greet"
    assert normalize_trigger("  greet ") == "greet"
    assert normalize_trigger("//odd") == "/odd"


def test_set_then_get_returns_source():
    """A stored handler is returned by get()."""
    table = CommandTable()
    table.set("/greet", "ctx.reply('hi')")
    assert table.get("greet") == "ctx.reply('hi')"
    assert table.get("/greet") == "ctx.reply('hi')"


def test_set_overwrites_existing_entry():
    """Setting a trigger twice keeps only the latest source."""
    table = CommandTable()
    table.set("greet", "ctx.reply('one')")
    table.set("greet", "ctx.reply('two')")
    assert table.get("greet") == "ctx.reply('two')"
    assert len(table) == 1


def test_start_falls_back_to_default():
    """start resolves to the default source when not overridden."""
    table = CommandTable()
    assert table.get("start") == DEFAULT_START_SOURCE
    assert "start" not in table


def test_start_override_and_removal_restores_default():
    """Removing a start override restores the default."""
    table = CommandTable(default_start_source="ctx.reply('default')")
    table.set("start", "ctx.reply('Hello')")
    assert table.get("start") == "ctx.reply('Hello')"
    assert table.remove("/start") is True
    assert table.get("start") == "ctx.reply('default')"


def test_unknown_trigger_returns_none():
    """Triggers never set resolve to None."""
    table = CommandTable()
    assert table.get("nope") is None
    assert table.get("ping") is None


def test_remove_absent_trigger_is_false():
    """Removing a missing trigger reports False."""
    table = CommandTable()
    assert table.remove("missing") is False


def test_snapshot_is_a_detached_copy():
    """Writes after a snapshot must not show up in it."""
    table = CommandTable()
    table.set("a", "1")
    snap = table.snapshot()
    table.set("b", "2")
    table.remove("a")
    assert snap == {"a": "1"}
    assert table.snapshot() == {"b": "2"}


def test_snapshot_excludes_default_start():
    """snapshot() lists only explicitly set triggers."""
    table = CommandTable()
    assert table.snapshot() == {}
