"""Tests for BotSession start/stop and message dispatch."""

import asyncio
import re

import pytest

from botalto.commands import CommandTable
from botalto.exceptions import ConnectionFaultError
from botalto.models import BotState
from botalto.session import PONG_TEXT, BotSession

from fakes import VALID_TOKEN, deliver, make_message


def _session(provider, executor, commands=None, **kwargs):
    # An empty CommandTable is falsy, so test for None explicitly
    if commands is None:
        commands = CommandTable(default_start_source="ctx.reply('online')")
    return BotSession(
        "b1",
        VALID_TOKEN,
        commands,
        provider,
        executor,
        retry_backoff=0.01,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_and_stop_transitions(provider, executor):
    """start connects and stop disconnects."""
    session = _session(provider, executor)
    assert session.state == BotState.STOPPED
    await session.start()
    assert session.is_running
    assert provider.live[VALID_TOKEN] == 1
    await session.stop()
    assert session.state == BotState.STOPPED
    assert provider.live[VALID_TOKEN] == 0


@pytest.mark.asyncio
async def test_stop_twice_is_noop(provider, executor):
    """Stopping a stopped session does nothing."""
    session = _session(provider, executor)
    await session.start()
    await session.stop()
    await session.stop()
    assert session.state == BotState.STOPPED


@pytest.mark.asyncio
async def test_restart_replaces_connection(provider, executor):
    """start on a running session reconnects."""
    session = _session(provider, executor)
    await session.start()
    first = provider.active_connection()
    await session.start()
    second = provider.active_connection()
    assert first is not second
    assert first.connected is False
    assert provider.live[VALID_TOKEN] == 1
    await session.stop()


@pytest.mark.asyncio
async def test_connect_fault_retried_once(provider, executor):
    """One connect fault is absorbed by the retry."""
    provider.connect_failures = 1
    session = _session(provider, executor)
    await session.start()
    assert session.is_running
    await session.stop()


@pytest.mark.asyncio
async def test_persistent_connect_fault_leaves_session_stopped(provider, executor):
    """Two connect faults raise and leave the session Stopped."""
    provider.connect_failures = 2
    session = _session(provider, executor)
    with pytest.raises(ConnectionFaultError):
        await session.start()
    assert session.state == BotState.STOPPED


@pytest.mark.asyncio
async def test_disconnect_fault_still_stops(provider, executor):
    """A persistent disconnect fault still marks the session Stopped."""
    session = _session(provider, executor)
    await session.start()
    provider.disconnect_failures = 2
    with pytest.raises(ConnectionFaultError):
        await session.stop()
    assert session.state == BotState.STOPPED


@pytest.mark.asyncio
async def test_default_start_handler(provider, executor):
    """/start without an override runs the default source."""
    session = _session(provider, executor)
    await session.start()
    await deliver(provider.active_connection(), make_message("start"))
    assert provider.texts() == ["online"]
    await session.stop()


@pytest.mark.asyncio
async def test_ping_sends_two_ordered_replies(provider, executor):
    """/ping replies with Pong, then the round-trip time."""
    provider.reply_delay = 0.01
    session = _session(provider, executor)
    await session.start()
    await deliver(provider.active_connection(), make_message("ping"))
    texts = provider.texts()
    assert texts[0] == PONG_TEXT
    match = re.fullmatch(r"Round-trip: (\d+) ms", texts[1])
    assert match is not None
    assert int(match.group(1)) >= 0
    await session.stop()


@pytest.mark.asyncio
async def test_ping_can_be_overridden(provider, executor):
    """A table entry for ping replaces the built-in."""
    commands = CommandTable()
    commands.set("ping", "ctx.reply('custom pong')")
    session = _session(provider, executor, commands=commands)
    await session.start()
    await deliver(provider.active_connection(), make_message("ping"))
    assert provider.texts() == ["custom pong"]
    await session.stop()


@pytest.mark.asyncio
async def test_unknown_trigger_is_ignored(provider, executor):
    """Unknown triggers get no reply."""
    session = _session(provider, executor)
    await session.start()
    await deliver(provider.active_connection(), make_message("nothing"))
    assert provider.texts() == []
    assert session.is_running
    await session.stop()


@pytest.mark.asyncio
async def test_command_edit_applies_to_next_message(provider, executor):
    """Table edits apply to the very next message."""
    commands = CommandTable()
    session = _session(provider, executor, commands=commands)
    await session.start()
    connection = provider.active_connection()

    await deliver(connection, make_message("greet"))
    assert provider.texts() == []

    commands.set("/greet", "ctx.reply('hi ' + ctx.sender)")
    await deliver(connection, make_message("greet"))
    assert provider.texts() == ["hi alice"]

    commands.set("greet", "ctx.reply('changed')")
    await deliver(connection, make_message("greet"))
    assert provider.texts() == ["hi alice", "changed"]
    await session.stop()


@pytest.mark.asyncio
async def test_handler_fault_keeps_session_running(provider, executor):
    """A faulting handler replies with a diagnostic and the bot stays up."""
    commands = CommandTable()
    commands.set("boom", "raise ValueError('bad input')")
    session = _session(provider, executor, commands=commands)
    await session.start()
    await deliver(provider.active_connection(), make_message("boom"))
    assert provider.texts() == ["⚠️ Code error [HandlerFault]: ValueError: bad input"]
    assert session.is_running
    await session.stop()


@pytest.mark.asyncio
async def test_stop_cancels_inflight_handlers(provider, executor):
    """stop() kills running handlers without waiting for them."""
    commands = CommandTable()
    commands.set("spin", "while True:\n    pass")
    session = _session(provider, executor, commands=commands)
    await session.start()
    await provider.active_connection().dispatch(make_message("spin"))
    await asyncio.sleep(0.3)
    assert session.inflight_count == 1

    loop = asyncio.get_running_loop()
    start = loop.time()
    await session.stop()
    assert loop.time() - start < 3
    assert session.inflight_count == 0
    assert provider.texts() == []


@pytest.mark.asyncio
async def test_messages_after_stop_are_dropped(provider, executor):
    """A stopped session ignores late deliveries."""
    session = _session(provider, executor)
    await session.start()
    connection = provider.active_connection()
    await session.stop()
    await deliver(connection, make_message("start"))
    assert provider.texts() == []


@pytest.mark.asyncio
async def test_backlog_is_bounded(provider, executor):
    """Messages beyond max_pending are dropped instead of queued."""
    commands = CommandTable()
    commands.set("spin", "while True:\n    pass")
    session = _session(provider, executor, commands=commands, max_concurrent=1, max_pending=2)
    await session.start()
    connection = provider.active_connection()
    for _ in range(5):
        await connection.dispatch(make_message("spin"))
    assert session.inflight_count == 2

    await session.stop()
    assert session.inflight_count == 0
