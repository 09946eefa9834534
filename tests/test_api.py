"""Tests for the HTTP control API."""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from botalto.api import create_app

from fakes import VALID_TOKEN


@pytest.fixture
async def client(manager):
    async with TestClient(TestServer(create_app(manager))) as client:
        yield client


async def _create(client, token=VALID_TOKEN, name="Api bot"):
    resp = await client.post("/api/createBot", json={"token": token, "name": name})
    assert resp.status == 200
    return await resp.json()


@pytest.mark.asyncio
async def test_create_bot_returns_id(client):
    """createBot answers with the new bot's id."""
    body = await _create(client)
    assert body["ok"] is True
    assert body["id"]


@pytest.mark.asyncio
async def test_set_token_rejects_bad_token(client):
    """A token the provider rejects yields InvalidCredential and no id."""
    resp = await client.post("/api/setToken", json={"token": "1:nope"})
    body = await resp.json()
    assert body == {"ok": False, "id": None, "error": "InvalidCredential"}


@pytest.mark.asyncio
async def test_malformed_body_is_400(client):
    """Non-JSON or incomplete bodies are rejected with HTTP 400."""
    resp = await client.post("/api/startBot", data="not json")
    assert resp.status == 400
    assert (await resp.json())["ok"] is False

    resp = await client.post("/api/addCommand", json={"botId": "x"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_full_lifecycle_over_http(client):
    """Create, add command, start, list, delete command, stop and delete over HTTP."""
    bot_id = (await _create(client))["id"]

    resp = await client.post(
        "/api/addCommand", json={"botId": bot_id, "name": "/greet", "code": "ctx.reply('hi')"}
    )
    assert (await resp.json()) == {"ok": True}

    resp = await client.get("/api/getCommands", params={"botId": bot_id})
    assert (await resp.json()) == {"greet": "ctx.reply('hi')"}

    resp = await client.post("/api/startBot", json={"botId": bot_id})
    assert (await resp.json())["ok"] is True

    resp = await client.get("/api/getBots")
    assert (await resp.json()) == [{"id": bot_id, "name": "Api bot", "state": "Running"}]

    resp = await client.post("/api/delCommand", json={"botId": bot_id, "name": "greet"})
    assert (await resp.json())["ok"] is True

    resp = await client.post("/api/stopBot", json={"botId": bot_id})
    assert (await resp.json())["ok"] is True

    resp = await client.post("/api/deleteBot", json={"botId": bot_id})
    assert (await resp.json())["ok"] is True

    resp = await client.post("/api/startBot", json={"botId": bot_id})
    assert (await resp.json()) == {"ok": False, "error": "NotFound"}


@pytest.mark.asyncio
async def test_get_commands_unknown_bot_is_empty(client):
    """getCommands for an unknown id returns an empty object."""
    resp = await client.get("/api/getCommands", params={"botId": "missing"})
    assert (await resp.json()) == {}
