"""HTTP control API.

Thin aiohttp.web layer over BotManager. Request bodies are validated
with pydantic; every manager result is returned as JSON with an ``ok``
flag. The manager instance is injected through the application.

Key functions:
    create_app: Build the aiohttp Application for a BotManager.
"""

from typing import Optional, Type, TypeVar

import structlog
from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from .manager import BotManager
from .models import OperationResult

logger = structlog.get_logger("botalto.api")

MANAGER_KEY = web.AppKey("manager", BotManager)

ModelT = TypeVar("ModelT", bound=BaseModel)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    name: Optional[str] = None


class BotRequest(BaseModel):
    botId: str = Field(..., min_length=1)


class CommandRequest(BaseModel):
    botId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    code: str


class DeleteCommandRequest(BaseModel):
    botId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class BadRequest(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


async def _parse(request: web.Request, model: Type[ModelT]) -> ModelT:
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest("Request body must be JSON")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise BadRequest(e.errors()[0].get("msg", "Invalid request"))


def _result(result: OperationResult, **extra) -> web.Response:
    payload = {"ok": result.ok, **extra}
    if result.error is not None:
        payload["error"] = result.error.value
    return web.json_response(payload)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map bad input to 400 and contain unexpected errors as 500."""
    try:
        return await handler(request)
    except BadRequest as e:
        return web.json_response({"ok": False, "error": e.message}, status=400)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(
            "api_handler_error",
            path=request.path, error=str(e), exc_type=type(e).__name__,
        )
        return web.json_response({"ok": False, "error": "internal error"}, status=500)


routes = web.RouteTableDef()


@routes.post("/api/setToken")
@routes.post("/api/createBot")
async def register_bot(request: web.Request) -> web.Response:
    body = await _parse(request, TokenRequest)
    result = await request.app[MANAGER_KEY].register(body.token, body.name)
    return _result(result, id=result.bot_id)


@routes.post("/api/startBot")
async def start_bot(request: web.Request) -> web.Response:
    body = await _parse(request, BotRequest)
    return _result(await request.app[MANAGER_KEY].start(body.botId))


@routes.post("/api/stopBot")
async def stop_bot(request: web.Request) -> web.Response:
    body = await _parse(request, BotRequest)
    return _result(await request.app[MANAGER_KEY].stop(body.botId))


@routes.post("/api/deleteBot")
async def delete_bot(request: web.Request) -> web.Response:
    body = await _parse(request, BotRequest)
    return _result(await request.app[MANAGER_KEY].remove(body.botId))


@routes.post("/api/addCommand")
async def add_command(request: web.Request) -> web.Response:
    body = await _parse(request, CommandRequest)
    return _result(
        await request.app[MANAGER_KEY].set_command(body.botId, body.name, body.code)
    )


@routes.post("/api/delCommand")
async def delete_command(request: web.Request) -> web.Response:
    body = await _parse(request, DeleteCommandRequest)
    return _result(
        await request.app[MANAGER_KEY].remove_command(body.botId, body.name)
    )


@routes.get("/api/getBots")
async def get_bots(request: web.Request) -> web.Response:
    bots = request.app[MANAGER_KEY].list_bots()
    return web.json_response([bot.model_dump(mode="json") for bot in bots])


@routes.get("/api/getCommands")
async def get_commands(request: web.Request) -> web.Response:
    bot_id = request.query.get("botId", "")
    return web.json_response(request.app[MANAGER_KEY].list_commands(bot_id))


def create_app(manager: BotManager) -> web.Application:
    """Build the control API application around a manager.

    The manager is stopped (all bots) when the application shuts down.
    """
    app = web.Application(middlewares=[error_middleware])
    app[MANAGER_KEY] = manager
    app.add_routes(routes)

    async def _on_shutdown(app: web.Application) -> None:
        await app[MANAGER_KEY].shutdown()

    app.on_shutdown.append(_on_shutdown)
    return app
