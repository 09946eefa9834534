"""Telegram Bot API provider.

Long-polls getUpdates over aiohttp and turns /command messages into
InboundMessage objects. Tokens are checked with getMe.

Key classes:
    TelegramProvider: Credential check and connection factory.
    TelegramConnection: One polling loop for one bot token.

Key functions:
    parse_update: Convert a Telegram update into an InboundMessage.
"""

import asyncio
import re
from typing import Any, Optional

import aiohttp
import structlog

from ..exceptions import ConnectionFaultError, InvalidCredentialError
from ..models import InboundMessage
from ..task_utils import log_task_exception
from .base import Provider, ProviderConnection, parse_command

logger = structlog.get_logger("botalto.provider")

# <numeric bot id>:<secret>; also keeps path separators out of API URLs
_TOKEN_FORMAT = re.compile(r"^\d+:[A-Za-z0-9_-]+$")

MAX_POLL_BACKOFF = 60


def is_well_formed_token(token: str) -> bool:
    return bool(token) and bool(_TOKEN_FORMAT.match(token))


async def _api_call(
    session: aiohttp.ClientSession,
    api_url: str,
    token: str,
    method: str,
    params: Optional[dict] = None,
    timeout: float = 3.0,
) -> Any:
    """Call a Bot API method and return its ``result``.

    Raises:
        InvalidCredentialError: Telegram answered 401/404 for the token.
        ConnectionFaultError: transport failure or any other API error.
    """
    url = f"{api_url}/bot{token}/{method}"
    try:
        async with session.post(
            url, json=params or {}, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise ConnectionFaultError(f"{method} request failed: {e}", method=method)

    if not isinstance(data, dict):
        raise ConnectionFaultError(f"{method} returned a non-object body", method=method)
    if not data.get("ok"):
        code = data.get("error_code")
        description = data.get("description", "")
        if code in (401, 404):
            raise InvalidCredentialError(
                f"{method} rejected the token: {description}", module="provider"
            )
        raise ConnectionFaultError(
            f"{method} failed: {description}", method=method, error_code=code
        )
    return data.get("result")


def parse_update(update: dict, username: Optional[str] = None) -> Optional[InboundMessage]:
    """Turn a Telegram update into an InboundMessage.

    Returns None for anything that is not a text /command, and for
    commands addressed to a different bot (``/cmd@OtherBot``).
    """
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    text = message.get("text")
    if not text:
        return None
    parsed = parse_command(text)
    if parsed is None:
        return None
    trigger, args, target = parsed
    if target and username and target.lower() != username.lower():
        return None

    chat = message.get("chat") or {}
    if "id" not in chat:
        return None
    sender = message.get("from") or {}
    return InboundMessage(
        trigger=trigger,
        args=args,
        text=text,
        chat_id=str(chat["id"]),
        message_id=message.get("message_id"),
        sender=sender.get("username") or (str(sender["id"]) if "id" in sender else None),
    )


class TelegramConnection(ProviderConnection):
    """Polling connection for a single bot token.

    Args:
        token: Bot API token.
        api_url: Bot API base URL.
        request_timeout: Timeout for ordinary calls (sendMessage, getMe).
        poll_timeout: Long-poll duration passed to getUpdates.
    """

    def __init__(
        self,
        token: str,
        api_url: str,
        request_timeout: float = 3.0,
        poll_timeout: int = 3,
    ):
        super().__init__()
        self._token = token
        self._api_url = api_url
        self.request_timeout = request_timeout
        self.poll_timeout = poll_timeout
        self.username: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._offset: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _call(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None):
        if self._session is None:
            raise ConnectionFaultError(f"{method} called on a closed connection", method=method)
        return await _api_call(
            self._session, self._api_url, self._token, method, params,
            timeout=timeout or self.request_timeout,
        )

    async def connect(self) -> None:
        if self.is_connected:
            return
        self._session = aiohttp.ClientSession()
        try:
            me = await self._call("getMe")
        except Exception:
            await self._session.close()
            self._session = None
            raise
        self.username = (me or {}).get("username")
        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._poll_task.add_done_callback(log_task_exception)
        logger.info("telegram_connected", username=self.username)

    async def disconnect(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._poll_task is not None:
            # Abort the in-flight long poll; handlers run outside this task
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._session is not None:
            try:
                if self._offset is not None:
                    # Confirm the last batch so it is not redelivered on the next start
                    await self._call(
                        "getUpdates", {"offset": self._offset, "timeout": 0, "limit": 1}
                    )
            except ConnectionFaultError as e:
                logger.warning("telegram_offset_confirm_failed", error=str(e))
            finally:
                await self._session.close()
                self._session = None
        logger.info("telegram_disconnected", username=self.username)

    async def reply(self, message: InboundMessage, text: str) -> None:
        await self._call("sendMessage", {"chat_id": message.chat_id, "text": text})

    async def _poll_loop(self) -> None:
        backoff = 1
        while not self._stop_event.is_set():
            params = {"timeout": self.poll_timeout, "allowed_updates": ["message"]}
            if self._offset is not None:
                params["offset"] = self._offset
            try:
                updates = await self._call(
                    "getUpdates", params, timeout=self.poll_timeout + self.request_timeout
                )
                backoff = 1
            except (ConnectionFaultError, InvalidCredentialError) as e:
                logger.warning("telegram_poll_error", error=str(e), retry_delay=backoff)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, MAX_POLL_BACKOFF)
                continue

            for update in updates or []:
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    self._offset = update_id + 1
                message = parse_update(update, self.username)
                if message is None:
                    continue
                await self.dispatch(message)


class TelegramProvider(Provider):
    """Telegram Bot API provider.

    Args:
        api_url: Bot API base URL.
        request_timeout: Timeout for ordinary API calls in seconds.
        poll_timeout: getUpdates long-poll duration in seconds.
    """

    name = "telegram"

    def __init__(
        self,
        api_url: str = "https://api.telegram.org",
        request_timeout: float = 3.0,
        poll_timeout: int = 3,
    ):
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self.poll_timeout = poll_timeout

    @classmethod
    def from_config(cls, config) -> "TelegramProvider":
        return cls(
            api_url=config.provider_api_url,
            request_timeout=config.provider_request_timeout,
            poll_timeout=config.provider_poll_timeout,
        )

    async def verify_credential(self, token: str) -> bool:
        if not is_well_formed_token(token):
            return False
        async with aiohttp.ClientSession() as session:
            try:
                me = await _api_call(
                    session, self.api_url, token, "getMe", timeout=self.request_timeout
                )
            except InvalidCredentialError:
                return False
        return bool(me and me.get("is_bot", True))

    def open(self, token: str) -> TelegramConnection:
        return TelegramConnection(
            token,
            self.api_url,
            request_timeout=self.request_timeout,
            poll_timeout=self.poll_timeout,
        )
