"""Telegram Bot API transport on top of httpx.

Only the handful of methods the bot needs are wrapped. Every failure (HTTP
status, network error, or an ``ok: false`` reply) surfaces as
:class:`~shellbot.errors.TransportRejected` so callers have a single thing to
retry on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

from shellbot.errors import TransportRejected

logger = logging.getLogger(__name__)

_NOT_MODIFIED = "message is not modified"


class Transport(Protocol):
    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        html: bool = False,
        silent: bool = False,
        link_previews: bool = False,
        reply_to: int | None = None,
    ) -> int: ...

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        html: bool = False,
        link_previews: bool = False,
    ) -> None: ...

    async def send_document(self, chat_id: int, path: Path, *, reply_to: int | None = None) -> int: ...

    async def download_file(self, file_id: str, destination: Path) -> None: ...


class TelegramTransport:
    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 40.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._base_url = f"{api_url.rstrip('/')}/bot{token}"
        self._file_url = f"{api_url.rstrip('/')}/file/bot{token}"
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        url = f"{self._base_url}/{method}"
        try:
            if "files" in kwargs:
                response = await self._client.post(url, data=payload, **kwargs)
            else:
                response = await self._client.post(url, json=payload or {}, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportRejected(f"{method}: {exc.__class__.__name__}: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_success and body.get("ok"):
            return body.get("result")

        description = body.get("description") or f"HTTP {response.status_code}"
        parameters = body.get("parameters") or {}
        retry_after = parameters.get("retry_after")
        raise TransportRejected(
            f"{method}: {description}",
            retry_after=float(retry_after) if retry_after is not None else None,
            error_code=body.get("error_code") or response.status_code,
        )

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe")

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "edited_message"],
        }
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=timeout + 10)

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        html: bool = False,
        silent: bool = False,
        link_previews: bool = False,
        reply_to: int | None = None,
    ) -> int:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_notification": silent,
            "link_preview_options": {"is_disabled": not link_previews},
        }
        if html:
            payload["parse_mode"] = "HTML"
        if reply_to is not None:
            payload["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        result = await self._call("sendMessage", payload)
        return int(result["message_id"])

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        html: bool = False,
        link_previews: bool = False,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "link_preview_options": {"is_disabled": not link_previews},
        }
        if html:
            payload["parse_mode"] = "HTML"
        try:
            await self._call("editMessageText", payload)
        except TransportRejected as exc:
            if _NOT_MODIFIED in exc.description:
                return
            raise

    async def send_document(self, chat_id: int, path: Path, *, reply_to: int | None = None) -> int:
        data: dict[str, Any] = {"chat_id": str(chat_id)}
        if reply_to is not None:
            data["reply_to_message_id"] = str(reply_to)
        with path.open("rb") as fh:
            result = await self._call("sendDocument", data, files={"document": (path.name, fh)})
        return int(result["message_id"])

    async def download_file(self, file_id: str, destination: Path) -> None:
        info = await self._call("getFile", {"file_id": file_id})
        file_path = info.get("file_path")
        if not file_path:
            raise TransportRejected("getFile: no file_path in response")
        url = f"{self._file_url}/{file_path}"
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                with destination.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as exc:
            raise TransportRejected(f"download: {exc}") from exc


def parse_command(text: str, bot_username: str | None = None) -> tuple[str | None, str]:
    """Split ``/cmd@bot args`` into ``("cmd", "args")``.

    Commands addressed to another bot, and plain text, yield ``(None, text)``.
    """

    if not text.startswith("/"):
        return None, text
    head, _, rest = text.partition(" ")
    name, _, target = head[1:].partition("@")
    if target and bot_username and target.lower() != bot_username.lower():
        return None, text
    if not name:
        return None, text
    return name.lower(), rest.strip()


@dataclass
class IncomingMessage:
    chat_id: int
    chat_type: str
    chat_name: str
    message_id: int
    from_id: int | None = None
    chat_username: str | None = None
    text: str = ""
    command: str | None = None
    args: str = ""
    reply_to_message_id: int | None = None
    reply_to_from_id: int | None = None
    file_id: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    edited: bool = False
    is_user: bool = True

    @classmethod
    def from_update(cls, update: dict[str, Any], bot_username: str | None = None) -> IncomingMessage | None:
        edited = "edited_message" in update
        msg = update.get("edited_message") if edited else update.get("message")
        if not msg:
            return None
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        text = msg.get("text") or msg.get("caption") or ""
        command, args = parse_command(text, bot_username) if not edited else (None, text)
        reply = msg.get("reply_to_message") or {}
        document = msg.get("document") or {}

        chat_type = chat.get("type", "private")
        if chat_type == "private":
            name = " ".join(part for part in (chat.get("first_name"), chat.get("last_name")) if part)
        else:
            name = chat.get("title") or ""

        return cls(
            chat_id=int(chat["id"]),
            chat_type=chat_type,
            chat_name=name or str(chat["id"]),
            chat_username=chat.get("username"),
            message_id=int(msg["message_id"]),
            from_id=int(sender["id"]) if "id" in sender else None,
            text=text,
            command=command,
            args=args,
            reply_to_message_id=int(reply["message_id"]) if "message_id" in reply else None,
            reply_to_from_id=int(reply["from"]["id"]) if "id" in (reply.get("from") or {}) else None,
            file_id=document.get("file_id"),
            file_name=document.get("file_name"),
            mime_type=document.get("mime_type"),
            edited=edited,
            is_user=chat_type == "private",
        )
