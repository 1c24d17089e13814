from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shellbot.config import BotConfig
from shellbot.context import ChatContext
from shellbot.errors import TransportRejected


@dataclass
class SentMessage:
    chat_id: int
    message_id: int
    text: str
    silent: bool = False
    reply_to: int | None = None
    html: bool = False
    edits: list[str] = field(default_factory=list)


class RecordingTransport:
    """In-memory stand-in for :class:`shellbot.telegram.TelegramTransport`.

    ``fail_next`` queues exceptions raised by the next send/edit calls. Like
    the Bot API it refuses blank text and edits of messages in ``deleted``;
    ``rejections`` counts those refusals.
    """

    def __init__(self) -> None:
        self.messages: dict[int, SentMessage] = {}
        self.calls: list[tuple[str, int]] = []
        self.fail_next: list[TransportRejected] = []
        self.documents: list[tuple[int, Path]] = []
        self.downloads: dict[str, bytes] = {}
        self.deleted: set[int] = set()
        self.rejections = 0
        self._next_id = 100

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    def _reject(self, description: str) -> TransportRejected:
        self.rejections += 1
        return TransportRejected(f"Bad Request: {description}", error_code=400)

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
        self._maybe_fail()
        if not text.strip():
            raise self._reject("message text is empty")
        self._next_id += 1
        self.messages[self._next_id] = SentMessage(chat_id, self._next_id, text, silent, reply_to, html)
        self.calls.append(("send", self._next_id))
        return self._next_id

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        html: bool = False,
        link_previews: bool = False,
    ) -> None:
        self._maybe_fail()
        if message_id in self.deleted:
            raise self._reject("message to edit not found")
        if not text.strip():
            raise self._reject("message text is empty")
        message = self.messages[message_id]
        message.text = text
        message.edits.append(text)
        self.calls.append(("edit", message_id))

    async def send_document(self, chat_id: int, path: Path, *, reply_to: int | None = None) -> int:
        self._next_id += 1
        self.documents.append((chat_id, path))
        return self._next_id

    async def download_file(self, file_id: str, destination: Path) -> None:
        destination.write_bytes(self.downloads[file_id])

    def texts(self, chat_id: int | None = None) -> list[str]:
        return [m.text for m in self.messages.values() if chat_id is None or m.chat_id == chat_id]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides: Any) -> BotConfig:
    values: dict[str, Any] = {
        "auth_token": "123:abc",
        "owner": 1,
        "edit_interval": 0.05,
        "final_flush_attempts": 3,
    }
    values.update(overrides)
    return BotConfig(**values)


def make_context(tmp_path: Path, chat_id: int = 1, **overrides: Any) -> ChatContext:
    values: dict[str, Any] = {
        "chat_id": chat_id,
        "shell": "/bin/sh",
        "env": {"PATH": "/usr/bin:/bin", "TERM": "xterm-256color", "HOME": str(tmp_path)},
        "cwd": str(tmp_path),
        "silent": False,
    }
    values.update(overrides)
    return ChatContext(**values)


def update(
    text: str,
    *,
    chat_id: int = 1,
    message_id: int = 10,
    from_id: int | None = None,
    reply_to: int | None = None,
    reply_from: int = 999,
    edited: bool = False,
    document: dict[str, Any] | None = None,
    update_id: int = 1,
) -> dict[str, Any]:
    """Build a raw Bot API update for a private chat."""

    message: dict[str, Any] = {
        "message_id": message_id,
        "chat": {"id": chat_id, "type": "private", "first_name": "Ada"},
        "from": {"id": from_id if from_id is not None else chat_id},
        "text": text,
    }
    if reply_to is not None:
        message["reply_to_message"] = {"message_id": reply_to, "from": {"id": reply_from}}
    if document is not None:
        message["document"] = document
        message["caption"] = message.pop("text")
    return {"update_id": update_id, ("edited_message" if edited else "message"): message}


async def wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
