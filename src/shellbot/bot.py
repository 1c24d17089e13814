"""Update routing and session/editor lifecycle.

Every inbound update goes through the same steps: authorize the chat,
resolve its :class:`~shellbot.context.ChatContext`, then hand the message to
exactly one target: the active editor (edits and replies), the active
session (replies), a command handler, or a file download.
"""

from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import os
from pathlib import Path
from typing import Any, Coroutine

from shellbot import commands
from shellbot.auth import AccessStore
from shellbot.config import BotConfig
from shellbot.context import ChatContext, ContextStore, PtySize
from shellbot.editor import Editor
from shellbot.errors import EditConflict, OpenError, SpawnError, TransportRejected, ViewOverflow
from shellbot.log_utils import log_context, log_event
from shellbot.session import Session
from shellbot.shells import available_shells, sanitized_env
from shellbot.telegram import IncomingMessage, TelegramTransport

logger = logging.getLogger(__name__)

POLL_ERROR_DELAY = 5.0
CLIPPED = "\n[...]"


def _escape_clipped(text: str, limit: int) -> str:
    """HTML-escape ``text``, cutting it short so the result fits in ``limit``.

    The cut never lands inside an entity, so the markup around it stays valid.
    """
    escaped = html.escape(text)
    if len(escaped) <= limit:
        return escaped
    pieces: list[str] = []
    size = len(CLIPPED)
    for char in text:
        piece = html.escape(char)
        if size + len(piece) > limit:
            break
        pieces.append(piece)
        size += len(piece)
    return "".join(pieces) + CLIPPED


class Bot:
    def __init__(
        self,
        config: BotConfig,
        transport: TelegramTransport,
        *,
        access: AccessStore | None = None,
        default_cwd: str | None = None,
    ) -> None:
        self.config = config
        self.transport = transport
        self.access = access or AccessStore(config.owner)
        self.contexts = ContextStore(self._new_context)
        self.default_cwd = default_cwd or os.environ.get("HOME") or os.getcwd()
        self.uploads: dict[int, Path] = {}
        self.bot_id: int | None = None
        self.username: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def _new_context(self, chat_id: int) -> ChatContext:
        return ChatContext(
            chat_id=chat_id,
            shell=available_shells()[0],
            env=sanitized_env(),
            cwd=self.default_cwd,
            size=PtySize(self.config.default_size.columns, self.config.default_size.rows),
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_link(self, token: str) -> str:
        return f"https://t.me/{self.username or 'bot'}?start={token}"

    async def reply(
        self,
        target: IncomingMessage | int,
        text: str,
        *,
        html: bool = False,
        reply_to: int | None = None,
    ) -> int | None:
        """Send a short notice; transport failures are logged, not raised."""

        chat_id = target.chat_id if isinstance(target, IncomingMessage) else target
        try:
            return await self.transport.send_message(chat_id, text, html=html, reply_to=reply_to)
        except TransportRejected as exc:
            logger.warning("Couldn't reply in chat %s: %s", chat_id, exc)
            return None

    async def refuse_while_running(self, msg: IncomingMessage, context: ChatContext, text: str) -> bool:
        session = context.session
        if session is None:
            return False
        await self.reply(msg, text, reply_to=session.initial_message_id or msg.message_id)
        return True

    # Authorization

    async def authorize(self, msg: IncomingMessage) -> ChatContext | None:
        chat_id = msg.chat_id
        allowed = self.access.is_allowed(chat_id)

        if not allowed and msg.command == "start" and msg.args and self.access.redeem(msg.args, chat_id):
            allowed = True
            kind = "User" if msg.is_user else "Chat"
            contents = f"{kind} <em>{html.escape(msg.chat_name)}</em>"
            if msg.chat_username:
                contents += f" (@{html.escape(msg.chat_username)})"
            contents += f" can now use the bot. To revoke, use: /revoke {chat_id}"
            await self.reply(self.access.owner_id, contents, html=True)

        # A group that isn't granted, but whose sender is, uses the sender's context.
        if not allowed and self.access.is_allowed(msg.from_id):
            chat_id = msg.from_id
            allowed = True

        if not allowed:
            if msg.command == "start":
                await self.reply(msg, "Not authorized to use this bot.")
            return None
        return self.contexts.get_or_create(chat_id)

    # Routing

    async def handle_update(self, update: dict[str, Any]) -> None:
        msg = IncomingMessage.from_update(update, self.username)
        if msg is None:
            return
        with log_context(chat_id=msg.chat_id, message_id=msg.message_id):
            try:
                context = await self.authorize(msg)
                if context is not None:
                    await self.dispatch(msg, context)
            except Exception:
                logger.exception("Failed to handle update %s", update.get("update_id"))

    async def dispatch(self, msg: IncomingMessage, context: ChatContext) -> None:
        if msg.edited:
            editor = context.editor
            if editor is not None and editor.tracks(msg.message_id):
                await self._edit_file(msg, editor)
            return

        if msg.command:
            await commands.handle_command(self, msg, context)
            return

        if msg.reply_to_message_id is None or msg.reply_to_from_id != self.bot_id:
            return
        if msg.file_id:
            await self.handle_download(msg, context)
        elif context.editor is not None:
            await self._edit_file(msg, context.editor)
        elif context.session is not None:
            context.session.send_input(msg.text)
        else:
            await self.reply(msg, commands.NO_COMMAND)

    async def _edit_file(self, msg: IncomingMessage, editor: Editor) -> None:
        try:
            if not msg.edited:
                await editor.handle_reply(msg.text, message_id=msg.message_id)
            elif msg.message_id == editor.message_id:
                await editor.handle_edit(msg.text)
            elif not await editor.handle_reply_edit(msg.message_id, msg.text):
                await self.reply(msg, "Couldn't find those lines in the file anymore.", reply_to=msg.message_id)
        except EditConflict as exc:
            notice = f"Warning: {html.escape(str(exc))}."
            if exc.overwritten:
                head = f"{notice}\n\nOverwritten changes:\n<pre>"
                budget = self.config.message_size_limit - len(head) - len("</pre>")
                notice = f"{head}{_escape_clipped(exc.overwritten, budget)}</pre>"
            await self.reply(msg, notice, html=True, reply_to=msg.message_id)
        except (ViewOverflow, OSError) as exc:
            await self.reply(msg, f"Couldn't write the file: {exc}", reply_to=msg.message_id)

    async def handle_download(self, msg: IncomingMessage, context: ChatContext) -> None:
        target = commands.upload_target(self, msg, context)
        if target is None or msg.file_id is None:
            return
        try:
            await self.transport.download_file(msg.file_id, target)
        except (OSError, TransportRejected) as exc:
            await self.reply(msg, f"Couldn't write file: {exc}")
            return
        log_event(logger, "file.download", chat_id=context.chat_id, path=str(target))
        await self.reply(msg, f"File written: {target}")

    # Lifecycle

    async def start_session(self, msg: IncomingMessage, context: ChatContext, command: str) -> Session | None:
        async with context.lock:
            running = context.session
            if running is not None:
                await self.reply(msg, commands.STILL_RUNNING, reply_to=running.initial_message_id or msg.message_id)
                return None
            logger.info("Chat %s: running command %r", msg.chat_name, command)
            try:
                session = await Session.start(
                    context,
                    command,
                    self.transport,
                    config=self.config,
                    reply_to=msg.message_id,
                    chat_id=msg.chat_id,
                )
            except SpawnError as exc:
                await self.reply(msg, f"Couldn't run the command: {exc}", reply_to=msg.message_id)
                return None
            editor = context.editor
            if editor is not None:
                await editor.detach()
            context.attach_session(session)
        self._spawn(self._supervise(context, session, msg.chat_id))
        return session

    async def _supervise(self, context: ChatContext, session: Session, chat_id: int) -> None:
        status = await session.wait()
        async with context.lock:
            context.clear(session)
        try:
            await self.transport.send_message(
                chat_id,
                status.describe(),
                silent=context.silent,
                reply_to=session.initial_message_id,
            )
        except TransportRejected as exc:
            logger.warning("Couldn't report exit in chat %s: %s", chat_id, exc)

    async def open_editor(self, msg: IncomingMessage, context: ChatContext, path: str) -> Editor | None:
        async with context.lock:
            running = context.session
            if running is not None:
                await self.reply(msg, commands.STILL_RUNNING, reply_to=running.initial_message_id or msg.message_id)
                return None
            try:
                editor = await Editor.open(
                    context,
                    path,
                    self.transport,
                    config=self.config,
                    reply_to=msg.message_id,
                    chat_id=msg.chat_id,
                )
            except OpenError as exc:
                await self.reply(msg, f"Couldn't open file: {exc}")
                return None
            previous = context.editor
            if previous is not None:
                await previous.detach()
            context.attach_editor(editor)
        return editor

    # Polling

    async def _skip_backlog(self) -> int | None:
        updates = await self.transport.get_updates(offset=-1, timeout=0)
        if not updates:
            return None
        return int(updates[-1]["update_id"]) + 1

    async def run_polling(self) -> None:
        me = await self.transport.get_me()
        self.bot_id = int(me["id"])
        self.username = me.get("username")
        offset = await self._skip_backlog()
        logger.info("Bot ready as @%s", self.username)

        while True:
            try:
                updates = await self.transport.get_updates(offset=offset, timeout=self.config.poll_timeout)
            except TransportRejected as exc:
                logger.error("Error when updating: %s", exc)
                await asyncio.sleep(exc.retry_after or POLL_ERROR_DELAY)
                continue
            for update in updates:
                offset = int(update["update_id"]) + 1
                self._spawn(self.handle_update(update))

    async def shutdown(self) -> None:
        for context in self.contexts:
            session = context.session
            if session is not None:
                await session.terminate()
            editor = context.editor
            if editor is not None:
                await editor.detach()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
