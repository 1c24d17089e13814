"""Edit a text file through a chat message.

The file is shown in one :class:`~shellbot.stream.MessageView`. When the
operator edits that message, the difference to what was shown is written to
the file; replying to it appends a line. Chat messages can't carry leading
or trailing whitespace, so the view holds the file body only and the
surrounding whitespace is kept aside and restored on every write.

Before each write the file is compared with the content last synchronized
with the chat. If someone else changed it in the meantime, the chat version
still wins but :class:`~shellbot.errors.EditConflict` is raised afterwards
with the changes that were overwritten.
"""

from __future__ import annotations

import difflib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from shellbot.config import BotConfig
from shellbot.context import ChatContext
from shellbot.errors import EditConflict, OpenError, ViewOverflow
from shellbot.log_utils import log_event
from shellbot.stream import MessageView
from shellbot.telegram import Transport

logger = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "(empty file)"
# Files bigger than this many times the view limit aren't even read.
_READ_FACTOR = 4


@dataclass(frozen=True)
class Rendering:
    head: str
    body: str
    tail: str

    @classmethod
    def of(cls, text: str) -> Rendering:
        body = text.strip()
        if not body:
            return cls("", "", text)
        lead = len(text) - len(text.lstrip())
        return cls(text[:lead], body, text[lead + len(body) :])

    def compose(self, body: str) -> str:
        return self.head + body + self.tail

    @property
    def view_text(self) -> str:
        return self.body or EMPTY_PLACEHOLDER


def resolve_path(cwd: str, path: str) -> Path:
    target = Path(path).expanduser()
    if not target.is_absolute():
        target = Path(cwd) / target
    return Path(os.path.normpath(target))


def _read_text(path: Path, limit: int) -> str:
    try:
        if path.is_dir():
            raise OpenError(f"{path} is a directory.")
        if path.stat().st_size > limit * _READ_FACTOR:
            raise OpenError(f"{path} is too large to edit here.")
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise OpenError(f"{path} doesn't exist.") from exc
    except PermissionError as exc:
        raise OpenError(f"Permission denied: {path}") from exc
    except UnicodeDecodeError as exc:
        raise OpenError(f"{path} is not a UTF-8 text file.") from exc
    except OSError as exc:
        raise OpenError(f"Couldn't open {path}: {exc}") from exc


def write_durably(path: Path, text: str) -> None:
    """Replace ``path`` with ``text``; the data is on disk when this returns."""

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    dir_fd = os.open(path.parent, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def _diff(old: str, new: str, name: str) -> str:
    return "".join(
        difflib.unified_diff(
            old.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=name,
            tofile=name,
        )
    )


class Editor:
    def __init__(self, context: ChatContext, path: Path, view: MessageView, *, text: str, limit: int) -> None:
        self.context = context
        self.path = path
        self._view = view
        self._limit = limit
        self._disk = text
        self._rendering = Rendering.of(text)
        self._replies: dict[int, str] = {}
        self._detached = False

    @classmethod
    async def open(
        cls,
        context: ChatContext,
        path: str,
        transport: Transport,
        *,
        config: BotConfig,
        reply_to: int | None = None,
        chat_id: int | None = None,
    ) -> Editor:
        """Show ``path`` in the chat; raises :class:`OpenError`."""

        resolved = resolve_path(context.cwd, path)
        limit = config.editor_limit
        text = _read_text(resolved, limit)
        rendering = Rendering.of(text)
        if len(rendering.body) > limit:
            raise OpenError(f"{resolved} is too large to edit here ({len(rendering.body)} > {limit} characters).")

        view = MessageView(
            transport,
            context.chat_id if chat_id is None else chat_id,
            max_size=config.message_size_limit,
            edit_interval=config.edit_interval,
            silent=context.silent,
            reply_to=reply_to,
        )
        editor = cls(context, resolved, view, text=text, limit=limit)
        view.show(rendering.view_text)
        if not await view.flush(config.final_flush_attempts):
            await view.release()
            raise OpenError(f"Couldn't show {resolved} in this chat.")
        log_event(logger, "editor.open", chat_id=context.chat_id, path=str(resolved), size=len(text))
        return editor

    @property
    def message_id(self) -> int | None:
        return self._view.message_id

    @property
    def rendered(self) -> str:
        return self._rendering.body

    @property
    def detached(self) -> bool:
        return self._detached

    def _write(self, body: str) -> None:
        new_text = self._rendering.compose(body)
        try:
            current: str | None = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            current = None
        except (OSError, UnicodeDecodeError):
            current = None

        write_durably(self.path, new_text)
        log_event(
            logger,
            "editor.write",
            chat_id=self.context.chat_id,
            path=str(self.path),
            diff=_diff(self._disk, new_text, self.path.name),
        )
        previous, self._disk = self._disk, new_text
        self._rendering = Rendering(self._rendering.head, body, self._rendering.tail)

        if current != previous:
            overwritten = _diff(previous, current or "", self.path.name)
            log_event(
                logger,
                "editor.conflict",
                level=logging.WARNING,
                chat_id=self.context.chat_id,
                path=str(self.path),
            )
            raise EditConflict(str(self.path), overwritten)

    async def handle_edit(self, text: str) -> bool:
        """Apply an edit of the view message; returns whether the file changed."""

        if self._detached:
            return False
        body = "" if text.strip() == EMPTY_PLACEHOLDER else text.strip()
        if body == self._rendering.body:
            return False
        self._view.mark_shown(text)
        self._write(body)
        return True

    def tracks(self, message_id: int | None) -> bool:
        """Whether edits of ``message_id`` should be applied to the file."""
        return message_id is not None and (message_id == self.message_id or message_id in self._replies)

    async def handle_reply(self, text: str, message_id: int | None = None) -> None:
        """Append ``text`` as new line(s) at the end of the file.

        When ``message_id`` is given, later edits of that message replace the
        appended lines, see :meth:`handle_reply_edit`.
        """

        if self._detached:
            return
        addition = text.rstrip().lstrip("\n")
        if not addition:
            return
        body = self._rendering.body
        if not body:
            addition = addition.lstrip()
        new_body = f"{body}\n{addition}" if body else addition
        if len(new_body) > self._limit:
            raise ViewOverflow(f"{self.path} would exceed {self._limit} characters; not written.")
        if message_id is not None:
            self._replies[message_id] = addition
        try:
            self._write(new_body)
        finally:
            self._view.show(self._rendering.view_text)

    async def handle_reply_edit(self, message_id: int, text: str) -> bool:
        """Replace the lines a reply added with its edited text.

        Returns ``False`` when the original lines can no longer be found.
        """

        if self._detached:
            return False
        previous = self._replies.get(message_id)
        if previous is None:
            return False
        body = self._rendering.body
        index = body.rfind(previous)
        if index < 0:
            return False
        replacement = text.strip()
        new_body = (body[:index] + replacement + body[index + len(previous) :]).strip()
        if len(new_body) > self._limit:
            raise ViewOverflow(f"{self.path} would exceed {self._limit} characters; not written.")
        self._replies[message_id] = replacement
        if new_body == body:
            return False
        try:
            self._write(new_body)
        finally:
            self._view.show(self._rendering.view_text)
        return True

    async def detach(self) -> None:
        if self._detached:
            return
        self._detached = True
        await self._view.release()
        log_event(logger, "editor.detach", chat_id=self.context.chat_id, path=str(self.path))
