"""Project a growing text stream onto chat messages.

Telegram lets a bot edit its own messages, caps a message at a fixed number
of characters and throttles edits. :class:`MessageStream` turns an
append-only stream (PTY output) into a short sequence of "send" and "edit"
calls that respects both limits:

- output is appended to the open message by editing it, at most once per
  ``edit_interval`` seconds; a flush that comes due early is deferred;
- a message that reaches ``max_size`` is closed and never touched again, the
  remainder goes to a new message;
- a rejected request leaves the buffer untouched and is retried later,
  unless the message was deleted, in which case output continues in a new
  message;
- blank text is held back until something visible follows it, since
  Telegram refuses empty messages.

:class:`MessageView` applies the same discipline to a single message whose
whole text is replaced, which is what the file editor needs.

Appends are synchronous and only ever extend the pending buffer, so they are
safe to call from reader callbacks on the event loop; everything that talks
to the transport runs under the instance lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Callable

from shellbot.errors import TransportRejected
from shellbot.telegram import Transport

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class _OpenMessage:
    message_id: int
    text: str


class _ThrottledMessage:
    """Lock, flush task and retry bookkeeping shared by streams and views."""

    def __init__(
        self,
        transport: Transport,
        chat_id: int,
        *,
        max_size: int,
        edit_interval: float,
        silent: bool = False,
        link_previews: bool = False,
        reply_to: int | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.transport = transport
        self.chat_id = chat_id
        self.max_size = max_size
        self.edit_interval = edit_interval
        # Read at flush time, so changes apply to the next message sent.
        self.silent = silent
        self.link_previews = link_previews
        self.reply_to = reply_to
        self._clock = clock
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._last_write: float | None = None
        self._retry_at = 0.0

    @property
    def closed(self) -> bool:
        return self._closed

    def _schedule(self) -> None:
        if self._closed:
            return
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
            self._task.add_done_callback(self._on_task_done)
        self._wakeup.set()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Flush task for chat %s crashed", self.chat_id, exc_info=exc)

    async def _run(self) -> None:
        delay: float | None = None
        while not self._closed:
            if delay is None:
                await self._wakeup.wait()
            else:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            self._wakeup.clear()
            if self._closed:
                break
            async with self._lock:
                delay = await self._flush_locked(final=False)

    def _edit_wait(self) -> float:
        if self._last_write is None:
            return 0.0
        return max(0.0, self._last_write + self.edit_interval - self._clock())

    def _defer(self, exc: TransportRejected) -> float:
        delay = max(self.edit_interval, exc.retry_after or 0.0)
        self._retry_at = self._clock() + delay
        logger.warning(
            "Transport rejected update for chat %s, retrying in %.1fs: %s",
            self.chat_id,
            delay,
            exc.description,
        )
        return delay

    async def _flush_locked(self, *, final: bool) -> float | None:
        """Push pending state to the transport.

        Returns ``None`` when nothing is left, otherwise the number of seconds
        until the next attempt may be made.
        """
        raise NotImplementedError

    async def flush(self, attempts: int = 1) -> bool:
        """Flush now, waiting out the edit interval if needed.

        Makes up to ``attempts`` tries when the transport rejects requests and
        returns whether everything pending was delivered.
        """
        async with self._lock:
            for attempt in range(attempts):
                delay = self._retry_at - self._clock()
                if delay > 0:
                    await asyncio.sleep(delay)
                if await self._flush_locked(final=True) is None:
                    return True
            return False

    async def _stop_task(self) -> None:
        self._closed = True
        self._wakeup.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            await task


class MessageStream(_ThrottledMessage):
    """Append-only output projected onto one or more chat messages."""

    def __init__(self, transport: Transport, chat_id: int, **kwargs) -> None:
        super().__init__(transport, chat_id, **kwargs)
        self._pending = ""
        self._open: _OpenMessage | None = None
        self._message_ids: list[int] = []

    @property
    def message_ids(self) -> list[int]:
        return list(self._message_ids)

    @property
    def initial_message_id(self) -> int | None:
        return self._message_ids[0] if self._message_ids else None

    @property
    def pending(self) -> str:
        return self._pending

    def append(self, text: str) -> None:
        if not text or self._closed:
            return
        self._pending += text
        self._schedule()

    async def _flush_locked(self, *, final: bool) -> float | None:
        retry_wait = self._retry_at - self._clock()
        if retry_wait > 0 and not final:
            return retry_wait

        while self._pending:
            if self._open is None:
                chunk = self._pending[: self.max_size]
                if not chunk.strip():
                    if not self._pending.strip():
                        # Telegram refuses blank messages; wait for visible text.
                        return None
                    self._pending = self._pending[len(chunk) :]
                    continue
                try:
                    message_id = await self.transport.send_message(
                        self.chat_id,
                        chunk,
                        silent=self.silent,
                        link_previews=self.link_previews,
                        reply_to=None if self._message_ids else self.reply_to,
                    )
                except TransportRejected as exc:
                    return self._defer(exc)
                self._pending = self._pending[len(chunk) :]
                self._message_ids.append(message_id)
                self._last_write = self._clock()
                if len(chunk) < self.max_size:
                    self._open = _OpenMessage(message_id, chunk)
                continue

            wait = self._edit_wait()
            if wait > 0:
                if not final:
                    return wait
                await asyncio.sleep(wait)
                continue

            piece = self._pending[: self.max_size - len(self._open.text)]
            text = self._open.text + piece
            try:
                await self.transport.edit_message(
                    self.chat_id,
                    self._open.message_id,
                    text,
                    link_previews=self.link_previews,
                )
            except TransportRejected as exc:
                if not exc.message_gone:
                    return self._defer(exc)
                logger.warning(
                    "Message %s in chat %s can no longer be edited, continuing in a new one",
                    self._open.message_id,
                    self.chat_id,
                )
                self._open = None
                continue
            self._pending = self._pending[len(piece) :]
            self._open.text = text
            self._last_write = self._clock()
            if len(text) >= self.max_size:
                self._open = None
        return None

    async def close(self, attempts: int = 1) -> bool:
        """Stop the flush task and deliver whatever is still buffered.

        Idempotent. Returns ``False`` if output had to be abandoned because the
        transport kept rejecting it.
        """
        if self._closed and self._task is None and not self._pending:
            return True
        await self._stop_task()
        delivered = await self.flush(attempts)
        if delivered and self._pending:
            logger.debug("Discarding %d trailing blank characters for chat %s", len(self._pending), self.chat_id)
            self._pending = ""
        if not delivered:
            logger.error(
                "Dropping %d undeliverable characters for chat %s",
                len(self._pending),
                self.chat_id,
            )
            self._pending = ""
        self._open = None
        return delivered


class MessageView(_ThrottledMessage):
    """A single message whose whole text is kept equal to :meth:`show`."""

    def __init__(self, transport: Transport, chat_id: int, **kwargs) -> None:
        super().__init__(transport, chat_id, **kwargs)
        self._message_id: int | None = None
        self._shown: str | None = None
        self._desired: str | None = None

    @property
    def message_id(self) -> int | None:
        return self._message_id

    @property
    def text(self) -> str | None:
        return self._desired

    def show(self, text: str) -> None:
        if len(text) > self.max_size:
            raise ValueError(f"view text exceeds {self.max_size} characters")
        if self._closed:
            return
        self._desired = text
        if text != self._shown:
            self._schedule()

    def mark_shown(self, text: str) -> None:
        """Record that the message already displays ``text`` (edited by the user)."""
        self._shown = text
        self._desired = text

    async def _flush_locked(self, *, final: bool) -> float | None:
        retry_wait = self._retry_at - self._clock()
        if retry_wait > 0 and not final:
            return retry_wait

        while self._desired is not None and self._desired != self._shown:
            text = self._desired
            if self._message_id is None:
                try:
                    self._message_id = await self.transport.send_message(
                        self.chat_id,
                        text,
                        silent=self.silent,
                        link_previews=self.link_previews,
                        reply_to=self.reply_to,
                    )
                except TransportRejected as exc:
                    return self._defer(exc)
            else:
                wait = self._edit_wait()
                if wait > 0:
                    if not final:
                        return wait
                    await asyncio.sleep(wait)
                    continue
                try:
                    await self.transport.edit_message(
                        self.chat_id,
                        self._message_id,
                        text,
                        link_previews=self.link_previews,
                    )
                except TransportRejected as exc:
                    if not exc.message_gone:
                        return self._defer(exc)
                    logger.warning(
                        "View message %s in chat %s is gone, sending a new one",
                        self._message_id,
                        self.chat_id,
                    )
                    self._message_id = None
                    continue
            self._shown = text
            self._last_write = self._clock()
        return None

    async def release(self) -> None:
        """Stop updating the message; pending changes are discarded."""
        await self._stop_task()
        self._desired = self._shown
