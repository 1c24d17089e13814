"""PTY-backed command sessions bound to a chat.

A :class:`Session` runs ``<shell> -c <command>`` on a fresh pseudoterminal,
feeds everything the child prints into a :class:`~shellbot.stream.MessageStream`
and writes operator input back into the terminal. Exactly one
:class:`ExitStatus` is produced per session; :meth:`Session.wait` returns it
once the child is gone, the PTY is drained and the last output has been
flushed to the chat.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass

from shellbot import keys
from shellbot.config import BotConfig
from shellbot.context import ChatContext, PtySize
from shellbot.errors import SpawnError, UnknownSignal, UnsupportedMode
from shellbot.log_utils import log_event, log_output_enabled
from shellbot.stream import MessageStream
from shellbot.telegram import Transport

logger = logging.getLogger(__name__)

READ_SIZE = 4096
DRAIN_TIMEOUT = 1.0
TERMINATE_GRACE = 3.0


@dataclass(frozen=True)
class ExitStatus:
    code: int | None = None
    signal: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> ExitStatus:
        if returncode is None:
            return cls()
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(signal=name)
        return cls(code=returncode)

    @property
    def success(self) -> bool:
        return self.code == 0

    def describe(self) -> str:
        if self.signal:
            return f"Command killed by {self.signal}."
        if self.code == 0:
            return "Command exited successfully."
        if self.code is None:
            return "Command finished."
        return f"Command exited with code {self.code}."


def normalize_signal(name: str) -> signal.Signals:
    """Resolve ``int``, ``SIGINT``, ``sigint`` or ``2`` to ``signal.SIGINT``."""

    canonical = name.strip().upper()
    if canonical.isdigit():
        try:
            return signal.Signals(int(canonical))
        except ValueError:
            raise UnknownSignal(name) from None
    if not canonical.startswith("SIG"):
        canonical = "SIG" + canonical
    try:
        return signal.Signals[canonical]
    except KeyError:
        raise UnknownSignal(name) from None


def _winsize(size: PtySize) -> bytes:
    return struct.pack("HHHH", size.rows, size.columns, 0, 0)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class Session:
    def __init__(
        self,
        context: ChatContext,
        command: str,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        stream: MessageStream,
        *,
        final_flush_attempts: int = 1,
    ) -> None:
        self.context = context
        self.command = command
        self._proc = proc
        self._master: int | None = master_fd
        self._stream = stream
        self._final_flush_attempts = final_flush_attempts
        self._modifiers = keys.ModifierState()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._eof = asyncio.Event()
        self._reading = False
        self._input = b""
        self._writing = False
        self._exit: asyncio.Future[ExitStatus] = self._loop.create_future()

        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._watcher = self._loop.create_task(self._watch())

    @classmethod
    async def start(
        cls,
        context: ChatContext,
        command: str,
        transport: Transport,
        *,
        config: BotConfig,
        reply_to: int | None = None,
        chat_id: int | None = None,
    ) -> Session:
        """Spawn ``command`` for ``context``; raises :class:`SpawnError`."""

        command = command.strip()
        if not command:
            raise SpawnError("No command given.")
        try:
            master, slave = pty.openpty()
        except OSError as exc:
            raise SpawnError(f"Couldn't allocate a terminal: {exc}") from exc

        argv = [context.shell, "-ic" if context.interactive else "-c", command]
        try:
            fcntl.ioctl(slave, termios.TIOCSWINSZ, _winsize(context.size))
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=context.cwd,
                env=dict(context.env),
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            os.close(master)
            raise SpawnError(f"Couldn't start {context.shell}: {exc}") from exc
        finally:
            os.close(slave)

        stream = MessageStream(
            transport,
            context.chat_id if chat_id is None else chat_id,
            max_size=config.message_size_limit,
            edit_interval=config.edit_interval,
            silent=context.silent,
            link_previews=context.link_previews,
            reply_to=reply_to,
        )
        session = cls(
            context,
            command,
            proc,
            master,
            stream,
            final_flush_attempts=config.final_flush_attempts,
        )
        log_event(logger, "session.start", chat_id=context.chat_id, pid=proc.pid, command=command)
        return session

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        return self._master is not None and self._proc.returncode is None

    @property
    def stream(self) -> MessageStream:
        return self._stream

    @property
    def initial_message_id(self) -> int | None:
        return self._stream.initial_message_id

    @property
    def modifiers(self) -> keys.ModifierState:
        return self._modifiers

    async def wait(self) -> ExitStatus:
        return await asyncio.shield(self._exit)

    # Output

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master, READ_SIZE)  # type: ignore[arg-type]
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave descriptor is closed.
            data = b""
        if not data:
            self._stop_reading()
            return
        if log_output_enabled():
            logger.debug("pty output chat=%s %r", self.context.chat_id, data)
        self._stream.append(self._decoder.decode(data))

    def _stop_reading(self) -> None:
        if self._reading and self._master is not None:
            self._loop.remove_reader(self._master)
        self._reading = False
        self._eof.set()

    async def _watch(self) -> None:
        returncode: int | None = None
        try:
            returncode = await self._proc.wait()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._eof.wait(), timeout=DRAIN_TIMEOUT)
            self._stop_reading()
            self._stream.append(self._decoder.decode(b"", final=True))
            await self._stream.close(self._final_flush_attempts)
        finally:
            self._close_master()
            status = ExitStatus.from_returncode(returncode)
            log_event(
                logger,
                "session.exit",
                chat_id=self.context.chat_id,
                pid=self._proc.pid,
                code=status.code,
                signal=status.signal,
            )
            if not self._exit.done():
                self._exit.set_result(status)

    def _close_master(self) -> None:
        if self._master is None:
            return
        self._stop_reading()
        if self._writing:
            self._loop.remove_writer(self._master)
            self._writing = False
        with contextlib.suppress(OSError):
            os.close(self._master)
        self._master = None
        self._input = b""

    # Input

    def _write(self, data: bytes) -> None:
        if not data or not self.alive:
            return
        self._input += data
        if not self._writing:
            self._drain_input()

    def _drain_input(self) -> None:
        while self._input and self._master is not None:
            try:
                written = os.write(self._master, self._input)
            except BlockingIOError:
                if not self._writing:
                    self._loop.add_writer(self._master, self._drain_input)
                    self._writing = True
                return
            except OSError:
                self._input = b""
                break
            self._input = self._input[written:]
        if self._writing and self._master is not None:
            self._loop.remove_writer(self._master)
        self._writing = False

    def send_input(self, text: str, newline: bool = True) -> None:
        if not self.alive:
            return
        data, self._modifiers = keys.encode_text(self._modifiers, text, newline)
        self._write(data)

    def send_control(self, letter: str) -> None:
        """Send ``^letter``; raises ``ValueError`` for characters without one."""
        data, modifiers = keys.encode_control(self._modifiers, letter)
        if not self.alive:
            return
        self._modifiers = modifiers
        self._write(data)

    def send_key(self, name: str) -> None:
        """Send a named key such as ``up`` or ``f5``; raises ``ValueError``."""
        data, modifiers = keys.encode_key(self._modifiers, name)
        if not self.alive:
            return
        self._modifiers = modifiers
        self._write(data)

    def toggle_meta(self, explicit: bool | None = None) -> None:
        self._modifiers = keys.toggle_meta(self._modifiers, explicit)

    def toggle_keypad(self) -> bool:
        """Flip application keypad mode and return the new setting."""
        if not self.alive:
            return self._modifiers.keypad
        try:
            termios.tcgetattr(self._master)
        except termios.error as exc:
            raise UnsupportedMode(f"Terminal doesn't support keypad mode: {exc}") from exc
        self._modifiers = keys.toggle_keypad(self._modifiers)
        return self._modifiers.keypad

    def send_eof(self) -> None:
        self._write(keys.EOF_CHAR.encode())

    def redraw(self) -> None:
        self._write(keys.REDRAW_CHAR.encode())

    def send_signal(self, name: str, group: bool = False) -> signal.Signals:
        sig = normalize_signal(name)
        if not self.alive:
            return sig
        try:
            if group:
                os.killpg(self._proc.pid, sig)
            else:
                os.kill(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        log_event(logger, "session.signal", chat_id=self.context.chat_id, signal=sig.name, group=group)
        return sig

    def resize(self, size: PtySize) -> None:
        if not self.alive:
            return
        with contextlib.suppress(OSError):
            # The kernel sends SIGWINCH to the foreground process group.
            fcntl.ioctl(self._master, termios.TIOCSWINSZ, _winsize(size))

    def set_silent(self, silent: bool) -> None:
        self._stream.silent = silent

    def set_link_previews(self, enabled: bool) -> None:
        self._stream.link_previews = enabled

    async def terminate(self, grace: float = TERMINATE_GRACE) -> ExitStatus:
        """Hang up the session, escalating to SIGKILL after ``grace`` seconds."""
        if self.alive:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(self._proc.pid, signal.SIGHUP)
            try:
                return await asyncio.wait_for(self.wait(), timeout=grace)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(self._proc.pid, signal.SIGKILL)
        return await self.wait()
