"""Exception taxonomy shared by the bridge, the editor and the transport."""

from __future__ import annotations

_MESSAGE_GONE = ("message to edit not found", "message can't be edited")


class ShellBotError(Exception):
    """Base class for errors that are reported back to the chat."""


class ConfigError(ShellBotError):
    """Configuration file is missing or invalid."""


class SpawnError(ShellBotError):
    """The child process or its PTY could not be created."""


class UnknownSignal(ShellBotError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown signal: {name}")
        self.name = name


class UnsupportedMode(ShellBotError):
    """The PTY does not support the requested input mode."""


class OpenError(ShellBotError):
    """A file could not be opened in the editor."""


class ViewOverflow(ShellBotError):
    """The edited file would no longer fit in a single view message."""


class EditConflict(ShellBotError):
    """The file changed on disk since it was last shown in the chat.

    Raised after the chat version has been written; ``overwritten`` holds the
    unified diff of the external changes that were replaced.
    """

    def __init__(self, path: str, overwritten: str) -> None:
        super().__init__(f"{path} was modified on disk; the chat version replaced those changes")
        self.path = path
        self.overwritten = overwritten


class TransportRejected(ShellBotError):
    """The chat transport refused or failed a request.

    Most rejections are temporary and safe to retry. ``error_code`` is the Bot
    API (HTTP) status when the server answered at all.
    """

    def __init__(self, description: str, *, retry_after: float | None = None, error_code: int | None = None) -> None:
        super().__init__(description)
        self.description = description
        self.retry_after = retry_after
        self.error_code = error_code

    @property
    def message_gone(self) -> bool:
        """True when the target message was deleted or can no longer be edited."""
        return self.error_code == 400 and any(reason in self.description for reason in _MESSAGE_GONE)
