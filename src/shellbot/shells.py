"""Host-side helpers for per-chat settings: shells, environment, flags."""

from __future__ import annotations

import mimetypes
import os
import secrets
import shutil
from pathlib import Path

SHELLS_FILE = Path("/etc/shells")
FALLBACK_SHELLS = ["/bin/sh"]

# Variables that only make sense for the bot process itself.
_BOT_ENV_PREFIXES = ("SHELLBOT_",)
_BOT_ENV_KEYS = {"TMUX", "TMUX_PANE", "STY", "WINDOW", "TERMCAP", "COLUMNS", "LINES"}

_TRUE_WORDS = {"yes", "y", "true", "t", "on", "1", "enable", "enabled"}
_FALSE_WORDS = {"no", "n", "false", "f", "off", "0", "disable", "disabled"}


def available_shells(shells_file: Path = SHELLS_FILE) -> list[str]:
    """Return installed login shells, user's ``$SHELL`` first."""

    shells: list[str] = []
    try:
        lines = shells_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        lines = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if os.access(line, os.X_OK) and line not in shells:
            shells.append(line)

    preferred = os.environ.get("SHELL")
    if preferred and preferred in shells:
        shells.remove(preferred)
        shells.insert(0, preferred)
    return shells or list(FALLBACK_SHELLS)


def resolve_shell(name: str, shells: list[str] | None = None) -> str:
    """Resolve ``name`` (path or bare name such as ``zsh``) to an executable.

    Raises ``ValueError`` when nothing executable matches.
    """

    name = name.strip()
    if not name:
        raise ValueError("empty shell name")
    shells = shells if shells is not None else available_shells()
    if name in shells:
        return name
    for shell in shells:
        if Path(shell).name == name:
            return shell
    found = shutil.which(name)
    if found and os.access(found, os.X_OK):
        return found
    raise ValueError(f"shell not found: {name}")


def sanitized_env(base: dict[str, str] | None = None) -> dict[str, str]:
    """Copy of the bot's environment suitable for child processes."""

    source = dict(os.environ if base is None else base)
    env = {
        key: value
        for key, value in source.items()
        if key not in _BOT_ENV_KEYS and not key.startswith(_BOT_ENV_PREFIXES)
    }
    env["TERM"] = "xterm-256color"
    return env


def resolve_boolean(value: str | None) -> bool | None:
    """Parse a yes/no style argument; ``None`` when it isn't one."""

    if value is None:
        return None
    word = value.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None


def generate_token() -> str:
    return secrets.token_urlsafe(12)


def construct_filename(file_id: str, mime_type: str | None = None) -> str:
    """Name for a received document that arrived without a file name."""

    extension = mimetypes.guess_extension(mime_type or "") or ""
    return f"file_{file_id[-12:]}{extension}"
