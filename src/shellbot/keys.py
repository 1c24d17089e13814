"""Translate chat input into the bytes a PTY expects.

Everything here is pure: given the current :class:`ModifierState` and one
input unit, return the bytes to write and the next state. The session bridge
owns the state; tests can drive these functions without any process.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

ESC = "\x1b"
LINE_TERMINATOR = "\r"
EOF_CHAR = "\x04"
REDRAW_CHAR = "\x0c"

# Cursor keys: final byte after ESC [ (normal) or ESC O (application keypad).
_CURSOR_KEYS = {
    "up": "A",
    "down": "B",
    "right": "C",
    "left": "D",
    "home": "H",
    "end": "F",
}

_EDITING_KEYS = {
    "ins": ESC + "[2~",
    "del": ESC + "[3~",
    "pgup": ESC + "[5~",
    "pgdn": ESC + "[6~",
    "f1": ESC + "OP",
    "f2": ESC + "OQ",
    "f3": ESC + "OR",
    "f4": ESC + "OS",
    "f5": ESC + "[15~",
    "f6": ESC + "[17~",
    "f7": ESC + "[18~",
    "f8": ESC + "[19~",
    "f9": ESC + "[20~",
    "f10": ESC + "[21~",
    "f11": ESC + "[23~",
    "f12": ESC + "[24~",
    "tab": "\t",
    "esc": ESC,
    "enter": LINE_TERMINATOR,
    "backspace": "\x7f",
    "space": " ",
}

_KEY_ALIASES = {
    "insert": "ins",
    "delete": "del",
    "pageup": "pgup",
    "pagedown": "pgdn",
    "escape": "esc",
    "return": "enter",
    "bs": "backspace",
}

KEY_NAMES = sorted({*_CURSOR_KEYS, *_EDITING_KEYS})


@dataclass(frozen=True)
class ModifierState:
    meta_pending: bool = False
    keypad: bool = False


def toggle_meta(state: ModifierState, explicit: bool | None = None) -> ModifierState:
    pending = (not state.meta_pending) if explicit is None else explicit
    return replace(state, meta_pending=pending)


def toggle_keypad(state: ModifierState) -> ModifierState:
    return replace(state, keypad=not state.keypad)


def _emit(state: ModifierState, unit: str) -> tuple[bytes, ModifierState]:
    if state.meta_pending:
        unit = ESC + unit
        state = replace(state, meta_pending=False)
    return unit.encode("utf-8"), state


def encode_text(state: ModifierState, text: str, newline: bool = True) -> tuple[bytes, ModifierState]:
    """Encode a line (or a run of keystrokes) typed by the operator."""

    unit = text.replace("\r\n", "\n").replace("\n", LINE_TERMINATOR)
    if newline:
        unit += LINE_TERMINATOR
    if not unit:
        return b"", state
    return _emit(state, unit)


def control_char(letter: str) -> str:
    """Map ``c`` to ``^C`` (0x03) and friends.

    Accepts a single letter or one of ``@[\\]^_?``; raises ``ValueError``
    otherwise.
    """

    if len(letter) != 1:
        raise ValueError(f"expected a single character, got {letter!r}")
    upper = letter.upper()
    if upper == "?":
        return "\x7f"
    code = ord(upper) - 0x40
    if not 0 <= code < 0x20 or not (upper.isalpha() or upper in "@[\\]^_"):
        raise ValueError(f"no control character for {letter!r}")
    return chr(code)


def encode_control(state: ModifierState, letter: str) -> tuple[bytes, ModifierState]:
    return _emit(state, control_char(letter))


def key_sequence(name: str, keypad: bool = False) -> str:
    key = name.strip().lower()
    key = _KEY_ALIASES.get(key, key)
    if key in _CURSOR_KEYS:
        return ESC + ("O" if keypad else "[") + _CURSOR_KEYS[key]
    if key in _EDITING_KEYS:
        return _EDITING_KEYS[key]
    raise ValueError(f"unknown key: {name}")


def encode_key(state: ModifierState, name: str) -> tuple[bytes, ModifierState]:
    return _emit(state, key_sequence(name, state.keypad))
