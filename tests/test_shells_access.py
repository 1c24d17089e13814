from __future__ import annotations

from pathlib import Path

import pytest

from shellbot.auth import AccessStore
from shellbot.context import ChatContext, ContextStore
from shellbot.shells import available_shells, construct_filename, resolve_boolean, resolve_shell, sanitized_env


def test_available_shells_prefers_user_shell(tmp_path: Path, monkeypatch) -> None:
    shells_file = tmp_path / "shells"
    shells_file.write_text("# comment\n/bin/sh\n/bin/sh\n/nonexistent/zsh\n")
    monkeypatch.setenv("SHELL", "/bin/sh")

    assert available_shells(shells_file) == ["/bin/sh"]
    assert available_shells(tmp_path / "missing") == ["/bin/sh"]


def test_resolve_shell_by_name_or_path() -> None:
    assert resolve_shell("/bin/sh", ["/bin/sh"]) == "/bin/sh"
    assert resolve_shell("sh", ["/bin/sh"]) == "/bin/sh"
    with pytest.raises(ValueError):
        resolve_shell("no-such-shell-here", [])
    with pytest.raises(ValueError):
        resolve_shell("  ", [])


def test_sanitized_env_drops_bot_variables() -> None:
    env = sanitized_env({"PATH": "/bin", "SHELLBOT_AUTH_TOKEN": "secret", "TMUX": "x", "TERM": "screen"})
    assert env == {"PATH": "/bin", "TERM": "xterm-256color"}


@pytest.mark.parametrize(
    ("word", "expected"),
    [("yes", True), ("ON", True), ("1", True), ("no", False), ("off", False), ("maybe", None), (None, None)],
)
def test_resolve_boolean(word, expected) -> None:
    assert resolve_boolean(word) is expected


def test_construct_filename_uses_mime_extension() -> None:
    assert construct_filename("AAAA-file-id-123456789", "application/pdf") == "file_id-123456789.pdf"
    assert construct_filename("short").startswith("file_short")


def test_access_tokens_are_single_use() -> None:
    store = AccessStore(owner_id=1)
    assert store.is_allowed(1) and store.is_owner(1)
    assert not store.is_allowed(2)

    token = store.create_token()
    assert store.redeem(token, 2)
    assert store.is_allowed(2)
    assert not store.redeem(token, 3)
    assert store.granted == [2]

    store.revoke(2)
    assert not store.is_allowed(2)
    assert not store.is_allowed(None)


def test_discard_token() -> None:
    store = AccessStore(owner_id=1)
    token = store.create_token()
    assert store.discard_token(token)
    assert not store.discard_token(token)
    assert not store.redeem(token, 5)


def _context(chat_id: int) -> ChatContext:
    return ChatContext(chat_id=chat_id, shell="/bin/sh", env={}, cwd="/")


def test_context_store_creates_once_and_drops() -> None:
    store = ContextStore(_context)
    first = store.get_or_create(4)
    assert store.get_or_create(4) is first
    assert len(store) == 1
    assert store.drop(4)
    assert store.get(4) is None
    assert store.drop(4)


def test_active_element_is_exclusive() -> None:
    context = _context(1)
    session, editor = object(), object()

    context.attach_editor(editor)  # type: ignore[arg-type]
    assert context.editor is editor and context.session is None

    context.attach_session(session)  # type: ignore[arg-type]
    assert context.session is session and context.editor is None
    with pytest.raises(RuntimeError):
        context.attach_editor(editor)  # type: ignore[arg-type]

    store = ContextStore(lambda chat_id: context)
    store.get_or_create(1)
    assert not store.drop(1)

    context.clear(editor)  # type: ignore[arg-type]
    assert context.session is session
    context.clear(session)  # type: ignore[arg-type]
    assert context.active is None
