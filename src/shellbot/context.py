"""Per-chat state and the store that owns it.

Lifecycle: the :class:`ContextStore` starts empty when the bot starts, a
context is created on a chat's first authorized message and lives until the
bot exits or access for the chat is revoked (which is refused while a
session is running).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from shellbot.editor import Editor
    from shellbot.session import Session


@dataclass(frozen=True)
class PtySize:
    columns: int = 40
    rows: int = 20


@dataclass(frozen=True)
class ActiveSession:
    session: Session


@dataclass(frozen=True)
class ActiveEditor:
    editor: Editor


ActiveElement = ActiveSession | ActiveEditor | None


@dataclass
class ChatContext:
    chat_id: int
    shell: str
    env: dict[str, str]
    cwd: str
    size: PtySize = field(default_factory=PtySize)
    silent: bool = True
    interactive: bool = False
    link_previews: bool = False
    active: ActiveElement = None
    last_dir_message_id: int | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def session(self) -> Session | None:
        return self.active.session if isinstance(self.active, ActiveSession) else None

    @property
    def editor(self) -> Editor | None:
        return self.active.editor if isinstance(self.active, ActiveEditor) else None

    def attach_session(self, session: Session) -> None:
        if self.session is not None:
            raise RuntimeError(f"chat {self.chat_id} already has a running session")
        self.active = ActiveSession(session)

    def attach_editor(self, editor: Editor) -> None:
        if self.session is not None:
            raise RuntimeError(f"chat {self.chat_id} already has a running session")
        self.active = ActiveEditor(editor)

    def clear(self, element: Session | Editor) -> None:
        """Drop ``element`` if it is still the active one."""
        if self.session is element or self.editor is element:
            self.active = None


class ContextStore:
    def __init__(self, factory: Callable[[int], ChatContext]) -> None:
        self._factory = factory
        self._contexts: dict[int, ChatContext] = {}

    def get(self, chat_id: int) -> ChatContext | None:
        return self._contexts.get(chat_id)

    def get_or_create(self, chat_id: int) -> ChatContext:
        context = self._contexts.get(chat_id)
        if context is None:
            context = self._factory(chat_id)
            self._contexts[chat_id] = context
        return context

    def drop(self, chat_id: int) -> bool:
        """Forget a chat's context; refused while it runs a session."""
        context = self._contexts.get(chat_id)
        if context is not None and context.session is not None:
            return False
        self._contexts.pop(chat_id, None)
        return True

    def __iter__(self):
        return iter(list(self._contexts.values()))

    def __len__(self) -> int:
        return len(self._contexts)
