"""Who may talk to the bot.

The owner always may. Other chats get in through ``/grant`` or by redeeming a
one-time token created with ``/token``. State is in memory only and starts
empty (apart from the owner) on every run.
"""

from __future__ import annotations

import logging

from shellbot.log_utils import log_event
from shellbot.shells import generate_token

logger = logging.getLogger(__name__)


class AccessStore:
    def __init__(self, owner_id: int) -> None:
        self.owner_id = owner_id
        self._granted: set[int] = set()
        self._tokens: set[str] = set()

    @property
    def granted(self) -> list[int]:
        return sorted(self._granted)

    def is_owner(self, chat_id: int | None) -> bool:
        return chat_id is not None and chat_id == self.owner_id

    def is_allowed(self, chat_id: int | None) -> bool:
        return chat_id is not None and (chat_id == self.owner_id or chat_id in self._granted)

    def grant(self, chat_id: int) -> None:
        self._granted.add(chat_id)
        log_event(logger, "access.grant", chat_id=chat_id)

    def revoke(self, chat_id: int) -> None:
        self._granted.discard(chat_id)
        log_event(logger, "access.revoke", chat_id=chat_id)

    def create_token(self) -> str:
        token = generate_token()
        self._tokens.add(token)
        return token

    def discard_token(self, token: str) -> bool:
        if token not in self._tokens:
            return False
        self._tokens.discard(token)
        return True

    def redeem(self, token: str, chat_id: int) -> bool:
        """Grant ``chat_id`` access if ``token`` is valid; tokens work once."""
        if token not in self._tokens:
            return False
        self._tokens.discard(token)
        self.grant(chat_id)
        return True
