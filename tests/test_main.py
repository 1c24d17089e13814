from __future__ import annotations

import io
import json
import logging
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from shellbot import main as main_module
from shellbot import wizard
from shellbot.errors import TransportRejected


@pytest.fixture(autouse=True)
def _log_to_tmp(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SHELLBOT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("SHELLBOT_AUTH_TOKEN", raising=False)
    monkeypatch.delenv("SHELLBOT_OWNER", raising=False)
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()


def test_parse_args() -> None:
    args = main_module.parse_args(["--config", "/tmp/x.json", "--setup"])
    assert args.config == Path("/tmp/x.json")
    assert args.setup is True
    assert main_module.parse_args([]).setup is False


@pytest.mark.asyncio
async def test_missing_config_without_terminal_fails(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(main_module.sys, "stdin", io.StringIO())

    code = await main_module.main(["--config", str(tmp_path / "config.json")])

    assert code == 2
    assert "Configuration error" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_main_runs_bot_and_shuts_down(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"auth_token": "1:x", "owner": 3}))
    run_polling = AsyncMock(side_effect=TransportRejected("getMe: Unauthorized"))
    shutdown = AsyncMock()
    monkeypatch.setattr(main_module.Bot, "run_polling", run_polling)
    monkeypatch.setattr(main_module.Bot, "shutdown", shutdown)

    code = await main_module.main(["--config", str(config_path)])

    assert code == 1
    run_polling.assert_awaited_once()
    shutdown.assert_awaited_once()


class _FakePrompt:
    def __init__(self, answers: list[str]) -> None:
        self._answers = iter(answers)

    async def prompt_async(self, message: str) -> str:
        return next(self._answers)


class _FakeTransport:
    instances: list[_FakeTransport] = []

    def __init__(self, token: str, **kwargs) -> None:
        self.token = token
        self.sent: list[tuple[int, str]] = []
        self.offsets: list[int | None] = []
        _FakeTransport.instances.append(self)

    async def get_me(self) -> dict:
        if self.token == "bad":
            raise TransportRejected("getMe: Unauthorized")
        return {"id": 50, "username": "hostbot"}

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict]:
        self.offsets.append(offset)
        chat_id = 7 if offset is None else 8
        return [{"update_id": 100 + chat_id, "message": {"chat": {"id": chat_id, "type": "private", "first_name": "Lin"}}}]

    async def send_message(self, chat_id: int, text: str, **kwargs) -> int:
        self.sent.append((chat_id, text))
        return 1

    async def aclose(self) -> None:
        return None


@pytest.mark.asyncio
async def test_wizard_saves_confirmed_owner(tmp_path: Path, monkeypatch) -> None:
    _FakeTransport.instances = []
    monkeypatch.setattr(wizard, "TelegramTransport", _FakeTransport)
    monkeypatch.setattr(wizard, "PromptSession", lambda: _FakePrompt(["bad", "1:good", "n", "y"]))
    path = tmp_path / "config.json"

    config = await wizard.run_wizard(path)

    assert (config.auth_token, config.owner) == ("1:good", 8)
    assert json.loads(path.read_text()) == {"auth_token": "1:good", "owner": 8}
    poller = _FakeTransport.instances[-1]
    assert poller.offsets == [None, 107]
    assert poller.sent and poller.sent[0][0] == 8
