from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from shellbot.bot import Bot
from shellbot.commands import COMMANDS, NO_COMMAND, STILL_RUNNING, parse_size
from shellbot.context import PtySize
from tests.utils import RecordingTransport, make_config, update, wait_for

OWNER = 1
BOT_ID = 999


@pytest_asyncio.fixture
async def harness(tmp_path: Path):
    transport = RecordingTransport()
    bot = Bot(make_config(owner=OWNER), transport, default_cwd=str(tmp_path))
    bot.bot_id = BOT_ID
    bot.username = "testbot"
    yield bot, transport
    await bot.shutdown()


def last_text(transport: RecordingTransport, chat_id: int = OWNER) -> str:
    return transport.texts(chat_id)[-1]


def joined(transport: RecordingTransport, chat_id: int = OWNER) -> str:
    return "\n".join(transport.texts(chat_id))


@pytest.mark.asyncio
async def test_unauthorized_chat_is_turned_away(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run id", chat_id=5))
    assert transport.messages == {}

    await bot.handle_update(update("/start", chat_id=5))
    assert last_text(transport, 5) == "Not authorized to use this bot."
    assert len(bot.contexts) == 0


@pytest.mark.asyncio
async def test_run_streams_output_and_reports_exit(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run echo hello", message_id=20))
    await wait_for(lambda: "Command exited successfully." in joined(transport))

    context = bot.contexts.get(OWNER)
    assert context is not None and context.session is None
    output = next(m for m in transport.messages.values() if "hello" in m.text)
    assert output.reply_to == 20
    exit_notice = next(m for m in transport.messages.values() if m.text == "Command exited successfully.")
    assert exit_notice.reply_to == output.message_id


@pytest.mark.asyncio
async def test_second_run_is_refused_while_running(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run sleep 30"))
    await bot.handle_update(update("/run echo nope", message_id=11))

    assert STILL_RUNNING in transport.texts()
    assert bot.contexts.get(OWNER).session is not None


@pytest.mark.asyncio
async def test_reply_sends_input_to_session(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update('/run read line; echo "got $line"'))
    await bot.handle_update(update("abc", message_id=12, reply_to=101))
    await wait_for(lambda: "Command exited" in joined(transport))

    assert "got abc" in joined(transport)


@pytest.mark.asyncio
async def test_r_runs_then_sends_input(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/r cat"))
    await bot.handle_update(update("/r ping", message_id=12))
    await wait_for(lambda: "ping" in joined(transport))
    await bot.handle_update(update("/end", message_id=13))
    await wait_for(lambda: "Command exited successfully." in joined(transport))


@pytest.mark.asyncio
async def test_session_commands_need_a_session(harness) -> None:
    bot, transport = harness

    for command in ("/cancel", "/enter x", "/control c", "/key up", "/end"):
        await bot.handle_update(update(command))
        assert last_text(transport) == NO_COMMAND

    await bot.handle_update(update("plain reply", reply_to=50))
    assert last_text(transport) == NO_COMMAND


@pytest.mark.asyncio
async def test_cancel_interrupts_command(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run sleep 30"))
    await bot.handle_update(update("/cancel", message_id=11))
    await wait_for(lambda: "Command" in joined(transport))

    assert bot.contexts.get(OWNER).session is None


@pytest.mark.asyncio
async def test_bad_control_and_signal_arguments(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run sleep 30"))
    await bot.handle_update(update("/control 5", message_id=11))
    assert "Control+letter" in last_text(transport)
    await bot.handle_update(update("/kill SIGNOPE", message_id=12))
    assert last_text(transport) == "Unknown signal: SIGNOPE"
    await bot.handle_update(update("/key hyper", message_id=13))
    assert "Known keys" in last_text(transport)


@pytest.mark.asyncio
async def test_new_run_after_exit_notice(harness) -> None:
    bot, transport = harness
    done = "Command exited successfully."

    await bot.handle_update(update("/run true", message_id=20))
    await wait_for(lambda: transport.texts(OWNER).count(done) == 1)
    assert bot.contexts.get(OWNER).session is None

    await bot.handle_update(update("/run echo again", message_id=21))
    await wait_for(lambda: transport.texts(OWNER).count(done) == 2)

    assert STILL_RUNNING not in transport.texts(OWNER)
    output = next(m for m in transport.messages.values() if "again" in m.text)
    assert output.reply_to == 21
    assert bot.contexts.get(OWNER).session is None


@pytest.mark.asyncio
async def test_file_edit_round_trip(harness, tmp_path: Path) -> None:
    bot, transport = harness
    target = tmp_path / "notes.txt"
    target.write_text("hello\n")

    await bot.handle_update(update("/file notes.txt"))
    editor = bot.contexts.get(OWNER).editor
    assert editor is not None
    assert transport.messages[editor.message_id].text == "hello"

    await bot.handle_update(update("hello world", message_id=editor.message_id, edited=True))
    assert target.read_text() == "hello world\n"

    await bot.handle_update(update("more", message_id=30, reply_to=editor.message_id))
    assert target.read_text() == "hello world\nmore\n"
    await bot.handle_update(update("less", message_id=30, edited=True))
    assert target.read_text() == "hello world\nless\n"


@pytest.mark.asyncio
async def test_file_conflict_is_reported(harness, tmp_path: Path) -> None:
    bot, transport = harness
    target = tmp_path / "notes.txt"
    target.write_text("one\n")

    await bot.handle_update(update("/file notes.txt"))
    editor = bot.contexts.get(OWNER).editor
    target.write_text("changed elsewhere\n")
    await bot.handle_update(update("two", message_id=editor.message_id, edited=True))

    assert target.read_text() == "two\n"
    notice = last_text(transport)
    assert notice.startswith("Warning:")
    assert "changed elsewhere" in notice


@pytest.mark.asyncio
async def test_long_conflict_diff_is_clipped_to_valid_html(harness, tmp_path: Path) -> None:
    bot, transport = harness
    target = tmp_path / "notes.txt"
    target.write_text("one\n")

    await bot.handle_update(update("/file notes.txt"))
    editor = bot.contexts.get(OWNER).editor
    target.write_text("".join(f"<tag> & line {i}\n" for i in range(400)))
    await bot.handle_update(update("two", message_id=editor.message_id, edited=True))

    assert target.read_text() == "two\n"
    notice = transport.messages[max(transport.messages)]
    assert notice.html
    assert notice.text.startswith("Warning:")
    assert len(notice.text) <= bot.config.message_size_limit
    assert notice.text.endswith("[...]</pre>")
    body = notice.text.split("<pre>", 1)[1]
    assert "<tag>" not in body
    assert body.count("&") == body.count("&lt;") + body.count("&gt;") + body.count("&amp;")


@pytest.mark.asyncio
async def test_file_open_errors_and_running_session(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/file missing.txt"))
    assert last_text(transport).startswith("Couldn't open file:")

    await bot.handle_update(update("/run sleep 30"))
    await bot.handle_update(update("/file missing.txt", message_id=11))
    assert last_text(transport) == STILL_RUNNING


@pytest.mark.asyncio
async def test_run_detaches_editor(harness, tmp_path: Path) -> None:
    bot, transport = harness
    (tmp_path / "notes.txt").write_text("x\n")

    await bot.handle_update(update("/file notes.txt"))
    editor = bot.contexts.get(OWNER).editor
    await bot.handle_update(update("/run sleep 30", message_id=11))

    assert editor.detached
    assert bot.contexts.get(OWNER).editor is None
    assert bot.contexts.get(OWNER).session is not None


@pytest.mark.asyncio
async def test_cd_and_document_download(harness, tmp_path: Path) -> None:
    bot, transport = harness
    (tmp_path / "sub").mkdir()
    transport.downloads["F1"] = b"data"

    await bot.handle_update(update("/cd sub"))
    context = bot.contexts.get(OWNER)
    assert context.cwd == str(tmp_path / "sub")
    assert last_text(transport) == f"Now at: {tmp_path / 'sub'}"

    doc = {"file_id": "F1", "file_name": "up.txt", "mime_type": "text/plain"}
    await bot.handle_update(update("", message_id=12, reply_to=context.last_dir_message_id, document=doc))

    assert (tmp_path / "sub" / "up.txt").read_bytes() == b"data"
    assert last_text(transport) == f"File written: {tmp_path / 'sub' / 'up.txt'}"

    await bot.handle_update(update("/cd nowhere", message_id=13))
    assert context.cwd == str(tmp_path / "sub")


@pytest.mark.asyncio
async def test_upload_then_overwrite_by_reply(harness, tmp_path: Path) -> None:
    bot, transport = harness
    target = tmp_path / "report.txt"
    target.write_text("v1")
    transport.downloads["F2"] = b"v2"

    await bot.handle_update(update("/upload report.txt"))
    assert transport.documents == [(OWNER, target)]
    upload_id = next(iter(bot.uploads))

    await bot.handle_update(update("", message_id=12, reply_to=upload_id, document={"file_id": "F2"}))
    assert target.read_bytes() == b"v2"


@pytest.mark.asyncio
async def test_settings_commands(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/resize 80x24"))
    await bot.handle_update(update("/setsilent no"))
    await bot.handle_update(update("/setinteractive yes"))
    await bot.handle_update(update("/setlinkpreviews yes"))
    await bot.handle_update(update("/env FOO=bar"))

    context = bot.contexts.get(OWNER)
    assert context.size == PtySize(80, 24)
    assert context.silent is False
    assert context.interactive is True
    assert context.link_previews is True
    assert context.env["FOO"] == "bar"
    assert last_text(transport) == "FOO='bar'"

    await bot.handle_update(update("/env FOO="))
    assert "FOO" not in context.env
    await bot.handle_update(update("/setsilent perhaps"))
    assert last_text(transport).startswith("Use /setsilent")


@pytest.mark.asyncio
async def test_settings_locked_while_running(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/run sleep 30"))
    await bot.handle_update(update("/cd /", message_id=11))
    assert last_text(transport) == "Can't change directory while a command is running."
    await bot.handle_update(update("/shell /bin/sh", message_id=12))
    assert last_text(transport) == "Can't change the shell while a command is running."


@pytest.mark.asyncio
async def test_status_and_help(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/status"))
    status = last_text(transport)
    assert "No command running." in status
    assert "Size: 40x20" in status
    assert "No chats granted." in status

    await bot.handle_update(update("/help"))
    assert "/token" in last_text(transport)


@pytest.mark.asyncio
async def test_token_grants_access_once(harness) -> None:
    bot, transport = harness

    await bot.handle_update(update("/token"))
    start_line = last_text(transport)
    token = start_line.split()[1]
    assert f"https://t.me/testbot?start={token}" in joined(transport)

    await bot.handle_update(update(start_line, chat_id=2, message_id=40))
    assert "can now use the bot" in last_text(transport, OWNER)
    assert last_text(transport, 2).startswith("Welcome!")
    assert bot.access.is_allowed(2)

    await bot.handle_update(update(start_line, chat_id=3, message_id=41))
    assert last_text(transport, 3) == "Not authorized to use this bot."


@pytest.mark.asyncio
async def test_owner_only_commands_ignored_for_others(harness) -> None:
    bot, transport = harness
    bot.access.grant(2)

    await bot.handle_update(update("/grant 5", chat_id=2))
    await bot.handle_update(update("/token", chat_id=2))
    assert transport.texts(2) == []
    assert not bot.access.is_allowed(5)

    await bot.handle_update(update("/revoke 2"))
    assert not bot.access.is_allowed(2)


@pytest.mark.asyncio
async def test_unknown_command(harness) -> None:
    bot, transport = harness
    await bot.handle_update(update("/frobnicate"))
    assert last_text(transport) == "Unknown command."


@pytest.mark.asyncio
async def test_handler_errors_are_logged(harness, caplog, monkeypatch) -> None:
    bot, _ = harness
    monkeypatch.setattr(COMMANDS["status"], "handler", AsyncMock(side_effect=RuntimeError("boom")))

    await bot.handle_update(update("/status"))

    assert "Failed to handle update" in caplog.text


@pytest.mark.asyncio
async def test_polling_skips_backlog(tmp_path: Path) -> None:
    transport = AsyncMock()
    transport.get_me.return_value = {"id": BOT_ID, "username": "testbot"}
    transport.get_updates.side_effect = [[{"update_id": 7}], RuntimeError("stop polling")]
    bot = Bot(make_config(owner=OWNER), transport, default_cwd=str(tmp_path))

    with pytest.raises(RuntimeError):
        await bot.run_polling()

    assert bot.username == "testbot"
    first, second = transport.get_updates.await_args_list
    assert first.kwargs == {"offset": -1, "timeout": 0}
    assert second.kwargs["offset"] == 8


def test_parse_size() -> None:
    assert parse_size("80x24") == PtySize(80, 24)
    assert parse_size("100 by 30") == PtySize(100, 30)
    assert parse_size("120, 40") == PtySize(120, 40)
    assert parse_size("0x10") is None
    assert parse_size("wide") is None
