"""Chat command registry and handlers."""

from __future__ import annotations

import html
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from shellbot.context import ChatContext, PtySize
from shellbot.editor import resolve_path
from shellbot.errors import TransportRejected, UnknownSignal, UnsupportedMode
from shellbot.keys import KEY_NAMES
from shellbot.shells import available_shells, construct_filename, resolve_boolean, resolve_shell
from shellbot.telegram import IncomingMessage

if TYPE_CHECKING:
    from shellbot.bot import Bot

logger = logging.getLogger(__name__)

CommandHandler = Callable[["Bot", IncomingMessage, ChatContext], Awaitable[None]]

NO_COMMAND = "No command is running."
STILL_RUNNING = "A command is already running."


@dataclass
class CommandDef:
    description: str
    hint: str
    handler: CommandHandler
    needs_session: bool = False
    owner_only: bool = False


COMMANDS: dict[str, CommandDef] = {}


def register_command(
    *names: str,
    description: str,
    hint: str,
    needs_session: bool = False,
    owner_only: bool = False,
) -> Callable[[CommandHandler], CommandHandler]:
    """Decorator to register a handler under one or more command names."""

    def _decorator(func: CommandHandler) -> CommandHandler:
        entry = CommandDef(
            description=description,
            hint=hint,
            handler=func,
            needs_session=needs_session,
            owner_only=owner_only,
        )
        for name in names:
            COMMANDS[name] = entry
        return func

    return _decorator


async def handle_command(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    entry = COMMANDS.get(msg.command or "")
    if entry is None:
        await bot.reply(msg, "Unknown command.", reply_to=msg.message_id)
        return
    if entry.owner_only and not bot.access.is_owner(context.chat_id):
        return
    if entry.needs_session and context.session is None:
        await bot.reply(msg, NO_COMMAND)
        return
    await entry.handler(bot, msg, context)


def _first_arg(msg: IncomingMessage) -> str:
    parts = msg.args.split(maxsplit=1)
    return parts[0] if parts else ""


# Session lifecycle and input


@register_command("run", description="Run a command.", hint="/run <command>")
async def _handle_run(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if not msg.args:
        await bot.reply(msg, "Use /run &lt;command&gt; to run something.", html=True)
        return
    await bot.start_session(msg, context, msg.args)


@register_command("r", description="Run a command, or send input if one is running.", hint="/r <text>")
async def _handle_r(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if context.session is not None:
        await _handle_enter(bot, msg, context)
    else:
        await _handle_run(bot, msg, context)


@register_command("enter", description="Send a line of input.", hint="/enter <text>", needs_session=True)
async def _handle_enter(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    context.session.send_input(msg.args, newline=True)


@register_command("type", description="Type keys without pressing Enter.", hint="/type <keys>", needs_session=True)
async def _handle_type(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    context.session.send_input(msg.args or " ", newline=False)


@register_command("control", description="Send Ctrl+<letter>.", hint="/control <letter>", needs_session=True)
async def _handle_control(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    letter = _first_arg(msg)
    try:
        context.session.send_control(letter)
    except ValueError:
        await bot.reply(msg, "Use /control &lt;letter&gt; to send Control+letter to the process.", html=True)


@register_command("meta", description="Add Alt to the next key, or send one.", hint="/meta [key]", needs_session=True)
async def _handle_meta(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    session = context.session
    if not msg.args:
        session.toggle_meta()
        return
    session.toggle_meta(True)
    session.send_input(msg.args, newline=False)


@register_command("key", description="Send a special key (arrows, F-keys...).", hint="/key <name>", needs_session=True)
async def _handle_key(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    try:
        context.session.send_key(_first_arg(msg))
    except ValueError:
        await bot.reply(msg, "Use /key &lt;name&gt;. Known keys: " + ", ".join(KEY_NAMES), html=True)


@register_command("keypad", description="Toggle application keypad mode.", hint="/keypad", needs_session=True)
async def _handle_keypad(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    try:
        enabled = context.session.toggle_keypad()
    except UnsupportedMode:
        await bot.reply(msg, "Couldn't toggle keypad.")
        return
    await bot.reply(msg, f"Keypad mode {'enabled' if enabled else 'disabled'}.")


@register_command("end", description="Send EOF (Ctrl+D).", hint="/end", needs_session=True)
async def _handle_end(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    context.session.send_eof()


@register_command("redraw", description="Ask the program to repaint its screen.", hint="/redraw", needs_session=True)
async def _handle_redraw(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    context.session.redraw()


async def _send_signal(bot: Bot, msg: IncomingMessage, context: ChatContext, default: str, group: bool) -> None:
    name = _first_arg(msg) or default
    try:
        context.session.send_signal(name, group=group)
    except UnknownSignal:
        await bot.reply(msg, f"Unknown signal: {name}", reply_to=msg.message_id)
    except PermissionError:
        await bot.reply(msg, "Couldn't signal the process.", reply_to=msg.message_id)


@register_command("cancel", description="Send SIGINT to the process group.", hint="/cancel [signal]", needs_session=True)
async def _handle_cancel(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    await _send_signal(bot, msg, context, "SIGINT", group=True)


@register_command("kill", description="Send SIGTERM to the process.", hint="/kill [signal]", needs_session=True)
async def _handle_kill(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    await _send_signal(bot, msg, context, "SIGTERM", group=False)


# Files


@register_command("file", description="View and edit a text file.", hint="/file <path>")
async def _handle_file(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if not msg.args:
        await bot.reply(msg, "Use /file &lt;path&gt; to view or edit a text file.", html=True)
        return
    await bot.open_editor(msg, context, msg.args)


@register_command("upload", description="Send a file from the host.", hint="/upload <path>")
async def _handle_upload(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if not msg.args:
        await bot.reply(msg, "Use /upload &lt;path&gt; to receive a file from this host.", html=True)
        return
    path = resolve_path(context.cwd, msg.args)
    if not path.is_file():
        await bot.reply(msg, f"Couldn't open file: {path}")
        return
    try:
        message_id = await bot.transport.send_document(msg.chat_id, path, reply_to=msg.message_id)
    except (OSError, TransportRejected) as exc:
        await bot.reply(msg, f"Couldn't upload file: {exc}")
        return
    bot.uploads[message_id] = path


# Status and settings


@register_command("status", description="Show this chat's state and settings.", hint="/status")
async def _handle_status(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    lines: list[str] = []
    if context.editor is not None:
        lines.append(f"Editing file: {html.escape(str(context.editor.path))}")
    elif context.session is None:
        lines.append("No command running.")
    else:
        lines.append(f"Command running, PID {context.session.pid}.")
    lines.append("")
    lines.append(f"Shell: {html.escape(context.shell)}")
    lines.append(f"Size: {context.size.columns}x{context.size.rows}")
    lines.append(f"Directory: {html.escape(context.cwd)}")
    lines.append(f"Silent: {'yes' if context.silent else 'no'}")
    lines.append(f"Shell interactive: {'yes' if context.interactive else 'no'}")
    lines.append(f"Link previews: {'yes' if context.link_previews else 'no'}")
    uid, gid = os.getuid(), os.getgid()
    lines.append(f"UID/GID: {uid}/{gid}" if uid != gid else f"UID/GID: {uid}")

    if bot.access.is_owner(msg.chat_id):
        granted = bot.access.granted
        lines.append("")
        if granted:
            lines.append("Granted chats:")
            lines.extend(str(chat_id) for chat_id in granted)
        else:
            lines.append("No chats granted. Use /grant or /token to allow another chat to use the bot.")

    reply_to = context.session.initial_message_id if context.session is not None else None
    await bot.reply(msg, "\n".join(lines), html=True, reply_to=reply_to)


@register_command("shell", description="Show or change the shell.", hint="/shell [shell]")
async def _handle_shell(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    arg = _first_arg(msg)
    if arg:
        if await bot.refuse_while_running(msg, context, "Can't change the shell while a command is running."):
            return
        try:
            context.shell = resolve_shell(arg)
        except ValueError:
            await bot.reply(msg, "Couldn't change the shell.")
            return
        await bot.reply(msg, "Shell changed.")
        return

    others = [shell for shell in available_shells() if shell != context.shell]
    content = f"Current shell: {html.escape(context.shell)}"
    if others:
        content += "\n\nOther shells:\n" + "\n".join(html.escape(shell) for shell in others)
    await bot.reply(msg, content, html=True)


@register_command("cd", description="Show or change the working directory.", hint="/cd [dir]")
async def _handle_cd(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if msg.args:
        if await bot.refuse_while_running(msg, context, "Can't change directory while a command is running."):
            return
        target = resolve_path(context.cwd, msg.args)
        try:
            os.listdir(target)
        except OSError as exc:
            await bot.reply(msg, str(exc))
            return
        context.cwd = str(target)
    message_id = await bot.reply(msg, f"Now at: {context.cwd}")
    if message_id is not None:
        context.last_dir_message_id = message_id


@register_command("env", description="Show or change an environment variable.", hint="/env <name>[=value]")
async def _handle_env(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    key = msg.args
    if not key:
        await bot.reply(
            msg,
            "Use /env &lt;name&gt; to see the value of a variable, or /env &lt;name&gt;=&lt;value&gt; to change it.",
            html=True,
            reply_to=msg.message_id,
        )
        return

    idx = key.find("=")
    if idx == -1:
        idx = key.find(" ")
    if idx != -1:
        if await bot.refuse_while_running(msg, context, "Can't change the environment while a command is running."):
            return
        value = key[idx + 1 :]
        key = re.sub(r"\s+", " ", key[:idx].strip())
        if value:
            context.env[key] = value
        else:
            context.env.pop(key, None)

    if key in context.env:
        content = f"{key}={context.env[key]!r}"
    else:
        content = f"{key} unset"
    await bot.reply(msg, content, reply_to=msg.message_id)


_SIZE_RE = re.compile(r"(\d+)\s*(?:\sby\s|x|\s|,|;)\s*(\d+)", re.IGNORECASE)


def parse_size(text: str) -> PtySize | None:
    match = _SIZE_RE.search(text.strip())
    if not match:
        return None
    columns, rows = int(match.group(1)), int(match.group(2))
    if not columns or not rows:
        return None
    return PtySize(columns=columns, rows=rows)


@register_command("resize", description="Change the terminal size.", hint="/resize <cols> <rows>")
async def _handle_resize(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    size = parse_size(msg.args)
    if size is None:
        await bot.reply(msg, "Use /resize <columns> <rows> to change the terminal size.")
        return
    async with context.lock:
        context.size = size
        if context.session is not None:
            context.session.resize(size)
    await bot.reply(msg, "Terminal resized.", reply_to=msg.message_id)


@register_command("setsilent", description="Send output without notifications.", hint="/setsilent yes|no")
async def _handle_setsilent(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    value = resolve_boolean(msg.args)
    if value is None:
        await bot.reply(msg, "Use /setsilent [yes|no] to control whether new output is sent silently.")
        return
    context.silent = value
    if context.session is not None:
        context.session.set_silent(value)
    await bot.reply(msg, f"Output will {'' if value else 'not '}be sent silently.")


@register_command("setinteractive", description="Run commands in an interactive shell.", hint="/setinteractive yes|no")
async def _handle_setinteractive(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    value = resolve_boolean(msg.args)
    if value is None:
        await bot.reply(
            msg,
            "Use /setinteractive [yes|no] to control whether the shell runs interactively. "
            "Enabling it loads aliases from files like .bashrc, but may break some shells (fish, for example).",
        )
        return
    if await bot.refuse_while_running(msg, context, "Can't change this while a command is running."):
        return
    context.interactive = value
    await bot.reply(msg, f"Commands will {'' if value else 'not '}be started in interactive shells.")


@register_command("setlinkpreviews", description="Show previews for links in output.", hint="/setlinkpreviews yes|no")
async def _handle_setlinkpreviews(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    value = resolve_boolean(msg.args)
    if value is None:
        await bot.reply(msg, "Use /setlinkpreviews [yes|no] to control whether links in the output get previews.")
        return
    context.link_previews = value
    if context.session is not None:
        context.session.set_link_previews(value)
    await bot.reply(msg, f"Links in the output will {'' if value else 'not '}be expanded.")


# Access control


@register_command("grant", "revoke", description="Allow or deny another chat.", hint="/grant <id>", owner_only=True)
async def _handle_grant(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    arg = _first_arg(msg)
    try:
        chat_id = int(arg)
    except ValueError:
        await bot.reply(msg, "Use /grant &lt;id&gt; or /revoke &lt;id&gt; to control access.", html=True)
        return

    if msg.command == "grant":
        bot.access.grant(chat_id)
        await bot.reply(msg, f"Chat {chat_id} can now use this bot. Use /revoke to undo.", reply_to=msg.message_id)
        return

    if not bot.contexts.drop(chat_id):
        await bot.reply(msg, "Couldn't revoke the chat, a command is running there.", reply_to=msg.message_id)
        return
    bot.access.revoke(chat_id)
    await bot.reply(msg, f"Chat {chat_id} has been revoked.", reply_to=msg.message_id)


@register_command("token", description="Create a one-time access link.", hint="/token", owner_only=True)
async def _handle_token(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    token = bot.access.create_token()
    link = bot.start_link(token)
    await bot.reply(
        msg,
        f"One-time access token generated. The following link can be used to get access to the bot:\n{link}\n"
        "Or forward me the next message:",
    )
    await bot.reply(msg, f"/start {token}")


# Help


@register_command("start", description="Say hello.", hint="/start")
async def _handle_start(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    if msg.args and bot.access.is_owner(context.chat_id) and bot.access.discard_token(msg.args):
        await bot.reply(msg, "You were already authenticated; the token has been revoked.")
        return
    await bot.reply(
        msg,
        "Welcome! Use /run to execute commands, and reply to my messages to send input. /help for more info.",
    )


@register_command("help", description="Show this help.", hint="/help")
async def _handle_help(bot: Bot, msg: IncomingMessage, context: ChatContext) -> None:
    seen: set[int] = set()
    lines = [
        "Use /run &lt;command&gt; and I'll execute it for you. While it's running, reply to any of my "
        "messages to send input.",
        "",
    ]
    for entry in COMMANDS.values():
        if id(entry) in seen or (entry.owner_only and not bot.access.is_owner(msg.chat_id)):
            continue
        seen.add(id(entry))
        lines.append(f"{html.escape(entry.hint)} - {html.escape(entry.description)}")
    lines += [
        "",
        "Reply to an /upload'ed file with another document to overwrite it, or to the /cd message to "
        "store a document in the working directory. With /file, edit your replies to update the file.",
    ]
    await bot.reply(msg, "\n".join(lines), html=True)


def upload_target(bot: Bot, msg: IncomingMessage, context: ChatContext) -> Path | None:
    """Where a document sent as a reply should be stored, if anywhere."""

    if msg.reply_to_message_id in bot.uploads:
        return bot.uploads[msg.reply_to_message_id]
    if msg.reply_to_message_id is not None and msg.reply_to_message_id == context.last_dir_message_id:
        name = Path(msg.file_name).name if msg.file_name else construct_filename(msg.file_id or "", msg.mime_type)
        return Path(context.cwd) / name
    return None
