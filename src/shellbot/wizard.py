"""Interactive first-run setup: ask for the bot token and find the owner."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from prompt_toolkit import PromptSession  # type: ignore
from rich.console import Console

from shellbot.config import BotConfig, save_config
from shellbot.errors import ConfigError, TransportRejected
from shellbot.log_utils import register_secret
from shellbot.telegram import TelegramTransport

logger = logging.getLogger(__name__)

_console = Console(highlight=False)


async def _ask_token(session: PromptSession) -> tuple[str, dict]:
    while True:
        token = (await session.prompt_async("Bot token: ")).strip()
        if not token:
            continue
        transport = TelegramTransport(token)
        try:
            me = await transport.get_me()
        except TransportRejected as exc:
            _console.print(f"[red]That token didn't work:[/red] {exc}")
            continue
        finally:
            await transport.aclose()
        return token, me


async def _wait_for_owner(transport: TelegramTransport, offset: int | None) -> tuple[int, int, str, str]:
    """Return the next update offset and the id, kind and name of the first chat to write."""
    while True:
        try:
            updates = await transport.get_updates(offset=offset, timeout=30)
        except TransportRejected as exc:
            logger.warning("Polling during setup failed: %s", exc)
            await asyncio.sleep(exc.retry_after or 5)
            continue
        for update in updates:
            offset = int(update["update_id"]) + 1
            message = update.get("message") or {}
            chat = message.get("chat") or {}
            if "id" not in chat:
                continue
            if chat.get("type") == "private":
                kind = "user"
                name = " ".join(part for part in (chat.get("first_name"), chat.get("last_name")) if part)
            else:
                kind = chat.get("type", "chat")
                name = chat.get("title") or ""
            return offset, int(chat["id"]), kind, name or str(chat["id"])


async def run_wizard(path: Path | None = None) -> BotConfig:
    """Walk the user through creating ``config.json`` and return the result."""

    session: PromptSession = PromptSession()
    _console.print("[bold]Welcome![/bold] Let's set up your bot.")
    _console.print("Create a bot with @BotFather on Telegram and paste its token here.")

    try:
        token, me = await _ask_token(session)
        register_secret(token)
        username = me.get("username") or "your bot"
        _console.print(f"Now open [cyan]https://t.me/{username}[/cyan] and send any message to become its owner.")

        transport = TelegramTransport(token)
        try:
            offset: int | None = None
            while True:
                offset, owner, kind, name = await _wait_for_owner(transport, offset)
                answer = (await session.prompt_async(f"Are you {kind} «{name}» ({owner})? [y/n] ")).strip()
                if answer.lower() in ("y", "yes"):
                    break
            try:
                await transport.send_message(owner, "You are now the owner of this bot. Use /help to get started.")
            except TransportRejected as exc:
                logger.warning("Couldn't greet the owner: %s", exc)
        finally:
            await transport.aclose()
    except (EOFError, KeyboardInterrupt) as exc:
        raise ConfigError("Setup aborted.") from exc

    config = BotConfig(auth_token=token, owner=owner)
    saved = save_config(config, path)
    _console.print(f"[green]Configuration saved to {saved}.[/green]")
    return config
