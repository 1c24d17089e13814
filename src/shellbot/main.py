import argparse
import asyncio
import logging
import sys
from pathlib import Path

from shellbot.bot import Bot
from shellbot.config import BotConfig, load_config
from shellbot.errors import ConfigError, TransportRejected
from shellbot.log_utils import build_log_config, configure_logging, register_secret
from shellbot.telegram import TelegramTransport
from shellbot.wizard import run_wizard

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run shell commands from a Telegram chat.")
    parser.add_argument("--config", type=Path, help="Path to config.json (default: user config directory)")
    parser.add_argument("--setup", action="store_true", help="Run the setup wizard, even if configured")
    return parser.parse_args(argv)


async def _resolve_config(args: argparse.Namespace) -> BotConfig:
    if args.setup:
        return await run_wizard(args.config)
    try:
        return load_config(args.config)
    except ConfigError as exc:
        if not sys.stdin.isatty():
            raise
        logger.info("No usable configuration (%s); starting setup", exc)
        return await run_wizard(args.config)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(build_log_config(log_file_name="shellbot.log"))

    try:
        config = await _resolve_config(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    register_secret(config.auth_token)

    transport = TelegramTransport(config.auth_token, api_url=config.api_url, timeout=config.http_timeout)
    bot = Bot(config, transport)
    try:
        await bot.run_polling()
    except TransportRejected as exc:
        logger.error("Couldn't start the bot: %s", exc)
        print(f"Couldn't start the bot: {exc}", file=sys.stderr)
        return 1
    finally:
        await bot.shutdown()
        await transport.aclose()
    return 0


def main_entry() -> int:
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main_entry())
