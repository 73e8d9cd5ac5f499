import discord
from discord.ext import commands
import asyncio
import os
import sys
from pathlib import Path
from dotenv import load_dotenv
import signal
import argparse

from discord_drive.api import create_app, start_server
from discord_drive.config import LOG_LEVELS, load_config
from discord_drive.context import DriveContext
from discord_drive.download import DownloadEngine
from discord_drive.errors import RemoteError
from discord_drive.folders import FolderTree
from discord_drive.log import logger, set_level, setup_logging
from discord_drive.registry import PartRegistry
from discord_drive.senders import DiscordSender, TelegramSender
from discord_drive.sessions import UploadSessionManager

EXIT_OK = 0
EXIT_PRIMARY_UNREACHABLE = 1
EXIT_MISSING_CREDENTIALS = 2
EXIT_PORT_UNAVAILABLE = 3

BASE_DIR = Path(__file__).resolve().parent

bot = None


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Discord Drive: chat channels as file storage")
    parser.add_argument("--loglevel", type=str, choices=list(LOG_LEVELS), help="Set the logging level")
    parser.add_argument("--config-dir", type=str, default=None,
                        help="Directory holding config.json and .env (default: current directory)")
    return parser.parse_args(argv)


async def load_cogs(bot, directory="cogs"):
    tasks = []
    for filename in sorted(os.listdir(BASE_DIR / directory)):
        if filename.endswith(".py") and not filename.startswith("_"):
            ext = f"{directory}.{filename[:-3]}"
            task = asyncio.create_task(bot.load_extension(ext))
            task.ext = ext
            tasks.append(task)
            logger.info(f"Prepared to load {ext}")

    for task in tasks:
        try:
            await task
            logger.info(f"Successfully loaded {task.ext}")
        except Exception as e:
            logger.error(f"Failed to load {task.ext}", exc_info=e)


class DriveBot(commands.Bot):
    def __init__(self, config):
        intents = discord.Intents.default()
        prefix = os.getenv("PREFIX", ".").split(" ")
        super().__init__(command_prefix=prefix, intents=intents)
        self.logger = logger
        self.config = config
        self.drive = None
        self.folders = None
        self.downloads = None
        self.sessions = None
        self.runner = None
        self.gc_task = None
        self.exit_code = EXIT_OK

    async def setup_hook(self):
        cfg = self.config
        registry = PartRegistry(cfg.data_dir, cfg.history_file, cfg.folders_file, cfg.sessions_file, cfg.meta_file)
        await registry.load()

        primary = DiscordSender(self, int(cfg.primary.target), cfg.discord_category)
        backup = None
        if cfg.backup is not None:
            backup = TelegramSender(cfg.backup.token, cfg.backup.target, timeout=cfg.http_timeout)
        self.drive = DriveContext.build(cfg, registry, primary, backup)

        for sender in self.drive.senders.values():
            try:
                await sender.health_check()
                logger.info(f"{sender.platform} reachable")
            except RemoteError as e:
                logger.warning(f"{sender.platform} health check failed, continuing in degraded mode: {e}")

        self.folders = FolderTree(self.drive)
        self.downloads = DownloadEngine(self.drive)
        self.sessions = UploadSessionManager(self.drive, self.folders, self.downloads)
        restored = await self.sessions.recover()
        if restored:
            logger.info(f"Recovered {restored} resumable upload(s)")

        await load_cogs(self)

        app = create_app(self.drive, self.sessions, self.downloads, self.folders)
        try:
            self.runner = await start_server(app, cfg.host, cfg.port)
        except OSError as e:
            logger.critical(f"Could not bind the transfer API to {cfg.host}:{cfg.port}: {e}")
            self.exit_code = EXIT_PORT_UNAVAILABLE
            raise
        self.gc_task = asyncio.create_task(self.sessions.run_gc())
        logger.info(f"Drive ready: {cfg.summary()}")

    async def on_ready(self):
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info("------")

    async def close(self):
        if self.gc_task is not None:
            self.gc_task.cancel()
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
        if self.sessions is not None:
            await self.sessions.close()
        if self.drive is not None:
            await self.drive.close()
        await super().close()


async def shutdown_bot():
    if bot:
        logger.info("Unloading all cogs")
        try:
            await asyncio.gather(*(bot.unload_extension(ext) for ext in list(bot.extensions)))
        except Exception as e:
            logger.error("Error unloading cogs during shutdown", exc_info=e)

        logger.info("Closing bot connection...")
        await bot.close()


def handle_exit(sig, frame):
    logger.info(f"Received signal {sig}, shutting down gracefully...")
    loop = asyncio.get_event_loop()
    loop.create_task(shutdown_bot())


async def main(args) -> int:
    global bot
    base_dir = Path(args.config_dir) if args.config_dir else Path.cwd()
    load_dotenv(base_dir / ".env")
    setup_logging(args.loglevel or os.getenv("LOG_LEVEL") or "INFO")
    config = load_config(base_dir)
    set_level(args.loglevel or config.log_level)

    if config.primary is None:
        logger.critical("DISCORD_TOKEN (or TOKEN) and GUILD_ID must be set in the environment or .env file")
        return EXIT_MISSING_CREDENTIALS

    bot = DriveBot(config)
    async with bot:
        max_retries = 5
        retry_count = 0
        backoff_time = 5

        while retry_count < max_retries:
            try:
                await bot.start(config.primary.token)
                break
            except discord.LoginFailure as e:
                logger.critical(f"Discord rejected the bot token: {e}")
                return EXIT_PRIMARY_UNREACHABLE
            except discord.errors.ConnectionClosed as e:
                retry_count += 1
                logger.error(f"Connection closed. Retrying ({retry_count}/{max_retries}) in {backoff_time}s: {e}")
                if retry_count < max_retries:
                    await asyncio.sleep(backoff_time)
                    backoff_time *= 2
                else:
                    logger.critical("Maximum retries reached. Shutting down.")
                    return EXIT_PRIMARY_UNREACHABLE
            except discord.errors.HTTPException as e:
                if getattr(e, "retry_after", None):
                    logger.warning(f"Rate limited. Retrying in {e.retry_after}s")
                    await asyncio.sleep(e.retry_after)
                else:
                    logger.error(f"HTTP Error: {e}")
                    return EXIT_PRIMARY_UNREACHABLE
            except OSError as e:
                if bot.exit_code == EXIT_PORT_UNAVAILABLE:
                    return EXIT_PORT_UNAVAILABLE
                logger.critical(f"Discord is unreachable: {e}")
                return EXIT_PRIMARY_UNREACHABLE
    return bot.exit_code


def cli():
    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)
    sys.exit(asyncio.run(main(parse_args())))


if __name__ == "__main__":
    cli()
