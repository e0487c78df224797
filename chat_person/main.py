"""
chat-person - a persona that hangs out in group chats
Main Entry Point

This module builds every component from settings and runs until stopped.
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env BEFORE any other imports that read os.environ or settings
load_dotenv(dotenv_path=Path(".") / ".env", override=True)

import structlog

from chat_person.channels.base import BaseChannel
from chat_person.core.events import get_event_bus
from chat_person.core.llm_client import OpenAIClient
from chat_person.core.orchestrator import Orchestrator
from chat_person.integrations.abbreviation import AbbreviationLookup
from chat_person.memory.history import HistoryStore
from chat_person.utils.config import get_settings, reload_settings
from chat_person.utils.logging import get_audit_logger, setup_logging

logger = structlog.get_logger()


class ChatPersonApplication:
    """Owns the component graph and its lifecycle."""

    def __init__(self):
        self.settings = get_settings()
        self.shutdown_event = asyncio.Event()

        self.store: Optional[HistoryStore] = None
        self.llm_client: Optional[OpenAIClient] = None
        self.abbreviations: Optional[AbbreviationLookup] = None
        self.orchestrator: Optional[Orchestrator] = None
        self.channels: list[BaseChannel] = []

    async def initialize(self) -> None:
        """Initialize all components."""
        logger.info("Initializing chat-person...", persona=self.settings.persona.name)
        self.settings.ensure_directories()

        self.store = HistoryStore()
        await self.store.initialize()

        self.llm_client = OpenAIClient()
        if not self.llm_client.api_key:
            logger.warning("OPENAI_API_KEY is not set; model calls will fail")

        if self.settings.abbreviation.enabled:
            self.abbreviations = AbbreviationLookup()

        self.orchestrator = Orchestrator(
            store=self.store,
            llm_client=self.llm_client,
            abbreviations=self.abbreviations,
            settings=self.settings,
            event_bus=get_event_bus(),
            audit_logger=get_audit_logger(),
        )
        await self.orchestrator.initialize()

        self._initialize_channels()
        if not self.channels:
            raise RuntimeError("No channels enabled; enable channels.slack or channels.discord")

        for channel in self.channels:
            self.orchestrator.register_channel(channel)
            logger.info("Channel wired to orchestrator", channel=channel.name)

    def _initialize_channels(self) -> None:
        """Create messaging channels based on configuration."""
        channels_config = self.settings.channels

        # Slack channel
        if channels_config.slack.enabled:
            bot_token = self.settings.slack_bot_token or channels_config.slack.bot_token
            app_token = self.settings.slack_app_token or channels_config.slack.app_token
            if not bot_token:
                logger.error("Slack enabled but SLACK_BOT_TOKEN is not set in .env")
            elif not app_token:
                logger.error("Slack enabled but SLACK_APP_TOKEN is not set in .env")
            else:
                from chat_person.channels.slack import SlackChannel

                self.channels.append(SlackChannel())
                logger.info("Slack channel created")

        # Discord channel
        if channels_config.discord.enabled:
            token = self.settings.discord_token or channels_config.discord.token
            if not token:
                logger.error("Discord enabled but DISCORD_TOKEN is not set in .env")
            else:
                from chat_person.channels.discord_bot import DiscordChannel

                self.channels.append(DiscordChannel())
                logger.info("Discord channel created")

    async def start(self) -> None:
        """Start channels and block until shutdown is requested."""
        await self.orchestrator.start()
        logger.info("chat-person is running", channels=[c.name for c in self.channels])
        await self.shutdown_event.wait()

    async def shutdown(self) -> None:
        """Trigger graceful shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up resources...")
        if self.orchestrator is not None:
            await self.orchestrator.stop()
        elif self.store is not None:
            await self.store.close()


async def main(log_level: str | None = None):
    """Main entry point."""
    setup_logging(level=log_level)

    app = ChatPersonApplication()

    loop = asyncio.get_running_loop()

    def signal_handler():
        asyncio.create_task(app.shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.initialize()
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        await app.cleanup()


def run():
    """Synchronous entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        prog="chat-person",
        description="chat-person - a persona that hangs out in group chats",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=None,
        help="Settings YAML file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level from settings",
    )
    args = parser.parse_args()

    if args.config:
        if not Path(args.config).exists():
            print(f"Config file not found: {args.config}")
            sys.exit(1)
        os.environ["CHAT_PERSON_CONFIG"] = args.config
        reload_settings()

    asyncio.run(main(log_level=args.log_level))


if __name__ == "__main__":
    run()
