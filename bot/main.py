"""Main entry point for the Pacte bot."""

import asyncio
import logging
import sys
from pathlib import Path

import aiohttp
import discord
from discord.ext import commands

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from bot.services.event_bus import EventBus
from bot.services.game_observer import RiotGameObserver
from bot.services.housekeeping import Housekeeping
from bot.services.progress_engine import ProgressEngine
from bot.services.retry_policy import RetryPolicy
from config import Config
from db.database import Database
from db.match_ledger import MatchLedger
from db.pacte_store import PacteStore
from db.user_store import UserStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class PacteBot(commands.Bot):
    """Custom bot class with database, stores and the progress engine."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, using slash commands primarily
            intents=intents,
            help_command=None,
        )

        self.db: Database = None
        self.users: UserStore = None
        self.store: PacteStore = None
        self.ledger: MatchLedger = None
        self.events = EventBus()
        self.http_session: aiohttp.ClientSession = None
        self.observer: RiotGameObserver = None
        self.engine: ProgressEngine = None
        self.housekeeping: Housekeeping = None

    async def setup_hook(self):
        """Called when the bot is starting up."""
        # Initialize database
        self.db = Database(Config.DATABASE_PATH)
        await self.db.connect()
        logger.info(f"Connected to database: {Config.DATABASE_PATH}")

        self.users = UserStore(self.db)
        self.store = PacteStore(self.db, self.users)
        self.ledger = MatchLedger(self.db)

        # Riot API client
        self.http_session = aiohttp.ClientSession()
        self.observer = RiotGameObserver(session=self.http_session, retry_policy=RetryPolicy())

        self.engine = ProgressEngine(self.db, self.store, self.ledger, self.users, self.observer, self.events)
        self.housekeeping = Housekeeping(self.db, self.store, self.ledger, self.users, self.events)

        # Load cogs
        cogs = [
            "bot.commands.pacte",
            "bot.events.notifications",
        ]

        for cog in cogs:
            try:
                await self.load_extension(cog)
                logger.info(f"Loaded cog: {cog}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog}: {e}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced!")

    async def on_ready(self):
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        # Pacte state lives in the database, so restarting the loops resumes every pacte
        self.engine.start()
        self.housekeeping.start()

        activity = discord.Activity(
            type=discord.ActivityType.watching,
            name="/pacte create",
        )
        await self.change_presence(activity=activity)

    async def close(self):
        """Clean up resources."""
        if self.engine:
            await self.engine.stop()
        if self.housekeeping:
            await self.housekeeping.stop()
        if self.observer:
            await self.observer.close()
        if self.http_session and not self.http_session.closed:
            await self.http_session.close()
        if self.db:
            await self.db.close()
        await super().close()


async def main():
    """Main entry point."""
    if not Config.DISCORD_TOKEN:
        logger.error("DISCORD_TOKEN not set! Please set it in your .env file.")
        sys.exit(1)
    if not Config.RIOT_API_KEY:
        logger.error("RIOT_API_KEY not set! Please set it in your .env file.")
        sys.exit(1)

    bot = PacteBot()

    try:
        await bot.start(Config.DISCORD_TOKEN)
    except discord.LoginFailure:
        logger.error("Invalid Discord token! Please check your .env file.")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await bot.close()


if __name__ == "__main__":
    asyncio.run(main())
