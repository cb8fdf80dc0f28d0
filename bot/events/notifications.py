"""Posts progress engine events into the pacte's channel."""

import asyncio
import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from models import PacteEvent
from utils.discord_utils import get_or_fetch_text_channel
from utils.formatting import format_event

if TYPE_CHECKING:
    from bot.main import PacteBot

logger = logging.getLogger(__name__)


class Notifications(commands.Cog):
    """Cog subscribing to the event bus.

    Messages are sent from background tasks so the poll cycle never waits
    on Discord.
    """

    def __init__(self, bot: "PacteBot"):
        self.bot = bot
        self._deliveries: set[asyncio.Task] = set()

    async def cog_load(self):
        self.bot.events.subscribe(self.on_pacte_event)

    async def cog_unload(self):
        self.bot.events.unsubscribe(self.on_pacte_event)
        await self.flush()

    async def on_pacte_event(self, event: PacteEvent):
        task = asyncio.create_task(self.deliver(event))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def flush(self):
        """Wait for every pending delivery to finish."""
        if self._deliveries:
            await asyncio.gather(*self._deliveries)

    async def deliver(self, event: PacteEvent):
        if not event.channel_id:
            logger.debug(f"No channel for pacte #{event.pacte_id}, dropping {type(event).__name__}")
            return

        try:
            channel = await get_or_fetch_text_channel(self.bot, int(event.channel_id))
            if channel is None:
                logger.warning(f"Channel {event.channel_id} not found for pacte #{event.pacte_id}")
                return

            await channel.send(format_event(event))
        except discord.Forbidden:
            logger.warning(f"Can't send messages in channel {event.channel_id} for pacte #{event.pacte_id}")
        except Exception:
            logger.exception(f"Failed to post {type(event).__name__} for pacte #{event.pacte_id}")


async def setup(bot: "PacteBot"):
    """Load the cog."""
    await bot.add_cog(Notifications(bot))
