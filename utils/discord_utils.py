"""Discord API utility helpers."""

import logging

import discord

logger = logging.getLogger(__name__)


async def get_or_fetch_text_channel(client: discord.Client, channel_id: int) -> discord.TextChannel | None:
    """Get a text channel from cache, falling back to API fetch.

    The channel cache may not be populated right after startup, so we fall
    back to an API call if the cache misses.
    """
    channel = client.get_channel(channel_id)
    if channel is None:
        try:
            channel = await client.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden):
            return None
        except discord.HTTPException:
            logger.warning(f"Failed to fetch channel {channel_id}")
            return None
    if not isinstance(channel, discord.TextChannel):
        return None
    return channel
