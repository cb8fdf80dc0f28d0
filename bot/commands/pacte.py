"""Slash commands for pactes, registration and rankings."""

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from bot.services.points_calculator import kick_malus, leave_malus
from config import Config
from db.database import utcnow
from errors import PacteError, RiotApiError, RiotNotFound
from utils.formatting import (
    KICK_REASON_LABELS,
    format_history,
    format_kick_history,
    format_ladder,
    format_mentions,
    format_pacte_created,
    format_pacte_status,
    format_player_stats,
    format_points,
)

if TYPE_CHECKING:
    from bot.main import PacteBot

logger = logging.getLogger(__name__)

KICK_REASONS = [app_commands.Choice(name=label, value=value) for value, label in KICK_REASON_LABELS.items()]


async def send_error(interaction: discord.Interaction, error: PacteError):
    await interaction.followup.send(f"❌ {error.user_message}", ephemeral=True)


class PacteCommands(commands.Cog):
    """Cog containing all pacte commands."""

    bot: "PacteBot"

    pacte = app_commands.Group(name="pacte", description="Create and manage ARAM pactes")
    kick = app_commands.Group(name="kick", description="Exclude players from pactes")

    def __init__(self, bot: "PacteBot"):
        self.bot = bot

    # Registration

    @app_commands.command(name="register", description="Link your Riot account")
    @app_commands.describe(riot_id="Your Riot ID, e.g. Name#EUW")
    async def register(self, interaction: discord.Interaction, riot_id: str):
        logger.info(f"Register command invoked by {interaction.user}: {riot_id}")
        await interaction.response.defer(ephemeral=True)

        game_name, sep, tag_line = riot_id.strip().rpartition("#")
        if not sep or not game_name or not tag_line:
            await interaction.followup.send("Use the format `Name#TAG`.", ephemeral=True)
            return

        try:
            account = await self.bot.observer.get_account_by_riot_id(game_name, tag_line)
        except RiotNotFound:
            await interaction.followup.send(f"Riot account `{riot_id}` not found.", ephemeral=True)
            return
        except RiotApiError as e:
            logger.error(f"Riot lookup failed for {riot_id}: {e}")
            await interaction.followup.send("The Riot API is unavailable, try again later.", ephemeral=True)
            return

        display_name = f"{account.get('gameName', game_name)}#{account.get('tagLine', tag_line)}"
        try:
            await self.bot.users.create_user(str(interaction.user.id), account["puuid"], display_name)
        except PacteError as e:
            await send_error(interaction, e)
            return

        await interaction.followup.send(f"✅ Linked to **{display_name}**.", ephemeral=True)

    @app_commands.command(name="unregister", description="Unlink your Riot account")
    async def unregister(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        deleted = await self.bot.users.delete_user(str(interaction.user.id))
        if deleted:
            await interaction.followup.send("Your Riot account has been unlinked.", ephemeral=True)
        else:
            await interaction.followup.send(
                "Nothing to unlink, or you already took part in a pacte (history is kept).",
                ephemeral=True,
            )

    # Pactes

    @pacte.command(name="create", description="Propose a pacte of consecutive ARAM wins")
    @app_commands.describe(
        objective="Consecutive wins to reach within 24h",
        player2="Second player",
        player3="Third player",
        player4="Fourth player",
        player5="Fifth player",
    )
    async def create(
        self,
        interaction: discord.Interaction,
        objective: app_commands.Range[int, 3, 10],
        player2: discord.Member | None = None,
        player3: discord.Member | None = None,
        player4: discord.Member | None = None,
        player5: discord.Member | None = None,
    ):
        logger.info(f"Pacte create invoked by {interaction.user}: objective {objective}")
        await interaction.response.defer()

        if not interaction.guild:
            await interaction.followup.send("This command only works in servers.", ephemeral=True)
            return

        members = [interaction.user, player2, player3, player4, player5]
        participant_ids = [str(member.id) for member in members if member is not None]

        try:
            pacte_id = await self.bot.store.create(
                objective,
                participant_ids,
                channel_id=str(interaction.channel_id),
            )
        except PacteError as e:
            await send_error(interaction, e)
            return

        await interaction.followup.send(
            format_pacte_created(
                pacte_id,
                objective,
                list(dict.fromkeys(participant_ids)),
                Config.SIGNATURE_WINDOW_MINUTES,
            )
        )

    @pacte.command(name="sign", description="Sign the pacte you were invited to")
    async def sign(self, interaction: discord.Interaction):
        await interaction.response.defer()
        user_id = str(interaction.user.id)

        pacte = await self.bot.store.get_user_active_pacte(user_id)
        if pacte is None:
            await interaction.followup.send("You have no pacte to sign.", ephemeral=True)
            return

        try:
            result = await self.bot.store.sign(pacte.id, user_id)
        except PacteError as e:
            await send_error(interaction, e)
            return

        if result.activated:
            participants = await self.bot.store.get_active_participants(pacte.id)
            await interaction.followup.send(
                f"🩸 **PACTE #{pacte.id} SEALED!** 🩸\n"
                f"{format_mentions([p.id for p in participants])}\n"
                f"{pacte.objective} wins in a row. The 24 hours start now."
            )
        else:
            await interaction.followup.send(
                f"✍️ <@{user_id}> signed pacte #{pacte.id} ({result.signed_count}/{result.total_count})"
            )

    @pacte.command(name="join", description="Join an open pacte in this channel")
    @app_commands.describe(pacte_id="Pacte to join (defaults to the first open one here)")
    async def join(self, interaction: discord.Interaction, pacte_id: int | None = None):
        await interaction.response.defer()
        user_id = str(interaction.user.id)

        if pacte_id is None:
            joinable = await self.bot.store.list_joinable(str(interaction.channel_id))
            if not joinable:
                await interaction.followup.send("No open pacte to join in this channel.", ephemeral=True)
                return
            pacte_id = joinable[0].id

        try:
            await self.bot.store.join(pacte_id, user_id)
        except PacteError as e:
            await send_error(interaction, e)
            return

        await interaction.followup.send(
            f"🤝 <@{user_id}> joined pacte #{pacte_id}. Sign it with `/pacte sign` to be counted."
        )

    @pacte.command(name="leave", description="Abandon your current pacte (costs points)")
    async def leave(self, interaction: discord.Interaction):
        await interaction.response.defer()
        user_id = str(interaction.user.id)

        pacte = await self.bot.store.get_user_active_pacte(user_id)
        if pacte is None:
            await interaction.followup.send("You are not in a pacte.", ephemeral=True)
            return

        malus = leave_malus(pacte.objective, max(pacte.best_streak_reached, pacte.current_wins))
        try:
            result = await self.bot.store.leave(pacte.id, user_id, malus)
        except PacteError as e:
            await send_error(interaction, e)
            return

        message = f"🚪 <@{user_id}> abandoned pacte #{pacte.id} ({format_points(-malus)} pts)."
        if result.pacte_failed:
            message += f"\n💀 Nobody is left: pacte #{pacte.id} has failed."
        await interaction.followup.send(message)

    @pacte.command(name="status", description="Show your current pacte")
    async def status(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)

        pacte = await self.bot.store.get_user_active_pacte(str(interaction.user.id))
        if pacte is None:
            await interaction.followup.send("You are not in a pacte.", ephemeral=True)
            return

        participants = await self.bot.store.get_participants(pacte.id)
        await interaction.followup.send(format_pacte_status(pacte, participants, utcnow()), ephemeral=True)

    # Kicks

    @kick.command(name="player", description="Exclude a player from your current pacte")
    @app_commands.describe(player="Player to exclude", reason="Why they are excluded")
    @app_commands.choices(reason=KICK_REASONS)
    async def kick_player(
        self,
        interaction: discord.Interaction,
        player: discord.Member,
        reason: app_commands.Choice[str],
    ):
        logger.info(f"Kick command invoked by {interaction.user} against {player}: {reason.value}")
        await interaction.response.defer()
        kicker_id = str(interaction.user.id)

        pacte = await self.bot.store.get_user_active_pacte(kicker_id)
        if pacte is None:
            await interaction.followup.send("You are not in a pacte.", ephemeral=True)
            return

        base_malus = leave_malus(pacte.objective, max(pacte.best_streak_reached, pacte.current_wins))
        malus = kick_malus(base_malus, Config.KICK_MALUS_MULTIPLIER)
        try:
            result = await self.bot.store.kick(pacte.id, str(player.id), malus, reason.value, kicked_by=kicker_id)
        except PacteError as e:
            await send_error(interaction, e)
            return

        message = (
            f"🚫 <@{player.id}> was excluded from pacte #{pacte.id} ({reason.name}). "
            f"Malus: {format_points(-result.malus)} pts."
        )
        if result.pacte_failed:
            message += f"\n💀 Nobody is left: pacte #{pacte.id} has failed."
        await interaction.followup.send(message)

    @kick.command(name="history", description="Show the exclusions from a pacte")
    @app_commands.describe(pacte_id="Pacte to inspect (defaults to your current pacte)")
    async def kick_history(self, interaction: discord.Interaction, pacte_id: int | None = None):
        await interaction.response.defer(ephemeral=True)

        if pacte_id is None:
            pacte = await self.bot.store.get_user_active_pacte(str(interaction.user.id))
            if pacte is None:
                await interaction.followup.send("You are not in a pacte. Pass a pacte id.", ephemeral=True)
                return
            pacte_id = pacte.id
        elif await self.bot.store.get_pacte(pacte_id) is None:
            await interaction.followup.send(f"Pacte #{pacte_id} does not exist.", ephemeral=True)
            return

        records = await self.bot.store.get_kick_history(pacte_id)
        await interaction.followup.send(format_kick_history(pacte_id, records), ephemeral=True)

    @kick.command(name="undo", description="Cancel an exclusion (moderators only)")
    @app_commands.describe(player="Player to reinstate", pacte_id="Pacte they were excluded from")
    @app_commands.checks.has_permissions(manage_messages=True)
    async def kick_undo(self, interaction: discord.Interaction, player: discord.Member, pacte_id: int):
        logger.info(f"Unkick command invoked by {interaction.user} for {player} on pacte #{pacte_id}")
        await interaction.response.defer()

        try:
            result = await self.bot.store.unkick(pacte_id, str(player.id))
        except PacteError as e:
            await send_error(interaction, e)
            return

        await interaction.followup.send(
            f"↩️ <@{player.id}> is back in pacte #{pacte_id} (refunded {format_points(result.refunded)} pts)."
        )

    @kick_undo.error
    async def kick_undo_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            await interaction.response.send_message(
                "You need the 'Manage Messages' permission to cancel exclusions!",
                ephemeral=True,
            )
        else:
            logger.error(f"Error in kick undo command: {error}")
            await interaction.response.send_message("An error occurred while cancelling the exclusion.", ephemeral=True)

    # Rankings

    @app_commands.command(name="ladder", description="Show the points ladder")
    @app_commands.describe(monthly="Show this month's points instead of all-time")
    async def ladder(self, interaction: discord.Interaction, monthly: bool = False):
        await interaction.response.defer()
        users = await self.bot.users.get_ladder(monthly=monthly)
        await interaction.followup.send(format_ladder(users, monthly=monthly))

    @app_commands.command(name="stats", description="Show pacte stats for a player")
    @app_commands.describe(user="The user to show stats for (defaults to yourself)")
    async def stats(self, interaction: discord.Interaction, user: discord.Member | None = None):
        await interaction.response.defer(ephemeral=True)
        target_user = user or interaction.user
        account = await self.bot.users.get_user(str(target_user.id))
        kicks = await self.bot.store.get_user_kick_stats(str(target_user.id))
        await interaction.followup.send(format_player_stats(account, target_user.display_name, kicks), ephemeral=True)

    @app_commands.command(name="history", description="Show a player's past pactes")
    @app_commands.describe(user="The user to show (defaults to yourself)", limit="Number of pactes to show")
    async def history(
        self,
        interaction: discord.Interaction,
        user: discord.Member | None = None,
        limit: app_commands.Range[int, 1, 25] = 10,
    ):
        await interaction.response.defer(ephemeral=True)
        target_user = user or interaction.user
        entries = await self.bot.store.get_user_history(str(target_user.id), limit=limit)
        await interaction.followup.send(format_history(entries, target_user.display_name), ephemeral=True)


async def setup(bot: "PacteBot"):
    """Load the cog."""
    await bot.add_cog(PacteCommands(bot))
