"""Message formatting utilities for pacte notifications and command replies."""

from collections.abc import Sequence
from datetime import datetime, timedelta

from models import (
    MatchLost,
    MatchStarted,
    MatchWon,
    Pacte,
    PacteEvent,
    PacteExpired,
    KickRecord,
    KickStats,
    PacteHistoryEntry,
    PacteStatus,
    PacteSucceeded,
    PacteTimedOut,
    Participant,
    ResultUndetectable,
    TechnicalResetEvent,
    TimeRunningOut,
    UserAccount,
)

# Discord message limit
DISCORD_MAX_LENGTH = 2000

STATUS_LABELS = {
    PacteStatus.PENDING: "⏳ Waiting for signatures",
    PacteStatus.ACTIVE: "🔥 Active",
    PacteStatus.SUCCESS: "🏆 Success",
    PacteStatus.FAILED: "💀 Failed",
}

KICK_REASON_LABELS = {
    "afk_abandon": "AFK / left the game",
    "toxic_behavior": "Toxic behaviour",
    "trolling": "Trolling / sabotage",
    "inactive": "Inactive for too long",
    "other": "Other",
}


def format_mentions(user_ids: Sequence[str]) -> str:
    return " ".join(f"<@{user_id}>" for user_id in user_ids)


def format_points(points: int) -> str:
    """Signed points, e.g. ``+11`` or ``-1``."""
    return f"+{points}" if points > 0 else str(points)


def format_duration(seconds: int) -> str:
    return f"{seconds // 60}min"


def truncate(text: str, limit: int = DISCORD_MAX_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


# Engine events


def format_match_started(event: MatchStarted) -> str:
    return "\n".join(
        [
            "🎮 **GAME DETECTED!**",
            format_mentions(event.participant_ids),
            f"Pacte #{event.pacte_id} - {event.current_wins}/{event.objective}",
            "Good luck on the Howling Abyss! 🎯",
        ]
    )


def format_match_won(event: MatchWon) -> str:
    duration = format_duration(event.duration_seconds)
    if event.match_point:
        return f"🔥🔥 **MATCH POINT!** 🔥🔥\n**THE NEXT ONE IS THE LAST!**\n*({duration} of pure domination)*"
    return f"✅ **VICTORY!** {event.current_wins}/{event.objective} ({duration})"


def format_match_lost(event: MatchLost) -> str:
    duration = format_duration(event.duration_seconds)
    if event.so_close:
        lines = [f"💔 **SO CLOSE...** 💔\nLost one win away from the objective! ({duration})"]
    else:
        lines = [f"💀 **DEFEAT!** ({duration})\nBack to 0/{event.objective}"]
    lines.append(f"⏰ Time left: {event.hours_left}h")
    lines.append(f"🏆 Best streak: {event.best_streak_reached} wins")
    return "\n".join(lines)


def format_pacte_succeeded(event: PacteSucceeded) -> str:
    return "\n".join(
        [
            "🎉🎉🎉 **PACTE FULFILLED!** 🎉🎉🎉",
            "",
            format_mentions(event.participant_ids),
            "",
            f"📜 Pacte #{event.pacte_id} - {event.objective} wins in a row",
            f"⏱️ Last game: {format_duration(event.duration_seconds)}",
            f"💎 **{format_points(event.points)} POINTS**",
        ]
    )


def format_pacte_timed_out(event: PacteTimedOut) -> str:
    return "\n".join(
        [
            f"⏰ **PACTE EXPIRED** - Pacte #{event.pacte_id}",
            format_mentions(event.participant_ids),
            f"Best streak: {event.best_streak_reached}/{event.objective}",
            f"Points: {format_points(event.points)} ({format_points(event.reward)} reward, -{event.penalty} penalty)",
        ]
    )


def format_pacte_expired(event: PacteExpired) -> str:
    return (
        f"⌛ Pacte #{event.pacte_id} was cancelled: not everyone signed in time.\n"
        f"{format_mentions(event.participant_ids)}"
    )


def format_time_running_out(event: TimeRunningOut) -> str:
    return "\n".join(
        [
            "⏰ **FINAL HOURS!** ⏰",
            "",
            format_mentions(event.participant_ids),
            "",
            f"🔥 Only {event.hours_left} hours left to fulfil pacte #{event.pacte_id}!",
            f"📊 Progress: {event.current_wins}/{event.objective}",
            f"🏆 Best streak: {event.best_streak_reached}",
        ]
    )


def format_result_undetectable(event: ResultUndetectable) -> str:
    return (
        "⚠️ **Could not determine the result of your last game**\n"
        f"Pacte #{event.pacte_id} is waiting again. Tracking resumes with your next match."
    )


def format_technical_reset(event: TechnicalResetEvent) -> str:
    return (
        f"⚠️ **Technical error** - Pacte #{event.pacte_id}\n"
        "Could not check the result of your game.\n"
        "Tracking will resume with your next match."
    )


EVENT_FORMATTERS = {
    MatchStarted: format_match_started,
    MatchWon: format_match_won,
    MatchLost: format_match_lost,
    PacteSucceeded: format_pacte_succeeded,
    PacteTimedOut: format_pacte_timed_out,
    PacteExpired: format_pacte_expired,
    TimeRunningOut: format_time_running_out,
    ResultUndetectable: format_result_undetectable,
    TechnicalResetEvent: format_technical_reset,
}


def format_event(event: PacteEvent) -> str:
    """Render any engine event as a channel message."""
    formatter = EVENT_FORMATTERS.get(type(event))
    if formatter is None:
        raise ValueError(f"No formatter for {type(event).__name__}")
    return truncate(formatter(event))


# Command replies


def format_pacte_created(pacte_id: int, objective: int, participant_ids: Sequence[str], window_minutes: int) -> str:
    return "\n".join(
        [
            f"📜 **PACTE #{pacte_id} PROPOSED**",
            f"Objective: **{objective} ARAM wins in a row** within 24h",
            "",
            format_mentions(participant_ids),
            f"Everyone must sign with `/pacte sign` within {window_minutes} minutes.",
        ]
    )


def format_pacte_status(
    pacte: Pacte,
    participants: Sequence[Participant],
    now: datetime,
    duration: timedelta = timedelta(hours=24),
) -> str:
    """Summary of one pacte for ``/pacte status``."""
    lines = [
        f"## 📜 Pacte #{pacte.id}",
        "",
        f"**Status:** {STATUS_LABELS[pacte.status]}",
        f"**Progress:** {pacte.current_wins}/{pacte.objective}",
        f"**Best streak:** {pacte.best_streak_reached}",
    ]

    if pacte.in_game:
        lines.append("**In game:** 🎮 yes")

    if pacte.status == PacteStatus.ACTIVE and pacte.started_at:
        remaining = pacte.started_at + duration - now
        hours, rest = divmod(max(0, int(remaining.total_seconds())), 3600)
        lines.append(f"**Time left:** {hours}h{rest // 60:02d}")

    lines.append("")
    lines.append("**Participants:**")
    for participant in participants:
        if participant.kicked_at:
            state = "🚫 kicked"
        elif participant.left_at:
            state = "🚪 left"
        elif participant.signed_at:
            state = "✅ signed"
        else:
            state = "⏳ not signed"
        lines.append(f"- <@{participant.user_id}> {state}")

    return "\n".join(lines)


def format_ladder(users: Sequence[UserAccount], monthly: bool = False, limit: int = 10) -> str:
    title = "Monthly Ladder" if monthly else "All-time Ladder"
    lines = [
        f"# 🏆 {title}",
        "",
    ]

    if not users:
        lines.append("*No points scored yet! Start a pacte with `/pacte create`*")
        return "\n".join(lines)

    medals = ["🥇", "🥈", "🥉"]
    for i, user in enumerate(users[:limit]):
        medal = medals[i] if i < 3 else f"{i + 1}."
        points = user.points_monthly if monthly else user.points_total
        lines.append(f"{medal} `{user.display_name}` - **{points:,}** pts (best streak {user.best_streak_ever})")

    return "\n".join(lines)


def format_player_stats(user: UserAccount | None, display_name: str, kicks: KickStats | None = None) -> str:
    if not user:
        return f"**{display_name}** has not linked a Riot account yet!"

    lines = [
        f"## 📊 Stats for {display_name}",
        "",
        f"**Riot ID:** {user.display_name}",
        f"**Total points:** {user.points_total:,}",
        f"**This month:** {user.points_monthly:,}",
        f"**Best streak ever:** {user.best_streak_ever}",
    ]
    if kicks and kicks.total_kicks:
        lines.append(f"**Exclusions:** {kicks.total_kicks} ({format_points(-kicks.total_malus)} pts)")
    return "\n".join(lines)


def format_history(entries: Sequence[PacteHistoryEntry], display_name: str) -> str:
    lines = [f"## 📚 Pacte history for {display_name}", ""]

    if not entries:
        lines.append("*No pacte yet!*")
        return "\n".join(lines)

    for entry in entries:
        if entry.was_kicked:
            outcome = "🚫 kicked"
        elif entry.has_left:
            outcome = "🚪 left"
        else:
            outcome = STATUS_LABELS[entry.status]
        lines.append(
            f"#{entry.pacte_id} - objective {entry.objective}, best {entry.best_streak_reached} "
            f"- {outcome} ({format_points(entry.points_gained)} pts)"
        )

    return truncate("\n".join(lines))


def format_kick_history(pacte_id: int, records: Sequence[KickRecord]) -> str:
    lines = [f"## 🚫 Exclusions from pacte #{pacte_id}", ""]

    if not records:
        lines.append("*Nobody has been excluded from this pacte.*")
        return "\n".join(lines)

    for record in records:
        reason = KICK_REASON_LABELS.get(record.kick_reason, record.kick_reason or "Other")
        by = f" by <@{record.kicked_by}>" if record.kicked_by else ""
        lines.append(
            f"- <@{record.user_id}> {record.kicked_at:%Y-%m-%d %H:%M} UTC{by}: {reason} "
            f"({format_points(record.points_gained)} pts)"
        )

    return truncate("\n".join(lines))
