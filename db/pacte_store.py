"""Persistence and state transitions for pactes and their participants.

Every mutation reads, decides and writes inside one ``BEGIN IMMEDIATE``
transaction, so concurrent signatures, joins, leaves and kicks on the same
pacte always see each other's effects.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from config import Config
from db.database import Database, Transaction, to_db_time, utcnow
from db.user_store import UserStore
from errors import (
    AlreadyInPacte,
    AlreadyMember,
    AlreadySigned,
    CannotKickSelf,
    InvalidObjective,
    InvalidParticipants,
    InvariantViolation,
    NotActiveParticipant,
    NotAParticipant,
    NotKicked,
    PacteAlreadyCompleted,
    PacteClosed,
    PacteFull,
    PacteNotFound,
    StreakInProgress,
    UserNotRegistered,
)
from models import (
    CheckSucceeded,
    ClearInGame,
    IncrementErrorCount,
    KickResult,
    KickRecord,
    KickStats,
    LeaveResult,
    MarkInGame,
    MarkMatchEnded,
    MarkWarningSent,
    Pacte,
    PacteHistoryEntry,
    PacteStatus,
    PacteUpdate,
    Participant,
    RecordEmptyResultPoll,
    RecordLoss,
    RecordWin,
    SignResult,
    TechnicalReset,
    UnkickResult,
    UserAccount,
)

logger = logging.getLogger(__name__)

MIN_OBJECTIVE = 3
MAX_OBJECTIVE = 10

ACTIVE_PARTICIPANT = "signed_at IS NOT NULL AND left_at IS NULL AND kicked_at IS NULL"
PRESENT_PARTICIPANT = "left_at IS NULL AND kicked_at IS NULL"

CLEAR_IN_GAME = "in_game = 0, current_game_id = NULL, game_ended_at = NULL, empty_result_polls = 0"


class PacteStore:
    """Durable, invariant-preserving state for pactes and participants."""

    def __init__(self, db: Database, users: UserStore, max_participants: int | None = None):
        self.db = db
        self.users = users
        self.max_participants = max_participants or Config.MAX_PARTICIPANTS

    # Internal helpers

    async def _load(self, tx: Transaction, pacte_id: int) -> Pacte:
        row = await tx.fetch_one("SELECT * FROM pactes WHERE id = ?", (pacte_id,))
        if not row:
            raise PacteNotFound(pacte_id)
        return Pacte(**dict(row))

    async def _load_participant(self, tx: Transaction, pacte_id: int, user_id: str) -> Optional[Participant]:
        row = await tx.fetch_one(
            "SELECT * FROM participants WHERE pacte_id = ? AND user_id = ?",
            (pacte_id, user_id),
        )
        return Participant(**dict(row)) if row else None

    async def _find_open_pacte_id(
        self, tx: Transaction, user_id: str, exclude_pacte_id: int | None = None
    ) -> Optional[int]:
        """Id of a pending/active pacte the user still belongs to, if any."""
        return await tx.fetch_value(
            """
            SELECT p.id FROM pactes p
            JOIN participants part ON part.pacte_id = p.id
            WHERE part.user_id = ?
            AND part.left_at IS NULL AND part.kicked_at IS NULL
            AND p.status IN ('pending', 'active')
            AND p.id != ?
            LIMIT 1
            """,
            (user_id, exclude_pacte_id if exclude_pacte_id is not None else -1),
        )

    async def _count_active(self, tx: Transaction, pacte_id: int) -> int:
        return await tx.fetch_value(
            f"SELECT COUNT(*) FROM participants WHERE pacte_id = ? AND {ACTIVE_PARTICIPANT}",
            (pacte_id,),
        )

    async def _fail_if_empty(self, tx: Transaction, pacte_id: int, now: datetime) -> tuple[int, bool]:
        """Fail the pacte when nobody active is left. Returns (remaining, failed)."""
        remaining = await self._count_active(tx, pacte_id)
        if remaining > 0:
            return remaining, False

        await tx.execute(
            f"""
            UPDATE pactes SET status = 'failed', completed_at = ?, {CLEAR_IN_GAME}
            WHERE id = ? AND status IN ('pending', 'active')
            """,
            (to_db_time(now), pacte_id),
        )
        logger.info(f"Pacte #{pacte_id} failed: no active participant left")
        return remaining, True

    # Creation and membership

    async def create(
        self,
        objective: int,
        participant_ids: list[str],
        channel_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Create a pending pacte with one unsigned participant row per user."""
        if not MIN_OBJECTIVE <= objective <= MAX_OBJECTIVE:
            raise InvalidObjective(objective)

        user_ids = list(dict.fromkeys(str(user_id) for user_id in participant_ids))
        if not user_ids:
            raise InvalidParticipants("A pacte needs at least one participant.")
        if len(user_ids) > self.max_participants:
            raise InvalidParticipants(f"A pacte can have at most {self.max_participants} participants.")

        now = now or utcnow()
        async with self.db.transaction() as tx:
            for user_id in user_ids:
                if await self.users.get_user(user_id, tx=tx) is None:
                    raise UserNotRegistered(user_id)
                open_pacte_id = await self._find_open_pacte_id(tx, user_id)
                if open_pacte_id is not None:
                    raise AlreadyInPacte(user_id, open_pacte_id)

            cursor = await tx.execute(
                "INSERT INTO pactes (objective, channel_id, created_at) VALUES (?, ?, ?)",
                (objective, channel_id, to_db_time(now)),
            )
            pacte_id = cursor.lastrowid

            for user_id in user_ids:
                await tx.execute(
                    "INSERT INTO participants (pacte_id, user_id, joined_at) VALUES (?, ?, ?)",
                    (pacte_id, user_id, to_db_time(now)),
                )

        logger.info(f"Pacte created: #{pacte_id} (objective {objective}) with {len(user_ids)} participants")
        return pacte_id

    async def sign(self, pacte_id: int, user_id: str, now: datetime | None = None) -> SignResult:
        """Sign a pacte. The signature completing the set activates a pending pacte."""
        now = now or utcnow()
        async with self.db.transaction() as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)

            participant = await self._load_participant(tx, pacte_id, user_id)
            if participant is None:
                raise NotAParticipant(user_id, pacte_id)
            if participant.departed:
                raise NotActiveParticipant(user_id, pacte_id)
            if participant.signed_at is not None:
                raise AlreadySigned(user_id, pacte_id)

            await tx.execute(
                """
                UPDATE participants SET signed_at = ?
                WHERE pacte_id = ? AND user_id = ? AND signed_at IS NULL
                """,
                (to_db_time(now), pacte_id, user_id),
            )

            # Re-read after the write so concurrent signatures are all counted
            counts = await tx.fetch_one(
                f"""
                SELECT COUNT(*) AS total, COUNT(signed_at) AS signed
                FROM participants
                WHERE pacte_id = ? AND {PRESENT_PARTICIPANT}
                """,
                (pacte_id,),
            )
            total_count, signed_count = counts["total"], counts["signed"]
            all_signed = signed_count == total_count

            activated = False
            if all_signed and pacte.status == PacteStatus.PENDING:
                cursor = await tx.execute(
                    "UPDATE pactes SET status = 'active', started_at = ? WHERE id = ? AND status = 'pending'",
                    (to_db_time(now), pacte_id),
                )
                activated = cursor.rowcount == 1

        logger.info(f"User {user_id} signed pacte #{pacte_id} ({signed_count}/{total_count})")
        if activated:
            logger.info(f"Pacte #{pacte_id} is now active")
        return SignResult(
            all_signed=all_signed,
            signed_count=signed_count,
            total_count=total_count,
            activated=activated,
        )

    async def join(self, pacte_id: int, user_id: str, now: datetime | None = None) -> None:
        """Add an unsigned participant to a pacte that has no win yet."""
        now = now or utcnow()
        async with self.db.transaction() as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)
            if await self.users.get_user(user_id, tx=tx) is None:
                raise UserNotRegistered(user_id)
            if await self._load_participant(tx, pacte_id, user_id) is not None:
                raise AlreadyMember(user_id, pacte_id)

            open_pacte_id = await self._find_open_pacte_id(tx, user_id)
            if open_pacte_id is not None:
                raise AlreadyInPacte(user_id, open_pacte_id)

            present = await tx.fetch_value(
                f"SELECT COUNT(*) FROM participants WHERE pacte_id = ? AND {PRESENT_PARTICIPANT}",
                (pacte_id,),
            )
            if present >= self.max_participants:
                raise PacteFull(pacte_id, self.max_participants)
            if pacte.current_wins > 0:
                raise StreakInProgress(pacte_id)

            await tx.execute(
                "INSERT INTO participants (pacte_id, user_id, joined_at) VALUES (?, ?, ?)",
                (pacte_id, user_id, to_db_time(now)),
            )

        logger.info(f"User {user_id} joined pacte #{pacte_id}")

    async def leave(self, pacte_id: int, user_id: str, malus: int, now: datetime | None = None) -> LeaveResult:
        """Voluntarily leave a pacte, paying ``malus`` points."""
        now = now or utcnow()
        malus = abs(int(malus))
        async with self.db.transaction() as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)

            participant = await self._load_participant(tx, pacte_id, user_id)
            if participant is None or not participant.is_active:
                raise NotActiveParticipant(user_id, pacte_id)

            await tx.execute(
                "UPDATE participants SET left_at = ?, points_gained = ? WHERE pacte_id = ? AND user_id = ?",
                (to_db_time(now), -malus, pacte_id, user_id),
            )
            await self.users.apply_points(user_id, -malus, tx=tx)
            remaining, failed = await self._fail_if_empty(tx, pacte_id, now)

        logger.info(f"User {user_id} left pacte #{pacte_id} with malus -{malus} ({remaining} remaining)")
        return LeaveResult(remaining_count=remaining, pacte_failed=failed)

    async def kick(
        self,
        pacte_id: int,
        target_id: str,
        malus: int,
        reason: str,
        kicked_by: str | None = None,
        now: datetime | None = None,
    ) -> KickResult:
        """Exclude a participant, charging ``malus`` points."""
        now = now or utcnow()
        malus = abs(int(malus))
        async with self.db.transaction() as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)

            if kicked_by is not None:
                if kicked_by == target_id:
                    raise CannotKickSelf(target_id)
                kicker = await self._load_participant(tx, pacte_id, kicked_by)
                if kicker is None or not kicker.is_active:
                    raise NotActiveParticipant(kicked_by, pacte_id)

            participant = await self._load_participant(tx, pacte_id, target_id)
            if participant is None or not participant.is_active:
                raise NotActiveParticipant(target_id, pacte_id)

            await tx.execute(
                """
                UPDATE participants
                SET kicked_at = ?, kick_reason = ?, kicked_by = ?, points_gained = ?
                WHERE pacte_id = ? AND user_id = ?
                """,
                (to_db_time(now), reason, kicked_by, -malus, pacte_id, target_id),
            )
            await self.users.apply_points(target_id, -malus, tx=tx)
            remaining, failed = await self._fail_if_empty(tx, pacte_id, now)

        logger.warning(
            f"KICK - Pacte #{pacte_id}: {target_id} excluded by {kicked_by or 'admin'}. "
            f"Reason: {reason}. Malus: -{malus}. Remaining: {remaining}"
        )
        return KickResult(remaining_count=remaining, pacte_failed=failed, malus=malus)

    async def unkick(self, pacte_id: int, target_id: str) -> UnkickResult:
        """Reverse an exclusion and refund its malus while the pacte is still open."""
        async with self.db.transaction() as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)

            participant = await self._load_participant(tx, pacte_id, target_id)
            if participant is None or participant.kicked_at is None:
                raise NotKicked(target_id, pacte_id)

            open_pacte_id = await self._find_open_pacte_id(tx, target_id, exclude_pacte_id=pacte_id)
            if open_pacte_id is not None:
                raise AlreadyInPacte(target_id, open_pacte_id)

            refund = -participant.points_gained
            await tx.execute(
                """
                UPDATE participants
                SET kicked_at = NULL, kick_reason = NULL, kicked_by = NULL, points_gained = 0
                WHERE pacte_id = ? AND user_id = ?
                """,
                (pacte_id, target_id),
            )
            await self.users.apply_points(target_id, refund, tx=tx)

        logger.warning(f"UNKICK - Pacte #{pacte_id}: exclusion of {target_id} cancelled, refunded +{refund}")
        return UnkickResult(refunded=refund)

    # Progress engine mutations

    async def update_status(
        self,
        pacte_id: int,
        update: PacteUpdate,
        tx: Optional[Transaction] = None,
    ) -> Pacte:
        """Apply one progress update to an open pacte and return the new state."""
        async with self.db.transaction(tx) as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteClosed(pacte_id, pacte.status.value)

            assignments, params = self._update_clause(pacte, update)
            await tx.execute(
                f"UPDATE pactes SET {assignments} WHERE id = ?",
                (*params, pacte_id),
            )
            return await self._load(tx, pacte_id)

    def _update_clause(self, pacte: Pacte, update: PacteUpdate) -> tuple[str, tuple]:
        if isinstance(update, MarkInGame):
            return (
                "in_game = 1, current_game_id = ?, game_ended_at = NULL, empty_result_polls = 0",
                (update.match_id,),
            )
        if isinstance(update, MarkMatchEnded):
            return "game_ended_at = COALESCE(game_ended_at, ?)", (to_db_time(update.ended_at),)
        if isinstance(update, RecordEmptyResultPoll):
            return "empty_result_polls = empty_result_polls + 1", ()
        if isinstance(update, ClearInGame):
            return CLEAR_IN_GAME, ()
        if isinstance(update, RecordWin):
            if not 0 < update.current_wins <= pacte.objective:
                raise InvariantViolation(
                    f"Pacte {pacte.id}: {update.current_wins} wins outside 1..{pacte.objective}"
                )
            if update.best_streak_reached < max(update.current_wins, pacte.best_streak_reached):
                raise InvariantViolation(f"Pacte {pacte.id}: best streak {update.best_streak_reached} too low")
            return (
                f"current_wins = ?, best_streak_reached = ?, {CLEAR_IN_GAME}",
                (update.current_wins, update.best_streak_reached),
            )
        if isinstance(update, RecordLoss):
            if update.best_streak_reached < max(pacte.current_wins, pacte.best_streak_reached):
                raise InvariantViolation(f"Pacte {pacte.id}: best streak {update.best_streak_reached} too low")
            if update.best_streak_reached > pacte.objective:
                raise InvariantViolation(f"Pacte {pacte.id}: best streak above objective")
            return (
                f"current_wins = 0, best_streak_reached = ?, {CLEAR_IN_GAME}",
                (update.best_streak_reached,),
            )
        if isinstance(update, MarkWarningSent):
            return "warning_sent = 1", ()
        if isinstance(update, IncrementErrorCount):
            return "error_count = error_count + 1", ()
        if isinstance(update, TechnicalReset):
            return f"{CLEAR_IN_GAME}, error_count = 0", ()
        if isinstance(update, CheckSucceeded):
            return "last_checked_at = ?, error_count = 0", (to_db_time(update.checked_at),)
        raise TypeError(f"Unknown pacte update: {update!r}")

    async def complete(
        self,
        pacte_id: int,
        succeeded: bool,
        points_per_participant: int,
        tx: Optional[Transaction] = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Settle a pacte and credit every active participant.

        Returns the ids of the credited users. A pacte can only be settled
        once; a second call raises ``PacteAlreadyCompleted``.
        """
        now = now or utcnow()
        async with self.db.transaction(tx) as tx:
            pacte = await self._load(tx, pacte_id)
            if pacte.is_terminal:
                raise PacteAlreadyCompleted(pacte_id, pacte.status.value)
            if succeeded and pacte.status != PacteStatus.ACTIVE:
                raise InvariantViolation(f"Pacte {pacte_id} cannot succeed while {pacte.status.value}")

            status = PacteStatus.SUCCESS if succeeded else PacteStatus.FAILED
            await tx.execute(
                f"UPDATE pactes SET status = ?, completed_at = ?, {CLEAR_IN_GAME} WHERE id = ?",
                (status.value, to_db_time(now), pacte_id),
            )

            rows = await tx.fetch_all(
                f"SELECT user_id FROM participants WHERE pacte_id = ? AND {ACTIVE_PARTICIPANT}",
                (pacte_id,),
            )
            user_ids = [row["user_id"] for row in rows]
            for user_id in user_ids:
                await self.users.apply_points(user_id, points_per_participant, tx=tx)
                await tx.execute(
                    "UPDATE participants SET points_gained = ? WHERE pacte_id = ? AND user_id = ?",
                    (points_per_participant, pacte_id, user_id),
                )

        logger.info(
            f"Pacte #{pacte_id} completed: {status.value.upper()} "
            f"({points_per_participant} points for {len(user_ids)} participants)"
        )
        return user_ids

    async def list_checkable(
        self, min_interval_minutes: float | None = None, now: datetime | None = None
    ) -> list[Pacte]:
        """Active pactes due for a progress check, in-game ones first."""
        if min_interval_minutes is None:
            min_interval_minutes = Config.CHECK_INTERVAL_MINUTES
        cutoff = (now or utcnow()) - timedelta(minutes=min_interval_minutes)

        rows = await self.db.fetch_all(
            f"""
            SELECT p.* FROM pactes p
            WHERE p.status = 'active'
            AND EXISTS (
                SELECT 1 FROM participants
                WHERE pacte_id = p.id AND {ACTIVE_PARTICIPANT}
            )
            AND (
                p.in_game = 1
                OR p.last_checked_at IS NULL
                OR p.last_checked_at <= ?
            )
            ORDER BY p.in_game DESC, p.last_checked_at ASC
            """,
            (to_db_time(cutoff),),
        )
        return [Pacte(**dict(row)) for row in rows]

    async def expire_unsigned(
        self, max_age_minutes: int | None = None, now: datetime | None = None
    ) -> list[Pacte]:
        """Fail pending pactes that did not collect every signature in time."""
        if max_age_minutes is None:
            max_age_minutes = Config.SIGNATURE_WINDOW_MINUTES
        now = now or utcnow()
        cutoff = now - timedelta(minutes=max_age_minutes)

        async with self.db.transaction() as tx:
            rows = await tx.fetch_all(
                "SELECT * FROM pactes WHERE status = 'pending' AND created_at <= ?",
                (to_db_time(cutoff),),
            )
            expired = [Pacte(**dict(row)) for row in rows]
            for pacte in expired:
                await tx.execute(
                    "UPDATE pactes SET status = 'failed', completed_at = ? WHERE id = ? AND status = 'pending'",
                    (to_db_time(now), pacte.id),
                )

        for pacte in expired:
            logger.info(f"Pacte #{pacte.id} expired without all signatures")
        return expired

    # Reads

    async def get_pacte(self, pacte_id: int, tx: Optional[Transaction] = None) -> Optional[Pacte]:
        query = "SELECT * FROM pactes WHERE id = ?"
        if tx is not None:
            row = await tx.fetch_one(query, (pacte_id,))
        else:
            row = await self.db.fetch_one(query, (pacte_id,))
        return Pacte(**dict(row)) if row else None

    async def get_participants(self, pacte_id: int) -> list[Participant]:
        rows = await self.db.fetch_all(
            "SELECT * FROM participants WHERE pacte_id = ? ORDER BY joined_at, user_id",
            (pacte_id,),
        )
        return [Participant(**dict(row)) for row in rows]

    async def get_active_participants(self, pacte_id: int) -> list[UserAccount]:
        """Signed, non-departed participants with their linked Riot accounts."""
        rows = await self.db.fetch_all(
            """
            SELECT u.* FROM users u
            JOIN participants part ON part.user_id = u.id
            WHERE part.pacte_id = ?
            AND part.signed_at IS NOT NULL AND part.left_at IS NULL AND part.kicked_at IS NULL
            ORDER BY part.joined_at, u.id
            """,
            (pacte_id,),
        )
        return [UserAccount(**dict(row)) for row in rows]

    async def get_user_active_pacte(self, user_id: str) -> Optional[Pacte]:
        """The pending or active pacte a user currently belongs to."""
        row = await self.db.fetch_one(
            """
            SELECT p.* FROM pactes p
            JOIN participants part ON part.pacte_id = p.id
            WHERE part.user_id = ?
            AND part.left_at IS NULL AND part.kicked_at IS NULL
            AND p.status IN ('pending', 'active')
            ORDER BY p.created_at DESC
            LIMIT 1
            """,
            (user_id,),
        )
        return Pacte(**dict(row)) if row else None

    async def list_joinable(self, channel_id: str) -> list[Pacte]:
        """Open pactes in a channel with no win yet and a free slot."""
        rows = await self.db.fetch_all(
            f"""
            SELECT p.* FROM pactes p
            WHERE p.channel_id = ?
            AND p.status IN ('pending', 'active')
            AND p.current_wins = 0
            AND (
                SELECT COUNT(*) FROM participants
                WHERE pacte_id = p.id AND {PRESENT_PARTICIPANT}
            ) < ?
            ORDER BY p.created_at
            """,
            (channel_id, self.max_participants),
        )
        return [Pacte(**dict(row)) for row in rows]

    async def get_user_history(self, user_id: str, limit: int = 10) -> list[PacteHistoryEntry]:
        rows = await self.db.fetch_all(
            """
            SELECT p.id AS pacte_id, p.objective, p.status, p.best_streak_reached,
                   part.points_gained, p.created_at, p.completed_at,
                   part.left_at IS NOT NULL AS has_left,
                   part.kicked_at IS NOT NULL AS was_kicked
            FROM pactes p
            JOIN participants part ON part.pacte_id = p.id
            WHERE part.user_id = ? AND part.signed_at IS NOT NULL
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [PacteHistoryEntry(**dict(row)) for row in rows]

    async def get_kick_history(self, pacte_id: int) -> list[KickRecord]:
        """Exclusions from a pacte, most recent first."""
        rows = await self.db.fetch_all(
            """
            SELECT part.pacte_id, part.user_id, u.display_name, part.kicked_at,
                   part.kick_reason, part.kicked_by, part.points_gained
            FROM participants part
            LEFT JOIN users u ON u.id = part.user_id
            WHERE part.pacte_id = ? AND part.kicked_at IS NOT NULL
            ORDER BY part.kicked_at DESC, part.user_id
            """,
            (pacte_id,),
        )
        return [KickRecord(**dict(row)) for row in rows]

    async def get_user_kick_stats(self, user_id: str) -> KickStats:
        rows = await self.db.fetch_all(
            """
            SELECT COALESCE(kick_reason, 'other') AS reason, COUNT(*) AS kicks,
                   SUM(-points_gained) AS malus, MAX(kicked_at) AS last_kick
            FROM participants
            WHERE user_id = ? AND kicked_at IS NOT NULL
            GROUP BY reason
            """,
            (user_id,),
        )
        if not rows:
            return KickStats()
        return KickStats(
            total_kicks=sum(row["kicks"] for row in rows),
            total_malus=sum(row["malus"] or 0 for row in rows),
            last_kick=max(row["last_kick"] for row in rows),
            by_reason={row["reason"]: row["kicks"] for row in rows},
        )

    async def get_kick_reason_stats(self) -> dict[str, int]:
        """Number of exclusions per reason across every pacte."""
        rows = await self.db.fetch_all(
            """
            SELECT COALESCE(kick_reason, 'other') AS reason, COUNT(*) AS kicks
            FROM participants
            WHERE kicked_at IS NOT NULL
            GROUP BY reason
            ORDER BY kicks DESC, reason
            """
        )
        return {row["reason"]: row["kicks"] for row in rows}

    async def count_active(self) -> int:
        return await self.db.fetch_value("SELECT COUNT(*) FROM pactes WHERE status = 'active'")
