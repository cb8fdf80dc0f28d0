"""Pydantic models for pacte data structures."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class PacteStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (PacteStatus.SUCCESS, PacteStatus.FAILED)


class MatchOutcome(str, Enum):
    WIN = "win"
    LOSS = "loss"


class Pacte(BaseModel):
    """A pacte record from the database."""

    id: int
    objective: int
    status: PacteStatus = PacteStatus.PENDING
    current_wins: int = 0
    best_streak_reached: int = 0
    in_game: bool = False
    current_game_id: Optional[str] = None
    game_ended_at: Optional[datetime] = None
    empty_result_polls: int = 0
    warning_sent: bool = False
    channel_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    error_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Participant(BaseModel):
    """A user's membership in one pacte."""

    pacte_id: int
    user_id: str
    joined_at: datetime
    signed_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    kicked_at: Optional[datetime] = None
    kick_reason: Optional[str] = None
    kicked_by: Optional[str] = None
    points_gained: int = 0

    @property
    def departed(self) -> bool:
        return self.left_at is not None or self.kicked_at is not None

    @property
    def is_active(self) -> bool:
        return self.signed_at is not None and not self.departed


class UserAccount(BaseModel):
    """A Discord user linked to a Riot account."""

    id: str
    riot_puuid: str
    display_name: str
    points_total: int = 0
    points_monthly: int = 0
    best_streak_ever: int = 0
    created_at: Optional[datetime] = None


class MatchHistoryRecord(BaseModel):
    """A match already applied to a pacte."""

    match_id: str
    pacte_id: int
    result: MatchOutcome
    processed_at: datetime


class PacteHistoryEntry(BaseModel):
    """A past or current pacte as seen by one participant."""

    pacte_id: int
    objective: int
    status: PacteStatus
    best_streak_reached: int
    points_gained: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    has_left: bool = False
    was_kicked: bool = False


class KickRecord(BaseModel):
    """One exclusion from a pacte."""

    pacte_id: int
    user_id: str
    display_name: Optional[str] = None
    kicked_at: datetime
    kick_reason: Optional[str] = None
    kicked_by: Optional[str] = None
    points_gained: int = 0


class KickStats(BaseModel):
    """How often a player has been excluded."""

    total_kicks: int = 0
    total_malus: int = 0
    last_kick: Optional[datetime] = None
    by_reason: dict[str, int] = Field(default_factory=dict)


# Operation results


class SignResult(BaseModel):
    all_signed: bool
    signed_count: int
    total_count: int
    activated: bool = False


class LeaveResult(BaseModel):
    remaining_count: int
    pacte_failed: bool = False


class KickResult(BaseModel):
    remaining_count: int
    pacte_failed: bool = False
    malus: int = 0


class UnkickResult(BaseModel):
    refunded: int


class LedgerValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None


class LedgerStats(BaseModel):
    total_matches: int = 0
    wins: int = 0
    losses: int = 0
    unique_pactes: int = 0
    win_rate: float = 0.0


# Game observer data


class LiveMatch(BaseModel):
    """A match a player is currently in."""

    match_id: str
    queue_id: Optional[int] = None


class CompletedMatch(BaseModel):
    """The outcome of a finished match shared by a group of players."""

    match_id: str
    win: bool
    end_time: datetime
    duration_seconds: int

    @property
    def outcome(self) -> MatchOutcome:
        return MatchOutcome.WIN if self.win else MatchOutcome.LOSS


# Pacte updates applied by the progress engine


class MarkInGame(BaseModel):
    kind: Literal["mark_in_game"] = "mark_in_game"
    match_id: str


class MarkMatchEnded(BaseModel):
    kind: Literal["mark_match_ended"] = "mark_match_ended"
    ended_at: datetime


class RecordEmptyResultPoll(BaseModel):
    kind: Literal["record_empty_result_poll"] = "record_empty_result_poll"


class ClearInGame(BaseModel):
    kind: Literal["clear_in_game"] = "clear_in_game"


class RecordWin(BaseModel):
    kind: Literal["record_win"] = "record_win"
    current_wins: int
    best_streak_reached: int


class RecordLoss(BaseModel):
    kind: Literal["record_loss"] = "record_loss"
    best_streak_reached: int


class MarkWarningSent(BaseModel):
    kind: Literal["mark_warning_sent"] = "mark_warning_sent"


class IncrementErrorCount(BaseModel):
    kind: Literal["increment_error_count"] = "increment_error_count"


class TechnicalReset(BaseModel):
    kind: Literal["technical_reset"] = "technical_reset"


class CheckSucceeded(BaseModel):
    kind: Literal["check_succeeded"] = "check_succeeded"
    checked_at: datetime


PacteUpdate = Annotated[
    Union[
        MarkInGame,
        MarkMatchEnded,
        RecordEmptyResultPoll,
        ClearInGame,
        RecordWin,
        RecordLoss,
        MarkWarningSent,
        IncrementErrorCount,
        TechnicalReset,
        CheckSucceeded,
    ],
    Field(discriminator="kind"),
]


# Events emitted for the presentation layer


class PacteEvent(BaseModel):
    """Base class for everything the progress engine announces."""

    pacte_id: int
    channel_id: Optional[str] = None
    participant_ids: list[str] = Field(default_factory=list)
    objective: int


class MatchStarted(PacteEvent):
    match_id: str
    current_wins: int


class MatchWon(PacteEvent):
    current_wins: int
    duration_seconds: int
    match_point: bool = False


class MatchLost(PacteEvent):
    best_streak_reached: int
    duration_seconds: int
    hours_left: int
    so_close: bool = False


class PacteSucceeded(PacteEvent):
    points: int
    duration_seconds: int


class PacteTimedOut(PacteEvent):
    best_streak_reached: int
    points: int
    reward: int
    penalty: int


class PacteExpired(PacteEvent):
    """A pacte that never collected every signature in time."""


class TimeRunningOut(PacteEvent):
    hours_left: int
    current_wins: int
    best_streak_reached: int


class ResultUndetectable(PacteEvent):
    pass


class TechnicalResetEvent(PacteEvent):
    error_count: int
