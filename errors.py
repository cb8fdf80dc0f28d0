"""Exceptions raised by the pacte stores, engine and game observer.

Every error carries a ``user_message`` that command handlers can show as-is.
"""


class PacteError(Exception):
    """Base exception for pacte-related errors."""

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message or message


# Domain rule violations: safe to retry once the precondition is fixed


class DomainRuleViolation(PacteError):
    """A command broke one of the pacte rules. State is left untouched."""


class PacteNotFound(DomainRuleViolation):
    def __init__(self, pacte_id: int):
        super().__init__(f"Pacte {pacte_id} not found", f"Pacte #{pacte_id} does not exist.")
        self.pacte_id = pacte_id


class PacteClosed(DomainRuleViolation):
    def __init__(self, pacte_id: int, status: str):
        super().__init__(
            f"Pacte {pacte_id} is {status}",
            f"Pacte #{pacte_id} is already over ({status}).",
        )
        self.pacte_id = pacte_id
        self.status = status


class InvalidObjective(DomainRuleViolation):
    def __init__(self, objective: int):
        super().__init__(
            f"Invalid objective {objective}",
            "The objective must be between 3 and 10 consecutive wins.",
        )
        self.objective = objective


class InvalidParticipants(DomainRuleViolation):
    def __init__(self, reason: str):
        super().__init__(f"Invalid participants: {reason}", reason)


class UserNotRegistered(DomainRuleViolation):
    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} is not registered",
            f"<@{user_id}> has not linked a Riot account yet. Use `/register` first.",
        )
        self.user_id = user_id


class AlreadyRegistered(DomainRuleViolation):
    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} or Riot account already registered",
            "This Discord or Riot account is already registered.",
        )
        self.user_id = user_id


class AlreadyInPacte(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} already in pacte {pacte_id}",
            f"<@{user_id}> is already committed to pacte #{pacte_id}.",
        )
        self.user_id = user_id
        self.pacte_id = pacte_id


class AlreadyMember(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} is already a member of pacte {pacte_id}",
            f"You are already part of pacte #{pacte_id}.",
        )


class NotAParticipant(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} is not a participant of pacte {pacte_id}",
            f"You are not part of pacte #{pacte_id}.",
        )


class NotActiveParticipant(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} is not an active participant of pacte {pacte_id}",
            f"<@{user_id}> is not an active participant of pacte #{pacte_id}.",
        )


class AlreadySigned(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} already signed pacte {pacte_id}",
            f"You have already signed pacte #{pacte_id}.",
        )


class PacteFull(DomainRuleViolation):
    def __init__(self, pacte_id: int, max_participants: int):
        super().__init__(
            f"Pacte {pacte_id} is full",
            f"Pacte #{pacte_id} already has {max_participants} participants.",
        )


class StreakInProgress(DomainRuleViolation):
    def __init__(self, pacte_id: int):
        super().__init__(
            f"Pacte {pacte_id} already has wins",
            f"Pacte #{pacte_id} already has a streak going, nobody can join now.",
        )


class NotKicked(DomainRuleViolation):
    def __init__(self, user_id: str, pacte_id: int):
        super().__init__(
            f"User {user_id} was not kicked from pacte {pacte_id}",
            f"<@{user_id}> was not excluded from pacte #{pacte_id}.",
        )


class CannotKickSelf(DomainRuleViolation):
    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} tried to kick themselves",
            "You cannot exclude yourself. Use `/pacte leave` instead.",
        )


# Invariant violations: a caller asked for something that must never happen


class InvariantViolation(PacteError):
    """A mutation would break a pacte invariant and was rejected."""


class PacteAlreadyCompleted(InvariantViolation):
    def __init__(self, pacte_id: int, status: str):
        super().__init__(
            f"Pacte {pacte_id} already completed with status {status}",
            f"Pacte #{pacte_id} is already settled.",
        )
        self.pacte_id = pacte_id
        self.status = status


# External dependency failures


class ExternalServiceError(PacteError):
    """The game data provider failed or misbehaved."""


class RiotApiError(ExternalServiceError):
    def __init__(self, status: int, url: str, details: str = ""):
        super().__init__(
            f"Riot API error {status} for {url}: {details[:200]}",
            "The Riot API is not answering right now. Try again later.",
        )
        self.status = status
        self.url = url


class RiotNotFound(RiotApiError):
    """The requested resource does not exist (404)."""


class RiotTransientError(RiotApiError):
    """Server-side or network failure worth retrying."""


class RiotRateLimited(RiotTransientError):
    def __init__(self, url: str, retry_after: float | None):
        super().__init__(429, url, f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after
