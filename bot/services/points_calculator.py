"""Points calculator for pacte rewards and penalties."""

# Base reward by objective
POINTS_TABLE = {
    3: 5,
    4: 15,
    5: 40,
    6: 100,
    7: 250,
    8: 400,
    9: 550,
    10: 700,
}

BONUS_PER_WIN = 2
MALUS_PER_MISSING_WIN = 10
EXTRA_WIN_POINTS = 150


def reward(objective: int, wins_achieved: int) -> int:
    """Calculate the reward for a pacte objective and the wins reached.

    Objectives above the table are extrapolated by ``EXTRA_WIN_POINTS`` per
    extra win. Each win achieved adds a small partial-progress bonus.
    """
    if objective <= 10:
        base_points = POINTS_TABLE[objective]
    else:
        base_points = POINTS_TABLE[10] + (objective - 10) * EXTRA_WIN_POINTS

    return base_points + wins_achieved * BONUS_PER_WIN


def penalty(objective: int, best_streak_reached: int) -> int:
    """Calculate the penalty for missing the objective. Never negative."""
    return max(0, (objective - best_streak_reached) * MALUS_PER_MISSING_WIN)


def settle(objective: int, best_streak_reached: int, succeeded: bool) -> int:
    """Final points per participant when a pacte ends. May be negative on failure."""
    if succeeded:
        return reward(objective, objective)
    return reward(objective, best_streak_reached) - penalty(objective, best_streak_reached)


def leave_malus(objective: int, best_streak_reached: int) -> int:
    """Malus charged to a participant who abandons a pacte."""
    return penalty(objective, best_streak_reached)


def kick_malus(leave_malus_points: int, multiplier: float) -> int:
    """Malus charged for an exclusion, scaled from the leave malus."""
    return round(leave_malus_points * multiplier)
