"""Award tier evaluation for challenge games.

Everything here is pure: the same definition and earned set always give the
same tier. Callers combine the result with the stored tier through
``AwardTier.merge`` so a record never moves backwards within its period.

Win conditions: an empty win set counts as satisfied. A game with no declared
win achievement is beaten on progression alone.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Iterable

from constants import GAME_TYPE_MONTHLY, GAME_TYPE_SHADOW, GAME_TYPE_REGULAR, OPEN_PERIOD
from helpers.award_tiers import AwardTier

logger = logging.getLogger(__name__)

GAME_TYPES = (GAME_TYPE_MONTHLY, GAME_TYPE_SHADOW, GAME_TYPE_REGULAR)


@dataclass(frozen=True)
class GameChallengeDefinition:
    game_id: str
    type: str = GAME_TYPE_MONTHLY
    progression_achievement_ids: tuple[str, ...] = ()
    win_achievement_ids: frozenset[str] = field(default_factory=frozenset)
    require_progression: bool = False
    require_all_win_conditions: bool = False
    mastery_check: bool = False
    total_achievement_count: int = 0
    title: str = ""
    month: int | None = None
    year: int | None = None
    shadow_revealed: bool = True

    @property
    def period_key(self) -> str:
        if self.month is None or self.year is None:
            return "always"
        return f"{self.year}-{self.month:02d}"

    @property
    def record_period(self) -> tuple[int, int]:
        """(month, year) award records for this game are stored under."""
        if self.month is None or self.year is None:
            return OPEN_PERIOD
        return self.month, self.year

    def is_open(self, now: datetime) -> bool:
        if self.type == GAME_TYPE_SHADOW and not self.shadow_revealed:
            return False

        if self.month is None or self.year is None:
            return self.type == GAME_TYPE_REGULAR

        return self.month == now.month and self.year == now.year

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progression_achievement_ids"] = list(self.progression_achievement_ids)
        data["win_achievement_ids"] = sorted(self.win_achievement_ids)
        return data


def _id_list(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, int)):
        raw = [raw]
    return [str(x).strip() for x in raw if str(x).strip()]


def definition_from_dict(doc: dict | None) -> GameChallengeDefinition | None:
    if not isinstance(doc, dict):
        return None

    game_id = str(doc.get("game_id") or "").strip()
    if not game_id:
        return None

    game_type = str(doc.get("type") or GAME_TYPE_MONTHLY).upper()
    if game_type not in GAME_TYPES:
        logger.warning("Unknown game type %r for game %s, treating as regular", game_type, game_id)
        game_type = GAME_TYPE_REGULAR

    try:
        month = int(doc["month"]) if doc.get("month") is not None else None
        year = int(doc["year"]) if doc.get("year") is not None else None
        total = int(doc.get("total_achievement_count") or 0)
    except (TypeError, ValueError):
        logger.warning("Malformed challenge definition for game %s", game_id)
        return None

    return GameChallengeDefinition(
        game_id=game_id,
        type=game_type,
        progression_achievement_ids=tuple(_id_list(doc.get("progression_achievement_ids"))),
        win_achievement_ids=frozenset(_id_list(doc.get("win_achievement_ids"))),
        require_progression=bool(doc.get("require_progression", False)),
        require_all_win_conditions=bool(doc.get("require_all_win_conditions", False)),
        mastery_check=bool(doc.get("mastery_check", False)),
        total_achievement_count=total,
        title=str(doc.get("title") or ""),
        month=month,
        year=year,
        shadow_revealed=bool(doc.get("shadow_revealed", True)),
    )


def progression_in_order(progression: Iterable[str], earned: set[str]) -> bool:
    """Every earned progression achievement must have all earlier ones earned.

    Order is the declared sequence, not the order the user earned them in.
    """
    gap_seen = False
    for ach_id in progression:
        if ach_id in earned:
            if gap_seen:
                return False
        else:
            gap_seen = True
    return True


def progression_met(definition: GameChallengeDefinition, earned: set[str]) -> bool:
    if not definition.require_progression:
        return True

    progression = definition.progression_achievement_ids
    earned_progression = [ach_id for ach_id in progression if ach_id in earned]

    return len(earned_progression) == len(progression) and progression_in_order(progression, earned)


def win_condition_met(definition: GameChallengeDefinition, earned: set[str]) -> bool:
    wins = definition.win_achievement_ids
    if not wins:
        return True

    if definition.require_all_win_conditions:
        return wins <= earned

    return len(wins & earned) > 0


def evaluate_award(definition: GameChallengeDefinition | None, earned_ids, total_achievements: int | None = None) -> AwardTier:
    """Compute the tier reached on ``definition`` with ``earned_ids``.

    ``total_achievements`` is only consulted when the definition does not
    declare its own achievement count. Malformed input gives ``NONE``.
    """
    try:
        if definition is None or earned_ids is None or isinstance(earned_ids, (str, bytes)):
            return AwardTier.NONE

        earned = {str(x) for x in earned_ids}
        if not earned:
            return AwardTier.NONE

        tier = AwardTier.PARTICIPATION

        if progression_met(definition, earned) and win_condition_met(definition, earned):
            tier = AwardTier.BEATEN

        total = definition.total_achievement_count or int(total_achievements or 0)
        if (
            definition.type == GAME_TYPE_MONTHLY
            and definition.mastery_check
            and total > 0
            and len(earned) == total
        ):
            tier = AwardTier.MASTERED

        return tier
    except (TypeError, ValueError, AttributeError):
        logger.warning("Could not evaluate award for %r", definition, exc_info=True)
        return AwardTier.NONE
