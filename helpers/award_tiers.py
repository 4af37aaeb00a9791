from __future__ import annotations
from enum import IntEnum


class AwardTier(IntEnum):
    NONE = 0
    PARTICIPATION = 1
    BEATEN = 2
    MASTERED = 3

    @classmethod
    def merge(cls, previous: "AwardTier | int | None", computed: "AwardTier | int | None") -> "AwardTier":
        """Combine a stored tier with a freshly computed one. Tiers only move forward."""
        return cls(max(cls.coerce(previous), cls.coerce(computed)))

    @classmethod
    def coerce(cls, value) -> "AwardTier":
        if isinstance(value, cls):
            return value

        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper(), cls.NONE)

        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.NONE

    @property
    def display_name(self) -> str:
        return _DISPLAY[self][0]

    @property
    def emoji(self) -> str:
        return _DISPLAY[self][1]

    @property
    def color(self) -> int:
        return _DISPLAY[self][2]

    @property
    def points(self) -> int:
        return _DISPLAY[self][3]


# name, emoji, embed colour, challenge points
_DISPLAY = {
    AwardTier.NONE: ("None", "", 0x2F3136, 0),
    AwardTier.PARTICIPATION: ("Participation", "🏁", 0xCD7F32, 1),
    AwardTier.BEATEN: ("Beaten", "⭐", 0xC0C0C0, 4),
    AwardTier.MASTERED: ("Mastered", "✨", 0xFFD700, 7),
}
