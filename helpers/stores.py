from __future__ import annotations
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

from constants import OPEN_PERIOD
from helpers.award_evaluator import GameChallengeDefinition, definition_from_dict
from helpers.award_tiers import AwardTier

logger = logging.getLogger(__name__)


class JsonStore:
    """Whole-file JSON document. Reads never fail, writes raise ``OSError``."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            raw = self.path.read_text(encoding="utf-8").strip()
            if not raw:
                return {}

            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not read %s, starting empty", self.path, exc_info=True)
            return {}

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)


@dataclass(frozen=True)
class RegisteredUser:
    ra_username: str
    discord_id: int | None = None
    active: bool = True


class UserStore(JsonStore):
    def register(self, ra_username: str, discord_id: int | None = None) -> RegisteredUser:
        data = self.load()
        user = RegisteredUser(ra_username=ra_username.strip(), discord_id=discord_id, active=True)
        data[user.ra_username.lower()] = asdict(user)
        self.save(data)
        return user

    def unregister(self, ra_username: str) -> bool:
        data = self.load()
        entry = data.get(ra_username.strip().lower())
        if not isinstance(entry, dict):
            return False
        entry["active"] = False
        self.save(data)
        return True

    def get(self, ra_username: str) -> RegisteredUser | None:
        entry = self.load().get(ra_username.strip().lower())
        return self._to_user(entry)

    def by_discord_id(self, discord_id: int) -> RegisteredUser | None:
        for entry in self.load().values():
            user = self._to_user(entry)
            if user and user.discord_id == discord_id:
                return user
        return None

    def active_users(self) -> List[RegisteredUser]:
        users = [self._to_user(e) for e in self.load().values()]
        return [u for u in users if u is not None and u.active]

    def _to_user(self, entry) -> RegisteredUser | None:
        if not isinstance(entry, dict) or not entry.get("ra_username"):
            return None
        discord_id = entry.get("discord_id")
        return RegisteredUser(
            ra_username=str(entry["ra_username"]),
            discord_id=int(discord_id) if discord_id is not None else None,
            active=bool(entry.get("active", True)),
        )


class ChallengeStore(JsonStore):
    def _key(self, definition: GameChallengeDefinition) -> str:
        return f"{definition.period_key}:{definition.game_id}"

    def add(self, definition: GameChallengeDefinition) -> None:
        data = self.load()
        data[self._key(definition)] = definition.to_dict()
        self.save(data)

    def remove(self, game_id: str, month: int | None = None, year: int | None = None) -> bool:
        data = self.load()
        matches = [
            key for key, doc in data.items()
            if isinstance(doc, dict)
            and str(doc.get("game_id")) == str(game_id)
            and (month is None or doc.get("month") == month)
            and (year is None or doc.get("year") == year)
        ]
        for key in matches:
            data.pop(key, None)
        if matches:
            self.save(data)
        return bool(matches)

    def set_revealed(self, game_id: str, month: int, year: int, revealed: bool = True) -> GameChallengeDefinition | None:
        data = self.load()
        for key, doc in data.items():
            if (
                isinstance(doc, dict)
                and str(doc.get("game_id")) == str(game_id)
                and doc.get("month") == month
                and doc.get("year") == year
            ):
                doc["shadow_revealed"] = revealed
                self.save(data)
                return definition_from_dict(doc)
        return None

    def all_definitions(self) -> List[GameChallengeDefinition]:
        out = []
        for key, doc in self.load().items():
            definition = definition_from_dict(doc)
            if definition is None:
                logger.warning("Skipping malformed challenge definition %s", key)
                continue
            out.append(definition)
        return out

    def open_definitions(self, now: datetime) -> List[GameChallengeDefinition]:
        return [d for d in self.all_definitions() if d.is_open(now)]

    def find(self, game_id: str, now: datetime) -> GameChallengeDefinition | None:
        for definition in self.open_definitions(now):
            if definition.game_id == str(game_id):
                return definition
        return None


@dataclass
class AwardRecord:
    username: str
    game_id: str
    month: int
    year: int
    award_tier: AwardTier = AwardTier.NONE
    achievement_count: int = 0
    total_achievements: int = 0
    last_checked_at: float | None = None
    check_priority: int = 0

    @property
    def key(self) -> str:
        return award_key(self.username, self.game_id, self.month, self.year)

    @property
    def period(self) -> str:
        return period_label(self.month, self.year)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["award_tier"] = self.award_tier.name
        return data

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "AwardRecord":
        last_checked = doc.get("last_checked_at")
        return cls(
            username=str(doc["username"]),
            game_id=str(doc["game_id"]),
            month=int(doc["month"]),
            year=int(doc["year"]),
            award_tier=AwardTier.coerce(doc.get("award_tier")),
            achievement_count=int(doc.get("achievement_count") or 0),
            total_achievements=int(doc.get("total_achievements") or 0),
            last_checked_at=float(last_checked) if last_checked is not None else None,
            check_priority=max(0, min(3, int(doc.get("check_priority") or 0))),
        )


def period_label(month: int, year: int) -> str:
    if (month, year) == OPEN_PERIOD:
        return "always"
    return f"{year}-{month:02d}"


def award_key(username: str, game_id: str, month: int, year: int) -> str:
    return f"{username.lower()}:{game_id}:{period_label(month, year)}"


class AwardStore(JsonStore):
    def get(self, username: str, game_id: str, month: int, year: int) -> AwardRecord | None:
        doc = self.load().get(award_key(username, game_id, month, year))
        if not isinstance(doc, dict):
            return None
        try:
            return AwardRecord.from_dict(doc)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed award record for %s on %s", username, game_id)
            return None

    def upsert(self, record: AwardRecord) -> None:
        data = self.load()
        data[record.key] = record.to_dict()
        self.save(data)

    def delete(self, username: str, game_id: str, month: int, year: int) -> bool:
        data = self.load()
        if data.pop(award_key(username, game_id, month, year), None) is None:
            return False
        self.save(data)
        return True

    def for_user(self, username: str) -> List[AwardRecord]:
        prefix = f"{username.lower()}:"
        out = []
        for key, doc in self.load().items():
            if not key.startswith(prefix) or not isinstance(doc, dict):
                continue
            try:
                out.append(AwardRecord.from_dict(doc))
            except (KeyError, TypeError, ValueError):
                continue
        return sorted(out, key=lambda r: (r.year, r.month, r.game_id))


class AnnouncementHistoryStore(JsonStore):
    """Per-user list of announcement identifiers, oldest first."""

    def history(self, username: str) -> List[str]:
        raw = self.load().get(username.lower(), [])
        return [str(x) for x in raw] if isinstance(raw, list) else []

    def usernames(self) -> List[str]:
        return list(self.load().keys())

    def write(self, username: str, keys: List[str]) -> None:
        data = self.load()
        data[username.lower()] = list(keys)
        self.save(data)

    def remove_where(self, username: str, predicate: Callable[[str], bool]) -> int:
        data = self.load()
        history = data.get(username.lower())
        if not isinstance(history, list):
            return 0
        kept = [k for k in history if not predicate(str(k))]
        removed = len(history) - len(kept)
        if removed:
            data[username.lower()] = kept
            self.save(data)
        return removed
