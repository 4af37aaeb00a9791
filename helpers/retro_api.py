from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aiohttp

from constants import (
    RA_API_URL,
    RECENT_ACHIEVEMENT_LIMIT,
    RECENT_ACHIEVEMENT_MINUTES,
    RECENT_CACHE_SECONDS,
    PROGRESS_CACHE_SECONDS,
    GAME_INFO_CACHE_SECONDS,
)
from helpers.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

TIMEOUT = aiohttp.ClientTimeout(total=25)

BASE_HEADERS = {
    "Accept": "application/json,text/plain,*/*",
    "User-Agent": "challenge-award-tracker/1.0 (+discord bot)",
}


@dataclass(frozen=True)
class Achievement:
    id: str
    game_id: str
    title: str = ""
    description: str = ""
    points: int = 0
    badge_name: str = ""
    date_earned: datetime | None = None
    hardcore: bool = False
    game_title: str = ""
    console_name: str = ""

    @property
    def earned(self) -> bool:
        return self.date_earned is not None

    @property
    def earned_ts(self) -> int:
        return int(self.date_earned.timestamp()) if self.date_earned else 0


@dataclass(frozen=True)
class GameInfo:
    game_id: str
    title: str
    console_name: str = ""
    image_icon: str = ""


@dataclass(frozen=True)
class UserGameProgress:
    username: str
    game_id: str
    earned_achievement_ids: frozenset[str]
    total_achievements: int
    earned_count: int
    completion_percentage: float
    achievements: tuple[Achievement, ...] = ()
    game_title: str = ""
    console_name: str = ""
    image_icon: str = ""


class RetroAchievementsAPIError(RuntimeError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _snippet(text: str, n: int = 300) -> str:
    s = (text or "")[:n]
    return " ".join(s.split())


def _int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_ra_datetime(raw) -> datetime | None:
    """RA returns ``YYYY-MM-DD HH:MM:SS`` in UTC, sometimes ISO with a Z."""
    if not raw:
        return None

    text = str(raw).strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(text.replace(" ", "T", 1))
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_achievement(raw: dict | None, game_id: str | None = None) -> Achievement | None:
    if not isinstance(raw, dict):
        return None

    ach_id = raw.get("ID") or raw.get("AchievementID") or raw.get("id")
    gid = raw.get("GameID") or raw.get("gameId") or game_id
    if ach_id is None or gid is None:
        return None

    hardcore_date = parse_ra_datetime(raw.get("DateEarnedHardcore"))
    earned = hardcore_date or parse_ra_datetime(raw.get("DateEarned") or raw.get("Date"))

    return Achievement(
        id=str(ach_id),
        game_id=str(gid),
        title=str(raw.get("Title") or ""),
        description=str(raw.get("Description") or ""),
        points=_int(raw.get("Points")),
        badge_name=str(raw.get("BadgeName") or ""),
        date_earned=earned,
        hardcore=hardcore_date is not None or bool(_int(raw.get("HardcoreMode"))),
        game_title=str(raw.get("GameTitle") or ""),
        console_name=str(raw.get("ConsoleName") or ""),
    )


def _parse_percent(raw) -> float | None:
    if raw is None:
        return None
    try:
        return float(str(raw).strip().rstrip("%"))
    except ValueError:
        return None


def parse_game_progress(username: str, game_id: str, data: Any) -> UserGameProgress:
    if not isinstance(data, dict):
        data = {}

    raw_achievements = data.get("Achievements") or {}
    if isinstance(raw_achievements, dict):
        raw_achievements = list(raw_achievements.values())
    if not isinstance(raw_achievements, list):
        raw_achievements = []

    achievements = []
    for raw in raw_achievements:
        ach = parse_achievement(raw, game_id=str(game_id))
        if ach is not None:
            achievements.append(ach)

    earned_ids = frozenset(a.id for a in achievements if a.earned)
    total = _int(data.get("NumAchievements"), len(achievements))
    earned_count = len(earned_ids)

    percent = _parse_percent(data.get("UserCompletionHardcore")) or _parse_percent(data.get("UserCompletion"))
    if percent is None:
        percent = round(earned_count / total * 100.0, 2) if total else 0.0

    return UserGameProgress(
        username=username,
        game_id=str(game_id),
        earned_achievement_ids=earned_ids,
        total_achievements=total,
        earned_count=earned_count,
        completion_percentage=percent,
        achievements=tuple(achievements),
        game_title=str(data.get("Title") or ""),
        console_name=str(data.get("ConsoleName") or ""),
        image_icon=str(data.get("ImageIcon") or ""),
    )


def parse_game_info(game_id: str, data: Any) -> GameInfo:
    if not isinstance(data, dict):
        data = {}
    return GameInfo(
        game_id=str(game_id),
        title=str(data.get("Title") or data.get("GameTitle") or f"Game {game_id}"),
        console_name=str(data.get("ConsoleName") or ""),
        image_icon=str(data.get("ImageIcon") or data.get("GameIcon") or ""),
    )


async def _read_json_lenient(resp: aiohttp.ClientResponse) -> Any:
    text = await resp.text()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise RetroAchievementsAPIError(
            f"RetroAchievements did not return JSON. "
            f"status={resp.status} content_type={resp.headers.get('Content-Type')} "
            f"snippet={_snippet(text)!r}",
            status=resp.status,
        )


class RetroAchievementsClient:
    def __init__(
        self,
        username: str,
        api_key: str,
        rate_limiter: RateLimiter,
        session: aiohttp.ClientSession | None = None,
        *,
        clock=time.monotonic,
    ):
        self.username = username
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._cache: dict[str, tuple[float, Any]] = {}

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _cached(self, key: str, ttl: float):
        hit = self._cache.get(key)
        if hit is None:
            return None
        stored_at, data = hit
        if self._clock() - stored_at > ttl:
            self._cache.pop(key, None)
            return None
        return data

    def _store(self, key: str, data):
        self._cache[key] = (self._clock(), data)

    def invalidate(self, username: str | None = None):
        if username is None:
            self._cache.clear()
            return
        needle = f":{username.lower()}:"
        for key in [k for k in self._cache if needle in k]:
            self._cache.pop(key, None)

    async def _request(self, endpoint: str, params: dict) -> Any:
        session = self._ensure_session()
        query = {"z": self.username, "y": self.api_key, **params}

        async with session.get(
            f"{RA_API_URL}{endpoint}",
            params=query,
            headers=BASE_HEADERS,
            timeout=TIMEOUT,
        ) as r:
            if r.status >= 400:
                text = await r.text()
                raise RetroAchievementsAPIError(
                    f"RetroAchievements {endpoint} HTTP {r.status}. snippet={_snippet(text)!r}",
                    status=r.status,
                )
            return await _read_json_lenient(r)

    async def _get(self, endpoint: str, params: dict) -> Any:
        return await self.rate_limiter.add(self._request, endpoint, params)

    async def get_user_recent_achievements(self, username: str, limit: int = RECENT_ACHIEVEMENT_LIMIT) -> list[Achievement]:
        key = f"recent:{username.lower()}:{limit}"
        cached = self._cached(key, RECENT_CACHE_SECONDS)
        if cached is not None:
            return cached

        data = await self._get(
            "API_GetUserRecentAchievements.php",
            {"u": username, "m": RECENT_ACHIEVEMENT_MINUTES},
        )

        items = data if isinstance(data, list) else []
        achievements = []
        for raw in items:
            ach = parse_achievement(raw)
            if ach is not None:
                achievements.append(ach)

        achievements = achievements[:limit]
        self._store(key, achievements)
        return achievements

    async def get_user_game_progress(self, username: str, game_id: str) -> UserGameProgress:
        key = f"progress:{username.lower()}:{game_id}"
        cached = self._cached(key, PROGRESS_CACHE_SECONDS)
        if cached is not None:
            return cached

        data = await self._get("API_GetGameInfoAndUserProgress.php", {"g": game_id, "u": username})
        progress = parse_game_progress(username, str(game_id), data)
        self._store(key, progress)
        return progress

    async def get_game_info(self, game_id: str) -> GameInfo:
        key = f"game:{game_id}"
        cached = self._cached(key, GAME_INFO_CACHE_SECONDS)
        if cached is not None:
            return cached

        data = await self._get("API_GetGame.php", {"i": game_id})
        info = parse_game_info(str(game_id), data)
        self._store(key, info)
        return info
