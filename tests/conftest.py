from __future__ import annotations
import asyncio
from datetime import datetime, timezone

import pytest

from constants import GAME_TYPE_MONTHLY
from helpers.award_evaluator import GameChallengeDefinition
from helpers.retro_api import UserGameProgress
from helpers.stores import UserStore, ChallengeStore, AwardStore, AnnouncementHistoryStore
from helpers.announcement_ledger import AnnouncementLedger

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class RecordingSink:
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)

    @property
    def awards(self):
        return [e for e in self.events if e.is_award]

    @property
    def achievements(self):
        return [e for e in self.events if not e.is_award]


def monthly_game(**overrides) -> GameChallengeDefinition:
    fields = dict(
        game_id="1234",
        type=GAME_TYPE_MONTHLY,
        progression_achievement_ids=("101", "102"),
        win_achievement_ids=frozenset({"201"}),
        require_progression=True,
        require_all_win_conditions=True,
        mastery_check=True,
        total_achievement_count=10,
        title="Super Metroid",
        month=NOW.month,
        year=NOW.year,
    )
    fields.update(overrides)
    return GameChallengeDefinition(**fields)


def progress_for(username: str, game_id: str, earned, total: int = 10) -> UserGameProgress:
    earned = frozenset(str(x) for x in earned)
    return UserGameProgress(
        username=username,
        game_id=str(game_id),
        earned_achievement_ids=earned,
        total_achievements=total,
        earned_count=len(earned),
        completion_percentage=round(len(earned) / total * 100.0, 2) if total else 0.0,
        game_title="Super Metroid",
        console_name="SNES",
        image_icon="/Images/012345.png",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def users(tmp_path):
    return UserStore(tmp_path / "users.json")


@pytest.fixture
def challenges(tmp_path):
    return ChallengeStore(tmp_path / "challenges.json")


@pytest.fixture
def awards(tmp_path):
    return AwardStore(tmp_path / "awards.json")


@pytest.fixture
def history(tmp_path):
    return AnnouncementHistoryStore(tmp_path / "announcement_history.json")


@pytest.fixture
def ledger(history):
    return AnnouncementLedger(history)
