"""Tests for award polling and announcement."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from constants import GAME_TYPE_REGULAR, OPEN_PERIOD
from helpers.announcement_ledger import AnnouncementLedger
from helpers.award_tiers import AwardTier
from helpers.polling_scheduler import PollingScheduler, priority_from_velocity
from helpers.retro_api import Achievement, RetroAchievementsAPIError
from helpers.stores import AwardRecord

from conftest import NOW, monthly_game, progress_for


def make_client(earned_by_user=None, recent_by_user=None):
    earned_by_user = earned_by_user or {}
    recent_by_user = recent_by_user or {}

    client = MagicMock()
    client.get_user_game_progress = AsyncMock(
        side_effect=lambda username, game_id: progress_for(username, game_id, earned_by_user.get(username, ()))
    )
    client.get_user_recent_achievements = AsyncMock(
        side_effect=lambda username: list(recent_by_user.get(username, ()))
    )
    client.get_game_info = AsyncMock()
    return client


def earned(ach_id, hours_ago=1, game_id="1234"):
    return Achievement(
        id=str(ach_id),
        game_id=game_id,
        title=f"Achievement {ach_id}",
        points=5,
        date_earned=NOW - timedelta(hours=hours_ago),
    )


@pytest.fixture
def setup_scheduler(users, challenges, awards, ledger, sink):
    def _build(client, **kwargs):
        kwargs.setdefault("sleep", AsyncMock())
        return PollingScheduler(client, users, challenges, awards, ledger, sink, now=lambda: NOW, **kwargs)
    return _build


class TestPriority:
    @pytest.mark.parametrize("velocity,priority", [(0, 0), (1, 1), (10, 1), (11, 2), (20, 2), (21, 3)])
    def test_velocity_thresholds(self, velocity, priority):
        assert priority_from_velocity(velocity) == priority

    def test_recheck_interval_backoff(self, setup_scheduler):
        scheduler = setup_scheduler(make_client(), base_interval=60)
        assert [scheduler.recheck_interval(p) for p in (3, 2, 1, 0)] == [60, 120, 240, 480]

    def test_due_pairs_sorted_by_priority(self, setup_scheduler, users, challenges, awards):
        challenges.add(monthly_game())
        stale = NOW.timestamp() - 24 * 3600
        for name, priority in (("low", 0), ("high", 3), ("mid", 2)):
            users.register(name)
            awards.upsert(AwardRecord(name, "1234", NOW.month, NOW.year, last_checked_at=stale, check_priority=priority))

        scheduler = setup_scheduler(make_client())
        due = scheduler.due_pairs(users.active_users(), challenges.open_definitions(NOW), NOW)

        assert [u.ra_username for u, _, _ in due] == ["high", "mid", "low"]


class TestTick:
    @pytest.mark.asyncio
    async def test_beaten_is_recorded_and_announced(self, setup_scheduler, users, challenges, awards, sink):
        users.register("alice")
        challenges.add(monthly_game())
        scheduler = setup_scheduler(make_client({"alice": ["101", "102", "201"]}))

        report = await scheduler.tick()

        record = awards.get("alice", "1234", NOW.month, NOW.year)
        assert record.award_tier is AwardTier.BEATEN
        assert record.achievement_count == 3
        assert record.last_checked_at == NOW.timestamp()
        assert [e.new_tier for e in sink.awards] == [AwardTier.BEATEN]
        assert report.processed == 1
        assert report.announced == 1

    @pytest.mark.asyncio
    async def test_tier_never_regresses(self, setup_scheduler, users, challenges, awards, sink):
        users.register("alice")
        challenges.add(monthly_game())
        awards.upsert(AwardRecord("alice", "1234", NOW.month, NOW.year, AwardTier.MASTERED, 10, 10))
        scheduler = setup_scheduler(make_client({"alice": ["101"]}))

        await scheduler.tick()

        assert awards.get("alice", "1234", NOW.month, NOW.year).award_tier is AwardTier.MASTERED
        assert sink.awards == []

    @pytest.mark.asyncio
    async def test_not_due_pair_is_skipped(self, setup_scheduler, users, challenges, awards):
        users.register("alice")
        challenges.add(monthly_game())
        awards.upsert(AwardRecord(
            "alice", "1234", NOW.month, NOW.year,
            last_checked_at=NOW.timestamp() - 60, check_priority=3,
        ))
        client = make_client()
        scheduler = setup_scheduler(client)

        report = await scheduler.tick()

        assert report.due == 0
        client.get_user_game_progress.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_ignores_due_time(self, setup_scheduler, users, challenges, awards):
        users.register("alice")
        challenges.add(monthly_game())
        awards.upsert(AwardRecord(
            "alice", "1234", NOW.month, NOW.year,
            last_checked_at=NOW.timestamp() - 60, check_priority=3,
        ))
        client = make_client()
        scheduler = setup_scheduler(client)

        report = await scheduler.tick(force=True)

        assert report.due == 1
        client.get_user_game_progress.assert_awaited_once()
        client.invalidate.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_progress_failure_leaves_record(self, setup_scheduler, users, challenges, awards, sink):
        users.register("alice")
        challenges.add(monthly_game())
        before = AwardRecord("alice", "1234", NOW.month, NOW.year, AwardTier.PARTICIPATION, 1, 10, 1000.0, 1)
        awards.upsert(before)

        client = make_client()
        client.get_user_game_progress.side_effect = RetroAchievementsAPIError("HTTP 503", status=503)
        scheduler = setup_scheduler(client)

        report = await scheduler.tick()

        assert report.failed == 1
        assert awards.get("alice", "1234", NOW.month, NOW.year) == before
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_chunks_sleep_between(self, setup_scheduler, users, challenges):
        for i in range(7):
            users.register(f"user{i}")
        challenges.add(monthly_game())
        sleep = AsyncMock()
        scheduler = setup_scheduler(make_client(), chunk_size=3, chunk_delay=2.0, sleep=sleep)

        report = await scheduler.tick()

        assert report.processed == 7
        assert sleep.await_count == 2
        sleep.assert_awaited_with(2.0)

    @pytest.mark.asyncio
    async def test_no_pairs(self, setup_scheduler):
        report = await setup_scheduler(make_client()).tick()
        assert report.considered == 0
        assert report.due == 0


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_second_tick_returns_immediately(self, setup_scheduler, users, challenges):
        users.register("alice")
        challenges.add(monthly_game())

        gate = asyncio.Event()

        async def slow_progress(username, game_id):
            await gate.wait()
            return progress_for(username, game_id, ["101"])

        client = make_client()
        client.get_user_game_progress = AsyncMock(side_effect=slow_progress)
        scheduler = setup_scheduler(client)

        first = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        assert scheduler.is_running

        assert await scheduler.tick(force=True) is None

        gate.set()
        report = await first
        assert report.processed == 1
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_double_trigger_announces_once(self, setup_scheduler, users, challenges, awards, history, sink, monkeypatch):
        users.register("alice")
        challenges.add(monthly_game())
        recent = [earned("201", hours_ago=1)]
        scheduler = setup_scheduler(make_client({"alice": ["101", "102", "201"]}, {"alice": recent}))

        def disk_full(*args):
            raise OSError("disk full")

        # neither the award record nor the history reach disk
        monkeypatch.setattr(history, "write", disk_full)
        monkeypatch.setattr(awards, "save", disk_full)

        first = await scheduler.tick()
        second = await scheduler.tick(force=True)

        assert first.processed == 1
        assert second.processed == 1
        assert len(sink.awards) == 1
        assert len(sink.achievements) == 1
        assert history.history("alice") == []
        assert awards.get("alice", "1234", NOW.month, NOW.year) is None


class TestAchievementAnnouncements:
    @pytest.mark.asyncio
    async def test_announced_oldest_first_and_once(self, setup_scheduler, users, challenges, sink):
        users.register("alice")
        challenges.add(monthly_game())
        recent = [earned("102", hours_ago=1), earned("101", hours_ago=3), earned("999", game_id="42")]
        scheduler = setup_scheduler(make_client({"alice": ["101", "102"]}, {"alice": recent}))

        await scheduler.tick()
        await scheduler.tick(force=True)

        assert [e.achievement.id for e in sink.achievements] == ["101", "102"]

    @pytest.mark.asyncio
    async def test_old_achievements_not_announced(self, setup_scheduler, users, challenges, sink):
        users.register("alice")
        challenges.add(monthly_game())
        recent = [earned("101", hours_ago=24 * 8)]
        scheduler = setup_scheduler(make_client({"alice": ["101"]}, {"alice": recent}))

        await scheduler.tick()

        assert sink.achievements == []

    @pytest.mark.asyncio
    async def test_recent_fetched_once_per_user(self, setup_scheduler, users, challenges):
        users.register("alice")
        challenges.add(monthly_game())
        challenges.add(monthly_game(game_id="5678", title="Zelda"))
        client = make_client()
        scheduler = setup_scheduler(client)

        report = await scheduler.tick()

        assert report.processed == 2
        assert client.get_user_recent_achievements.await_count == 1

    @pytest.mark.asyncio
    async def test_recent_failure_still_awards(self, setup_scheduler, users, challenges, sink):
        users.register("alice")
        challenges.add(monthly_game())
        client = make_client({"alice": ["101", "102", "201"]})
        client.get_user_recent_achievements.side_effect = RetroAchievementsAPIError("HTTP 500", status=500)
        scheduler = setup_scheduler(client)

        report = await scheduler.tick()

        assert report.processed == 1
        assert sink.achievements == []
        assert [e.new_tier for e in sink.awards] == [AwardTier.BEATEN]

    @pytest.mark.asyncio
    async def test_sink_failure_keeps_record(self, setup_scheduler, users, challenges, awards, ledger):
        users.register("alice")
        challenges.add(monthly_game())
        broken_sink = MagicMock()
        broken_sink.emit = AsyncMock(side_effect=RuntimeError("discord down"))
        scheduler = PollingScheduler(
            make_client({"alice": ["101", "102", "201"]}),
            users, challenges, awards, ledger, broken_sink,
            now=lambda: NOW, sleep=AsyncMock(),
        )

        report = await scheduler.tick()

        assert awards.get("alice", "1234", NOW.month, NOW.year).award_tier is AwardTier.BEATEN
        assert report.processed == 1
        assert report.announced == 0


class TestVelocity:
    @pytest.mark.asyncio
    async def test_busy_user_gets_priority(self, setup_scheduler, users, challenges, awards):
        users.register("alice")
        challenges.add(monthly_game(total_achievement_count=30))
        recent = [earned(str(i), hours_ago=1) for i in range(12)]
        scheduler = setup_scheduler(make_client({"alice": [str(i) for i in range(12)]}, {"alice": recent}))

        await scheduler.tick()

        assert awards.get("alice", "1234", NOW.month, NOW.year).check_priority == 2

    @pytest.mark.asyncio
    async def test_idle_user_decays(self, setup_scheduler, users, challenges, awards):
        users.register("alice")
        challenges.add(monthly_game())
        awards.upsert(AwardRecord(
            "alice", "1234", NOW.month, NOW.year,
            last_checked_at=NOW.timestamp() - 7200, check_priority=3,
        ))
        scheduler = setup_scheduler(make_client())

        await scheduler.tick()

        assert awards.get("alice", "1234", NOW.month, NOW.year).check_priority == 2


class TestAwardReset:
    @pytest.mark.asyncio
    async def test_reset_reannounces_award_but_not_achievements(self, setup_scheduler, users, challenges, awards, ledger, sink):
        users.register("alice")
        challenges.add(monthly_game())
        scheduler = setup_scheduler(make_client({"alice": ["101", "102", "201"]}, {"alice": [earned("201")]}))

        await scheduler.tick()
        assert awards.delete("alice", "1234", NOW.month, NOW.year)
        assert ledger.forget_awards("alice", "1234") == 1
        await scheduler.tick(force=True)

        assert [e.achievement.id for e in sink.achievements] == ["201"]
        assert [e.new_tier for e in sink.awards] == [AwardTier.BEATEN, AwardTier.BEATEN]

    @pytest.mark.asyncio
    async def test_reset_after_restart_keeps_achievements_deduped(self, users, challenges, awards, history, sink):
        users.register("alice")
        challenges.add(monthly_game())
        client = make_client({"alice": ["101", "102", "201"]}, {"alice": [earned("201")]})

        first = PollingScheduler(client, users, challenges, awards, AnnouncementLedger(history), sink, now=lambda: NOW, sleep=AsyncMock())
        await first.tick()

        restarted = AnnouncementLedger(history)
        restarted.warm()
        restarted.forget_awards("alice", "1234")
        awards.delete("alice", "1234", NOW.month, NOW.year)
        second = PollingScheduler(client, users, challenges, awards, restarted, sink, now=lambda: NOW, sleep=AsyncMock())
        await second.tick()

        assert len(sink.achievements) == 1
        assert len(sink.awards) == 2


class TestRegularGames:
    @pytest.mark.asyncio
    async def test_one_record_across_months(self, users, challenges, awards, ledger, sink):
        users.register("alice")
        challenges.add(monthly_game(type=GAME_TYPE_REGULAR, month=None, year=None, mastery_check=False))
        client = make_client({"alice": ["101", "102", "201"]})

        for month in (3, 4, 5):
            now = datetime(2025, month, 15, 12, 0, tzinfo=timezone.utc)
            scheduler = PollingScheduler(client, users, challenges, awards, ledger, sink, now=lambda: now, sleep=AsyncMock())
            await scheduler.tick(force=True)

        records = awards.for_user("alice")
        assert [(r.month, r.year) for r in records] == [OPEN_PERIOD]
        assert sum(r.award_tier.points for r in records) == AwardTier.BEATEN.points
        assert awards.get("alice", "1234", 4, 2025) is None
        assert len(sink.awards) == 1
