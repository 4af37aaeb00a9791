"""Polling of (user, challenge game) pairs against the RetroAchievements API.

Each tick picks the pairs whose award record is stale for its priority,
processes them highest priority first in small concurrent chunks, and for
each pair:

1. fetches the user's progress (and, once per user per tick, their recent
   achievements) through the rate-limited client,
2. evaluates the award tier and merges it with the stored one,
3. upserts the award record,
4. announces new achievements and a tier increase through the ledger.

A failed fetch skips the pair for this tick without touching
``last_checked_at``. A failed announcement never undoes the record update.
Ticks do not overlap: a tick requested while one is running returns None.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from constants import (
    BASE_RECHECK_SECONDS,
    MAX_BACKOFF_MULTIPLIER,
    POLL_CHUNK_SIZE,
    POLL_CHUNK_DELAY_SECONDS,
    MAX_ANNOUNCE_AGE_SECONDS,
    ENTRY_ACHIEVEMENT,
    ENTRY_AWARD,
)
from helpers.announcement_ledger import AnnouncementEntry, AnnouncementLedger
from helpers.announcements import AnnouncementSink, AwardEvent
from helpers.award_evaluator import GameChallengeDefinition, evaluate_award
from helpers.award_tiers import AwardTier
from helpers.retro_api import Achievement, GameInfo, RetroAchievementsClient, UserGameProgress
from helpers.stores import AwardRecord, AwardStore, ChallengeStore, RegisteredUser, UserStore

logger = logging.getLogger(__name__)

MAX_PRIORITY = 3


def priority_from_velocity(velocity: int) -> int:
    if velocity > 20:
        return 3
    if velocity > 10:
        return 2
    if velocity > 0:
        return 1
    return 0


@dataclass
class TickReport:
    considered: int = 0
    due: int = 0
    processed: int = 0
    failed: int = 0
    announced: int = 0


class PollingScheduler:
    def __init__(
        self,
        client: RetroAchievementsClient,
        users: UserStore,
        challenges: ChallengeStore,
        awards: AwardStore,
        ledger: AnnouncementLedger,
        sink: AnnouncementSink,
        *,
        base_interval: float = BASE_RECHECK_SECONDS,
        max_backoff: int = MAX_BACKOFF_MULTIPLIER,
        chunk_size: int = POLL_CHUNK_SIZE,
        chunk_delay: float = POLL_CHUNK_DELAY_SECONDS,
        max_announce_age: float = MAX_ANNOUNCE_AGE_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.client = client
        self.users = users
        self.challenges = challenges
        self.awards = awards
        self.ledger = ledger
        self.sink = sink

        self.base_interval = base_interval
        self.backoff = {3: 1, 2: 2, 1: 4, 0: max(max_backoff, 4)}
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay = chunk_delay
        self.max_announce_age = max_announce_age

        self._now = now
        self._sleep = sleep
        self._running = False
        self._recent: dict[str, asyncio.Task] = {}
        self.last_report: TickReport | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def recheck_interval(self, priority: int) -> float:
        priority = max(0, min(MAX_PRIORITY, int(priority)))
        return self.base_interval * self.backoff[priority]

    def is_due(self, record: AwardRecord | None, now_ts: float) -> bool:
        if record is None or record.last_checked_at is None:
            return True
        return now_ts - record.last_checked_at > self.recheck_interval(record.check_priority)

    def due_pairs(
        self,
        users: list[RegisteredUser],
        definitions: list[GameChallengeDefinition],
        now: datetime,
        force: bool = False,
    ) -> list[tuple[RegisteredUser, GameChallengeDefinition, AwardRecord | None]]:
        now_ts = now.timestamp()
        due = []
        for user in users:
            for definition in definitions:
                month, year = definition.record_period
                record = self.awards.get(user.ra_username, definition.game_id, month, year)
                if force or self.is_due(record, now_ts):
                    due.append((user, definition, record))

        due.sort(key=lambda item: item[2].check_priority if item[2] else 0, reverse=True)
        return due

    async def tick(self, force: bool = False) -> TickReport | None:
        if self._running:
            logger.info("Award poll already running, skipping this trigger")
            return None

        self._running = True
        try:
            if force:
                self.client.invalidate()
            report = await self._run_tick(force)
            self.last_report = report
            return report
        finally:
            self._recent.clear()
            self._running = False

    async def _run_tick(self, force: bool) -> TickReport:
        now = self._now()
        users = self.users.active_users()
        definitions = self.challenges.open_definitions(now)

        report = TickReport(considered=len(users) * len(definitions))
        due = self.due_pairs(users, definitions, now, force)
        report.due = len(due)

        if not due:
            return report

        chunks = [due[i:i + self.chunk_size] for i in range(0, len(due), self.chunk_size)]
        logger.info("Checking %d of %d award pairs in %d chunks", len(due), report.considered, len(chunks))

        for idx, chunk in enumerate(chunks):
            await asyncio.gather(*(
                self._process_safely(user, definition, record, now, report)
                for user, definition, record in chunk
            ))
            if idx < len(chunks) - 1:
                await self._sleep(self.chunk_delay)

        logger.info(
            "Award poll done: processed=%d failed=%d announced=%d",
            report.processed, report.failed, report.announced,
        )
        return report

    async def _process_safely(self, user, definition, record, now, report: TickReport):
        try:
            if await self.process_pair(user, definition, record, now, report):
                report.processed += 1
            else:
                report.failed += 1
        except Exception:
            logger.exception("Unexpected error checking %s on game %s", user.ra_username, definition.game_id)
            report.failed += 1

    async def _fetch_recent(self, username: str) -> list[Achievement] | None:
        try:
            return await self.client.get_user_recent_achievements(username)
        except Exception:
            logger.warning("Could not fetch recent achievements for %s", username, exc_info=True)
            return None

    async def recent_for(self, username: str) -> list[Achievement] | None:
        key = username.lower()
        task = self._recent.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_recent(username))
            self._recent[key] = task
        return await task

    async def process_pair(
        self,
        user: RegisteredUser,
        definition: GameChallengeDefinition,
        record: AwardRecord | None,
        now: datetime,
        report: TickReport | None = None,
    ) -> bool:
        """Reconcile one pair. Returns False when the progress fetch failed."""
        username = user.ra_username
        now_ts = now.timestamp()

        recent = await self.recent_for(username)

        try:
            progress = await self.client.get_user_game_progress(username, definition.game_id)
        except Exception:
            logger.exception("Could not fetch progress for %s on game %s", username, definition.game_id)
            return False

        previous = record.award_tier if record else AwardTier.NONE
        computed = evaluate_award(definition, progress.earned_achievement_ids, progress.total_achievements)
        merged = AwardTier.merge(previous, computed)

        game_recent = []
        if recent is not None:
            game_recent = sorted(
                (a for a in recent if a.game_id == definition.game_id and a.earned),
                key=lambda a: a.earned_ts,
            )

        since = record.last_checked_at if record else None
        if recent is not None:
            velocity = sum(1 for a in game_recent if since is None or a.earned_ts > since)
        elif record is not None:
            velocity = max(0, progress.earned_count - record.achievement_count)
        else:
            velocity = 0

        previous_priority = record.check_priority if record else 0
        priority = priority_from_velocity(velocity) if velocity > 0 else max(0, previous_priority - 1)

        month, year = definition.record_period
        updated = AwardRecord(
            username=username,
            game_id=definition.game_id,
            month=month,
            year=year,
            award_tier=merged,
            achievement_count=progress.earned_count,
            total_achievements=progress.total_achievements,
            last_checked_at=now_ts,
            check_priority=priority,
        )
        try:
            self.awards.upsert(updated)
        except OSError:
            logger.exception("Could not save award record %s", updated.key)

        if computed < previous:
            logger.debug("%s on %s computed %s below stored %s", username, definition.game_id, computed.name, previous.name)

        info = await self._game_info(definition, progress)

        announced = 0
        for ach in game_recent:
            if now_ts - ach.earned_ts > self.max_announce_age:
                continue
            entry = AnnouncementEntry(ENTRY_ACHIEVEMENT, definition.game_id, ach.id, ach.earned_ts)
            if not self.ledger.claim(username, entry):
                continue
            event = AwardEvent(
                username=username,
                game=definition,
                game_info=info,
                previous_tier=previous,
                new_tier=merged,
                achievement=ach,
                achievement_count=progress.earned_count,
                total_achievements=progress.total_achievements,
            )
            if await self._emit(event):
                announced += 1

        if merged > previous:
            entry = AnnouncementEntry(ENTRY_AWARD, definition.game_id, merged.name, int(now_ts))
            if self.ledger.claim(username, entry):
                event = AwardEvent(
                    username=username,
                    game=definition,
                    game_info=info,
                    previous_tier=previous,
                    new_tier=merged,
                    achievement_count=progress.earned_count,
                    total_achievements=progress.total_achievements,
                )
                if await self._emit(event):
                    announced += 1
                logger.info("%s reached %s on %s", username, merged.display_name, info.title)

        if report is not None:
            report.announced += announced
        return True

    async def _game_info(self, definition: GameChallengeDefinition, progress: UserGameProgress) -> GameInfo:
        title = progress.game_title or definition.title
        if title:
            return GameInfo(
                game_id=definition.game_id,
                title=title,
                console_name=progress.console_name,
                image_icon=progress.image_icon,
            )

        try:
            return await self.client.get_game_info(definition.game_id)
        except Exception:
            logger.warning("Could not fetch game info for %s", definition.game_id, exc_info=True)
            return GameInfo(game_id=definition.game_id, title=f"Game {definition.game_id}")

    async def _emit(self, event: AwardEvent) -> bool:
        try:
            await self.sink.emit(event)
        except Exception:
            logger.exception("Could not deliver announcement for %s", event.username)
            return False
        return True
