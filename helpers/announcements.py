from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import discord

from constants import (
    RA_BASE_URL,
    RA_MEDIA_URL,
    GAME_TYPE_MONTHLY,
    GAME_TYPE_SHADOW,
    MONTHLY_COLOR,
    SHADOW_COLOR,
    REGULAR_COLOR,
)
from helpers.award_evaluator import GameChallengeDefinition
from helpers.award_tiers import AwardTier
from helpers.retro_api import Achievement, GameInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AwardEvent:
    username: str
    game: GameChallengeDefinition
    game_info: GameInfo
    previous_tier: AwardTier
    new_tier: AwardTier
    achievement: Achievement | None = None
    achievement_count: int = 0
    total_achievements: int = 0

    @property
    def is_award(self) -> bool:
        return self.achievement is None


class AnnouncementSink(Protocol):
    async def emit(self, event: AwardEvent) -> None: ...


def _challenge_label(game_type: str) -> str:
    if game_type == GAME_TYPE_MONTHLY:
        return "Monthly Challenge"
    if game_type == GAME_TYPE_SHADOW:
        return "Shadow Challenge"
    return "Game"


def user_link(username: str) -> str:
    return f"[{username}]({RA_BASE_URL}/user/{username})"


def game_link(info: GameInfo) -> str:
    return f"[{info.title}]({RA_BASE_URL}/game/{info.game_id})"


def build_award_embed(event: AwardEvent) -> discord.Embed:
    tier = event.new_tier
    label = _challenge_label(event.game.type)

    e = discord.Embed(
        title=f"{tier.emoji} {label} {tier.display_name}",
        description=(
            f"{user_link(event.username)} has earned **{tier.display_name.lower()}** "
            f"for {game_link(event.game_info)}!"
        ),
        color=tier.color,
        timestamp=datetime.now(timezone.utc),
    )

    if event.total_achievements:
        e.add_field(
            name="Progress",
            value=f"{event.achievement_count}/{event.total_achievements} achievements",
            inline=True,
        )
    e.add_field(name="Points", value=f"+{tier.points}", inline=True)

    if event.game_info.image_icon:
        e.set_thumbnail(url=f"{RA_BASE_URL}{event.game_info.image_icon}")
    if event.previous_tier > AwardTier.NONE:
        e.set_footer(text=f"Previously: {event.previous_tier.display_name}")
    return e


def build_achievement_embed(event: AwardEvent) -> discord.Embed:
    ach = event.achievement

    color = REGULAR_COLOR
    author = None
    if event.game.type == GAME_TYPE_MONTHLY:
        color, author = MONTHLY_COLOR, "MONTHLY CHALLENGE 🏆"
    elif event.game.type == GAME_TYPE_SHADOW:
        color, author = SHADOW_COLOR, "SHADOW GAME 🌘"

    e = discord.Embed(
        title=event.game_info.title,
        url=f"{RA_BASE_URL}/achievement/{ach.id}",
        description=(
            f"**{event.username}** earned **{ach.title}**\n\n"
            f"*{ach.description or 'No description available'}*"
        ),
        color=color,
        timestamp=ach.date_earned or datetime.now(timezone.utc),
    )

    if ach.badge_name:
        e.set_thumbnail(url=f"{RA_MEDIA_URL}/Badge/{ach.badge_name}.png")
    if author:
        e.set_author(name=author)
    e.set_footer(text=f"Points: {ach.points}" + (" - Hardcore" if ach.hardcore else ""))
    return e


class DiscordAnnouncementSink:
    def __init__(self, bot: discord.Client, award_channel_id: int, achievement_channel_id: int):
        self.bot = bot
        self.award_channel_id = award_channel_id
        self.achievement_channel_id = achievement_channel_id

    def _channel(self, channel_id: int) -> discord.abc.Messageable | None:
        ch = self.bot.get_channel(int(channel_id))
        return ch if isinstance(ch, discord.abc.Messageable) else None

    async def emit(self, event: AwardEvent) -> None:
        if event.is_award:
            channel = self._channel(self.award_channel_id)
            embed = build_award_embed(event)
        else:
            channel = self._channel(self.achievement_channel_id)
            embed = build_achievement_embed(event)

        if channel is None:
            logger.warning("Announcement channel missing, dropping event for %s", event.username)
            return

        await channel.send(embed=embed, silent=True)
