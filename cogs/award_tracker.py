from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands, tasks

from helpers.admin import admin_help_embed, admin_meta, admin_only
from helpers.award_evaluator import GameChallengeDefinition
from helpers.award_tiers import AwardTier
from helpers.polling_scheduler import PollingScheduler, TickReport
from helpers.retro_api import RetroAchievementsAPIError
from helpers.stores import ChallengeStore, period_label
from constants import (
    POLL_TICK_MINUTES,
    GAME_TYPE_MONTHLY,
    GAME_TYPE_SHADOW,
    GAME_TYPE_REGULAR,
    ADMIN_LOG_CHANNEL_ID,
)

logger = logging.getLogger(__name__)

GAME_TYPE_CHOICES = [
    app_commands.Choice(name="Monthly", value=GAME_TYPE_MONTHLY),
    app_commands.Choice(name="Shadow", value=GAME_TYPE_SHADOW),
    app_commands.Choice(name="Regular", value=GAME_TYPE_REGULAR),
]


def parse_id_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.replace(";", ",").split(",") if part.strip()]


def resolve_record_period(
    challenges: ChallengeStore,
    game_id: str,
    month: int | None,
    year: int | None,
    now: datetime,
) -> tuple[int, int]:
    """(month, year) of the award record a command refers to.

    Without an explicit period, an open game's own record period is used and
    otherwise the current month.
    """
    if month is not None and year is not None:
        return month, year
    definition = challenges.find(game_id, now)
    if definition is not None and month is None and year is None:
        return definition.record_period
    return month or now.month, year or now.year


def report_lines(report: TickReport) -> str:
    return (
        f"Pairs: **{report.considered}** - Due: **{report.due}**\n"
        f"Processed: **{report.processed}** - Failed: **{report.failed}**\n"
        f"Announcements: **{report.announced}**"
    )


class AwardTracker(commands.Cog):
    def __init__(self, bot: commands.Bot, scheduler: PollingScheduler):
        self.bot = bot
        self.scheduler = scheduler

        self.poll.start()

    def cog_unload(self):
        self.poll.cancel()
        self.bot.loop.create_task(self.scheduler.client.close())

    @property
    def users(self):
        return self.scheduler.users

    @property
    def challenges(self):
        return self.scheduler.challenges

    @property
    def awards(self):
        return self.scheduler.awards

    async def admin_log(self, text: str):
        ch = self.bot.get_channel(int(ADMIN_LOG_CHANNEL_ID))
        if not isinstance(ch, discord.abc.Messageable):
            return
        try:
            await ch.send(text, silent=True)
        except discord.HTTPException:
            logger.warning("Could not post to admin log channel", exc_info=True)

    @tasks.loop(minutes=POLL_TICK_MINUTES)
    async def poll(self):
        report = await self.scheduler.tick()
        if report is None:
            return
        logger.debug("Award poll report: %s", report)

    @poll.before_loop
    async def before_poll(self):
        await self.bot.wait_until_ready()

    @poll.error
    async def poll_error(self, error: BaseException):
        logger.error("Award poll loop crashed", exc_info=error)

    awards_group = app_commands.Group(name="awards", description="RetroAchievements challenge awards")

    @awards_group.command(name="register", description="Start tracking a RetroAchievements user")
    @app_commands.describe(username="RetroAchievements username", member="Discord member to link (optional)")
    @admin_only()
    @admin_meta(permissions="Admin / Moderator", affects=["Award Tracking"], notes="Polling starts on the next tick")
    async def register(self, interaction: discord.Interaction, username: str, member: discord.Member | None = None):
        username = username.strip()
        if not username:
            return await interaction.response.send_message("❌ Invalid username.", ephemeral=True)

        existing = self.users.get(username)
        if existing is not None and existing.active and (member is None or existing.discord_id == member.id):
            return await interaction.response.send_message(
                f"ℹ️ **{existing.ra_username}** is already tracked.",
                ephemeral=True,
            )

        try:
            user = self.users.register(username, member.id if member else None)
        except OSError:
            logger.exception("Could not save user %s", username)
            return await interaction.response.send_message("❌ Couldn't save the user list.", ephemeral=True)

        linked = f" (linked to {member.mention})" if member else ""
        await interaction.response.send_message(f"✅ Tracking **{user.ra_username}**{linked}.", ephemeral=True)
        await self.admin_log(f"{interaction.user.mention} registered RA user `{user.ra_username}`")

    @awards_group.command(name="unregister", description="Stop tracking a RetroAchievements user")
    @app_commands.describe(username="RetroAchievements username")
    @admin_only()
    @admin_meta(permissions="Admin / Moderator", affects=["Award Tracking"], notes="Keeps the user's award records")
    async def unregister(self, interaction: discord.Interaction, username: str):
        try:
            removed = self.users.unregister(username)
        except OSError:
            logger.exception("Could not save user %s", username)
            return await interaction.response.send_message("❌ Couldn't save the user list.", ephemeral=True)

        if not removed:
            return await interaction.response.send_message(f"❌ `{username}` is not registered.", ephemeral=True)

        await interaction.response.send_message(f"✅ Stopped tracking **{username}**.", ephemeral=True)
        await self.admin_log(f"{interaction.user.mention} unregistered RA user `{username}`")

    @awards_group.command(name="addgame", description="Add a challenge game for a month")
    @app_commands.describe(
        game_id="RetroAchievements game id",
        game_type="Monthly, Shadow or Regular",
        month="Challenge month (1-12), empty for always-open regular games",
        year="Challenge year",
        progression="Progression achievement ids in order, comma separated",
        win="Win condition achievement ids, comma separated",
        require_all_win="All win achievements are needed (default: any one)",
        mastery="Award Mastered for 100% (monthly games only)",
        revealed="Shadow games: has it been revealed yet",
    )
    @app_commands.choices(game_type=GAME_TYPE_CHOICES)
    @admin_only()
    @admin_meta(permissions="Admin / Moderator", affects=["Challenge Games", "Award Announcements"])
    async def addgame(
        self,
        interaction: discord.Interaction,
        game_id: str,
        game_type: app_commands.Choice[str],
        month: Optional[app_commands.Range[int, 1, 12]] = None,
        year: Optional[app_commands.Range[int, 2000, 2100]] = None,
        progression: str | None = None,
        win: str | None = None,
        require_all_win: bool = False,
        mastery: bool = True,
        revealed: bool = True,
    ):
        await interaction.response.defer(ephemeral=True)

        if (month is None) != (year is None):
            return await interaction.followup.send("❌ Give both month and year, or neither.", ephemeral=True)
        if month is None and game_type.value != GAME_TYPE_REGULAR:
            return await interaction.followup.send("❌ Monthly and shadow games need a month and year.", ephemeral=True)

        try:
            info = await self.scheduler.client.get_game_info(game_id)
        except (RetroAchievementsAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            return await interaction.followup.send(
                f"❌ Couldn't look up game `{game_id}` on RetroAchievements. ({type(e).__name__})",
                ephemeral=True,
            )

        progression_ids = parse_id_list(progression)
        definition = GameChallengeDefinition(
            game_id=str(game_id).strip(),
            type=game_type.value,
            progression_achievement_ids=tuple(progression_ids),
            win_achievement_ids=frozenset(parse_id_list(win)),
            require_progression=bool(progression_ids),
            require_all_win_conditions=require_all_win,
            mastery_check=mastery and game_type.value == GAME_TYPE_MONTHLY,
            title=info.title,
            month=month,
            year=year,
            shadow_revealed=revealed,
        )

        try:
            self.challenges.add(definition)
        except OSError:
            logger.exception("Could not save challenge game %s", game_id)
            return await interaction.followup.send("❌ Couldn't save the challenge list.", ephemeral=True)

        e = discord.Embed(
            title=f"✅ Added {game_type.name} game",
            description=f"**{info.title}** ({info.console_name or 'Unknown console'})",
            color=discord.Color.green(),
        )
        e.add_field(name="Period", value=definition.period_key, inline=True)
        e.add_field(name="Progression", value=", ".join(progression_ids) or "None", inline=True)
        e.add_field(name="Win", value=", ".join(sorted(definition.win_achievement_ids)) or "None", inline=True)
        await interaction.followup.send(embed=e, ephemeral=True)
        await self.admin_log(f"{interaction.user.mention} added {game_type.name.lower()} game `{game_id}` ({definition.period_key})")

    @awards_group.command(name="reveal", description="Reveal or hide a shadow game")
    @app_commands.describe(
        game_id="RetroAchievements game id",
        month="Challenge month",
        year="Challenge year",
        revealed="Reveal (default) or hide again",
    )
    @admin_only()
    @admin_meta(
        permissions="Admin / Moderator",
        affects=["Challenge Games", "Award Announcements"],
        notes="Hidden shadow games are not polled",
    )
    async def reveal(
        self,
        interaction: discord.Interaction,
        game_id: str,
        month: app_commands.Range[int, 1, 12],
        year: app_commands.Range[int, 2000, 2100],
        revealed: bool = True,
    ):
        try:
            definition = self.challenges.set_revealed(game_id, month, year, revealed)
        except OSError:
            logger.exception("Could not save challenge game %s", game_id)
            return await interaction.response.send_message("❌ Couldn't save the challenge list.", ephemeral=True)

        if definition is None:
            return await interaction.response.send_message(
                f"❌ No challenge game `{game_id}` for {year}-{month:02d}.",
                ephemeral=True,
            )

        state = "revealed" if revealed else "hidden"
        await interaction.response.send_message(f"✅ **{definition.title or game_id}** is now {state}.", ephemeral=True)
        await self.admin_log(f"{interaction.user.mention} {state} game `{game_id}` ({year}-{month:02d})")

    @awards_group.command(name="removegame", description="Remove a challenge game")
    @app_commands.describe(
        game_id="RetroAchievements game id",
        month="Challenge month (empty removes every period)",
        year="Challenge year (empty removes every period)",
    )
    @admin_only()
    @admin_meta(
        permissions="Admin / Moderator",
        affects=["Challenge Games"],
        notes="Award records for the game are kept",
    )
    async def removegame(
        self,
        interaction: discord.Interaction,
        game_id: str,
        month: Optional[app_commands.Range[int, 1, 12]] = None,
        year: Optional[app_commands.Range[int, 2000, 2100]] = None,
    ):
        try:
            removed = self.challenges.remove(game_id, month, year)
        except OSError:
            logger.exception("Could not save challenge game %s", game_id)
            return await interaction.response.send_message("❌ Couldn't save the challenge list.", ephemeral=True)

        if not removed:
            return await interaction.response.send_message(f"❌ No challenge game `{game_id}` found.", ephemeral=True)

        await interaction.response.send_message(f"✅ Removed game `{game_id}`.", ephemeral=True)
        await self.admin_log(f"{interaction.user.mention} removed game `{game_id}`")

    @awards_group.command(name="recheck", description="Check every tracked user now, ignoring backoff")
    @admin_only()
    @admin_meta(permissions="Admin / Moderator", affects=["Award Announcements"], notes="Never announces twice")
    async def recheck(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)

        report = await self.scheduler.tick(force=True)
        if report is None:
            return await interaction.followup.send("⏳ A check is already running, try again shortly.", ephemeral=True)

        await interaction.followup.send(f"✅ Recheck done.\n{report_lines(report)}", ephemeral=True)

    @awards_group.command(name="reset", description="Delete a user's award record for a game")
    @app_commands.describe(
        username="RetroAchievements username",
        game_id="RetroAchievements game id",
        month="Record month (defaults to this month)",
        year="Record year (defaults to this year)",
    )
    @admin_only()
    @admin_meta(
        permissions="Admin / Moderator",
        affects=["Award Records", "Award Announcements"],
        notes="The award can be announced again. Achievements already posted are never posted twice",
    )
    async def reset(
        self,
        interaction: discord.Interaction,
        username: str,
        game_id: str,
        month: Optional[app_commands.Range[int, 1, 12]] = None,
        year: Optional[app_commands.Range[int, 2000, 2100]] = None,
    ):
        month, year = resolve_record_period(self.challenges, game_id, month, year, datetime.now(timezone.utc))
        period = period_label(month, year)

        try:
            deleted = self.awards.delete(username, game_id, month, year)
        except OSError:
            logger.exception("Could not delete award record for %s on %s", username, game_id)
            return await interaction.response.send_message("❌ Couldn't save the award records.", ephemeral=True)

        if not deleted:
            return await interaction.response.send_message(
                f"❌ No award record for `{username}` on `{game_id}` ({period}).",
                ephemeral=True,
            )

        forgotten = self.scheduler.ledger.forget_awards(username, game_id)

        await interaction.response.send_message(
            f"✅ Reset **{username}** on `{game_id}` ({period}). "
            f"Cleared {forgotten} award announcement(s).",
            ephemeral=True,
        )
        await self.admin_log(f"{interaction.user.mention} reset `{username}` on game `{game_id}` ({period})")

    @awards_group.command(name="status", description="Show award tracker status")
    @admin_only()
    @admin_meta(permissions="Admin / Moderator", affects=[])
    async def status(self, interaction: discord.Interaction):
        now = datetime.now(timezone.utc)
        users = self.users.active_users()
        games = self.challenges.open_definitions(now)

        e = discord.Embed(title="🎮 Award Tracker", color=discord.Color.blurple(), timestamp=now)
        e.add_field(name="Tracked users", value=str(len(users)), inline=True)
        e.add_field(name="Open games", value=str(len(games)), inline=True)
        e.add_field(name="Queued API calls", value=str(self.scheduler.client.rate_limiter.pending), inline=True)
        e.add_field(name="Polling", value="Running" if self.scheduler.is_running else "Idle", inline=True)

        if self.poll.next_iteration:
            e.add_field(name="Next check", value=discord.utils.format_dt(self.poll.next_iteration, "R"), inline=True)

        last = self.scheduler.last_report
        e.add_field(name="Last check", value=report_lines(last) if last else "No check yet", inline=False)

        if games:
            lines = [f"`{g.game_id}` {g.title or 'Untitled'} ({g.type.title()})" for g in games[:15]]
            e.add_field(name="Games", value="\n".join(lines), inline=False)

        await interaction.response.send_message(embed=e, ephemeral=True)

    @awards_group.command(name="adminhelp", description="List the award admin commands")
    @admin_only()
    async def adminhelp(self, interaction: discord.Interaction):
        e = admin_help_embed(self.awards_group.commands, title="🤖 Award Admin Commands")
        if not e.fields:
            return await interaction.response.send_message("🥲 No Commands Available", ephemeral=True)
        await interaction.response.send_message(embed=e, ephemeral=True)

    @awards_group.command(name="mine", description="Show your challenge awards")
    async def mine(self, interaction: discord.Interaction):
        user = self.users.by_discord_id(interaction.user.id)
        if user is None:
            return await interaction.response.send_message(
                "❌ Your Discord account isn't linked to a RetroAchievements user. Ask an admin.",
                ephemeral=True,
            )

        records = [r for r in self.awards.for_user(user.ra_username) if r.award_tier > AwardTier.NONE]
        if not records:
            return await interaction.response.send_message(f"No awards yet for **{user.ra_username}**.", ephemeral=True)

        titles = {d.game_id: d.title for d in self.challenges.all_definitions()}
        points = sum(r.award_tier.points for r in records)

        lines = []
        for r in records[-20:]:
            title = titles.get(r.game_id) or f"Game {r.game_id}"
            lines.append(
                f"{r.award_tier.emoji} **{title}** ({r.period}) - "
                f"{r.award_tier.display_name} - {r.achievement_count}/{r.total_achievements}"
            )

        e = discord.Embed(
            title=f"🏆 {user.ra_username}'s challenge awards",
            description="\n".join(lines),
            color=discord.Color.gold(),
        )
        e.set_footer(text=f"Challenge points: {points}")
        await interaction.response.send_message(embed=e, ephemeral=True)

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.CheckFailure):
            msg = "❌ You don't have permission to use this command."
        else:
            logger.error("Award command failed", exc_info=error)
            msg = "❌ Something went wrong."

        if interaction.response.is_done():
            await interaction.followup.send(msg, ephemeral=True)
        else:
            await interaction.response.send_message(msg, ephemeral=True)


async def setup(bot, scheduler):
    await bot.add_cog(AwardTracker(bot, scheduler))
