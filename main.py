import discord
from discord.ext import commands
import logging
from dotenv import load_dotenv
import os

load_dotenv()

from constants import (
    USERS_PATH,
    CHALLENGES_PATH,
    AWARDS_PATH,
    ANNOUNCEMENT_HISTORY_PATH,
    AWARD_FEED_CHANNEL_ID,
    ACHIEVEMENT_FEED_CHANNEL_ID,
)
from helpers.rate_limiter import RateLimiter
from helpers.retro_api import RetroAchievementsClient
from helpers.stores import UserStore, ChallengeStore, AwardStore, AnnouncementHistoryStore
from helpers.announcement_ledger import AnnouncementLedger
from helpers.announcements import DiscordAnnouncementSink
from helpers.polling_scheduler import PollingScheduler
from cogs import award_tracker

token = os.getenv('DISCORD_TOKEN')
ra_username = os.getenv('RA_USERNAME')
ra_api_key = os.getenv('RA_API_KEY')

logger = logging.getLogger("award_bot")

handler = logging.FileHandler(filename='discord.log', encoding='utf-8', mode='w')
intents = discord.Intents.default()
intents.members = True


bot = commands.Bot(command_prefix="!", intents=intents)
bot.remove_command("help")


def build_scheduler() -> PollingScheduler:
    client = RetroAchievementsClient(ra_username, ra_api_key, RateLimiter())
    ledger = AnnouncementLedger(AnnouncementHistoryStore(ANNOUNCEMENT_HISTORY_PATH))
    sink = DiscordAnnouncementSink(bot, AWARD_FEED_CHANNEL_ID, ACHIEVEMENT_FEED_CHANNEL_ID)

    return PollingScheduler(
        client,
        UserStore(USERS_PATH),
        ChallengeStore(CHALLENGES_PATH),
        AwardStore(AWARDS_PATH),
        ledger,
        sink,
    )


@bot.event
async def setup_hook():
    scheduler = build_scheduler()
    warmed = scheduler.ledger.warm()
    logger.info("Loaded %d announced entries into the session ledger", warmed)

    await award_tracker.setup(bot, scheduler)
    await bot.tree.sync()

@bot.event
async def on_ready():
    logger.info("%s is up and tracking awards", bot.user.name)


if not token or not ra_username or not ra_api_key:
    raise SystemExit("DISCORD_TOKEN, RA_USERNAME and RA_API_KEY must be set (see .env)")

bot.run(token, log_handler=handler, log_level=logging.DEBUG, root_logger=True)
