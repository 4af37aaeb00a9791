import os

ADMIN_ROLE = "Admin"
MODERATOR_ROLE = "Moderator"

ADMIN_ROLES = [ADMIN_ROLE, MODERATOR_ROLE]


USERS_PATH = "data/users.json"
CHALLENGES_PATH = "data/challenges.json"
AWARDS_PATH = "data/awards.json"
ANNOUNCEMENT_HISTORY_PATH = "data/announcement_history.json"



AWARD_FEED_CHANNEL_ID = int(os.getenv("AWARD_FEED_CHANNEL_ID", "1336339958503571487"))
ACHIEVEMENT_FEED_CHANNEL_ID = int(os.getenv("ACHIEVEMENT_FEED_CHANNEL_ID", "1336339958503571487"))
ADMIN_LOG_CHANNEL_ID = int(os.getenv("ADMIN_LOG_CHANNEL_ID", "1304814893857374270"))


RA_BASE_URL = "https://retroachievements.org"
RA_API_URL = f"{RA_BASE_URL}/API/"
RA_MEDIA_URL = "https://media.retroachievements.org"

RA_REQUESTS_PER_INTERVAL = 1
RA_INTERVAL_SECONDS = 1.2
RA_MAX_RETRIES = 3
RA_RETRY_DELAY_SECONDS = 3.0
RATE_LIMIT_BUFFER_SECONDS = 0.1

RECENT_CACHE_SECONDS = 60
PROGRESS_CACHE_SECONDS = 60
GAME_INFO_CACHE_SECONDS = 30 * 60

RECENT_ACHIEVEMENT_LIMIT = 50
RECENT_ACHIEVEMENT_MINUTES = 24 * 60


POLL_TICK_MINUTES = 5
BASE_RECHECK_SECONDS = 15 * 60
MAX_BACKOFF_MULTIPLIER = 8
POLL_CHUNK_SIZE = 3
POLL_CHUNK_DELAY_SECONDS = 2.0
MAX_ANNOUNCE_AGE_SECONDS = 7 * 24 * 60 * 60

ANNOUNCEMENT_HISTORY_CAP = 200


GAME_TYPE_MONTHLY = "MONTHLY"
GAME_TYPE_SHADOW = "SHADOW"
GAME_TYPE_REGULAR = "REGULAR"

# award records for games without a challenge month
OPEN_PERIOD = (0, 0)

ENTRY_ACHIEVEMENT = "achievement"
ENTRY_AWARD = "award"


MONTHLY_COLOR = 0x00BFFF
SHADOW_COLOR = 0x800080
REGULAR_COLOR = 0x00FF00
