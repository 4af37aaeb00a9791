"""At-most-once bookkeeping for feed announcements.

An entry is identified by ``type:game_id:subject_id:timestamp``. The
timestamp is only there for debugging; two entries with the same
``(type, game_id, subject_id)`` are the same announcement.

The ledger checks an in-process session set first and then the user's
persisted history, which is capped and evicts in append order.
"""

from __future__ import annotations
import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Iterator

from constants import ANNOUNCEMENT_HISTORY_CAP, ENTRY_AWARD
from helpers.stores import AnnouncementHistoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnouncementEntry:
    type: str
    game_id: str
    subject_id: str
    timestamp: int = 0

    @property
    def key(self) -> str:
        return f"{self.type}:{self.game_id}:{self.subject_id}:{self.timestamp}"

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.type, str(self.game_id), str(self.subject_id))

    @classmethod
    def parse(cls, key: str) -> "AnnouncementEntry | None":
        parts = str(key).split(":")
        if len(parts) < 3:
            return None
        try:
            ts = int(parts[3]) if len(parts) > 3 and parts[3] else 0
        except ValueError:
            ts = 0
        return cls(type=parts[0], game_id=parts[1], subject_id=parts[2], timestamp=ts)


class CappedHistory:
    """Append-ordered identifiers, oldest dropped once ``cap`` is exceeded."""

    def __init__(self, keys: Iterable[str] = (), cap: int = ANNOUNCEMENT_HISTORY_CAP):
        self.cap = cap
        self._keys: deque[str] = deque(maxlen=cap if cap > 0 else 0)
        for key in keys:
            self.append(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def append(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.append(key)
        return True

    def contains(self, entry: AnnouncementEntry) -> bool:
        for key in self._keys:
            existing = AnnouncementEntry.parse(key)
            if existing is not None and existing.identity == entry.identity:
                return True
        return False


class AnnouncementLedger:
    def __init__(self, store: AnnouncementHistoryStore, cap: int = ANNOUNCEMENT_HISTORY_CAP):
        self.store = store
        self.cap = cap
        self._session: set[tuple[str, str, str, str]] = set()

    def _session_key(self, username: str, entry: AnnouncementEntry) -> tuple[str, str, str, str]:
        return (username.lower(), *entry.identity)

    def is_new(self, username: str, entry: AnnouncementEntry) -> bool:
        if self._session_key(username, entry) in self._session:
            return False

        history = CappedHistory(self.store.history(username), self.cap)
        return not history.contains(entry)

    def record(self, username: str, entry: AnnouncementEntry) -> bool:
        """Mark ``entry`` announced. Returns False when the durable write failed."""
        self._session.add(self._session_key(username, entry))

        try:
            history = CappedHistory(self.store.history(username), self.cap)
            if history.contains(entry):
                return True
            history.append(entry.key)
            self.store.write(username, list(history))
        except OSError:
            logger.exception("Could not persist announcement %s for %s", entry.key, username)
            return False

        return True

    def claim(self, username: str, entry: AnnouncementEntry) -> bool:
        """Check and record in one step. True means the caller should announce."""
        if not self.is_new(username, entry):
            return False
        self.record(username, entry)
        return True

    def warm(self, usernames: Iterable[str] | None = None) -> int:
        names = list(usernames) if usernames is not None else self.store.usernames()
        loaded = 0
        for username in names:
            for key in self.store.history(username):
                entry = AnnouncementEntry.parse(key)
                if entry is None:
                    continue
                self._session.add(self._session_key(username, entry))
                loaded += 1
        return loaded

    def forget_awards(self, username: str, game_id: str) -> int:
        """Drop the award entries for a game so its tiers can be announced again.

        Achievement entries stay, an achievement is only ever announced once.
        """
        game_id = str(game_id)
        user = username.lower()
        self._session = {
            k for k in self._session
            if not (k[0] == user and k[1] == ENTRY_AWARD and k[2] == game_id)
        }

        def matches(key: str) -> bool:
            entry = AnnouncementEntry.parse(key)
            return entry is not None and entry.type == ENTRY_AWARD and entry.game_id == game_id

        try:
            return self.store.remove_where(username, matches)
        except OSError:
            logger.exception("Could not clear award announcements for %s on %s", username, game_id)
            return 0
