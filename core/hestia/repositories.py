"""
Schedule Storage

Simple in-memory repositories for settings, the flexible schedule cursor and
decision history. Each keeps its own lock; callers never see shared mutable
state.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Optional

from .models import FlexibleScheduleState, ScheduleHistoryEntry, utcnow
from .settings import DEFAULT_ZONE, UserScheduleSettings

logger = logging.getLogger(__name__)


class SettingsRepository:
    """User schedule settings, defaults for unknown users."""

    def __init__(self, defaults: Optional[UserScheduleSettings] = None):
        self.defaults = defaults or UserScheduleSettings()
        self._settings: dict[str, UserScheduleSettings] = {}
        self.lock = threading.Lock()

    def get_user_schedule_settings(self, user_id: str) -> UserScheduleSettings:
        with self.lock:
            return self._settings.get(user_id, self.defaults)

    def save(self, user_id: str, settings: UserScheduleSettings) -> None:
        with self.lock:
            self._settings[user_id] = settings

    def exists(self, user_id: str) -> bool:
        with self.lock:
            return user_id in self._settings

    def list_user_ids(self) -> list[str]:
        with self.lock:
            return sorted(self._settings)

    def list_auto_apply_user_ids(self) -> list[str]:
        with self.lock:
            return sorted(uid for uid, s in self._settings.items() if s.auto_apply)

    def zones(self, default_zone: str = DEFAULT_ZONE) -> list[str]:
        """Every zone some user prices against, plus the default."""
        with self.lock:
            zones = {s.zone for s in self._settings.values() if s.zone}
        zones.add(default_zone)
        return sorted(zones)


class FlexibleStateRepository:
    """Per-user FlexibleScheduleState, last writer wins."""

    def __init__(self):
        self._states: dict[str, FlexibleScheduleState] = {}
        self.lock = threading.Lock()

    def load(self, user_id: str) -> FlexibleScheduleState:
        with self.lock:
            return self._states.get(user_id, FlexibleScheduleState())

    def save(self, user_id: str, state: FlexibleScheduleState) -> None:
        with self.lock:
            self._states[user_id] = state


class HistoryRepository:
    """Append-only decision history per user."""

    def __init__(self, max_entries_per_user: int = 5000):
        self.max_entries_per_user = max_entries_per_user
        self._entries: dict[str, deque[ScheduleHistoryEntry]] = {}
        self.lock = threading.Lock()

    def append(self, user_id: str, snapshot: dict[str, Any], timestamp: Optional[datetime] = None) -> ScheduleHistoryEntry:
        entry = ScheduleHistoryEntry(user_id=user_id, timestamp_utc=timestamp or utcnow(), snapshot=snapshot)
        with self.lock:
            entries = self._entries.setdefault(user_id, deque(maxlen=self.max_entries_per_user))
            entries.append(entry)
        return entry

    def load(self, user_id: str, since: Optional[datetime] = None) -> list[ScheduleHistoryEntry]:
        """Entries for a user, newest first."""
        with self.lock:
            entries = list(self._entries.get(user_id, ()))
        if since is not None:
            entries = [e for e in entries if e.timestamp_utc >= since]
        return sorted(entries, key=lambda e: e.timestamp_utc, reverse=True)

    def count(self, user_id: str) -> int:
        with self.lock:
            return len(self._entries.get(user_id, ()))

    def prune_older_than(self, cutoff: datetime) -> int:
        """Drop entries older than cutoff. Returns how many were removed."""
        removed = 0
        with self.lock:
            for user_id, entries in self._entries.items():
                kept = [e for e in entries if e.timestamp_utc >= cutoff]
                removed += len(entries) - len(kept)
                self._entries[user_id] = deque(kept, maxlen=self.max_entries_per_user)
        if removed:
            logger.info(f"Pruned {removed} history entries older than {cutoff.isoformat()}")
        return removed
