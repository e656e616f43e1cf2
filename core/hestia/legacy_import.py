"""
Legacy File Import

One-time import of the per-user JSON files the previous storage layout used:

    <base>/tokens/<user>/user.json              settings (PascalCase keys)
    <base>/schedule_history/<user>/history.json [{"timestamp": ..., "schedule": ...}]

Users already present in the repositories are skipped. Files are left in place.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

from .settings import UserScheduleSettings

logger = logging.getLogger(__name__)


@dataclass
class ImportReport:
    settings_imported: int = 0
    settings_skipped: int = 0
    history_entries_imported: int = 0
    history_users_skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


def import_legacy_files(base_dir: str, settings_repository, history_repository) -> ImportReport:
    """Import legacy settings and history files found under base_dir."""
    report = ImportReport()
    if not os.path.isdir(base_dir):
        logger.info(f"No legacy data directory at {base_dir}, nothing to import")
        return report

    _import_settings(base_dir, settings_repository, report)
    _import_history(base_dir, history_repository, report)

    logger.info(f"Legacy import finished: {report.to_dict()}")
    return report


def _user_dirs(root: str):
    if not os.path.isdir(root):
        return
    for name in sorted(os.listdir(root)):
        path = os.path.join(root, name)
        if os.path.isdir(path):
            yield name, path


def _import_settings(base_dir: str, settings_repository, report: ImportReport) -> None:
    for user_id, user_dir in _user_dirs(os.path.join(base_dir, "tokens")):
        path = os.path.join(user_dir, "user.json")
        if not os.path.exists(path):
            continue
        if settings_repository.exists(user_id):
            logger.info(f"Settings for {user_id} already exist, skipping {path}")
            report.settings_skipped += 1
            continue
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("user.json is not an object")
            settings_repository.save(user_id, UserScheduleSettings.from_dict(data))
            report.settings_imported += 1
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to import settings from {path}: {e}")
            report.errors += 1


def _import_history(base_dir: str, history_repository, report: ImportReport) -> None:
    for user_id, user_dir in _user_dirs(os.path.join(base_dir, "schedule_history")):
        path = os.path.join(user_dir, "history.json")
        if not os.path.exists(path):
            continue
        if history_repository.count(user_id) > 0:
            logger.info(f"History for {user_id} already exists, skipping {path}")
            report.history_users_skipped += 1
            continue
        try:
            with open(path) as f:
                entries = json.load(f)
            if not isinstance(entries, list):
                raise ValueError("history.json is not an array")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to import history from {path}: {e}")
            report.errors += 1
            continue

        for entry in entries:
            try:
                timestamp = _parse_timestamp(entry["timestamp"])
                schedule = entry.get("schedule", {})
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed history entry for {user_id}: {e}")
                report.errors += 1
                continue
            history_repository.append(user_id, {"legacy": True, "schedule": schedule}, timestamp)
            report.history_entries_imported += 1


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
