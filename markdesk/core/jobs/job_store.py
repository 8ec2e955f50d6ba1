"""Durable persistence for the active job, its activity log and history.

Buckets (one key each in the durable store):

- ``job_snapshot``: the single active job slot
- ``job_activity``: capped activity log, oldest entries dropped first
- ``job_queue``: queue summary written by the runner
- ``job_history``: bounded list of archived terminal snapshots
- ``job_event_bus``: latest bus message per status-class type (replay fallback)

Snapshot writes are throttled; everything else is written through. The store
never lets a storage failure escape into the runner: writes retry with linear
backoff and the final failure is logged.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from markdesk.core.errors import MigrationError, ValidationError
from markdesk.core.jobs.models import (
    ActivityEntry,
    JobSnapshot,
    JobStatus,
    QueueSummary,
    is_valid_activity,
    is_valid_queue,
    is_valid_snapshot,
    parse_iso,
    snapshot_to_dict,
    utc_now,
    utc_now_iso,
)
from markdesk.core.settings import StoreSettings
from markdesk.core.storage.base import DurableStore, encoded_size
from markdesk.core.storage.debounce import DebouncedWriter

logger = logging.getLogger(__name__)

KEY_SNAPSHOT = "job_snapshot"
KEY_ACTIVITY = "job_activity"
KEY_QUEUE = "job_queue"
KEY_HISTORY = "job_history"
KEY_MIGRATION = "job_store_migration"
KEY_EVENT_BUS = "job_event_bus"

BUCKET_KEYS = (KEY_SNAPSHOT, KEY_ACTIVITY, KEY_QUEUE, KEY_HISTORY)
LEGACY_KEYS = ("dedupeJob", "cleanupJob", "jobState")
QUOTA_WARNING_RATIO = 0.8

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True, slots=True)
class StorageStats:
    used_bytes: int
    available_bytes: int | None
    snapshot_size: int
    activity_size: int
    queue_size: int
    history_size: int

    @property
    def total_size(self) -> int:
        return self.snapshot_size + self.activity_size + self.queue_size + self.history_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_bytes": self.used_bytes,
            "available_bytes": self.available_bytes,
            "snapshot_size": self.snapshot_size,
            "activity_size": self.activity_size,
            "queue_size": self.queue_size,
            "history_size": self.history_size,
            "total_size": self.total_size,
        }


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    warning: bool
    usage: int
    quota: int | None


@dataclass(frozen=True, slots=True)
class MigrationResult:
    migrated: bool
    error: str | None = None
    migrated_keys: list[str] = field(default_factory=list)


def _camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def convert_legacy_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    """Rename camelCase keys (one level deep into nested mappings) to snake_case."""
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Mapping) and key != "summary":
            value = {_camel_to_snake(str(k)): v for k, v in value.items()}
        out[_camel_to_snake(str(key))] = value
    return out


class JobStore:
    def __init__(
        self,
        durable: DurableStore,
        settings: StoreSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._durable = durable
        self._settings = settings or StoreSettings()
        self._sleep = sleep
        self._lock = RLock()
        self._writer = DebouncedWriter(
            self._perform_save, self._settings.debounce_delay_sec, name="job-store"
        )

    @property
    def settings(self) -> StoreSettings:
        return self._settings

    @property
    def durable(self) -> DurableStore:
        return self._durable

    # ------------------------------------------------------------------ raw io

    def _perform_save(self, key: str, value: Any) -> None:
        attempts = self._settings.retry_attempts
        for attempt in range(1, attempts + 2):
            try:
                self._durable.set(key, value)
                return
            except Exception as exc:
                if attempt > attempts:
                    logger.error(
                        "Save failed for %s after %d retries: %s",
                        key,
                        attempts,
                        exc,
                        extra={"event": "store_save_failed"},
                    )
                    return
                logger.warning("Save attempt %d failed for %s, retrying", attempt, key)
                self._sleep(self._settings.retry_delay_sec * attempt)

    def _read(self, key: str) -> Any:
        # Parked (not yet flushed) values win so callers always read their own writes.
        if self._writer.has_pending(key):
            return self._writer.pending_value(key)
        try:
            return self._durable.get(key)
        except Exception:
            logger.exception("Failed to read %s", key)
            return None

    def _read_list(self, key: str) -> list[Any]:
        value = self._read(key)
        return list(value) if isinstance(value, list) else []

    def _remove(self, *keys: str) -> None:
        for key in keys:
            self._writer.cancel(key)
        try:
            self._durable.remove(list(keys))
        except Exception:
            logger.exception("Failed to remove %s", ", ".join(keys))

    # --------------------------------------------------------------- snapshot

    def save_snapshot(self, snapshot: JobSnapshot | Mapping[str, Any], *, immediate: bool = False) -> None:
        data = snapshot_to_dict(snapshot)
        if not is_valid_snapshot(data):
            raise ValidationError("Invalid snapshot data")
        with self._lock:
            if immediate or data["status"] == JobStatus.PAUSED.value or self._writer.is_due(KEY_SNAPSHOT):
                self._writer.write_now(KEY_SNAPSHOT, data)
            else:
                self._writer.schedule(KEY_SNAPSHOT, data)

    def load_snapshot(self) -> JobSnapshot | None:
        with self._lock:
            raw = self._read(KEY_SNAPSHOT)
            if raw is None:
                return None
            if not is_valid_snapshot(raw):
                logger.warning("Invalid snapshot data found, clearing", extra={"event": "snapshot_invalid"})
                self.clear_snapshot()
                return None
            return JobSnapshot.from_dict(raw)

    def clear_snapshot(self) -> None:
        with self._lock:
            self._remove(KEY_SNAPSHOT)

    # --------------------------------------------------------------- activity

    def append_activity(self, entry: ActivityEntry | Mapping[str, Any]) -> bool:
        """Append *entry* to the capped log. Invalid entries are dropped (returns False)."""
        data = entry.to_dict() if isinstance(entry, ActivityEntry) else dict(entry)
        if not is_valid_activity(data):
            logger.warning("Dropping invalid activity entry", extra={"event": "activity_invalid"})
            return False

        with self._lock:
            activities = self._read_list(KEY_ACTIVITY)
            activities.append(data)
            cap = self._settings.max_activity_entries
            if len(activities) > cap:
                del activities[: len(activities) - cap]
            self._writer.write_now(KEY_ACTIVITY, activities)

            raw = self._read(KEY_SNAPSHOT)
            if is_valid_snapshot(raw) and raw["job_id"] == data["job_id"]:
                updated = dict(raw)
                updated["timestamp"] = data["timestamp"]
                self.save_snapshot(updated)
        return True

    def load_activity(self, limit: int | None = None) -> list[ActivityEntry]:
        with self._lock:
            activities = self._read_list(KEY_ACTIVITY)
            valid = [a for a in activities if is_valid_activity(a)]
            if len(valid) != len(activities):
                logger.warning("Filtered %d invalid activity entries", len(activities) - len(valid))
                self._writer.write_now(KEY_ACTIVITY, valid)
        if limit is not None and limit > 0:
            valid = valid[-limit:]
        return [ActivityEntry.from_dict(a) for a in valid]

    def clear_activity(self) -> None:
        with self._lock:
            self._remove(KEY_ACTIVITY)

    def clear(self, job_id: str) -> None:
        """Remove every trace of *job_id*: active slot, activity lines, history."""
        with self._lock:
            raw = self._read(KEY_SNAPSHOT)
            if isinstance(raw, Mapping) and raw.get("job_id") == job_id:
                self.clear_snapshot()
            activities = self._read_list(KEY_ACTIVITY)
            remaining = [a for a in activities if not (isinstance(a, Mapping) and a.get("job_id") == job_id)]
            if len(remaining) != len(activities):
                self._writer.write_now(KEY_ACTIVITY, remaining)
            self.clear_from_history(job_id)

    # ------------------------------------------------------------------ queue

    def save_queue(self, queue: QueueSummary | Mapping[str, Any]) -> None:
        data = queue.to_dict() if isinstance(queue, QueueSummary) else dict(queue)
        if not is_valid_queue(data):
            raise ValidationError("Invalid queue data")
        with self._lock:
            self._writer.write_now(KEY_QUEUE, data)

    def load_queue(self) -> QueueSummary | None:
        raw = self._read(KEY_QUEUE)
        if not is_valid_queue(raw):
            return None
        return QueueSummary.from_dict(raw)

    # ---------------------------------------------------------------- history

    def add_to_history(self, snapshot: JobSnapshot | Mapping[str, Any]) -> None:
        entry = snapshot_to_dict(snapshot)
        entry["history_timestamp"] = utc_now_iso()
        with self._lock:
            history = self._read_list(KEY_HISTORY)
            history.append(entry)
            cap = self._settings.max_history
            if len(history) > cap:
                del history[: len(history) - cap]
            self._writer.write_now(KEY_HISTORY, history)

    def get_history(self) -> list[dict[str, Any]]:
        return [dict(e) for e in self._read_list(KEY_HISTORY) if isinstance(e, Mapping)]

    def get_job_from_history(self, job_id: str) -> dict[str, Any] | None:
        for entry in self.get_history():
            if entry.get("job_id") == job_id:
                return entry
        return None

    def clear_from_history(self, job_id: str) -> bool:
        with self._lock:
            history = self._read_list(KEY_HISTORY)
            remaining = [e for e in history if not (isinstance(e, Mapping) and e.get("job_id") == job_id)]
            if len(remaining) == len(history):
                return False
            self._writer.write_now(KEY_HISTORY, remaining)
            return True

    # -------------------------------------------------------- bus fallback

    def save_last_event(self, message: Mapping[str, Any]) -> None:
        """Record *message* as the latest bus message of its type."""
        with self._lock:
            raw = self._read(KEY_EVENT_BUS)
            record = {k: v for k, v in raw.items() if isinstance(v, Mapping)} if isinstance(raw, Mapping) else {}
            record[str(message["type"])] = dict(message)
            self._writer.write_now(KEY_EVENT_BUS, record)

    def load_last_event(self, event_type: str) -> dict[str, Any] | None:
        raw = self._read(KEY_EVENT_BUS)
        message = raw.get(event_type) if isinstance(raw, Mapping) else None
        if not isinstance(message, Mapping) or message.get("type") != event_type:
            return None
        return dict(message)

    # ------------------------------------------------------------ maintenance

    def cleanup(self, max_age_days: float = 30, *, now: datetime | None = None) -> int:
        """Drop activity and history entries older than *max_age_days*; return the count removed."""
        cutoff = (now or utc_now()) - timedelta(days=max_age_days)

        def _recent(entry: Any, ts_key: str) -> bool:
            ts = parse_iso(entry.get(ts_key)) if isinstance(entry, Mapping) else None
            return ts is not None and ts > cutoff

        removed = 0
        with self._lock:
            activities = self._read_list(KEY_ACTIVITY)
            recent = [a for a in activities if _recent(a, "timestamp")]
            if len(recent) < len(activities):
                removed += len(activities) - len(recent)
                self._writer.write_now(KEY_ACTIVITY, recent)

            history = self._read_list(KEY_HISTORY)
            kept = [h for h in history if _recent(h, "history_timestamp")]
            if len(kept) < len(history):
                removed += len(history) - len(kept)
                self._writer.write_now(KEY_HISTORY, kept)
        if removed:
            logger.info("Removed %d stale job records", removed, extra={"event": "store_cleanup"})
        return removed

    def get_storage_stats(self) -> StorageStats:
        try:
            used = int(self._durable.bytes_in_use())
        except Exception:
            logger.exception("Failed to read storage usage")
            used = 0
        quota = self._settings.quota_bytes
        sizes = {key: encoded_size(self._read(key)) for key in BUCKET_KEYS}
        return StorageStats(
            used_bytes=used,
            available_bytes=None if quota is None else max(0, quota - used),
            snapshot_size=sizes[KEY_SNAPSHOT],
            activity_size=sizes[KEY_ACTIVITY],
            queue_size=sizes[KEY_QUEUE],
            history_size=sizes[KEY_HISTORY],
        )

    def check_quota_warning(self) -> QuotaStatus:
        usage = self.get_storage_stats().used_bytes
        quota = self._settings.quota_bytes
        warning = quota is not None and usage >= quota * QUOTA_WARNING_RATIO
        if warning:
            logger.warning("Job storage at %d of %d bytes", usage, quota, extra={"event": "quota_warning"})
        return QuotaStatus(warning=warning, usage=usage, quota=quota)

    def migrate_from_legacy(self) -> MigrationResult:
        """Import legacy-shaped records once; guarded by a persisted marker."""
        try:
            if self._durable.get(KEY_MIGRATION):
                return MigrationResult(migrated=False)

            legacy = {key: value for key in LEGACY_KEYS if (value := self._durable.get(key))}
            if not legacy:
                self._durable.set(KEY_MIGRATION, {"migrated": True, "timestamp": utc_now_iso()})
                return MigrationResult(migrated=False)

            logger.info("Migrating legacy job data: %s", ", ".join(legacy), extra={"event": "store_migration"})
            source = legacy.get("dedupeJob") or legacy.get("cleanupJob")
            if isinstance(source, Mapping):
                converted = convert_legacy_snapshot(source)
                if is_valid_snapshot(converted):
                    self._perform_save(KEY_SNAPSHOT, converted)
                else:
                    logger.warning("Legacy snapshot is not usable; discarding")

            self._durable.remove(list(LEGACY_KEYS))
            self._durable.set(
                KEY_MIGRATION,
                {"migrated": True, "timestamp": utc_now_iso(), "migrated_keys": list(legacy)},
            )
            return MigrationResult(migrated=True, migrated_keys=list(legacy))
        except Exception as exc:
            err = MigrationError("Legacy migration failed", cause=exc)
            logger.error(str(err), extra={"event": "store_migration_failed"})
            return MigrationResult(migrated=False, error=str(err))

    def reset(self) -> None:
        with self._lock:
            self._writer.cancel()
            self._remove(*BUCKET_KEYS, KEY_MIGRATION, KEY_EVENT_BUS)

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self.flush()
