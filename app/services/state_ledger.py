from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any

from app.services.monitor_models import LedgerEntry, MonitorState

logger = logging.getLogger(__name__)


class StateCorruptError(Exception):
    pass


@dataclass(frozen=True)
class FailureStreak:
    streak: int
    should_alert: bool


class MonitorStateBackend(ABC):
    @abstractmethod
    def load_raw(self) -> dict[str, Any] | None:
        """Returns the stored payload, None when nothing was stored yet."""
        raise NotImplementedError

    @abstractmethod
    def save_raw(self, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def quarantine(self) -> None:
        return None


class InMemoryMonitorStateBackend(MonitorStateBackend):
    def __init__(self) -> None:
        self._payload: str | None = None

    def load_raw(self) -> dict[str, Any] | None:
        if self._payload is None:
            return None
        return json.loads(self._payload)

    def save_raw(self, payload: Mapping[str, Any]) -> None:
        self._payload = json.dumps(dict(payload))


class JsonFileMonitorStateBackend(MonitorStateBackend):
    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path).expanduser()

    def load_raw(self) -> dict[str, Any] | None:
        if not self.file_path.exists():
            return None
        try:
            raw_text = self.file_path.read_text(encoding="utf-8")
            payload = json.loads(raw_text)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateCorruptError(f"State file {self.file_path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateCorruptError(f"State file {self.file_path} is not a JSON object.")
        return payload

    def save_raw(self, payload: Mapping[str, Any]) -> None:
        directory = self.file_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        file_descriptor, temp_path = tempfile.mkstemp(
            dir=directory,
            prefix=f".{self.file_path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(file_descriptor, "w", encoding="utf-8") as handle:
                json.dump(dict(payload), handle, indent=2, sort_keys=True)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.file_path)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise
        _fsync_directory(directory)

    def quarantine(self) -> None:
        if not self.file_path.exists():
            return
        backup_path = self.file_path.with_name(f"{self.file_path.name}.corrupt")
        shutil.copyfile(self.file_path, backup_path)
        logger.warning("Corrupt state file copied to %s", backup_path)


class MongoMonitorStateBackend(MonitorStateBackend):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        state_key: str = "default",
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        self._collection = self._client[db_name][collection_name]
        self._state_key = state_key

    def load_raw(self) -> dict[str, Any] | None:
        document = self._collection.find_one({"_id": self._state_key})
        if not document:
            return None
        payload = document.get("state")
        if not isinstance(payload, Mapping):
            raise StateCorruptError(f"Monitor state document '{self._state_key}' has no state object.")
        return dict(payload)

    def save_raw(self, payload: Mapping[str, Any]) -> None:
        self._collection.replace_one(
            {"_id": self._state_key},
            {"_id": self._state_key, "state": dict(payload)},
            upsert=True,
        )


def create_monitor_state_backend(
    store_name: str,
    state_file_path: str,
    mongodb_uri: str = "",
    mongodb_db_name: str = "",
    mongodb_collection_name: str = "",
    mongodb_connect_timeout_ms: int = 2000,
) -> MonitorStateBackend:
    return _create_monitor_state_backend_cached(
        store_name=store_name.strip().lower(),
        state_file_path=state_file_path,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_monitor_state_backend_cached(
    store_name: str,
    state_file_path: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MonitorStateBackend:
    if store_name == "memory":
        return InMemoryMonitorStateBackend()

    if store_name == "mongodb":
        return MongoMonitorStateBackend(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            state_key=state_file_path,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return JsonFileMonitorStateBackend(state_file_path)


def clear_monitor_state_backend_cache() -> None:
    _create_monitor_state_backend_cached.cache_clear()


class StateLedger:
    def __init__(
        self,
        backend: MonitorStateBackend,
        *,
        failure_alert_threshold: int = 3,
        skip_notification_key: str = "meeting_and_reason",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.failure_alert_threshold = max(failure_alert_threshold, 1)
        self.skip_notification_key = skip_notification_key
        self._clock = clock or _utc_now
        self._state: MonitorState | None = None
        self.load_warning: str | None = None

    @property
    def state(self) -> MonitorState:
        if self._state is None:
            raise RuntimeError("StateLedger.load() must be called before using the ledger.")
        return self._state

    def load(self, lookback_days: int) -> MonitorState:
        self.load_warning = None
        try:
            raw_state = self.backend.load_raw()
            state = self._parse_state(raw_state) if raw_state is not None else None
        except StateCorruptError as exc:
            logger.warning("Monitor state unreadable, starting fresh: %s", exc)
            self.load_warning = f"Monitor state was unreadable and has been reset: {exc}"
            self._quarantine_backend()
            state = None

        self._state = state or self._initial_state(lookback_days)
        pruned_count = self.prune_older_than(lookback_days)
        logger.info(
            "Monitor state loaded processed=%s pruned=%s consecutive_failures=%s last_check=%s",
            len(self._state.processed),
            pruned_count,
            self._state.consecutive_failures,
            self._state.last_check_timestamp.isoformat(),
        )
        return self._state

    def is_processed(self, meeting_id: str) -> bool:
        return meeting_id in self.state.processed

    def record_processed(self, entry: LedgerEntry) -> None:
        self.state.processed[entry.meeting_id] = entry
        self._persist()

    def should_notify_skipped(self, meeting_id: str, reason: str) -> bool:
        if self.skip_notification_key == "meeting":
            key = meeting_id
        else:
            key = f"{meeting_id}:{reason}"
        if key in self.state.notified_skips:
            return False
        self.state.notified_skips[key] = self._clock()
        self._persist()
        return True

    def record_failure(self) -> FailureStreak:
        state = self.state
        state.consecutive_failures += 1
        should_alert = (
            state.consecutive_failures >= self.failure_alert_threshold
            and state.last_failure_notified_at is None
        )
        if should_alert:
            state.last_failure_notified_at = self._clock()
        self._persist()
        return FailureStreak(streak=state.consecutive_failures, should_alert=should_alert)

    def record_success(self) -> None:
        state = self.state
        if state.consecutive_failures == 0 and state.last_failure_notified_at is None:
            return
        state.consecutive_failures = 0
        state.last_failure_notified_at = None
        self._persist()

    def mark_checked(self, timestamp: datetime) -> None:
        state = self.state
        if timestamp <= state.last_check_timestamp:
            return
        state.last_check_timestamp = timestamp
        self._persist()

    def prune_older_than(self, lookback_days: int) -> int:
        state = self.state
        horizon = self._clock() - timedelta(days=max(lookback_days, 0))
        stale_ids = [
            meeting_id
            for meeting_id, entry in state.processed.items()
            if entry.processed_at < horizon
        ]
        for meeting_id in stale_ids:
            del state.processed[meeting_id]
        state.notified_skips = {
            key: notified_at
            for key, notified_at in state.notified_skips.items()
            if notified_at >= horizon
        }
        return len(stale_ids)

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        succeeded = sum(1 for entry in state.processed.values() if entry.success)
        return {
            "last_check_timestamp": state.last_check_timestamp,
            "processed_count": len(state.processed),
            "succeeded_count": succeeded,
            "failed_count": len(state.processed) - succeeded,
            "consecutive_failures": state.consecutive_failures,
            "last_failure_notified_at": state.last_failure_notified_at,
        }

    def _initial_state(self, lookback_days: int) -> MonitorState:
        return MonitorState(
            last_check_timestamp=self._clock() - timedelta(days=max(lookback_days, 0)),
        )

    def _parse_state(self, raw_state: Mapping[str, Any]) -> MonitorState:
        try:
            return MonitorState.from_dict(raw_state)
        except (TypeError, ValueError) as exc:
            raise StateCorruptError(f"Monitor state has an invalid shape: {exc}") from exc

    def _quarantine_backend(self) -> None:
        try:
            self.backend.quarantine()
        except OSError as exc:
            logger.warning("Could not keep a copy of the corrupt monitor state: %s", exc)

    def _persist(self) -> None:
        self.backend.save_raw(self.state.to_dict())


def load_state_ledger(
    file_path: str | Path,
    lookback_days: int,
    *,
    failure_alert_threshold: int = 3,
    skip_notification_key: str = "meeting_and_reason",
) -> StateLedger:
    ledger = StateLedger(
        JsonFileMonitorStateBackend(file_path),
        failure_alert_threshold=failure_alert_threshold,
        skip_notification_key=skip_notification_key,
    )
    ledger.load(lookback_days)
    return ledger


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    directory_descriptor = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(directory_descriptor)
    finally:
        os.close(directory_descriptor)


def _utc_now() -> datetime:
    return datetime.now(UTC)
