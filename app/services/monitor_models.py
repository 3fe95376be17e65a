from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class MeetingRecord:
    id: str
    title: str
    created_at: datetime
    transcript: str | None = None
    attendees: frozenset[str] = frozenset()
    companies: frozenset[str] = frozenset()
    template_ids: frozenset[str] = frozenset()
    template_names: frozenset[str] = frozenset()
    notes: str | None = None


@dataclass(frozen=True)
class OrganizationRule:
    name: str
    title_keywords: frozenset[str] = frozenset()
    email_domains: frozenset[str] = frozenset()
    email_addresses: frozenset[str] = frozenset()
    company_names: frozenset[str] = frozenset()


@dataclass
class LedgerEntry:
    meeting_id: str
    title: str
    success: bool
    processed_at: datetime
    organization: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "meetingId": self.meeting_id,
            "title": self.title,
            "success": self.success,
            "processedAt": self.processed_at.isoformat(),
            "organization": self.organization,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LedgerEntry:
        meeting_id = payload.get("meetingId")
        if not isinstance(meeting_id, str) or not meeting_id:
            raise ValueError("Ledger entry is missing meetingId.")
        raw_attempts = payload.get("attempts")
        organization = payload.get("organization")
        return cls(
            meeting_id=meeting_id,
            title=str(payload.get("title") or ""),
            success=bool(payload.get("success")),
            processed_at=parse_timestamp(payload.get("processedAt")),
            organization=organization if isinstance(organization, str) else None,
            attempts=raw_attempts if isinstance(raw_attempts, int) else 0,
        )


@dataclass
class MonitorState:
    last_check_timestamp: datetime
    processed: dict[str, LedgerEntry] = field(default_factory=dict)
    consecutive_failures: int = 0
    last_failure_notified_at: datetime | None = None
    notified_skips: dict[str, datetime] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastCheckTimestamp": self.last_check_timestamp.isoformat(),
            "processed": {
                meeting_id: entry.to_dict() for meeting_id, entry in self.processed.items()
            },
            "consecutiveFailures": self.consecutive_failures,
            "lastFailureNotifiedAt": (
                self.last_failure_notified_at.isoformat()
                if self.last_failure_notified_at
                else None
            ),
            "notifiedSkips": {
                key: notified_at.isoformat() for key, notified_at in self.notified_skips.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MonitorState:
        raw_processed = payload.get("processed", {})
        processed: dict[str, LedgerEntry] = {}
        # Older state files stored processed entries as a list.
        if isinstance(raw_processed, list):
            raw_entries = raw_processed
        elif isinstance(raw_processed, Mapping):
            raw_entries = list(raw_processed.values())
        else:
            raise ValueError("State field 'processed' must be an object or a list.")
        for raw_entry in raw_entries:
            if not isinstance(raw_entry, Mapping):
                raise ValueError("Ledger entries must be objects.")
            entry = LedgerEntry.from_dict(raw_entry)
            processed[entry.meeting_id] = entry

        raw_failures = payload.get("consecutiveFailures", 0)
        raw_notified_at = payload.get("lastFailureNotifiedAt")
        raw_skips = payload.get("notifiedSkips", {})
        notified_skips: dict[str, datetime] = {}
        if isinstance(raw_skips, Mapping):
            notified_skips = {
                str(key): parse_timestamp(notified_at) for key, notified_at in raw_skips.items()
            }
        return cls(
            last_check_timestamp=parse_timestamp(payload.get("lastCheckTimestamp")),
            processed=processed,
            consecutive_failures=raw_failures if isinstance(raw_failures, int) else 0,
            last_failure_notified_at=(
                parse_timestamp(raw_notified_at) if raw_notified_at else None
            ),
            notified_skips=notified_skips,
        )


@dataclass
class DeliveryOutcome:
    attempt: int
    success: bool
    elapsed_ms: int
    http_status: int | None = None
    error: str | None = None
    transient: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "success": self.success,
            "http_status": self.http_status,
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
            "transient": self.transient,
        }


@dataclass(frozen=True)
class Delivered:
    meeting: MeetingRecord
    organization: str


@dataclass(frozen=True)
class Skipped:
    meeting: MeetingRecord
    reason: str


@dataclass(frozen=True)
class Failed:
    meeting: MeetingRecord
    error: str
    attempt: int


@dataclass(frozen=True)
class StreakAlert:
    count: int


@dataclass(frozen=True)
class LedgerWarning:
    message: str


NotificationEvent = Delivered | Skipped | Failed | StreakAlert | LedgerWarning


@dataclass
class DispatchResult:
    target: str
    ok: bool
    error: str | None = None


@dataclass
class RunSummary:
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    seen: int = 0
    delivered: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        try:
            parsed = datetime.fromtimestamp(float(value), tz=UTC)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"Timestamp out of range: {value!r}") from exc
    elif isinstance(value, str) and value.strip():
        raw_value = value.strip()
        if raw_value.endswith("Z"):
            raw_value = f"{raw_value[:-1]}+00:00"
        parsed = datetime.fromisoformat(raw_value)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
