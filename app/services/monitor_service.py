from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.core.monitor_config import MonitorConfig, load_monitor_config
from app.services.meeting_source_client import (
    MeetingNotesApiClient,
    MeetingSource,
    UpstreamFetchError,
)
from app.services.monitor_models import (
    Delivered,
    DeliveryOutcome,
    Failed,
    LedgerEntry,
    LedgerWarning,
    MeetingRecord,
    RunSummary,
    Skipped,
    StreakAlert,
)
from app.services.notification_fanout import NotificationFanout
from app.services.org_matcher import classify_meeting, matches_templates
from app.services.output_fanout import OutputFanout
from app.services.state_ledger import StateLedger, create_monitor_state_backend
from app.services.webhook_delivery import WebhookDeliveryEngine

logger = logging.getLogger(__name__)

TEMPLATE_MISMATCH_REASON = "template_mismatch"


class MonitorService:
    def __init__(
        self,
        *,
        config: MonitorConfig,
        source: MeetingSource,
        ledger: StateLedger,
        delivery_engine: WebhookDeliveryEngine | None,
        notifications: NotificationFanout,
        outputs: OutputFanout,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.source = source
        self.ledger = ledger
        self.delivery_engine = delivery_engine
        self.notifications = notifications
        self.outputs = outputs
        self._clock = clock or (lambda: datetime.now(UTC))
        self._organization_rules = config.build_organization_rules()
        self._stop_requested = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        config: MonitorConfig | None = None,
    ) -> MonitorService:
        monitor_config = config or load_monitor_config(settings.monitor_config_path)
        monitoring = monitor_config.monitoring
        backend = create_monitor_state_backend(
            store_name=monitoring.state_store,
            state_file_path=monitoring.state_file_path,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_monitor_state_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )
        delivery_engine = None
        if monitor_config.outputs.webhook.enabled:
            delivery_engine = WebhookDeliveryEngine.from_config(monitor_config)
        return cls(
            config=monitor_config,
            source=MeetingNotesApiClient(
                api_url=settings.meeting_source_api_url,
                api_key=settings.meeting_source_api_key,
                timeout_seconds=settings.meeting_source_api_timeout_seconds,
                user_agent=settings.meeting_source_api_user_agent,
                page_size=settings.meeting_source_page_size,
            ),
            ledger=StateLedger(
                backend,
                failure_alert_threshold=monitoring.failure_alert_threshold,
                skip_notification_key=monitoring.skip_notification_key,
            ),
            delivery_engine=delivery_engine,
            notifications=NotificationFanout.from_config(monitor_config.notifications),
            outputs=OutputFanout.from_config(monitor_config.outputs),
        )

    def request_stop(self) -> None:
        self._stop_requested = True

    async def run(self) -> RunSummary:
        self._stop_requested = False
        started_at = self._clock()
        summary = RunSummary(status="completed", started_at=started_at)
        lookback_days = self.config.monitoring.lookback_days
        since = started_at - timedelta(days=lookback_days)

        try:
            meetings = await asyncio.to_thread(_collect_meetings, self.source, since)
        except UpstreamFetchError as exc:
            logger.error("Meeting source fetch failed, run aborted: %s", exc)
            summary.status = "failed"
            summary.error = str(exc)
            summary.finished_at = self._clock()
            return summary

        self.ledger.load(lookback_days)
        if self.ledger.load_warning:
            summary.warnings.append(self.ledger.load_warning)
            await self.notifications.notify(LedgerWarning(message=self.ledger.load_warning))

        summary.seen = len(meetings)
        candidates = await self._select_candidates(meetings, since=since, summary=summary)

        for meeting in candidates:
            if self._stop_requested:
                logger.info("Monitor run stopped before meeting_id=%s", meeting.id)
                summary.status = "aborted"
                break
            if await self._process_meeting(meeting):
                summary.delivered += 1
            else:
                summary.failed += 1

        if summary.status == "completed":
            self.ledger.mark_checked(started_at)
        summary.finished_at = self._clock()
        logger.info(
            "Monitor run finished status=%s seen=%s delivered=%s skipped=%s failed=%s",
            summary.status,
            summary.seen,
            summary.delivered,
            summary.skipped,
            summary.failed,
        )
        return summary

    def state_snapshot(self) -> dict[str, Any]:
        self.ledger.load(self.config.monitoring.lookback_days)
        return self.ledger.snapshot()

    async def _select_candidates(
        self,
        meetings: list[MeetingRecord],
        *,
        since: datetime,
        summary: RunSummary,
    ) -> list[MeetingRecord]:
        candidates: list[MeetingRecord] = []
        selected_ids: set[str] = set()
        for meeting in meetings:
            if meeting.created_at < since:
                continue
            if meeting.id in selected_ids or self.ledger.is_processed(meeting.id):
                continue
            if not matches_templates(meeting, self.config.template_validation):
                summary.skipped += 1
                await self._notify_skipped(meeting, TEMPLATE_MISMATCH_REASON)
                continue
            selected_ids.add(meeting.id)
            candidates.append(meeting)

        candidates.sort(key=lambda meeting: (meeting.created_at, meeting.id))
        max_per_run = self.config.monitoring.max_meetings_per_run
        if max_per_run and len(candidates) > max_per_run:
            logger.info(
                "Deferring meetings to the next run selected=%s deferred=%s",
                max_per_run,
                len(candidates) - max_per_run,
            )
            candidates = candidates[:max_per_run]
        return candidates

    async def _notify_skipped(self, meeting: MeetingRecord, reason: str) -> None:
        try:
            should_notify = self.ledger.should_notify_skipped(meeting.id, reason)
        except OSError as exc:
            logger.warning("Could not persist skip marker meeting_id=%s: %s", meeting.id, exc)
            return
        if should_notify:
            await self.notifications.notify(Skipped(meeting=meeting, reason=reason))

    async def _process_meeting(self, meeting: MeetingRecord) -> bool:
        organization = self.config.default_organization
        attempt = 0
        success = False
        entry_recorded = False
        try:
            organization = classify_meeting(
                meeting,
                self._organization_rules,
                self.config.default_organization,
            )
            logger.info(
                "Processing meeting meeting_id=%s organization=%s",
                meeting.id,
                organization,
            )
            outcome = await self._deliver(meeting, organization)
            attempt = outcome.attempt if outcome else 0
            success = outcome is None or outcome.success
            self.ledger.record_processed(
                LedgerEntry(
                    meeting_id=meeting.id,
                    title=meeting.title,
                    success=success,
                    processed_at=self._clock(),
                    organization=organization,
                    attempts=attempt,
                ),
            )
            entry_recorded = True

            if not success:
                await self._report_failure(
                    meeting,
                    error=(outcome.error if outcome else None) or "Webhook delivery failed.",
                    attempt=attempt,
                )
                return False

            self.ledger.record_success()
            await self.notifications.notify(Delivered(meeting=meeting, organization=organization))
            await self.outputs.publish(meeting, organization, outcome)
            return True
        except Exception as exc:
            logger.exception("Meeting pipeline failed meeting_id=%s", meeting.id)
            if entry_recorded:
                return success
            try:
                self.ledger.record_processed(
                    LedgerEntry(
                        meeting_id=meeting.id,
                        title=meeting.title,
                        success=False,
                        processed_at=self._clock(),
                        organization=organization,
                        attempts=attempt,
                    ),
                )
            except OSError as persist_exc:
                logger.error(
                    "Could not record failed meeting meeting_id=%s: %s",
                    meeting.id,
                    persist_exc,
                )
            await self._report_failure(
                meeting,
                error=str(exc) or exc.__class__.__name__,
                attempt=attempt,
            )
            return False

    async def _deliver(
        self,
        meeting: MeetingRecord,
        organization: str,
    ) -> DeliveryOutcome | None:
        if self.delivery_engine is None:
            return None
        outcomes = await self.delivery_engine.deliver(meeting, organization)
        return outcomes[-1]

    async def _report_failure(self, meeting: MeetingRecord, *, error: str, attempt: int) -> None:
        await self.notifications.notify(Failed(meeting=meeting, error=error, attempt=attempt))
        try:
            streak = self.ledger.record_failure()
        except OSError as exc:
            logger.error("Could not persist failure streak: %s", exc)
            return
        if streak.should_alert:
            logger.warning("Failure streak reached %s consecutive meetings", streak.streak)
            await self.notifications.notify(StreakAlert(count=streak.streak))


def _collect_meetings(source: MeetingSource, since: datetime) -> list[MeetingRecord]:
    return list(source.fetch_meetings(since=since))
