import asyncio
import http.client
import io
import json
import time
from datetime import UTC, datetime
from urllib import error

import pytest

from app.core.monitor_config import NotificationsConfig
from app.services.monitor_models import (
    Delivered,
    Failed,
    LedgerWarning,
    MeetingRecord,
    Skipped,
    StreakAlert,
)
from app.services.notification_fanout import (
    ChannelError,
    DesktopChannel,
    DiscordWebhookChannel,
    EmailChannel,
    NotificationFanout,
    SlackWebhookChannel,
    build_notification_channels,
    render_notification,
)

MEETING = MeetingRecord(
    id="meeting-1",
    title="Team Talk Tuesday",
    created_at=datetime(2026, 10, 1, tzinfo=UTC),
)


class _FakeChannel:
    def __init__(self, name: str, *, fail: bool = False, delay: float = 0.0, best_effort: bool = False) -> None:
        self.name = name
        self.best_effort = best_effort
        self.fail = fail
        self.delay = delay
        self.messages: list[tuple[str, str]] = []

    def send(self, subject: str, body: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ChannelError(f"{self.name} is down")
        self.messages.append((subject, body))


class _MockResponse:
    def __init__(self, payload: bytes = b"ok") -> None:
        self.payload = payload

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        return None

    def read(self) -> bytes:
        return self.payload


def test_one_failing_channel_does_not_block_the_others() -> None:
    slack = _FakeChannel("slack")
    discord = _FakeChannel("discord", fail=True)
    email = _FakeChannel("email")
    fanout = NotificationFanout([slack, discord, email])

    results = asyncio.run(fanout.notify(Delivered(meeting=MEETING, organization="OMAI")))

    assert [(result.target, result.ok) for result in results] == [
        ("slack", True),
        ("discord", False),
        ("email", True),
    ]
    assert results[1].error == "discord is down"
    assert len(slack.messages) == 1
    assert len(email.messages) == 1


def test_slow_channel_times_out_without_affecting_others() -> None:
    slow = _FakeChannel("desktop", delay=0.3)
    fast = _FakeChannel("slack")
    fanout = NotificationFanout([slow, fast], timeout_seconds=0.05)

    results = asyncio.run(fanout.notify(StreakAlert(count=3)))

    assert results[0].ok is False
    assert "Timed out" in str(results[0].error)
    assert results[1].ok is True
    assert fast.messages[0][0] == "Meeting monitor is failing repeatedly"


def test_event_toggles_suppress_notifications() -> None:
    channel = _FakeChannel("slack")
    fanout = NotificationFanout(
        [channel],
        notify_on_success=False,
        notify_on_skipped=False,
        notify_on_failure=True,
    )

    assert asyncio.run(fanout.notify(Delivered(meeting=MEETING, organization="OMAI"))) == []
    assert asyncio.run(fanout.notify(Skipped(meeting=MEETING, reason="template_mismatch"))) == []
    results = asyncio.run(fanout.notify(Failed(meeting=MEETING, error="HTTP 500", attempt=3)))

    assert len(results) == 1
    assert len(channel.messages) == 1
    assert fanout.wants(StreakAlert(count=5)) is True
    assert fanout.wants(LedgerWarning(message="reset")) is True


def test_notify_without_channels_is_a_no_op() -> None:
    assert asyncio.run(NotificationFanout([]).notify(StreakAlert(count=3))) == []


def test_render_notification_covers_every_event() -> None:
    subject, body = render_notification(Failed(meeting=MEETING, error="HTTP 500", attempt=3))
    assert subject == "Meeting delivery failed: Team Talk Tuesday"
    assert "3 attempt(s)" in body
    assert "HTTP 500" in body

    subject, body = render_notification(Skipped(meeting=MEETING, reason="template_mismatch"))
    assert subject.startswith("Meeting skipped")
    assert "template_mismatch" in body

    untitled = MeetingRecord(id="m-2", title="  ", created_at=MEETING.created_at)
    subject, _ = render_notification(Delivered(meeting=untitled, organization="Unknown"))
    assert subject == "Meeting delivered: (untitled meeting)"

    assert render_notification(LedgerWarning(message="state reset"))[1] == "state reset"


def test_build_notification_channels_only_includes_enabled() -> None:
    config = NotificationsConfig.model_validate(
        {
            "slack": {"enabled": True, "webhookUrl": "https://hooks.slack.test/1"},
            "discord": {"enabled": False, "webhookUrl": "https://discord.test/1"},
            "desktop": {"enabled": True},
        },
    )

    channels = build_notification_channels(config)

    assert [channel.name for channel in channels] == ["slack", "desktop"]
    assert [channel.best_effort for channel in channels] == [False, True]


def test_slack_channel_posts_json(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _MockResponse()

    monkeypatch.setattr("app.services.notification_fanout.request.urlopen", fake_urlopen)

    SlackWebhookChannel(
        webhook_url="https://hooks.slack.test/1",
        channel="#meetings",
        timeout_seconds=4,
    ).send("Subject", "Body")

    assert captured["url"] == "https://hooks.slack.test/1"
    assert captured["body"] == {"text": "*Subject*\nBody", "channel": "#meetings"}
    assert captured["timeout"] == 4


def test_discord_channel_truncates_long_messages(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _MockResponse()

    monkeypatch.setattr("app.services.notification_fanout.request.urlopen", fake_urlopen)

    DiscordWebhookChannel(webhook_url="https://discord.test/1").send("Subject", "x" * 5000)

    content = captured["body"]["content"]  # type: ignore[index]
    assert len(content) == 2000
    assert content.endswith("...")


def test_webhook_channel_maps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        raise error.HTTPError(
            req.full_url,
            403,
            "Forbidden",
            hdrs=None,  # type: ignore[arg-type]
            fp=io.BytesIO(b"invalid_token"),
        )

    monkeypatch.setattr("app.services.notification_fanout.request.urlopen", fake_urlopen)

    with pytest.raises(ChannelError, match="Slack HTTP 403: invalid_token"):
        SlackWebhookChannel(webhook_url="https://hooks.slack.test/1").send("Subject", "Body")


def test_webhook_channel_maps_dropped_connections(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr("app.services.notification_fanout.request.urlopen", fake_urlopen)

    with pytest.raises(ChannelError, match="Discord connection error: RemoteDisconnected"):
        DiscordWebhookChannel(webhook_url="https://discord.test/1").send("Subject", "Body")


def test_email_channel_sends_through_smtp_factory() -> None:
    sent: list[object] = []

    class _FakeSMTP:
        def __init__(self, host: str, port: int, timeout: float) -> None:
            self.host = host
            self.port = port
            self.started_tls = False
            self.logged_in_as: str | None = None

        def __enter__(self) -> "_FakeSMTP":
            return self

        def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
            return None

        def starttls(self) -> None:
            self.started_tls = True

        def login(self, username: str, password: str) -> None:
            self.logged_in_as = username

        def send_message(self, message) -> None:  # type: ignore[no-untyped-def]
            sent.append((self, message))

    EmailChannel(
        smtp_host="smtp.example.com",
        username="monitor@example.com",
        password="pw",
        to_addresses=["ops@example.com", " "],
        smtp_factory=_FakeSMTP,  # type: ignore[arg-type]
    ).send("Subject", "Body")

    smtp, message = sent[0]  # type: ignore[misc]
    assert smtp.started_tls is True
    assert smtp.logged_in_as == "monitor@example.com"
    assert message["To"] == "ops@example.com"
    assert message["From"] == "monitor@example.com"
    assert message["Subject"] == "Subject"


def test_email_channel_requires_recipients() -> None:
    with pytest.raises(ChannelError):
        EmailChannel(smtp_host="smtp.example.com").send("Subject", "Body")


def test_desktop_channel_without_notifier_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("app.services.notification_fanout.shutil.which", lambda name: None)

    with pytest.raises(ChannelError, match="No desktop notifier"):
        DesktopChannel().send("Subject", "Body")
