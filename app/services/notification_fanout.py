from __future__ import annotations

import http.client
import json
import logging
import shutil
import smtplib
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from email.message import EmailMessage
from typing import Any, Protocol
from urllib import error, request

from app.core.monitor_config import (
    DesktopChannelConfig,
    DiscordChannelConfig,
    EmailChannelConfig,
    NotificationsConfig,
    SlackChannelConfig,
)
from app.services.fanout_utils import dispatch_all_settled
from app.services.monitor_models import (
    Delivered,
    DispatchResult,
    Failed,
    LedgerWarning,
    NotificationEvent,
    Skipped,
    StreakAlert,
)

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000


class ChannelError(Exception):
    pass


class NotificationChannel(Protocol):
    name: str
    best_effort: bool

    def send(self, subject: str, body: str) -> None: ...


class SlackWebhookChannel:
    name = "slack"
    best_effort = False

    def __init__(
        self,
        *,
        webhook_url: str,
        channel: str | None = None,
        username: str | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.channel = channel
        self.username = username
        self.timeout_seconds = timeout_seconds

    def send(self, subject: str, body: str) -> None:
        if not self.webhook_url:
            raise ChannelError("Slack webhook URL is missing.")
        payload: dict[str, Any] = {"text": f"*{subject}*\n{body}"}
        if self.channel:
            payload["channel"] = self.channel
        if self.username:
            payload["username"] = self.username
        _post_json(
            url=self.webhook_url,
            payload=payload,
            timeout_seconds=self.timeout_seconds,
            service_name="Slack",
        )


class DiscordWebhookChannel:
    name = "discord"
    best_effort = False

    def __init__(
        self,
        *,
        webhook_url: str,
        username: str | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.username = username
        self.timeout_seconds = timeout_seconds

    def send(self, subject: str, body: str) -> None:
        if not self.webhook_url:
            raise ChannelError("Discord webhook URL is missing.")
        content = f"**{subject}**\n{body}"
        if len(content) > DISCORD_MESSAGE_LIMIT:
            content = content[: DISCORD_MESSAGE_LIMIT - 3] + "..."
        payload: dict[str, Any] = {"content": content}
        if self.username:
            payload["username"] = self.username
        _post_json(
            url=self.webhook_url,
            payload=payload,
            timeout_seconds=self.timeout_seconds,
            service_name="Discord",
        )


class EmailChannel:
    name = "email"
    best_effort = False

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        use_tls: bool = True,
        username: str = "",
        password: str = "",
        from_address: str = "",
        to_addresses: Sequence[str] = (),
        timeout_seconds: float = 10.0,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.from_address = from_address
        self.to_addresses = [address for address in to_addresses if address.strip()]
        self.timeout_seconds = timeout_seconds
        self._smtp_factory = smtp_factory

    def send(self, subject: str, body: str) -> None:
        if not self.smtp_host or not self.to_addresses:
            raise ChannelError("Email SMTP host or recipients are missing.")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.from_address or self.username
        message["To"] = ", ".join(self.to_addresses)
        message.set_content(body)

        try:
            with self._smtp_factory(
                self.smtp_host,
                self.smtp_port,
                timeout=self.timeout_seconds,
            ) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelError(f"Email delivery failed: {exc}") from exc


class DesktopChannel:
    name = "desktop"
    best_effort = True

    def __init__(self, *, app_name: str = "Meeting Monitor", timeout_seconds: float = 10.0) -> None:
        self.app_name = app_name
        self.timeout_seconds = timeout_seconds

    def send(self, subject: str, body: str) -> None:
        command = self._build_command(subject, body)
        if command is None:
            raise ChannelError(f"No desktop notifier available on platform {sys.platform}.")
        try:
            subprocess.run(
                command,
                check=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ChannelError(f"Desktop notification failed: {exc}") from exc

    def _build_command(self, subject: str, body: str) -> list[str] | None:
        if sys.platform == "darwin" and shutil.which("osascript"):
            script = (
                f"display notification {json.dumps(body)} "
                f"with title {json.dumps(self.app_name)} subtitle {json.dumps(subject)}"
            )
            return ["osascript", "-e", script]
        if shutil.which("notify-send"):
            return ["notify-send", "--app-name", self.app_name, subject, body]
        return None


def _build_slack_channel(config: SlackChannelConfig, timeout_seconds: float) -> NotificationChannel:
    return SlackWebhookChannel(
        webhook_url=config.webhook_url,
        channel=config.channel,
        username=config.username,
        timeout_seconds=timeout_seconds,
    )


def _build_discord_channel(
    config: DiscordChannelConfig,
    timeout_seconds: float,
) -> NotificationChannel:
    return DiscordWebhookChannel(
        webhook_url=config.webhook_url,
        username=config.username,
        timeout_seconds=timeout_seconds,
    )


def _build_email_channel(config: EmailChannelConfig, timeout_seconds: float) -> NotificationChannel:
    return EmailChannel(
        smtp_host=config.smtp_host,
        smtp_port=config.smtp_port,
        use_tls=config.use_tls,
        username=config.username,
        password=config.password,
        from_address=config.from_address,
        to_addresses=config.to_addresses,
        timeout_seconds=timeout_seconds,
    )


def _build_desktop_channel(
    config: DesktopChannelConfig,
    timeout_seconds: float,
) -> NotificationChannel:
    return DesktopChannel(app_name=config.app_name, timeout_seconds=timeout_seconds)


CHANNEL_FACTORIES: Mapping[str, Callable[[Any, float], NotificationChannel]] = {
    "slack": _build_slack_channel,
    "discord": _build_discord_channel,
    "email": _build_email_channel,
    "desktop": _build_desktop_channel,
}


def build_notification_channels(config: NotificationsConfig) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = []
    for channel_id, factory in CHANNEL_FACTORIES.items():
        channel_config = getattr(config, channel_id)
        if not channel_config.enabled:
            continue
        channels.append(factory(channel_config, config.timeout_seconds))
    return channels


def render_notification(event: NotificationEvent) -> tuple[str, str]:
    if isinstance(event, Delivered):
        title = _display_title(event.meeting.title)
        return (
            f"Meeting delivered: {title}",
            f"\"{title}\" ({event.meeting.id}) was delivered for {event.organization}.",
        )
    if isinstance(event, Skipped):
        title = _display_title(event.meeting.title)
        return (
            f"Meeting skipped: {title}",
            f"\"{title}\" ({event.meeting.id}) was skipped: {event.reason}.",
        )
    if isinstance(event, Failed):
        title = _display_title(event.meeting.title)
        return (
            f"Meeting delivery failed: {title}",
            f"\"{title}\" ({event.meeting.id}) failed after {event.attempt} attempt(s): "
            f"{event.error}",
        )
    if isinstance(event, StreakAlert):
        return (
            "Meeting monitor is failing repeatedly",
            f"{event.count} meetings in a row could not be delivered. "
            "Check the webhook endpoint and its credentials.",
        )
    if isinstance(event, LedgerWarning):
        return ("Meeting monitor state was reset", event.message)
    raise TypeError(f"Unsupported notification event: {event!r}")


class NotificationFanout:
    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        *,
        timeout_seconds: float = 10.0,
        notify_on_success: bool = True,
        notify_on_skipped: bool = True,
        notify_on_failure: bool = True,
    ) -> None:
        self.channels = list(channels)
        self.timeout_seconds = timeout_seconds
        self.notify_on_success = notify_on_success
        self.notify_on_skipped = notify_on_skipped
        self.notify_on_failure = notify_on_failure

    @classmethod
    def from_config(
        cls,
        config: NotificationsConfig,
        channels: Sequence[NotificationChannel] | None = None,
    ) -> NotificationFanout:
        return cls(
            channels if channels is not None else build_notification_channels(config),
            timeout_seconds=config.timeout_seconds,
            notify_on_success=config.notify_on_success,
            notify_on_skipped=config.notify_on_skipped,
            notify_on_failure=config.notify_on_failure,
        )

    def wants(self, event: NotificationEvent) -> bool:
        if isinstance(event, Delivered):
            return self.notify_on_success
        if isinstance(event, Skipped):
            return self.notify_on_skipped
        if isinstance(event, Failed):
            return self.notify_on_failure
        return True

    async def notify(self, event: NotificationEvent) -> list[DispatchResult]:
        if not self.channels or not self.wants(event):
            return []

        subject, body = render_notification(event)
        results = await dispatch_all_settled(
            [(channel.name, _bind_send(channel, subject, body)) for channel in self.channels],
            timeout_seconds=self.timeout_seconds,
        )

        best_effort_names = {channel.name for channel in self.channels if channel.best_effort}
        for result in results:
            if result.ok:
                continue
            if result.target in best_effort_names:
                logger.info("Best-effort channel %s unavailable: %s", result.target, result.error)
                continue
            logger.warning(
                "Notification channel failed channel=%s event=%s error=%s",
                result.target,
                type(event).__name__,
                result.error,
            )
        return results


def _bind_send(channel: NotificationChannel, subject: str, body: str) -> Callable[[], None]:
    return lambda: channel.send(subject, body)


def _display_title(title: str) -> str:
    return title.strip() or "(untitled meeting)"


def _post_json(
    *,
    url: str,
    payload: Mapping[str, Any],
    timeout_seconds: float,
    service_name: str,
) -> None:
    req = request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            response.read()
    except TimeoutError as exc:
        raise ChannelError(f"{service_name} request timed out.") from exc
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise ChannelError(
            f"{service_name} HTTP {exc.code}: {body or 'empty response body'}",
        ) from exc
    except error.URLError as exc:
        raise ChannelError(f"{service_name} connection error: {exc.reason}") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise ChannelError(
            f"{service_name} connection error: {exc.__class__.__name__}: {exc}",
        ) from exc
