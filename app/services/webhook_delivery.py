from __future__ import annotations

import asyncio
import http.client
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from app.core.monitor_config import MonitorConfig
from app.services.monitor_models import DeliveryOutcome, MeetingRecord
from app.services.retry_policy import RetryPolicy
from app.services.security_utils import build_signature_header_value

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429})


class DeliveryError(Exception):
    def __init__(self, message: str, *, transient: bool, http_status: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.http_status = http_status


@dataclass
class WebhookResponse:
    status: int
    body: str = ""


class WebhookTransport(Protocol):
    def post(
        self,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        timeout_seconds: float,
    ) -> WebhookResponse: ...


class UrllibWebhookTransport:
    def __init__(self, user_agent: str = "MeetingWebhookMonitor/1.0") -> None:
        self.user_agent = user_agent

    def post(
        self,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        timeout_seconds: float,
    ) -> WebhookResponse:
        request_headers = {"User-Agent": self.user_agent, **dict(headers)}
        req = request.Request(url, data=body, headers=request_headers, method="POST")
        try:
            with request.urlopen(req, timeout=timeout_seconds) as response:
                response_body = response.read().decode("utf-8", errors="ignore")
                return WebhookResponse(status=int(response.status), body=response_body)
        except error.HTTPError as exc:
            return WebhookResponse(
                status=int(exc.code),
                body=exc.read().decode("utf-8", errors="ignore"),
            )
        except TimeoutError as exc:
            raise DeliveryError("Webhook request timed out.", transient=True) from exc
        except error.URLError as exc:
            raise DeliveryError(
                f"Webhook connection error: {exc.reason}",
                transient=True,
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise DeliveryError(
                f"Webhook connection error: {exc.__class__.__name__}: {exc}",
                transient=True,
            ) from exc


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class WebhookDeliveryEngine:
    def __init__(
        self,
        *,
        url: str,
        retry_policy: RetryPolicy,
        headers: Mapping[str, str] | None = None,
        secret: str = "",
        include_transcript: bool = True,
        timeout_seconds: float = 10.0,
        signature_header: str = "X-Webhook-Signature",
        transport: WebhookTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.retry_policy = retry_policy
        self.headers = dict(headers or {})
        self.secret = secret
        self.include_transcript = include_transcript
        self.timeout_seconds = timeout_seconds
        self.signature_header = signature_header
        self.transport = transport or UrllibWebhookTransport()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: MonitorConfig,
        *,
        transport: WebhookTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> WebhookDeliveryEngine:
        environment = config.active_environment
        if environment is None:
            raise ValueError(
                f"Environment '{config.webhook.active_environment}' is not configured.",
            )
        return cls(
            url=environment.url,
            headers=environment.headers,
            secret=config.webhook.secret,
            include_transcript=config.webhook.include_transcript,
            timeout_seconds=config.webhook.timeout_seconds,
            signature_header=config.webhook.signature_header,
            retry_policy=RetryPolicy(
                max_retries=config.webhook.max_retries,
                strategy=config.webhook.retry_strategy,
                base_delay_ms=config.webhook.retry_delay,
            ),
            transport=transport,
            sleep=sleep,
        )

    def build_payload(self, meeting: MeetingRecord, organization: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "meetingId": meeting.id,
            "title": meeting.title,
            "organization": organization,
        }
        if self.include_transcript and meeting.transcript:
            payload["transcript"] = meeting.transcript
        return payload

    def build_headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.headers}
        if self.secret:
            headers[self.signature_header] = build_signature_header_value(body, self.secret)
        return headers

    async def deliver(self, meeting: MeetingRecord, organization: str) -> list[DeliveryOutcome]:
        # The signature covers these exact bytes; they are never re-serialized.
        body = encode_payload(self.build_payload(meeting, organization))
        headers = self.build_headers(body)

        outcomes: list[DeliveryOutcome] = []
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._attempt(attempt=attempt, body=body, headers=headers)
            outcomes.append(outcome)
            logger.info(
                "Webhook attempt meeting_id=%s attempt=%s success=%s status=%s elapsed_ms=%s error=%s",
                meeting.id,
                attempt,
                outcome.success,
                outcome.http_status,
                outcome.elapsed_ms,
                outcome.error,
            )
            if outcome.success:
                return outcomes
            if not outcome.transient:
                logger.warning(
                    "Webhook rejected meeting_id=%s status=%s, not retrying",
                    meeting.id,
                    outcome.http_status,
                )
                return outcomes
            if not self.retry_policy.should_retry(attempt):
                logger.warning(
                    "Webhook retries exhausted meeting_id=%s attempts=%s",
                    meeting.id,
                    attempt,
                )
                return outcomes

            delay_seconds = self.retry_policy.delay_seconds(attempt)
            logger.info(
                "Retrying webhook meeting_id=%s next_attempt=%s delay_seconds=%.3f",
                meeting.id,
                attempt + 1,
                delay_seconds,
            )
            await self._sleep(delay_seconds)

    async def _attempt(
        self,
        *,
        attempt: int,
        body: bytes,
        headers: Mapping[str, str],
    ) -> DeliveryOutcome:
        started_at = self._clock()
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.transport.post,
                    self.url,
                    body,
                    headers,
                    self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            return DeliveryOutcome(
                attempt=attempt,
                success=False,
                elapsed_ms=self._elapsed_ms(started_at),
                error=f"Webhook attempt exceeded {self.timeout_seconds:g}s timeout.",
                transient=True,
            )
        except DeliveryError as exc:
            return DeliveryOutcome(
                attempt=attempt,
                success=False,
                elapsed_ms=self._elapsed_ms(started_at),
                http_status=exc.http_status,
                error=str(exc),
                transient=exc.transient,
            )

        elapsed_ms = self._elapsed_ms(started_at)
        if 200 <= response.status < 300:
            return DeliveryOutcome(
                attempt=attempt,
                success=True,
                elapsed_ms=elapsed_ms,
                http_status=response.status,
            )
        return DeliveryOutcome(
            attempt=attempt,
            success=False,
            elapsed_ms=elapsed_ms,
            http_status=response.status,
            error=f"Webhook HTTP {response.status}: {_truncate(response.body) or 'empty response body'}",
            transient=is_retryable_status(response.status),
        )

    def _elapsed_ms(self, started_at: float) -> int:
        return max(int((self._clock() - started_at) * 1000), 0)


def encode_payload(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _truncate(value: str, limit: int = 300) -> str:
    cleaned = value.strip()
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 3] + "..."
