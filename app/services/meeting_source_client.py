from __future__ import annotations

import http.client
import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any, Protocol
from urllib import error, parse, request

from app.services.monitor_models import MeetingRecord, parse_timestamp

logger = logging.getLogger(__name__)

MAX_PAGES_PER_FETCH = 50


class UpstreamFetchError(Exception):
    pass


class MeetingSource(Protocol):
    def fetch_meetings(self, *, since: datetime) -> Iterable[MeetingRecord]: ...


class MeetingNotesApiClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetingWebhookMonitor/1.0",
        page_size: int = 100,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.page_size = page_size

    def fetch_meetings(self, *, since: datetime) -> Iterator[MeetingRecord]:
        if not self.api_key:
            raise UpstreamFetchError("Meeting source API key is missing.")

        cursor: str | None = None
        for _ in range(MAX_PAGES_PER_FETCH):
            query_params = {"created_after": since.isoformat(), "limit": str(self.page_size)}
            if cursor:
                query_params["cursor"] = cursor
            response = self._request_json(f"/documents?{parse.urlencode(query_params)}")

            raw_documents = response.get("docs", response.get("documents"))
            if not isinstance(raw_documents, list):
                raise UpstreamFetchError("Meeting source response missing documents.")
            for raw_document in raw_documents:
                meeting = parse_meeting_document(raw_document)
                if meeting is None:
                    logger.debug("Skipping unparseable meeting document: %r", raw_document)
                    continue
                yield meeting

            next_cursor = response.get("next_cursor") or response.get("cursor")
            if not isinstance(next_cursor, str) or not next_cursor or next_cursor == cursor:
                return
            cursor = next_cursor
        logger.warning("Meeting source pagination stopped after %s pages", MAX_PAGES_PER_FETCH)

    def _request_json(self, path: str) -> dict[str, Any]:
        req = request.Request(
            f"{self.api_url}{path}",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method="GET",
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise UpstreamFetchError("Meeting source request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise UpstreamFetchError(
                f"Meeting source HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise UpstreamFetchError(f"Meeting source connection error: {exc.reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise UpstreamFetchError(
                f"Meeting source connection error: {exc.__class__.__name__}: {exc}",
            ) from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamFetchError("Meeting source returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise UpstreamFetchError("Meeting source response is not a JSON object.")
        return parsed_body


def parse_meeting_document(raw_document: Any) -> MeetingRecord | None:
    if not isinstance(raw_document, Mapping):
        return None
    meeting_id = _to_text(raw_document.get("id")) or _to_text(raw_document.get("document_id"))
    if not meeting_id:
        return None
    try:
        created_at = parse_timestamp(raw_document.get("created_at"))
    except ValueError:
        return None

    attendees: set[str] = set()
    companies: set[str] = set()
    for participant in _iter_participants(raw_document):
        email = _extract_email(participant)
        if email:
            attendees.add(email)
        company = _extract_company(participant)
        if company:
            companies.add(company)

    template_ids: set[str] = set()
    template_names: set[str] = set()
    direct_template_id = _to_text(raw_document.get("template_id"))
    if direct_template_id:
        template_ids.add(direct_template_id)
    direct_template_name = _to_text(raw_document.get("template_name"))
    if direct_template_name:
        template_names.add(direct_template_name)
    for raw_template in _as_list(raw_document.get("templates")) + _as_list(raw_document.get("panels")):
        if not isinstance(raw_template, Mapping):
            continue
        template_id = _to_text(raw_template.get("id")) or _to_text(raw_template.get("template_slug"))
        if template_id:
            template_ids.add(template_id)
        template_name = _to_text(raw_template.get("name")) or _to_text(raw_template.get("title"))
        if template_name:
            template_names.add(template_name)

    return MeetingRecord(
        id=meeting_id,
        title=_to_text(raw_document.get("title")) or "",
        created_at=created_at,
        transcript=_extract_transcript(raw_document.get("transcript")),
        attendees=frozenset(attendees),
        companies=frozenset(companies),
        template_ids=frozenset(template_ids),
        template_names=frozenset(template_names),
        notes=(
            _to_text(raw_document.get("notes_markdown"))
            or _to_text(raw_document.get("notes_plain"))
            or _to_text(raw_document.get("summary"))
        ),
    )


def _iter_participants(raw_document: Mapping[str, Any]) -> Iterator[Any]:
    people = raw_document.get("people")
    if isinstance(people, Mapping):
        creator = people.get("creator")
        if creator:
            yield creator
        yield from _as_list(people.get("attendees"))
    yield from _as_list(raw_document.get("attendees"))
    calendar_event = raw_document.get("google_calendar_event")
    if isinstance(calendar_event, Mapping):
        yield from _as_list(calendar_event.get("attendees"))


def _extract_email(participant: Any) -> str | None:
    if isinstance(participant, str):
        candidate = participant
    elif isinstance(participant, Mapping):
        candidate = _to_text(participant.get("email")) or ""
    else:
        return None
    cleaned = candidate.strip().lower()
    if not cleaned or "@" not in cleaned:
        return None
    return cleaned


def _extract_company(participant: Any) -> str | None:
    if not isinstance(participant, Mapping):
        return None
    company = _to_text(participant.get("company")) or _to_text(participant.get("company_name"))
    if company:
        return company
    details = participant.get("details")
    if isinstance(details, Mapping):
        nested_company = details.get("company")
        if isinstance(nested_company, Mapping):
            return _to_text(nested_company.get("name"))
        return _to_text(nested_company)
    return None


def _extract_transcript(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        lines: list[str] = []
        for segment in value:
            if isinstance(segment, str) and segment.strip():
                lines.append(segment.strip())
                continue
            if not isinstance(segment, Mapping):
                continue
            text = _to_text(segment.get("text"))
            if not text:
                continue
            speaker = _to_text(segment.get("speaker")) or _to_text(segment.get("source"))
            lines.append(f"{speaker}: {text}" if speaker else text)
        return "\n".join(lines) or None
    return None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def _to_text(value: Any) -> str | None:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None
