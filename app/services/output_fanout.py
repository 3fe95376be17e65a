from __future__ import annotations

import http.client
import json
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib import error, parse, request

from app.core.monitor_config import (
    AirtableOutputConfig,
    GoogleSheetsOutputConfig,
    JsonFileOutputConfig,
    OutputsConfig,
)
from app.services.fanout_utils import dispatch_all_settled
from app.services.monitor_models import DeliveryOutcome, DispatchResult, MeetingRecord

logger = logging.getLogger(__name__)

OUTPUT_RECORD_FIELDS = (
    "meeting_id",
    "title",
    "organization",
    "created_at",
    "attendees",
    "delivered",
    "http_status",
    "attempts",
    "processed_at",
)


class SinkError(Exception):
    pass


class OutputDestination(Protocol):
    name: str

    def deliver(self, record: Mapping[str, Any]) -> None: ...


def build_output_record(
    *,
    meeting: MeetingRecord,
    organization: str,
    outcome: DeliveryOutcome | None,
    processed_at: datetime,
) -> dict[str, Any]:
    return {
        "meeting_id": meeting.id,
        "title": meeting.title,
        "organization": organization,
        "created_at": meeting.created_at.isoformat(),
        "attendees": ", ".join(sorted(meeting.attendees)),
        "delivered": outcome.success if outcome else True,
        "http_status": outcome.http_status if outcome else None,
        "attempts": outcome.attempt if outcome else 0,
        "processed_at": processed_at.isoformat(),
    }


def map_record_fields(record: Mapping[str, Any], field_mapping: Mapping[str, str]) -> dict[str, Any]:
    """
    Renames internal fields to the destination's column names. An empty
    mapping keeps every field under its internal name; otherwise only the
    mapped fields are kept, in mapping order.
    """
    if not field_mapping:
        return dict(record)
    mapped: dict[str, Any] = {}
    for field_name, column_name in field_mapping.items():
        if field_name not in record:
            logger.debug("Ignoring unknown output field in mapping: %s", field_name)
            continue
        mapped[column_name or field_name] = record[field_name]
    return mapped


class AirtableDestination:
    name = "airtable"

    def __init__(
        self,
        *,
        api_key: str,
        base_id: str,
        table_name: str,
        field_mapping: Mapping[str, str] | None = None,
        api_url: str = "https://api.airtable.com/v0",
        timeout_seconds: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.base_id = base_id
        self.table_name = table_name
        self.field_mapping = dict(field_mapping or {})
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def deliver(self, record: Mapping[str, Any]) -> None:
        if not self.api_key or not self.base_id or not self.table_name:
            raise SinkError("Airtable API key, base id or table name is missing.")
        table_path = parse.quote(self.table_name, safe="")
        response_payload = _request_json(
            "POST",
            f"{self.api_url}/{self.base_id}/{table_path}",
            token=self.api_key,
            payload={
                "records": [{"fields": map_record_fields(record, self.field_mapping)}],
                "typecast": True,
            },
            timeout_seconds=self.timeout_seconds,
            service_name="Airtable",
        )
        records = response_payload.get("records")
        if not isinstance(records, list) or not records:
            raise SinkError("Airtable API create response missing records.")


class GoogleSheetsDestination:
    name = "googleSheets"

    def __init__(
        self,
        *,
        access_token: str,
        spreadsheet_id: str,
        sheet_range: str = "Sheet1!A1",
        field_mapping: Mapping[str, str] | None = None,
        api_url: str = "https://sheets.googleapis.com/v4",
        timeout_seconds: float = 15.0,
    ) -> None:
        self.access_token = access_token
        self.spreadsheet_id = spreadsheet_id
        self.sheet_range = sheet_range
        self.field_mapping = dict(field_mapping or {})
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def deliver(self, record: Mapping[str, Any]) -> None:
        if not self.access_token or not self.spreadsheet_id:
            raise SinkError("Google Sheets access token or spreadsheet id is missing.")
        row = [
            "" if value is None else value
            for value in map_record_fields(record, self.field_mapping).values()
        ]
        range_path = parse.quote(self.sheet_range, safe="")
        query = parse.urlencode(
            {"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
        )
        _request_json(
            "POST",
            f"{self.api_url}/spreadsheets/{self.spreadsheet_id}/values/{range_path}:append?{query}",
            token=self.access_token,
            payload={"values": [row]},
            timeout_seconds=self.timeout_seconds,
            service_name="Google Sheets",
        )


class JsonFileDestination:
    name = "jsonFile"

    def __init__(self, *, file_path: str | Path, field_mapping: Mapping[str, str] | None = None) -> None:
        self.file_path = Path(file_path).expanduser()
        self.field_mapping = dict(field_mapping or {})
        self._lock = threading.Lock()

    def deliver(self, record: Mapping[str, Any]) -> None:
        line = json.dumps(map_record_fields(record, self.field_mapping), ensure_ascii=False, default=str)
        try:
            with self._lock:
                self.file_path.parent.mkdir(parents=True, exist_ok=True)
                with self.file_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            raise SinkError(f"Could not append to {self.file_path}: {exc}") from exc


def _build_airtable_destination(
    config: AirtableOutputConfig,
    timeout_seconds: float,
) -> OutputDestination:
    return AirtableDestination(
        api_key=config.api_key,
        base_id=config.base_id,
        table_name=config.table_name,
        field_mapping=config.field_mapping,
        api_url=config.api_url,
        timeout_seconds=timeout_seconds,
    )


def _build_google_sheets_destination(
    config: GoogleSheetsOutputConfig,
    timeout_seconds: float,
) -> OutputDestination:
    return GoogleSheetsDestination(
        access_token=config.access_token,
        spreadsheet_id=config.spreadsheet_id,
        sheet_range=config.sheet_range,
        field_mapping=config.field_mapping,
        api_url=config.api_url,
        timeout_seconds=timeout_seconds,
    )


def _build_json_file_destination(
    config: JsonFileOutputConfig,
    timeout_seconds: float,
) -> OutputDestination:
    return JsonFileDestination(file_path=config.file_path, field_mapping=config.field_mapping)


DESTINATION_FACTORIES: Mapping[str, Callable[[Any, float], OutputDestination]] = {
    "airtable": _build_airtable_destination,
    "google_sheets": _build_google_sheets_destination,
    "json_file": _build_json_file_destination,
}


def build_output_destinations(config: OutputsConfig) -> list[OutputDestination]:
    destinations: list[OutputDestination] = []
    for destination_id, factory in DESTINATION_FACTORIES.items():
        destination_config = getattr(config, destination_id)
        if not destination_config.enabled:
            continue
        destinations.append(factory(destination_config, config.timeout_seconds))
    return destinations


class OutputFanout:
    def __init__(
        self,
        destinations: Sequence[OutputDestination],
        *,
        timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.destinations = list(destinations)
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(
        cls,
        config: OutputsConfig,
        destinations: Sequence[OutputDestination] | None = None,
    ) -> OutputFanout:
        return cls(
            destinations if destinations is not None else build_output_destinations(config),
            timeout_seconds=config.timeout_seconds,
        )

    async def publish(
        self,
        meeting: MeetingRecord,
        organization: str,
        outcome: DeliveryOutcome | None,
    ) -> list[DispatchResult]:
        if not self.destinations:
            return []

        record = build_output_record(
            meeting=meeting,
            organization=organization,
            outcome=outcome,
            processed_at=self._clock(),
        )
        results = await dispatch_all_settled(
            [
                (destination.name, _bind_deliver(destination, record))
                for destination in self.destinations
            ],
            timeout_seconds=self.timeout_seconds,
        )
        for result in results:
            if not result.ok:
                logger.warning(
                    "Output destination failed destination=%s meeting_id=%s error=%s",
                    result.target,
                    meeting.id,
                    result.error,
                )
        return results


def _bind_deliver(destination: OutputDestination, record: Mapping[str, Any]) -> Callable[[], None]:
    return lambda: destination.deliver(record)


def _request_json(
    method: str,
    url: str,
    *,
    token: str,
    payload: Mapping[str, Any],
    timeout_seconds: float,
    service_name: str,
) -> dict[str, Any]:
    req = request.Request(
        url,
        data=json.dumps(payload, default=str).encode("utf-8"),
        method=method,
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
    )
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            response_body = response.read()
    except TimeoutError as exc:
        raise SinkError(f"{service_name} API request timed out.") from exc
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise SinkError(
            f"{service_name} API HTTP {exc.code}: {body or 'empty response body'}",
        ) from exc
    except error.URLError as exc:
        raise SinkError(f"{service_name} API connection error: {exc.reason}") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise SinkError(
            f"{service_name} API connection error: {exc.__class__.__name__}: {exc}",
        ) from exc

    if not response_body:
        return {}
    try:
        parsed_body = json.loads(response_body.decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise SinkError(f"{service_name} API returned invalid JSON.") from exc
    if not isinstance(parsed_body, dict):
        raise SinkError(f"{service_name} API response is not a JSON object.")
    return parsed_body
