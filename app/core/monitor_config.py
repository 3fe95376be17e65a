from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.services.monitor_models import OrganizationRule


class ConfigError(Exception):
    pass


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EnvironmentConfig(_ConfigModel):
    url: str
    headers: dict[str, str] = Field(default_factory=dict)


class WebhookConfig(_ConfigModel):
    active_environment: str = "production"
    secret: str = ""
    max_retries: int = 3
    retry_strategy: Literal["fixed", "exponential"] = "exponential"
    retry_delay: int = 1000
    include_transcript: bool = True
    timeout_seconds: float = 10.0
    signature_header: str = "X-Webhook-Signature"

    @field_validator("max_retries", mode="before")
    @classmethod
    def normalize_max_retries(cls, value: int | str) -> int:
        return max(_to_int(value), 1)

    @field_validator("retry_delay", mode="before")
    @classmethod
    def normalize_retry_delay(cls, value: int | str) -> int:
        return max(_to_int(value), 0)

    @field_validator("timeout_seconds", mode="before")
    @classmethod
    def normalize_timeout(cls, value: float | str) -> float:
        parsed_value = _to_float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value


class TemplateValidationConfig(_ConfigModel):
    enabled: bool = False
    mode: Literal["any", "all"] = "any"
    required_template_ids: list[str] = Field(default_factory=list)
    template_names: list[str] = Field(default_factory=list)


class SlackChannelConfig(_ConfigModel):
    enabled: bool = False
    webhook_url: str = ""
    channel: str | None = None
    username: str | None = None


class DiscordChannelConfig(_ConfigModel):
    enabled: bool = False
    webhook_url: str = ""
    username: str | None = None


class EmailChannelConfig(_ConfigModel):
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    use_tls: bool = True
    username: str = ""
    password: str = ""
    from_address: str = ""
    to_addresses: list[str] = Field(default_factory=list)


class DesktopChannelConfig(_ConfigModel):
    enabled: bool = False
    app_name: str = "Meeting Monitor"


class NotificationsConfig(_ConfigModel):
    slack: SlackChannelConfig = Field(default_factory=SlackChannelConfig)
    discord: DiscordChannelConfig = Field(default_factory=DiscordChannelConfig)
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    desktop: DesktopChannelConfig = Field(default_factory=DesktopChannelConfig)
    notify_on_success: bool = True
    notify_on_skipped: bool = True
    notify_on_failure: bool = True
    timeout_seconds: float = 10.0


class WebhookOutputConfig(_ConfigModel):
    enabled: bool = True


class AirtableOutputConfig(_ConfigModel):
    enabled: bool = False
    api_key: str = ""
    base_id: str = ""
    table_name: str = ""
    api_url: str = "https://api.airtable.com/v0"
    field_mapping: dict[str, str] = Field(default_factory=dict)


class GoogleSheetsOutputConfig(_ConfigModel):
    enabled: bool = False
    access_token: str = ""
    spreadsheet_id: str = ""
    sheet_range: str = "Sheet1!A1"
    api_url: str = "https://sheets.googleapis.com/v4"
    field_mapping: dict[str, str] = Field(default_factory=dict)


class JsonFileOutputConfig(_ConfigModel):
    enabled: bool = False
    file_path: str = "meetings.jsonl"
    field_mapping: dict[str, str] = Field(default_factory=dict)


class OutputsConfig(_ConfigModel):
    webhook: WebhookOutputConfig = Field(default_factory=WebhookOutputConfig)
    airtable: AirtableOutputConfig = Field(default_factory=AirtableOutputConfig)
    google_sheets: GoogleSheetsOutputConfig = Field(default_factory=GoogleSheetsOutputConfig)
    json_file: JsonFileOutputConfig = Field(default_factory=JsonFileOutputConfig)
    timeout_seconds: float = 15.0


class MonitoringConfig(_ConfigModel):
    lookback_days: int = 7
    max_meetings_per_run: int = 50
    state_file_path: str = ".meeting-monitor-state.json"
    state_store: Literal["file", "mongodb", "memory"] = "file"
    failure_alert_threshold: int = 3
    skip_notification_key: Literal["meeting_and_reason", "meeting"] = "meeting_and_reason"

    @field_validator("lookback_days", "max_meetings_per_run", mode="before")
    @classmethod
    def normalize_non_negative(cls, value: int | str) -> int:
        return max(_to_int(value), 0)

    @field_validator("failure_alert_threshold", mode="before")
    @classmethod
    def normalize_threshold(cls, value: int | str) -> int:
        return max(_to_int(value), 1)


class OrganizationRuleConfig(_ConfigModel):
    name: str
    title_keywords: list[str] = Field(default_factory=list)
    email_domains: list[str] = Field(default_factory=list)
    email_addresses: list[str] = Field(default_factory=list)
    company_names: list[str] = Field(default_factory=list)


class MonitorConfig(_ConfigModel):
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    template_validation: TemplateValidationConfig = Field(default_factory=TemplateValidationConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    outputs: OutputsConfig = Field(default_factory=OutputsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    organizations: list[OrganizationRuleConfig] = Field(default_factory=list)
    default_organization: str = "Unknown"

    @model_validator(mode="after")
    def validate_active_environment(self) -> MonitorConfig:
        if not self.outputs.webhook.enabled:
            return self
        if self.webhook.active_environment not in self.environments:
            raise ValueError(
                f"webhook.activeEnvironment '{self.webhook.active_environment}' "
                "is not defined in environments.",
            )
        return self

    @property
    def active_environment(self) -> EnvironmentConfig | None:
        return self.environments.get(self.webhook.active_environment)

    def build_organization_rules(self) -> list[OrganizationRule]:
        return [
            OrganizationRule(
                name=rule.name,
                title_keywords=frozenset(rule.title_keywords),
                email_domains=frozenset(rule.email_domains),
                email_addresses=frozenset(rule.email_addresses),
                company_names=frozenset(rule.company_names),
            )
            for rule in self.organizations
        ]


def parse_monitor_config(raw_config: str | bytes) -> MonitorConfig:
    try:
        payload = json.loads(raw_config)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Monitor config is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Monitor config must be a JSON object.")
    try:
        return MonitorConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Monitor config is invalid: {exc}") from exc


def _to_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, OverflowError) as exc:
        raise ValueError(f"Expected an integer, got {value!r}") from exc


def _to_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except TypeError as exc:
        raise ValueError(f"Expected a number, got {value!r}") from exc


def load_monitor_config(config_path: str | Path) -> MonitorConfig:
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Monitor config file not found: {path}")
    try:
        raw_config = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Monitor config file could not be read: {exc}") from exc
    return parse_monitor_config(raw_config)
