from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "monitor_config_path",
        "monitor_poll_interval_seconds",
        "meeting_source_api_url",
        "meeting_source_api_key",
        "meeting_source_api_timeout_seconds",
        "meeting_source_api_user_agent",
        "meeting_source_page_size",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_monitor_state_collection",
        "mongodb_connect_timeout_ms",
    },
)


class Settings(BaseSettings):
    app_name: str = "Meeting Webhook Monitor"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    monitor_config_path: str = "config.json"
    monitor_poll_interval_seconds: float = 0.0
    meeting_source_api_url: str = "https://api.granola.ai/v2"
    meeting_source_api_key: str = ""
    meeting_source_api_timeout_seconds: float = 10.0
    meeting_source_api_user_agent: str = "MeetingWebhookMonitor/1.0"
    meeting_source_page_size: int = 100
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_monitor"
    mongodb_monitor_state_collection: str = "monitor_state"
    mongodb_connect_timeout_ms: int = 2000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("meeting_source_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_meeting_source_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("monitor_poll_interval_seconds", mode="before")
    @classmethod
    def normalize_poll_interval(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value < 0:
            return 0.0
        return parsed_value

    @field_validator("meeting_source_page_size", mode="before")
    @classmethod
    def normalize_page_size(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 100
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
