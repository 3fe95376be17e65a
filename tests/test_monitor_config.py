import json
from pathlib import Path

import pytest

from app.core.monitor_config import ConfigError, load_monitor_config, parse_monitor_config

FULL_CONFIG = {
    "environments": {
        "production": {"url": "https://hooks.example.com/meetings", "headers": {"X-Api-Key": "k"}},
        "staging": {"url": "https://staging.example.com/meetings"},
    },
    "webhook": {
        "activeEnvironment": "production",
        "secret": "s3cret",
        "maxRetries": 4,
        "retryStrategy": "fixed",
        "retryDelay": 2500,
        "includeTranscript": False,
    },
    "templateValidation": {
        "enabled": True,
        "mode": "all",
        "requiredTemplateIds": ["tpl-1"],
        "templateNames": ["Customer Call"],
    },
    "notifications": {
        "slack": {"enabled": True, "webhookUrl": "https://hooks.slack.test/1"},
        "notifyOnSuccess": False,
    },
    "outputs": {"jsonFile": {"enabled": True, "filePath": "out.jsonl"}},
    "monitoring": {"lookbackDays": 3, "maxMeetingsPerRun": 10, "stateStore": "memory"},
    "organizations": [
        {"name": "OMAI", "titleKeywords": ["Team Talk"], "emailDomains": ["omaihq.com"]},
    ],
    "defaultOrganization": "Other",
    "someFutureSection": {"ignored": True},
}


def test_parse_monitor_config_reads_camel_case_keys() -> None:
    config = parse_monitor_config(json.dumps(FULL_CONFIG))

    assert config.active_environment is not None
    assert config.active_environment.headers == {"X-Api-Key": "k"}
    assert config.webhook.max_retries == 4
    assert config.webhook.retry_strategy == "fixed"
    assert config.webhook.retry_delay == 2500
    assert config.webhook.include_transcript is False
    assert config.template_validation.mode == "all"
    assert config.notifications.slack.enabled is True
    assert config.notifications.notify_on_success is False
    assert config.outputs.json_file.file_path == "out.jsonl"
    assert config.monitoring.lookback_days == 3
    assert config.monitoring.state_store == "memory"
    assert config.default_organization == "Other"

    rules = config.build_organization_rules()
    assert rules[0].name == "OMAI"
    assert rules[0].title_keywords == {"Team Talk"}
    assert rules[0].email_domains == {"omaihq.com"}


def test_defaults_apply_to_minimal_config() -> None:
    config = parse_monitor_config(
        json.dumps({"environments": {"production": {"url": "https://hooks.example.com"}}}),
    )

    assert config.webhook.max_retries == 3
    assert config.webhook.retry_strategy == "exponential"
    assert config.webhook.retry_delay == 1000
    assert config.webhook.include_transcript is True
    assert config.monitoring.lookback_days == 7
    assert config.monitoring.max_meetings_per_run == 50
    assert config.default_organization == "Unknown"
    assert config.outputs.webhook.enabled is True


def test_numeric_settings_are_normalized() -> None:
    config = parse_monitor_config(
        json.dumps(
            {
                "environments": {"production": {"url": "https://hooks.example.com"}},
                "webhook": {"maxRetries": 0, "retryDelay": -10, "timeoutSeconds": 0},
                "monitoring": {"lookbackDays": -1, "failureAlertThreshold": 0},
            },
        ),
    )

    assert config.webhook.max_retries == 1
    assert config.webhook.retry_delay == 0
    assert config.webhook.timeout_seconds == 10.0
    assert config.monitoring.lookback_days == 0
    assert config.monitoring.failure_alert_threshold == 1


def test_unknown_active_environment_is_rejected() -> None:
    with pytest.raises(ConfigError, match="activeEnvironment 'qa'"):
        parse_monitor_config(
            json.dumps(
                {
                    "environments": {"production": {"url": "https://hooks.example.com"}},
                    "webhook": {"activeEnvironment": "qa"},
                },
            ),
        )


def test_missing_environment_is_allowed_when_webhook_output_disabled() -> None:
    config = parse_monitor_config(json.dumps({"outputs": {"webhook": {"enabled": False}}}))

    assert config.active_environment is None


@pytest.mark.parametrize(
    "raw_config",
    [
        "{not json",
        "[]",
        json.dumps({"environments": {"production": {}}}),
        json.dumps(
            {
                "environments": {"production": {"url": "https://hooks.example.com"}},
                "webhook": {"retryStrategy": "linear"},
            },
        ),
        json.dumps(
            {
                "environments": {"production": {"url": "https://hooks.example.com"}},
                "webhook": {"maxRetries": None},
            },
        ),
        json.dumps(
            {
                "environments": {"production": {"url": "https://hooks.example.com"}},
                "webhook": {"timeoutSeconds": [5]},
            },
        ),
        json.dumps({"outputs": {"webhook": {"enabled": False}}, "monitoring": {"lookbackDays": {}}}),
    ],
)
def test_invalid_configs_raise_config_error(raw_config: str) -> None:
    with pytest.raises(ConfigError):
        parse_monitor_config(raw_config)


def test_load_monitor_config_reads_file(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(FULL_CONFIG), encoding="utf-8")

    assert load_monitor_config(path).webhook.secret == "s3cret"


def test_load_monitor_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_monitor_config(tmp_path / "missing.json")
