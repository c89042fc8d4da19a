from __future__ import annotations

from weighsync._redact import redact_for_log
from weighsync.config import ControllerChannelConfig, SyncConfig, config_to_dict


def test_redact_for_log_redacts_credentials() -> None:
    payload = {
        "broker": "mqtt://plant.local",
        "password": "pw",
        "sync": {"endpoint": "https://erp.example", "api_key": "k-123", "apiKey": "k-456"},
        "headers": [{"Authorization": "Bearer k-123"}, {"X-API-Key": "k-123"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["broker"] == "mqtt://plant.local"
    assert redacted["password"] == "<redacted>"
    assert redacted["sync"]["api_key"] == "<redacted>"
    assert redacted["sync"]["apiKey"] == "<redacted>"
    assert redacted["sync"]["endpoint"] == "https://erp.example"
    assert redacted["headers"][0]["Authorization"] == "<redacted>"
    assert redacted["headers"][1]["X-API-Key"] == "<redacted>"


def test_redact_for_log_keeps_empty_secrets_visible() -> None:
    redacted = redact_for_log(config_to_dict(SyncConfig()))
    assert redacted["api_key"] is None


def test_redact_for_log_handles_config_records() -> None:
    redacted = redact_for_log(config_to_dict(ControllerChannelConfig(password="hunter2")))
    assert redacted["password"] == "<redacted>"
    assert "hunter2" not in str(redacted)


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]
