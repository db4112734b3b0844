"""Tests for configuration loading."""

from unittest.mock import Mock

import pytest

from voicemail_processor import create_clients, load_config


@pytest.fixture
def environ():
    return {
        "CONNECT_LOG_GROUP": "/aws/connect/test",
        "NOTIFICATION_TOPIC": "arn:notify",
        "AWS_REGION": "ap-southeast-2",
    }


def test_defaults(environ):
    config = load_config(environ)

    assert config.alert_topic == "arn:notify"
    assert config.agent_login_topic is None
    assert config.timezone == "UTC"
    assert config.link_expiry_days == 7
    assert config.link_expiry_seconds == 7 * 86400
    assert config.connect_region == "ap-southeast-2"
    assert config.transcribe_wait_seconds == 240
    assert config.initial_wait_seconds == 60
    assert config.poll_attempts == 6


def test_overrides(environ):
    environ.update({
        "ALERT_TOPIC": "arn:alerts",
        "AGENT_LOGIN_TOPIC": "arn:login",
        "NOTIFICATION_TIMEZONE": "Australia/Perth",
        "LINK_EXPIRY_IN_DAYS": "3",
        "CONNECT_REGION": "us-west-2",
        "TRANSCRIBE_WAIT_SECONDS": "120",
    })
    config = load_config(environ)

    assert config.alert_topic == "arn:alerts"
    assert config.agent_login_topic == "arn:login"
    assert config.timezone == "Australia/Perth"
    assert config.link_expiry_seconds == 3 * 86400
    assert config.region == "ap-southeast-2"
    assert config.connect_region == "us-west-2"
    assert config.transcribe_wait_seconds == 120


@pytest.mark.parametrize("missing", ["CONNECT_LOG_GROUP", "NOTIFICATION_TOPIC"])
def test_required_settings(environ, missing):
    del environ[missing]
    with pytest.raises(ValueError, match=missing):
        load_config(environ)


@pytest.mark.parametrize("name, value", [
    ("LINK_EXPIRY_IN_DAYS", "seven"),
    ("LINK_EXPIRY_IN_DAYS", "0"),
    ("LINK_EXPIRY_IN_DAYS", "8"),
    ("TRANSCRIBE_WAIT_SECONDS", "60"),
    ("TRANSCRIBE_POLL_ATTEMPTS", "0"),
    ("NOTIFICATION_TIMEZONE", "Mars/Olympus_Mons"),
])
def test_invalid_settings(environ, name, value):
    environ[name] = value
    with pytest.raises(ValueError):
        load_config(environ)


def test_create_clients_uses_connect_region_for_logs(environ, monkeypatch):
    environ["CONNECT_REGION"] = "us-west-2"
    config = load_config(environ)
    client = Mock(side_effect=lambda service, config: (service, config.region_name))
    monkeypatch.setattr("boto3.client", client)

    clients = create_clients(config)

    assert clients.s3 == ("s3", "ap-southeast-2")
    assert clients.transcribe == ("transcribe", "ap-southeast-2")
    assert clients.sns == ("sns", "ap-southeast-2")
    assert clients.logs == ("logs", "us-west-2")
    assert client.call_args_list[0].kwargs["config"].signature_version == "s3v4"
