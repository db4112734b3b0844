"""Shared fixtures for voicemail processor tests."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from voicemail_processor import AwsClients, VoicemailConfig


def client_error(code="InternalError", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


def set_attributes_event(key, value, contact_id="abc-123"):
    """A contact flow log event as returned by filter_log_events."""
    return {
        "message": json.dumps({
            "ContactId": contact_id,
            "ContactFlowModuleType": "SetAttributes",
            "Parameters": {"Key": key, "Value": value},
        })
    }


def s3_event(bucket="b", key="calls/abc-123_20180619T07%3A02_UTC.wav",
             event_time="2018-06-19T07:02:33.123Z"):
    return {
        "Records": [{
            "eventTime": event_time,
            "s3": {
                "bucket": {"name": bucket},
                "object": {"key": key},
            },
        }]
    }


@pytest.fixture
def config():
    return VoicemailConfig(
        log_group="/aws/connect/test",
        notification_topic="arn:aws:sns:us-east-1:123:notify",
        alert_topic="arn:aws:sns:us-east-1:123:alerts",
        timezone="Australia/Perth",
        link_expiry_days=7,
    )


@pytest.fixture
def clients():
    """AWS clients replaced by mocks; the log search returns no events."""
    clients = AwsClients(s3=MagicMock(), transcribe=MagicMock(), logs=MagicMock(), sns=MagicMock())
    clients.logs.get_paginator.return_value.paginate.return_value = [{"events": []}]
    clients.sns.publish.return_value = {"MessageId": "msg-1"}
    return clients
