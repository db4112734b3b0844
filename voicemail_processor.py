"""
AWS Lambda function for processing Amazon Connect voicemail recordings.
Also serves as the contact flow hook that asks for a voicemail agent to be
made available when a call comes in.

================================================================================
SETUP INSTRUCTIONS
================================================================================

STEP 1: CREATE SNS TOPICS
--------------------------------
1. Go to Amazon SNS Console
2. Create a topic for voicemail notifications (e.g. "voicemail-notifications")
   and subscribe the email addresses that should receive voicemails
3. (Optional) Create a topic for operator alerts (e.g. "voicemail-alerts")
4. (Optional) Create a topic that triggers the agent login automation
   (e.g. "voicemail-agent-login")


STEP 2: CREATE LAMBDA FUNCTION
--------------------------------
1. Go to AWS Lambda Console
2. Create new function (Python runtime)
3. Upload this module and set the handler to
   "voicemail_processor.lambda_handler"
4. Click "Deploy"


STEP 3: CONFIGURE ENVIRONMENT VARIABLES
--------------------------------
In Lambda Console, go to Configuration → Environment variables → Edit

    CONNECT_LOG_GROUP      = /aws/connect/your-instance-alias
    NOTIFICATION_TOPIC     = arn:aws:sns:...:voicemail-notifications
    NOTIFICATION_TIMEZONE  = Australia/Perth
    LINK_EXPIRY_IN_DAYS    = 7


STEP 4: UPDATE IAM PERMISSIONS
--------------------------------
Your Lambda execution role needs these permissions:

{
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": ["s3:GetObject"],
            "Resource": "arn:aws:s3:::YOUR-RECORDINGS-BUCKET/*"
        },
        {
            "Effect": "Allow",
            "Action": ["transcribe:StartTranscriptionJob", "transcribe:GetTranscriptionJob"],
            "Resource": "*"
        },
        {
            "Effect": "Allow",
            "Action": "logs:FilterLogEvents",
            "Resource": "arn:aws:logs:*:*:log-group:/aws/connect/*"
        },
        {
            "Effect": "Allow",
            "Action": "sns:Publish",
            "Resource": "*"
        },
        {
            "Effect": "Allow",
            "Action": ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
            "Resource": "*"
        }
    ]
}


STEP 5: CONFIGURE LAMBDA SETTINGS
--------------------------------
1. Go to Configuration → General configuration → Edit
2. Set Timeout: 5 minutes (must exceed TRANSCRIBE_WAIT_SECONDS)
3. Click "Save"


STEP 6: ADD S3 TRIGGER
--------------------------------
1. Add trigger → S3 → the bucket Amazon Connect saves recordings to
2. Event type: All object create events
3. Suffix: .wav


STEP 7: CONFIGURE AMAZON CONNECT
--------------------------------
In your Amazon Connect contact flow:

1. Enable contact flow logging ("Set logging behavior" block)

2. Add "Set contact attributes" blocks
   - Destination key: voicemail       Value: true   (REQUIRED for processing)
   - Destination key: callingNumber   Value: System → Customer number
   - Destination key: purpose         Value: e.g. billing (optional)

3. (Optional) Add "Invoke AWS Lambda function" block pointing at this
   function, so an agent is logged in to take the voicemail


TROUBLESHOOTING
--------------------------------
Check CloudWatch Logs for:
    [SKIPPED] ...                      ← Call was not flagged as voicemail
    [TRANSCRIBE START]                 ← Transcription started
    [TRANSCRIBE END]                   ← Transcription finished
    [SIGNED URL] Created               ← Download link generated
    [NOTIFICATION SENT]                ← Notification published
    [ALERT SENT]                       ← Processing failed, operators told

Common Issues:
    "Unexpected objectKey format"      → Recording key has no contact id
    "[SKIPPED]" for real voicemails    → Check "voicemail" attribute and
                                         contact flow logging
    "timed out"                        → Raise TRANSCRIBE_WAIT_SECONDS and
                                         the Lambda timeout together

================================================================================
ENVIRONMENT VARIABLES
================================================================================

Required:
    CONNECT_LOG_GROUP: Log group Amazon Connect writes contact flow logs to
    NOTIFICATION_TOPIC: SNS topic for voicemail notifications

Optional (with defaults):
    ALERT_TOPIC: SNS topic for failure alerts (default: NOTIFICATION_TOPIC)
    AGENT_LOGIN_TOPIC: SNS topic triggering agent login (default: disabled)
    NOTIFICATION_TIMEZONE: Timezone dates are shown in (default: UTC)
    LINK_EXPIRY_IN_DAYS: Download link lifetime, 1 to 7 (default: 7)
    CONNECT_REGION: Region of the Connect instance (default: AWS_REGION)
    TRANSCRIBE_WAIT_SECONDS: Total time to wait for a transcript (default: 240)
    TRANSCRIBE_INITIAL_WAIT_SECONDS: Wait before first status check (default: 60)
    TRANSCRIBE_POLL_ATTEMPTS: Status checks after the first wait (default: 6)

================================================================================
HOW IT WORKS
================================================================================

1. Amazon Connect records the call → uploads to S3 → S3 invokes this Lambda
2. Lambda asks for the voicemail agent to be made available again
3. Lambda reads the contact id from the recording's key
4. Lambda searches contact flow logs for attributes set during the call
5. Calls not flagged as voicemail are ignored
6. Lambda transcribes audio using AWS Transcribe
7. Lambda generates a presigned download URL
8. Lambda publishes the notification to SNS
9. Any failure is published to the alert topic and the invocation fails

================================================================================
"""

import os
import re
import json
import socket
import boto3
import logging
import time
import http.client
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from botocore.exceptions import BotoCoreError, ClientError
from botocore.config import Config
from urllib.parse import quote, unquote_plus

# Logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Constants
DEFAULT_LANGUAGE = "en-US"
DEFAULT_MEDIA_FORMAT = "wav"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_LINK_EXPIRY_DAYS = 7
MAX_LINK_EXPIRY_DAYS = 7
SECONDS_PER_DAY = 86400
TRANSCRIBE_WAIT_SECONDS = 240
TRANSCRIBE_INITIAL_WAIT_SECONDS = 60
TRANSCRIBE_POLL_ATTEMPTS = 6
SEARCH_PERIOD_IN_DAYS = 1
TRANSCRIPT_FETCH_TIMEOUT_SECONDS = 30

TRANSCRIBE_PENDING = ("QUEUED", "IN_PROGRESS")
TRANSCRIBE_COMPLETED = "COMPLETED"
TRANSCRIBE_FAILED = "FAILED"

SET_ATTRIBUTES_MODULE = "SetAttributes"
VOICEMAIL_PROCESSED_EVENT = "VOICEMAIL_PROCESSED"
CALL_IN_PROGRESS_EVENT = "CALL_IN_PROGRESS"
ALERT_SUBJECT = "Voicemail processing failure"
NO_TRANSCRIPT_TEXT = "No transcription available"
UNKNOWN_CALLER = "Unknown"
TRUTHY_VALUES = {"true", "yes", "1"}

CONTACT_ID_PATTERN = re.compile(r".*/([a-zA-Z0-9-]+)_.*")
FILE_PARTS_PATTERN = re.compile(r"(.*[\\/])?(.+?)\.([^.]*$|$)")
JOB_NAME_INVALID_CHARS = re.compile(r"[^0-9a-zA-Z._-]")
INTERNATIONAL_NUMBER = re.compile(r"\+61(\d+)")
MOBILE_NUMBER = re.compile(r"^(04\d{2})(\d{3})(\d{3})$")
NATIONAL_NUMBER = re.compile(r"^(\d{2})(\d{4})(\d{4})$")

# Pipeline stages, reported in failure alerts
STAGE_PARSING = "parsing event"
STAGE_ENRICHING = "enriching"
STAGE_TRANSCRIBING = "transcribing"
STAGE_LINK = "issuing link"
STAGE_NOTIFYING = "notifying"


# =============================================================================
# EXCEPTION CLASSES
# =============================================================================

class VoicemailProcessingError(Exception):
    """Base exception for voicemail processing errors."""
    pass


class FormatError(VoicemailProcessingError):
    """Raised when an object key or log entry is not in the expected shape."""
    pass


class TranscriptionError(VoicemailProcessingError):
    """Raised when transcription fails."""

    def __init__(self, job_name: str, reason: str):
        self.job_name = job_name
        self.reason = reason
        super().__init__(f"Transcription failure: {reason}")


class TranscriptionTimeoutError(TranscriptionError):
    """Raised when a transcription job is still pending after the wait budget."""

    def __init__(self, job_name: str, waited_seconds: float):
        self.waited_seconds = waited_seconds
        super().__init__(job_name, f"job '{job_name}' timed out after {waited_seconds:.0f}s")


class CollaboratorError(VoicemailProcessingError):
    """Raised when a call to an AWS service or the transcript URL fails."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


# =============================================================================
# CONFIGURATION
# =============================================================================

class VoicemailConfig(NamedTuple):
    """Settings shared by every pipeline stage."""
    log_group: str
    notification_topic: str
    alert_topic: str
    agent_login_topic: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    link_expiry_days: int = DEFAULT_LINK_EXPIRY_DAYS
    region: str = "us-east-1"
    connect_region: str = "us-east-1"
    transcribe_wait_seconds: int = TRANSCRIBE_WAIT_SECONDS
    initial_wait_seconds: int = TRANSCRIBE_INITIAL_WAIT_SECONDS
    poll_attempts: int = TRANSCRIBE_POLL_ATTEMPTS
    search_period_days: int = SEARCH_PERIOD_IN_DAYS
    language_code: str = DEFAULT_LANGUAGE

    @property
    def link_expiry_seconds(self) -> int:
        return self.link_expiry_days * SECONDS_PER_DAY


def _int_setting(environ: Dict[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


def load_config(environ: Optional[Dict[str, str]] = None) -> VoicemailConfig:
    """Validate and retrieve environment variables."""
    if environ is None:
        environ = dict(os.environ)

    log_group = environ.get("CONNECT_LOG_GROUP", "")
    if not log_group:
        raise ValueError("CONNECT_LOG_GROUP environment variable is required")

    notification_topic = environ.get("NOTIFICATION_TOPIC", "")
    if not notification_topic:
        raise ValueError("NOTIFICATION_TOPIC environment variable is required")

    region = environ.get("AWS_REGION", "us-east-1")
    tz_name = environ.get("NOTIFICATION_TIMEZONE", "") or DEFAULT_TIMEZONE

    config = VoicemailConfig(
        log_group=log_group,
        notification_topic=notification_topic,
        alert_topic=environ.get("ALERT_TOPIC", "") or notification_topic,
        agent_login_topic=environ.get("AGENT_LOGIN_TOPIC", "") or None,
        timezone=tz_name,
        link_expiry_days=_int_setting(environ, "LINK_EXPIRY_IN_DAYS", DEFAULT_LINK_EXPIRY_DAYS),
        region=region,
        connect_region=environ.get("CONNECT_REGION", "") or region,
        transcribe_wait_seconds=_int_setting(environ, "TRANSCRIBE_WAIT_SECONDS", TRANSCRIBE_WAIT_SECONDS),
        initial_wait_seconds=_int_setting(
            environ, "TRANSCRIBE_INITIAL_WAIT_SECONDS", TRANSCRIBE_INITIAL_WAIT_SECONDS
        ),
        poll_attempts=_int_setting(environ, "TRANSCRIBE_POLL_ATTEMPTS", TRANSCRIBE_POLL_ATTEMPTS),
    )
    validate_config(config)
    return config


def validate_config(config: VoicemailConfig) -> None:
    """Raise ValueError when settings cannot work together."""
    if not 1 <= config.link_expiry_days <= MAX_LINK_EXPIRY_DAYS:
        raise ValueError(
            f"LINK_EXPIRY_IN_DAYS must be between 1 and {MAX_LINK_EXPIRY_DAYS}, "
            f"got {config.link_expiry_days}"
        )
    if config.initial_wait_seconds < 0:
        raise ValueError("TRANSCRIBE_INITIAL_WAIT_SECONDS must not be negative")
    if config.transcribe_wait_seconds <= config.initial_wait_seconds:
        raise ValueError("TRANSCRIBE_WAIT_SECONDS must exceed TRANSCRIBE_INITIAL_WAIT_SECONDS")
    if config.poll_attempts < 1:
        raise ValueError("TRANSCRIBE_POLL_ATTEMPTS must be at least 1")
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown NOTIFICATION_TIMEZONE '{config.timezone}'")


class AwsClients(NamedTuple):
    s3: Any
    transcribe: Any
    logs: Any
    sns: Any


def create_clients(config: VoicemailConfig) -> AwsClients:
    """Initialize AWS clients for the configured regions."""
    boto_config = Config(region_name=config.region, signature_version="s3v4")
    connect_config = Config(region_name=config.connect_region)

    clients = AwsClients(
        s3=boto3.client("s3", config=boto_config),
        transcribe=boto3.client("transcribe", config=boto_config),
        logs=boto3.client("logs", config=connect_config),
        sns=boto3.client("sns", config=boto_config),
    )
    logger.info(f"AWS clients initialized in {config.region} (logs in {config.connect_region})")
    return clients


# =============================================================================
# VOICEMAIL RECORD
# =============================================================================

@dataclass
class VoicemailRecord:
    """Details of one voicemail, filled in as the pipeline runs."""
    bucket_name: str
    object_key: str
    object_url: str
    console_url: str
    creation_date: datetime
    contact_id: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)
    transcript: Optional[str] = None
    pre_signed_url: Optional[str] = None

    @property
    def media_uri(self) -> str:
        return f"s3://{self.bucket_name}/{self.object_key}"

    @property
    def calling_number(self) -> Optional[str]:
        return self.attributes.get("callingNumber")

    @property
    def purpose(self) -> Optional[str]:
        return self.attributes.get("purpose")

    @property
    def is_voicemail(self) -> bool:
        return is_truthy(self.attributes.get("voicemail"))


def is_truthy(value: Any) -> bool:
    """Interpret a contact attribute value as a flag."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def parse_event_time(value: str) -> datetime:
    """Parse an S3 event timestamp such as 2018-06-19T07:02:33.123Z."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise FormatError(f"Unexpected eventTime format: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_s3_object_info(event_record: dict) -> VoicemailRecord:
    """Get details of the new S3 object from a Lambda event record."""
    try:
        bucket_name = event_record["s3"]["bucket"]["name"]
        encoded_key = event_record["s3"]["object"]["key"]
        event_time = event_record["eventTime"]
    except (KeyError, TypeError) as e:
        raise FormatError(f"Missing S3 event field: {e}") from e

    # Keys arrive URL-encoded with '+' for spaces
    object_key = unquote_plus(encoded_key)

    return VoicemailRecord(
        bucket_name=bucket_name,
        object_key=object_key,
        object_url=f"https://{bucket_name}.s3.amazonaws.com/{quote(object_key)}",
        console_url=f"https://s3.console.aws.amazon.com/s3/object/{bucket_name}/{quote(object_key)}",
        creation_date=parse_event_time(event_time),
    )


def contact_id_from_object_key(object_key: str) -> str:
    """
    Parse the Amazon Connect contact id from a recording's object key.

    'some/path/49ff0244-82f5-4c51-83b4-c2b0d7374f3a_20180619T07:02_UTC.wav'
        -> '49ff0244-82f5-4c51-83b4-c2b0d7374f3a'
    """
    logger.info(f"Object Key: {object_key}")
    match = CONTACT_ID_PATTERN.match(object_key)
    if not match:
        raise FormatError("Unexpected objectKey format")
    contact_id = match.group(1)
    logger.info(f"Parsed contactId from objectKey: {contact_id}")
    return contact_id


# =============================================================================
# CALL ATTRIBUTES
# =============================================================================

def format_phone_number(phone_number: str) -> str:
    """
    Convert an E.164 number to a more readable local format.

    '+61412345678' -> '0412 345 678'
    '+61812341234' -> '08 1234 1234'
    """
    formatted = phone_number

    match = INTERNATIONAL_NUMBER.search(phone_number)
    if match:
        formatted = f"0{match.group(1)}"

    match = MOBILE_NUMBER.match(formatted) or NATIONAL_NUMBER.match(formatted)
    if match:
        formatted = " ".join(match.groups())

    return formatted


def format_attribute(key: str, value: Any) -> Any:
    """Re-format a call attribute value if necessary."""
    if key == "callingNumber" and isinstance(value, str):
        return format_phone_number(value)
    return value


def contact_flow_filter_pattern(contact_id: str) -> str:
    return (
        f'{{ ($.ContactId = "{contact_id}") && '
        f'($.ContactFlowModuleType = "{SET_ATTRIBUTES_MODULE}") }}'
    )


def get_contact_flow_logs(logs_client, config: VoicemailConfig, contact_id: str,
                          now: Optional[datetime] = None) -> List[dict]:
    """Search contact flow logs for attribute events of a call."""
    now = now or datetime.now(timezone.utc)
    start_time = now - timedelta(days=config.search_period_days)
    params = {
        "logGroupName": config.log_group,
        "filterPattern": contact_flow_filter_pattern(contact_id),
        "startTime": int(start_time.timestamp() * 1000),
    }
    logger.info(f"Filtering log events: {params}")

    events = []
    try:
        paginator = logs_client.get_paginator("filter_log_events")
        for page in paginator.paginate(**params):
            events.extend(page.get("events", []))
    except (ClientError, BotoCoreError) as e:
        raise CollaboratorError("filter_log_events", e) from e

    logger.info(f"Found {len(events)} contact flow log events")
    return events


def parse_call_attributes(events: List[dict]) -> Dict[str, Any]:
    """Return call attributes set in the given contact flow log events."""
    attributes = {}
    for event in events:
        try:
            parameters = json.loads(event["message"])["Parameters"]
            key, value = parameters["Key"], parameters["Value"]
        except (KeyError, TypeError, ValueError) as e:
            raise FormatError(f"Unexpected contact flow log entry: {e}") from e
        attributes[key] = format_attribute(key, value)
    return attributes


def get_call_attributes(logs_client, config: VoicemailConfig, contact_id: str) -> Dict[str, Any]:
    """Recover attributes set by the contact flow for a call."""
    events = get_contact_flow_logs(logs_client, config, contact_id)
    attributes = parse_call_attributes(events)
    logger.info(f"Call attributes: {attributes}")
    return attributes


# =============================================================================
# TRANSCRIPTION PROCESSING
# =============================================================================

def get_file_parts(file_uri: str) -> Dict[str, Optional[str]]:
    """
    Split a path to a file into its directory, name and extension.

    'some/path/to/file.thing' -> {'path': 'some/path/to/', 'filename': 'file', 'extension': 'thing'}
    """
    match = FILE_PARTS_PATTERN.match(file_uri)
    if not match:
        return {"path": None, "filename": file_uri or None, "extension": None}
    path, filename, extension = match.groups()
    return {"path": path, "filename": filename, "extension": extension}


def normalise_job_name(job_name: str) -> str:
    """Replace characters not allowed in Transcribe job names."""
    return JOB_NAME_INVALID_CHARS.sub("_", job_name)


def media_file_parts(media_uri: str) -> Dict[str, Optional[str]]:
    """Split the file name at the end of a media URI, ignoring bucket and path."""
    return get_file_parts(media_uri.rsplit("/", 1)[-1])


def build_job_name(media_uri: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    filename = media_file_parts(media_uri)["filename"] or "voicemail"
    return normalise_job_name(f"{filename}_{timestamp_ms}")


def start_transcription_job(transcribe_client, media_uri: str, media_format: Optional[str] = None,
                            language: str = DEFAULT_LANGUAGE) -> str:
    """Start AWS Transcribe job for audio file."""
    if not media_format:
        media_format = (media_file_parts(media_uri)["extension"] or DEFAULT_MEDIA_FORMAT).lower()

    request = {
        "TranscriptionJobName": build_job_name(media_uri),
        "Media": {"MediaFileUri": media_uri},
        "MediaFormat": media_format,
        "LanguageCode": language,
    }
    logger.info(f"Start job: {json.dumps(request)}")

    try:
        job = transcribe_client.start_transcription_job(**request)["TranscriptionJob"]
    except (ClientError, BotoCoreError) as e:
        raise CollaboratorError("start_transcription_job", e) from e

    return job["TranscriptionJobName"]


def poll_interval_seconds(wait_seconds: float, initial_wait_seconds: float, attempts: int) -> float:
    """Spread the budget left after the initial wait evenly over the attempts."""
    return (wait_seconds - initial_wait_seconds) / attempts


def get_transcription_job(transcribe_client, job_name: str) -> dict:
    try:
        return transcribe_client.get_transcription_job(TranscriptionJobName=job_name)["TranscriptionJob"]
    except (ClientError, BotoCoreError) as e:
        raise CollaboratorError("get_transcription_job", e) from e


def wait_for_transcription(transcribe_client, job_name: str,
                           wait_seconds: float = TRANSCRIBE_WAIT_SECONDS,
                           initial_wait_seconds: float = TRANSCRIBE_INITIAL_WAIT_SECONDS,
                           attempts: int = TRANSCRIBE_POLL_ATTEMPTS,
                           sleep: Callable[[float], None] = time.sleep) -> dict:
    """
    Wait for a transcription job to leave the pending state.

    Jobs take at least a minute, so nothing is checked until the initial wait
    is over. After that the job is checked `attempts` times, sleeping an even
    share of the remaining budget after each pending check, so the total wait
    never exceeds `wait_seconds`.

    Raises TranscriptionTimeoutError if the job is still pending at the end.
    """
    logger.info(f"Waiting for transcription job {job_name} (up to {wait_seconds}s)")
    interval = poll_interval_seconds(wait_seconds, initial_wait_seconds, attempts)

    sleep(initial_wait_seconds)
    waited = initial_wait_seconds

    for attempt in range(1, attempts + 1):
        job = get_transcription_job(transcribe_client, job_name)
        status = job["TranscriptionJobStatus"]
        logger.info(f"Check {attempt}/{attempts}: {job_name} is {status}")

        if status not in TRANSCRIBE_PENDING:
            return job

        sleep(interval)
        waited += interval

    raise TranscriptionTimeoutError(job_name, waited)


def parse_s3_uri(uri: str) -> Tuple[str, str]:
    """Parse S3 URI into bucket and key."""
    rest = uri[5:]
    bucket, key = rest.split("/", 1)
    return bucket, key


def fetch_json(uri: str, s3_client=None) -> dict:
    """Fetch and parse JSON from S3 URI or HTTP URL."""
    try:
        if uri.startswith("s3://"):
            bucket, key = parse_s3_uri(uri)
            body = s3_client.get_object(Bucket=bucket, Key=key)["Body"].read()
        else:
            with urllib.request.urlopen(uri, timeout=TRANSCRIPT_FETCH_TIMEOUT_SECONDS) as response:
                body = response.read()
        return json.loads(body)
    except (ClientError, BotoCoreError, urllib.error.URLError, socket.timeout, TimeoutError,
            http.client.HTTPException, ValueError) as e:
        raise CollaboratorError("fetch transcript", e) from e


def first_transcript(data: dict) -> Optional[str]:
    """Return the first transcript segment of a Transcribe result document."""
    if not isinstance(data, dict):
        raise FormatError("Unexpected transcript document: not a JSON object")
    results = data.get("results") or {}
    if not isinstance(results, dict):
        raise FormatError("Unexpected transcript document: results is not an object")
    transcripts = results.get("transcripts") or []
    if not transcripts:
        return None
    if not isinstance(transcripts, list) or not isinstance(transcripts[0], dict):
        raise FormatError("Unexpected transcript document: malformed transcripts")
    return transcripts[0].get("transcript")


def transcribe_recording(transcribe_client, config: VoicemailConfig, media_uri: str,
                         s3_client=None, sleep: Callable[[float], None] = time.sleep) -> Optional[str]:
    """Convert the recording into a text transcript."""
    logger.info(f"[TRANSCRIBE START] {media_uri}")
    start_time = time.time()

    job_name = start_transcription_job(transcribe_client, media_uri, language=config.language_code)
    job = wait_for_transcription(
        transcribe_client,
        job_name,
        wait_seconds=config.transcribe_wait_seconds,
        initial_wait_seconds=config.initial_wait_seconds,
        attempts=config.poll_attempts,
        sleep=sleep,
    )
    status = job["TranscriptionJobStatus"]
    logger.info(f"[TRANSCRIBE END] {job_name}: {status} ({int(time.time() - start_time)}s)")

    if status == TRANSCRIBE_FAILED:
        raise TranscriptionError(job_name, job.get("FailureReason", "unknown reason"))
    if status != TRANSCRIBE_COMPLETED:
        raise TranscriptionError(job_name, f"unexpected job status {status}")

    data = fetch_json(job["Transcript"]["TranscriptFileUri"], s3_client)
    transcript = first_transcript(data)
    if transcript is None:
        logger.warning("Empty transcription")
    return transcript


# =============================================================================
# DOWNLOAD LINK
# =============================================================================

def generate_presigned_url(s3_client, bucket: str, key: str, expiry_seconds: int) -> str:
    """Get a presigned URL so recipients can download without logging in."""
    try:
        url = s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expiry_seconds,
        )
    except (ClientError, BotoCoreError) as e:
        raise CollaboratorError("generate_presigned_url", e) from e

    logger.info(f"[SIGNED URL] Created (valid for {expiry_seconds // 3600} hours)")
    return url


# =============================================================================
# NOTIFICATIONS
# =============================================================================

def format_date(value: datetime, tz_name: str) -> str:
    """Format a datetime like 'Tue Jun 19, 3:03 PM AWST'."""
    local = value.astimezone(ZoneInfo(tz_name))
    hour = local.hour % 12 or 12
    return f"{local:%a %b} {local.day}, {hour}:{local:%M %p %Z}"


def notification_subject(record: VoicemailRecord) -> str:
    purpose = f" {record.purpose}" if record.purpose else ""
    return f"[{purpose}] Voice-mail from {record.calling_number or UNKNOWN_CALLER}"


def notification_message(record: VoicemailRecord, config: VoicemailConfig,
                         now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    created = format_date(record.creation_date, config.timezone)
    expires = format_date(now + timedelta(days=config.link_expiry_days), config.timezone)

    return f"""
Caller: {record.calling_number or UNKNOWN_CALLER}
Called at: {created}
Purpose: {record.purpose or ""}

Transcript:
===========
{record.transcript or NO_TRANSCRIPT_TEXT}
===========

Download (valid until {expires}): {record.pre_signed_url}

-

Download (requires log-in): {record.console_url}

================================================================================
"""


def publish(sns_client, topic_arn: str, message: str, subject: Optional[str] = None) -> dict:
    """Publish an SNS message to the given topic."""
    if not message:
        raise FormatError("Need a non-empty message")

    params = {"TopicArn": topic_arn, "Message": message}
    if subject:
        params["Subject"] = subject

    logger.info(f"Publish SNS to {topic_arn}: {subject or '(no subject)'}")
    try:
        return sns_client.publish(**params)
    except (ClientError, BotoCoreError) as e:
        raise CollaboratorError("sns publish", e) from e


def send_notification(sns_client, config: VoicemailConfig, record: VoicemailRecord) -> dict:
    """Publish the voicemail notification with transcript and download links."""
    logger.info("Sending voicemail notification...")
    response = publish(
        sns_client,
        config.notification_topic,
        notification_message(record, config),
        subject=notification_subject(record),
    )
    logger.info(f"[NOTIFICATION SENT] {response.get('MessageId')}")
    return response


def send_failure_alert(sns_client, config: VoicemailConfig, error: Exception,
                       description: str) -> None:
    """Tell operators about a failure. Never raises."""
    message = f"{description}:\n{type(error).__name__}: {error}"
    try:
        response = publish(sns_client, config.alert_topic, message, subject=ALERT_SUBJECT)
        logger.info(f"[ALERT SENT] {response.get('MessageId')}")
    except Exception:
        logger.error("Failed to send failure alert", exc_info=True)


def send_agent_login_event(sns_client, config: VoicemailConfig, params: dict) -> dict:
    """Publish a message that triggers the agent login automation."""
    if not config.agent_login_topic:
        raise ValueError("AGENT_LOGIN_TOPIC environment variable not set")
    return publish(sns_client, config.agent_login_topic, json.dumps(params))


def signal_agent_available(sns_client, config: VoicemailConfig) -> None:
    """Ask for the agent to be made available again. Failures are only logged."""
    if not config.agent_login_topic:
        logger.info("AGENT_LOGIN_TOPIC not set, skipping agent availability signal")
        return
    try:
        send_agent_login_event(sns_client, config, {"event": VOICEMAIL_PROCESSED_EVENT})
    except Exception as e:
        logger.warning(f"Agent availability signal failed: {e}")


# =============================================================================
# VOICEMAIL PROCESSING HANDLER
# =============================================================================

def handle_voicemail_processing(event: dict, config: VoicemailConfig, clients: AwsClients,
                                sleep: Callable[[float], None] = time.sleep) -> dict:
    """Handle a recording uploaded to S3 by Amazon Connect."""
    logger.info("=" * 80)
    logger.info("VOICEMAIL PROCESSING STARTED")
    logger.info("=" * 80)

    # Agent has just finished a call, so make it available again
    signal_agent_available(clients.sns, config)

    stage = STAGE_PARSING
    try:
        try:
            event_record = event["Records"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise FormatError(f"Missing S3 event record: {e}") from e
        record = get_s3_object_info(event_record)
        record.contact_id = contact_id_from_object_key(record.object_key)

        stage = STAGE_ENRICHING
        record.attributes.update(get_call_attributes(clients.logs, config, record.contact_id))

        if not record.is_voicemail:
            logger.info(f"[SKIPPED] Non-voicemail call {record.contact_id}, ignoring")
            return {"statusCode": 200, "message": "Non-voicemail call ignored"}

        stage = STAGE_TRANSCRIBING
        record.transcript = transcribe_recording(
            clients.transcribe, config, record.media_uri, s3_client=clients.s3, sleep=sleep
        )

        stage = STAGE_LINK
        record.pre_signed_url = generate_presigned_url(
            clients.s3, record.bucket_name, record.object_key, config.link_expiry_seconds
        )

        stage = STAGE_NOTIFYING
        response = send_notification(clients.sns, config, record)

    except Exception as e:
        logger.error(f"Voicemail processing failed while {stage}: {e}", exc_info=True)
        send_failure_alert(
            clients.sns, config, e,
            f"Voicemail processing encountered an error while {stage}",
        )
        raise

    return {
        "statusCode": 200,
        "message": "Voicemail processed successfully",
        "data": {
            "contact_id": record.contact_id,
            "s3_uri": record.media_uri,
            "message_id": response.get("MessageId"),
        },
    }


# =============================================================================
# AGENT LOGIN HANDLER
# =============================================================================

def handle_agent_login_request(event: dict, config: VoicemailConfig, clients: AwsClients) -> dict:
    """
    Handle an Amazon Connect contact flow invocation by triggering the agent
    login automation through SNS, so the call flow is not kept waiting.
    """
    try:
        contact_id = event["Details"]["ContactData"]["ContactId"]
        parameters = event["Details"].get("Parameters", {})
        logger.info(f"Contact ID: {contact_id}")

        send_agent_login_event(clients.sns, config, {
            "contactId": contact_id,
            "parameters": parameters,
            "event": CALL_IN_PROGRESS_EVENT,
        })
        return {"success": None, "deferred": True}

    except Exception as e:
        logger.error(f"Agent login trigger failed: {e}", exc_info=True)
        send_failure_alert(
            clients.sns, config, e,
            "Failure triggering voicemail agent to be available",
        )
        raise


# =============================================================================
# MAIN HANDLER (ROUTER)
# =============================================================================

def lambda_handler(event: dict, context) -> dict:
    """
    Main Lambda handler that routes between:
    1. S3 object created events (voicemail processing)
    2. Amazon Connect events (agent login trigger)
    """
    logger.info(f"Event type check - Keys: {list(event.keys())}")

    config = load_config()
    clients = create_clients(config)

    records = event.get("Records") or []
    if records and "s3" in records[0]:
        logger.info("Handling S3 event (voicemail processing)")
        return handle_voicemail_processing(event, config, clients)

    elif "Details" in event and "ContactData" in event.get("Details", {}):
        logger.info("Handling Amazon Connect event (agent login)")
        return handle_agent_login_request(event, config, clients)

    else:
        logger.error(f"Unknown event type. Event keys: {list(event.keys())}")
        return {
            "statusCode": 400,
            "body": json.dumps({"error": "Unknown event type"}),
        }
