# In src/csv_loader/schemas.py

"""
Parsing of SQS message bodies into S3 object references.

A body is one of a small, closed set of shapes, detected in a fixed order:

1. ``direct``    - an S3 event notification: ``{"Records": [...]}``
2. ``test``      - the ``s3:TestEvent`` S3 sends when a notification is configured
3. ``forwarded`` - an SNS envelope whose ``Message`` string is a direct S3 event

Only one level of forwarding is unwrapped; anything else is malformed.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import MissingReferenceFieldsError, NotificationParseError
from .security import normalize_object_key

# --- Runtime Validation (using Pydantic) ---


class S3EventNotification(BaseModel):
    """The direct shape. Records are validated one at a time later on."""

    model_config = ConfigDict(extra="ignore")

    records: list[Any] = Field(..., alias="Records")


class S3TestEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: Literal["s3:TestEvent"] = Field(..., alias="Event")


class SnsEnvelope(BaseModel):
    """An SNS notification delivered to SQS without raw message delivery."""

    model_config = ConfigDict(extra="ignore")

    message: str = Field(..., alias="Message")
    message_id: str | None = Field(None, alias="MessageId")
    topic_arn: str | None = Field(None, alias="TopicArn")


class ObjectReference(BaseModel):
    """The (bucket, key) pair identifying one object to load."""

    model_config = ConfigDict(frozen=True)

    bucket: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)

    @property
    def normalized_key(self) -> str:
        return normalize_object_key(self.key)

    @classmethod
    def from_record(cls, record: Any) -> "ObjectReference":
        """
        Extract the reference from one S3 event record.

        Raises:
            MissingReferenceFieldsError: If the bucket name or key is absent.
        """
        s3 = record.get("s3") if isinstance(record, dict) else None
        s3 = s3 if isinstance(s3, dict) else {}
        bucket = s3.get("bucket") if isinstance(s3.get("bucket"), dict) else {}
        obj = s3.get("object") if isinstance(s3.get("object"), dict) else {}

        try:
            return cls(bucket=bucket.get("name"), key=obj.get("key"))
        except pydantic.ValidationError as e:
            missing = sorted({str(err["loc"][0]) for err in e.errors()})
            raise MissingReferenceFieldsError(missing) from e


@dataclass(frozen=True)
class Notification:
    """A parsed message body, tagged with the shape it was found in."""

    shape: Literal["direct", "test", "forwarded"]
    records: list[Any] = field(default_factory=list)
    envelope_id: str | None = None


def _load_json_object(text: Any, where: str) -> dict[str, Any]:
    if not isinstance(text, (str, bytes, bytearray)):
        raise NotificationParseError(f"{where} is not a string")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise NotificationParseError(f"{where} is not valid JSON: {e.msg}") from e
    if not isinstance(payload, dict):
        raise NotificationParseError(f"{where} is not a JSON object")
    return payload


def _as_direct(payload: dict[str, Any]) -> S3EventNotification | None:
    if "Records" not in payload:
        return None
    try:
        return S3EventNotification.model_validate(payload)
    except pydantic.ValidationError as e:
        raise NotificationParseError("'Records' is not a list") from e


def _as_test_event(payload: dict[str, Any]) -> bool:
    try:
        S3TestEvent.model_validate(payload)
    except pydantic.ValidationError:
        return False
    return True


def parse_notification(body: Any) -> Notification:
    """
    Parse one SQS message body into a ``Notification``.

    Raises:
        NotificationParseError: If the body matches none of the known shapes.
    """
    payload = _load_json_object(body, "message body")

    direct = _as_direct(payload)
    if direct is not None:
        return Notification(shape="direct", records=direct.records)

    if _as_test_event(payload):
        return Notification(shape="test")

    if "Message" in payload:
        try:
            envelope = SnsEnvelope.model_validate(payload)
        except pydantic.ValidationError as e:
            raise NotificationParseError("'Message' is not a string") from e

        inner = _load_json_object(envelope.message, "forwarded message")
        forwarded = _as_direct(inner)
        if forwarded is not None:
            return Notification(
                shape="forwarded",
                records=forwarded.records,
                envelope_id=envelope.message_id,
            )
        if _as_test_event(inner):
            return Notification(shape="test", envelope_id=envelope.message_id)
        raise NotificationParseError(
            "forwarded message is not an S3 event notification"
        )

    raise NotificationParseError(
        "body has neither 'Records' nor a forwarded 'Message'",
        context={"top_level_keys": sorted(payload)[:10]},
    )
