# tests/unit/test_schemas.py

import json

import pytest
from conftest import s3_event, sns_envelope

from csv_loader.exceptions import MissingReferenceFieldsError, NotificationParseError
from csv_loader.schemas import ObjectReference, parse_notification


class TestParseNotification:
    """Test suite for the message body shape detection."""

    def test_direct_s3_event(self):
        body = json.dumps(s3_event(("uploads", "a.csv"), ("uploads", "b.csv")))

        notification = parse_notification(body)

        assert notification.shape == "direct"
        assert [r["s3"]["object"]["key"] for r in notification.records] == ["a.csv", "b.csv"]

    def test_empty_records_list_is_valid(self):
        notification = parse_notification(json.dumps({"Records": []}))

        assert notification.shape == "direct"
        assert notification.records == []

    def test_sns_forwarded_event_is_unwrapped_once(self):
        envelope = sns_envelope(s3_event(("bucket2", "file.csv")))

        notification = parse_notification(json.dumps(envelope))

        assert notification.shape == "forwarded"
        assert notification.envelope_id == envelope["MessageId"]
        assert notification.records[0]["s3"]["bucket"]["name"] == "bucket2"

    def test_s3_test_event_yields_no_records(self):
        body = json.dumps({"Service": "Amazon S3", "Event": "s3:TestEvent", "Bucket": "uploads"})

        notification = parse_notification(body)

        assert notification.shape == "test"
        assert notification.records == []

    def test_double_wrapped_envelope_is_malformed(self):
        twice = sns_envelope(sns_envelope(s3_event(("b", "k"))))

        with pytest.raises(NotificationParseError):
            parse_notification(json.dumps(twice))

    @pytest.mark.parametrize(
        "body",
        [
            "{not json",
            "[]",
            '"just a string"',
            json.dumps({"hello": "world"}),
            json.dumps({"Records": "nope"}),
            json.dumps({"Message": "not json either"}),
            json.dumps({"Message": 42}),
            None,
        ],
    )
    def test_malformed_bodies(self, body):
        with pytest.raises(NotificationParseError) as exc_info:
            parse_notification(body)

        assert exc_info.value.error_code == "NOTIFICATION_PARSE_ERROR"


class TestObjectReference:
    def test_from_record(self):
        record = s3_event(("uploads", "path%2Fto%2Ffile.csv"))["Records"][0]

        reference = ObjectReference.from_record(record)

        assert reference.bucket == "uploads"
        assert reference.key == "path%2Fto%2Ffile.csv"
        assert reference.normalized_key == "path/to/file.csv"

    @pytest.mark.parametrize(
        "record, missing",
        [
            ({"s3": {"bucket": {"name": "b"}, "object": {}}}, ["key"]),
            ({"s3": {"bucket": {}, "object": {"key": "k"}}}, ["bucket"]),
            ({"s3": {"bucket": {"name": ""}, "object": {"key": ""}}}, ["bucket", "key"]),
            ({"eventName": "ObjectCreated:Put"}, ["bucket", "key"]),
            ("not-a-record", ["bucket", "key"]),
        ],
    )
    def test_missing_fields(self, record, missing):
        with pytest.raises(MissingReferenceFieldsError) as exc_info:
            ObjectReference.from_record(record)

        assert exc_info.value.context["missing_fields"] == missing
