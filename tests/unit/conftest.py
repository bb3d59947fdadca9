"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import io
import json
import os
import types
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import sql

from csv_loader.clients import PostgresDatabase
from csv_loader.config import AppConfig


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "csv-loader-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    yield
    os.environ.clear()
    os.environ.update(original)


# ---------- Statement rendering (no live connection needed) ---------- #
def render(statement) -> str:
    """Render a psycopg2 ``sql`` composable the way the server would see it."""
    if isinstance(statement, str):
        return statement
    if isinstance(statement, sql.Composed):
        return "".join(render(part) for part in statement.seq)
    if isinstance(statement, sql.Identifier):
        return ".".join(f'"{s}"' for s in statement.strings)
    if isinstance(statement, sql.Placeholder):
        return "%s" if statement.name is None else f"%({statement.name})s"
    if isinstance(statement, sql.SQL):
        return statement.string
    raise TypeError(f"cannot render {statement!r}")


# ---------- In-memory stand-ins for psycopg2 ---------- #
class FakeCursor:
    def __init__(self, connection: "FakeConnection"):
        self._connection = connection
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, statement, params=None):
        conn = self._connection
        text = render(statement)
        conn.statements.append((text, params))
        if conn.fail_on_statement == len(conn.statements):
            raise conn.failure
        if text.startswith("INSERT"):
            self.rowcount = text.count("(%s")
            conn.pending_rows += self.rowcount
        elif text.startswith("DELETE"):
            self.rowcount = conn.deletable_rows
        else:
            self.rowcount = -1


class FakeConnection:
    """
    Records statements and models visibility: inserted rows become durable
    only on commit and vanish on rollback.
    """

    def __init__(self):
        self.statements: list[tuple[str, object]] = []
        self.pending_rows = 0
        self.durable_rows = 0
        self.deletable_rows = 0
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0
        self.fail_on_statement: int | None = None
        self.failure: Exception = psycopg2.OperationalError(
            "server closed the connection unexpectedly"
        )
        self.commit_failure: Exception | None = None
        self.rollback_failure: Exception | None = None

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        if self.commit_failure is not None:
            raise self.commit_failure
        self.commits += 1
        self.durable_rows += self.pending_rows
        self.pending_rows = 0

    def rollback(self):
        if self.rollback_failure is not None:
            raise self.rollback_failure
        self.rollbacks += 1
        self.pending_rows = 0

    @property
    def inserts(self) -> list[tuple[str, object]]:
        return [s for s in self.statements if s[0].startswith("INSERT")]


class FakePool:
    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.checked_out = 0
        self.returned: list[bool] = []
        self.closed = False

    def getconn(self):
        self.checked_out += 1
        return self.connection

    def putconn(self, conn, close=False):
        self.checked_out -= 1
        self.returned.append(close)

    def closeall(self):
        self.closed = True


@pytest.fixture
def app_config() -> AppConfig:
    """A fully-populated configuration that never touches the environment."""
    return AppConfig(
        db_host="localhost",
        db_user="loader",
        db_name="warehouse",
        db_port=5432,
        db_password="secret",
        batch_size=2,
    )


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_connection) -> FakePool:
    return FakePool(fake_connection)


@pytest.fixture
def database(app_config, fake_pool) -> PostgresDatabase:
    return PostgresDatabase(app_config, pool=fake_pool)


class TrackingStream(io.BytesIO):
    """A BytesIO that remembers it was closed, even after garbage collection."""

    def close(self):
        self.was_closed = True
        super().close()


@pytest.fixture
def make_stream():
    def _make(text: str | bytes) -> TrackingStream:
        data = text.encode("utf-8") if isinstance(text, str) else text
        stream = TrackingStream(data)
        stream.was_closed = False
        return stream

    return _make


@pytest.fixture
def s3_client(make_stream) -> MagicMock:
    """An S3Client double serving the people.csv fixture by default."""
    client = MagicMock()
    client.get_file_content_stream.side_effect = lambda bucket, key: make_stream(
        "name,age\nAlice,30\nBob,25\nCharlie,40\n"
    )
    return client


# ---------- Minimal, realistic dummy events ---------- #
def s3_event(*objects: tuple[str, str]) -> dict:
    """An S3 ObjectCreated notification for each (bucket, key)."""
    return {
        "Records": [
            {
                "eventVersion": "2.1",
                "eventSource": "aws:s3",
                "awsRegion": "eu-west-1",
                "eventTime": datetime.now(timezone.utc).isoformat(),
                "eventName": "ObjectCreated:Put",
                "s3": {
                    "bucket": {"name": bucket},
                    "object": {"key": key, "size": 123, "sequencer": "0055AED6DCD90281E5"},
                },
            }
            for bucket, key in objects
        ]
    }


def sns_envelope(payload: dict) -> dict:
    return {
        "Type": "Notification",
        "MessageId": str(uuid.uuid4()),
        "TopicArn": "arn:aws:sns:eu-west-1:000000000000:uploads",
        "Message": json.dumps(payload),
    }


def sqs_message(body, message_id: str | None = None) -> dict:
    return {
        "messageId": message_id or str(uuid.uuid4()),
        "receiptHandle": "ignore",
        "body": body if isinstance(body, str) else json.dumps(body),
        "attributes": {},
        "messageAttributes": {},
        "md5OfBody": "dummy",
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:eu-west-1:000000000000:dummy",
        "awsRegion": "eu-west-1",
    }


@pytest.fixture
def sqs_event() -> dict:
    """One SQS record that wraps a *single* S3 PUT event."""
    return {"Records": [sqs_message(s3_event(("source-bucket", "input/people.csv")))]}


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="csv-loader",
        memory_limit_in_mb=256,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:csv-loader",
        get_remaining_time_in_millis=lambda: 30000,
    )
