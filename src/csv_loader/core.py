# src/csv_loader/core.py

"""
Core business logic for loading one CSV object into PostgreSQL.

``process_object`` streams an S3 object through the decoder and the batcher
and hands each batch to the configured sink, all inside a single database
transaction. The object either lands completely or not at all: any failure
rolls back every batch already written for it and is re-raised unchanged.

Memory use is bounded by the read chunk size and the batch size, regardless
of how large the object is.
"""

import logging
import time
from contextlib import closing
from typing import Protocol

from aws_lambda_powertools.utilities.typing import LambdaContext

from .batching import DEFAULT_BATCH_SIZE, iter_batches
from .clients import PostgresDatabase, S3Client
from .decoder import DEFAULT_CHUNK_SIZE, RowDecoder
from .exceptions import DeadlineExceededError
from .security import normalize_object_key
from .sink import RowSink, SourceObject

logger = logging.getLogger(__name__)


class Deadline(Protocol):
    def check(self) -> None: ...


class LambdaDeadline:
    """
    Aborts the load while enough invocation time remains to roll back cleanly.
    """

    def __init__(self, context: LambdaContext, threshold_ms: int):
        self._context = context
        self._threshold_ms = threshold_ms

    def check(self) -> None:
        remaining = self._context.get_remaining_time_in_millis()
        if remaining < self._threshold_ms:
            raise DeadlineExceededError(
                remaining_time_ms=remaining,
                context={"threshold_ms": self._threshold_ms},
            )


def process_object(
    bucket: str,
    key: str,
    *,
    s3_client: S3Client,
    database: PostgresDatabase,
    sink: RowSink,
    batch_size: int = DEFAULT_BATCH_SIZE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    deadline: Deadline | None = None,
) -> int:
    """
    Load one S3 object into the sink and return the number of rows inserted.

    *key* is the key as delivered by the notification (URL-encoded). The
    object stream is closed and the transaction is either committed or rolled
    back on every exit path.
    """
    source = SourceObject(bucket=bucket, key=normalize_object_key(key))
    log_extra = {"bucket": source.bucket, "key": source.key}
    started = time.monotonic()

    stream = s3_client.get_file_content_stream(source.bucket, source.key)
    with closing(stream):
        decoder = RowDecoder(stream, chunk_size=chunk_size)
        rows_inserted = 0
        batches_written = 0

        with database.transaction() as txn:
            header = decoder.header
            if header is None:
                logger.info("Object has no header line; nothing to load.", extra=log_extra)
            sink.prepare(txn, source, header or [])

            for batch in iter_batches(decoder, batch_size):
                if deadline is not None:
                    deadline.check()
                rows_inserted += sink.write(txn, batch, source)
                batches_written += 1

    logger.info(
        "Loaded object",
        extra={
            **log_extra,
            "rows_inserted": rows_inserted,
            "batches": batches_written,
            "bytes_read": decoder.bytes_read,
            "duration_ms": round((time.monotonic() - started) * 1000),
        },
    )
    return rows_inserted
