# src/csv_loader/clients.py

"""
Client wrappers for the services the loader talks to (S3 and PostgreSQL).

These classes provide a small, typed interface over boto3 and psycopg2 so the
pipeline only ever sees our own exception types. ``ServiceClients`` owns the
long-lived resources (the boto3 client and the connection pool), creates them
lazily on first use so warm Lambda invocations reuse them, and releases them
on ``close()``. Tests hand in doubles instead.
"""

import atexit
import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import TYPE_CHECKING, Any, BinaryIO, Iterator, Sequence, cast

import boto3
import psycopg2
import psycopg2.pool
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .config import AppConfig, get_config
from .exceptions import (
    AccessDeniedError,
    EmptyBodyError,
    ObjectNotFoundError,
    S3Error,
    S3ThrottlingError,
    S3TimeoutError,
    SinkError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}
_ACCESS_DENIED_CODES = {"AccessDenied", "403", "Forbidden", "AllAccessDisabled"}
_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "SlowDown",
}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}


class S3Client:
    """
    A wrapper for S3 client operations, focused on streaming object bodies.
    """

    def __init__(self, s3_client: "S3ClientType"):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
        """
        self._client = s3_client

    def get_file_content_stream(self, bucket: str, key: str) -> BinaryIO:
        """
        Retrieves an S3 object's body as a file-like streaming object.
        Raises specific S3 exceptions based on the error type.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            context = {
                "aws_error_code": error_code,
                "aws_error_message": error_message,
            }

            # Map boto3 error codes to our specific exception types
            if error_code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(bucket=bucket, key=key, context=context) from e
            elif error_code in _ACCESS_DENIED_CODES:
                raise AccessDeniedError(bucket=bucket, key=key, context=context) from e
            elif error_code in _THROTTLING_CODES:
                raise S3ThrottlingError(
                    "GetObject",
                    context={"bucket": bucket, "key": key, **context},
                ) from e
            elif error_code in _TIMEOUT_CODES:
                raise S3TimeoutError(
                    "GetObject",
                    context={"bucket": bucket, "key": key, **context},
                ) from e
            else:
                # For other client errors, wrap in a generic S3 error
                raise S3Error(
                    f"S3 client error: {error_message}",
                    error_code="S3_CLIENT_ERROR",
                    context={"bucket": bucket, "key": key, **context},
                ) from e
        except ReadTimeoutError as e:
            raise S3TimeoutError(
                "GetObject",
                context={"bucket": bucket, "key": key, "timeout_error": str(e)},
            ) from e
        except EndpointConnectionError as e:
            raise S3TimeoutError(
                "GetObject",
                context={"bucket": bucket, "key": key, "connection_error": str(e)},
            ) from e

        body = response.get("Body")
        if body is None:
            raise EmptyBodyError(bucket=bucket, key=key)
        return cast(BinaryIO, body)


def _sink_error(operation: str, error: Exception) -> SinkError:
    """Translate a psycopg2 failure, keeping whether a retry could succeed."""
    retryable = isinstance(
        error,
        (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError),
    )
    return SinkError(
        operation,
        str(error).strip() or error.__class__.__name__,
        retryable=retryable,
        context={
            "driver_error": error.__class__.__name__,
            "pgcode": getattr(error, "pgcode", None),
        },
    )


class Transaction:
    """Handle for one open transaction on a checked-out connection."""

    def __init__(self, connection: Any):
        self._connection = connection

    def execute(self, statement: Any, params: Sequence[Any] | None = None) -> int:
        """
        Execute one statement with positional parameters.

        Returns the driver-reported row count (``-1`` when not applicable).
        """
        try:
            with self._connection.cursor() as cur:
                cur.execute(statement, params)
                return cur.rowcount
        except psycopg2.Error as e:
            raise _sink_error("execute", e) from e
        except ValueError as e:
            # Raised while adapting parameters, before anything reaches the server.
            raise _sink_error("execute", e) from e

    def commit(self) -> None:
        try:
            self._connection.commit()
        except psycopg2.Error as e:
            raise _sink_error("commit", e) from e

    def rollback(self) -> None:
        try:
            self._connection.rollback()
        except psycopg2.Error as e:
            raise _sink_error("rollback", e) from e


class PostgresDatabase:
    """
    PostgreSQL sink backed by a psycopg2 ``ThreadedConnectionPool``.

    Each ``transaction()`` checks out a dedicated connection, commits when the
    block exits normally, rolls back on any exception (including
    ``KeyboardInterrupt`` and other cancellations) and always returns the
    connection. Connections whose commit or rollback failed are discarded.
    """

    def __init__(self, config: AppConfig, pool: Any = None):
        self._config = config
        self._pool = pool

    def _connection_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self._config.db_host,
            "port": self._config.db_port,
            "user": self._config.db_user,
            "password": self._config.db_password,
            "dbname": self._config.db_name,
            "connect_timeout": self._config.db_connect_timeout_seconds,
            "application_name": self._config.service_name,
        }
        if self._config.db_statement_timeout_ms:
            kwargs["options"] = (
                f"-c statement_timeout={self._config.db_statement_timeout_ms}"
            )
        return kwargs

    @property
    def pool(self) -> Any:
        if self._pool is None:
            logger.info(
                "Opening database connection pool",
                extra={
                    "host": self._config.db_host,
                    "database": self._config.db_name,
                    "min_size": self._config.db_pool_min_size,
                    "max_size": self._config.db_pool_max_size,
                },
            )
            try:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    self._config.db_pool_min_size,
                    self._config.db_pool_max_size,
                    **self._connection_kwargs(),
                )
            except psycopg2.Error as e:
                raise _sink_error("connect", e) from e
        return self._pool

    def _acquire(self) -> Any:
        try:
            return self.pool.getconn()
        except (psycopg2.Error, psycopg2.pool.PoolError) as e:
            raise _sink_error("connect", e) from e

    def _release(self, conn: Any, discard: bool) -> None:
        try:
            self.pool.putconn(conn, close=discard or bool(conn.closed))
        except psycopg2.pool.PoolError:
            logger.warning("Connection could not be returned to the pool.")

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        conn = self._acquire()
        txn = Transaction(conn)
        discard = False
        committing = False
        try:
            yield txn
            committing = True
            txn.commit()
        except BaseException as exc:
            discard = committing
            try:
                txn.rollback()
            except SinkError as rollback_error:
                discard = True
                logger.error(
                    "Rollback failed; discarding connection",
                    extra={
                        "rollback_error": rollback_error.to_dict(),
                        "original_error_type": type(exc).__name__,
                    },
                )
            else:
                logger.info(
                    "Transaction rolled back",
                    extra={"error_type": type(exc).__name__},
                )
            raise
        finally:
            self._release(conn, discard)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("Closed database connection pool")


class ServiceClients:
    """
    Process-wide, lazily-initialized dependencies with an explicit lifecycle.

    Either client may be injected (tests, local runs); otherwise it is built
    from ``config`` on first access and reused until ``close()``.
    """

    def __init__(
        self,
        config: AppConfig,
        s3: S3Client | None = None,
        database: PostgresDatabase | None = None,
    ):
        self._config = config
        self._s3 = s3
        self._database = database

    @property
    def s3(self) -> S3Client:
        if self._s3 is None:
            self._s3 = S3Client(s3_client=boto3.client("s3"))
        return self._s3

    @property
    def database(self) -> PostgresDatabase:
        if self._database is None:
            self._database = PostgresDatabase(self._config)
        return self._database

    def close(self) -> None:
        if self._database is not None:
            self._database.close()
        self._database = None
        self._s3 = None


@lru_cache(maxsize=1)
def get_service_clients() -> ServiceClients:
    """
    Returns the shared ``ServiceClients`` for this process, creating it on the
    first call. The pool is closed when the interpreter shuts down.
    """
    clients = ServiceClients(get_config())
    atexit.register(clients.close)
    return clients
