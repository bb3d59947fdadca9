# src/csv_loader/sink.py

"""
Batch writers for the PostgreSQL sink.

Every non-empty batch is written with exactly one multi-row ``INSERT``. Table
and column names are composed with ``psycopg2.sql.Identifier`` and every field
value travels as a bound parameter, never as statement text.

Two table layouts are supported and chosen once per deployment:

* ``json``    - provenance columns plus the whole row as a ``jsonb`` payload.
* ``columns`` - one ``text`` column per CSV header field.
"""

import logging
from dataclasses import dataclass
from typing import Any

from psycopg2 import sql
from psycopg2.extras import Json

from .batching import Batch
from .clients import Transaction
from .config import AppConfig
from .exceptions import SinkError
from .security import MAX_IDENTIFIER_BYTES, split_table_name, validate_header_columns

logger = logging.getLogger(__name__)

# PostgreSQL's wire protocol caps bind parameters per statement at 65535.
MAX_BIND_PARAMETERS = 65_535


@dataclass(frozen=True, slots=True)
class SourceObject:
    """The decoded S3 location a batch was read from."""

    bucket: str
    key: str


class RowSink:
    """Base class: statement assembly shared by both layouts."""

    def __init__(self, table: str, create_table: bool = False):
        self._table_parts = split_table_name(table)
        self.table = table
        self.create_table = create_table

    @property
    def table_identifier(self) -> sql.Identifier:
        return sql.Identifier(*self._table_parts)

    def prepare(self, txn: Transaction, source: SourceObject, header: list[str]) -> None:
        """Runs once per object, inside its transaction, before any batch."""
        raise NotImplementedError

    def columns_for(self, batch: Batch) -> list[str]:
        raise NotImplementedError

    def row_params(self, batch: Batch, source: SourceObject) -> list[Any]:
        raise NotImplementedError

    def insert_statement(self, columns: list[str], row_count: int) -> sql.Composed:
        row_placeholder = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() * len(columns))
        )
        return sql.SQL("INSERT INTO {table} ({columns}) VALUES {values}").format(
            table=self.table_identifier,
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            values=sql.SQL(", ").join([row_placeholder] * row_count),
        )

    def write(self, txn: Transaction, batch: Batch, source: SourceObject) -> int:
        """
        Insert every row of *batch* with one statement.

        Returns the number of rows written. An empty batch is a no-op.
        """
        if not batch.rows:
            return 0

        columns = self.columns_for(batch)
        param_count = len(columns) * len(batch)
        if param_count > MAX_BIND_PARAMETERS:
            raise SinkError(
                "insert",
                f"batch needs {param_count} bind parameters, more than the "
                f"{MAX_BIND_PARAMETERS} PostgreSQL accepts; lower BATCH_SIZE",
                context={"batch_number": batch.number, "columns": len(columns)},
            )

        statement = self.insert_statement(columns, len(batch))
        written = txn.execute(statement, self.row_params(batch, source))
        logger.debug(
            "Wrote batch",
            extra={
                "table": self.table,
                "batch_number": batch.number,
                "rows": len(batch),
                "rowcount": written,
            },
        )
        return written if written >= 0 else len(batch)


class JsonRowSink(RowSink):
    """Stores each row as a ``jsonb`` payload tagged with its source object."""

    columns = ["source_bucket", "source_key", "row_number", "payload"]

    def __init__(
        self, table: str, create_table: bool = False, replace_existing: bool = True
    ):
        super().__init__(table, create_table)
        self.replace_existing = replace_existing

    def _index_identifier(self) -> sql.Identifier:
        name = f"{self._table_parts[-1]}_source_idx"
        while len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
            name = name[1:]
        return sql.Identifier(name)

    def prepare(self, txn: Transaction, source: SourceObject, header: list[str]) -> None:
        if self.create_table:
            txn.execute(
                sql.SQL(
                    "CREATE TABLE IF NOT EXISTS {table} ("
                    "id bigserial PRIMARY KEY, "
                    "source_bucket text NOT NULL, "
                    "source_key text NOT NULL, "
                    "row_number integer NOT NULL, "
                    "payload jsonb NOT NULL, "
                    "loaded_at timestamptz NOT NULL DEFAULT now())"
                ).format(table=self.table_identifier)
            )
            txn.execute(
                sql.SQL(
                    "CREATE INDEX IF NOT EXISTS {index} ON {table} "
                    "(source_bucket, source_key)"
                ).format(index=self._index_identifier(), table=self.table_identifier)
            )

        if self.replace_existing:
            deleted = txn.execute(
                sql.SQL(
                    "DELETE FROM {table} WHERE source_bucket = %s AND source_key = %s"
                ).format(table=self.table_identifier),
                [source.bucket, source.key],
            )
            if deleted > 0:
                logger.info(
                    "Replacing rows from a previous load of this object",
                    extra={"bucket": source.bucket, "key": source.key, "rows": deleted},
                )

    def columns_for(self, batch: Batch) -> list[str]:
        return self.columns

    def row_params(self, batch: Batch, source: SourceObject) -> list[Any]:
        params: list[Any] = []
        for offset, row in enumerate(batch.rows):
            params.extend(
                [source.bucket, source.key, batch.first_row_number + offset, Json(row)]
            )
        return params


class ColumnRowSink(RowSink):
    """Expands each row into one ``text`` column per header field."""

    def prepare(self, txn: Transaction, source: SourceObject, header: list[str]) -> None:
        validate_header_columns(header)
        if self.create_table and header:
            txn.execute(
                sql.SQL("CREATE TABLE IF NOT EXISTS {table} ({columns})").format(
                    table=self.table_identifier,
                    columns=sql.SQL(", ").join(
                        sql.SQL("{} text").format(sql.Identifier(name))
                        for name in header
                    ),
                )
            )

    def columns_for(self, batch: Batch) -> list[str]:
        # Every row of one object shares the header's column set.
        return list(batch.rows[0])

    def row_params(self, batch: Batch, source: SourceObject) -> list[Any]:
        columns = self.columns_for(batch)
        return [row.get(column) for row in batch.rows for column in columns]


def build_sink(config: AppConfig) -> RowSink:
    """Select the table layout configured for this deployment."""
    if config.row_format == "columns":
        return ColumnRowSink(
            config.db_table, create_table=config.create_table_if_not_exists
        )
    return JsonRowSink(
        config.db_table,
        create_table=config.create_table_if_not_exists,
        replace_existing=config.replace_existing_rows,
    )
