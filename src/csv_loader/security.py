"""
Security utilities for the CSV Loader service.

Object keys arrive URL-encoded in S3 event notifications and must be decoded
before they are used to fetch the object. Table and column names reach SQL
statements as identifiers; they are always quoted by ``psycopg2.sql`` but must
still be names PostgreSQL can hold without silently truncating or merging them.
"""

import urllib.parse

from .exceptions import ConfigurationError, InvalidHeaderError

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes.
MAX_IDENTIFIER_BYTES = 63


def normalize_object_key(key: str) -> str:
    """
    Decode an S3 key as delivered in an event notification.

    S3 encodes keys in notifications with ``+`` for spaces and percent-escapes
    for everything else, so ``path%2Fto%2Fmy+file.csv`` becomes
    ``path/to/my file.csv``.

    Examples:
        >>> normalize_object_key("path%2Fto%2Ffile.csv")
        'path/to/file.csv'

        >>> normalize_object_key("reports/q1+summary.csv")
        'reports/q1 summary.csv'
    """
    return urllib.parse.unquote_plus(key)


def _identifier_problem(name: str) -> str | None:
    if not name:
        return "empty name"
    if "\x00" in name:
        return "contains a NUL character"
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        return f"longer than {MAX_IDENTIFIER_BYTES} bytes"
    return None


def split_table_name(table: str) -> tuple[str, ...]:
    """
    Split ``schema.table`` (or a bare ``table``) into identifier parts.

    Raises:
        ConfigurationError: If any part is not a usable identifier.
    """
    parts = tuple(part.strip() for part in table.split("."))
    if len(parts) > 2:
        raise ConfigurationError(
            "Table name must be 'table' or 'schema.table'",
            context={"table": table},
        )
    for part in parts:
        problem = _identifier_problem(part)
        if problem:
            raise ConfigurationError(
                f"Invalid table name: {problem}", context={"table": table}
            )
    return parts


def validate_header_columns(header: list[str]) -> list[str]:
    """
    Ensure CSV header names can be used one-to-one as table columns.

    Names are case-sensitive once quoted, so ``Name`` and ``name`` are distinct
    columns, but exact duplicates would make the INSERT ambiguous.
    """
    seen: set[str] = set()
    for name in header:
        problem = _identifier_problem(name)
        if problem:
            raise InvalidHeaderError(f"header column {name!r} {problem}", header)
        if name in seen:
            raise InvalidHeaderError(f"duplicate header column {name!r}", header)
        seen.add(name)
    return header
