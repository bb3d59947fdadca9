# src/csv_loader/decoder.py

"""
Streaming CSV decoding.

``RowDecoder`` turns a binary, forward-only stream (typically the ``Body`` of
an S3 ``GetObject`` response) into dictionaries keyed by the file's header
line. Only one read chunk and one CSV record are held in memory at a time.

Dirty data is tolerated: short rows are padded with ``None``, long rows are
truncated, empty lines are skipped, and undecodable bytes and NUL characters
are replaced with U+FFFD. Only a failing stream (or a record the ``csv``
module refuses outright) raises.
"""

import csv
import io
import logging
from typing import BinaryIO, Iterator, Optional

from botocore.exceptions import BotoCoreError

from .exceptions import DecodeError

logger = logging.getLogger(__name__)

Row = dict[str, Optional[str]]

DEFAULT_CHUNK_SIZE = 64 * 1024

REPLACEMENT_CHARACTER = "\ufffd"


class StreamReader(io.RawIOBase):
    """
    Raw IO adapter over any object with ``read(n)``, counting bytes and
    turning transport failures into ``DecodeError``.

    Closing the adapter does not close the wrapped stream; its owner does that.
    """

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        try:
            data = self._stream.read(len(buffer))
        except (OSError, BotoCoreError) as e:
            raise DecodeError(
                f"error reading object stream: {e}",
                context={"bytes_read": self.bytes_read},
            ) from e
        size = len(data)
        buffer[:size] = data
        self.bytes_read += size
        return size


class RowDecoder:
    """Lazily decodes a CSV byte stream into header-keyed rows."""

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._raw = StreamReader(stream)
        text = io.TextIOWrapper(
            io.BufferedReader(self._raw, buffer_size=chunk_size),
            encoding="utf-8-sig",
            errors="replace",
            newline="",
        )
        # PostgreSQL text and jsonb values cannot hold NUL.
        self._reader = csv.reader(
            line.replace("\x00", REPLACEMENT_CHARACTER) for line in text
        )
        self._header: list[str] | None = None
        self._header_read = False
        self.rows_decoded = 0

    @property
    def bytes_read(self) -> int:
        return self._raw.bytes_read

    @property
    def line_number(self) -> int:
        return self._reader.line_num

    @property
    def header(self) -> list[str] | None:
        """The trimmed header names, or ``None`` if the stream has no records."""
        if not self._header_read:
            self._header_read = True
            fields = self._next_record()
            if fields is not None:
                self._header = [name.strip() for name in fields]
        return self._header

    def _next_record(self) -> list[str] | None:
        while True:
            try:
                fields = next(self._reader)
            except StopIteration:
                return None
            except csv.Error as e:
                raise DecodeError(
                    f"unreadable CSV record: {e}",
                    context={"line_number": self._reader.line_num},
                ) from e
            if not fields or (len(fields) == 1 and not fields[0].strip()):
                continue
            return fields

    def __iter__(self) -> Iterator[Row]:
        header = self.header
        if not header:
            return
        width = len(header)

        while True:
            fields = self._next_record()
            if fields is None:
                break
            values: list[Optional[str]] = [value.strip() for value in fields[:width]]
            if len(values) < width:
                values.extend([None] * (width - len(values)))
            self.rows_decoded += 1
            yield dict(zip(header, values))

        logger.debug(
            "Finished decoding stream",
            extra={"rows": self.rows_decoded, "bytes_read": self.bytes_read},
        )
