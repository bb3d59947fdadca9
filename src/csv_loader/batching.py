"""Grouping of decoded rows into bounded batches."""

from dataclasses import dataclass
from typing import Iterable, Iterator

from .decoder import Row

DEFAULT_BATCH_SIZE = 100


@dataclass(frozen=True, slots=True)
class Batch:
    """
    A bounded, ordered group of rows written with a single statement.

    ``number`` is the 1-based position of the batch within its object and
    ``first_row_number`` the 1-based data-row number of ``rows[0]``.
    """

    rows: list[Row]
    number: int
    first_row_number: int

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)


def iter_batches(rows: Iterable[Row], batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[Batch]:
    """
    Lazily group *rows* into batches of *batch_size*.

    Only the batch being filled is held in memory. The final batch may be
    shorter, and an empty batch is never yielded.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")

    pending: list[Row] = []
    number = 0
    first_row_number = 1
    for row in rows:
        pending.append(row)
        if len(pending) >= batch_size:
            number += 1
            yield Batch(rows=pending, number=number, first_row_number=first_row_number)
            first_row_number += len(pending)
            pending = []

    if pending:
        yield Batch(rows=pending, number=number + 1, first_row_number=first_row_number)
