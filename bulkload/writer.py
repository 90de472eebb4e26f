"""
Bulk writer: deterministic row keys, random cell values, fixed-size batches.

A failed batch is logged and recorded but never retried; the verifier is what
reports the rows it lost.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

import psutil

from minicluster.client import Table
from minicluster.errors import BatchError
from minicluster.operations import Put

logger = logging.getLogger(__name__)


@dataclass
class BatchFailure:
    """One batch that came back with errors"""
    batch_index: int
    row_keys: List[int]
    error: BatchError
    results: List[Any]

    @property
    def failed_count(self) -> int:
        return self.error.num_failures


@dataclass
class WriteReport:
    """Outcome of a write phase"""
    entries_written: int = 0
    cells_written: int = 0
    batches_submitted: int = 0
    expected_keys: Set[int] = field(default_factory=set)
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def failed_rows(self) -> int:
        return sum(failure.failed_count for failure in self.failures)


def row_key(index: int) -> bytes:
    return str(index).encode("utf-8")


class BulkWriter:
    """Writes num_rows x cols_per_row cells through Table.batch"""

    def __init__(self, table: Table, family: bytes = b"cf", batch_size: int = 1000,
                 value_length: int = 50, progress_interval: int = 50000,
                 write_buffer_size: Optional[int] = None, seed: Optional[int] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if progress_interval < 1:
            raise ValueError("progress_interval must be at least 1")
        self.table = table
        self.family = family
        self.batch_size = batch_size
        self.value_length = value_length
        self.progress_interval = progress_interval
        self.write_buffer_size = write_buffer_size
        self.rng = random.Random(seed)

    def make_put(self, index: int, cols_per_row: int) -> Put:
        put = Put(row_key(index))
        for column in range(cols_per_row):
            put.add_column(self.family, str(column), self.rng.randbytes(self.value_length))
        return put

    def write(self, num_rows: int, cols_per_row: int) -> WriteReport:
        """Write every row, then close the table handle"""
        report = WriteReport()
        try:
            if self.write_buffer_size is not None:
                self.table.set_write_buffer_size(self.write_buffer_size)
            logger.info(f"Write buffer size: {self.table.get_write_buffer_size()}")

            puts: List[Put] = []
            keys: List[int] = []
            for index in range(num_rows):
                report.expected_keys.add(index)
                puts.append(self.make_put(index, cols_per_row))
                keys.append(index)

                if len(puts) == self.batch_size:
                    before = report.entries_written
                    self._submit(puts, keys, report)
                    puts, keys = [], []

                    # Log once per progress interval crossed
                    if report.entries_written // self.progress_interval > before // self.progress_interval:
                        rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
                        logger.info(f"Wrote {report.entries_written} entries (rss {rss_mb:.1f} MB)")

            if puts:
                self._submit(puts, keys, report)

            logger.info(f"Wrote {report.entries_written} entries in total")
            if report.failures:
                logger.warning(
                    f"{len(report.failures)} of {report.batches_submitted} batches failed, "
                    f"{report.failed_rows} rows affected"
                )
        finally:
            logger.info("Closing table used for writes")
            self.table.close()

        return report

    def _submit(self, puts: List[Put], keys: List[int], report: WriteReport):
        results: List[Any] = [None] * len(puts)
        batch_index = report.batches_submitted
        report.batches_submitted += 1
        try:
            self.table.batch(puts, results)
        except BatchError as e:
            logger.error(f"Failed to write data: {e}")
            logger.info(f"Errors: {results}")
            report.failures.append(BatchFailure(batch_index, list(keys), e, results))

        report.entries_written += len(puts)
        report.cells_written += sum(put.size() for put in puts)
