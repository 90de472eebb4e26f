"""
Bulk verifier: scan the whole table back and diff row keys against the
expected set.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from minicluster.client import ScannerState, Table
from minicluster.operations import Scan

logger = logging.getLogger(__name__)


def preview(values: List[int], max_chars: int) -> str:
    """String form of values cut to max_chars, with '...' when truncated"""
    text = str(values)
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


@dataclass
class VerificationReport:
    """Outcome of a verify phase"""
    rows_observed: int = 0
    cells_observed: int = 0
    observed_keys: Set[int] = field(default_factory=set)
    missing: List[int] = field(default_factory=list)
    last_row: Optional[str] = None
    missing_preview: str = "[]"
    scanner_state: Optional[ScannerState] = None

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @property
    def passed(self) -> bool:
        return not self.missing


class BulkVerifier:
    """Full-table scan with no client-side cap on fetch size"""

    def __init__(self, table: Table, family: bytes = b"cf", progress_interval: int = 10000,
                 preview_chars: int = 5000):
        self.table = table
        self.family = family
        self.progress_interval = progress_interval
        self.preview_chars = preview_chars

    def build_scan(self) -> Scan:
        scan = Scan()
        scan.add_family(self.family)
        scan.set_max_result_size(-1)
        scan.set_batch(-1)
        return scan

    def verify(self, expected_keys: Set[int]) -> VerificationReport:
        """Scan every row, count rows and cells, report expected keys never seen"""
        report = VerificationReport()
        try:
            with self.table.get_scanner(self.build_scan()) as scanner:
                # Read all the records in the table
                for result in scanner:
                    report.rows_observed += 1
                    report.last_row = result.row.decode("utf-8")
                    report.observed_keys.add(int(report.last_row))
                    if report.rows_observed % self.progress_interval == 0:
                        logger.info(f"Saw row {report.last_row}")
                    while result.advance():
                        report.cells_observed += 1
                report.scanner_state = scanner.state
        finally:
            self.table.close()

        logger.info(f"Last row in Result {report.last_row}")
        logger.info(f"Saw {report.rows_observed} rows")
        logger.info(f"Saw {report.cells_observed} cells")

        report.missing = sorted(set(expected_keys) - report.observed_keys)
        report.missing_preview = preview(report.missing, self.preview_chars)
        if report.missing:
            logger.error(f"Missing {report.missing_count} rows: {report.missing_preview}")
        else:
            logger.info("No rows missing")
        return report
