"""
Load-and-verify pipeline: schema -> write -> verify against a bootstrapped
cluster.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from .bootstrap import HarnessContext
from .config import LoadTestConfig
from .schema import SchemaManager, two_byte_split_points
from .verifier import BulkVerifier, VerificationReport
from .writer import BulkWriter, WriteReport

logger = logging.getLogger(__name__)


@dataclass
class LoadTestReport:
    """Combined outcome of one run"""
    config: LoadTestConfig
    write: Optional[WriteReport] = None
    verification: Optional[VerificationReport] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def missing_count(self) -> int:
        return self.verification.missing_count if self.verification else 0

    @property
    def passed(self) -> bool:
        return self.verification is None or self.verification.passed


def run_load_test(context: HarnessContext, config: LoadTestConfig) -> LoadTestReport:
    """Run the enabled phases in order; administrative errors abort the run"""
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid load test configuration: {'; '.join(errors)}")

    report = LoadTestReport(config=config)
    family = config.family_bytes

    if config.nuke_table:
        started = time.perf_counter()
        SchemaManager(context.get_admin()).ensure_table(
            config.table_name, [family], two_byte_split_points(config.split_values)
        )
        report.timings["schema"] = time.perf_counter() - started

    if config.write_data:
        started = time.perf_counter()
        writer = BulkWriter(
            context.connection.get_table(config.table_name),
            family=family,
            batch_size=config.batch_size,
            value_length=config.value_length,
            progress_interval=config.write_progress_interval,
            write_buffer_size=config.write_buffer_size,
            seed=config.seed,
        )
        report.write = writer.write(config.num_rows, config.num_cols)
        report.timings["write"] = time.perf_counter() - started

    if config.read_data:
        # Without a write phase the expected keys are the full configured range
        if report.write is not None:
            expected = report.write.expected_keys
        else:
            expected = set(range(config.num_rows))
        started = time.perf_counter()
        verifier = BulkVerifier(
            context.connection.get_table(config.table_name),
            family=family,
            progress_interval=config.scan_progress_interval,
            preview_chars=config.missing_preview_chars,
        )
        report.verification = verifier.verify(expected)
        report.timings["verify"] = time.perf_counter() - started

    logger.info(
        "Load test finished: "
        + ", ".join(f"{phase} {seconds:.2f}s" for phase, seconds in report.timings.items())
    )
    return report
