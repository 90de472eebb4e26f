"""
Load test configuration
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional


@dataclass
class LoadTestConfig:
    """Parameters of one load-and-verify run"""
    table_name: str = "test"
    column_family: str = "cf"
    num_rows: int = 1000 * 1000
    num_cols: int = 10
    value_length: int = 50
    batch_size: int = 1000
    write_buffer_size: int = 50 * 1024 * 1024

    # Phase switches
    nuke_table: bool = True
    write_data: bool = True
    read_data: bool = True

    # Reporting
    write_progress_interval: int = 50000
    scan_progress_interval: int = 10000
    missing_preview_chars: int = 5000

    # Pre-split boundaries, encoded as big-endian two-byte keys
    split_values: List[int] = field(default_factory=lambda: [48 + i for i in range(1, 10)])
    seed: Optional[int] = None

    @property
    def family_bytes(self) -> bytes:
        return self.column_family.encode("utf-8")

    @property
    def expected_cells(self) -> int:
        return self.num_rows * self.num_cols

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoadTestConfig':
        """Create config from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def validate(self) -> List[str]:
        """Validate configuration and return any errors"""
        errors = []

        if self.num_rows < 0:
            errors.append("num_rows must not be negative")
        if self.num_cols < 1:
            errors.append("num_cols must be at least 1")
        if self.value_length < 0:
            errors.append("value_length must not be negative")
        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")
        if self.write_buffer_size < 1:
            errors.append("write_buffer_size must be positive")
        if self.write_progress_interval < 1 or self.scan_progress_interval < 1:
            errors.append("progress intervals must be positive")
        if self.missing_preview_chars < 0:
            errors.append("missing_preview_chars must not be negative")
        if not self.column_family:
            errors.append("column_family must not be empty")
        if any(not (0 <= v <= 0xFFFF) for v in self.split_values):
            errors.append("split_values must fit in two bytes")

        return errors
