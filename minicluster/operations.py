"""
Client-visible data operations: Cell, Put, Result and Scan
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Union

BytesLike = Union[bytes, bytearray, str, int]

# Rough per-object overhead used for buffer accounting
CELL_OVERHEAD = 48


def to_bytes(value: BytesLike) -> bytes:
    """Coerce str/int/bytes-like values to bytes (str and int as UTF-8 text)"""
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, bool):
        raise TypeError("bool is not a valid key or value")
    if isinstance(value, (str, int)):
        return str(value).encode("utf-8")
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def current_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Cell:
    """A single (row, family, qualifier, timestamp, value) coordinate"""
    row: bytes
    family: bytes
    qualifier: bytes
    timestamp: int
    value: bytes

    def heap_size(self) -> int:
        return (len(self.row) + len(self.family) + len(self.qualifier)
                + len(self.value) + CELL_OVERHEAD)


class Put:
    """Row mutation adding one or more cells"""

    def __init__(self, row: BytesLike, timestamp: Optional[int] = None):
        self.row = to_bytes(row)
        if not self.row:
            raise ValueError("Row key must not be empty")
        self.timestamp = timestamp
        self.family_map: Dict[bytes, List[Cell]] = {}

    def add_column(self, family: BytesLike, qualifier: BytesLike, value: BytesLike,
                   timestamp: Optional[int] = None) -> 'Put':
        family = to_bytes(family)
        ts = timestamp if timestamp is not None else self.timestamp
        cell = Cell(self.row, family, to_bytes(qualifier),
                    ts if ts is not None else current_millis(), to_bytes(value))
        self.family_map.setdefault(family, []).append(cell)
        return self

    def cells(self) -> List[Cell]:
        return [cell for cells in self.family_map.values() for cell in cells]

    def size(self) -> int:
        """Number of cells in the mutation"""
        return sum(len(cells) for cells in self.family_map.values())

    def is_empty(self) -> bool:
        return not self.family_map

    def heap_size(self) -> int:
        return len(self.row) + sum(cell.heap_size() for cell in self.cells())

    def __repr__(self) -> str:
        return f"Put(row={self.row!r}, cells={self.size()})"


class Result:
    """
    Cells returned for a single row, with a forward cell cursor.

    ``advance()`` moves to the next cell and returns False once the row is
    exhausted; ``current()`` returns the cell under the cursor.
    """

    def __init__(self, cells: Optional[List[Cell]] = None, row: Optional[bytes] = None,
                 partial: bool = False):
        self.cells: List[Cell] = list(cells or [])
        self._row = row
        self.partial = partial
        self._cursor = -1

    @property
    def row(self) -> Optional[bytes]:
        if self._row is None and self.cells:
            self._row = self.cells[0].row
        return self._row

    def is_empty(self) -> bool:
        return not self.cells

    def advance(self) -> bool:
        if self._cursor + 1 < len(self.cells):
            self._cursor += 1
            return True
        self._cursor = len(self.cells)
        return False

    def current(self) -> Cell:
        if not (0 <= self._cursor < len(self.cells)):
            raise IndexError("Cell cursor is not positioned on a cell")
        return self.cells[self._cursor]

    def get_value(self, family: BytesLike, qualifier: BytesLike) -> Optional[bytes]:
        family, qualifier = to_bytes(family), to_bytes(qualifier)
        for cell in self.cells:
            if cell.family == family and cell.qualifier == qualifier:
                return cell.value
        return None

    def heap_size(self) -> int:
        return sum(cell.heap_size() for cell in self.cells)

    def __len__(self) -> int:
        return len(self.cells)

    def __iter__(self) -> Iterator[Cell]:
        return iter(self.cells)

    def __repr__(self) -> str:
        return f"Result(row={self.row!r}, cells={len(self.cells)})"


@dataclass
class Scan:
    """
    Range scan parameters.

    ``max_result_size`` caps bytes returned per server call (-1 unbounded,
    None for the server default); ``batch`` caps cells per Result (-1 for
    whole rows); ``caching`` is rows per server call (None for the client
    default).
    """
    start_row: bytes = b""
    stop_row: bytes = b""
    families: Set[bytes] = field(default_factory=set)
    max_result_size: Optional[int] = None
    batch: int = -1
    caching: Optional[int] = None

    def __post_init__(self):
        self.start_row = to_bytes(self.start_row)
        self.stop_row = to_bytes(self.stop_row)
        self.families = {to_bytes(f) for f in self.families}

    def add_family(self, family: BytesLike) -> 'Scan':
        self.families.add(to_bytes(family))
        return self

    def set_max_result_size(self, size: int) -> 'Scan':
        self.max_result_size = size
        return self

    def set_batch(self, batch: int) -> 'Scan':
        if batch == 0 or batch < -1:
            raise ValueError(f"Invalid scan batch: {batch}")
        self.batch = batch
        return self

    def set_caching(self, caching: int) -> 'Scan':
        if caching <= 0:
            raise ValueError(f"Invalid scan caching: {caching}")
        self.caching = caching
        return self
