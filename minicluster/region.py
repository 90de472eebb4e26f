"""
Regions: contiguous row-key ranges of a table, held in a sorted memstore and
made durable through a per-region write-ahead log.
"""

import bisect
import hashlib
import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .descriptors import TableDescriptor
from .errors import NoSuchColumnFamilyError, NotServingRegionError, WrongRegionError
from .operations import Cell, Put, Result, Scan
from .wal import WALConfig, WALEntryType, WriteAheadLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionInfo:
    """Identity and key range of a region; an empty end key means unbounded"""
    table: str
    start_key: bytes
    end_key: bytes
    region_id: int

    @property
    def encoded_name(self) -> str:
        key = f"{self.table},{self.start_key.hex()},{self.region_id}"
        return hashlib.md5(key.encode("utf-8")).hexdigest()

    @property
    def region_name(self) -> str:
        return f"{self.table},{self.start_key!r},{self.region_id}.{self.encoded_name}."

    def contains(self, row: bytes) -> bool:
        if row < self.start_key:
            return False
        return not self.end_key or row < self.end_key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "start_key": self.start_key.hex(),
            "end_key": self.end_key.hex(),
            "region_id": self.region_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegionInfo':
        return cls(
            table=data["table"],
            start_key=bytes.fromhex(data["start_key"]),
            end_key=bytes.fromhex(data["end_key"]),
            region_id=data["region_id"],
        )


class Region:
    """Sorted in-memory store for one region"""

    def __init__(self, info: RegionInfo, descriptor: TableDescriptor, region_dir: Path,
                 wal_config: Optional[WALConfig] = None):
        self.info = info
        self.descriptor = descriptor
        self.region_dir = Path(region_dir)
        self.wal = WriteAheadLog(wal_config) if wal_config is not None else None

        self.rows: List[bytes] = []
        self.data: Dict[bytes, Dict[Tuple[bytes, bytes], Tuple[int, bytes]]] = {}
        self.memstore_size = 0
        self.online = False
        self.lock = threading.RLock()

    def open(self) -> int:
        """Bring the region online, replaying its WAL; returns replayed entries"""
        replayed = 0
        with self.lock:
            if self.online:
                return 0
            self.region_dir.mkdir(parents=True, exist_ok=True)
            if self.wal is not None:
                self.wal.start()
                for entry in self.wal.replay():
                    if entry.entry_type == WALEntryType.PUT:
                        self._apply(entry.row, entry.cells)
                        replayed += 1
            self.online = True

        logger.debug(f"Opened region {self.info.region_name} ({replayed} WAL entries replayed)")
        return replayed

    def close(self):
        """Take the region offline and drop the memstore"""
        with self.lock:
            if not self.online:
                return
            self.online = False
            if self.wal is not None:
                self.wal.stop()
            self.rows.clear()
            self.data.clear()
            self.memstore_size = 0
        logger.debug(f"Closed region {self.info.region_name}")

    def destroy(self):
        """Close and remove on-disk state"""
        self.close()
        shutil.rmtree(self.region_dir, ignore_errors=True)

    def _check_online(self):
        if not self.online:
            raise NotServingRegionError(f"Region {self.info.region_name} is not online")

    def put(self, put: Put):
        with self.lock:
            self._check_online()
            if not self.info.contains(put.row):
                raise WrongRegionError(
                    f"Row {put.row!r} outside region {self.info.region_name}"
                )
            for family in put.family_map:
                if not self.descriptor.has_family(family):
                    raise NoSuchColumnFamilyError(
                        f"Column family {family!r} does not exist in table {self.info.table}"
                    )

            cells = [(c.family, c.qualifier, c.timestamp, c.value) for c in put.cells()]
            if self.wal is not None:
                self.wal.append(WALEntryType.PUT, row=put.row, cells=cells)
            self._apply(put.row, cells)

    def _apply(self, row: bytes, cells: List[Tuple[bytes, bytes, int, bytes]]):
        row_map = self.data.get(row)
        if row_map is None:
            row_map = {}
            self.data[row] = row_map
            bisect.insort(self.rows, row)

        for family, qualifier, timestamp, value in cells:
            existing = row_map.get((family, qualifier))
            if existing is not None:
                if existing[0] > timestamp:
                    continue
                self.memstore_size -= len(existing[1])
            row_map[(family, qualifier)] = (timestamp, value)
            self.memstore_size += len(value)

    def next_row(self, after: Optional[bytes], start: bytes) -> Optional[bytes]:
        """First stored row >= start (or > after once iteration has begun)"""
        with self.lock:
            if after is None:
                index = bisect.bisect_left(self.rows, start)
            else:
                index = bisect.bisect_right(self.rows, after)
            return self.rows[index] if index < len(self.rows) else None

    def get_row_cells(self, row: bytes, families: Set[bytes]) -> List[Cell]:
        with self.lock:
            row_map = self.data.get(row, {})
            return [
                Cell(row, family, qualifier, ts, value)
                for (family, qualifier), (ts, value) in sorted(row_map.items())
                if not families or family in families
            ]

    def get_scanner(self, scan: Scan) -> 'RegionScanner':
        with self.lock:
            self._check_online()
            for family in scan.families:
                if not self.descriptor.has_family(family):
                    raise NoSuchColumnFamilyError(
                        f"Column family {family!r} does not exist in table {self.info.table}"
                    )
            return RegionScanner(self, scan)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def cell_count(self) -> int:
        with self.lock:
            return sum(len(row_map) for row_map in self.data.values())


class RegionScanner:
    """Forward-only cursor over one region's rows"""

    def __init__(self, region: Region, scan: Scan):
        self.region = region
        self.families = set(scan.families)
        self.start = max(scan.start_row, region.info.start_key)
        stops = [key for key in (scan.stop_row, region.info.end_key) if key]
        self.stop = min(stops) if stops else b""
        self._last_row: Optional[bytes] = None
        self._pending: List[Cell] = []
        self.exhausted = False

    def _past_stop(self, row: bytes) -> bool:
        return bool(self.stop) and row >= self.stop

    def next_rows(self, caching: int, max_result_size: int = -1,
                  batch: int = -1) -> Tuple[List[Result], bool]:
        """
        Fetch up to ``caching`` results.

        Stops early once ``max_result_size`` bytes are accumulated (-1 for no
        limit); rows wider than ``batch`` cells come back as several partial
        results. Returns the results and whether more may follow.
        """
        results: List[Result] = []
        size = 0

        while len(results) < caching and not self.exhausted:
            if self._pending:
                cells = self._pending
            else:
                row = self.region.next_row(self._last_row, self.start)
                if row is None or self._past_stop(row):
                    self.exhausted = True
                    break
                self._last_row = row
                cells = self.region.get_row_cells(row, self.families)
                if not cells:
                    continue

            if batch > 0 and len(cells) > batch:
                chunk, self._pending = cells[:batch], cells[batch:]
            else:
                chunk, self._pending = cells, []

            result = Result(chunk, partial=bool(self._pending))
            results.append(result)
            size += result.heap_size()

            if max_result_size >= 0 and size >= max_result_size:
                break

        return results, not self.exhausted
