"""
Write-Ahead Log (WAL) for region storage
Every mutation is appended before it reaches the memstore; a reopened region
replays its log to rebuild its contents.
"""

import base64
import json
import logging
import os
import struct
import threading
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

WAL_MAGIC = b"WAL1"
HEADER_FORMAT = ">III"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
SEGMENT_SUFFIX = ".wal"


class WALEntryType(Enum):
    """Types of WAL entries"""

    PUT = 1


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


@dataclass
class WALEntry:
    """Write-Ahead Log entry"""

    entry_type: WALEntryType
    sequence_number: int
    timestamp: int
    row: Optional[bytes] = None
    # (family, qualifier, timestamp, value)
    cells: List[Tuple[bytes, bytes, int, bytes]] = field(default_factory=list)
    checksum: Optional[int] = None

    def to_bytes(self) -> bytes:
        """Serialize entry to bytes"""
        data = {
            "type": self.entry_type.value,
            "seq": self.sequence_number,
            "ts": self.timestamp,
            "row": _b64(self.row) if self.row is not None else None,
            "cells": [[_b64(f), _b64(q), ts, _b64(v)] for f, q, ts, v in self.cells],
        }

        json_data = json.dumps(data, separators=(",", ":")).encode("utf-8")
        compressed_data = zlib.compress(json_data)
        checksum = zlib.crc32(compressed_data) & 0xFFFFFFFF

        # Pack: magic(4) + checksum(4) + length(4) + data
        header = struct.pack(
            HEADER_FORMAT, int.from_bytes(WAL_MAGIC, "big"), checksum, len(compressed_data)
        )

        return header + compressed_data

    @classmethod
    def from_bytes(cls, data: bytes) -> "WALEntry":
        """Deserialize entry from bytes"""
        if len(data) < HEADER_SIZE:
            raise ValueError("Invalid WAL entry: too short")

        magic_int, checksum, length = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
        magic = magic_int.to_bytes(4, "big")

        if magic != WAL_MAGIC:
            raise ValueError(f"Invalid WAL magic: {magic}")

        if len(data) < HEADER_SIZE + length:
            raise ValueError("Invalid WAL entry: data truncated")

        compressed_data = data[HEADER_SIZE:HEADER_SIZE + length]

        calc_checksum = zlib.crc32(compressed_data) & 0xFFFFFFFF
        if calc_checksum != checksum:
            raise ValueError(
                f"WAL entry checksum mismatch: {calc_checksum} != {checksum}"
            )

        parsed = json.loads(zlib.decompress(compressed_data).decode("utf-8"))

        return cls(
            entry_type=WALEntryType(parsed["type"]),
            sequence_number=parsed["seq"],
            timestamp=parsed["ts"],
            row=_unb64(parsed["row"]) if parsed.get("row") is not None else None,
            cells=[(_unb64(f), _unb64(q), ts, _unb64(v)) for f, q, ts, v in parsed.get("cells", [])],
            checksum=checksum,
        )


@dataclass
class WALConfig:
    """WAL configuration"""

    wal_dir: str = "wal"
    segment_size_mb: int = 64
    sync_on_write: bool = False


class WALSegment:
    """Individual WAL segment file"""

    def __init__(self, segment_id: int, file_path: Path, config: WALConfig):
        self.segment_id = segment_id
        self.file_path = Path(file_path)
        self.config = config
        self.file_handle: Optional[BinaryIO] = None
        self.current_size = 0
        self.entry_count = 0
        self.is_closed = False

    def open(self):
        """Open the segment file for appending"""
        if self.file_handle is None:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self.file_handle = open(self.file_path, "ab")
            self.current_size = self.file_path.stat().st_size

    def close(self):
        """Close the segment file"""
        if self.file_handle:
            self.file_handle.flush()
            os.fsync(self.file_handle.fileno())
            self.file_handle.close()
            self.file_handle = None
        self.is_closed = True

    def write_entry(self, entry: WALEntry):
        """Append an entry; IO errors propagate to the caller"""
        if self.file_handle is None:
            self.open()

        entry_bytes = entry.to_bytes()
        self.file_handle.write(entry_bytes)
        self.current_size += len(entry_bytes)
        self.entry_count += 1

        if self.config.sync_on_write:
            self.file_handle.flush()
            os.fsync(self.file_handle.fileno())

    def flush(self):
        if self.file_handle:
            self.file_handle.flush()

    def is_full(self) -> bool:
        """Check if segment is full"""
        max_size = self.config.segment_size_mb * 1024 * 1024
        return self.current_size >= max_size

    def read_entries(self) -> Iterator[WALEntry]:
        """Read entries until EOF or the first damaged frame"""
        if not self.file_path.exists():
            return

        with open(self.file_path, "rb") as f:
            while True:
                header_data = f.read(HEADER_SIZE)
                if len(header_data) < HEADER_SIZE:
                    break

                _, _, length = struct.unpack(HEADER_FORMAT, header_data)
                data = f.read(length)
                if len(data) < length:
                    logger.warning(f"Truncated WAL entry at end of {self.file_path}")
                    break

                try:
                    yield WALEntry.from_bytes(header_data + data)
                except ValueError as e:
                    logger.error(f"Corrupt WAL entry in {self.file_path}: {e}")
                    break


class WriteAheadLog:
    """Segmented write-ahead log"""

    def __init__(self, config: WALConfig = None):
        self.config = config or WALConfig()
        self.wal_dir = Path(self.config.wal_dir)
        self.segments: Dict[int, WALSegment] = {}
        self.active_segment: Optional[WALSegment] = None
        self.sequence_number = 0
        self.lock = threading.Lock()
        self.stats = {
            'entries_written': 0,
            'bytes_written': 0,
            'segments_created': 0,
        }

    def start(self):
        """Discover existing segments and open a fresh active segment"""
        self.wal_dir.mkdir(parents=True, exist_ok=True)
        self._load_existing_segments()
        self._create_new_segment()

    def stop(self):
        with self.lock:
            if self.active_segment:
                self.active_segment.close()
                self.active_segment = None

    def _segment_path(self, segment_id: int) -> Path:
        return self.wal_dir / f"{segment_id:020d}{SEGMENT_SUFFIX}"

    def _load_existing_segments(self):
        for path in sorted(self.wal_dir.glob(f"*{SEGMENT_SUFFIX}")):
            try:
                segment_id = int(path.stem)
            except ValueError:
                logger.warning(f"Ignoring unexpected file in WAL directory: {path}")
                continue
            segment = WALSegment(segment_id, path, self.config)
            segment.is_closed = True
            self.segments[segment_id] = segment

            for entry in segment.read_entries():
                self.sequence_number = max(self.sequence_number, entry.sequence_number)

        if self.segments:
            logger.debug(
                f"Found {len(self.segments)} WAL segments in {self.wal_dir}, "
                f"last sequence {self.sequence_number}"
            )

    def _create_new_segment(self):
        segment_id = max(self.segments, default=0) + 1
        segment = WALSegment(segment_id, self._segment_path(segment_id), self.config)
        segment.open()
        self.segments[segment_id] = segment
        self.active_segment = segment
        self.stats['segments_created'] += 1

    def append(self, entry_type: WALEntryType, row: Optional[bytes] = None,
               cells: Optional[List[Tuple[bytes, bytes, int, bytes]]] = None) -> int:
        """Append an entry and return its sequence number"""
        with self.lock:
            if self.active_segment is None:
                raise RuntimeError(f"WAL {self.wal_dir} is not open")

            self.sequence_number += 1
            entry = WALEntry(
                entry_type=entry_type,
                sequence_number=self.sequence_number,
                timestamp=int(time.time() * 1000),
                row=row,
                cells=cells or [],
            )
            self.active_segment.write_entry(entry)
            self.stats['entries_written'] += 1
            self.stats['bytes_written'] = sum(s.current_size for s in self.segments.values())

            if self.active_segment.is_full():
                self.active_segment.close()
                self._create_new_segment()

            return entry.sequence_number

    def sync(self):
        with self.lock:
            if self.active_segment:
                self.active_segment.flush()

    def replay(self) -> Iterator[WALEntry]:
        """Yield every readable entry in sequence order"""
        self.sync()
        for segment_id in sorted(self.segments):
            yield from self.segments[segment_id].read_entries()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'segments': len(self.segments),
            'sequence_number': self.sequence_number,
        }
