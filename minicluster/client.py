"""
Client API for the mini-cluster: connections, admin, tables and scanners.

Example::

    with ConnectionFactory.create_connection(config) as connection:
        admin = connection.get_admin()
        admin.create_table(TableDescriptor.of("test", [b"cf"]))
        with connection.get_table("test") as table:
            table.batch([Put(b"row").add_column(b"cf", b"q", b"value")])
            with table.get_scanner(Scan().add_family(b"cf")) as scanner:
                for result in scanner:
                    ...
"""

import logging
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import rpc
from .config import ClusterConfig
from .coordination import CoordinationClient
from .descriptors import TableDescriptor
from .errors import (
    BatchError,
    ConnectionClosedError,
    MasterNotRunningError,
    MiniClusterError,
    NoNodeError,
    NotServingRegionError,
    ServerNotRunningError,
    TableNotEnabledError,
)
from .operations import Put, Result, Scan
from .region import RegionInfo

logger = logging.getLogger(__name__)

RegionLocation = Tuple[RegionInfo, Optional[str]]


class ConnectionFactory:
    """Builds connections from a cluster configuration"""

    @staticmethod
    def create_connection(config: ClusterConfig) -> 'Connection':
        return Connection(config)


class Connection:
    """
    Cluster connection. Discovers the master either from ``config.master``
    (a ``host:port``) or, when that is ``"local"``, from the coordination
    service.
    """

    def __init__(self, config: ClusterConfig):
        self.config = config
        self.closed = False
        self.coordination = CoordinationClient.from_config(config)
        try:
            self.master_address = self._discover_master()
        except MiniClusterError:
            self.coordination.close()
            raise
        logger.debug(f"Connected to master at {self.master_address}")

    def _discover_master(self) -> str:
        address = self.config.master
        if not address or address == "local":
            try:
                address = self.coordination.get_data(self.config.master_path)
            except NoNodeError as e:
                raise MasterNotRunningError("No master address published") from e
        try:
            rpc.lookup(address)
        except ServerNotRunningError as e:
            raise MasterNotRunningError(f"Master at {address} is not running") from e
        return address

    def _check_open(self):
        if self.closed:
            raise ConnectionClosedError("Connection is closed")

    def get_master(self):
        self._check_open()
        try:
            master = rpc.lookup(self.master_address)
        except ServerNotRunningError as e:
            raise MasterNotRunningError(f"Master at {self.master_address} is not running") from e
        if not master.running:
            raise MasterNotRunningError(f"Master at {self.master_address} is not running")
        return master

    def get_admin(self) -> 'Admin':
        self._check_open()
        return Admin(self)

    def get_table(self, name: str) -> 'Table':
        self._check_open()
        return Table(self, name)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.coordination.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Admin:
    """Administrative operations, forwarded to the master"""

    def __init__(self, connection: Connection):
        self.connection = connection

    def list_table_names(self) -> List[str]:
        return self.connection.get_master().list_tables()

    def table_exists(self, name: str) -> bool:
        return self.connection.get_master().table_exists(name)

    def is_table_enabled(self, name: str) -> bool:
        return self.connection.get_master().is_table_enabled(name)

    def get_descriptor(self, name: str) -> TableDescriptor:
        return self.connection.get_master().get_descriptor(name)

    def create_table(self, descriptor: TableDescriptor,
                     split_keys: Optional[Sequence[bytes]] = None) -> List[RegionInfo]:
        return self.connection.get_master().create_table(descriptor, split_keys)

    def disable_table(self, name: str):
        self.connection.get_master().disable_table(name)

    def enable_table(self, name: str):
        self.connection.get_master().enable_table(name)

    def delete_table(self, name: str):
        self.connection.get_master().delete_table(name)

    def get_regions(self, name: str) -> List[RegionInfo]:
        return [info for info, _ in self.connection.get_master().locate_regions(name)]


class Table:
    """
    Handle on one table. Not thread-safe; close it (or use it as a context
    manager) to flush buffered puts and release open scanners.
    """

    def __init__(self, connection: Connection, name: str):
        self.connection = connection
        self.name = name
        self.closed = False
        self.write_buffer_size = connection.config.client.write_buffer_size
        self._write_buffer: List[Put] = []
        self._buffer_heap = 0
        self._locations: Optional[List[RegionLocation]] = None
        self._scanners: List['ResultScanner'] = []

    def _check_open(self):
        if self.closed:
            raise ConnectionClosedError(f"Table {self.name} is closed")
        self.connection._check_open()

    def _locate(self, refresh: bool = False) -> List[RegionLocation]:
        if self._locations is None or refresh:
            master = self.connection.get_master()
            if not master.is_table_enabled(self.name):
                raise TableNotEnabledError(self.name, f"Table {self.name} is disabled")
            self._locations = master.locate_regions(self.name)
        return self._locations

    @staticmethod
    def _find_location(row: bytes, locations: List[RegionLocation]) -> RegionLocation:
        for info, server_name in locations:
            if info.contains(row):
                return info, server_name
        raise NotServingRegionError(f"No region contains row {row!r}")

    # Write buffer

    def set_write_buffer_size(self, size: int):
        if size <= 0:
            raise ValueError("Write buffer size must be positive")
        self.write_buffer_size = size

    def get_write_buffer_size(self) -> int:
        return self.write_buffer_size

    def put(self, puts: Union[Put, Iterable[Put]]):
        """Buffer puts, flushing once the buffer exceeds write_buffer_size"""
        self._check_open()
        if isinstance(puts, Put):
            puts = [puts]
        for put in puts:
            self._write_buffer.append(put)
            self._buffer_heap += put.heap_size()
        if self._buffer_heap >= self.write_buffer_size:
            self.flush()

    def flush(self):
        """Submit buffered puts as one batch"""
        if not self._write_buffer:
            return
        actions = self._write_buffer
        self._write_buffer = []
        self._buffer_heap = 0
        self.batch(actions)

    # Batched mutations

    def batch(self, actions: Sequence[Put], results: Optional[List[Any]] = None) -> List[Any]:
        """
        Submit puts grouped per region. ``results`` (allocated when omitted)
        receives an empty Result for each success and the exception for each
        failure. Raises BatchError once every action has been attempted if
        any of them failed.
        """
        self._check_open()
        if results is None:
            results = [None] * len(actions)
        elif len(results) != len(actions):
            raise ValueError(f"results has {len(results)} slots for {len(actions)} actions")
        if not actions:
            return results

        try:
            locations = self._locate()
        except MiniClusterError as e:
            # ConnectionClosedError and master failures are not per-action outcomes
            if isinstance(e, (ConnectionClosedError, MasterNotRunningError)):
                raise
            for index in range(len(actions)):
                results[index] = e
            locations = []

        groups: Dict[Tuple[str, str], List[int]] = {}
        if locations:
            for index, put in enumerate(actions):
                try:
                    info, server_name = self._find_location(put.row, locations)
                    if server_name is None:
                        raise NotServingRegionError(f"Region {info.region_name} is offline")
                except NotServingRegionError as e:
                    results[index] = e
                    continue
                groups.setdefault((server_name, info.encoded_name), []).append(index)

        for (server_name, encoded_name), indices in groups.items():
            try:
                server = rpc.lookup(server_name)
                outcomes = server.multi(encoded_name, [actions[i] for i in indices])
            except ServerNotRunningError as e:
                outcomes = [e] * len(indices)
            for index, outcome in zip(indices, outcomes):
                results[index] = Result(row=actions[index].row) if outcome is None else outcome

        failures = [
            (index, actions[index].row, outcome)
            for index, outcome in enumerate(results)
            if isinstance(outcome, Exception)
        ]
        if failures:
            self._locations = None
            raise BatchError(failures, results)
        return results

    # Scans

    def get_scanner(self, scan: Optional[Scan] = None) -> 'ResultScanner':
        self._check_open()
        scanner = ResultScanner(self, scan or Scan())
        self._scanners.append(scanner)
        return scanner

    def _forget_scanner(self, scanner: 'ResultScanner'):
        if scanner in self._scanners:
            self._scanners.remove(scanner)

    @property
    def open_scanners(self) -> int:
        return len(self._scanners)

    def close(self):
        """Flush buffered puts and close scanners opened from this table"""
        if self.closed:
            return
        try:
            if not self.connection.closed:
                self.flush()
        finally:
            for scanner in list(self._scanners):
                scanner.close()
            self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ScannerState(Enum):
    """Client scanner lifecycle"""
    OPENED = "OPENED"
    ITERATING = "ITERATING"
    EXHAUSTED = "EXHAUSTED"
    CLOSED = "CLOSED"


class ResultScanner:
    """
    Lazy, forward-only iterator over a table scan.

    Walks the table's regions in key order, holding at most one server-side
    scanner at a time. Once exhausted or closed it yields nothing more; a new
    scanner is needed to read again.
    """

    def __init__(self, table: Table, scan: Scan):
        self.table = table
        self.scan = scan
        self.caching = scan.caching or table.connection.config.client.scanner_caching
        self.state = ScannerState.OPENED
        self.rows_returned = 0

        self._cache: Deque[Result] = deque()
        self._current: Optional[Tuple[Any, int]] = None
        self._regions: Deque[RegionLocation] = deque(
            location for location in table._locate(refresh=True)
            if self._overlaps(location[0])
        )
        self._open_next_region()

    def _overlaps(self, info: RegionInfo) -> bool:
        if info.end_key and info.end_key <= self.scan.start_row:
            return False
        return not self.scan.stop_row or info.start_key < self.scan.stop_row

    def _open_next_region(self) -> bool:
        if not self._regions:
            return False
        info, server_name = self._regions.popleft()
        if server_name is None:
            raise NotServingRegionError(f"Region {info.region_name} is offline")
        server = rpc.lookup(server_name)
        self._current = (server, server.open_scanner(info.encoded_name, self.scan))
        return True

    def _fetch(self) -> bool:
        """Fill the cache from the current (or next) region; False at end of table"""
        while True:
            if self._current is None and not self._open_next_region():
                return False
            server, scanner_id = self._current
            results, more = server.scan_next(
                scanner_id, self.caching, self.scan.max_result_size, self.scan.batch
            )
            if not more:
                # The server releases exhausted scanners itself
                self._current = None
            if results:
                self._cache.extend(results)
                return True

    def next(self) -> Optional[Result]:
        """Next result, or None once the scan is exhausted or closed"""
        if self.state in (ScannerState.EXHAUSTED, ScannerState.CLOSED):
            return None
        self.state = ScannerState.ITERATING
        if not self._cache and not self._fetch():
            self.state = ScannerState.EXHAUSTED
            self.table._forget_scanner(self)
            return None
        self.rows_returned += 1
        return self._cache.popleft()

    def __iter__(self):
        return self

    def __next__(self) -> Result:
        result = self.next()
        if result is None:
            raise StopIteration
        return result

    def close(self):
        """Release the server-side scanner; safe to call repeatedly"""
        if self.state == ScannerState.CLOSED:
            return
        if self._current is not None:
            server, scanner_id = self._current
            server.close_scanner(scanner_id)
            self._current = None
        self._cache.clear()
        self._regions.clear()
        self.state = ScannerState.CLOSED
        self.table._forget_scanner(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
