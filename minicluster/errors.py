"""
Exception hierarchy for the embedded mini-cluster.
Coordination, table lifecycle, region routing, scanner and batch errors.
"""

from typing import Any, List, Tuple


class MiniClusterError(Exception):
    """Base exception for all mini-cluster errors"""
    pass


# Coordination service

class CoordinationError(MiniClusterError):
    """Exception raised for coordination-service errors"""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class NoNodeError(CoordinationError):
    """Node does not exist"""
    pass


class NodeExistsError(CoordinationError):
    """Node already exists"""
    pass


class NotEmptyError(CoordinationError):
    """Node still has children"""
    pass


class BadVersionError(CoordinationError):
    """Expected version did not match"""
    pass


class CoordinationConnectionError(CoordinationError):
    """Client could not reach the coordination service"""
    pass


# Servers and connections

class ServerNotRunningError(MiniClusterError):
    """Server name does not resolve to a running server"""
    pass


class MasterNotRunningError(ServerNotRunningError):
    """No active master could be discovered"""
    pass


class ConnectionClosedError(MiniClusterError):
    """Operation attempted on a closed connection or table"""
    pass


# Table lifecycle

class TableError(MiniClusterError):
    """Base class for table lifecycle errors"""

    def __init__(self, table: str, message: str = ""):
        super().__init__(message or table)
        self.table = table


class TableExistsError(TableError):
    pass


class TableNotFoundError(TableError):
    pass


class TableNotEnabledError(TableError):
    pass


class TableNotDisabledError(TableError):
    pass


class InvalidTableNameError(TableError):
    pass


class InvalidSplitKeysError(MiniClusterError):
    """Split keys are empty, duplicated or unsorted"""
    pass


# Regions

class RegionError(MiniClusterError):
    """Base class for region routing errors"""
    pass


class WrongRegionError(RegionError):
    """Row does not fall inside the region's key range"""
    pass


class NotServingRegionError(RegionError):
    """Region is not online on the addressed server"""
    pass


class NoSuchColumnFamilyError(RegionError):
    """Mutation or scan referenced an unknown column family"""
    pass


# Client

class ScannerClosedError(MiniClusterError):
    """Scanner id is unknown or already closed"""
    pass


class BatchError(MiniClusterError):
    """
    Raised by Table.batch after every action was attempted and at least one failed.

    ``failures`` holds ``(index, row, exception)`` tuples; ``results`` is the full
    per-action result list, successes included.
    """

    def __init__(self, failures: List[Tuple[int, bytes, Exception]], results: List[Any]):
        self.failures = failures
        self.results = results
        super().__init__(
            f"Failed {len(failures)} of {len(results)} actions: "
            + ", ".join(sorted({type(exc).__name__ for _, _, exc in failures}))
        )

    @property
    def num_failures(self) -> int:
        return len(self.failures)

    def failed_rows(self) -> List[bytes]:
        return [row for _, row, _ in self.failures]
