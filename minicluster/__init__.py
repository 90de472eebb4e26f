"""
minicluster: an embedded, in-process, multi-node table store for tests.
Coordination service, master, region servers and a client library.
"""

__version__ = "1.0.0"

from .client import Admin, Connection, ConnectionFactory, ResultScanner, ScannerState, Table
from .cluster import MiniCluster
from .config import ClusterConfig
from .coordination import CoordinationClient, MiniCoordinationCluster
from .descriptors import ColumnFamilyDescriptor, TableDescriptor
from .errors import BatchError, MiniClusterError
from .operations import Cell, Put, Result, Scan, to_bytes

__all__ = [
    'Admin',
    'BatchError',
    'Cell',
    'ClusterConfig',
    'ColumnFamilyDescriptor',
    'Connection',
    'ConnectionFactory',
    'CoordinationClient',
    'MiniCluster',
    'MiniClusterError',
    'MiniCoordinationCluster',
    'Put',
    'Result',
    'ResultScanner',
    'Scan',
    'ScannerState',
    'Table',
    'TableDescriptor',
    'to_bytes',
]
