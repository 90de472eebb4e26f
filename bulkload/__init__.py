"""
bulkload: bulk load-and-verify harness for the embedded mini-cluster.
Bootstrap a cluster, recreate a table, write N x C cells, scan them back.
"""

__version__ = "1.0.0"

from .bootstrap import ClusterBootstrapper, HarnessContext, bootstrapped_cluster
from .config import LoadTestConfig
from .harness import LoadTestReport, run_load_test
from .schema import SchemaManager, two_byte_split_points
from .verifier import BulkVerifier, VerificationReport
from .writer import BatchFailure, BulkWriter, WriteReport

__all__ = [
    'BatchFailure',
    'BulkVerifier',
    'BulkWriter',
    'ClusterBootstrapper',
    'HarnessContext',
    'LoadTestConfig',
    'LoadTestReport',
    'SchemaManager',
    'VerificationReport',
    'WriteReport',
    'bootstrapped_cluster',
    'run_load_test',
    'two_byte_split_points',
]
