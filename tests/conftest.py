"""
Shared test fixtures and configuration for the mini-cluster and load harness.
"""
import logging
import shutil
import tempfile
import time
from pathlib import Path

import pytest

from bulkload import bootstrapped_cluster
from minicluster import CoordinationClient, MiniCoordinationCluster

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)


def pytest_addoption(parser):
    parser.addoption(
        "--runslow", action="store_true", default=False,
        help="run slow tests, including the million-row load"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as needing a running mini cluster")


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --runslow is given"""
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    # Clean up after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def coordination(temp_data_dir):
    """A running coordination service on an ephemeral port."""
    service = MiniCoordinationCluster()
    service.startup(temp_data_dir / "coordination")
    yield service
    service.shutdown()


@pytest.fixture
def coordination_client(coordination):
    """A connected client for the coordination fixture."""
    client = CoordinationClient("127.0.0.1", coordination.client_port).connect()
    yield client
    client.close()


@pytest.fixture
def cluster_context(temp_data_dir):
    """A bootstrapped two-region-server cluster, torn down after the test."""
    with bootstrapped_cluster(temp_data_dir / "mini-cluster") as context:
        yield context


@pytest.fixture
def admin(cluster_context):
    return cluster_context.get_admin()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""
    def _wait(predicate, timeout=5.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
