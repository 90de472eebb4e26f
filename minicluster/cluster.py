"""
In-process multi-node cluster: N region servers plus a master, all talking to
an already running coordination service.
"""

import logging
from typing import List, Optional

from .config import ClusterConfig
from .coordination import CoordinationClient
from .errors import MasterNotRunningError, MiniClusterError, NoNodeError
from .master import Master
from .region_server import RegionServer

logger = logging.getLogger(__name__)


class MiniCluster:
    """Starts region servers then the master; stops them in the same order"""

    def __init__(self, config: ClusterConfig, num_region_servers: Optional[int] = None,
                 startup_timeout: float = 10.0):
        self.config = config
        self.num_region_servers = num_region_servers or config.region_server.count
        self.startup_timeout = startup_timeout
        self.region_servers: List[RegionServer] = []
        self.master: Optional[Master] = None

    def start(self) -> 'MiniCluster':
        errors = self.config.validate()
        if errors:
            raise MiniClusterError(f"Invalid cluster configuration: {'; '.join(errors)}")
        if self.config.coordination.client_port == 0:
            raise MiniClusterError("Coordination client port is not set; start the coordination service first")

        logger.info(
            f"Starting mini cluster with {self.num_region_servers} region servers "
            f"(root {self.config.storage.root_dir})"
        )
        try:
            for _ in range(self.num_region_servers):
                self.region_servers.append(RegionServer(self.config).start())
            self.master = Master(self.config).start()
            self.wait_for_active_master()
        except (MiniClusterError, OSError):
            self.shutdown()
            raise

        return self

    def wait_for_active_master(self) -> str:
        """Block until the master address is discoverable; returns host:port"""
        with CoordinationClient.from_config(self.config) as client:
            try:
                address = client.wait_for_node(self.config.master_path, self.startup_timeout)
            except NoNodeError as e:
                raise MasterNotRunningError("Master did not publish its address in time") from e
        logger.info(f"Active master at {address}")
        return address

    def get_master(self) -> Master:
        if self.master is None or not self.master.running:
            raise MasterNotRunningError("Master is not running")
        return self.master

    def shutdown(self):
        """Stop region servers, then the master; safe after a partial start"""
        for server in self.region_servers:
            server.stop()
        self.region_servers.clear()
        if self.master is not None:
            self.master.stop()
            self.master = None
        logger.info("Mini cluster shut down")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
