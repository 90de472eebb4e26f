"""
Cluster bootstrap for load runs.

Starts a coordination service on an ephemeral port and a mini cluster rooted
in a freshly cleared working directory, and tears both down in reverse order.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from minicluster import ClusterConfig, Connection, ConnectionFactory, MiniCluster, MiniCoordinationCluster
from minicluster.client import Admin

logger = logging.getLogger(__name__)

MIN_REGION_SERVERS = 2


@dataclass
class HarnessContext:
    """Everything a load-run phase needs, owned by whoever started the cluster"""
    config: ClusterConfig
    work_dir: Path
    coordination: MiniCoordinationCluster
    cluster: MiniCluster
    connection: Connection

    def get_admin(self) -> Admin:
        return self.connection.get_admin()


class ClusterBootstrapper:
    """Starts and stops a coordination service plus mini cluster"""

    def __init__(self, num_region_servers: int = MIN_REGION_SERVERS,
                 config: Optional[ClusterConfig] = None):
        if num_region_servers < MIN_REGION_SERVERS:
            raise ValueError(f"At least {MIN_REGION_SERVERS} region servers are required")
        self.num_region_servers = num_region_servers
        self.config = config or ClusterConfig()
        self.coordination: Optional[MiniCoordinationCluster] = None
        self.cluster: Optional[MiniCluster] = None
        self.connection: Optional[Connection] = None

    def start(self, work_dir) -> HarnessContext:
        """Clear work_dir, start everything and return once the master is discoverable"""
        work_dir = Path(work_dir).resolve()
        if work_dir.exists():
            logger.info(f"Removing stale working directory {work_dir}")
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True)

        config = self.config
        config.storage.root_dir = work_dir.as_uri()

        try:
            self.coordination = MiniCoordinationCluster(host=config.coordination.host)
            config.coordination.client_port = self.coordination.startup(work_dir / "coordination")
            logger.info(f"Coordination service on port {config.coordination.client_port}")

            config.master = "local"
            config.region_server.info_port = -1
            config.region_server.count = self.num_region_servers
            self.cluster = MiniCluster(config, self.num_region_servers).start()
            config.master = self.cluster.get_master().server_name.host_and_port

            self.connection = ConnectionFactory.create_connection(config)
        except Exception:
            logger.error("Cluster startup failed, tearing down")
            self.stop()
            raise

        return HarnessContext(
            config=config,
            work_dir=work_dir,
            coordination=self.coordination,
            cluster=self.cluster,
            connection=self.connection,
        )

    def stop(self):
        """Close the connection, stop the cluster, then the coordination service"""
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        if self.cluster is not None:
            self.cluster.shutdown()
            self.cluster = None
        if self.coordination is not None:
            self.coordination.shutdown()
            self.coordination = None


@contextmanager
def bootstrapped_cluster(work_dir, num_region_servers: int = MIN_REGION_SERVERS,
                         config: Optional[ClusterConfig] = None) -> Iterator[HarnessContext]:
    """Scoped cluster: started on entry, stopped on every exit path"""
    bootstrapper = ClusterBootstrapper(num_region_servers, config)
    context = bootstrapper.start(work_dir)
    try:
        yield context
    finally:
        bootstrapper.stop()
