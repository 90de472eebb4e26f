"""
Master: table catalog, table lifecycle and region assignment.

The catalog is persisted as YAML under ``<root>/meta/catalog.yaml`` so a
master started on a stale root directory sees the previous run's tables.
"""

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from . import rpc
from .config import ClusterConfig
from .coordination import CoordinationClient
from .descriptors import TableDescriptor, validate_table_name
from .errors import (
    CoordinationError,
    InvalidSplitKeysError,
    MiniClusterError,
    NoNodeError,
    ServerNotRunningError,
    TableExistsError,
    TableNotDisabledError,
    TableNotEnabledError,
    TableNotFoundError,
)
from .operations import to_bytes
from .region import RegionInfo

logger = logging.getLogger(__name__)


class TableState(Enum):
    """Table lifecycle states"""
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


@dataclass
class TableEntry:
    """Catalog entry for one table"""
    descriptor: TableDescriptor
    state: TableState
    regions: List[RegionInfo]
    assignments: Dict[str, str] = field(default_factory=dict)  # encoded name -> server name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.to_dict(),
            "state": self.state.value,
            "regions": [info.to_dict() for info in self.regions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableEntry':
        return cls(
            descriptor=TableDescriptor.from_dict(data["descriptor"]),
            state=TableState(data["state"]),
            regions=[RegionInfo.from_dict(r) for r in data.get("regions", [])],
        )


def validate_split_keys(split_keys: Sequence[bytes]) -> List[bytes]:
    """Split keys must be non-empty, unique and strictly increasing"""
    keys = [to_bytes(key) for key in split_keys]
    for key in keys:
        if not key:
            raise InvalidSplitKeysError("Split keys must not be empty")
    for previous, current in zip(keys, keys[1:]):
        if current <= previous:
            raise InvalidSplitKeysError(
                f"Split keys must be unique and sorted: {previous!r} >= {current!r}"
            )
    return keys


class Master:
    """Cluster master living in the harness process"""

    def __init__(self, config: ClusterConfig, host: str = "localhost"):
        self.config = config
        self.host = host
        self.server_name: Optional[rpc.ServerName] = None
        self.coordination: Optional[CoordinationClient] = None
        self.tables: Dict[str, TableEntry] = {}
        self.lock = threading.RLock()
        self.running = False

    @property
    def catalog_path(self) -> Path:
        return self.config.root_path / "meta" / "catalog.yaml"

    def start(self) -> 'Master':
        """Load the catalog, reassign enabled tables and publish the master address"""
        if self.running:
            return self

        self.server_name = rpc.bind(self.host, self.config.master_port, self)
        try:
            self.coordination = CoordinationClient.from_config(self.config)
            self.coordination.ensure_path(self.config.coordination.base_path)
            self.coordination.ensure_path(self.config.region_servers_path)
            self._load_catalog()
            for entry in self.tables.values():
                if entry.state == TableState.ENABLED:
                    self._assign(entry)
            self.coordination.create(
                self.config.master_path, self.server_name.host_and_port, ephemeral=True
            )
        except (MiniClusterError, OSError):
            self._release()
            raise

        self.running = True
        logger.info(f"Master {self.server_name} started with {len(self.tables)} tables in catalog")
        return self

    def stop(self):
        """Persist the catalog and withdraw the master node; safe to repeat"""
        with self.lock:
            was_running = self.running
            self.running = False
            if was_running:
                self._save_catalog()
        if was_running:
            self._withdraw(self.config.master_path)
        self._release()
        if was_running:
            logger.info(f"Master {self.server_name} stopped")

    def _withdraw(self, path: str):
        """Delete our ephemeral node now rather than when the session drops"""
        if self.coordination is None:
            return
        try:
            self.coordination.delete(path)
        except CoordinationError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def _release(self):
        if self.coordination is not None:
            self.coordination.close()
            self.coordination = None
        if self.server_name is not None:
            rpc.unregister(self.server_name, self)

    def _check_running(self):
        if not self.running:
            raise ServerNotRunningError(f"Master {self.server_name} is not running")

    # Catalog persistence

    def _load_catalog(self):
        if not self.catalog_path.exists():
            return
        with open(self.catalog_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        for table_data in data.get("tables", []):
            entry = TableEntry.from_dict(table_data)
            self.tables[entry.descriptor.name] = entry
        logger.info(f"Loaded catalog from {self.catalog_path}: {sorted(self.tables)}")

    def _save_catalog(self):
        self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
        data = {"tables": [self.tables[name].to_dict() for name in sorted(self.tables)]}
        with open(self.catalog_path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, indent=2)

    # Region assignment

    def live_region_servers(self) -> List[Any]:
        """Region servers announced in the coordination service and still running"""
        servers = []
        try:
            names = self.coordination.get_children(self.config.region_servers_path)
        except NoNodeError:
            return servers
        for name in names:
            try:
                servers.append(rpc.lookup(name))
            except ServerNotRunningError:
                logger.warning(f"Region server {name} is registered but not running")
        return servers

    def _assign(self, entry: TableEntry):
        servers = self.live_region_servers()
        if not servers:
            raise MiniClusterError("No live region servers to assign regions to")

        for index, info in enumerate(entry.regions):
            server = servers[index % len(servers)]
            server.open_region(info, entry.descriptor)
            entry.assignments[info.encoded_name] = str(server.server_name)
        logger.info(
            f"Assigned {len(entry.regions)} regions of {entry.descriptor.name} "
            f"across {len(servers)} region servers"
        )

    def _unassign(self, entry: TableEntry):
        for encoded_name, server_name in entry.assignments.items():
            try:
                rpc.lookup(server_name).close_region(encoded_name)
            except ServerNotRunningError:
                logger.warning(f"Region server {server_name} gone while closing {encoded_name}")
        entry.assignments.clear()

    # Table lifecycle

    def _get_entry(self, name: str) -> TableEntry:
        entry = self.tables.get(name)
        if entry is None:
            raise TableNotFoundError(name, f"Table {name} does not exist")
        return entry

    def list_tables(self) -> List[str]:
        with self.lock:
            self._check_running()
            return sorted(self.tables)

    def table_exists(self, name: str) -> bool:
        with self.lock:
            self._check_running()
            return name in self.tables

    def get_descriptor(self, name: str) -> TableDescriptor:
        with self.lock:
            self._check_running()
            return self._get_entry(name).descriptor

    def is_table_enabled(self, name: str) -> bool:
        with self.lock:
            self._check_running()
            return self._get_entry(name).state == TableState.ENABLED

    def create_table(self, descriptor: TableDescriptor,
                     split_keys: Optional[Sequence[bytes]] = None) -> List[RegionInfo]:
        """Create and enable a table, pre-split at split_keys"""
        validate_table_name(descriptor.name)
        if not descriptor.families:
            raise ValueError(f"Table {descriptor.name} needs at least one column family")
        keys = validate_split_keys(split_keys or [])

        with self.lock:
            self._check_running()
            if descriptor.name in self.tables:
                raise TableExistsError(descriptor.name, f"Table {descriptor.name} already exists")

            region_id = int(time.time() * 1000)
            boundaries = [b""] + keys + [b""]
            regions = [
                RegionInfo(descriptor.name, start, end, region_id)
                for start, end in zip(boundaries, boundaries[1:])
            ]
            entry = TableEntry(descriptor, TableState.ENABLED, regions)
            self._assign(entry)
            self.tables[descriptor.name] = entry
            self._save_catalog()

        logger.info(f"Created table {descriptor.name} with {len(regions)} regions")
        return regions

    def disable_table(self, name: str):
        with self.lock:
            self._check_running()
            entry = self._get_entry(name)
            if entry.state != TableState.ENABLED:
                raise TableNotEnabledError(name, f"Table {name} is not enabled")
            self._unassign(entry)
            entry.state = TableState.DISABLED
            self._save_catalog()
        logger.info(f"Disabled table {name}")

    def enable_table(self, name: str):
        with self.lock:
            self._check_running()
            entry = self._get_entry(name)
            if entry.state != TableState.DISABLED:
                raise TableNotDisabledError(name, f"Table {name} is not disabled")
            self._assign(entry)
            entry.state = TableState.ENABLED
            self._save_catalog()
        logger.info(f"Enabled table {name}")

    def delete_table(self, name: str):
        """Delete a disabled table and its region data"""
        with self.lock:
            self._check_running()
            entry = self._get_entry(name)
            if entry.state != TableState.DISABLED:
                raise TableNotDisabledError(name, f"Table {name} must be disabled before delete")
            del self.tables[name]
            shutil.rmtree(self.config.root_path / "data" / name, ignore_errors=True)
            self._save_catalog()
        logger.info(f"Deleted table {name}")

    def locate_regions(self, name: str) -> List[Tuple[RegionInfo, Optional[str]]]:
        """Regions of a table in key order with their hosting server (None when offline)"""
        with self.lock:
            self._check_running()
            entry = self._get_entry(name)
            return [(info, entry.assignments.get(info.encoded_name)) for info in entry.regions]
