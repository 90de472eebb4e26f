"""
Region server: hosts regions, applies batched mutations and serves scanners
"""

import itertools
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from . import rpc
from .config import ClusterConfig
from .coordination import CoordinationClient
from .descriptors import TableDescriptor
from .errors import (
    CoordinationError,
    MiniClusterError,
    NotServingRegionError,
    ScannerClosedError,
    ServerNotRunningError,
)
from .operations import Put, Result, Scan
from .region import Region, RegionInfo, RegionScanner
from .wal import WALConfig

logger = logging.getLogger(__name__)


def region_dir_for(config: ClusterConfig, info: RegionInfo) -> Path:
    return config.root_path / "data" / info.table / info.encoded_name


class RegionServer:
    """A single region server living in the harness process"""

    def __init__(self, config: ClusterConfig, host: str = "localhost"):
        self.config = config
        self.host = host
        self.server_name: Optional[rpc.ServerName] = None
        self.coordination: Optional[CoordinationClient] = None

        self.regions: Dict[str, Region] = {}
        self.scanners: Dict[int, Tuple[RegionScanner, str]] = {}
        self._scanner_ids = itertools.count(1)
        self.lock = threading.RLock()
        self.running = False
        self.started_at: Optional[float] = None

        self.stats = {
            'puts': 0,
            'failed_puts': 0,
            'multi_calls': 0,
            'scanners_opened': 0,
            'scan_next_calls': 0,
            'rows_scanned': 0,
        }

    def start(self) -> 'RegionServer':
        """Bind a server name and announce it through an ephemeral node"""
        if self.running:
            return self

        self.server_name = rpc.bind(self.host, self.config.region_server.base_port, self)
        try:
            self.coordination = CoordinationClient.from_config(self.config)
            self.coordination.ensure_path(self.config.region_servers_path)
            self.coordination.create(
                f"{self.config.region_servers_path}/{self.server_name}",
                self.server_name.host_and_port,
                ephemeral=True,
            )
        except MiniClusterError:
            self._release()
            raise

        self.running = True
        self.started_at = time.time()

        if self.config.region_server.info_port == -1:
            logger.info(f"Region server {self.server_name} started (info endpoint disabled)")
        else:
            logger.info(f"Region server {self.server_name} started")
        return self

    def stop(self):
        """Close scanners and regions, then leave the cluster; safe to repeat"""
        with self.lock:
            self.scanners.clear()
            for region in list(self.regions.values()):
                region.close()
            self.regions.clear()
            was_running = self.running
            self.running = False

        if was_running:
            try:
                self.coordination.delete(f"{self.config.region_servers_path}/{self.server_name}")
            except CoordinationError as e:
                logger.warning(f"Could not remove region server node for {self.server_name}: {e}")
        self._release()
        if was_running:
            logger.info(f"Region server {self.server_name} stopped")

    def _release(self):
        if self.coordination is not None:
            self.coordination.close()
            self.coordination = None
        if self.server_name is not None:
            rpc.unregister(self.server_name, self)

    def _check_running(self):
        if not self.running:
            raise ServerNotRunningError(f"Region server {self.server_name} is not running")

    # Region lifecycle

    def open_region(self, info: RegionInfo, descriptor: TableDescriptor) -> Region:
        with self.lock:
            self._check_running()
            region = self.regions.get(info.encoded_name)
            if region is not None:
                return region

            region_dir = region_dir_for(self.config, info)
            wal_config = None
            if self.config.storage.wal_enabled:
                wal_config = WALConfig(
                    wal_dir=str(region_dir / "wal"),
                    segment_size_mb=self.config.storage.wal_segment_size_mb,
                    sync_on_write=self.config.storage.wal_sync_on_write,
                )
            region = Region(info, descriptor, region_dir, wal_config)
            region.open()
            self.regions[info.encoded_name] = region
            return region

    def close_region(self, encoded_name: str) -> bool:
        with self.lock:
            region = self.regions.pop(encoded_name, None)
            if region is None:
                return False
            for scanner_id in [sid for sid, (_, enc) in self.scanners.items() if enc == encoded_name]:
                del self.scanners[scanner_id]
            region.close()
            return True

    def get_region(self, encoded_name: str) -> Region:
        with self.lock:
            self._check_running()
            region = self.regions.get(encoded_name)
            if region is None:
                raise NotServingRegionError(f"Region {encoded_name} is not online on {self.server_name}")
            return region

    @property
    def online_regions(self) -> List[RegionInfo]:
        with self.lock:
            return [region.info for region in self.regions.values()]

    # Mutations

    def multi(self, encoded_name: str, puts: List[Put]) -> List[Optional[Exception]]:
        """Apply puts to one region; returns None or the exception per put"""
        self.stats['multi_calls'] += 1
        try:
            region = self.get_region(encoded_name)
        except MiniClusterError as e:
            self.stats['failed_puts'] += len(puts)
            return [e] * len(puts)

        outcomes: List[Optional[Exception]] = []
        for put in puts:
            try:
                region.put(put)
                outcomes.append(None)
                self.stats['puts'] += 1
            except (MiniClusterError, OSError) as e:
                outcomes.append(e)
                self.stats['failed_puts'] += 1
        return outcomes

    # Scanners

    def open_scanner(self, encoded_name: str, scan: Scan) -> int:
        region = self.get_region(encoded_name)
        scanner = region.get_scanner(scan)
        with self.lock:
            scanner_id = next(self._scanner_ids)
            self.scanners[scanner_id] = (scanner, encoded_name)
        self.stats['scanners_opened'] += 1
        logger.debug(f"Opened scanner {scanner_id} on region {encoded_name}")
        return scanner_id

    def scan_next(self, scanner_id: int, caching: int, max_result_size: Optional[int] = None,
                  batch: int = -1) -> Tuple[List[Result], bool]:
        """Fetch the next chunk; the scanner is released once it is exhausted"""
        with self.lock:
            self._check_running()
            entry = self.scanners.get(scanner_id)
        if entry is None:
            raise ScannerClosedError(f"Unknown scanner {scanner_id}")

        if max_result_size is None:
            max_result_size = self.config.region_server.max_scanner_result_size

        scanner, _ = entry
        results, more = scanner.next_rows(caching, max_result_size, batch)
        self.stats['scan_next_calls'] += 1
        self.stats['rows_scanned'] += len(results)

        if not more:
            self.close_scanner(scanner_id)
        return results, more

    def close_scanner(self, scanner_id: int) -> bool:
        with self.lock:
            closed = self.scanners.pop(scanner_id, None) is not None
        if closed:
            logger.debug(f"Closed scanner {scanner_id}")
        return closed

    @property
    def open_scanner_count(self) -> int:
        with self.lock:
            return len(self.scanners)

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            region_rows = sum(region.row_count for region in self.regions.values())
            memstore = sum(region.memstore_size for region in self.regions.values())
        process = psutil.Process()
        return {
            **self.stats,
            'server_name': str(self.server_name),
            'running': self.running,
            'regions': len(self.regions),
            'open_scanners': self.open_scanner_count,
            'rows': region_rows,
            'memstore_size': memstore,
            'uptime': time.time() - self.started_at if self.started_at else 0.0,
            'process_rss': process.memory_info().rss,
        }
