"""
Configuration management for the embedded mini-cluster
"""

import yaml
from typing import Dict, Any, List
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname


@dataclass
class CoordinationConfig:
    """Coordination service client configuration"""
    host: str = "127.0.0.1"
    client_port: int = 0  # 0 until the service is started
    connect_timeout: float = 5.0
    wait_poll_interval: float = 0.05
    base_path: str = "/minicluster"


@dataclass
class StorageConfig:
    """Region storage configuration"""
    root_dir: str = "file:///tmp/minicluster"
    wal_enabled: bool = True
    wal_sync_on_write: bool = False
    wal_segment_size_mb: int = 64


@dataclass
class RegionServerConfig:
    """Region server configuration"""
    count: int = 2
    base_port: int = 16020
    info_port: int = 16030  # -1 disables the info endpoint
    max_scanner_result_size: int = 2 * 1024 * 1024  # per-call cap applied server side


@dataclass
class ClientConfig:
    """Client-side defaults"""
    write_buffer_size: int = 2 * 1024 * 1024
    scanner_caching: int = 100


@dataclass
class ClusterConfig:
    """Main mini-cluster configuration"""
    master: str = "local"  # "local" until the master has published its address
    master_port: int = 16000

    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    region_server: RegionServerConfig = field(default_factory=RegionServerConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @property
    def root_path(self) -> Path:
        """Local filesystem path of the storage root URI"""
        parsed = urlparse(self.storage.root_dir)
        if parsed.scheme in ("", "file"):
            return Path(url2pathname(parsed.path))
        raise ValueError(f"Unsupported root_dir scheme: {parsed.scheme}")

    @property
    def master_path(self) -> str:
        return f"{self.coordination.base_path}/master"

    @property
    def region_servers_path(self) -> str:
        return f"{self.coordination.base_path}/rs"

    @classmethod
    def from_file(cls, config_path: str) -> 'ClusterConfig':
        """Load configuration from YAML file"""
        config_path = Path(config_path)
        if not config_path.exists():
            return cls()

        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClusterConfig':
        """Create config from dictionary"""
        config = cls()

        for key, value in data.items():
            if hasattr(config, key):
                attr = getattr(config, key)
                if hasattr(attr, '__dict__'):  # It's a dataclass
                    if isinstance(value, dict):
                        for sub_key, sub_value in value.items():
                            if hasattr(attr, sub_key):
                                setattr(attr, sub_key, sub_value)
                else:
                    setattr(config, key, value)

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        result = {}
        for key, value in self.__dict__.items():
            if hasattr(value, '__dict__'):  # It's a dataclass
                result[key] = {k: v for k, v in value.__dict__.items()}
            else:
                result[key] = value
        return result

    def save_to_file(self, config_path: str):
        """Save configuration to YAML file"""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, indent=2)

    def validate(self) -> List[str]:
        """Validate configuration and return any errors"""
        errors = []

        if self.region_server.count < 1:
            errors.append("region_server.count must be at least 1")

        if not (0 <= self.coordination.client_port <= 65535):
            errors.append(f"Invalid coordination client port: {self.coordination.client_port}")

        if not self.coordination.base_path.startswith("/"):
            errors.append("coordination.base_path must be absolute")

        try:
            self.root_path
        except ValueError as e:
            errors.append(str(e))

        if self.client.write_buffer_size <= 0:
            errors.append("client.write_buffer_size must be positive")

        if self.client.scanner_caching <= 0:
            errors.append("client.scanner_caching must be positive")

        return errors
