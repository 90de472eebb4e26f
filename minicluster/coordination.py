"""
Embedded coordination service for the mini-cluster.

A small hierarchical node store served over TCP with the RESP protocol:
- persistent and ephemeral nodes (ephemeral nodes die with their session)
- versioned data with optional compare-and-set
- JSON snapshot of persistent nodes written on shutdown, reloaded on startup

The server runs an asyncio event loop in a background thread so that the
synchronous harness and servers can talk to it with a blocking client.
"""

import asyncio
import json
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    BadVersionError,
    CoordinationConnectionError,
    CoordinationError,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
)
from .protocol import RESPError, RESPParser, RESPProtocol

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "snapshot.json"

ERROR_CODES = {
    NoNodeError: "NONODE",
    NodeExistsError: "NODEEXISTS",
    NotEmptyError: "NOTEMPTY",
    BadVersionError: "BADVERSION",
}
ERROR_CLASSES = {code: cls for cls, code in ERROR_CODES.items()}


def validate_path(path: str) -> str:
    """Check that a node path is absolute and has no empty components"""
    if not path.startswith("/"):
        raise CoordinationError(f"Path must be absolute: {path!r}", path)
    if path != "/" and (path.endswith("/") or "//" in path):
        raise CoordinationError(f"Invalid path: {path!r}", path)
    return path


def parent_path(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


@dataclass
class ZNode:
    """A single node in the coordination tree"""
    data: str = ""
    version: int = 0
    ephemeral_owner: Optional[int] = None
    ctime: float = field(default_factory=time.time)
    mtime: float = field(default_factory=time.time)


class DataTree:
    """Thread-safe node tree"""

    def __init__(self):
        self.nodes: Dict[str, ZNode] = {"/": ZNode()}
        self.lock = threading.RLock()

    def create(self, path: str, data: str = "", ephemeral_owner: Optional[int] = None):
        validate_path(path)
        with self.lock:
            if path in self.nodes:
                raise NodeExistsError(path, path)
            parent = parent_path(path)
            if parent not in self.nodes:
                raise NoNodeError(parent, parent)
            if self.nodes[parent].ephemeral_owner is not None:
                raise CoordinationError(f"Ephemeral nodes may not have children: {parent}", parent)
            self.nodes[path] = ZNode(data=data, ephemeral_owner=ephemeral_owner)

    def get(self, path: str) -> Tuple[str, int]:
        with self.lock:
            node = self.nodes.get(path)
            if node is None:
                raise NoNodeError(path, path)
            return node.data, node.version

    def set(self, path: str, data: str, version: int = -1) -> int:
        with self.lock:
            node = self.nodes.get(path)
            if node is None:
                raise NoNodeError(path, path)
            if version != -1 and version != node.version:
                raise BadVersionError(path, path)
            node.data = data
            node.version += 1
            node.mtime = time.time()
            return node.version

    def delete(self, path: str, version: int = -1):
        if path == "/":
            raise CoordinationError("Cannot delete the root node", path)
        with self.lock:
            node = self.nodes.get(path)
            if node is None:
                raise NoNodeError(path, path)
            if version != -1 and version != node.version:
                raise BadVersionError(path, path)
            if self.children(path):
                raise NotEmptyError(path, path)
            del self.nodes[path]

    def exists(self, path: str) -> bool:
        with self.lock:
            return path in self.nodes

    def children(self, path: str) -> List[str]:
        with self.lock:
            if path not in self.nodes:
                raise NoNodeError(path, path)
            prefix = path if path.endswith("/") else path + "/"
            return sorted(
                p[len(prefix):] for p in self.nodes
                if p.startswith(prefix) and "/" not in p[len(prefix):] and p != prefix
            )

    def kill_session(self, session_id: int) -> List[str]:
        """Remove every ephemeral node owned by a session"""
        with self.lock:
            owned = [p for p, n in self.nodes.items() if n.ephemeral_owner == session_id]
            for path in owned:
                del self.nodes[path]
            return owned

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self.lock:
            return {
                path: {"data": node.data, "version": node.version}
                for path, node in self.nodes.items()
                if node.ephemeral_owner is None and path != "/"
            }

    def load(self, snapshot: Dict[str, Dict[str, Any]]):
        with self.lock:
            # Parents sort before their children
            for path in sorted(snapshot):
                entry = snapshot[path]
                self.nodes[path] = ZNode(data=entry.get("data", ""), version=entry.get("version", 0))


class CoordinationCommandHandler:
    """Dispatches decoded commands against a DataTree"""

    def __init__(self, tree: DataTree):
        self.tree = tree

        self.commands: Dict[str, Callable[[int, List[str]], Any]] = {
            'PING': self._handle_ping,
            'CREATE': self._handle_create,
            'GET': self._handle_get,
            'SET': self._handle_set,
            'DELETE': self._handle_delete,
            'EXISTS': self._handle_exists,
            'CHILDREN': self._handle_children,
        }

    def handle_command(self, session_id: int, command: List[str]) -> bytes:
        """Handle a single command and return the encoded reply"""
        if not command:
            return RESPProtocol.encode_error("ERR empty command")

        cmd_name = str(command[0]).upper()

        if cmd_name not in self.commands:
            return RESPProtocol.encode_error(f"ERR unknown command '{cmd_name}'")

        try:
            result = self.commands[cmd_name](session_id, command[1:])
            return RESPProtocol.encode_response(result)
        except CoordinationError as e:
            code = ERROR_CODES.get(type(e), "ERR")
            return RESPProtocol.encode_error(f"{code} {e}")
        except (ValueError, IndexError) as e:
            logger.error(f"Error handling command {cmd_name}: {e}")
            return RESPProtocol.encode_error(f"ERR {e}")

    @staticmethod
    def _expect_args(name: str, args: List[str], minimum: int, maximum: int):
        if not (minimum <= len(args) <= maximum):
            raise ValueError(f"wrong number of arguments for '{name.lower()}' command")

    def _handle_ping(self, session_id: int, args: List[str]) -> Any:
        return "PONG"

    def _handle_create(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('CREATE', args, 1, 3)
        path = args[0]
        data = args[1] if len(args) > 1 else ""
        mode = args[2].upper() if len(args) > 2 else "PERSISTENT"
        if mode not in ("PERSISTENT", "EPHEMERAL"):
            raise ValueError(f"unknown create mode '{mode}'")
        owner = session_id if mode == "EPHEMERAL" else None
        self.tree.create(path, data, ephemeral_owner=owner)
        return path

    def _handle_get(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('GET', args, 1, 1)
        data, version = self.tree.get(args[0])
        return [data, version]

    def _handle_set(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('SET', args, 2, 3)
        version = int(args[2]) if len(args) > 2 else -1
        return self.tree.set(args[0], args[1], version)

    def _handle_delete(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('DELETE', args, 1, 2)
        version = int(args[1]) if len(args) > 1 else -1
        self.tree.delete(args[0], version)
        return 1

    def _handle_exists(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('EXISTS', args, 1, 1)
        return self.tree.exists(args[0])

    def _handle_children(self, session_id: int, args: List[str]) -> Any:
        self._expect_args('CHILDREN', args, 1, 1)
        return self.tree.children(args[0])


class CoordinationServer:
    """Asyncio TCP server for the coordination protocol"""

    def __init__(self, host: str, port: int, handler: CoordinationCommandHandler):
        self.host = host
        self.port = port
        self.handler = handler

        self.server: Optional[asyncio.AbstractServer] = None
        self.client_tasks: Dict[int, asyncio.Task] = {}
        self.stats = {
            'connections_created': 0,
            'connections_closed': 0,
            'commands_processed': 0,
            'errors': 0,
        }
        self._session_counter = 0

    async def start(self):
        """Bind the listening socket; port 0 picks an ephemeral port"""
        self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Coordination service listening on {self.host}:{self.port}")

    async def stop(self):
        """Stop accepting and drop every client session"""
        if self.server:
            self.server.close()

        tasks = list(self.client_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.server:
            await self.server.wait_closed()
        logger.info("Coordination service stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Serve one client session until it disconnects"""
        self._session_counter += 1
        session_id = self._session_counter
        self.client_tasks[session_id] = asyncio.current_task()
        self.stats['connections_created'] += 1

        peername = writer.get_extra_info('peername')
        logger.debug(f"Session {session_id} opened from {peername}")

        parser = RESPParser()
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break

                parser.feed(data)
                try:
                    commands = parser.parse()
                except ValueError as e:
                    self.stats['errors'] += 1
                    writer.write(RESPProtocol.encode_error(f"ERR protocol error: {e}"))
                    await writer.drain()
                    break

                for command in commands:
                    if not isinstance(command, list):
                        command = [command]
                    writer.write(self.handler.handle_command(session_id, command))
                    self.stats['commands_processed'] += 1
                await writer.drain()

        except asyncio.CancelledError:
            pass
        except ConnectionError as e:
            logger.debug(f"Session {session_id} connection error: {e}")
        finally:
            removed = self.handler.tree.kill_session(session_id)
            if removed:
                logger.debug(f"Session {session_id} expired ephemeral nodes {removed}")
            self.client_tasks.pop(session_id, None)
            writer.close()
            self.stats['connections_closed'] += 1
            logger.debug(f"Session {session_id} closed")


class MiniCoordinationCluster:
    """
    Single-node coordination service for tests.

    ``startup`` returns the bound client port, which is an ephemeral port
    unless one was requested explicitly.
    """

    def __init__(self, host: str = "127.0.0.1", startup_timeout: float = 10.0):
        self.host = host
        self.startup_timeout = startup_timeout
        self.data_dir: Optional[Path] = None
        self.tree = DataTree()
        self.server: Optional[CoordinationServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None

    @property
    def client_port(self) -> int:
        return self.server.port if self.server else 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def startup(self, data_dir, client_port: int = 0) -> int:
        """Start serving and return the client port"""
        if self.is_running:
            raise CoordinationError("Coordination service already running")

        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._load_snapshot()

        self.server = CoordinationServer(self.host, client_port, CoordinationCommandHandler(self.tree))
        self._ready.clear()
        self._startup_error = None
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="coordination-server", daemon=True)
        self._thread.start()

        if not self._ready.wait(self.startup_timeout):
            raise CoordinationError("Timed out waiting for the coordination service to start")
        if self._startup_error is not None:
            self._thread.join()
            self._thread = None
            raise CoordinationError(f"Coordination service failed to start: {self._startup_error}")

        return self.client_port

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self.server.start())
        except OSError as e:
            self._startup_error = e
            self._ready.set()
            self._loop.close()
            return

        self._ready.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.run_until_complete(self.server.stop())
            self._loop.close()

    def shutdown(self):
        """Stop the server thread and write the snapshot; no-op when not running"""
        if not self.is_running:
            return

        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(self.startup_timeout)
        self._thread = None
        self._save_snapshot()

    def _snapshot_path(self) -> Path:
        return self.data_dir / SNAPSHOT_FILE

    def _load_snapshot(self):
        path = self._snapshot_path()
        if path.exists():
            with open(path, 'r') as f:
                snapshot = json.load(f)
            self.tree.load(snapshot)
            logger.info(f"Loaded {len(snapshot)} nodes from {path}")

    def _save_snapshot(self):
        snapshot = self.tree.snapshot()
        with open(self._snapshot_path(), 'w') as f:
            json.dump(snapshot, f, indent=2, sort_keys=True)
        logger.debug(f"Saved {len(snapshot)} nodes to {self._snapshot_path()}")


class CoordinationClient:
    """Blocking client for the coordination service"""

    def __init__(self, host: str, port: int, connect_timeout: float = 5.0,
                 poll_interval: float = 0.05):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._sock: Optional[socket.socket] = None
        self._parser = RESPParser()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> 'CoordinationClient':
        """Build a connected client from a ClusterConfig"""
        coordination = config.coordination
        client = cls(coordination.host, coordination.client_port,
                     connect_timeout=coordination.connect_timeout,
                     poll_interval=coordination.wait_poll_interval)
        return client.connect()

    def connect(self) -> 'CoordinationClient':
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            raise CoordinationConnectionError(
                f"Cannot reach coordination service at {self.host}:{self.port}: {e}"
            ) from e
        return self

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def close(self):
        """Close the session; the server drops its ephemeral nodes"""
        with self._lock:
            self._reset()

    def _reset(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._parser = RESPParser()

    def __enter__(self):
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _call(self, *args: Any) -> Any:
        with self._lock:
            if self._sock is None:
                raise CoordinationConnectionError("Coordination client is not connected")
            try:
                self._sock.sendall(RESPProtocol.encode_command(*args))
                while True:
                    replies = self._parser.parse()
                    if replies:
                        reply = replies[0]
                        break
                    chunk = self._sock.recv(65536)
                    if not chunk:
                        raise CoordinationConnectionError("Coordination service closed the connection")
                    self._parser.feed(chunk)
            except CoordinationConnectionError:
                self._reset()
                raise
            except OSError as e:
                # The stream may still hold part of this reply
                self._reset()
                raise CoordinationConnectionError(f"Coordination request failed: {e}") from e

        if isinstance(reply, RESPError):
            error_cls = ERROR_CLASSES.get(reply.code, CoordinationError)
            path = str(args[1]) if len(args) > 1 else ""
            raise error_cls(reply.message or reply, path)
        return reply

    def ping(self) -> bool:
        return self._call("PING") == "PONG"

    def create(self, path: str, data: str = "", ephemeral: bool = False) -> str:
        return self._call("CREATE", path, data, "EPHEMERAL" if ephemeral else "PERSISTENT")

    def ensure_path(self, path: str):
        """Create path and any missing parents as persistent nodes"""
        validate_path(path)
        current = ""
        for part in path.strip("/").split("/"):
            current = f"{current}/{part}"
            try:
                self.create(current)
            except NodeExistsError:
                pass

    def get(self, path: str) -> Tuple[str, int]:
        data, version = self._call("GET", path)
        return data, version

    def get_data(self, path: str) -> str:
        return self.get(path)[0]

    def set(self, path: str, data: str, version: int = -1) -> int:
        return self._call("SET", path, data, version)

    def delete(self, path: str, version: int = -1):
        self._call("DELETE", path, version)

    def exists(self, path: str) -> bool:
        return bool(self._call("EXISTS", path))

    def get_children(self, path: str) -> List[str]:
        return self._call("CHILDREN", path) or []

    def wait_for_node(self, path: str, timeout: float = 10.0) -> str:
        """Poll until path exists and return its data"""
        deadline = time.monotonic() + timeout
        while True:
            try:
                return self.get_data(path)
            except NoNodeError:
                if time.monotonic() >= deadline:
                    raise
            time.sleep(self.poll_interval)
