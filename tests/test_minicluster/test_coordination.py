"""
Tests for the embedded coordination service: node tree, TCP server, client
"""

import asyncio
import json
import socket
import threading

import pytest

from minicluster.coordination import (
    SNAPSHOT_FILE,
    CoordinationClient,
    CoordinationCommandHandler,
    CoordinationServer,
    DataTree,
    MiniCoordinationCluster,
)
from minicluster.errors import (
    BadVersionError,
    CoordinationConnectionError,
    CoordinationError,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
)
from minicluster.protocol import RESPParser, RESPProtocol


class TestDataTree:
    """Test the in-memory node tree"""

    def test_create_and_get(self):
        tree = DataTree()
        tree.create("/a", "hello")
        assert tree.get("/a") == ("hello", 0)

    def test_create_requires_parent(self):
        tree = DataTree()
        with pytest.raises(NoNodeError):
            tree.create("/a/b")

    def test_create_duplicate(self):
        tree = DataTree()
        tree.create("/a")
        with pytest.raises(NodeExistsError):
            tree.create("/a")

    def test_invalid_paths(self):
        tree = DataTree()
        for path in ("relative", "/trailing/", "/double//slash"):
            with pytest.raises(CoordinationError):
                tree.create(path)

    def test_set_bumps_version(self):
        tree = DataTree()
        tree.create("/a", "v0")
        assert tree.set("/a", "v1") == 1
        assert tree.set("/a", "v2", version=1) == 2
        with pytest.raises(BadVersionError):
            tree.set("/a", "v3", version=0)

    def test_delete_with_children_fails(self):
        tree = DataTree()
        tree.create("/a")
        tree.create("/a/b")
        with pytest.raises(NotEmptyError):
            tree.delete("/a")
        tree.delete("/a/b")
        tree.delete("/a")
        assert not tree.exists("/a")

    def test_children_are_direct_and_sorted(self):
        tree = DataTree()
        tree.create("/rs")
        tree.create("/rs/b")
        tree.create("/rs/a")
        tree.create("/rs/a/deep")
        tree.create("/rsx")
        assert tree.children("/rs") == ["a", "b"]
        assert tree.children("/") == ["rs", "rsx"]

    def test_kill_session_removes_only_its_ephemerals(self):
        tree = DataTree()
        tree.create("/p", "persistent")
        tree.create("/e1", ephemeral_owner=1)
        tree.create("/e2", ephemeral_owner=2)

        assert tree.kill_session(1) == ["/e1"]
        assert tree.exists("/p")
        assert tree.exists("/e2")
        assert not tree.exists("/e1")

    def test_ephemeral_nodes_cannot_have_children(self):
        tree = DataTree()
        tree.create("/e", ephemeral_owner=1)
        with pytest.raises(CoordinationError):
            tree.create("/e/child")

    def test_snapshot_skips_ephemerals(self):
        tree = DataTree()
        tree.create("/p", "keep")
        tree.create("/p/q", "nested")
        tree.create("/e", ephemeral_owner=1)

        restored = DataTree()
        restored.load(tree.snapshot())
        assert restored.get("/p/q") == ("nested", 0)
        assert not restored.exists("/e")


class TestCommandHandler:
    """Test command dispatch and error codes"""

    def _reply(self, handler, *command):
        parser = RESPParser()
        parser.feed(handler.handle_command(1, list(command)))
        [reply] = parser.parse()
        return reply

    def test_ping(self):
        handler = CoordinationCommandHandler(DataTree())
        assert self._reply(handler, "PING") == "PONG"

    def test_error_codes(self):
        handler = CoordinationCommandHandler(DataTree())
        assert self._reply(handler, "GET", "/missing").code == "NONODE"
        self._reply(handler, "CREATE", "/a", "")
        assert self._reply(handler, "CREATE", "/a", "").code == "NODEEXISTS"
        assert self._reply(handler, "BOGUS").code == "ERR"
        assert self._reply(handler, "CREATE", "/b", "", "SOMETIMES").code == "ERR"


class TestMiniCoordinationCluster:
    """Test the threaded TCP service and blocking client"""

    def test_startup_returns_bound_ephemeral_port(self, coordination):
        port = coordination.client_port
        assert port > 0
        with socket.create_connection(("127.0.0.1", port), timeout=2):
            pass

    def test_client_roundtrip(self, coordination_client):
        client = coordination_client
        assert client.ping()

        client.ensure_path("/minicluster/rs")
        assert client.exists("/minicluster")
        assert client.get_children("/minicluster") == ["rs"]

        client.create("/minicluster/master", "localhost:16000")
        assert client.get("/minicluster/master") == ("localhost:16000", 0)
        assert client.set("/minicluster/master", "localhost:16001") == 1

        client.delete("/minicluster/master")
        assert not client.exists("/minicluster/master")

    def test_client_maps_errors(self, coordination_client):
        with pytest.raises(NoNodeError):
            coordination_client.get("/nope")
        coordination_client.create("/x")
        with pytest.raises(NodeExistsError):
            coordination_client.create("/x")
        coordination_client.create("/x/y")
        with pytest.raises(NotEmptyError):
            coordination_client.delete("/x")
        with pytest.raises(BadVersionError):
            coordination_client.set("/x", "data", version=5)

    def test_ensure_path_is_idempotent(self, coordination_client):
        coordination_client.ensure_path("/a/b/c")
        coordination_client.ensure_path("/a/b/c")
        assert coordination_client.get_children("/a/b") == ["c"]

    def test_ephemeral_node_vanishes_with_session(self, coordination, coordination_client, wait_until):
        owner = CoordinationClient("127.0.0.1", coordination.client_port).connect()
        owner.create("/live", "server-1", ephemeral=True)
        assert coordination_client.exists("/live")

        owner.close()
        assert wait_until(lambda: not coordination_client.exists("/live"))

    def test_wait_for_node(self, coordination_client):
        coordination_client.create("/ready", "yes")
        assert coordination_client.wait_for_node("/ready", timeout=1.0) == "yes"
        with pytest.raises(NoNodeError):
            coordination_client.wait_for_node("/never", timeout=0.1)

    def test_snapshot_survives_restart(self, temp_data_dir):
        data_dir = temp_data_dir / "coordination"
        service = MiniCoordinationCluster()
        port = service.startup(data_dir)
        with CoordinationClient("127.0.0.1", port).connect() as client:
            client.create("/persistent", "kept")
            client.create("/ephemeral", "dropped", ephemeral=True)
        service.shutdown()

        snapshot = json.loads((data_dir / SNAPSHOT_FILE).read_text())
        assert "/persistent" in snapshot
        assert "/ephemeral" not in snapshot

        restarted = MiniCoordinationCluster()
        port = restarted.startup(data_dir)
        try:
            with CoordinationClient("127.0.0.1", port).connect() as client:
                assert client.get_data("/persistent") == "kept"
                assert not client.exists("/ephemeral")
        finally:
            restarted.shutdown()

    def test_shutdown_is_idempotent(self, temp_data_dir):
        service = MiniCoordinationCluster()
        service.startup(temp_data_dir / "coordination")
        service.shutdown()
        service.shutdown()
        assert not service.is_running

    def test_double_startup_rejected(self, coordination, temp_data_dir):
        with pytest.raises(CoordinationError):
            coordination.startup(temp_data_dir / "other")

    def test_connect_to_closed_port_fails(self, temp_data_dir):
        service = MiniCoordinationCluster()
        port = service.startup(temp_data_dir / "coordination")
        service.shutdown()

        with pytest.raises(CoordinationConnectionError):
            CoordinationClient("127.0.0.1", port, connect_timeout=0.5).connect()


class TestClientTimeouts:
    """A request that times out must not leak its reply into the next one"""

    def test_timed_out_request_drops_the_stream(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(2)
        port = listener.getsockname()[1]
        try:
            client = CoordinationClient("127.0.0.1", port, connect_timeout=0.2).connect()
            slow, _ = listener.accept()
            # Half a reply arrives before the client gives up
            slow.sendall(b"$9\r\nlocalhost")
            with pytest.raises(CoordinationConnectionError):
                client.get_data("/a")
            assert not client.connected
            assert client._parser.buffer == b""
            with pytest.raises(CoordinationConnectionError):
                client.get_data("/b")
            slow.close()

            client.connect()
            fresh, _ = listener.accept()

            def reply():
                fresh.recv(1024)
                fresh.sendall(b"*2\r\n$2\r\nb!\r\n:3\r\n")

            responder = threading.Thread(target=reply)
            responder.start()
            assert client.get("/b") == ("b!", 3)
            responder.join()
            fresh.close()
            client.close()
        finally:
            listener.close()


@pytest.mark.asyncio
async def test_server_speaks_resp_over_asyncio_streams():
    """Drive CoordinationServer directly from the test event loop"""
    server = CoordinationServer("127.0.0.1", 0, CoordinationCommandHandler(DataTree()))
    await server.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(RESPProtocol.encode_command("CREATE", "/eph", "x", "EPHEMERAL"))
        writer.write(RESPProtocol.encode_command("EXISTS", "/eph"))
        await writer.drain()

        parser = RESPParser()
        replies = []
        while len(replies) < 2:
            parser.feed(await reader.read(1024))
            replies.extend(parser.parse())
        assert replies == ["/eph", 1]

        writer.close()
        await writer.wait_closed()
        for _ in range(50):
            if not server.handler.tree.exists("/eph"):
                break
            await asyncio.sleep(0.01)
        assert not server.handler.tree.exists("/eph")
    finally:
        await server.stop()
