"""
Tests for regions, region scanners and the region server
"""

import pytest

from minicluster import rpc
from minicluster.config import ClusterConfig
from minicluster.descriptors import TableDescriptor
from minicluster.errors import (
    NoSuchColumnFamilyError,
    NotServingRegionError,
    ScannerClosedError,
    ServerNotRunningError,
    WrongRegionError,
)
from minicluster.operations import Put, Scan
from minicluster.region import Region, RegionInfo
from minicluster.region_server import RegionServer
from minicluster.wal import WALConfig


@pytest.fixture
def descriptor():
    return TableDescriptor.of("test", [b"cf"])


def _open_region(path, descriptor, start=b"", end=b"", wal=True):
    info = RegionInfo("test", start, end, 1)
    wal_config = WALConfig(wal_dir=str(path / "wal")) if wal else None
    region = Region(info, descriptor, path, wal_config)
    region.open()
    return region


def _put(row, cols=2, ts=None):
    put = Put(row)
    for c in range(cols):
        put.add_column(b"cf", b"%d" % c, b"v%d" % c, timestamp=ts)
    return put


class TestRegionInfo:
    """Test region identity and key ranges"""

    def test_contains_respects_half_open_range(self):
        info = RegionInfo("t", b"b", b"d", 1)
        assert not info.contains(b"a")
        assert info.contains(b"b")
        assert info.contains(b"c\xff")
        assert not info.contains(b"d")

    def test_empty_end_key_is_unbounded(self):
        info = RegionInfo("t", b"\x001", b"", 1)
        assert info.contains(b"999999")

    def test_encoded_name_is_stable(self):
        a = RegionInfo("t", b"\x002", b"\x003", 7)
        b = RegionInfo.from_dict(a.to_dict())
        assert a == b
        assert a.encoded_name == b.encoded_name
        assert a.encoded_name != RegionInfo("t", b"\x002", b"\x003", 8).encoded_name


class TestRegion:
    """Test the sorted memstore"""

    def test_rows_are_kept_sorted(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        for row in (b"5", b"10", b"1", b"2"):
            region.put(_put(row))
        assert region.rows == [b"1", b"10", b"2", b"5"]
        assert region.row_count == 4
        assert region.cell_count == 8

    def test_latest_timestamp_wins(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        region.put(Put(b"r").add_column(b"cf", b"q", b"new", timestamp=20))
        region.put(Put(b"r").add_column(b"cf", b"q", b"old", timestamp=10))
        [cell] = region.get_row_cells(b"r", set())
        assert cell.value == b"new"

    def test_rejects_rows_outside_range(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor, start=b"b", end=b"c")
        with pytest.raises(WrongRegionError):
            region.put(_put(b"a"))

    def test_rejects_unknown_family(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        with pytest.raises(NoSuchColumnFamilyError):
            region.put(Put(b"r").add_column(b"nope", b"q", b"v"))
        with pytest.raises(NoSuchColumnFamilyError):
            region.get_scanner(Scan(families={b"nope"}))

    def test_closed_region_is_not_serving(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        region.close()
        with pytest.raises(NotServingRegionError):
            region.put(_put(b"r"))

    def test_reopen_replays_wal(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        for i in range(5):
            region.put(_put(str(i)))
        region.close()
        assert region.row_count == 0

        assert region.open() == 5
        assert region.row_count == 5
        assert region.cell_count == 10

    def test_without_wal_data_is_lost_on_close(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor, wal=False)
        region.put(_put(b"r"))
        region.close()
        assert region.open() == 0
        assert region.row_count == 0


class TestRegionScanner:
    """Test chunked scanning"""

    def test_caching_limits_rows_per_call(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        for i in range(5):
            region.put(_put(str(i)))

        scanner = region.get_scanner(Scan())
        first, more = scanner.next_rows(caching=3)
        assert [r.row for r in first] == [b"0", b"1", b"2"]
        assert more
        second, more = scanner.next_rows(caching=3)
        assert [r.row for r in second] == [b"3", b"4"]
        assert not more

    def test_scan_bounds_clip_to_region(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor, start=b"1", end=b"4")
        for row in (b"1", b"2", b"3"):
            region.put(_put(row))

        results, _ = region.get_scanner(Scan(start_row=b"2", stop_row=b"9")).next_rows(10)
        assert [r.row for r in results] == [b"2", b"3"]

    def test_max_result_size_stops_early(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        for i in range(5):
            region.put(_put(str(i)))

        results, more = region.get_scanner(Scan()).next_rows(100, max_result_size=1)
        assert len(results) == 1
        assert more

    def test_wide_rows_come_back_partial(self, temp_data_dir, descriptor):
        region = _open_region(temp_data_dir, descriptor)
        region.put(_put(b"wide", cols=5))

        results, more = region.get_scanner(Scan()).next_rows(10, batch=2)
        assert [len(r) for r in results] == [2, 2, 1]
        assert [r.partial for r in results] == [True, True, False]
        assert {r.row for r in results} == {b"wide"}
        assert not more


class TestRegistry:
    """Test the process-local server registry"""

    def test_unregister_ignores_other_incarnation(self):
        first, second = object(), object()
        name = rpc.bind("registry-test", 30000, first)
        try:
            assert not rpc.unregister(name, second)
            assert rpc.lookup(name.host_and_port) is first
            assert rpc.unregister(name, first)
            assert not rpc.unregister(name, first)
        finally:
            rpc.unregister(name, first)
        with pytest.raises(ServerNotRunningError):
            rpc.lookup(name.host_and_port)

    def test_bind_skips_taken_ports(self):
        a, b = object(), object()
        first = rpc.bind("registry-test", 30100, a)
        second = rpc.bind("registry-test", 30100, b)
        try:
            assert second.port == first.port + 1
        finally:
            rpc.unregister(first, a)
            rpc.unregister(second, b)


class TestRegionServer:
    """Test region hosting and server-side scanners"""

    @pytest.fixture
    def server(self, coordination, temp_data_dir):
        config = ClusterConfig()
        config.storage.root_dir = (temp_data_dir / "root").as_uri()
        config.coordination.client_port = coordination.client_port
        server = RegionServer(config).start()
        yield server
        server.stop()

    def test_start_registers_server(self, server, coordination_client):
        assert rpc.lookup(server.server_name.host_and_port) is server
        children = coordination_client.get_children(server.config.region_servers_path)
        assert str(server.server_name) in children

    def test_stop_is_idempotent_and_unregisters(self, server):
        address = server.server_name.host_and_port
        server.stop()
        server.stop()
        with pytest.raises(ServerNotRunningError):
            rpc.lookup(address)

    def test_stale_stop_keeps_successor_registered(self, server):
        address = server.server_name.host_and_port
        server.stop()
        successor = RegionServer(server.config).start()
        try:
            assert successor.server_name.host_and_port == address
            server.stop()
            assert rpc.lookup(address) is successor
        finally:
            successor.stop()

    def test_multi_reports_per_put_outcome(self, server, descriptor):
        info = RegionInfo("test", b"", b"5", 1)
        server.open_region(info, descriptor)

        outcomes = server.multi(info.encoded_name, [_put(b"1"), _put(b"7"), _put(b"2")])
        assert outcomes[0] is None
        assert isinstance(outcomes[1], WrongRegionError)
        assert outcomes[2] is None
        assert server.get_region(info.encoded_name).row_count == 2

    def test_multi_on_unknown_region(self, server):
        outcomes = server.multi("missing", [_put(b"1")])
        assert isinstance(outcomes[0], NotServingRegionError)

    def test_exhausted_scanner_is_released(self, server, descriptor):
        info = RegionInfo("test", b"", b"", 1)
        server.open_region(info, descriptor)
        server.multi(info.encoded_name, [_put(b"1"), _put(b"2")])

        scanner_id = server.open_scanner(info.encoded_name, Scan())
        assert server.open_scanner_count == 1
        results, more = server.scan_next(scanner_id, caching=10)
        assert len(results) == 2
        assert not more
        assert server.open_scanner_count == 0
        with pytest.raises(ScannerClosedError):
            server.scan_next(scanner_id, caching=10)

    def test_close_region_drops_its_scanners(self, server, descriptor):
        info = RegionInfo("test", b"", b"", 1)
        server.open_region(info, descriptor)
        server.open_scanner(info.encoded_name, Scan())
        assert server.close_region(info.encoded_name)
        assert server.open_scanner_count == 0
        assert not server.close_region(info.encoded_name)

    def test_stats_include_process_memory(self, server):
        stats = server.get_stats()
        assert stats['running']
        assert stats['process_rss'] > 0
