"""
Unit tests for the bulk writer against a mocked Table
"""

import logging
from unittest.mock import Mock

import pytest

from bulkload.writer import BulkWriter, row_key
from minicluster.client import Table
from minicluster.errors import BatchError, NotServingRegionError
from minicluster.operations import Result


def _succeeding_table():
    table = Mock(spec=Table)
    table.get_write_buffer_size.return_value = 1024

    def batch(actions, results):
        for i, put in enumerate(actions):
            results[i] = Result(row=put.row)
        return results

    table.batch.side_effect = batch
    return table


def _table_failing_batch(failing_call):
    table = _succeeding_table()
    calls = {"n": 0}

    def batch(actions, results):
        calls["n"] += 1
        if calls["n"] == failing_call:
            error = NotServingRegionError("region offline")
            for i in range(len(actions)):
                results[i] = error
            raise BatchError([(i, p.row, error) for i, p in enumerate(actions)], results)
        for i, put in enumerate(actions):
            results[i] = Result(row=put.row)
        return results

    table.batch.side_effect = batch
    return table


def test_row_keys_are_decimal_text():
    assert row_key(0) == b"0"
    assert row_key(999999) == b"999999"


class TestBatching:
    """Test batch boundaries"""

    @pytest.mark.parametrize("rows,calls", [(0, 0), (1, 1), (1000, 1), (1001, 2), (2500, 3)])
    def test_batch_count(self, rows, calls):
        table = _succeeding_table()
        report = BulkWriter(table, batch_size=1000, value_length=4).write(rows, 1)
        assert table.batch.call_count == calls
        assert report.batches_submitted == calls
        assert report.entries_written == rows

    def test_batches_are_contiguous_key_ranges(self):
        table = _succeeding_table()
        BulkWriter(table, batch_size=3, value_length=1).write(7, 2)
        batches = [[put.row for put in c.args[0]] for c in table.batch.call_args_list]
        assert batches == [[b"0", b"1", b"2"], [b"3", b"4", b"5"], [b"6"]]

    def test_cells_have_configured_shape(self):
        table = _succeeding_table()
        report = BulkWriter(table, family=b"cf", batch_size=10, value_length=50).write(2, 10)

        puts = table.batch.call_args.args[0]
        cells = puts[0].cells()
        assert [c.qualifier for c in cells] == [str(i).encode() for i in range(10)]
        assert {c.family for c in cells} == {b"cf"}
        assert all(len(c.value) == 50 for c in cells)
        assert report.cells_written == 20
        assert report.expected_keys == {0, 1}

    def test_seed_makes_values_reproducible(self):
        first, second = _succeeding_table(), _succeeding_table()
        BulkWriter(first, seed=7, value_length=8).write(3, 2)
        BulkWriter(second, seed=7, value_length=8).write(3, 2)

        def values(table):
            return [c.value for p in table.batch.call_args.args[0] for c in p.cells()]

        assert values(first) == values(second)

    def test_rejects_empty_batches(self):
        with pytest.raises(ValueError):
            BulkWriter(_succeeding_table(), batch_size=0)

    def test_progress_logged_when_interval_crossed(self, caplog):
        table = _succeeding_table()
        with caplog.at_level(logging.INFO, logger="bulkload.writer"):
            BulkWriter(table, batch_size=300, value_length=1, progress_interval=1000).write(3000, 1)
        progress = [r.getMessage() for r in caplog.records if "entries (rss" in r.getMessage()]
        assert [m.split()[1] for m in progress] == ["1200", "2100", "3000"]

    def test_rejects_zero_progress_interval(self):
        with pytest.raises(ValueError):
            BulkWriter(_succeeding_table(), progress_interval=0)


class TestFailures:
    """Test failed-batch handling"""

    def test_failed_batch_is_recorded_and_writing_continues(self, caplog):
        table = _table_failing_batch(failing_call=2)
        with caplog.at_level(logging.INFO, logger="bulkload.writer"):
            report = BulkWriter(table, batch_size=10, value_length=2).write(30, 1)

        assert table.batch.call_count == 3
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.batch_index == 1
        assert failure.row_keys == list(range(10, 20))
        assert failure.failed_count == 10
        assert all(isinstance(r, NotServingRegionError) for r in failure.results)
        assert report.failed_rows == 10
        assert report.entries_written == 30
        assert report.expected_keys == set(range(30))
        assert "Failed to write data" in caplog.text
        assert "Errors:" in caplog.text

    def test_table_closed_even_when_batch_blows_up(self):
        table = _succeeding_table()
        table.batch.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            BulkWriter(table, batch_size=1).write(1, 1)
        table.close.assert_called_once()

    def test_write_buffer_size_applied(self):
        table = _succeeding_table()
        BulkWriter(table, write_buffer_size=50 * 1024 * 1024).write(1, 1)
        table.set_write_buffer_size.assert_called_once_with(50 * 1024 * 1024)
        table.close.assert_called_once()
