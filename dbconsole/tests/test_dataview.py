"""Tests for the ad-hoc query runner and bounded result windows."""

import pytest

from dbconsole.db.backend import QueryRows, RowCollector, RowWindow
from dbconsole.services.dataview import Page, Pager, QueryRunner
from dbconsole.tests.fakes import FakeConnection


def numbered(count):
    return [(i,) for i in range(1, count + 1)]


def rows_of(count, rowcount=-1):
    return QueryRows(["id"], numbered(count), rowcount=rowcount, returns_rows=True)


@pytest.fixture
def runner():
    return QueryRunner(Pager(hard_cap=100, count_cap=1000))


class TestSingleExecution:
    @pytest.mark.asyncio
    async def test_select_with_side_effects_is_sent_once(self):
        sql = "SELECT nextval('s')"
        conn = FakeConnection({sql: QueryRows(["nextval"], [(1,)], returns_rows=True)})
        results = await QueryRunner(Pager(1000, 10000)).run(conn, sql)

        assert conn.executed == [(sql, {})]
        assert conn.streamed == [sql]
        assert results[0].result.rows == [[1]]
        assert results[0].result.total_count == 1

    @pytest.mark.asyncio
    async def test_parameters_are_bound_by_name(self, runner):
        bound = "SELECT * FROM t WHERE id = :p1 AND kind = :p2"
        conn = FakeConnection({bound: rows_of(1)})
        await runner.run(conn, "SELECT * FROM t WHERE id = $1 AND kind = $2", parameters=[5, "a"])
        assert conn.executed == [(bound, {"p1": 5, "p2": "a"})]

    @pytest.mark.asyncio
    async def test_update_runs_buffered_and_reports_rowcount(self, runner):
        sql = "UPDATE t SET x = 1"
        conn = FakeConnection({sql: QueryRows(rowcount=3)})
        results = await runner.run(conn, sql)
        assert conn.streamed == []
        assert len(conn.executed) == 1
        assert results[0].affected_rows == 3
        assert results[0].result is None


class TestBoundedReads:
    @pytest.mark.asyncio
    async def test_large_select_reads_page_and_count_only(self, runner):
        sql = "SELECT id FROM big"
        conn = FakeConnection({sql: rows_of(50000)})
        results = await runner.run(conn, sql, page=Page(offset=200, limit=10))

        assert conn.rows_read == 1001
        result = results[0].result
        assert result.rows == [[i] for i in range(201, 211)]
        assert (result.total_count, result.total_is_estimate, result.has_more) == (1000, True, True)

    @pytest.mark.asyncio
    async def test_deep_page_reads_one_row_past_it(self, runner):
        sql = "SELECT id FROM big"
        conn = FakeConnection({sql: rows_of(50000)})
        results = await runner.run(conn, sql, page=Page(offset=5000, limit=10))

        assert conn.rows_read == 5011
        result = results[0].result
        assert result.rows[0] == [5001]
        assert result.total_count == 5011
        assert result.has_more

    @pytest.mark.asyncio
    async def test_returning_rows_are_streamed_and_capped(self, runner):
        sql = "DELETE FROM t RETURNING id"
        conn = FakeConnection({sql: rows_of(3000)})
        results = await runner.run(conn, sql)

        assert conn.streamed == [sql]
        assert conn.rows_read == 1001
        assert results[0].result.loaded_count == 100
        assert results[0].affected_rows is None

    @pytest.mark.asyncio
    async def test_other_statement_rows_are_capped(self, runner):
        sql = "FETCH 5000 FROM c"
        conn = FakeConnection({sql: rows_of(5000, rowcount=5000)})
        results = await runner.run(conn, sql)

        assert conn.streamed == []
        assert conn.rows_read == 1001
        assert results[0].result.loaded_count == 100
        assert results[0].affected_rows == 5000


class TestRowCollector:
    def test_keeps_window_and_counts_to_limit(self):
        collector = RowCollector(RowWindow(offset=2, limit=3, count_limit=8))
        collector.add(numbered(20))
        assert collector.rows == [(3,), (4,), (5,)]
        assert collector.seen == 8
        assert collector.full

    def test_batches_accumulate(self):
        collector = RowCollector(RowWindow(offset=1, limit=2))
        collector.add(numbered(2))
        assert not collector.full
        collector.add([(3,), (4,)])
        assert collector.rows == [(2,), (3,)]
        assert collector.seen == 4

    def test_short_result_is_counted_exactly(self):
        collector = RowCollector(RowWindow(offset=0, limit=10, count_limit=100))
        collector.add(numbered(7))
        assert (len(collector.rows), collector.seen, collector.full) == (7, 7, False)
