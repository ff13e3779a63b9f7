import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

import mirror_utils.db_client
from mirror_utils.db_client import DatabaseClient
from relay import get_store
from relay.dispatcher import Dispatcher
from relay.handlers import MappingResolver
from relay.postgres import PostgresStore, row_to_record
from relay.records import InvocationPayload, InvocationRecord, InvokeStatus


def _record(n=0, status=InvokeStatus.PENDING):
    return InvocationRecord(
        channel="svc1",
        invoke_id=f"id-{n:03d}",
        payload=InvocationPayload("F", {"n": n}).to_json(),
        status=status,
        ttl=2000,
    )


def _row(record):
    return {
        "channel": record.channel,
        "invoke_id": record.invoke_id,
        "body": record.payload,
        "status": record.status.value,
        "result": record.result,
        "ttl": record.ttl,
    }


@pytest.fixture
def db():
    return MagicMock(spec=DatabaseClient)


@pytest.fixture
def postgres(db):
    return PostgresStore(db_client=db)


class TestPostgresStore:
    def test_ensure_schema(self, postgres, db):
        postgres.ensure_schema()
        assert "CREATE TABLE IF NOT EXISTS lambda_mirror_records" in db.execute.call_args.args[0]

    def test_put_upserts(self, postgres, db):
        record = _record()

        assert postgres.put(record) is True

        query, rows = db.execute_values.call_args.args
        assert "ON CONFLICT (channel, invoke_id) DO UPDATE" in query
        assert rows == [("svc1", "id-000", record.payload, "pending", None, 2000)]

    def test_get(self, postgres, db):
        db.fetch_one.return_value = _row(_record(4))

        assert postgres.get("svc1", "id-004") == _record(4)
        assert db.fetch_one.call_args.args[1] == ("svc1", "id-004")

    def test_get_missing(self, postgres, db):
        db.fetch_one.return_value = None
        assert postgres.get("svc1", "nope") is None

    def test_get_failure(self, postgres, db):
        db.fetch_one.side_effect = psycopg2.OperationalError("server closed the connection")
        assert postgres.get("svc1", "id-000") is None

    def test_query_by_status(self, postgres, db):
        db.fetch_all.return_value = [_row(_record(1)), _row(_record(2))]

        records = postgres.query("svc1", InvokeStatus.PENDING)

        assert [r.invoke_id for r in records] == ["id-001", "id-002"]
        query, params = db.fetch_all.call_args.args
        assert "status = %s" in query
        assert params == ("svc1", "pending")

    def test_batch_put_is_chunked(self, postgres, db):
        assert postgres.batch_put([_record(n) for n in range(26)]) == []
        assert [len(c.args[1]) for c in db.execute_values.call_args_list] == [25, 1]

    def test_failed_chunk_is_reported_unwritten(self, postgres, db):
        records = [_record(n) for n in range(3)]
        db.execute_values.side_effect = psycopg2.IntegrityError("nope")

        assert postgres.batch_put(records) == records

    def test_batch_delete(self, postgres, db):
        db.execute_values.return_value = 2

        assert postgres.batch_delete([("svc1", "id-1"), ("svc1", "id-2")]) == 2
        query, rows = db.execute_values.call_args.args
        assert "IN (VALUES %s)" in query
        assert rows == [("svc1", "id-1"), ("svc1", "id-2")]

    def test_liveness_round_trip_calls(self, postgres, db):
        assert postgres.touch_liveness("svc1", 1234.5) is True
        assert db.execute.call_args.args[1] == ("svc1_TTL", "0", 1234)

        db.fetch_one.return_value = {"ttl": 1234}
        beat = postgres.get_liveness("svc1")
        assert (beat.channel, beat.ttl) == ("svc1", 1234)

    def test_absent_liveness(self, postgres, db):
        db.fetch_one.return_value = None
        assert postgres.get_liveness("svc1") is None

    def test_purge_expired(self, postgres, db):
        db.execute.return_value = 4

        assert postgres.purge_expired(now=5000) == 4
        assert db.execute.call_args.args[1] == (5000,)

    def test_row_to_record(self):
        record = row_to_record({
            "channel": "svc1", "invoke_id": "id-1", "body": None,
            "status": "failed", "result": '{"error": "boom"}', "ttl": None,
        })

        assert record.payload == ""
        assert record.decode_result() == {"error": "boom"}


class TestPostgresStoreUnderDispatcher:
    """Result writes from every handler thread share one connection pool."""

    @pytest.fixture(autouse=True)
    def reset_connection_pool(self):
        mirror_utils.db_client._connection_pool = None
        yield
        mirror_utils.db_client._connection_pool = None

    def test_concurrent_result_writes_all_land(self, config):
        config = replace(config, backend="postgres", database_url="postgresql://localhost/mirror",
                         max_workers=10)
        pending = [_record(n) for n in range(10)]

        def _connection(*args, **kwargs):
            conn = MagicMock()
            conn.closed = 0
            conn.info.transaction_status = 0
            cur = MagicMock()
            cur.fetchall.return_value = [_row(r) for r in pending]
            cur.rowcount = 1
            conn.cursor.return_value.__enter__.return_value = cur
            return conn

        def _slow_write(cur, query, rows, page_size=None):
            time.sleep(0.05)

        metrics = MagicMock()
        with patch("psycopg2.connect", side_effect=_connection), \
                patch("mirror_utils.db_client.extras.execute_values", side_effect=_slow_write) as writes:
            store = get_store(config)
            resolver = MappingResolver({"F": lambda event: {"n": event["n"]}})
            outcomes = Dispatcher(config, store, resolver, metrics=metrics).tick()

        assert len(outcomes) == 10
        assert all(r.status is InvokeStatus.COMPLETED for r in outcomes)
        metrics.record_store_failure.assert_not_called()
        # One claim batch, then one result write per record
        assert writes.call_count == 11
