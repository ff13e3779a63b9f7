"""
PostgreSQL transport backend.

Useful where a DynamoDB table is not available (or the function already has
a database). PostgreSQL has no item expiry, so ``purge_expired`` emulates it.
"""
from typing import Any, Dict, List, Optional

import psycopg2

from mirror_utils.db_client import DEFAULT_MAX_CONNECTIONS, DatabaseClient
from relay.base import RecordKey, TransportStore
from relay.records import (
    LIVENESS_SORT_KEY,
    InvocationRecord,
    InvokeStatus,
    LivenessRecord,
    liveness_key,
)

TABLE_NAME = "lambda_mirror_records"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    channel   TEXT NOT NULL,
    invoke_id TEXT NOT NULL,
    body      TEXT,
    status    TEXT,
    result    TEXT,
    ttl       BIGINT,
    PRIMARY KEY (channel, invoke_id)
)
"""

_COLUMNS = "channel, invoke_id, body, status, result, ttl"

_UPSERT_SQL = f"""
INSERT INTO {TABLE_NAME} ({_COLUMNS})
VALUES %s
ON CONFLICT (channel, invoke_id) DO UPDATE SET
    body = EXCLUDED.body,
    status = EXCLUDED.status,
    result = EXCLUDED.result,
    ttl = EXCLUDED.ttl
"""


def _row(record: InvocationRecord) -> tuple:
    return (
        record.channel,
        record.invoke_id,
        record.payload,
        record.status.value,
        record.result,
        record.ttl,
    )


def row_to_record(row: Dict[str, Any]) -> InvocationRecord:
    return InvocationRecord(
        channel=row["channel"],
        invoke_id=row["invoke_id"],
        payload=row["body"] or "",
        status=InvokeStatus(row["status"]),
        result=row["result"],
        ttl=row["ttl"],
    )


class PostgresStore(TransportStore):
    """
    TransportStore on a single PostgreSQL table.

    Liveness rows share the table: they use the channel's "_TTL" key, the
    fixed invoke id "0" and no status.
    """

    transient_errors = (psycopg2.Error,)
    backend_name = "postgres"

    def __init__(self, database_url: Optional[str] = None, db_client: Optional[DatabaseClient] = None,
                 max_connections: int = DEFAULT_MAX_CONNECTIONS):
        """
        Args:
            database_url: PostgreSQL connection string (defaults to DATABASE_URL env var)
            db_client: Pre-built client (optional)
            max_connections: Pool size; a dispatcher needs one per handler thread plus its own
        """
        self.db = db_client or DatabaseClient(database_url=database_url, max_connections=max_connections)

    def ensure_schema(self) -> None:
        self.db.execute(SCHEMA_SQL)

    def _put(self, record: InvocationRecord) -> None:
        self.db.execute_values(_UPSERT_SQL, [_row(record)])

    def _get(self, channel: str, invoke_id: str) -> Optional[InvocationRecord]:
        row = self.db.fetch_one(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} "
            "WHERE channel = %s AND invoke_id = %s AND status IS NOT NULL",
            (channel, invoke_id)
        )
        return row_to_record(row) if row else None

    def _query(self, channel: str, status: Optional[InvokeStatus]) -> List[InvocationRecord]:
        sql = f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE channel = %s AND status IS NOT NULL"
        params: tuple = (channel,)
        if status is not None:
            sql += " AND status = %s"
            params += (InvokeStatus(status).value,)
        sql += " ORDER BY invoke_id"
        return [row_to_record(row) for row in self.db.fetch_all(sql, params)]

    def _scan(self, channel: Optional[str]) -> List[InvocationRecord]:
        if channel is None:
            return [
                row_to_record(row) for row in self.db.fetch_all(
                    f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE status IS NOT NULL ORDER BY channel, invoke_id"
                )
            ]
        return self._query(channel, None)

    def _batch_put(self, records: List[InvocationRecord]) -> List[InvocationRecord]:
        # One statement per chunk: the chunk commits or rolls back as a whole
        self.db.execute_values(_UPSERT_SQL, [_row(r) for r in records])
        return []

    def _delete(self, channel: str, invoke_id: str) -> None:
        self.db.execute(
            f"DELETE FROM {TABLE_NAME} WHERE channel = %s AND invoke_id = %s",
            (channel, invoke_id)
        )

    def _batch_delete(self, keys: List[RecordKey]) -> int:
        return self.db.execute_values(
            f"DELETE FROM {TABLE_NAME} WHERE (channel, invoke_id) IN (VALUES %s)",
            [tuple(key) for key in keys]
        )

    def _touch_liveness(self, channel: str, timestamp: int) -> None:
        self.db.execute(
            f"INSERT INTO {TABLE_NAME} (channel, invoke_id, ttl) VALUES (%s, %s, %s) "
            "ON CONFLICT (channel, invoke_id) DO UPDATE SET ttl = EXCLUDED.ttl",
            (liveness_key(channel), LIVENESS_SORT_KEY, timestamp)
        )

    def _get_liveness(self, channel: str) -> Optional[LivenessRecord]:
        row = self.db.fetch_one(
            f"SELECT ttl FROM {TABLE_NAME} WHERE channel = %s AND invoke_id = %s",
            (liveness_key(channel), LIVENESS_SORT_KEY)
        )
        if not row or row["ttl"] is None:
            return None
        return LivenessRecord(channel=channel, ttl=int(row["ttl"]))

    def _purge_expired(self, now: int) -> int:
        return self.db.execute(
            f"DELETE FROM {TABLE_NAME} WHERE status IS NOT NULL AND ttl IS NOT NULL AND ttl < %s",
            (now,)
        )
