"""Runs backfill verification queries against PostgreSQL."""
import logging

import psycopg2
from psycopg2.extras import RealDictCursor

from safe_migrate.domain.entities.operation import BackfillSnapshot
from safe_migrate.domain.repositories.interfaces import IVerificationProbe, snapshot_from_row

logger = logging.getLogger(__name__)


class PostgresVerificationProbe(IVerificationProbe):
    """
    Executes a plan's verification query in a read-only transaction.
    Single Responsibility: measuring backfill results.
    """

    def __init__(self, connection_string: str, statement_timeout_ms: int = 60000):
        self._conn_string = connection_string
        self._timeout = statement_timeout_ms

    def measure(self, verification_sql: str) -> BackfillSnapshot:
        conn = psycopg2.connect(self._conn_string)

        try:
            conn.set_session(readonly=True)
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SET LOCAL statement_timeout = %s", (self._timeout,))
                cur.execute(verification_sql)
                row = cur.fetchone()
            conn.rollback()
        finally:
            conn.close()

        if row is None:
            raise RuntimeError("verification query returned no rows")

        snapshot = snapshot_from_row(dict(row))
        logger.info(
            f"[VerificationProbe] {snapshot.total_rows} rows, {snapshot.mismatched_rows} mismatched"
        )
        return snapshot
