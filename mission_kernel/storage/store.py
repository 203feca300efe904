"""
Kernel Store — the authoritative state on SQLite.

Behavioral Contract:
- Every mutation runs inside a unit of work (BEGIN IMMEDIATE … COMMIT).
- Idempotency is enforced by uniqueness constraints, never by reading first:
  admitted_events(external_id) for event admission and
  point_transactions(source_id, payee_key) for crediting.
- A unit of work opened while another is active on the same connection joins it.
- Any sqlite failure other than a handled uniqueness conflict surfaces as
  StorageError and rolls the whole unit of work back.
"""

import contextlib
import sqlite3
import threading
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from mission_kernel import config
from mission_kernel.errors import StorageError
from mission_kernel.logging_utils import get_logger, log_error
from mission_kernel.models.entity import Entity
from mission_kernel.models.ledger import PointTransaction, TeamBalance

logger = get_logger("mission_kernel.storage")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS admitted_events (
    external_id TEXT PRIMARY KEY,
    admitted_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    external_id TEXT NOT NULL UNIQUE,
    team_id TEXT NOT NULL,
    owner_id TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    x REAL NOT NULL,
    y REAL NOT NULL,
    revision INTEGER NOT NULL,
    record_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_team_owner ON entities(team_id, owner_id);
CREATE TABLE IF NOT EXISTS point_transactions (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL,
    payee_key TEXT NOT NULL,
    payee_id TEXT,
    source_id TEXT NOT NULL,
    label TEXT NOT NULL,
    points INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (source_id, payee_key)
);
CREATE INDEX IF NOT EXISTS idx_point_transactions_team ON point_transactions(team_id);
CREATE TABLE IF NOT EXISTS team_balances (
    team_id TEXT PRIMARY KEY,
    total_points INTEGER NOT NULL DEFAULT 0
);
"""


def payee_key(payee_id: Optional[str]) -> str:
    """Team-level credits share one key so NULL payees stay unique too."""
    return payee_id or ""


class StoreTransaction:
    """Statements available inside one unit of work."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # --- Admission ---

    def insert_event_if_absent(self, external_id: str) -> bool:
        """True if this call inserted the row (first seen)."""
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO admitted_events (external_id, admitted_at) VALUES (?, ?)",
            (external_id, datetime.utcnow().isoformat()),
        )
        return cur.rowcount == 1

    # --- Entities ---

    def insert_entity(self, entity: Entity) -> None:
        self._conn.execute(
            """
            INSERT INTO entities (
                id, external_id, team_id, owner_id, completed,
                x, y, revision, record_json, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._entity_row(entity),
        )

    def update_entity(self, entity: Entity, expected_revision: int) -> bool:
        """Compare-and-set on revision. False if the row moved underneath."""
        cur = self._conn.execute(
            """
            UPDATE entities SET
                owner_id = ?, completed = ?, x = ?, y = ?, revision = ?,
                record_json = ?, updated_at = ?
            WHERE id = ? AND revision = ?
            """,
            (
                entity.owner_id,
                int(entity.completed),
                entity.position.x,
                entity.position.y,
                entity.revision,
                entity.model_dump_json(),
                entity.updated_at.isoformat(),
                entity.id,
                expected_revision,
            ),
        )
        return cur.rowcount == 1

    def delete_entity(self, entity_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
        return cur.rowcount == 1

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        row = self._conn.execute(
            "SELECT record_json FROM entities WHERE id = ?", (entity_id,)
        ).fetchone()
        return Entity.model_validate_json(row["record_json"]) if row else None

    def get_entity_by_external_id(self, external_id: str) -> Optional[Entity]:
        row = self._conn.execute(
            "SELECT record_json FROM entities WHERE external_id = ?", (external_id,)
        ).fetchone()
        return Entity.model_validate_json(row["record_json"]) if row else None

    def list_entities(self, team_id: Optional[str] = None) -> List[Entity]:
        if team_id:
            rows = self._conn.execute(
                "SELECT record_json FROM entities WHERE team_id = ? ORDER BY rowid",
                (team_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM entities ORDER BY rowid"
            ).fetchall()
        return [Entity.model_validate_json(r["record_json"]) for r in rows]

    def placements(self, team_id: str) -> List[Tuple[str, Optional[str], float, float]]:
        """(entity id, owner id, x, y) for every entity of a team."""
        rows = self._conn.execute(
            "SELECT id, owner_id, x, y FROM entities WHERE team_id = ?", (team_id,)
        ).fetchall()
        return [(r["id"], r["owner_id"], r["x"], r["y"]) for r in rows]

    # --- Ledger ---

    def insert_transaction_if_absent(self, tx: PointTransaction) -> bool:
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO point_transactions (
                id, team_id, payee_key, payee_id, source_id, label, points, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tx.id,
                tx.team_id,
                payee_key(tx.payee_id),
                tx.payee_id,
                tx.source_id,
                tx.label,
                tx.points,
                tx.created_at.isoformat(),
            ),
        )
        return cur.rowcount == 1

    def increment_balance(self, team_id: str, points: int) -> TeamBalance:
        self._conn.execute(
            """
            INSERT INTO team_balances (team_id, total_points) VALUES (?, ?)
            ON CONFLICT(team_id) DO UPDATE SET total_points = total_points + excluded.total_points
            """,
            (team_id, points),
        )
        return self.get_balance(team_id)

    def get_balance(self, team_id: str) -> TeamBalance:
        row = self._conn.execute(
            "SELECT total_points FROM team_balances WHERE team_id = ?", (team_id,)
        ).fetchone()
        return TeamBalance(team_id=team_id, total_points=row["total_points"] if row else 0)

    def find_transaction(self, source_id: str, payee_id: Optional[str]) -> Optional[PointTransaction]:
        row = self._conn.execute(
            "SELECT * FROM point_transactions WHERE source_id = ? AND payee_key = ?",
            (source_id, payee_key(payee_id)),
        ).fetchone()
        return self._transaction(row) if row else None

    def list_transactions(self, team_id: str) -> List[PointTransaction]:
        rows = self._conn.execute(
            "SELECT * FROM point_transactions WHERE team_id = ? ORDER BY rowid",
            (team_id,),
        ).fetchall()
        return [self._transaction(r) for r in rows]

    def transaction_totals(self, team_id: str) -> Tuple[int, int]:
        """(sum of points, number of transactions) for a team."""
        row = self._conn.execute(
            "SELECT COALESCE(SUM(points), 0) AS total, COUNT(*) AS cnt "
            "FROM point_transactions WHERE team_id = ?",
            (team_id,),
        ).fetchone()
        return row["total"], row["cnt"]

    # --- Helpers ---

    @staticmethod
    def _entity_row(entity: Entity) -> tuple:
        return (
            entity.id,
            entity.external_id,
            entity.team_id,
            entity.owner_id,
            int(entity.completed),
            entity.position.x,
            entity.position.y,
            entity.revision,
            entity.model_dump_json(),
            entity.updated_at.isoformat(),
        )

    @staticmethod
    def _transaction(row: sqlite3.Row) -> PointTransaction:
        return PointTransaction(
            id=row["id"],
            team_id=row["team_id"],
            payee_id=row["payee_id"],
            source_id=row["source_id"],
            label=row["label"],
            points=row["points"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class KernelStore:
    """
    SQLite-backed authoritative store.

    File databases get one connection per thread and rely on SQLite's own
    locking (BEGIN IMMEDIATE + busy timeout), so separate processes can share
    the file. An in-memory database is a single connection, guarded so only
    one unit of work uses it at a time.
    """

    def __init__(self, db_path: str = ":memory:", busy_timeout: Optional[float] = None):
        self.db_path = db_path
        self.busy_timeout = (
            config.SQLITE_BUSY_TIMEOUT_SECONDS if busy_timeout is None else busy_timeout
        )
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()

        if db_path == ":memory:":
            self._shared: Optional[sqlite3.Connection] = self._connect()
            self._guard = threading.RLock()
        else:
            self._shared = None
            self._guard = contextlib.nullcontext()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        with self._registry_lock:
            self._connections.append(conn)
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._guard:
            self._connection().executescript(_SCHEMA)

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator[StoreTransaction]:
        """
        Run statements atomically. Nested calls on the same connection join
        the outer unit of work and leave commit/rollback to it.
        """
        with self._guard:
            conn = self._connection()
            if conn.in_transaction:
                yield StoreTransaction(conn)
                return

            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                log_error(logger, "storage_error", "could not begin unit of work", exc_info=True)
                raise StorageError(f"Could not begin unit of work: {exc}") from exc

            try:
                yield StoreTransaction(conn)
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                log_error(logger, "storage_error", str(exc), exc_info=True)
                raise StorageError(f"Storage failure: {exc}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                log_error(logger, "storage_error", "commit failed", exc_info=True)
                raise StorageError(f"Commit failed: {exc}") from exc

    # --- Read helpers (each in its own short unit of work) ---

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self.unit_of_work() as tx:
            return tx.get_entity(entity_id)

    def list_entities(self, team_id: Optional[str] = None) -> List[Entity]:
        with self.unit_of_work() as tx:
            return tx.list_entities(team_id)

    def count_entities(self, external_id: Optional[str] = None) -> int:
        with self._guard:
            conn = self._connection()
            if external_id is None:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM entities").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM entities WHERE external_id = ?",
                    (external_id,),
                ).fetchone()
            return row["cnt"]

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._registry_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._shared = None
        self._local = threading.local()
