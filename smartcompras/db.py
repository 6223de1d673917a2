import contextlib
import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DEFAULT_TIMEOUT_SECONDS = 5.0


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._in_transaction = False

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    @contextlib.contextmanager
    def transaction(self):
        """Run the block as one write transaction.

        SQLite takes the write lock up front (BEGIN IMMEDIATE) so concurrent
        writers queue on the busy timeout instead of failing at commit.
        """
        if self._in_transaction:
            yield self
            return
        self.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self.execute("ROLLBACK")
            raise
        self._in_transaction = False
        self.execute("COMMIT")

    def close(self):
        self._conn.close()


def _split_sql_statements(sql: str) -> List[str]:
    """Split a DDL script on ``;`` outside quoted literals (psycopg2 runs one statement per call)."""
    statements: List[str] = []
    buffer: List[str] = []
    quote = ""
    for ch in sql:
        if ch in ("'", '"'):
            if not quote:
                quote = ch
            elif quote == ch:
                quote = ""
        if ch == ";" and not quote:
            statements.append("".join(buffer))
            buffer = []
            continue
        buffer.append(ch)
    if buffer:
        statements.append("".join(buffer))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path, connect_timeout=max(1, int(timeout)))
        conn.autocommit = True
        return Database("postgres", conn)

    # Autocommit mode; writes go through Database.transaction().
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        timeout = float(current_app.config.get("STORE_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        g.db = _connect_database(db_path, timeout=timeout)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    init_schema(db)


def init_schema(db: Database) -> None:
    if db.backend == "postgres":
        _init_db_postgres(db)
        return
    _init_db_sqlite(db)


_STATUS_CHECK = "status IN ('pending','manager_approved','director_approved','rejected')"
_KIND_CHECK = "kind IN ('expense','fuel_stock','fleet')"


def _init_db_sqlite(db: Database):
    db.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS requisitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK ({_KIND_CHECK}),
            descricao TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK ({_STATUS_CHECK}),
            requester_id INTEGER NOT NULL,
            director_id INTEGER NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{{}}',
            printed INTEGER NOT NULL DEFAULT 0,
            selected_quote_id INTEGER,
            rateada INTEGER NOT NULL DEFAULT 0,
            verification_code TEXT UNIQUE,
            approved_at TEXT,
            rejected_at TEXT,
            rejected_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS supplier_quotes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            supplier_name TEXT NOT NULL,
            total_amount REAL NOT NULL,
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS line_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL REFERENCES supplier_quotes(id),
            description TEXT NOT NULL,
            quantity REAL NOT NULL CHECK (quantity > 0),
            unit_price REAL NOT NULL CHECK (unit_price >= 0),
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS department_allocations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            department_id INTEGER NOT NULL,
            percentage REAL NOT NULL CHECK (percentage > 0 AND percentage <= 100),
            allocated_amount REAL,
            UNIQUE (requisition_id, department_id)
        );

        CREATE TABLE IF NOT EXISTS approval_votes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            approver_id INTEGER NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('manager','director')),
            decision TEXT NOT NULL CHECK (decision IN ('approved','rejected')),
            department_ids TEXT NOT NULL DEFAULT '[]',
            quote_id INTEGER,
            reason TEXT,
            voted_at TEXT NOT NULL,
            UNIQUE (requisition_id, role, approver_id)
        );

        CREATE TABLE IF NOT EXISTS status_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity TEXT NOT NULL CHECK (entity IN ('requisition')),
            entity_id INTEGER NOT NULL,
            kind TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            reason TEXT,
            actor_user_id INTEGER,
            occurred_at TEXT NOT NULL,
            delivered_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_requisitions_status ON requisitions (status);
        CREATE INDEX IF NOT EXISTS idx_requisitions_kind_created ON requisitions (kind, created_at);
        CREATE INDEX IF NOT EXISTS idx_requisitions_requester ON requisitions (requester_id);
        CREATE INDEX IF NOT EXISTS idx_supplier_quotes_requisition ON supplier_quotes (requisition_id);
        CREATE INDEX IF NOT EXISTS idx_line_items_quote ON line_items (quote_id);
        CREATE INDEX IF NOT EXISTS idx_allocations_department ON department_allocations (department_id);
        CREATE INDEX IF NOT EXISTS idx_votes_requisition ON approval_votes (requisition_id);
        CREATE INDEX IF NOT EXISTS idx_status_events_pending ON status_events (delivered_at, id);
        """
    )


def _init_db_postgres(db: Database) -> None:
    db.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS requisitions (
            id SERIAL PRIMARY KEY,
            kind TEXT NOT NULL CHECK ({_KIND_CHECK}),
            descricao TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK ({_STATUS_CHECK}),
            requester_id INTEGER NOT NULL,
            director_id INTEGER NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{{}}',
            printed INTEGER NOT NULL DEFAULT 0,
            selected_quote_id INTEGER,
            rateada INTEGER NOT NULL DEFAULT 0,
            verification_code TEXT UNIQUE,
            approved_at TEXT,
            rejected_at TEXT,
            rejected_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS supplier_quotes (
            id SERIAL PRIMARY KEY,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            supplier_name TEXT NOT NULL,
            total_amount DOUBLE PRECISION NOT NULL,
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS line_items (
            id SERIAL PRIMARY KEY,
            quote_id INTEGER NOT NULL REFERENCES supplier_quotes(id),
            description TEXT NOT NULL,
            quantity DOUBLE PRECISION NOT NULL CHECK (quantity > 0),
            unit_price DOUBLE PRECISION NOT NULL CHECK (unit_price >= 0),
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS department_allocations (
            id SERIAL PRIMARY KEY,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            department_id INTEGER NOT NULL,
            percentage DOUBLE PRECISION NOT NULL CHECK (percentage > 0 AND percentage <= 100),
            allocated_amount DOUBLE PRECISION,
            UNIQUE (requisition_id, department_id)
        );

        CREATE TABLE IF NOT EXISTS approval_votes (
            id SERIAL PRIMARY KEY,
            requisition_id INTEGER NOT NULL REFERENCES requisitions(id),
            approver_id INTEGER NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('manager','director')),
            decision TEXT NOT NULL CHECK (decision IN ('approved','rejected')),
            department_ids TEXT NOT NULL DEFAULT '[]',
            quote_id INTEGER,
            reason TEXT,
            voted_at TEXT NOT NULL,
            UNIQUE (requisition_id, role, approver_id)
        );

        CREATE TABLE IF NOT EXISTS status_events (
            id SERIAL PRIMARY KEY,
            entity TEXT NOT NULL CHECK (entity IN ('requisition')),
            entity_id INTEGER NOT NULL,
            kind TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            reason TEXT,
            actor_user_id INTEGER,
            occurred_at TEXT NOT NULL,
            delivered_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_requisitions_status ON requisitions (status);
        CREATE INDEX IF NOT EXISTS idx_requisitions_kind_created ON requisitions (kind, created_at);
        CREATE INDEX IF NOT EXISTS idx_requisitions_requester ON requisitions (requester_id);
        CREATE INDEX IF NOT EXISTS idx_supplier_quotes_requisition ON supplier_quotes (requisition_id);
        CREATE INDEX IF NOT EXISTS idx_line_items_quote ON line_items (quote_id);
        CREATE INDEX IF NOT EXISTS idx_allocations_department ON department_allocations (department_id);
        CREATE INDEX IF NOT EXISTS idx_votes_requisition ON approval_votes (requisition_id);
        CREATE INDEX IF NOT EXISTS idx_status_events_pending ON status_events (delivered_at, id)
        """
    )


SCHEMA_TABLES = (
    "requisitions",
    "supplier_quotes",
    "line_items",
    "department_allocations",
    "approval_votes",
    "status_events",
)


def drop_schema(db: Database) -> None:
    for table in reversed(SCHEMA_TABLES):
        db.execute(f"DROP TABLE IF EXISTS {table}")
