import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


QUEUE_STATUS_VALUES = ("pending", "processing", "completed", "failed", "requires_review")
FISCALIZATION_STATUS_VALUES = ("not_required", "pending", "succeeded", "failed")
RESERVATION_STATUS_VALUES = ("pending", "confirmed", "released", "expired")


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

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

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        return Database("postgres", conn)

    # The queue worker thread owns its connection; the single-flight guard serializes its use.
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db() -> Database:
    if "db" not in g:
        g.db = connect_database(current_app.config["DB_PATH"])
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


RESERVATION_HOLD_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_reservation_lines_item ON stock_reservation_lines (item_code, warehouse_code)",
    "CREATE INDEX IF NOT EXISTS ix_stock_movements_reason ON stock_movements (item_code, warehouse_code, reason)",
)


def init_db(db: Database | None = None) -> None:
    db = db or get_db()
    for statement in _schema_statements(db.backend) + list(RESERVATION_HOLD_INDEXES):
        db.execute(statement)
    db.commit()


def _check_in(column: str, values: Iterable[str]) -> str:
    quoted = ",".join(f"'{value}'" for value in values)
    return f"CHECK ({column} IN ({quoted}))"


def _schema_statements(backend: str) -> List[str]:
    if backend == "postgres":
        pk = "SERIAL PRIMARY KEY"
        qty = "NUMERIC(19,6)"
    else:
        pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
        qty = "NUMERIC"

    return [
        f"""
        CREATE TABLE IF NOT EXISTS invoice_queue (
            id {pk},
            external_reference TEXT NOT NULL UNIQUE,
            reservation_id TEXT NOT NULL,
            customer_code TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' {_check_in("status", QUEUE_STATUS_VALUES)},
            retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
            max_retries INTEGER NOT NULL DEFAULT 3 CHECK (max_retries >= 1),
            requires_fiscalization INTEGER NOT NULL DEFAULT 0,
            fiscalization_status TEXT NOT NULL DEFAULT 'not_required'
                {_check_in("fiscalization_status", FISCALIZATION_STATUS_VALUES)},
            error_message TEXT,
            fiscal_error TEXT,
            external_doc_id TEXT,
            external_doc_num TEXT,
            fiscal_device_serial TEXT,
            fiscal_receipt_number TEXT,
            fiscal_verification_code TEXT,
            source_system TEXT NOT NULL DEFAULT 'desktop',
            warehouse_code TEXT,
            total_amount {qty} NOT NULL DEFAULT 0,
            currency TEXT NOT NULL DEFAULT 'USD',
            created_by TEXT,
            request_id TEXT,
            created_at TEXT NOT NULL,
            next_eligible_at TEXT,
            processing_started_at TEXT,
            processed_at TEXT,
            updated_at TEXT NOT NULL,
            CHECK (retry_count <= max_retries)
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_invoice_queue_status_created ON invoice_queue (status, created_at, id)",
        "CREATE INDEX IF NOT EXISTS ix_invoice_queue_reservation ON invoice_queue (reservation_id)",
        f"""
        CREATE TABLE IF NOT EXISTS queue_status_events (
            id {pk},
            entry_id INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            reason TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_queue_status_events_entry ON queue_status_events (entry_id, id)",
        f"""
        CREATE TABLE IF NOT EXISTS stock_reservations (
            id {pk},
            reservation_id TEXT NOT NULL UNIQUE,
            external_reference TEXT NOT NULL,
            customer_code TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' {_check_in("status", RESERVATION_STATUS_VALUES)},
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            confirmed_at TEXT,
            released_at TEXT,
            release_reason TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS stock_reservation_lines (
            id {pk},
            reservation_id TEXT NOT NULL,
            line_num INTEGER NOT NULL,
            item_code TEXT NOT NULL,
            warehouse_code TEXT NOT NULL,
            quantity {qty} NOT NULL,
            unit_price {qty} NOT NULL DEFAULT 0,
            tax_code TEXT,
            discount_percent {qty} NOT NULL DEFAULT 0
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS stock_reservation_batches (
            id {pk},
            reservation_id TEXT NOT NULL,
            line_num INTEGER NOT NULL,
            batch_number TEXT NOT NULL,
            quantity {qty} NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_reservation_lines ON stock_reservation_lines (reservation_id, line_num)",
        "CREATE INDEX IF NOT EXISTS ix_reservation_batches ON stock_reservation_batches (reservation_id, line_num)",
        f"""
        CREATE TABLE IF NOT EXISTS stock_records (
            item_code TEXT NOT NULL,
            warehouse_code TEXT NOT NULL,
            quantity_on_stock {qty} NOT NULL DEFAULT 0 CHECK (quantity_on_stock >= 0),
            committed_quantity {qty} NOT NULL DEFAULT 0,
            on_order_quantity {qty} NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (item_code, warehouse_code)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS batch_stock_records (
            item_code TEXT NOT NULL,
            warehouse_code TEXT NOT NULL,
            batch_number TEXT NOT NULL,
            quantity {qty} NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            last_synced_at TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (item_code, warehouse_code, batch_number)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS stock_movements (
            id {pk},
            item_code TEXT NOT NULL,
            warehouse_code TEXT NOT NULL,
            delta {qty} NOT NULL,
            quantity_before {qty} NOT NULL,
            quantity_after {qty} NOT NULL,
            reason TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
    ]
