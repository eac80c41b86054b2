"""Lightweight database helpers built around :mod:`sqlite3`.

Everything the bot persists lives in a single SQLite file so that backups
are plain file copies.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple


CREATE_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER UNIQUE NOT NULL,
        username TEXT,
        first_name TEXT,
        saldo INTEGER NOT NULL DEFAULT 0,
        role TEXT NOT NULL DEFAULT 'user',
        reseller_level TEXT NOT NULL DEFAULT 'silver',
        trial_count_today INTEGER NOT NULL DEFAULT 0,
        last_trial_date TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS servers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        domain TEXT NOT NULL,
        auth TEXT NOT NULL,
        harga REAL NOT NULL,
        nama_server TEXT NOT NULL,
        quota INTEGER NOT NULL DEFAULT 0,
        iplimit INTEGER NOT NULL DEFAULT 0,
        batas_create_akun INTEGER NOT NULL DEFAULT 0,
        total_create_akun INTEGER NOT NULL DEFAULT 0,
        isp TEXT,
        lokasi TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS active_accounts (
        username TEXT NOT NULL,
        jenis TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (username, jenis)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        protocol TEXT NOT NULL,
        server TEXT NOT NULL,
        owner_user_id INTEGER NOT NULL,
        expired_at TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        details TEXT,
        expiry_warning_3d_sent INTEGER NOT NULL DEFAULT 0,
        expiry_warning_1d_sent INTEGER NOT NULL DEFAULT 0,
        expired_notified INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(username, server, protocol)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        username TEXT,
        layanan TEXT NOT NULL,
        akun TEXT NOT NULL,
        hari INTEGER NOT NULL,
        harga INTEGER NOT NULL,
        komisi INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reseller_sales (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        reseller_id INTEGER NOT NULL,
        buyer_id INTEGER NOT NULL,
        akun_type TEXT NOT NULL,
        username TEXT NOT NULL,
        komisi INTEGER NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reseller_upgrade_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        username TEXT,
        amount INTEGER NOT NULL,
        level TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_deposits (
        unique_code TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        amount INTEGER NOT NULL,
        original_amount INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        qr_message_id INTEGER,
        payment_method TEXT NOT NULL DEFAULT 'static_qris',
        proof_image_id TEXT,
        admin_approved_by INTEGER,
        admin_approved_at TEXT,
        admin_notes TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topup_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        username TEXT,
        amount INTEGER NOT NULL,
        reference TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        username TEXT NOT NULL,
        jenis TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

# Columns added after the first release; restored backups may predate them.
ADDED_COLUMNS: List[Tuple[str, str, str]] = [
    ("users", "trial_count_today", "INTEGER NOT NULL DEFAULT 0"),
    ("users", "last_trial_date", "TEXT"),
]


def connect(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with sensible defaults."""

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize(conn: sqlite3.Connection) -> None:
    """Create tables if they do not exist."""

    cursor = conn.cursor()
    for statement in CREATE_STATEMENTS:
        cursor.execute(statement)
    for table, column, ddl in ADDED_COLUMNS:
        cursor.execute(f"PRAGMA table_info({table})")
        if column not in {row[1] for row in cursor.fetchall()}:
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    conn.commit()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """Context manager that wraps a transaction."""

    cursor = conn.cursor()
    try:
        yield cursor
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def fetch_one(cursor: sqlite3.Cursor) -> Optional[Dict[str, object]]:
    """Convert a single row into a dictionary."""

    row = cursor.fetchone()
    return dict(row) if row else None


def fetch_all(cursor: sqlite3.Cursor) -> List[Dict[str, object]]:
    """Convert rows into a list of dictionaries."""

    rows = cursor.fetchall()
    return [dict(row) for row in rows]


class Database:
    """Owns the database path and the live connection.

    Restoring a backup has to close the connection before the file is
    replaced and open a fresh one afterwards, so every component reaches the
    connection through this holder instead of keeping its own reference.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.conn: Optional[sqlite3.Connection] = None
        self.lock = threading.RLock()
        self.open()

    def open(self) -> sqlite3.Connection:
        with self.lock:
            self.conn = connect(self.path)
            initialize(self.conn)
            return self.conn

    def close(self) -> None:
        with self.lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        # The connection is shared by the bot loop, the web server and the worker.
        with self.lock:
            if self.conn is None:
                raise sqlite3.ProgrammingError("database connection is closed")
            with transaction(self.conn) as cursor:
                yield cursor
