import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import config

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS victron_token (
    id INTEGER PRIMARY KEY CHECK (id = 1),  -- single row
    access_token TEXT NOT NULL,
    expires_at TEXT NOT NULL               -- ISO 8601 UTC
);

CREATE TABLE IF NOT EXISTS shelly_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,       -- ISO 8601 UTC, as reported by the device
    temperature REAL NOT NULL,     -- degrees C
    humidity REAL NOT NULL,        -- % RH
    battery REAL NOT NULL,         -- %
    wifi_signal REAL,              -- RSSI dBm
    UNIQUE (device_id, timestamp)
);

CREATE INDEX IF NOT EXISTS idx_shelly_device_ts ON shelly_readings(device_id, timestamp);

CREATE TABLE IF NOT EXISTS gas_bottles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL DEFAULT '10.5kg',
    start_date TEXT NOT NULL,      -- YYYY-MM-DD
    end_date TEXT,                 -- NULL while in use
    notes TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_gas_start ON gas_bottles(start_date);
CREATE INDEX IF NOT EXISTS idx_gas_end ON gas_bottles(end_date);
"""


class Database:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or config.system.db_path
        self._persistent_conn: sqlite3.Connection | None = None
        # For :memory: databases, keep a single connection alive
        if self.db_path == ":memory:":
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            logger.info("Database initialized at %s", self.db_path)

    def _migrate(self, conn):
        """Add columns that may be missing from older schemas."""
        cols = {r[1] for r in conn.execute("PRAGMA table_info(shelly_readings)").fetchall()}
        if "wifi_signal" not in cols:
            conn.execute("ALTER TABLE shelly_readings ADD COLUMN wifi_signal REAL")
            logger.info("Migrated shelly_readings: added wifi_signal column")

    @contextmanager
    def _connect(self):
        if self._persistent_conn:
            # In-memory DB: reuse the persistent connection
            try:
                yield self._persistent_conn
                self._persistent_conn.commit()
            except Exception:
                self._persistent_conn.rollback()
                raise
        else:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # -- Victron token --

    def get_token(self) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT access_token, expires_at FROM victron_token WHERE id = 1"
            ).fetchone()
            return dict(row) if row else None

    def save_token(self, access_token: str, expires_at: str):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO victron_token (id, access_token, expires_at)
                   VALUES (1, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       access_token = excluded.access_token,
                       expires_at = excluded.expires_at""",
                (access_token, expires_at),
            )

    # -- Shelly readings --

    def insert_shelly_reading(self, reading: dict) -> bool:
        """Insert a reading; returns False if (device_id, timestamp) already exists."""
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO shelly_readings
                   (device_id, timestamp, temperature, humidity, battery, wifi_signal)
                   VALUES (:device_id, :timestamp, :temperature, :humidity,
                           :battery, :wifi_signal)""",
                reading,
            )
            return cur.rowcount > 0

    def get_shelly_readings(self, device_id: str, since: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT timestamp, temperature, humidity FROM shelly_readings
                   WHERE device_id = ? AND timestamp >= ?
                   ORDER BY timestamp""",
                (device_id, since),
            ).fetchall()
            return [dict(r) for r in rows]

    def get_shelly_aggregates(self, device_id: str, since: str, bucket_len: int) -> list[dict]:
        """Average/min/max per bucket, where a bucket is the first bucket_len
        characters of the ISO timestamp (10 = day, 7 = month)."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT substr(timestamp, 1, ?) AS date,
                          AVG(temperature) AS avg_temp,
                          AVG(humidity) AS avg_humidity,
                          MIN(temperature) AS min_temp,
                          MAX(temperature) AS max_temp
                   FROM shelly_readings
                   WHERE device_id = ? AND timestamp >= ?
                   GROUP BY date
                   ORDER BY date""",
                (bucket_len, device_id, since),
            ).fetchall()
            return [dict(r) for r in rows]

    # -- Gas bottles --

    def insert_gas_bottle(self, bottle: dict) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO gas_bottles (type, start_date, end_date, notes, created_at)
                   VALUES (:type, :start_date, :end_date, :notes, :created_at)""",
                bottle,
            )
            return cur.lastrowid

    def get_gas_bottle(self, bottle_id: int) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gas_bottles WHERE id = ?", (bottle_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_gas_bottles(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gas_bottles ORDER BY start_date DESC, id DESC"
            ).fetchall()
            return [dict(r) for r in rows]

    def get_active_gas_bottle(self) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gas_bottles WHERE end_date IS NULL LIMIT 1"
            ).fetchone()
            return dict(row) if row else None

    def update_gas_bottle_end(self, bottle_id: int, end_date: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE gas_bottles SET end_date = ? WHERE id = ?",
                (end_date, bottle_id),
            )
            return cur.rowcount > 0

    def delete_gas_bottle(self, bottle_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM gas_bottles WHERE id = ?", (bottle_id,))
            return cur.rowcount > 0

    # -- Maintenance --

    def prune_old_records(self, days: int = 730):
        """Delete sensor readings older than `days`.

        Gas bottles and the token row are kept.
        """
        cutoff_iso = (
            datetime.now(timezone.utc) - timedelta(days=days)
        ).replace(tzinfo=None).isoformat(timespec="seconds")
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM shelly_readings WHERE timestamp < ?", (cutoff_iso,)
            )
            if result.rowcount > 0:
                logger.info("Pruned %d shelly readings (older than %d days)",
                            result.rowcount, days)
