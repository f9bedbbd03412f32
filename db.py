import sqlite3
from contextlib import contextmanager

import config


def init_db():
    with sqlite3.connect(config.DB_PATH) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS prescriptions (
                id         INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id    INTEGER NOT NULL,
                doctor     TEXT    NOT NULL DEFAULT '',
                issue_date TEXT    NOT NULL,
                file_type  TEXT    NOT NULL DEFAULT '',
                file_data  TEXT    NOT NULL DEFAULT '',
                created_at TEXT    NOT NULL DEFAULT ''
            )
        """)
        # Migrate: attachment body added after file_type
        rx_cols = [row[1] for row in conn.execute("PRAGMA table_info(prescriptions)")]
        if "file_data" not in rx_cols:
            conn.execute("ALTER TABLE prescriptions ADD COLUMN file_data TEXT NOT NULL DEFAULT ''")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS prescription_drugs (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                prescription_id  INTEGER NOT NULL REFERENCES prescriptions(id) ON DELETE CASCADE,
                drug_name        TEXT    NOT NULL,
                dosage           TEXT    NOT NULL DEFAULT '',
                reminder_enabled INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS drug_reminder_times (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                drug_id       INTEGER NOT NULL REFERENCES prescription_drugs(id) ON DELETE CASCADE,
                reminder_time TEXT    NOT NULL
            )
        """)
        # Persisted notification permission, keyed per owner
        conn.execute("""
            CREATE TABLE IF NOT EXISTS app_meta (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_prescriptions_user_id ON prescriptions(user_id)")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_prescription_drugs_rx"
            " ON prescription_drugs(prescription_id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_drug_reminder_times_drug"
            " ON drug_reminder_times(drug_id)"
        )
        conn.commit()


@contextmanager
def get_db():
    conn = sqlite3.connect(config.DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()
