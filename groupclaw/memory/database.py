import os
import sqlite3


def init_db(path):
    """Open the SQLite store at ``path`` and create the schema if needed."""
    if path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    db = sqlite3.connect(path, check_same_thread=False)
    db.row_factory = sqlite3.Row
    if path != ":memory:":
        db.execute("PRAGMA journal_mode=WAL")

    db.executescript("""
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id TEXT NOT NULL,
            timestamp DATETIME DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            sender TEXT,
            role TEXT NOT NULL,
            content TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id, id);
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            folder TEXT NOT NULL,
            chat_id TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            context_mode TEXT NOT NULL DEFAULT 'isolated',
            status TEXT NOT NULL DEFAULT 'active',
            next_run TEXT,
            created_at TEXT NOT NULL,
            last_run TEXT,
            last_result TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (status, next_run);
        CREATE TABLE IF NOT EXISTS task_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT
        );
    """)
    db.commit()
    return db
