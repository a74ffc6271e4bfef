"""SQLite-backed store of scheduled tasks."""

from groupclaw.core.types import Task

TASK_COLUMNS = (
    "id", "folder", "chat_id", "prompt", "schedule_type", "schedule_value",
    "context_mode", "status", "next_run", "created_at", "last_run", "last_result",
)
UPDATABLE = {"prompt", "schedule_value", "status", "next_run", "last_run", "last_result"}


def _row_to_task(row):
    return Task(**{col: row[col] for col in TASK_COLUMNS})


class TaskStore:
    def __init__(self, db):
        self.db = db

    def create(self, task):
        self.db.execute(
            f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in TASK_COLUMNS)})",
            tuple(getattr(task, col) for col in TASK_COLUMNS)
        )
        self.db.commit()

    def get(self, task_id):
        row = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def update(self, task_id, **fields):
        unknown = set(fields) - UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        self.db.execute(
            f"UPDATE tasks SET {assignments} WHERE id = ?",
            (*fields.values(), task_id)
        )
        self.db.commit()

    def delete(self, task_id):
        self.db.execute("DELETE FROM task_runs WHERE task_id = ?", (task_id,))
        self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self.db.commit()

    def list_all(self, folder=None):
        if folder is None:
            cursor = self.db.execute("SELECT * FROM tasks ORDER BY created_at")
        else:
            cursor = self.db.execute(
                "SELECT * FROM tasks WHERE folder = ? ORDER BY created_at", (folder,)
            )
        return [_row_to_task(row) for row in cursor.fetchall()]

    def get_due(self, now_canonical):
        cursor = self.db.execute(
            "SELECT * FROM tasks WHERE status = 'active' AND next_run IS NOT NULL "
            "AND next_run <= ? ORDER BY next_run",
            (now_canonical,)
        )
        return [_row_to_task(row) for row in cursor.fetchall()]

    def count_by_status(self):
        cursor = self.db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        return {status: count for status, count in cursor.fetchall()}
