def log_task_run(db, task_id, run_at, duration_ms, status, result=None, error=None):
    db.execute(
        "INSERT INTO task_runs (task_id, run_at, duration_ms, status, result, error) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (task_id, run_at, int(duration_ms), status, result, error)
    )
    db.commit()


def get_task_runs(db, task_id, limit=20):
    cursor = db.execute(
        "SELECT run_at, duration_ms, status, result, error FROM task_runs "
        "WHERE task_id = ? ORDER BY id DESC LIMIT ?",
        (task_id, limit)
    )
    return [dict(row) for row in cursor.fetchall()]
