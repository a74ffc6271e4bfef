"""Read-only cache documents written into each mailbox namespace.

Invocations read these to answer questions about the host without racing
host state. They are regenerated before every launch and after task changes;
nothing on the host ever reads them back.
"""

import logging
import time
from datetime import datetime, timezone

from groupclaw.ipc.writer import write_json_atomic

logger = logging.getLogger(__name__)

TASKS_SNAPSHOT = "current_tasks.json"
CONVERSATIONS_SNAPSHOT = "available_conversations.json"
STATS_SNAPSHOT = "stats.json"


def _format_uptime(seconds):
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class SnapshotWriter:
    def __init__(self, ipc_dir, registry, task_store, conversation_log, started_at=None):
        self.ipc_dir = ipc_dir
        self.registry = registry
        self.task_store = task_store
        self.conversation_log = conversation_log
        self.started_at = started_at or time.monotonic()

    def write_tasks(self, folder, privileged):
        # Non-privileged namespaces only see their own tasks
        tasks = self.task_store.list_all(folder=None if privileged else folder)
        write_json_atomic(self.ipc_dir / folder / TASKS_SNAPSHOT, [t.to_dict() for t in tasks])

    def write_conversations(self, folder, privileged):
        if privileged:
            visible = self.registry.all()
        else:
            visible = [c for c in self.registry.all() if c.folder == folder]
        write_json_atomic(self.ipc_dir / folder / CONVERSATIONS_SNAPSHOT, {
            "conversations": [
                {**c.to_dict(), "privileged": c.privileged} for c in visible
            ],
            "last_sync": datetime.now(timezone.utc).isoformat(),
        })

    def write_stats(self, folder):
        counts = self.task_store.count_by_status()
        write_json_atomic(self.ipc_dir / folder / STATS_SNAPSHOT, {
            "messages_today": self.conversation_log.count_messages_today(),
            "total_messages": self.conversation_log.count_messages(),
            "registered_conversations": len(self.registry),
            "active_tasks": counts.get("active", 0),
            "paused_tasks": counts.get("paused", 0),
            "uptime": _format_uptime(time.monotonic() - self.started_at),
        })

    def write_all(self, folder, privileged):
        """Best effort: a failed snapshot is logged, never fatal to a launch."""
        try:
            self.write_tasks(folder, privileged)
            self.write_conversations(folder, privileged)
            self.write_stats(folder)
        except Exception:
            logger.exception("Failed to write snapshots for %s", folder)

    def refresh_tasks(self, *folders):
        """Rewrite task snapshots for the given namespaces and the privileged one."""
        targets = {f for f in folders if f}
        targets.add(self.registry.privileged_folder)
        for folder in targets:
            try:
                self.write_tasks(folder, folder == self.registry.privileged_folder)
            except Exception:
                logger.exception("Failed to refresh task snapshot for %s", folder)
