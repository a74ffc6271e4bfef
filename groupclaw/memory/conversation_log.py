from datetime import datetime, timezone


class ConversationLog:
    """Inbound and outbound message history, per chat."""

    def __init__(self, db):
        self.db = db

    def log_message(self, chat_id, role, content, sender=None):
        self.db.execute(
            "INSERT INTO messages (chat_id, sender, role, content) VALUES (?, ?, ?, ?)",
            (chat_id, sender, role, content)
        )
        self.db.commit()

    def get_recent(self, chat_id, limit=10):
        """Return the last ``limit`` messages for a chat, oldest first."""
        cursor = self.db.execute(
            "SELECT sender, role, content, timestamp FROM messages WHERE chat_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (chat_id, limit)
        )
        rows = [dict(row) for row in cursor.fetchall()]
        rows.reverse()
        return rows

    def count_messages(self, since=None):
        if since is None:
            row = self.db.execute("SELECT COUNT(*) FROM messages").fetchone()
        else:
            row = self.db.execute(
                "SELECT COUNT(*) FROM messages WHERE timestamp >= ?", (since,)
            ).fetchone()
        return row[0]

    def count_messages_today(self):
        midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return self.count_messages(since=midnight.strftime("%Y-%m-%dT%H:%M:%S"))
