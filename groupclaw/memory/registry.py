"""Registered conversations, persisted as one JSON document.

The registry is a read-mostly table: it is loaded at startup, reloaded on
every inbound event, and only written by privileged registration.
"""

import json
import logging
import re
from datetime import datetime, timezone

from groupclaw.core.types import Conversation
from groupclaw.ipc.writer import write_json_atomic

logger = logging.getLogger(__name__)

FOLDER_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
RESERVED_FOLDERS = {"errors", "global"}


def is_valid_folder(folder):
    return bool(folder) and bool(FOLDER_RE.match(folder)) and folder not in RESERVED_FOLDERS


class ConversationRegistry:
    def __init__(self, path, privileged_folder):
        self.path = path
        self.privileged_folder = privileged_folder
        self._by_chat = {}

    def load(self):
        """(Re)read the registry file. A missing or corrupt file keeps the last good table."""
        if not self.path.exists():
            self._by_chat = {}
            return self
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError):
            logger.exception("Failed to read conversation registry %s", self.path)
            return self
        if not isinstance(raw, list):
            logger.error("Conversation registry %s is not a list, keeping the current table", self.path)
            return self
        table = {}
        for entry in raw:
            try:
                conversation = Conversation.from_dict(entry, self.privileged_folder)
            except (KeyError, TypeError):
                logger.warning("Skipping malformed registry entry: %r", entry)
                continue
            table[conversation.chat_id] = conversation
        self._by_chat = table
        return self

    reload = load

    def _save(self):
        write_json_atomic(self.path, [c.to_dict() for c in self._by_chat.values()])

    def get(self, chat_id):
        return self._by_chat.get(chat_id)

    def get_by_folder(self, folder):
        for conversation in self._by_chat.values():
            if conversation.folder == folder:
                return conversation
        return None

    def all(self):
        return list(self._by_chat.values())

    def __len__(self):
        return len(self._by_chat)

    def __contains__(self, chat_id):
        return chat_id in self._by_chat

    def register(self, chat_id, name, folder, trigger, requires_trigger=True, container_config=None):
        """Add a conversation. Returns it, or None when the folder or chat is taken.

        Existing entries are never replaced or removed here.
        """
        if not is_valid_folder(folder):
            raise ValueError(f"Unsafe folder name {folder!r}")
        existing = self.get_by_folder(folder)
        if existing is not None or chat_id in self._by_chat:
            logger.info("Conversation already registered: chat=%s folder=%s", chat_id, folder)
            return None
        conversation = Conversation(
            chat_id=chat_id,
            name=name,
            folder=folder,
            trigger=trigger,
            requires_trigger=requires_trigger,
            container_config=container_config,
            added_at=datetime.now(timezone.utc).isoformat(),
            privileged=folder == self.privileged_folder,
        )
        self._by_chat[chat_id] = conversation
        self._save()
        logger.info("Registered conversation %s (%s) in folder %s", name, chat_id, folder)
        return conversation
