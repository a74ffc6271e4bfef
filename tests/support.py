import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from groupclaw.core.types import Conversation  # noqa: E402
from groupclaw.memory.conversation_log import ConversationLog  # noqa: E402
from groupclaw.memory.database import init_db  # noqa: E402
from groupclaw.memory.registry import ConversationRegistry  # noqa: E402
from groupclaw.memory.task_store import TaskStore  # noqa: E402

PRIVILEGED = "main"


def make_conversation(chat_id="tg:2", folder="alice", name=None, privileged=False, **kwargs):
    return Conversation(
        chat_id=chat_id,
        name=name or folder.title(),
        folder=folder,
        trigger="@Claw",
        privileged=privileged,
        **kwargs,
    )


def make_registry(path):
    """Registry with main (tg:1), alice (tg:2) and bob (tg:3)."""
    registry = ConversationRegistry(path, PRIVILEGED)
    registry.register("tg:1", "Main", "main", "@Claw", requires_trigger=False)
    registry.register("tg:2", "Alice", "alice", "@Claw")
    registry.register("tg:3", "Bob", "bob", "@Claw")
    return registry


def make_stores():
    db = init_db(":memory:")
    return db, TaskStore(db), ConversationLog(db)


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeRunner:
    """Stand-in for deploy.run_command.

    ``responses`` maps a command prefix to a string, an exception, or a list
    of those consumed one call at a time.
    """

    def __init__(self, responses=None, log=None):
        self.responses = responses or {}
        self.calls = log if log is not None else []

    async def __call__(self, args, cwd=None, timeout=60.0):
        cmd = " ".join(args)
        self.calls.append(cmd)
        for prefix, response in self.responses.items():
            if not cmd.startswith(prefix):
                continue
            if isinstance(response, list):
                response = response.pop(0) if len(response) > 1 else response[0]
            if isinstance(response, Exception):
                raise response
            return response
        return ""
