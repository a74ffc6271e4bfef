"""The closed set of actions an invocation can request through the mailbox.

A request file is parsed into exactly one of these frozen dataclasses. Only
the fields listed here are read from the payload: identity claims an
invocation adds (``folder``, ``privileged``, ...) are dropped at parse time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple

from groupclaw.config import ASSISTANT_NAME
from groupclaw.errors import MalformedRequest
from groupclaw.scheduler.schedule import CONTEXT_MODES

MESSAGES_QUEUE = "messages"
TASKS_QUEUE = "tasks"


def _str(data: Dict[str, Any], key: str, required: bool = True, default: Optional[str] = None) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise MalformedRequest(f"missing required field {key!r}")
        return default
    if not isinstance(value, str):
        raise MalformedRequest(f"field {key!r} must be a string")
    return value


@dataclass(frozen=True)
class SendMessage:
    TYPE: ClassVar[str] = "send_message"
    chat_id: str
    text: str
    files: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data):
        files = data.get("files") or []
        if not isinstance(files, list):
            raise MalformedRequest("field 'files' must be a list")
        return cls(
            chat_id=_str(data, "chat_id"),
            text=_str(data, "text"),
            files=tuple(f for f in files if isinstance(f, str)),
        )


@dataclass(frozen=True)
class ScheduleTask:
    TYPE: ClassVar[str] = "schedule_task"
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str = "isolated"
    target_chat_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data):
        mode = data.get("context_mode")
        value = data.get("schedule_value")
        # Interval values may arrive as JSON numbers
        if isinstance(value, int) and not isinstance(value, bool):
            data = {**data, "schedule_value": str(value)}
        return cls(
            prompt=_str(data, "prompt"),
            schedule_type=_str(data, "schedule_type"),
            schedule_value=_str(data, "schedule_value").strip(),
            context_mode=mode if mode in CONTEXT_MODES else "isolated",
            target_chat_id=_str(data, "target_chat_id", required=False),
        )


@dataclass(frozen=True)
class PauseTask:
    TYPE: ClassVar[str] = "pause_task"
    task_id: str

    @classmethod
    def from_payload(cls, data):
        return cls(task_id=_str(data, "task_id"))


@dataclass(frozen=True)
class ResumeTask:
    TYPE: ClassVar[str] = "resume_task"
    task_id: str

    @classmethod
    def from_payload(cls, data):
        return cls(task_id=_str(data, "task_id"))


@dataclass(frozen=True)
class CancelTask:
    TYPE: ClassVar[str] = "cancel_task"
    task_id: str

    @classmethod
    def from_payload(cls, data):
        return cls(task_id=_str(data, "task_id"))


@dataclass(frozen=True)
class RegisterConversation:
    TYPE: ClassVar[str] = "register_conversation"
    chat_id: str
    name: str
    folder: str
    trigger: str
    requires_trigger: bool = True
    container_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, data):
        config = data.get("container_config")
        if config is not None and not isinstance(config, dict):
            raise MalformedRequest("field 'container_config' must be an object")
        return cls(
            chat_id=_str(data, "chat_id"),
            name=_str(data, "name"),
            folder=_str(data, "folder"),
            trigger=_str(data, "trigger", required=False, default=f"@{ASSISTANT_NAME}"),
            requires_trigger=bool(data.get("requires_trigger", True)),
            container_config=config,
        )


@dataclass(frozen=True)
class RefreshMetadata:
    TYPE: ClassVar[str] = "refresh_metadata"

    @classmethod
    def from_payload(cls, data):
        return cls()


@dataclass(frozen=True)
class Restart:
    TYPE: ClassVar[str] = "restart"

    @classmethod
    def from_payload(cls, data):
        return cls()


@dataclass(frozen=True)
class Rebuild:
    TYPE: ClassVar[str] = "rebuild"

    @classmethod
    def from_payload(cls, data):
        return cls()


@dataclass(frozen=True)
class PullAndDeploy:
    TYPE: ClassVar[str] = "pull_and_deploy"
    branch: str = "main"

    @classmethod
    def from_payload(cls, data):
        return cls(branch=_str(data, "branch", required=False, default="main"))


@dataclass(frozen=True)
class TestBuild:
    TYPE: ClassVar[str] = "test_build"

    @classmethod
    def from_payload(cls, data):
        return cls()


ALL_ACTIONS = (
    SendMessage, ScheduleTask, PauseTask, ResumeTask, CancelTask,
    RegisterConversation, RefreshMetadata, Restart, Rebuild, PullAndDeploy, TestBuild,
)
ACTIONS_BY_TYPE = {cls.TYPE: cls for cls in ALL_ACTIONS}

# Allowed only from the privileged namespace, whatever the payload says
PRIVILEGED_ONLY = (RegisterConversation, RefreshMetadata, Restart, Rebuild, PullAndDeploy, TestBuild)

QUEUE_ACTIONS = {
    MESSAGES_QUEUE: (SendMessage,),
    TASKS_QUEUE: tuple(cls for cls in ALL_ACTIONS if cls is not SendMessage),
}


def parse_request(data, queue):
    """Turn a decoded request into an action, or raise MalformedRequest."""
    if not isinstance(data, dict):
        raise MalformedRequest("request must be a JSON object")
    action_type = data.get("type")
    cls = ACTIONS_BY_TYPE.get(action_type)
    if cls is None:
        raise MalformedRequest(f"unknown action type {action_type!r}")
    if cls not in QUEUE_ACTIONS.get(queue, ()):
        raise MalformedRequest(f"{action_type} is not accepted in the {queue} queue")
    return cls.from_payload(data)
