"""Shared records passed between the router, queue, launcher and mailbox."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional


@dataclass
class Conversation:
    """A registered chat. ``folder`` is its namespace and workspace name."""

    chat_id: str
    name: str
    folder: str
    trigger: str
    requires_trigger: bool = True
    container_config: Optional[Dict[str, Any]] = None
    added_at: Optional[str] = None
    privileged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Derived from configuration on load, never persisted
        data.pop("privileged")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], privileged_folder: str) -> "Conversation":
        return cls(
            chat_id=data["chat_id"],
            name=data["name"],
            folder=data["folder"],
            trigger=data["trigger"],
            requires_trigger=data.get("requires_trigger", True),
            container_config=data.get("container_config"),
            added_at=data.get("added_at"),
            privileged=data["folder"] == privileged_folder,
        )


@dataclass
class Invocation:
    conversation: Conversation
    prompt: str
    privileged: bool
    task_id: Optional[str] = None
    # Awaited with the InvocationResult once the run ends
    on_complete: Optional[Callable[["InvocationResult"], Awaitable[None]]] = None

    @property
    def chat_id(self) -> str:
        return self.conversation.chat_id


@dataclass
class InvocationOutput:
    """One framed record streamed by a running invocation."""

    status: str
    result: Optional[str] = None
    final: bool = False
    error: Optional[str] = None


@dataclass
class InvocationResult:
    status: str
    error: Optional[str] = None
    timed_out: bool = False
    exit_code: Optional[int] = None
    duration_ms: float = 0.0
    outputs: List[InvocationOutput] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class Task:
    id: str
    folder: str
    chat_id: str
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str
    status: str
    next_run: Optional[str]
    created_at: str
    last_run: Optional[str] = None
    last_result: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
