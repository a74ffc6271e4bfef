"""Per-conversation execution queue.

Each conversation is either IDLE or RUNNING one invocation. Work that arrives
while an invocation runs waits in a FIFO and starts when the running one
finishes, whatever the reason it finished. Text can be piped into the running
invocation through its LiveInput until that input is closed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, Optional, Set

from groupclaw.core.types import Invocation

logger = logging.getLogger(__name__)


class LiveInput:
    """Input channel into one running invocation.

    ``send`` never blocks; once ``close`` has been called (the invocation is
    shutting down) it refuses further text.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, text: str) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(text)
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def get(self) -> Optional[str]:
        """Next piped text, or None once the input is closed and drained."""
        return await self._queue.get()


RunFn = Callable[[Invocation, LiveInput], Awaitable[object]]


@dataclass
class _ConversationState:
    active: Optional[Invocation] = None
    live_input: Optional[LiveInput] = None
    pending: Deque[Invocation] = field(default_factory=deque)


class GroupQueue:
    def __init__(self, run_fn: RunFn, max_concurrent: Optional[int] = None) -> None:
        self._run_fn = run_fn
        self._states: Dict[str, _ConversationState] = {}
        self._running: Set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent else None
        self._shutting_down = False

    def _state(self, chat_id: str) -> _ConversationState:
        state = self._states.get(chat_id)
        if state is None:
            state = self._states[chat_id] = _ConversationState()
        return state

    def is_active(self, chat_id: str) -> bool:
        state = self._states.get(chat_id)
        return state is not None and state.active is not None

    def pending_count(self, chat_id: str) -> int:
        state = self._states.get(chat_id)
        return len(state.pending) if state else 0

    def enqueue(self, invocation: Invocation) -> bool:
        """Start ``invocation`` now if its conversation is idle, else queue it.

        Returns True when it started immediately.
        """
        if self._shutting_down:
            logger.warning("Queue shutting down, dropping invocation for %s", invocation.chat_id)
            return False
        state = self._state(invocation.chat_id)
        if state.active is not None:
            state.pending.append(invocation)
            logger.debug(
                "Conversation %s busy, queued (pending=%d)", invocation.chat_id, len(state.pending)
            )
            return False
        self._start(state, invocation)
        return True

    def send_message(self, chat_id: str, text: str) -> bool:
        """Pipe ``text`` into the running invocation for ``chat_id``.

        False means nothing is running (or it is shutting down) and the caller
        should enqueue instead.
        """
        state = self._states.get(chat_id)
        if state is None or state.active is None or state.live_input is None:
            return False
        return state.live_input.send(text)

    def close_input(self, chat_id: str) -> None:
        state = self._states.get(chat_id)
        if state is not None and state.live_input is not None:
            state.live_input.close()

    def _start(self, state: _ConversationState, invocation: Invocation) -> None:
        state.active = invocation
        state.live_input = LiveInput()
        task = asyncio.create_task(self._run(state, invocation, state.live_input))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, state: _ConversationState, invocation: Invocation, live_input: LiveInput) -> None:
        try:
            if self._slots is not None:
                async with self._slots:
                    await self._run_fn(invocation, live_input)
            else:
                await self._run_fn(invocation, live_input)
        except asyncio.CancelledError:
            logger.warning("Invocation for %s cancelled", invocation.chat_id)
            raise
        except Exception:
            logger.exception("Invocation for %s failed", invocation.chat_id)
        finally:
            live_input.close()
            self._finish(state, invocation)

    def _finish(self, state: _ConversationState, invocation: Invocation) -> None:
        state.active = None
        state.live_input = None
        if state.pending and not self._shutting_down:
            nxt = state.pending.popleft()
            logger.debug("Starting next pending invocation for %s", nxt.chat_id)
            self._start(state, nxt)

    async def shutdown(self, grace: float = 10.0) -> None:
        """Close every live input and wait up to ``grace`` seconds for running work."""
        self._shutting_down = True
        for state in self._states.values():
            state.pending.clear()
            if state.live_input is not None:
                state.live_input.close()
        if not self._running:
            return
        done, still_running = await asyncio.wait(set(self._running), timeout=grace)
        if still_running:
            logger.warning("%d invocations still running after shutdown grace", len(still_running))
