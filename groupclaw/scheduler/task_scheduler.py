"""Fires due scheduled tasks through the group queue."""

import asyncio
import logging

from groupclaw.config import TIMEZONE
from groupclaw.core.prompts import format_task_prompt
from groupclaw.core.types import Invocation
from groupclaw.errors import InvalidSchedule
from groupclaw.memory.action_log import log_task_run
from groupclaw.scheduler.schedule import next_run_after_fire, to_canonical, utcnow

logger = logging.getLogger(__name__)


class TaskScheduler:
    def __init__(self, db, task_store, registry, queue, conversation_log,
                 snapshots=None, tz_name=TIMEZONE, poll_interval=60.0, history_limit=20):
        self.db = db
        self.task_store = task_store
        self.registry = registry
        self.queue = queue
        self.conversation_log = conversation_log
        self.snapshots = snapshots
        self.tz_name = tz_name
        self.poll_interval = poll_interval
        self.history_limit = history_limit
        self._skipped = set()

    async def run_forever(self, stop_event):
        logger.info("Task scheduler started (every %.0fs)", self.poll_interval)
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def tick(self, now=None):
        """Dispatch every due task once. Returns the ids that fired."""
        now = now or utcnow()
        self.registry.reload()
        fired = []
        for task in self.task_store.get_due(to_canonical(now)):
            conversation = self.registry.get(task.chat_id)
            if conversation is None or conversation.folder != task.folder:
                # Kept for manual cleanup; only warn once per task
                if task.id not in self._skipped:
                    self._skipped.add(task.id)
                    logger.warning(
                        "Skipping task %s: owning conversation %s (%s) is not registered",
                        task.id, task.folder, task.chat_id,
                    )
                continue
            self._skipped.discard(task.id)
            if self._fire(task, conversation, now):
                fired.append(task.id)
        return fired

    def _fire(self, task, conversation, fired_at):
        try:
            next_run = next_run_after_fire(task, fired_at, self.tz_name)
        except InvalidSchedule as e:
            logger.error("Task %s has an unusable schedule (%s), pausing it", task.id, e)
            self.task_store.update(task.id, status="paused")
            return False

        if task.schedule_type == "once":
            self.task_store.update(task.id, status="completed", next_run=None)
        else:
            self.task_store.update(task.id, next_run=next_run)

        history = None
        if task.context_mode == "conversation":
            history = self.conversation_log.get_recent(task.chat_id, limit=self.history_limit)
        run_at = to_canonical(fired_at)

        async def record(result):
            await self._record_run(task.id, run_at, result)

        self.queue.enqueue(Invocation(
            conversation=conversation,
            prompt=format_task_prompt(task.prompt, history),
            privileged=conversation.privileged,
            task_id=task.id,
            on_complete=record,
        ))
        logger.info(
            "Fired task %s for %s (%s, next_run=%s)", task.id, task.folder, task.context_mode, next_run
        )
        if self.snapshots is not None:
            self.snapshots.refresh_tasks(task.folder)
        return True

    async def _record_run(self, task_id, run_at, result):
        texts = [o.result for o in result.outputs if o.result]
        summary = texts[-1][:500] if texts else None
        log_task_run(
            self.db, task_id, run_at, result.duration_ms, result.status,
            result=summary, error=result.error,
        )
        # The task may have been cancelled while it ran
        if self.task_store.get(task_id) is not None:
            self.task_store.update(
                task_id, last_run=run_at, last_result=summary if result.ok else f"Error: {result.error}"
            )
        if not result.ok:
            logger.error("Scheduled task %s failed: %s", task_id, result.error)
