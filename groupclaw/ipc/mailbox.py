"""Filesystem mailbox through which invocations ask the host to act.

Layout under the IPC directory::

    <folder>/messages/*.json     send_message requests
    <folder>/tasks/*.json        everything else
    <folder>/attachments/        files referenced by send_message
    errors/<folder>-<file>.json  requests that were malformed or failed

Each invocation can only write into its own ``<folder>``, so the directory a
request sits in is the only identity the mailbox trusts. Whether an action is
allowed depends on two facts: is that folder the privileged one, and is the
action's target that same folder.
"""

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path

from groupclaw.config import TIMEZONE
from groupclaw.core.types import Task
from groupclaw.errors import InvalidSchedule, MalformedRequest
from groupclaw.ipc.actions import (
    ALL_ACTIONS,
    MESSAGES_QUEUE,
    PRIVILEGED_ONLY,
    TASKS_QUEUE,
    CancelTask,
    PauseTask,
    PullAndDeploy,
    Rebuild,
    RefreshMetadata,
    RegisterConversation,
    Restart,
    ResumeTask,
    ScheduleTask,
    SendMessage,
    TestBuild,
    parse_request,
)
from groupclaw.memory.registry import is_valid_folder
from groupclaw.scheduler.schedule import SCHEDULE_TYPES, initial_next_run, to_canonical, utcnow

logger = logging.getLogger(__name__)

ERRORS_NAMESPACE = "errors"


class Mailbox:
    def __init__(self, ipc_dir, registry, task_store, router, deployer,
                 snapshots=None, groups_dir=None, tz_name=TIMEZONE, poll_interval=1.0):
        self.ipc_dir = Path(ipc_dir)
        self.registry = registry
        self.task_store = task_store
        self.router = router
        self.deployer = deployer
        self.snapshots = snapshots
        self.groups_dir = groups_dir
        self.tz_name = tz_name
        self.poll_interval = poll_interval
        self._handlers = {
            SendMessage: self._send_message,
            ScheduleTask: self._schedule_task,
            PauseTask: self._pause_task,
            ResumeTask: self._resume_task,
            CancelTask: self._cancel_task,
            RegisterConversation: self._register_conversation,
            RefreshMetadata: self._refresh_metadata,
            Restart: self._restart,
            Rebuild: self._rebuild,
            PullAndDeploy: self._pull_and_deploy,
            TestBuild: self._test_build,
        }
        missing = set(ALL_ACTIONS) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No mailbox handler for {sorted(cls.TYPE for cls in missing)}")

    @property
    def privileged_folder(self):
        return self.registry.privileged_folder

    @property
    def errors_dir(self):
        return self.ipc_dir / ERRORS_NAMESPACE

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def run_forever(self, stop_event):
        self.ipc_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Mailbox watching %s (every %.1fs)", self.ipc_dir, self.poll_interval)
        while not stop_event.is_set() and not self.deployer.terminated:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Mailbox poll failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def namespaces(self):
        return sorted(
            entry.name for entry in os.scandir(self.ipc_dir)
            if entry.is_dir() and entry.name != ERRORS_NAMESPACE
        )

    async def poll_once(self):
        """Drain every namespace once. Returns the number of requests consumed."""
        try:
            namespaces = self.namespaces()
        except OSError:
            logger.exception("Error reading mailbox directory %s", self.ipc_dir)
            return 0

        self.registry.reload()
        consumed = 0
        for namespace in namespaces:
            for queue in (MESSAGES_QUEUE, TASKS_QUEUE):
                queue_dir = self.ipc_dir / namespace / queue
                try:
                    with os.scandir(queue_dir) as it:
                        entries = sorted(
                            (e for e in it if e.name.endswith(".json")), key=lambda e: e.name
                        )
                except FileNotFoundError:
                    continue
                except OSError:
                    logger.exception("Error reading %s", queue_dir)
                    continue
                for entry in entries:
                    # A destructive action ended this process's useful life
                    if self.deployer.terminated:
                        return consumed
                    path = queue_dir / entry.name
                    if not entry.is_file(follow_symlinks=False):
                        logger.error("Request %s from %s is not a regular file", entry.name, namespace)
                        self._quarantine(namespace, path)
                        consumed += 1
                        continue
                    if await self._consume(namespace, queue, path):
                        consumed += 1
        return consumed

    async def _consume(self, namespace, queue, path):
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Unreadable request %s from %s: %s", path.name, namespace, e)
            self._quarantine(namespace, path)
            return True

        try:
            # UnicodeDecodeError and JSONDecodeError are both ValueErrors
            raw = data.decode("utf-8")
            action = parse_request(json.loads(raw), queue)
        except (ValueError, RecursionError, MalformedRequest) as e:
            logger.error("Malformed request %s from %s: %s", path.name, namespace, e)
            self._quarantine(namespace, path)
            return True

        # Removed before acting: destructive handlers never come back
        path.unlink()
        try:
            await self.process(action, namespace)
        except Exception:
            logger.exception("Error processing %s from %s", action.TYPE, namespace)
            self._write_error(namespace, path.name, raw)
        return True

    def _quarantine(self, namespace, path):
        self.errors_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(path, self.errors_dir / f"{namespace}-{path.name}")
        except OSError:
            logger.exception("Could not move %s to errors, deleting it", path)
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.exception("Could not delete %s", path)

    def _write_error(self, namespace, name, raw):
        self.errors_dir.mkdir(parents=True, exist_ok=True)
        (self.errors_dir / f"{namespace}-{name}").write_text(raw, encoding="utf-8")

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def target_folder(self, action, source):
        """Folder an action acts on, resolved from host state only."""
        if isinstance(action, SendMessage):
            target = self.registry.get(action.chat_id)
            return target.folder if target else None
        if isinstance(action, ScheduleTask):
            if action.target_chat_id is None:
                return source
            target = self.registry.get(action.target_chat_id)
            return target.folder if target else None
        if isinstance(action, (PauseTask, ResumeTask, CancelTask)):
            task = self.task_store.get(action.task_id)
            return task.folder if task else None
        return None

    def authorize(self, action, source):
        if source == self.privileged_folder:
            return True
        if isinstance(action, PRIVILEGED_ONLY):
            return False
        return self.target_folder(action, source) == source

    async def process(self, action, source):
        """Authorize and apply one action. Returns True when it was applied."""
        if not self.authorize(action, source):
            logger.warning("Unauthorized %s from %s blocked", action.TYPE, source)
            return False
        privileged = source == self.privileged_folder
        return await self._handlers[type(action)](action, source, privileged)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _resolve_attachments(self, source, files):
        attachments_dir = self.ipc_dir / source / "attachments"
        resolved = []
        for name in files:
            # Bare file names only, no traversal out of the namespace
            if not name or Path(name).name != name or name in (".", ".."):
                logger.warning("Ignoring unsafe attachment name %r from %s", name, source)
                continue
            candidate = attachments_dir / name
            if candidate.is_file():
                resolved.append(candidate)
        return resolved

    async def _send_message(self, action, source, privileged):
        files = self._resolve_attachments(source, action.files)
        sent = await self.router.send_outbound(
            action.chat_id, action.text, [str(f) for f in files] or None
        )
        if not sent:
            logger.warning("Message from %s to %s was not delivered", source, action.chat_id)
            return False
        logger.info("Mailbox message sent to %s from %s (attachments=%d)", action.chat_id, source, len(files))
        for f in files:
            f.unlink(missing_ok=True)
        return True

    async def _schedule_task(self, action, source, privileged):
        if action.target_chat_id is None:
            own = self.registry.get_by_folder(source)
            chat_id = own.chat_id if own else None
        else:
            chat_id = action.target_chat_id
        target = self.registry.get(chat_id) if chat_id else None
        if target is None:
            logger.warning("Cannot schedule task from %s: target %s not registered", source, chat_id)
            return False
        if action.schedule_type not in SCHEDULE_TYPES:
            logger.warning("Rejected schedule_task from %s: unknown type %r", source, action.schedule_type)
            return False
        try:
            next_run = initial_next_run(action.schedule_type, action.schedule_value, tz_name=self.tz_name)
        except InvalidSchedule as e:
            logger.warning("Rejected schedule_task from %s: %s", source, e)
            return False

        task = Task(
            id=f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
            folder=target.folder,
            chat_id=target.chat_id,
            prompt=action.prompt,
            schedule_type=action.schedule_type,
            schedule_value=action.schedule_value,
            context_mode=action.context_mode,
            status="active",
            next_run=next_run,
            created_at=to_canonical(utcnow()),
        )
        self.task_store.create(task)
        logger.info("Task %s created by %s for %s (next_run=%s)", task.id, source, target.folder, next_run)
        self._refresh_tasks(target.folder)
        return True

    async def _set_status(self, action, source, status):
        task = self.task_store.get(action.task_id)
        if task is None:
            logger.warning("Task %s not found (%s from %s)", action.task_id, action.TYPE, source)
            return False
        if task.status == "completed":
            logger.warning("Task %s already completed, ignoring %s", task.id, action.TYPE)
            return False
        self.task_store.update(task.id, status=status)
        logger.info("Task %s %s by %s", task.id, status, source)
        self._refresh_tasks(task.folder)
        return True

    async def _pause_task(self, action, source, privileged):
        return await self._set_status(action, source, "paused")

    async def _resume_task(self, action, source, privileged):
        return await self._set_status(action, source, "active")

    async def _cancel_task(self, action, source, privileged):
        task = self.task_store.get(action.task_id)
        if task is None:
            logger.warning("Task %s not found (cancel from %s)", action.task_id, source)
            return False
        self.task_store.delete(task.id)
        logger.info("Task %s cancelled by %s", task.id, source)
        self._refresh_tasks(task.folder)
        return True

    async def _register_conversation(self, action, source, privileged):
        if not is_valid_folder(action.folder):
            logger.warning("Rejected register_conversation: unsafe folder %r", action.folder)
            return False
        conversation = self.registry.register(
            chat_id=action.chat_id,
            name=action.name,
            folder=action.folder,
            trigger=action.trigger,
            requires_trigger=action.requires_trigger,
            container_config=action.container_config,
        )
        if conversation is None:
            return False
        if self.groups_dir is not None:
            (Path(self.groups_dir) / conversation.folder).mkdir(parents=True, exist_ok=True)
        for sub in (MESSAGES_QUEUE, TASKS_QUEUE, "attachments"):
            (self.ipc_dir / conversation.folder / sub).mkdir(parents=True, exist_ok=True)
        if self.snapshots is not None:
            self.snapshots.write_conversations(source, True)
        return True

    async def _refresh_metadata(self, action, source, privileged):
        logger.info("Metadata refresh requested by %s", source)
        await self.router.sync_metadata(force=True)
        if self.snapshots is not None:
            self.snapshots.write_conversations(source, True)
        return True

    async def _restart(self, action, source, privileged):
        logger.info("Restart requested by %s", source)
        await self.deployer.restart()
        return True

    async def _rebuild(self, action, source, privileged):
        logger.info("Rebuild requested by %s", source)
        await self.deployer.rebuild()
        return True

    async def _pull_and_deploy(self, action, source, privileged):
        await self.deployer.pull_and_deploy(action.branch)
        return True

    async def _test_build(self, action, source, privileged):
        logger.info("Test build requested by %s", source)
        result = await self.deployer.test_build()
        return result["success"]

    def _refresh_tasks(self, folder):
        if self.snapshots is not None:
            self.snapshots.refresh_tasks(folder)
