"""Invocation launcher: runs one isolated agent process for a conversation.

The process talks JSON lines on stdin (start record, piped messages, close)
and streams framed output records on stdout. Two watchdogs bound it: an
absolute wall-clock limit and an idle limit reset by any output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from groupclaw.core.group_queue import LiveInput
from groupclaw.core.types import Conversation, InvocationOutput, InvocationResult, VolumeMount

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---GROUPCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---GROUPCLAW_OUTPUT_END---"

IPC_SUBDIRS = ("messages", "tasks", "attachments")

OutputFn = Callable[[InvocationOutput], Awaitable[None]]


def docker_command(runtime, image, name, mounts, env):
    """Default container command. Any callable with this signature can replace it."""
    args = [runtime, "run", "-i", "--rm", "--name", name]
    for key, value in env.items():
        args += ["-e", f"{key}={value}"]
    for m in mounts:
        volume = f"{m.host_path}:{m.container_path}"
        if m.readonly:
            volume += ":ro"
        args += ["-v", volume]
    args.append(image)
    return args


def parse_output_record(json_str):
    data = json.loads(json_str)
    return InvocationOutput(
        status=data.get("status", "success"),
        result=data.get("result"),
        final=bool(data.get("final", False)),
        error=data.get("error"),
    )


class InvocationLauncher:
    def __init__(
        self,
        groups_dir: Path,
        ipc_dir: Path,
        snapshots=None,
        project_root: Optional[Path] = None,
        dev_workspace: Optional[Path] = None,
        runtime: str = "docker",
        image: str = "groupclaw-agent:latest",
        timeout: float = 1800.0,
        idle_timeout: float = 300.0,
        max_output_size: int = 10 * 1024 * 1024,
        command_builder=docker_command,
        stop_grace: float = 10.0,
    ) -> None:
        self.groups_dir = Path(groups_dir)
        self.ipc_dir = Path(ipc_dir)
        self.snapshots = snapshots
        self.project_root = project_root
        self.dev_workspace = dev_workspace
        self.runtime = runtime
        self.image = image
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self.max_output_size = max_output_size
        self.command_builder = command_builder
        self.stop_grace = stop_grace

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    def workspace_mounts(self, conversation: Conversation, privileged: bool) -> List[VolumeMount]:
        """Read-only shared assets, read-write only for the conversation's own dirs."""
        mounts = [
            VolumeMount(str(self.groups_dir / conversation.folder), "/workspace/group"),
            VolumeMount(str(self.ipc_dir / conversation.folder), "/workspace/ipc"),
        ]
        shared = self.groups_dir / "global"
        if shared.exists():
            mounts.append(VolumeMount(str(shared), "/workspace/global", readonly=True))
        if privileged:
            if self.project_root is not None:
                mounts.append(VolumeMount(str(self.project_root), "/workspace/project", readonly=True))
            if self.dev_workspace is not None:
                mounts.append(VolumeMount(str(self.dev_workspace), "/workspace/dev"))
        return mounts

    def prepare_workspace(self, conversation: Conversation, privileged: bool) -> List[VolumeMount]:
        (self.groups_dir / conversation.folder / "logs").mkdir(parents=True, exist_ok=True)
        namespace = self.ipc_dir / conversation.folder
        for sub in IPC_SUBDIRS:
            (namespace / sub).mkdir(parents=True, exist_ok=True)
        if privileged and self.dev_workspace is not None:
            self.dev_workspace.mkdir(parents=True, exist_ok=True)
        if self.snapshots is not None:
            self.snapshots.write_all(conversation.folder, privileged)
        return self.workspace_mounts(conversation, privileged)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def launch(
        self,
        conversation: Conversation,
        prompt: str,
        privileged: bool,
        live_input: Optional[LiveInput] = None,
        on_output: Optional[OutputFn] = None,
        task_id: Optional[str] = None,
    ) -> InvocationResult:
        start_time = time.monotonic()
        live_input = live_input or LiveInput()
        try:
            mounts = self.prepare_workspace(conversation, privileged)
        except OSError as e:
            logger.error("Failed to prepare workspace for %s: %s", conversation.folder, e)
            live_input.close()
            return InvocationResult(status="error", error=f"Workspace setup failed: {e}")

        config = conversation.container_config or {}
        timeout = float(config.get("timeout") or self.timeout)
        image = config.get("image") or self.image
        safe_name = "".join(c if c.isalnum() or c == "-" else "-" for c in conversation.folder)
        name = f"groupclaw-{safe_name}-{int(time.time() * 1000)}"
        env = {
            "GROUPCLAW_CHAT_ID": conversation.chat_id,
            "GROUPCLAW_FOLDER": conversation.folder,
            "GROUPCLAW_PRIVILEGED": "1" if privileged else "0",
        }
        args = self.command_builder(self.runtime, image, name, mounts, env)

        logger.info(
            "Launching invocation %s for %s (privileged=%s, mounts=%d)",
            name, conversation.name, privileged, len(mounts),
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to spawn invocation %s: %s", name, e)
            live_input.close()
            return InvocationResult(status="error", error=f"Spawn failed: {e}")

        loop = asyncio.get_running_loop()
        outputs: List[InvocationOutput] = []
        stderr_tail = ""
        output_bytes = 0
        timed_out_reason: Optional[str] = None
        idle_handle: Optional[asyncio.TimerHandle] = None
        stopping: Optional[asyncio.Task] = None

        def fire_watchdog(reason: str) -> None:
            nonlocal timed_out_reason, stopping
            if timed_out_reason is not None or proc.returncode is not None:
                return
            timed_out_reason = reason
            logger.error("Invocation %s hit %s timeout, stopping", name, reason)
            live_input.close()
            stopping = asyncio.ensure_future(self._stop(proc, name))

        def touch() -> None:
            nonlocal idle_handle
            if idle_handle is not None:
                idle_handle.cancel()
            idle_handle = loop.call_later(self.idle_timeout, fire_watchdog, "idle")

        absolute_handle = loop.call_later(timeout, fire_watchdog, "absolute")
        touch()

        async def write_record(record: dict) -> None:
            proc.stdin.write((json.dumps(record) + "\n").encode())
            await proc.stdin.drain()

        async def pump_stdin() -> None:
            try:
                await write_record({
                    "type": "start",
                    "prompt": prompt,
                    "chat_id": conversation.chat_id,
                    "folder": conversation.folder,
                    "privileged": privileged,
                    "task_id": task_id,
                })
                while True:
                    text = await live_input.get()
                    if text is None:
                        await write_record({"type": "close"})
                        break
                    await write_record({"type": "message", "text": text})
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Invocation %s closed its stdin", name)
            finally:
                live_input.close()
                if not proc.stdin.is_closing():
                    proc.stdin.close()

        async def read_stdout() -> None:
            nonlocal output_bytes
            buffer = ""
            while True:
                chunk = await proc.stdout.read(8192)
                if not chunk:
                    break
                touch()
                output_bytes += len(chunk)
                if output_bytes > self.max_output_size:
                    logger.warning("Invocation %s output over %d bytes, ignoring rest", name, self.max_output_size)
                    continue
                buffer += chunk.decode(errors="replace")
                while True:
                    start = buffer.find(OUTPUT_START_MARKER)
                    if start == -1:
                        break
                    end = buffer.find(OUTPUT_END_MARKER, start)
                    if end == -1:
                        break
                    payload = buffer[start + len(OUTPUT_START_MARKER):end].strip()
                    buffer = buffer[end + len(OUTPUT_END_MARKER):]
                    try:
                        record = parse_output_record(payload)
                    except (json.JSONDecodeError, AttributeError) as e:
                        logger.warning("Unparseable output record from %s: %s", name, e)
                        continue
                    outputs.append(record)
                    if record.final:
                        # The invocation is wrapping up; stop accepting piped input
                        live_input.close()
                    if on_output is not None:
                        try:
                            await on_output(record)
                        except Exception:
                            logger.exception("Output handler failed for %s", name)

        async def read_stderr() -> None:
            nonlocal stderr_tail
            while True:
                chunk = await proc.stderr.read(8192)
                if not chunk:
                    break
                touch()
                text = chunk.decode(errors="replace")
                for line in text.strip().splitlines():
                    logger.debug("[%s] %s", conversation.folder, line)
                stderr_tail = (stderr_tail + text)[-4000:]

        stdin_task = asyncio.create_task(pump_stdin())
        try:
            await asyncio.gather(read_stdout(), read_stderr())
            exit_code = await proc.wait()
        finally:
            absolute_handle.cancel()
            if idle_handle is not None:
                idle_handle.cancel()
            live_input.close()
            stdin_task.cancel()
            await asyncio.gather(stdin_task, return_exceptions=True)
            if stopping is not None:
                await asyncio.gather(stopping, return_exceptions=True)

        duration_ms = (time.monotonic() - start_time) * 1000
        if timed_out_reason is not None:
            limit = timeout if timed_out_reason == "absolute" else self.idle_timeout
            result = InvocationResult(
                status="error",
                error=f"Invocation timed out ({timed_out_reason}, {limit:.0f}s)",
                timed_out=True,
                exit_code=exit_code,
                duration_ms=duration_ms,
                outputs=outputs,
            )
        elif exit_code != 0:
            result = InvocationResult(
                status="error",
                error=f"Invocation exited with code {exit_code}: {stderr_tail[-200:]}",
                exit_code=exit_code,
                duration_ms=duration_ms,
                outputs=outputs,
            )
        else:
            result = InvocationResult(
                status="success", exit_code=exit_code, duration_ms=duration_ms, outputs=outputs
            )

        self._write_run_log(conversation, name, args, result, stderr_tail)
        logger.info(
            "Invocation %s finished: status=%s duration=%.0fms", name, result.status, duration_ms
        )
        return result

    async def _stop(self, proc, name):
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning("Invocation %s ignored SIGTERM, killing", name)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    def _write_run_log(self, conversation, name, args, result, stderr_tail):
        logs_dir = self.groups_dir / conversation.folder / "logs"
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        lines = [
            f"invocation: {name}",
            f"conversation: {conversation.name} ({conversation.chat_id})",
            f"command: {' '.join(args)}",
            f"status: {result.status}",
            f"exit_code: {result.exit_code}",
            f"timed_out: {result.timed_out}",
            f"duration_ms: {result.duration_ms:.0f}",
            f"outputs: {len(result.outputs)}",
        ]
        if result.error:
            lines.append(f"error: {result.error}")
        if stderr_tail:
            lines += ["", "--- stderr (tail) ---", stderr_tail]
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            (logs_dir / f"invocation-{stamp}-{name}.log").write_text("\n".join(lines) + "\n")
        except OSError:
            logger.exception("Failed to write run log for %s", name)
