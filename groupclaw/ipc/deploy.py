"""Self-management for the privileged conversation: restart, rebuild, deploy, test builds.

Destructive sequences always end in ``terminate()``; an external supervisor
(systemd, launchd, docker restart policy) is expected to start the process
again. When a build fails after the code changed, the previous revision is
restored before terminating; a failed rollback is logged and termination
still happens.
"""

import asyncio
import logging
import re
import shlex
import time
from datetime import datetime, timezone

from groupclaw.errors import CommandError
from groupclaw.ipc.writer import write_json_atomic

logger = logging.getLogger(__name__)

BRANCH_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._/-]")
SHA_RE = re.compile(r"^[0-9a-f]{40}$")
BUILD_RESULT_FILE = ".build-result.json"

GIT_TIMEOUT = 60.0
INSTALL_TIMEOUT = 120.0
BUILD_TIMEOUT = 60.0
IMAGE_TIMEOUT = 600.0


async def run_command(args, cwd=None, timeout=60.0):
    """Run a command, returning combined stdout/stderr; raise CommandError on failure."""
    cmd = " ".join(args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise CommandError(cmd, 127, str(e)) from e
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandError(cmd, "timeout", f"timed out after {timeout:.0f}s") from None
    output = out.decode(errors="replace")
    if proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, output)
    return output


def sanitize_branch(raw):
    return BRANCH_UNSAFE_RE.sub("", raw or "main")


class Deployer:
    def __init__(self, project_root, dev_workspace, image, terminate,
                 runtime="docker", build_command="", install_command="", runner=run_command):
        self.project_root = project_root
        self.dev_workspace = dev_workspace
        self.image = image
        self.runtime = runtime
        self.build_command = shlex.split(build_command) if build_command else []
        self.install_command = shlex.split(install_command) if install_command else []
        self._terminate = terminate
        self._run = runner
        self.terminated = False

    def terminate(self):
        self.terminated = True
        self._terminate()

    async def _build(self):
        if self.build_command:
            await self._run(self.build_command, cwd=self.project_root, timeout=BUILD_TIMEOUT)

    async def _install(self):
        if self.install_command:
            await self._run(self.install_command, cwd=self.project_root, timeout=INSTALL_TIMEOUT)

    async def _build_image(self, context_dir, tag):
        await self._run(
            [self.runtime, "build", "-t", tag, "."], cwd=context_dir, timeout=IMAGE_TIMEOUT
        )

    async def _prune_images(self):
        try:
            await self._run([self.runtime, "image", "prune", "-f"], timeout=30.0)
        except CommandError as e:
            logger.debug("Image prune failed: %s", e)

    # ------------------------------------------------------------------
    # Destructive actions
    # ------------------------------------------------------------------

    async def restart(self):
        logger.info("Restart requested, checking build before exit")
        try:
            await self._build()
            logger.info("Build check passed before restart")
        except CommandError as e:
            # Nothing changed on disk, so the running revision is already the last good one
            logger.error("Build check failed before restart, restarting with current code: %s", e)
        self.terminate()

    async def rebuild(self):
        logger.info("Rebuild requested, rebuilding agent image %s", self.image)
        try:
            await self._build_image(self.project_root / "container", self.image)
            logger.info("Agent image rebuilt")
            await self._prune_images()
        except CommandError as e:
            logger.error("Agent image rebuild failed, keeping the existing image: %s", e)
        try:
            await self._build()
        except CommandError as e:
            logger.error("Build check failed before restart: %s", e)
        self.terminate()

    async def pull_and_deploy(self, raw_branch):
        branch = sanitize_branch(raw_branch)
        if not branch:
            logger.error("Invalid branch name %r, aborting deploy", raw_branch)
            return
        logger.info("Pull and deploy requested for branch %s", branch)

        try:
            previous = (await self._run(
                ["git", "rev-parse", "HEAD"], cwd=self.project_root, timeout=GIT_TIMEOUT
            )).strip()
        except CommandError as e:
            logger.error("Failed to read current HEAD, aborting deploy: %s", e)
            return
        if not SHA_RE.match(previous):
            logger.error("Unexpected HEAD format %r, aborting deploy", previous)
            return

        try:
            await self._run(["git", "fetch", "origin", branch], cwd=self.project_root, timeout=GIT_TIMEOUT)
            await self._run(
                ["git", "reset", "--hard", f"origin/{branch}"], cwd=self.project_root, timeout=GIT_TIMEOUT
            )
        except CommandError as e:
            logger.error("Git fetch/reset failed, aborting deploy: %s", e)
            return
        logger.info("Checked out origin/%s", branch)

        changed = await self._changed_files(previous)
        if "pyproject.toml" in changed:
            logger.info("pyproject.toml changed, reinstalling")
            try:
                await self._install()
            except CommandError as e:
                logger.warning("Install failed, continuing with build: %s", e)

        build_failed = False
        try:
            await self._build()
            logger.info("Build check passed")
        except CommandError as e:
            build_failed = True
            logger.error("Build check failed, rolling back to %s: %s", previous, e)
            await self._rollback(previous)

        if not build_failed and any(f.startswith("container/") for f in changed):
            logger.info("container/ changed, rebuilding agent image")
            try:
                await self._build_image(self.project_root / "container", self.image)
                await self._prune_images()
            except CommandError as e:
                logger.warning("Agent image rebuild failed, continuing with restart: %s", e)

        await self._sync_dev_workspace(branch)
        logger.info("Deploy finished (build_failed=%s), restarting", build_failed)
        self.terminate()

    async def _changed_files(self, previous):
        try:
            out = await self._run(
                ["git", "diff", "--name-only", previous, "HEAD"], cwd=self.project_root, timeout=GIT_TIMEOUT
            )
        except CommandError as e:
            logger.warning("Could not diff against %s: %s", previous, e)
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def _rollback(self, previous):
        try:
            await self._run(["git", "reset", "--hard", previous], cwd=self.project_root, timeout=GIT_TIMEOUT)
            try:
                await self._install()
            except CommandError as e:
                logger.warning("Reinstall during rollback failed: %s", e)
            await self._build()
            logger.info("Rolled back to %s", previous)
        except CommandError as e:
            logger.error("Rollback failed, restarting with whatever is on disk: %s", e)

    async def _sync_dev_workspace(self, branch):
        if self.dev_workspace is None or not (self.dev_workspace / ".git").exists():
            return
        try:
            await self._run(["git", "fetch", "origin", branch], cwd=self.dev_workspace, timeout=GIT_TIMEOUT)
            await self._run(
                ["git", "reset", "--hard", f"origin/{branch}"], cwd=self.dev_workspace, timeout=GIT_TIMEOUT
            )
            logger.info("Dev workspace synced to %s", branch)
        except CommandError as e:
            logger.warning("Dev workspace sync failed: %s", e)

    # ------------------------------------------------------------------
    # Non-destructive
    # ------------------------------------------------------------------

    async def test_build(self):
        """Build the dev workspace image and write a pollable result file."""
        result_path = self.dev_workspace / BUILD_RESULT_FILE
        context_dir = self.dev_workspace / "container"
        tag = self.image.rsplit(":", 1)[0] + ":test"
        started = time.monotonic()
        try:
            if not context_dir.is_dir():
                raise CommandError("build", "missing", f"{context_dir} does not exist")
            await self._build_image(context_dir, tag)
            try:
                await self._run([self.runtime, "rmi", tag], timeout=60.0)
            except CommandError as e:
                logger.debug("Could not remove test image %s: %s", tag, e)
            result = {"success": True}
            logger.info("Test build succeeded")
        except CommandError as e:
            result = {"success": False, "error": (e.output or str(e))[-2000:]}
            logger.error("Test build failed: %s", e)
        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        write_json_atomic(result_path, result)
        return result
