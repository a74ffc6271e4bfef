import json
import tempfile
import unittest
from pathlib import Path

from support import FakeRunner

from groupclaw.errors import CommandError
from groupclaw.ipc.deploy import BUILD_RESULT_FILE, Deployer, sanitize_branch

PREVIOUS = "a" * 40
BUILD = "make build"
INSTALL = "pip install -e ."


class DeployerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.project_root = root / "project"
        self.dev_workspace = root / "dev"
        self.project_root.mkdir()
        self.dev_workspace.mkdir()
        self.log = []

    def tearDown(self):
        self.tmp.cleanup()

    def deployer(self, responses=None):
        base = {"git rev-parse HEAD": PREVIOUS + "\n"}
        base.update(responses or {})
        self.runner = FakeRunner(base, log=self.log)
        return Deployer(
            project_root=self.project_root,
            dev_workspace=self.dev_workspace,
            image="groupclaw-agent:latest",
            terminate=lambda: self.log.append("terminate"),
            build_command=BUILD,
            install_command=INSTALL,
            runner=self.runner,
        )


class PullAndDeployTests(DeployerTestCase):
    async def test_successful_deploy_builds_then_terminates(self):
        deployer = self.deployer()
        await deployer.pull_and_deploy("main")

        self.assertEqual(self.log[:4], [
            "git rev-parse HEAD",
            "git fetch origin main",
            "git reset --hard origin/main",
            f"git diff --name-only {PREVIOUS} HEAD",
        ])
        self.assertEqual(self.log[-2:], [BUILD, "terminate"])
        self.assertTrue(deployer.terminated)

    async def test_failed_build_rolls_back_before_terminate(self):
        deployer = self.deployer({BUILD: [CommandError(BUILD, 1, "syntax error"), ""]})
        await deployer.pull_and_deploy("main")

        rollback = self.log.index(f"git reset --hard {PREVIOUS}")
        self.assertLess(rollback, self.log.index("terminate"))
        self.assertEqual(self.log[-1], "terminate")
        self.assertEqual(self.log.count(BUILD), 2)

    async def test_failed_rollback_still_terminates(self):
        deployer = self.deployer({
            BUILD: CommandError(BUILD, 1, "syntax error"),
            f"git reset --hard {PREVIOUS}": CommandError("git reset", 128, "fatal"),
        })
        await deployer.pull_and_deploy("main")
        self.assertEqual(self.log[-1], "terminate")
        self.assertTrue(deployer.terminated)

    async def test_dependency_change_reinstalls(self):
        deployer = self.deployer({"git diff": "pyproject.toml\ngroupclaw/main.py\n"})
        await deployer.pull_and_deploy("main")
        self.assertLess(self.log.index(INSTALL), self.log.index(BUILD))

    async def test_container_change_rebuilds_image(self):
        deployer = self.deployer({"git diff": "container/Dockerfile\n"})
        await deployer.pull_and_deploy("main")
        self.assertIn("docker build -t groupclaw-agent:latest .", self.log)

    async def test_no_image_rebuild_after_failed_build(self):
        deployer = self.deployer({
            "git diff": "container/Dockerfile\n",
            BUILD: CommandError(BUILD, 1, "broken"),
        })
        await deployer.pull_and_deploy("main")
        self.assertNotIn("docker build -t groupclaw-agent:latest .", self.log)

    async def test_fetch_failure_aborts_without_terminate(self):
        deployer = self.deployer({"git fetch": CommandError("git fetch", 128, "no such branch")})
        await deployer.pull_and_deploy("feature")
        self.assertNotIn("terminate", self.log)
        self.assertFalse(deployer.terminated)

    async def test_unexpected_head_aborts(self):
        deployer = self.deployer({"git rev-parse HEAD": "not-a-sha\n"})
        await deployer.pull_and_deploy("main")
        self.assertEqual(self.log, ["git rev-parse HEAD"])

    async def test_branch_name_is_sanitized(self):
        deployer = self.deployer()
        await deployer.pull_and_deploy("main; rm -rf /")
        self.assertIn("git fetch origin mainrm-rf/", self.log)

    async def test_unusable_branch_aborts(self):
        deployer = self.deployer()
        await deployer.pull_and_deploy(";;;")
        self.assertEqual(self.log, [])

    def test_sanitize_branch(self):
        self.assertEqual(sanitize_branch("feature/x-1.2"), "feature/x-1.2")
        self.assertEqual(sanitize_branch("$(whoami)"), "whoami")
        self.assertEqual(sanitize_branch(None), "main")


class RestartAndRebuildTests(DeployerTestCase):
    async def test_restart_terminates_even_when_build_fails(self):
        deployer = self.deployer({BUILD: CommandError(BUILD, 1, "broken")})
        await deployer.restart()
        self.assertEqual(self.log, [BUILD, "terminate"])

    async def test_rebuild_keeps_image_on_failure_and_terminates(self):
        deployer = self.deployer({"docker build": CommandError("docker build", 1, "no daemon")})
        await deployer.rebuild()
        self.assertEqual(self.log[-1], "terminate")
        self.assertNotIn("docker image prune -f", self.log)


class TestBuildTests(DeployerTestCase):
    def result_file(self):
        return json.loads((self.dev_workspace / BUILD_RESULT_FILE).read_text())

    async def test_success_writes_result_and_removes_test_image(self):
        (self.dev_workspace / "container").mkdir()
        deployer = self.deployer()
        result = await deployer.test_build()

        self.assertTrue(result["success"])
        self.assertIn("docker build -t groupclaw-agent:test .", self.log)
        self.assertIn("docker rmi groupclaw-agent:test", self.log)
        self.assertNotIn("terminate", self.log)
        written = self.result_file()
        self.assertTrue(written["success"])
        self.assertIn("duration_ms", written)
        self.assertIn("timestamp", written)

    async def test_failure_is_reported_in_result_file(self):
        (self.dev_workspace / "container").mkdir()
        deployer = self.deployer({"docker build": CommandError("docker build", 1, "step 3 failed")})
        result = await deployer.test_build()

        self.assertFalse(result["success"])
        self.assertIn("step 3 failed", self.result_file()["error"])
        self.assertFalse(deployer.terminated)

    async def test_missing_context_dir_fails(self):
        result = await self.deployer().test_build()
        self.assertFalse(result["success"])
        self.assertEqual(self.log, [])


if __name__ == "__main__":
    unittest.main()
