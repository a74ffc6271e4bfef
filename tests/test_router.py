import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock

from support import make_registry, make_stores, wait_for

from groupclaw.core.group_queue import GroupQueue
from groupclaw.core.prompts import STARTUP_NOTICE, TIMEOUT_NOTICE
from groupclaw.core.router import Router
from groupclaw.core.types import Invocation, InvocationOutput, InvocationResult


class FakeChannel:
    name = "fake"

    def __init__(self):
        self.sent = []

    def owns(self, chat_id):
        return chat_id.startswith("tg:")

    async def send_message(self, chat_id, text, files=None):
        self.sent.append((chat_id, text, files))


class BlockingLauncher:
    """Holds each launch open until released, collecting piped input."""

    def __init__(self):
        self.release = asyncio.Event()
        self.prompts = []
        self.piped = []

    async def launch(self, conversation, prompt, privileged, live_input=None, on_output=None, task_id=None):
        self.prompts.append(prompt)
        while not self.release.is_set():
            try:
                text = await asyncio.wait_for(live_input.get(), timeout=0.05)
            except asyncio.TimeoutError:
                continue
            if text is None:
                break
            self.piped.append(text)
        return InvocationResult(status="success")


class RouterTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db, self.task_store, self.conversation_log = make_stores()
        self.registry = make_registry(Path(self.tmp.name) / "registry.json")
        self.router = Router(self.registry, self.conversation_log)
        self.channel = FakeChannel()
        self.router.add_channel(self.channel)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()


class InboundTests(RouterTestCase):
    def setUp(self):
        super().setUp()
        self.launcher = BlockingLauncher()
        self.queue = GroupQueue(self.router.run_invocation)
        self.router.attach(self.queue, self.launcher)

    async def asyncTearDown(self):
        self.launcher.release.set()
        await self.queue.shutdown(grace=1.0)

    async def test_unregistered_chat_ignored(self):
        self.assertEqual(await self.router.on_inbound("tg:404", "@Claw hi", "Eve"), "ignored")
        self.assertEqual(self.conversation_log.count_messages(), 0)

    async def test_message_without_trigger_is_logged_only(self):
        self.assertEqual(await self.router.on_inbound("tg:2", "just chatting", "Alice"), "ignored")
        self.assertEqual(self.conversation_log.count_messages(), 1)
        self.assertFalse(self.queue.is_active("tg:2"))

    async def test_trigger_match_is_case_insensitive(self):
        self.assertEqual(await self.router.on_inbound("tg:2", "hey @claw, help", "Alice"), "enqueued")

    async def test_trigger_not_required(self):
        self.assertEqual(await self.router.on_inbound("tg:1", "status?", "Owner"), "enqueued")

    async def test_prompt_carries_recent_history(self):
        await self.router.on_inbound("tg:2", "earlier context", "Alice")
        await self.router.on_inbound("tg:2", "@Claw what did I say?", "Alice")
        await wait_for(lambda: self.launcher.prompts)
        self.assertIn("earlier context", self.launcher.prompts[0])
        self.assertIn('sender="Alice"', self.launcher.prompts[0])

    async def test_follow_up_is_piped_into_running_invocation(self):
        self.assertEqual(await self.router.on_inbound("tg:2", "@Claw start", "Alice"), "enqueued")
        self.assertEqual(await self.router.on_inbound("tg:2", "@Claw and also <this>", "Alice"), "piped")
        await wait_for(lambda: self.launcher.piped)
        self.assertIn("and also &lt;this&gt;", self.launcher.piped[0])
        self.assertEqual(self.queue.pending_count("tg:2"), 0)


class OutboundTests(RouterTestCase):
    async def test_internal_spans_stripped_and_logged(self):
        sent = await self.router.send_outbound("tg:2", "<internal>thinking</internal>Answer")
        self.assertTrue(sent)
        self.assertEqual(self.channel.sent, [("tg:2", "Answer", None)])
        [logged] = self.conversation_log.get_recent("tg:2")
        self.assertEqual((logged["role"], logged["content"]), ("assistant", "Answer"))

    async def test_nothing_left_after_stripping(self):
        self.assertFalse(await self.router.send_outbound("tg:2", "<internal>only notes</internal>"))
        self.assertEqual(self.channel.sent, [])

    async def test_no_channel_for_chat(self):
        self.assertFalse(await self.router.send_outbound("wa:123", "hello"))

    async def test_startup_notice_reaches_every_conversation(self):
        reached = await self.router.announce(STARTUP_NOTICE)

        self.assertEqual(reached, 3)
        self.assertEqual(
            sorted(chat for chat, _, _ in self.channel.sent), ["tg:1", "tg:2", "tg:3"]
        )
        self.assertTrue(all(text == STARTUP_NOTICE for _, text, _ in self.channel.sent))
        # Not part of any conversation's history
        self.assertEqual(self.conversation_log.count_messages(), 0)

    async def test_startup_notice_skips_failing_chat(self):
        sent = []

        async def send_message(chat_id, text, files=None):
            if chat_id == "tg:2":
                raise RuntimeError("bot was kicked")
            sent.append(chat_id)

        self.channel.send_message = send_message
        self.assertEqual(await self.router.announce(STARTUP_NOTICE), 2)
        self.assertEqual(sorted(sent), ["tg:1", "tg:3"])

    async def test_sync_metadata_survives_failing_channel(self):
        self.channel.sync_metadata = AsyncMock(side_effect=RuntimeError("rate limited"))
        other = FakeChannel()
        other.sync_metadata = AsyncMock()
        self.router.add_channel(other)

        await self.router.sync_metadata(force=True)
        other.sync_metadata.assert_awaited_once_with(True)


class RunInvocationTests(RouterTestCase):
    def invocation(self, **kwargs):
        return Invocation(conversation=self.registry.get("tg:2"), prompt="p", privileged=False, **kwargs)

    async def test_outputs_delivered_as_they_stream(self):
        launcher = AsyncMock()

        async def launch(conversation, prompt, privileged, live_input=None, on_output=None, task_id=None):
            await on_output(InvocationOutput(status="success", result="partial"))
            await on_output(InvocationOutput(status="success", result=None))
            return InvocationResult(status="success")

        launcher.launch.side_effect = launch
        self.router.attach(None, launcher)
        await self.router.run_invocation(self.invocation(), None)
        self.assertEqual([text for _, text, _ in self.channel.sent], ["partial"])

    async def test_failure_notice_sent_for_conversation_runs(self):
        launcher = AsyncMock()
        launcher.launch.return_value = InvocationResult(status="error", error="slow", timed_out=True)
        self.router.attach(None, launcher)
        await self.router.run_invocation(self.invocation(), None)
        self.assertEqual(self.channel.sent, [("tg:2", TIMEOUT_NOTICE, None)])

    async def test_timeout_reported_and_next_pending_runs(self):
        launcher = AsyncMock()
        launcher.launch.side_effect = [
            InvocationResult(status="error", error="Invocation timed out (idle, 300s)", timed_out=True),
            InvocationResult(status="success"),
        ]
        queue = GroupQueue(self.router.run_invocation)
        self.router.attach(queue, launcher)

        queue.enqueue(self.invocation())
        queue.enqueue(self.invocation())
        await wait_for(lambda: launcher.launch.await_count == 2 and not queue.is_active("tg:2"))

        self.assertEqual(self.channel.sent, [("tg:2", TIMEOUT_NOTICE, None)])

    async def test_scheduled_failures_are_not_announced(self):
        launcher = AsyncMock()
        result = InvocationResult(status="error", error="boom", exit_code=1)
        launcher.launch.return_value = result
        on_complete = AsyncMock()
        self.router.attach(None, launcher)

        await self.router.run_invocation(self.invocation(task_id="task-1", on_complete=on_complete), None)

        self.assertEqual(self.channel.sent, [])
        on_complete.assert_awaited_once_with(result)


if __name__ == "__main__":
    unittest.main()
