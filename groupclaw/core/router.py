"""Router: the boundary between chat channels and the invocation queue."""

import logging

from groupclaw.core.prompts import failure_notice, format_messages, strip_internal
from groupclaw.core.types import Invocation

logger = logging.getLogger(__name__)


class Router:
    def __init__(self, registry, conversation_log, history_limit=20):
        self.registry = registry
        self.conversation_log = conversation_log
        self.history_limit = history_limit
        self.channels = []
        self.queue = None
        self.launcher = None

    def attach(self, queue, launcher):
        self.queue = queue
        self.launcher = launcher

    def add_channel(self, channel):
        self.channels.append(channel)

    def find_channel(self, chat_id):
        for channel in self.channels:
            if channel.owns(chat_id):
                return channel
        return None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_inbound(self, chat_id, text, sender=None):
        """Route one inbound message: pipe into a running invocation or enqueue.

        Returns "ignored", "piped" or "enqueued".
        """
        self.registry.reload()
        conversation = self.registry.get(chat_id)
        if conversation is None:
            logger.debug("Message from unregistered chat %s, ignoring", chat_id)
            return "ignored"

        self.conversation_log.log_message(chat_id, "user", text, sender=sender)

        if conversation.requires_trigger:
            if conversation.trigger.lower() not in text.lower():
                logger.debug("Message in %s did not mention %s", chat_id, conversation.trigger)
                return "ignored"

        message = {"sender": sender, "role": "user", "content": text}
        if self.queue.send_message(chat_id, format_messages([message])):
            logger.info("Message piped to running invocation for %s", chat_id)
            return "piped"

        history = self.conversation_log.get_recent(chat_id, limit=self.history_limit)
        self.queue.enqueue(Invocation(
            conversation=conversation,
            prompt=format_messages(history),
            privileged=conversation.privileged,
        ))
        logger.info("Enqueued invocation for %s (%s)", conversation.name, chat_id)
        return "enqueued"

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_outbound(self, chat_id, text, files=None):
        channel = self.find_channel(chat_id)
        if channel is None:
            logger.warning("No channel owns %s, cannot send", chat_id)
            return False
        text = strip_internal(text)
        if not text and not files:
            return False
        await channel.send_message(chat_id, text, files)
        if text:
            self.conversation_log.log_message(chat_id, "assistant", text)
        return True

    async def announce(self, text):
        """Send ``text`` to every registered conversation, outside its history.

        Returns the number of conversations it reached.
        """
        self.registry.reload()
        delivered = 0
        for conversation in self.registry.all():
            channel = self.find_channel(conversation.chat_id)
            if channel is None:
                continue
            try:
                await channel.send_message(conversation.chat_id, text, None)
            except Exception:
                logger.exception("Failed to announce to %s", conversation.chat_id)
                continue
            delivered += 1
        return delivered

    async def sync_metadata(self, force=False):
        for channel in self.channels:
            sync = getattr(channel, "sync_metadata", None)
            if sync is None:
                continue
            try:
                await sync(force)
            except Exception:
                logger.exception("Metadata sync failed for %s", channel.name)

    # ------------------------------------------------------------------
    # Invocation runs (called by the queue)
    # ------------------------------------------------------------------

    async def run_invocation(self, invocation, live_input):
        chat_id = invocation.chat_id

        async def deliver(record):
            if record.status == "error":
                logger.warning("Invocation for %s reported error: %s", chat_id, record.error)
            if record.result:
                await self.send_outbound(chat_id, record.result)

        result = await self.launcher.launch(
            invocation.conversation,
            invocation.prompt,
            invocation.privileged,
            live_input=live_input,
            on_output=deliver,
            task_id=invocation.task_id,
        )
        # Scheduled runs are background work: failures are logged, not announced
        if not result.ok and invocation.task_id is None:
            try:
                await self.send_outbound(chat_id, failure_notice(result))
            except Exception:
                logger.exception("Failed to deliver failure notice to %s", chat_id)
        if invocation.on_complete is not None:
            await invocation.on_complete(result)
        return result
