import asyncio
import logging
import signal
import sys

from groupclaw import config
from groupclaw.bot.telegram_handler import TelegramChannel
from groupclaw.core.group_queue import GroupQueue
from groupclaw.core.launcher import InvocationLauncher
from groupclaw.core.prompts import STARTUP_NOTICE
from groupclaw.core.router import Router
from groupclaw.core.snapshots import SnapshotWriter
from groupclaw.ipc.deploy import Deployer
from groupclaw.ipc.mailbox import Mailbox
from groupclaw.memory.conversation_log import ConversationLog
from groupclaw.memory.database import init_db
from groupclaw.memory.registry import ConversationRegistry
from groupclaw.memory.task_store import TaskStore
from groupclaw.scheduler.task_scheduler import TaskScheduler

logger = logging.getLogger("groupclaw")


def setup_logging(level=config.LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s - [%(name)s] - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # python-telegram-bot logs every poll at INFO through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)


def install_signal_handlers(loop, stop_event):
    def _handler(*_):
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass


async def run():
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    db = init_db(config.DATABASE_PATH)
    registry = ConversationRegistry(config.REGISTRY_PATH, config.PRIVILEGED_FOLDER).load()
    task_store = TaskStore(db)
    conversation_log = ConversationLog(db)
    snapshots = SnapshotWriter(config.IPC_DIR, registry, task_store, conversation_log)
    logger.info("Loaded %d registered conversations", len(registry))

    router = Router(registry, conversation_log, history_limit=config.HISTORY_LIMIT)
    launcher = InvocationLauncher(
        groups_dir=config.GROUPS_DIR,
        ipc_dir=config.IPC_DIR,
        snapshots=snapshots,
        project_root=config.PROJECT_ROOT,
        dev_workspace=config.DEV_WORKSPACE_DIR,
        runtime=config.CONTAINER_RUNTIME,
        image=config.CONTAINER_IMAGE,
        timeout=config.INVOCATION_TIMEOUT,
        idle_timeout=config.IDLE_TIMEOUT,
        max_output_size=config.MAX_OUTPUT_SIZE,
    )
    queue = GroupQueue(router.run_invocation, max_concurrent=config.MAX_CONCURRENT_INVOCATIONS)
    router.attach(queue, launcher)

    deployer = Deployer(
        project_root=config.PROJECT_ROOT,
        dev_workspace=config.DEV_WORKSPACE_DIR,
        image=config.CONTAINER_IMAGE,
        terminate=stop_event.set,
        runtime=config.CONTAINER_RUNTIME,
        build_command=config.BUILD_COMMAND,
        install_command=config.INSTALL_COMMAND,
    )
    mailbox = Mailbox(
        config.IPC_DIR, registry, task_store, router, deployer,
        snapshots=snapshots,
        groups_dir=config.GROUPS_DIR,
        tz_name=config.TIMEZONE,
        poll_interval=config.IPC_POLL_INTERVAL,
    )
    scheduler = TaskScheduler(
        db, task_store, registry, queue, conversation_log,
        snapshots=snapshots,
        tz_name=config.TIMEZONE,
        poll_interval=config.SCHEDULER_POLL_INTERVAL,
        history_limit=config.HISTORY_LIMIT,
    )

    telegram = TelegramChannel(config.TELEGRAM_BOT_TOKEN, config.ALLOWED_USERS, router.on_inbound)
    await telegram.start()
    router.add_channel(telegram)
    # Also the signal that a supervised restart or deploy came back up
    reached = await router.announce(STARTUP_NOTICE)
    logger.info("Startup notice sent to %d conversations", reached)

    workers = [
        asyncio.create_task(mailbox.run_forever(stop_event), name="mailbox"),
        asyncio.create_task(scheduler.run_forever(stop_event), name="scheduler"),
    ]
    logger.info("GroupClaw is running. Privileged folder: %s", config.PRIVILEGED_FOLDER)

    await stop_event.wait()

    if deployer.terminated:
        logger.info("Terminating for supervised restart")
    else:
        logger.info("Shutting down")
    # Running invocations get a short grace period, their output is not awaited past it
    await queue.shutdown(grace=0.0 if deployer.terminated else 10.0)
    for worker in workers:
        worker.cancel()
    await asyncio.gather(*workers, return_exceptions=True)
    await telegram.stop()
    db.close()


def main():
    setup_logging()
    if not config.TELEGRAM_BOT_TOKEN:
        logger.error("Set TELEGRAM_BOT_TOKEN in .env")
        sys.exit(1)
    if not config.ALLOWED_USERS:
        logger.warning("TELEGRAM_ALLOWED_USER_IDS is empty; every Telegram user can reach the bot")

    logger.info("Starting GroupClaw...")
    logger.info("Data dir: %s", config.DATA_DIR)
    logger.info("Database: %s", config.DATABASE_PATH)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
