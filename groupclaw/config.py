"""Configuration loaded from environment variables."""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


# Assistant
ASSISTANT_NAME = os.getenv("ASSISTANT_NAME", "Claw")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Telegram
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ALLOWED_USERS = [
    int(uid.strip())
    for uid in os.getenv("TELEGRAM_ALLOWED_USER_IDS", "").split(",")
    if uid.strip()
]

# Paths
PROJECT_ROOT = Path(os.getenv("PROJECT_ROOT", Path(__file__).resolve().parent.parent))
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
GROUPS_DIR = Path(os.getenv("GROUPS_DIR", "./groups")).resolve()
IPC_DIR = DATA_DIR / "ipc"
DEV_WORKSPACE_DIR = DATA_DIR / "dev-workspace"
REGISTRY_PATH = DATA_DIR / "registered_conversations.json"
DATABASE_PATH = os.getenv("DATABASE_PATH", str(DATA_DIR / "db" / "groupclaw.db"))

# The one conversation allowed to run administrative actions
PRIVILEGED_FOLDER = os.getenv("PRIVILEGED_FOLDER", "main")

# Schedules
TIMEZONE = os.getenv("TIMEZONE", "America/Los_Angeles")
SCHEDULER_POLL_INTERVAL = float(os.getenv("SCHEDULER_POLL_INTERVAL", "60"))

# Mailbox
IPC_POLL_INTERVAL = float(os.getenv("IPC_POLL_INTERVAL", "1.0"))

# Invocations
CONTAINER_RUNTIME = os.getenv("CONTAINER_RUNTIME", "docker")
CONTAINER_IMAGE = os.getenv("CONTAINER_IMAGE", "groupclaw-agent:latest")
INVOCATION_TIMEOUT = float(os.getenv("INVOCATION_TIMEOUT", "1800"))
IDLE_TIMEOUT = float(os.getenv("IDLE_TIMEOUT", "300"))
MAX_CONCURRENT_INVOCATIONS = int(os.getenv("MAX_CONCURRENT_INVOCATIONS", "5"))
MAX_OUTPUT_SIZE = int(os.getenv("MAX_OUTPUT_SIZE", str(10 * 1024 * 1024)))
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "20"))

# Self-management (restart / rebuild / deploy)
BUILD_COMMAND = os.getenv("BUILD_COMMAND", f"{sys.executable} -m compileall -q groupclaw")
INSTALL_COMMAND = os.getenv("INSTALL_COMMAND", f"{sys.executable} -m pip install -e .")
