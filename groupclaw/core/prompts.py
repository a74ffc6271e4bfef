import re
from html import escape

INTERNAL_RE = re.compile(r"<internal>.*?</internal>", re.DOTALL)

FAILURE_NOTICE = "Sorry, something went wrong while working on that ({reason}). Send it again to retry."
TIMEOUT_NOTICE = "Sorry, that took too long and was stopped. Send it again to retry."
STARTUP_NOTICE = "Back online!"


def format_messages(messages):
    """Render chat history as the prompt handed to an invocation."""
    lines = ["<messages>"]
    for m in messages:
        sender = escape(m.get("sender") or m.get("role") or "user", quote=True)
        ts = escape(m.get("timestamp") or "", quote=True)
        lines.append(f'<message sender="{sender}" time="{ts}">{escape(m["content"], quote=False)}</message>')
    lines.append("</messages>")
    return "\n".join(lines)


def format_task_prompt(prompt, history=None):
    """Prompt for a scheduled run; ``history`` is only given in conversation mode."""
    header = "[Scheduled task. Your final output is sent to the conversation.]"
    if not history:
        return f"{header}\n\n{prompt}"
    return f"{header}\n\n{format_messages(history)}\n\n{prompt}"


def strip_internal(text):
    """Drop <internal>...</internal> spans the agent does not want delivered."""
    if not text:
        return ""
    return INTERNAL_RE.sub("", text).strip()


def failure_notice(result):
    if result.timed_out:
        return TIMEOUT_NOTICE
    reason = "exit code {}".format(result.exit_code) if result.exit_code else "launch failed"
    return FAILURE_NOTICE.format(reason=reason)
