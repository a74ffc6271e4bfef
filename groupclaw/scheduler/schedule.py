"""Schedule parsing and next-run computation.

Every ``next_run`` is stored in one canonical form, UTC ISO 8601 with
millisecond precision and a ``Z`` suffix, so due-task selection is a plain
string comparison in SQLite.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from groupclaw.config import TIMEZONE
from groupclaw.errors import InvalidSchedule

SCHEDULE_TYPES = ("cron", "interval", "once")
CONTEXT_MODES = ("conversation", "isolated")


def to_canonical(dt):
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_canonical(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utcnow():
    return datetime.now(timezone.utc)


def _zone(tz_name):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidSchedule(f"Unknown time zone {tz_name!r}") from e


def parse_interval_ms(value):
    try:
        ms = int(str(value).strip())
    except ValueError:
        raise InvalidSchedule(f"Invalid interval {value!r}: expected milliseconds") from None
    if ms <= 0:
        raise InvalidSchedule(f"Invalid interval {value!r}: must be positive")
    return ms


def parse_once(value, tz_name=TIMEZONE):
    """Parse a one-shot timestamp. Naive values are local to ``tz_name``."""
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise InvalidSchedule(f"Invalid timestamp {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_zone(tz_name))
    return dt


def next_cron_run(expression, after, tz_name=TIMEZONE):
    if not croniter.is_valid(expression):
        raise InvalidSchedule(f"Invalid cron expression {expression!r}")
    base = after.astimezone(_zone(tz_name))
    return croniter(expression, base).get_next(datetime)


def initial_next_run(schedule_type, schedule_value, now=None, tz_name=TIMEZONE):
    """Validate a schedule and return its first ``next_run`` in canonical form.

    Raises InvalidSchedule for anything that does not parse, so callers can
    reject the request before any task record exists.
    """
    now = now or utcnow()
    if schedule_type == "cron":
        return to_canonical(next_cron_run(schedule_value, now, tz_name))
    if schedule_type == "interval":
        return to_canonical(now + timedelta(milliseconds=parse_interval_ms(schedule_value)))
    if schedule_type == "once":
        return to_canonical(parse_once(schedule_value, tz_name))
    raise InvalidSchedule(f"Unknown schedule type {schedule_type!r}")


def next_run_after_fire(task, fired_at, tz_name=TIMEZONE):
    """Next run for a task that just fired at ``fired_at``; None for one-shots."""
    if task.schedule_type == "interval":
        return to_canonical(fired_at + timedelta(milliseconds=parse_interval_ms(task.schedule_value)))
    if task.schedule_type == "cron":
        return to_canonical(next_cron_run(task.schedule_value, fired_at, tz_name))
    return None
