class GroupClawError(Exception):
    """Base class for errors raised by groupclaw."""


class MalformedRequest(GroupClawError):
    """A mailbox request file that cannot be turned into an action."""


class InvalidSchedule(GroupClawError):
    """A schedule value that does not parse for its schedule type."""


class CommandError(GroupClawError):
    """A host command (build, git, container) failed or timed out."""

    def __init__(self, cmd, code, output=""):
        self.cmd = cmd
        self.code = code
        self.output = output
        detail = output.strip()[-500:] if output else ""
        super().__init__(f"{cmd} exited with {code}" + (f": {detail}" if detail else ""))
