"""Exception types raised by wattkeeper.

Only ``PrivilegeRequired`` and ``StateCorrupt`` abort a command before it
mutates anything.  Every ``MutationError`` is scoped to a single change and is
collected into the run summary by the executor and the revert engine.
"""


class WattkeeperError(Exception):
    """Base class for every error wattkeeper raises on purpose."""


class PrivilegeRequired(WattkeeperError):

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} requires root privileges")


class StateCorrupt(WattkeeperError):

    def __init__(self, path, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"state file {path} is corrupt: {detail}")


class FindingsError(WattkeeperError):
    """The findings document could not be read or parsed."""


class MutationError(WattkeeperError):
    """A single change could not be applied, reverted or checked."""


class TargetMissing(MutationError):

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"{target} does not exist")


class WriteFailed(MutationError):

    def __init__(self, path, value: str, reason: str):
        self.path = path
        self.value = value
        self.reason = reason
        super().__init__(f"failed to write {value!r} to {path}: {reason}")


class ToggleReadFailed(MutationError):

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"cannot read toggle state from {path}: {reason}")


class ExternalToolFailed(MutationError):

    def __init__(self, cmd, returncode, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        pretty = " ".join(str(c) for c in self.cmd)
        msg = f"{pretty} exited {returncode}"
        if self.stderr:
            msg += f": {self.stderr}"
        super().__init__(msg)
