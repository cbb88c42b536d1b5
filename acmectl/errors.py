"""
Errors raised by acmectl.

Everything derives from AcmeError so the CLI can report any failure the
same way. CommandError is the one kind the event proxy handles itself.
"""


class AcmeError(Exception):
    """Base class for acmectl errors"""
    pass


class SessionError(AcmeError):
    """A window could not be created or opened, or is already closed"""
    pass


class WindowIOError(AcmeError):
    """Seek, read or write on a window file failed"""

    def __init__(self, op: str, file: str, reason):
        self.op = op
        self.file = file
        self.reason = reason
        super().__init__(f"{op} {file}: {reason}")


class ControlError(AcmeError):
    """Writing a control message failed"""
    pass


class ForwardError(AcmeError):
    """An unmatched event could not be written back to the window"""
    pass


class CommandError(AcmeError):
    """A spawned command failed to start or exited non-zero"""

    def __init__(self, argv, reason, returncode=None):
        self.argv = list(argv)
        self.returncode = returncode
        super().__init__(f"{' '.join(self.argv)}: {reason}")
