# acme window control over 9P
from .errors import (
    AcmeError,
    SessionError,
    WindowIOError,
    ControlError,
    ForwardError,
    CommandError,
)
from .event import EOF, Action, EventParser, EventRecord
from .win import Win, Whence, WindowInfo, WINDOW_FILES, dial
from .proxy import EventProxy, ProxyState, SpawnOptions, run_command

__all__ = [
    'AcmeError',
    'SessionError',
    'WindowIOError',
    'ControlError',
    'ForwardError',
    'CommandError',
    'EOF',
    'Action',
    'EventParser',
    'EventRecord',
    'Win',
    'Whence',
    'WindowInfo',
    'WINDOW_FILES',
    'dial',
    'EventProxy',
    'ProxyState',
    'SpawnOptions',
    'run_command',
]
