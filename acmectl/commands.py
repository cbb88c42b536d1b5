"""
acmectl.commands - the operations acmectl offers.

A Request names one Operation plus its arguments; dispatch() looks up
the handler for the operation and runs it against an acme connection.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, BinaryIO, Callable, Dict, List, Optional

from ninep import P9Client

from .config import Config
from .errors import AcmeError
from .proxy import EventProxy
from .win import WINDOW_FILES, Whence, Win, dial

logger = logging.getLogger(__name__)


class Operation(Enum):
    NEW = "new"
    CTL = "ctl"
    WRITE = "write"
    READ = "read"
    LS = "ls"
    ONEXEC = "onexec"
    WINDOWS = "windows"


@dataclass
class Request:
    op: Operation
    win_id: Optional[int] = None
    file: Optional[str] = None
    text: List[str] = field(default_factory=list)
    event_text: str = ""
    argv: List[str] = field(default_factory=list)


Handler = Callable[[Request, Optional[P9Client], BinaryIO, BinaryIO], Awaitable[None]]


def _emit(stdout: BinaryIO, data: bytes):
    try:
        stdout.write(data)
        stdout.flush()
    except OSError as e:
        raise AcmeError(f"write to stdout: {e}") from e


async def do_new(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    win = await Win.new(client)
    try:
        _emit(stdout, f"{win.id}\n".encode())
    finally:
        await win.close()


async def do_ctl(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    async with await Win.open(client, req.win_id) as win:
        await win.ctl(" ".join(req.text))


async def do_write(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    async with await Win.open(client, req.win_id) as win:
        await win.seek(req.file, 0, Whence.END)
        await win.write_from(req.file, stdin)


async def do_read(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    async with await Win.open(client, req.win_id) as win:
        data = await win.read_all(req.file)
    _emit(stdout, data)


async def do_ls(req: Request, client: Optional[P9Client], stdin: BinaryIO, stdout: BinaryIO):
    _emit(stdout, ("\n".join(WINDOW_FILES) + "\n").encode())


async def do_onexec(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    async with await Win.open(client, req.win_id) as win:
        proxy = EventProxy(req.event_text, req.argv, win.write_event)
        events = await win.event_queue()
        logger.info(f"Window {win.id}: intercepting {req.event_text!r} -> {' '.join(req.argv)}")
        await proxy.run(events)


async def do_windows(req: Request, client: P9Client, stdin: BinaryIO, stdout: BinaryIO):
    lines = [f"{info.id} {info.tag}" for info in await Win.windows(client)]
    _emit(stdout, "".join(line + "\n" for line in lines).encode())


_HANDLERS: Dict[Operation, Handler] = {
    Operation.NEW: do_new,
    Operation.CTL: do_ctl,
    Operation.WRITE: do_write,
    Operation.READ: do_read,
    Operation.LS: do_ls,
    Operation.ONEXEC: do_onexec,
    Operation.WINDOWS: do_windows,
}


def handler_for(op: Operation) -> Handler:
    return _HANDLERS[op]


def needs_connection(op: Operation) -> bool:
    """ls answers from a fixed list and never talks to acme."""
    return op is not Operation.LS


async def dispatch(req: Request, client: Optional[P9Client],
                   stdin: BinaryIO, stdout: BinaryIO):
    """Run one request against an already connected client."""
    await handler_for(req.op)(req, client, stdin, stdout)


async def run(req: Request, config: Config, stdin: BinaryIO, stdout: BinaryIO):
    """Connect if the operation needs acme, then dispatch."""
    if not needs_connection(req.op):
        await dispatch(req, None, stdin, stdout)
        return

    client = await dial(config)
    try:
        await dispatch(req, client, stdin, stdout)
    finally:
        await client.disconnect()
