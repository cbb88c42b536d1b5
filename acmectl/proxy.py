"""
acmectl.proxy - intercept one execute command in a window.

The proxy sits between acme and the window's default event handling.
Every event acme reports is either

  - an execute of exactly the target text: the configured command runs
    and the event is consumed, or
  - anything else: the event is handed back to acme unchanged, so the
    window keeps behaving as if nobody were listening.

Events are handled one at a time, in arrival order. While a command runs
no further events are taken off the queue, so its output always appears
before anything triggered by a later event.

    LISTENING --record--> DECIDING --match--> DISPATCHING --> LISTENING
                                   \\--else--> FORWARDING  --> LISTENING
    LISTENING --EOF-----> CLOSED
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Sequence

from .errors import AcmeError, CommandError, ForwardError
from .event import EOF, EventRecord

logger = logging.getLogger(__name__)


class ProxyState(Enum):
    LISTENING = "listening"
    DECIDING = "deciding"
    DISPATCHING = "dispatching"
    FORWARDING = "forwarding"
    CLOSED = "closed"


@dataclass(frozen=True)
class SpawnOptions:
    """Which of our standard streams a spawned command shares."""
    inherit_stdout: bool = True
    inherit_stderr: bool = True
    inherit_stdin: bool = False


async def run_command(argv: Sequence[str], options: SpawnOptions = SpawnOptions()) -> int:
    """
    Run argv to completion.

    Raises CommandError if it cannot be started or exits non-zero.
    Cancelling the wait kills the child and reaps it first.
    """
    devnull = asyncio.subprocess.DEVNULL
    # Anything we printed must come out before the child's output
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=None if options.inherit_stdin else devnull,
            stdout=None if options.inherit_stdout else devnull,
            stderr=None if options.inherit_stderr else devnull,
        )
    except OSError as e:
        raise CommandError(argv, e) from e

    try:
        returncode = await proc.wait()
    except asyncio.CancelledError:
        # Never leave the child running behind us
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise

    if returncode < 0:
        raise CommandError(argv, f"killed by signal {-returncode}", returncode)
    if returncode != 0:
        raise CommandError(argv, f"exit status {returncode}", returncode)
    return returncode


Forwarder = Callable[[EventRecord], Awaitable[None]]
Spawner = Callable[[Sequence[str], SpawnOptions], Awaitable[int]]


class EventProxy:
    """
    Run a command for each execute of `target`; forward everything else.

    Args:
        target: execute text to intercept, compared literally
        argv: command and arguments to run on a match
        forward: coroutine that hands a record back to acme
        spawn: coroutine that runs argv (run_command by default)
        options: stream inheritance for the spawned command
    """

    def __init__(self, target: str, argv: Sequence[str], forward: Forwarder,
                 spawn: Spawner = run_command,
                 options: SpawnOptions = SpawnOptions()):
        if not argv:
            raise ValueError("EventProxy needs a command to run")
        self.target = target
        self.argv: List[str] = list(argv)
        self.forward = forward
        self.spawn = spawn
        self.options = options
        self.state = ProxyState.LISTENING
        self.dispatched = 0
        self.forwarded = 0
        self.failed = 0

    def matches(self, record: EventRecord) -> bool:
        """Execute events (tag or body) whose text is exactly the target."""
        return record.is_execute and record.text == self.target

    async def run(self, events: asyncio.Queue):
        """
        Consume events until EOF.

        Returns normally when the stream ends. Raises ForwardError if an
        event cannot be handed back, since the window is then unusable.
        """
        self.state = ProxyState.LISTENING
        while True:
            item = await events.get()
            if item is EOF:
                self.state = ProxyState.CLOSED
                logger.info(
                    f"Event stream ended: {self.dispatched} dispatched, "
                    f"{self.forwarded} forwarded"
                )
                return

            self.state = ProxyState.DECIDING
            if self.matches(item):
                self.state = ProxyState.DISPATCHING
                await self._dispatch(item)
            else:
                self.state = ProxyState.FORWARDING
                await self._forward(item)
            self.state = ProxyState.LISTENING

    async def _dispatch(self, record: EventRecord):
        where = "tag" if record.in_tag else "body"
        logger.debug(f"Intercepted {record.text!r} executed in the {where}")
        self.dispatched += 1
        try:
            await self.spawn(self.argv, self.options)
        except CommandError as e:
            self.failed += 1
            logger.error(f"Command failed: {e}")

    async def _forward(self, record: EventRecord):
        try:
            await self.forward(record)
        except ForwardError:
            self.state = ProxyState.CLOSED
            raise
        except AcmeError as e:
            self.state = ProxyState.CLOSED
            raise ForwardError(f"forward {record.origin}{record.kind} {record.text!r}: {e}") from e
        self.forwarded += 1
