"""
acmectl.win - one acme window as a client-side session.

Each acme window is a directory in acme's file tree:

  index          - one line per window: id, tag/body lengths, flags, tag
  new/ctl        - opening it creates a window; reading gives its ctl line
  <id>/addr      - address of the next data/xdata access
  <id>/body      - window body; writes append
  <id>/ctl       - control messages (name, clean, del, show, ...)
  <id>/data      - body text at addr
  <id>/event     - event stream, and write-back of unhandled events
  <id>/tag       - tag line; writes append
  <id>/xdata     - like data, but reads stop at the end of addr

A Win holds at most one open fid per file, opened on first use. Each fid
carries its own cursor, so seeking one file never moves another.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

from ninep import P9Client, P9Error, P9ConnectionError, Fid, OpenMode

from .config import Config
from .errors import SessionError, WindowIOError, ControlError
from .event import EOF, Action, EventFormatError, EventParser, EventRecord

logger = logging.getLogger(__name__)

WINDOW_FILES = ("addr", "body", "ctl", "data", "event", "tag", "xdata")

EVENT_QUEUE_SIZE = 64


class Whence(IntEnum):
    START = 0
    CURRENT = 1
    END = 2


@dataclass
class WindowInfo:
    """One line of acme's index file."""
    id: int
    tag_length: int
    body_length: int
    is_dir: bool
    dirty: bool
    tag: str


_P9_ERRORS = (P9Error, P9ConnectionError)


async def dial(config: Config) -> P9Client:
    """Connect to acme's file server."""
    client = P9Client(config.address, msize=config.msize, uname=config.uname)
    try:
        await client.connect()
    except _P9_ERRORS as e:
        raise SessionError(f"connect to acme: {e}") from e
    return client


class Win:
    """
    An open acme window.

    Create one with Win.new() or Win.open(); release it with close().
    After close() or delete() every operation raises SessionError.
    """

    def __init__(self, client: P9Client, win_id: int, ctl: Fid):
        self.client = client
        self._id = win_id
        self._handles: Dict[str, Fid] = {"ctl": ctl}
        self._closed = False
        self._event_task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"Win(id={self._id}{', closed' if self._closed else ''})"

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    @property
    def id(self) -> int:
        return self._id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handles(self) -> Dict[str, Fid]:
        """Currently open files by name."""
        return dict(self._handles)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @classmethod
    async def new(cls, client: P9Client) -> 'Win':
        """Ask acme for a new window."""
        try:
            ctl = await client.walk_open("new/ctl", OpenMode.ORDWR)
        except _P9_ERRORS as e:
            raise SessionError(f"create window: {e}") from e

        try:
            line = await client.read(ctl, 0)
            win_id = int(line.split()[0])
        except _P9_ERRORS as e:
            await cls._release(client, ctl)
            raise SessionError(f"create window: read ctl: {e}") from e
        except (IndexError, ValueError):
            await cls._release(client, ctl)
            raise SessionError(f"create window: bad ctl line {line[:60]!r}") from None

        logger.info(f"Created window {win_id}")
        return cls(client, win_id, ctl)

    @classmethod
    async def open(cls, client: P9Client, win_id: int) -> 'Win':
        """Attach to an existing window by id."""
        if win_id <= 0:
            raise SessionError(f"open window: invalid id {win_id}")
        try:
            ctl = await client.walk_open(f"{win_id}/ctl", OpenMode.ORDWR)
        except _P9_ERRORS as e:
            raise SessionError(f"open window {win_id}: {e}") from e

        logger.debug(f"Opened window {win_id}")
        return cls(client, win_id, ctl)

    @staticmethod
    async def windows(client: P9Client) -> List[WindowInfo]:
        """List acme's open windows from its index file."""
        try:
            fid = await client.walk_open("index", OpenMode.OREAD)
        except _P9_ERRORS as e:
            raise WindowIOError("open", "index", e) from e

        chunks = []
        offset = 0
        try:
            while True:
                chunk = await client.read(fid, offset)
                if not chunk:
                    break
                chunks.append(chunk)
                offset += len(chunk)
        except _P9_ERRORS as e:
            raise WindowIOError("read", "index", e) from e
        finally:
            await Win._release(client, fid)

        infos = []
        for line in b"".join(chunks).decode("utf-8", errors="replace").splitlines():
            parts = line.split(None, 5)
            if len(parts) < 5:
                continue
            try:
                nums = [int(p) for p in parts[:5]]
            except ValueError:
                logger.warning(f"Skipping malformed index line {line!r}")
                continue
            infos.append(WindowInfo(
                id=nums[0],
                tag_length=nums[1],
                body_length=nums[2],
                is_dir=bool(nums[3]),
                dirty=bool(nums[4]),
                tag=parts[5].rstrip() if len(parts) > 5 else "",
            ))
        return infos

    async def close(self):
        """Release every open file. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._event_task is not None and not self._event_task.done():
            # The client flushes the blocked Tread before the fid is clunked
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
        self._event_task = None

        handles = list(self._handles.values())
        self._handles.clear()
        for fid in handles:
            await self._release(self.client, fid)

    @staticmethod
    async def _release(client: P9Client, fid: Fid):
        try:
            await client.clunk(fid)
        except _P9_ERRORS as e:
            logger.debug(f"clunk {fid.path or fid.fid} failed: {e}")

    async def _fid(self, name: str) -> Fid:
        if self._closed:
            raise SessionError(f"window {self._id} is closed")
        if name not in WINDOW_FILES:
            raise WindowIOError("open", name, "no such window file")

        fid = self._handles.get(name)
        if fid is None:
            try:
                fid = await self.client.walk_open(f"{self._id}/{name}", OpenMode.ORDWR)
            except _P9_ERRORS as e:
                raise WindowIOError("open", name, e) from e
            self._handles[name] = fid
        return fid

    # -------------------------------------------------------------------------
    # File operations
    # -------------------------------------------------------------------------

    async def seek(self, file: str, offset: int, whence: Whence = Whence.START) -> int:
        """Move the cursor of file; returns the new offset."""
        fid = await self._fid(file)

        if whence == Whence.START:
            pos = offset
        elif whence == Whence.CURRENT:
            pos = fid.offset + offset
        elif whence == Whence.END:
            try:
                st = await self.client.stat(fid)
            except _P9_ERRORS as e:
                raise WindowIOError("seek", file, e) from e
            pos = st.length + offset
        else:
            raise WindowIOError("seek", file, f"bad whence {whence!r}")

        if pos < 0:
            raise WindowIOError("seek", file, "negative offset")
        fid.offset = pos
        return pos

    async def read(self, file: str, count: int = 0) -> bytes:
        """One read at the cursor; empty at end of file."""
        fid = await self._fid(file)
        try:
            data = await self.client.read(fid, fid.offset, count)
        except _P9_ERRORS as e:
            raise WindowIOError("read", file, e) from e
        fid.offset += len(data)
        return data

    async def read_all(self, file: str) -> bytes:
        """The whole file, from offset 0 to the first empty read."""
        await self.seek(file, 0, Whence.START)
        chunks = []
        while True:
            chunk = await self.read(file)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    async def write(self, file: str, data: bytes) -> int:
        """
        Write data at the cursor.

        Large writes go out in message-sized chunks. A short write is an
        error even when some of the data was accepted.
        """
        fid = await self._fid(file)
        try:
            n = await self.client.write_all(fid, fid.offset, data)
        except _P9_ERRORS as e:
            raise WindowIOError("write", file, e) from e
        fid.offset += n
        if n < len(data):
            raise WindowIOError("write", file, f"short write ({n} of {len(data)} bytes)")
        return n

    async def write_from(self, file: str, stream, chunk_size: int = 8192) -> int:
        """Copy a binary stream into file until the stream ends."""
        loop = asyncio.get_running_loop()
        read = getattr(stream, "read1", stream.read)
        total = 0
        while True:
            try:
                chunk = await loop.run_in_executor(None, read, chunk_size)
            except OSError as e:
                raise WindowIOError("copy to", file, e) from e
            if not chunk:
                break
            total += await self.write(file, chunk)
        logger.debug(f"Window {self._id}: wrote {total} bytes to {file}")
        return total

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    async def ctl(self, message: str):
        """Send one control message. acme acts on it asynchronously."""
        data = (message + "\n").encode("utf-8")
        try:
            fid = await self._fid("ctl")
            n = await self.client.write_all(fid, 0, data)
        except (WindowIOError,) + _P9_ERRORS as e:
            raise ControlError(f"ctl {message!r}: {e}") from e
        if n < len(data):
            raise ControlError(f"ctl {message!r}: short write ({n} of {len(data)} bytes)")

    async def name(self, title: str):
        await self.ctl(f"name {title}")

    async def clean(self):
        """Mark the window clean."""
        await self.ctl("clean")

    async def delete(self, force: bool = False):
        """Close the window in acme, then release this session."""
        await self.ctl("delete" if force else "del")
        await self.close()

    async def addr(self, expr: str):
        """Set the address used by data and xdata."""
        fid = await self._fid("addr")
        try:
            await self.client.write(fid, 0, expr.encode("utf-8"))
        except _P9_ERRORS as e:
            raise WindowIOError("write", "addr", e) from e

    async def read_addr(self) -> Tuple[int, int]:
        """Current address as character offsets (q0, q1)."""
        fid = await self._fid("addr")
        try:
            data = await self.client.read(fid, 0, 40)
        except _P9_ERRORS as e:
            raise WindowIOError("read", "addr", e) from e
        parts = data.split()
        if len(parts) < 2:
            raise WindowIOError("read", "addr", f"short read {data!r}")
        try:
            return int(parts[0]), int(parts[1])
        except ValueError:
            raise WindowIOError("read", "addr", f"bad address {data!r}") from None

    async def clear(self):
        """Delete the whole body."""
        await self.addr(",")
        fid = await self._fid("data")
        try:
            await self.client.write(fid, 0, b"")
        except _P9_ERRORS as e:
            raise WindowIOError("write", "data", e) from e

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def event_queue(self, maxsize: int = EVENT_QUEUE_SIZE) -> asyncio.Queue:
        """
        Start reading the event file.

        Returns a queue that receives EventRecords in arrival order and
        finally EOF once the stream ends for any reason.
        """
        if self._event_task is not None:
            raise WindowIOError("open", "event", "already reading events")
        fid = await self._fid("event")
        queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._event_task = asyncio.ensure_future(self._read_events(fid, queue))
        return queue

    async def _read_events(self, fid: Fid, queue: asyncio.Queue):
        parser = EventParser()
        try:
            while True:
                data = await self.client.read(fid, 0)
                if not data:
                    logger.debug(f"Window {self._id}: event stream at EOF")
                    break
                for record in parser.feed(data):
                    await queue.put(record)
        except _P9_ERRORS as e:
            logger.info(f"Window {self._id}: event stream closed: {e}")
        except EventFormatError as e:
            logger.error(f"Window {self._id}: {e}")
        except Exception:
            logger.exception(f"Window {self._id}: event reader failed")

        if parser.pending:
            logger.warning(f"Window {self._id}: discarding incomplete event")
        await queue.put(EOF)

    async def write_event(self, record: EventRecord):
        """
        Hand an event back to acme for its default handling.

        Inserts and deletes have already been applied by acme and its
        event file does not take them back, so they need no write.
        """
        if record.action in (Action.INSERT, Action.DELETE):
            logger.debug(f"Window {self._id}: {record.origin}{record.kind} needs no write-back")
            return

        data = record.encode()
        fid = await self._fid("event")
        try:
            n = await self.client.write(fid, 0, data)
        except _P9_ERRORS as e:
            raise WindowIOError("write", "event", e) from e
        if n < len(data):
            raise WindowIOError("write", "event", f"short write ({n} of {len(data)} bytes)")
