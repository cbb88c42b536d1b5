"""
ninep.client - Async 9P2000 Client Library

Speaks 9P directly over a TCP or unix socket, so a file server such as
acme can be driven without mounting it via `9pfuse` or `mount -t 9p`.

Responses are demultiplexed by tag, which lets several RPCs be in flight
on one connection at once (e.g. a blocking Tread on a window's event
file while a Twrite sends an event back).

Usage:
    async with P9Client(parse_address("unix!/tmp/ns.glenda.:0/acme")) as p9:
        fid = await p9.walk_open("new/ctl", OpenMode.ORDWR)
        line = await p9.read(fid, 0)
        await p9.clunk(fid)
"""

import asyncio
import logging
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional

from .dial import Address
from .types import Qid, Stat, QID_SIZE

logger = logging.getLogger(__name__)


# =============================================================================
# 9P2000 Protocol Constants
# =============================================================================

class MessageType(IntEnum):
    """9P message types"""
    Tversion = 100
    Rversion = 101
    Tauth = 102
    Rauth = 103
    Tattach = 104
    Rattach = 105
    Rerror = 107
    Tflush = 108
    Rflush = 109
    Twalk = 110
    Rwalk = 111
    Topen = 112
    Ropen = 113
    Tcreate = 114
    Rcreate = 115
    Tread = 116
    Rread = 117
    Twrite = 118
    Rwrite = 119
    Tclunk = 120
    Rclunk = 121
    Tremove = 122
    Rremove = 123
    Tstat = 124
    Rstat = 125
    Twstat = 126
    Rwstat = 127


class OpenMode(IntEnum):
    """9P open modes"""
    OREAD = 0
    OWRITE = 1
    ORDWR = 2
    OEXEC = 3
    OTRUNC = 0x10


NOTAG = 0xFFFF
NOFID = 0xFFFFFFFF

# size[4] type[1] tag[2] fid[4] offset[8] count[4]
IOHDRSZ = 24
MAXWELEM = 16


# =============================================================================
# Exceptions
# =============================================================================

class P9Error(Exception):
    """Error from 9P server (Rerror message)"""
    pass


class P9ConnectionError(Exception):
    """Connection to 9P server failed or was lost"""
    pass


# =============================================================================
# Low-Level 9P Client
# =============================================================================

@dataclass
class Fid:
    """An open file on the server, with the client-side cursor."""
    fid: int
    path: str = ""
    qid: Optional[Qid] = None
    iounit: int = 0
    offset: int = 0


class P9Client:
    """
    Async 9P2000 client.

    Handles the 9P wire protocol over a stream socket. Fids are handed
    out to callers; they own the cursor in Fid.offset and must clunk
    what they open.
    """

    def __init__(self, address: Address, msize: int = 8192, uname: str = "none"):
        self.address = address
        self.uname = uname
        self.msize = msize
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._tag = 0
        self._next_fid_num = 1
        self._root_fid = 0
        self._write_lock = asyncio.Lock()   # Serializes sends on the socket
        self._pending: Dict[int, asyncio.Future] = {}  # tag -> Future for response
        self._reader_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self):
        """Connect to the 9P server and perform the handshake"""
        try:
            if self.address.network == "unix":
                self.reader, self.writer = await asyncio.open_unix_connection(
                    self.address.path
                )
            else:
                self.reader, self.writer = await asyncio.open_connection(
                    self.address.host, self.address.port
                )
        except OSError as e:
            raise P9ConnectionError(f"dial {self.address}: {e}") from e

        if self.address.network == "tcp":
            # Disable Nagle for low latency
            sock = self.writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        try:
            # Protocol version negotiation (before reader task starts)
            await self._version()
        except (asyncio.IncompleteReadError, OSError) as e:
            await self.disconnect()
            raise P9ConnectionError(f"version {self.address}: {e}") from e

        # Start background reader that demuxes responses by tag
        self._reader_task = asyncio.ensure_future(self._reader_loop())

        await self._attach()
        logger.debug(f"Connected to {self.address} (msize={self.msize})")

    async def disconnect(self):
        """Close the connection; pending RPCs fail with P9ConnectionError"""
        if self.writer is None:
            return

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        self._fail_pending(P9ConnectionError("Connection closed"))

        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass

        self.reader = None
        self.writer = None

    @property
    def connected(self) -> bool:
        """Check if connected"""
        return self.writer is not None and not self.writer.is_closing()

    # -------------------------------------------------------------------------
    # High-Level Operations
    # -------------------------------------------------------------------------

    async def walk_open(self, path: str, mode: int = OpenMode.OREAD) -> Fid:
        """
        Walk to path and open it.

        Args:
            path: Path relative to root (e.g., "12/event")
            mode: Open mode (OREAD, OWRITE, ORDWR)

        Returns:
            A fresh Fid with its cursor at 0
        """
        elements = [e for e in path.split("/") if e]
        if len(elements) > MAXWELEM:
            raise P9Error(f"{path}: too many path elements")

        fid = self._alloc_fid()
        fid.path = path

        qids = await self._walk(self._root_fid, fid.fid, elements)
        if len(qids) < len(elements):
            # Partial walk: newfid was not assigned by the server
            raise P9Error(f"{path}: file does not exist")
        if qids:
            fid.qid = qids[-1]

        try:
            fid.qid, fid.iounit = await self._open(fid.fid, mode)
        except P9Error:
            await self._clunk_quietly(fid.fid)
            raise

        return fid

    async def read(self, fid: Fid, offset: int, count: int = 0) -> bytes:
        """
        Read from an open file.

        Args:
            fid: File identifier
            offset: Byte offset to read from
            count: Maximum bytes to read (0 = largest a message allows)

        Returns:
            Data read (may be shorter than count, empty on EOF)
        """
        limit = self.max_io(fid)
        if count <= 0 or count > limit:
            count = limit

        payload = struct.pack("<IQI", fid.fid, offset, count)
        response = await self._rpc(MessageType.Tread, payload)
        self._check(response, MessageType.Rread)

        # Rread: type[1] tag[2] count[4] data[count]
        data_count = struct.unpack_from("<I", response, 3)[0]
        return response[7:7 + data_count]

    async def write(self, fid: Fid, offset: int, data: bytes) -> int:
        """
        Write to an open file.

        Args:
            fid: File identifier
            offset: Byte offset to write to
            data: Data to write (must fit in a single 9P message)

        Returns:
            Number of bytes the server accepted
        """
        payload = struct.pack("<IQI", fid.fid, offset, len(data))
        payload += data

        response = await self._rpc(MessageType.Twrite, payload)
        self._check(response, MessageType.Rwrite)

        # Rwrite: type[1] tag[2] count[4]
        return struct.unpack_from("<I", response, 3)[0]

    async def write_all(self, fid: Fid, offset: int, data: bytes) -> int:
        """
        Write all data, chunking to fit within msize.

        Stops at the first short write and returns the total so far, so
        the caller can tell a partial write from a complete one.
        """
        max_chunk = self.max_io(fid)
        total = 0
        while data:
            chunk = data[:max_chunk]
            data = data[max_chunk:]
            written = await self.write(fid, offset + total, chunk)
            total += written
            if written < len(chunk):
                break
        return total

    async def stat(self, fid: Fid) -> Stat:
        """Stat an open fid"""
        payload = struct.pack("<I", fid.fid)
        response = await self._rpc(MessageType.Tstat, payload)
        self._check(response, MessageType.Rstat)

        # Rstat: type[1] tag[2] nstat[2] stat[nstat]
        return Stat.unpack(response, 5)

    async def clunk(self, fid: Fid):
        """Release a fid"""
        payload = struct.pack("<I", fid.fid)
        response = await self._rpc(MessageType.Tclunk, payload)
        self._check(response, MessageType.Rclunk)

    def max_io(self, fid: Optional[Fid] = None) -> int:
        """Largest read or write payload a single message can carry"""
        limit = self.msize - IOHDRSZ
        if fid is not None and 0 < fid.iounit < limit:
            limit = fid.iounit
        return limit

    # -------------------------------------------------------------------------
    # 9P Protocol Primitives
    # -------------------------------------------------------------------------

    async def _version(self):
        """Negotiate protocol version (called before reader loop starts)"""
        version = b"9P2000"
        payload = struct.pack("<I", self.msize)
        payload += struct.pack("<H", len(version)) + version

        response = await self._rpc_inline(MessageType.Tversion, payload, tag=NOTAG)
        self._check(response, MessageType.Rversion)

        server_msize = struct.unpack_from("<I", response, 3)[0]
        vlen = struct.unpack_from("<H", response, 7)[0]
        server_version = response[9:9 + vlen].decode("utf-8", errors="replace")
        if not server_version.startswith("9P2000"):
            raise P9ConnectionError(f"Unsupported protocol version {server_version!r}")
        self.msize = min(self.msize, server_msize)

    async def _attach(self):
        """Attach to filesystem root"""
        uname = self.uname.encode("utf-8")
        aname = b""

        payload = struct.pack("<II", self._root_fid, NOFID)
        payload += struct.pack("<H", len(uname)) + uname
        payload += struct.pack("<H", len(aname)) + aname

        response = await self._rpc(MessageType.Tattach, payload)
        self._check(response, MessageType.Rattach)

    async def _walk(self, fid: int, newfid: int, wnames: List[str]) -> List[Qid]:
        """Walk from fid to newfid following wnames"""
        payload = struct.pack("<II", fid, newfid)
        payload += struct.pack("<H", len(wnames))

        for name in wnames:
            name_bytes = name.encode("utf-8")
            payload += struct.pack("<H", len(name_bytes)) + name_bytes

        response = await self._rpc(MessageType.Twalk, payload)
        self._check(response, MessageType.Rwalk)

        # Rwalk: type[1] tag[2] nwqid[2] qids...
        nwqid = struct.unpack_from("<H", response, 3)[0]
        return [Qid.unpack(response, 5 + i * QID_SIZE) for i in range(nwqid)]

    async def _open(self, fid: int, mode: int):
        """Open a walked fid; returns (qid, iounit)"""
        payload = struct.pack("<IB", fid, mode)
        response = await self._rpc(MessageType.Topen, payload)
        self._check(response, MessageType.Ropen)

        # Ropen: type[1] tag[2] qid[13] iounit[4]
        qid = Qid.unpack(response, 3)
        iounit = struct.unpack_from("<I", response, 3 + QID_SIZE)[0]
        return qid, iounit

    async def _flush(self, oldtag: int):
        """Abandon the request with oldtag; returns once the server forgets it"""
        if not self.connected or self._reader_task is None or self._reader_task.done():
            return
        try:
            response = await self._rpc(MessageType.Tflush, struct.pack("<H", oldtag))
            self._check(response, MessageType.Rflush)
        except (P9Error, P9ConnectionError) as e:
            logger.debug(f"flush of tag {oldtag} failed: {e}")

    async def _clunk_quietly(self, fid: int):
        payload = struct.pack("<I", fid)
        try:
            await self._rpc(MessageType.Tclunk, payload)
        except (P9Error, P9ConnectionError) as e:
            logger.debug(f"clunk fid {fid} failed: {e}")

    # -------------------------------------------------------------------------
    # Wire Protocol
    # -------------------------------------------------------------------------

    def _alloc_fid(self) -> Fid:
        """Allocate a new fid"""
        fid_num = self._next_fid_num
        self._next_fid_num += 1
        return Fid(fid_num)

    def _next_tag(self) -> int:
        """Get next tag"""
        self._tag = (self._tag + 1) & 0x7FFF
        return self._tag

    async def _rpc(self, msg_type: int, payload: bytes) -> bytes:
        """Send T-message and receive R-message.

        The _write_lock serializes sends; a background _reader_loop
        dispatches each response to the Future registered for its tag.
        The returned body starts at the type byte.
        """
        if not self.connected:
            raise P9ConnectionError("Not connected to 9P server")
        if self._reader_task is not None and self._reader_task.done():
            raise P9ConnectionError("Connection closed by server")

        tag = self._next_tag()

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._pending[tag] = fut

        sent = False
        try:
            size = 4 + 1 + 2 + len(payload)
            header = struct.pack("<IBH", size, msg_type, tag)

            async with self._write_lock:
                self.writer.write(header + payload)
                sent = True
                await self.writer.drain()

            return await fut
        except asyncio.CancelledError:
            # The server still holds the request (e.g. a blocked event read)
            if sent:
                await self._flush(tag)
            raise
        except OSError as e:
            raise P9ConnectionError(f"send: {e}") from e
        finally:
            self._pending.pop(tag, None)

    async def _rpc_inline(self, msg_type: int, payload: bytes, tag: int) -> bytes:
        """Send T-message and read R-message inline (before reader loop starts).

        Used only during version negotiation when no reader task is running.
        """
        size = 4 + 1 + 2 + len(payload)
        header = struct.pack("<IBH", size, msg_type, tag)

        self.writer.write(header + payload)
        await self.writer.drain()

        size_bytes = await self.reader.readexactly(4)
        resp_size = struct.unpack("<I", size_bytes)[0]
        return await self.reader.readexactly(resp_size - 4)

    async def _reader_loop(self):
        """Background task: read responses and dispatch by tag."""
        error: Exception = P9ConnectionError("Connection closed by server")
        try:
            while True:
                size_bytes = await self.reader.readexactly(4)
                size = struct.unpack("<I", size_bytes)[0]
                if size < 7 or size > self.msize + IOHDRSZ:
                    error = P9ConnectionError(f"Bad message size {size}")
                    break

                body = await self.reader.readexactly(size - 4)
                resp_tag = struct.unpack_from("<H", body, 1)[0]

                fut = self._pending.get(resp_tag)
                if fut and not fut.done():
                    fut.set_result(body)
                else:
                    logger.debug(f"Dropping response for unknown tag {resp_tag}")
        except asyncio.IncompleteReadError:
            pass
        except OSError as e:
            error = P9ConnectionError(f"Connection lost: {e}")
        finally:
            self._fail_pending(error)

    def _fail_pending(self, error: Exception):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(error)
        self._pending.clear()

    @staticmethod
    def _check(response: bytes, expected: MessageType):
        """Raise P9Error on Rerror, P9ConnectionError on a mismatched reply"""
        rtype = response[0]
        if rtype == MessageType.Rerror:
            # Rerror: type[1] tag[2] ename[s]
            ename_len = struct.unpack_from("<H", response, 3)[0]
            ename = response[5:5 + ename_len].decode("utf-8", errors="replace")
            raise P9Error(ename)
        if rtype != expected:
            raise P9ConnectionError(
                f"Unexpected reply type {rtype}, wanted {expected.name}"
            )
