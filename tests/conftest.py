"""Shared fixtures: an in-memory stand-in for acme's 9P file tree."""

from collections import deque

import pytest

from ninep import Fid, P9Error, Qid, Stat
from acmectl.win import WINDOW_FILES


class FakeWindow:
    def __init__(self, win_id: int):
        self.id = win_id
        self.body = bytearray()
        self.tag = bytearray(f"/tmp/w{win_id} Del Snarf | Look ".encode())
        self.ctl_log = []
        self.event_chunks = deque()     # bytes, or an exception to raise
        self.event_writes = []
        self.addr = b""
        self.data_writes = []
        self.q0 = 0
        self.q1 = 0
        self.deleted = False
        self.dirty = False


class FakeAcme:
    """
    Implements the slice of P9Client that Win uses, against a dict of
    windows. Body and tag writes append, as in acme; the event file
    drains event_chunks and then reports EOF.
    """

    def __init__(self):
        self.windows = {}
        self.next_id = 1
        self.msize = 8192
        self.writes = []            # (path, bytes) for every successful write
        self.opened = []            # paths, in open order
        self.clunked = []
        self.fail_write = set()     # paths whose writes raise P9Error
        self.short_write = {}       # path -> max bytes accepted per write
        self.fail_open = set()
        self.disconnected = False
        self._fid = 0

    def add_window(self) -> FakeWindow:
        win = FakeWindow(self.next_id)
        self.windows[win.id] = win
        self.next_id += 1
        return win

    def _new_fid(self, path: str) -> Fid:
        self._fid += 1
        self.opened.append(path)
        return Fid(self._fid, path=path, qid=Qid(path=self._fid))

    def _lookup(self, path: str):
        win_id, name = path.split("/", 1)
        win = self.windows.get(int(win_id))
        if win is None or win.deleted:
            raise P9Error("file does not exist")
        return win, name

    async def walk_open(self, path: str, mode: int = 0) -> Fid:
        if path in self.fail_open:
            raise P9Error("permission denied")
        if path == "new/ctl":
            win = self.add_window()
            return self._new_fid(f"{win.id}/ctl")
        if path == "index":
            return self._new_fid("index")
        parts = path.split("/")
        if len(parts) != 2 or not parts[0].isdigit() or parts[1] not in WINDOW_FILES:
            raise P9Error("file does not exist")
        self._lookup(path)
        return self._new_fid(path)

    def max_io(self, fid=None) -> int:
        return self.msize - 24

    async def read(self, fid: Fid, offset: int, count: int = 0) -> bytes:
        if count <= 0:
            count = self.max_io(fid)
        if fid.path == "index":
            lines = []
            for win in self.windows.values():
                if win.deleted:
                    continue
                lines.append(
                    f"{win.id:11d} {len(win.tag):11d} {len(win.body):11d} "
                    f"{0:11d} {int(win.dirty):11d} {win.tag.decode()}\n"
                )
            return "".join(lines).encode()[offset:offset + count]

        win, name = self._lookup(fid.path)
        if name == "ctl":
            line = (
                f"{win.id:11d} {len(win.tag):11d} {len(win.body):11d} "
                f"{0:11d} {int(win.dirty):11d} {640:11d} font 16 \n"
            ).encode()
            return line[offset:offset + count]
        if name == "body":
            return bytes(win.body[offset:offset + count])
        if name == "tag":
            return bytes(win.tag[offset:offset + count])
        if name == "addr":
            return f"{win.q0:11d} {win.q1:11d} ".encode()[:count]
        if name == "event":
            if not win.event_chunks:
                return b""
            item = win.event_chunks.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        return b""

    async def write(self, fid: Fid, offset: int, data: bytes) -> int:
        if fid.path in self.fail_write:
            raise P9Error("i/o error")
        limit = self.short_write.get(fid.path)
        if limit is not None:
            data = data[:limit]

        win, name = self._lookup(fid.path)
        if name == "body":
            win.body += data
            win.dirty = True
        elif name == "tag":
            win.tag += data
        elif name == "ctl":
            for line in data.decode().splitlines():
                win.ctl_log.append(line)
                if line in ("del", "delete"):
                    win.deleted = True
                elif line == "clean":
                    win.dirty = False
        elif name == "event":
            win.event_writes.append(bytes(data))
        elif name == "addr":
            win.addr = bytes(data)
        elif name == "data":
            win.data_writes.append(bytes(data))
            if win.addr == b",":
                win.body = bytearray(data)
        self.writes.append((fid.path, bytes(data)))
        return len(data)

    async def write_all(self, fid: Fid, offset: int, data: bytes) -> int:
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
        win, name = self._lookup(fid.path)
        length = len(win.body) if name == "body" else 0
        return Stat(qid=fid.qid, length=length, name=name)

    async def clunk(self, fid: Fid):
        self.clunked.append(fid.path)

    async def disconnect(self):
        self.disconnected = True


@pytest.fixture
def acme():
    return FakeAcme()
