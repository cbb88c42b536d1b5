"""
9P2000 wire structures the client needs to decode.

Only the pieces a client sees in responses are here: the qid returned by
walk/open and the stat entry returned by Tstat.
"""

from dataclasses import dataclass, field
import struct

QTFILE = 0x00     # Regular file

QID_SIZE = 13


def _pack_str(s: str) -> bytes:
    b = s.encode('utf-8')
    return struct.pack('<H', len(b)) + b


def _unpack_str(data: bytes, pos: int) -> tuple[str, int]:
    slen = struct.unpack_from('<H', data, pos)[0]
    s = data[pos + 2:pos + 2 + slen].decode('utf-8', errors='replace')
    return s, pos + 2 + slen


@dataclass(frozen=True)
class Qid:
    """Server-side unique file identity: type, version, path."""
    type: int = QTFILE
    version: int = 0
    path: int = 0

    def pack(self) -> bytes:
        return struct.pack('<BIQ', self.type, self.version, self.path)

    @classmethod
    def unpack(cls, data: bytes, pos: int = 0) -> 'Qid':
        type_, version, path = struct.unpack_from('<BIQ', data, pos)
        return cls(type_, version, path)


@dataclass
class Stat:
    """
    File metadata as carried by Rstat.

    Acme reports zero length for most window files; callers that seek
    relative to the end get whatever the server says.
    """
    type: int = 0
    dev: int = 0
    qid: Qid = field(default_factory=Qid)
    mode: int = 0
    atime: int = 0
    mtime: int = 0
    length: int = 0
    name: str = ""
    uid: str = ""
    gid: str = ""
    muid: str = ""

    def pack(self) -> bytes:
        """Pack to wire format, including the leading 2-byte size."""
        body = struct.pack('<HI', self.type, self.dev)
        body += self.qid.pack()
        body += struct.pack('<IIIQ', self.mode, self.atime, self.mtime, self.length)
        body += _pack_str(self.name)
        body += _pack_str(self.uid)
        body += _pack_str(self.gid)
        body += _pack_str(self.muid)
        return struct.pack('<H', len(body)) + body

    @classmethod
    def unpack(cls, data: bytes, pos: int = 0) -> 'Stat':
        """Unpack a stat entry starting at its 2-byte size field."""
        pos += 2
        type_, dev = struct.unpack_from('<HI', data, pos)
        pos += 6
        qid = Qid.unpack(data, pos)
        pos += QID_SIZE
        mode, atime, mtime, length = struct.unpack_from('<IIIQ', data, pos)
        pos += 20
        name, pos = _unpack_str(data, pos)
        uid, pos = _unpack_str(data, pos)
        gid, pos = _unpack_str(data, pos)
        muid, pos = _unpack_str(data, pos)
        return cls(type_, dev, qid, mode, atime, mtime, length, name, uid, gid, muid)
