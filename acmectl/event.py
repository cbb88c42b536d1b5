"""
acmectl.event - acme event messages.

Reading a window's event file yields messages of the form

    c1 c2 q0 ' ' q1 ' ' flag ' ' nr ' ' text '\\n'

c1 is the origin (E body/tag file write, F other file action,
K keyboard, M mouse) and c2 the kind: x/X execute, l/L look, i/I insert,
d/D delete; lower case in the tag, upper case in the body. nr counts
runes, not bytes. Some messages announce follow-ups that belong to the
same user action:

    flag & 2    one more message: the expansion of a null selection
    flag & 8    two more messages: a chorded argument and its origin

EventParser joins those into one EventRecord. Writing a record back asks
acme to perform its default action; acme only accepts

    c1 c2 q0 ' ' q1 ' ' '\\n'

with the addresses of the original message.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .errors import AcmeError

# acme truncates event text longer than this and reports nr = 0
EVENT_TEXT_MAX = 256


class EventFormatError(AcmeError):
    """The event file produced something that is not an event message"""
    pass


class Action(Enum):
    EXECUTE = "execute"
    LOOK = "look"
    INSERT = "insert"
    DELETE = "delete"
    OTHER = "other"

    @classmethod
    def from_kind(cls, kind: str) -> 'Action':
        return _ACTIONS.get(kind.lower(), cls.OTHER)


_ACTIONS = {
    "x": Action.EXECUTE,
    "l": Action.LOOK,
    "i": Action.INSERT,
    "d": Action.DELETE,
}


class _EndOfStream:
    """Queue sentinel: the window's event stream has ended."""

    def __repr__(self):
        return "EOF"


EOF = _EndOfStream()


@dataclass
class EventRecord:
    """One user action in a window, with any follow-up messages merged in."""
    origin: str
    kind: str
    q0: int = 0
    q1: int = 0
    flag: int = 0
    text: str = ""
    orig_q0: Optional[int] = None
    orig_q1: Optional[int] = None
    arg: str = ""
    loc: str = ""
    raw: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        if self.orig_q0 is None:
            self.orig_q0 = self.q0
        if self.orig_q1 is None:
            self.orig_q1 = self.q1

    @property
    def action(self) -> Action:
        return Action.from_kind(self.kind)

    @property
    def is_execute(self) -> bool:
        return self.action is Action.EXECUTE

    @property
    def in_tag(self) -> bool:
        return self.kind.islower()

    @property
    def nr(self) -> int:
        return len(self.text)

    def encode(self) -> bytes:
        """The line that hands this record back to acme."""
        return f"{self.origin}{self.kind}{self.orig_q0} {self.orig_q1} \n".encode("utf-8")


@dataclass
class _Message:
    c1: str
    c2: str
    q0: int
    q1: int
    flag: int
    text: str
    raw: bytes


def _rune_len(lead: int) -> int:
    if lead < 0x80:
        return 1
    if 0xC0 <= lead < 0xE0:
        return 2
    if 0xE0 <= lead < 0xF0:
        return 3
    if 0xF0 <= lead < 0xF8:
        return 4
    # Stray continuation or invalid byte decodes as one replacement rune
    return 1


def _take_runes(buf, pos: int, n: int) -> Optional[Tuple[str, int]]:
    start = pos
    for _ in range(n):
        if pos >= len(buf):
            return None
        pos += _rune_len(buf[pos])
    if pos > len(buf):
        return None
    return bytes(buf[start:pos]).decode("utf-8", errors="replace"), pos


def _take_number(buf, pos: int) -> Optional[Tuple[int, int]]:
    start = pos
    while pos < len(buf) and 0x30 <= buf[pos] <= 0x39:
        pos += 1
    if pos >= len(buf):
        return None
    if pos == start or buf[pos] != 0x20:
        raise EventFormatError(f"bad number in event message {bytes(buf[:pos + 1])!r}")
    return int(buf[start:pos]), pos + 1


def _parse_message(buf) -> Optional[Tuple[_Message, int]]:
    """Parse one message from the front of buf; None if it is incomplete."""
    got = _take_runes(buf, 0, 2)
    if got is None:
        return None
    c1c2, pos = got
    c1, c2 = c1c2[0], c1c2[1]

    numbers = []
    for _ in range(4):
        got = _take_number(buf, pos)
        if got is None:
            return None
        value, pos = got
        numbers.append(value)
    q0, q1, flag, nr = numbers
    if nr > EVENT_TEXT_MAX:
        raise EventFormatError(f"event text too long ({nr} runes)")

    got = _take_runes(buf, pos, nr)
    if got is None:
        return None
    text, pos = got

    if pos >= len(buf):
        return None
    if buf[pos] != 0x0A:
        raise EventFormatError(f"event message not newline terminated: {bytes(buf[:pos + 1])!r}")
    pos += 1

    return _Message(c1, c2, q0, q1, flag, text, bytes(buf[:pos])), pos


def _followups(flag: int) -> int:
    n = 0
    if flag & 2:
        n += 1
    if flag & 8:
        n += 2
    return n


def _merge(group: List[_Message]) -> EventRecord:
    first = group[0]
    record = EventRecord(
        origin=first.c1,
        kind=first.c2,
        q0=first.q0,
        q1=first.q1,
        flag=first.flag,
        text=first.text,
        raw=b"".join(m.raw for m in group),
    )
    rest = group[1:]
    if first.flag & 2:
        expansion, rest = rest[0], rest[1:]
        if first.q0 == first.q1:
            record.q0 = expansion.q0
            record.q1 = expansion.q1
            record.text = expansion.text
    if first.flag & 8:
        record.arg = rest[0].text
        record.loc = rest[1].text
    return record


class EventParser:
    """
    Incremental parser for the event file.

    Reads may split a message anywhere, including inside a multi-byte
    rune, or deliver several messages at once; feed() buffers until a
    record is complete.
    """

    def __init__(self):
        self._buf = bytearray()
        self._group: List[_Message] = []

    def feed(self, data: bytes) -> List[EventRecord]:
        self._buf += data
        records = []
        while True:
            parsed = _parse_message(self._buf)
            if parsed is None:
                break
            msg, used = parsed
            del self._buf[:used]
            self._group.append(msg)
            if len(self._group) == 1 + _followups(self._group[0].flag):
                records.append(_merge(self._group))
                self._group = []
        return records

    @property
    def pending(self) -> bool:
        """True if a partial record is buffered."""
        return bool(self._buf or self._group)
