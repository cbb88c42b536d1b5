# Async 9P2000 client
from .client import (
    P9Client,
    P9Error,
    P9ConnectionError,
    Fid,
    MessageType,
    OpenMode,
)
from .dial import Address, parse_address, namespace, service_address
from .types import Qid, Stat

__all__ = [
    'P9Client',
    'P9Error',
    'P9ConnectionError',
    'Fid',
    'MessageType',
    'OpenMode',
    'Address',
    'parse_address',
    'namespace',
    'service_address',
    'Qid',
    'Stat',
]
