"""
ninep.dial - resolve where a 9P service lives.

Accepted address forms:

    unix!/tmp/ns.glenda.:0/acme     Plan 9 style dial string, unix socket
    tcp!localhost!5640              Plan 9 style dial string, TCP
    localhost:5640                  host:port
    /tmp/ns.glenda.:0/acme          bare path, unix socket

Without an explicit address a service is looked up the way plan9port
does it: a unix socket named after the service inside the namespace
directory ($NAMESPACE, or /tmp/ns.$USER.$DISPLAY).
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Address:
    """A resolved 9P server address."""
    network: str            # "unix" or "tcp"
    path: str = ""          # unix socket path
    host: str = ""
    port: int = 0

    def __str__(self) -> str:
        if self.network == "unix":
            return f"unix!{self.path}"
        return f"tcp!{self.host}!{self.port}"


def parse_address(spec: str) -> Address:
    """
    Parse a dial string into an Address.

    Raises ValueError for anything that is not one of the accepted forms.
    """
    spec = spec.strip()
    if not spec:
        raise ValueError("Empty address")

    if "!" in spec:
        parts = spec.split("!")
        net = parts[0]
        if net == "unix" and len(parts) == 2 and parts[1]:
            return Address("unix", path=parts[1])
        if net in ("tcp", "net") and len(parts) == 3:
            return Address("tcp", host=parts[1], port=_parse_port(parts[2], spec))
        raise ValueError(f"Invalid dial string '{spec}'. Expected unix!path or tcp!host!port")

    if spec.startswith("/") or spec.startswith("."):
        return Address("unix", path=spec)

    if ":" in spec:
        host, port_str = spec.rsplit(":", 1)
        return Address("tcp", host=host or "localhost", port=_parse_port(port_str, spec))

    raise ValueError(f"Invalid address '{spec}'. Expected host:port or a socket path")


def _parse_port(text: str, spec: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ValueError(f"Invalid port in address '{spec}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in address '{spec}'")
    return port


def namespace(env: Optional[Mapping[str, str]] = None) -> str:
    """
    Return the plan9port namespace directory.

    $NAMESPACE wins; otherwise /tmp/ns.$USER.$DISPLAY with a trailing
    ".0" screen number dropped from DISPLAY, as plan9port does.
    """
    env = os.environ if env is None else env
    ns = env.get("NAMESPACE")
    if ns:
        return ns

    display = env.get("DISPLAY") or ":0.0"
    if display.endswith(".0"):
        display = display[:-2]
    user = env.get("USER") or env.get("LOGNAME") or "none"
    return f"/tmp/ns.{user}.{display}"


def service_address(service: str, env: Optional[Mapping[str, str]] = None) -> Address:
    """Unix socket address of a named service in the namespace."""
    return Address("unix", path=os.path.join(namespace(env), service))
