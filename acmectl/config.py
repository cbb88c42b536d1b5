"""
acmectl configuration.

Settings come from the environment (optionally seeded from a .env file)
and can be overridden on the command line:

    ACMECTL_ADDR    dial string for acme's 9P server
                    (default: unix socket <namespace>/acme)
    NAMESPACE       plan9port namespace directory
    DISPLAY, USER   used to derive the namespace when NAMESPACE is unset
    ACMECTL_MSIZE   maximum 9P message size (default 8192)
    ACMECTL_DEBUG   any non-empty value other than 0/false enables debug logging
"""

import getpass
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from ninep import Address, parse_address, service_address

DEFAULT_MSIZE = 8192
MIN_MSIZE = 256


@dataclass
class Config:
    address: Address
    uname: str = "none"
    msize: int = DEFAULT_MSIZE
    debug: bool = False


def _flag(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() not in ("0", "false", "no", "off")


def load_config(addr: Optional[str] = None,
                env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build the configuration.

    Args:
        addr: dial string from the command line; beats ACMECTL_ADDR
        env: environment to read instead of os.environ (no .env loading)

    Raises:
        ValueError: on a malformed address or message size
    """
    if env is None:
        load_dotenv()
        env = os.environ

    spec = addr or env.get("ACMECTL_ADDR")
    address = parse_address(spec) if spec else service_address("acme", env)

    msize_text = env.get("ACMECTL_MSIZE")
    msize = DEFAULT_MSIZE
    if msize_text:
        try:
            msize = int(msize_text)
        except ValueError:
            raise ValueError(f"ACMECTL_MSIZE must be an integer, got {msize_text!r}") from None
        if msize < MIN_MSIZE:
            raise ValueError(f"ACMECTL_MSIZE must be at least {MIN_MSIZE}")

    uname = env.get("USER") or env.get("LOGNAME")
    if not uname:
        try:
            uname = getpass.getuser()
        except (KeyError, OSError):
            uname = "none"

    return Config(
        address=address,
        uname=uname,
        msize=msize,
        debug=_flag(env.get("ACMECTL_DEBUG")),
    )
