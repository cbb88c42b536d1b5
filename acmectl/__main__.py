"""
acmectl - manipulate acme windows from the shell

Usage:
    acmectl new
    acmectl ctl <winid> <ctl...>
    acmectl write <winid> <winfile>  < data
    acmectl read <winid> <winfile>
    acmectl ls <winid>
    acmectl onexec <winid> <event> <command> [args...]
    acmectl windows

Examples:
    id=$(acmectl new)
    echo hello | acmectl write $id body
    acmectl ctl $id name /tmp/scratch
    acmectl onexec $id Run make test    # middle-click "Run" in the tag

acme is reached through its 9P socket in the plan9port namespace, or
through --addr / ACMECTL_ADDR (unix!path, tcp!host!port, host:port).
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .commands import Operation, Request, run
from .config import load_config
from .errors import AcmeError
from .win import WINDOW_FILES


def window_id(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"parse winid: invalid window id {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"parse winid: window id must be positive, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acmectl",
        description="acmectl allows you to manipulate the acme editor easily from the shell",
    )
    parser.add_argument(
        '--addr',
        help='9P address of acme (default: $ACMECTL_ADDR or <namespace>/acme)'
    )
    parser.add_argument(
        '--verbose', '-v', action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--debug', '-d', action='store_true',
        help='Enable debug logging'
    )

    sub = parser.add_subparsers(dest="op", metavar="command")
    sub.required = True

    sub.add_parser("new", help="create a new acme window and print its ID")

    p = sub.add_parser("ctl", help="send an acme control message to the given window")
    p.add_argument("winid", type=window_id)
    p.add_argument("ctl", nargs=argparse.REMAINDER, help="control message words")

    p = sub.add_parser("write", help="copy stdin to the end of the window's winfile")
    p.add_argument("winid", type=window_id)
    p.add_argument("winfile", choices=WINDOW_FILES)

    p = sub.add_parser("read", help="print the entire contents of the given winfile")
    p.add_argument("winid", type=window_id)
    p.add_argument("winfile", choices=WINDOW_FILES)

    p = sub.add_parser("ls", help="list the available window files")
    p.add_argument("winid", nargs="?")

    p = sub.add_parser(
        "onexec",
        help="run a command whenever the given text is executed in the window; "
             "exits when the window is closed",
    )
    p.add_argument("winid", type=window_id)
    p.add_argument("event", help="execute text to intercept, matched exactly")
    p.add_argument("command")
    p.add_argument("args", nargs=argparse.REMAINDER)

    sub.add_parser("windows", help="list acme's open windows")

    return parser


def parse_request(parser: argparse.ArgumentParser, args: argparse.Namespace) -> Request:
    op = Operation(args.op)
    req = Request(op)
    if op in (Operation.CTL, Operation.WRITE, Operation.READ, Operation.ONEXEC):
        req.win_id = args.winid
    if op in (Operation.WRITE, Operation.READ):
        req.file = args.winfile
    if op is Operation.CTL:
        if not args.ctl:
            parser.error("ctl: a control message is required")
        req.text = list(args.ctl)
    if op is Operation.ONEXEC:
        req.event_text = args.event
        req.argv = [args.command] + list(args.args)
    return req


def setup_logging(verbose: bool, debug: bool):
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format='%(asctime)s %(name)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    req = parse_request(parser, args)

    try:
        config = load_config(addr=args.addr)
    except ValueError as e:
        parser.error(str(e))

    setup_logging(args.verbose, args.debug or config.debug)

    try:
        asyncio.run(run(req, config, sys.stdin.buffer, sys.stdout.buffer))
    except AcmeError as e:
        print(f"acmectl: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == '__main__':
    sys.exit(main())
