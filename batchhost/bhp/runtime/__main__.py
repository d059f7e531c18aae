#!/usr/bin/env python3
"""
BHP handler executable.

Started by the host as ``python -m batchhost.bhp.runtime``. It only parses
its arguments, loads the handler and hands over to HandlerRuntime.
"""

import argparse
import sys
import traceback
from typing import Optional, Sequence

from batchhost.bhp.protocol.messages import Message, MessageType
from batchhost.bhp.runtime.errors import HandlerLoadError
from batchhost.bhp.runtime.handler import HandlerRuntime, load_handler
from batchhost.bhp.runtime.io import claim_stdout, configure_streams, write_message


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="batchhost.bhp.runtime")
    parser.add_argument("--function", required=True)
    location = parser.add_mutually_exclusive_group(required=True)
    location.add_argument("--module")
    location.add_argument("--file")
    parser.add_argument("--path", help="Directory searched first when importing --module.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_streams(inbound=sys.stdin, outbound=claim_stdout())

    label = f"{args.module or args.file}:{args.function}"
    try:
        handler = load_handler(args.function, module=args.module, path=args.path, file=args.file)
    except Exception as exc:
        # Covers HandlerLoadError as well as whatever the handler's own import raised.
        message = str(exc) if isinstance(exc, HandlerLoadError) else f"{type(exc).__name__}: {exc}"
        traceback.print_exc(file=sys.stderr)
        write_message(
            Message(
                type=MessageType.ERROR,
                payload={"id": None, "message": message, "traceback": traceback.format_exc()},
            ).to_dict()
        )
        return 2

    try:
        return HandlerRuntime(handler, label=label).run()

    except Exception:
        # Truly unexpected failure.
        traceback.print_exc(file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
