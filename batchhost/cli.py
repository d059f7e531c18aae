from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from batchhost import __version__
from batchhost.core.config import get_runtime_config
from batchhost.core.errors import BatchHostError, format_error, wrap_error
from batchhost.core.logging import configure_logging, reset_logging
from batchhost.core.worker_config import WorkerConfig
from batchhost.pipeline.job import Job
from batchhost.pipeline.pipeline import Pipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchhost",
        description="Run batches of items through a Python handler in managed worker processes.",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Print version and exit.",
    )
    parser.add_argument(
        "--log-level",
        help="Override BATCHHOST_LOG_LEVEL for this run.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        help="Send items through the handler and print one output per line.",
    )
    _add_handler_arguments(run_parser)
    run_parser.add_argument(
        "--batch-size",
        type=int,
        default=64,
        help="Maximum number of items per batch (default: 64).",
    )
    run_parser.add_argument(
        "--parallelism",
        type=int,
        default=1,
        help="Number of handler processes (default: 1).",
    )
    run_parser.add_argument(
        "items",
        nargs="*",
        help="Items to process. Read from stdin, one per line, when omitted.",
    )
    run_parser.set_defaults(handler=handle_run)

    check_parser = subparsers.add_parser(
        "check",
        help="Validate a handler configuration and print its resolved layout.",
    )
    _add_handler_arguments(check_parser)
    check_parser.set_defaults(handler=handle_check)

    return parser


def _add_handler_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--function",
        required=True,
        help="Name of the handler function.",
    )
    location = parser.add_mutually_exclusive_group(required=True)
    location.add_argument(
        "--module",
        help="Handler module, imported from --base-dir.",
    )
    location.add_argument(
        "--file",
        help="Standalone handler file. Setup and cleanup scripts are not run.",
    )
    parser.add_argument(
        "--base-dir",
        help="Directory holding the handler module and optional init.sh/cleanup.sh.",
    )
    parser.add_argument(
        "--python",
        help="Interpreter used for the handler processes.",
    )


def _worker_config(args: argparse.Namespace, **extra: Any) -> WorkerConfig:
    values: dict[str, Any] = {
        "handler_function": args.function,
        "handler_module": args.module,
        "handler_file": Path(args.file).expanduser() if args.file else None,
        "base_dir": Path(args.base_dir).expanduser() if args.base_dir else None,
        "python_executable": args.python,
        **extra,
    }
    return WorkerConfig.build(**values)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _read_stdin_items() -> list[str]:
    try:
        return [line.rstrip("\n") for line in sys.stdin if line.strip()]
    except (OSError, UnicodeDecodeError) as exc:
        raise wrap_error(exc, code="input_unreadable", message="Could not read items from stdin") from exc


def handle_run(args: argparse.Namespace) -> None:
    config = _worker_config(args, max_batch_size=args.batch_size)
    items = list(args.items) if args.items else _read_stdin_items()

    pipeline = Pipeline.from_items(items).map_using_handler_batch(config, parallelism=args.parallelism)
    outputs = Job(pipeline).run().join()
    for output in outputs:
        print(_render(output))


def handle_check(args: argparse.Namespace) -> None:
    config = _worker_config(args)
    layout: dict[str, Any] = {
        "handler": config.handler_label,
        "working_dir": str(config.working_dir.resolve()),
        "lifecycle_scripts": config.lifecycle_scripts_enabled,
    }
    if config.handler_file is not None:
        layout["handler_file"] = str(config.handler_file.resolve())
        layout["handler_file_exists"] = config.handler_file.is_file()
    if config.lifecycle_scripts_enabled:
        for key, script in (
            ("init_script", config.init_script),
            ("cleanup_script", config.cleanup_script),
            ("requirements", config.requirements_file),
        ):
            layout[key] = str(script) if script is not None and script.is_file() else None
    print(json.dumps(layout, indent=2))


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    runtime = get_runtime_config()
    configure_logging(
        level=args.log_level or runtime.log_level,
        format_name=runtime.log_format,
        stream=sys.stderr,
        log_dir=runtime.log_dir,
        output_level=runtime.output_log_level,
    )

    try:
        args.handler(args)
    except BatchHostError as exc:
        raise SystemExit(format_error(exc)) from exc
    finally:
        reset_logging()


if __name__ == "__main__":
    main()
