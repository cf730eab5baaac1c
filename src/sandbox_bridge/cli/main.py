#!/usr/bin/env python3
"""
Sandbox Bridge CLI - run a source file in the isolated worker
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from sandbox_bridge.api import create_controller, run_code
from sandbox_bridge.cli.formatter import ResultFormatter
from sandbox_bridge.errors import ErrorKind, SandboxBridgeError
from sandbox_bridge.protocol.messages import Language
from sandbox_bridge.settings import get_settings
from sandbox_bridge.utils.loggers import configure_logging

EXTENSION_LANGUAGES = {
    ".py": Language.PYTHON.value,
    ".js": Language.JAVASCRIPT.value,
    ".mjs": Language.JAVASCRIPT.value,
    ".lua": Language.LUA.value,
}

EXIT_TIMEOUT = 124
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_SIGNAL_BASE = 128


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="sandbox-bridge",
        description="Run a source file in an isolated worker process",
    )
    parser.add_argument("script_path", type=str, help="Source file to execute")
    parser.add_argument(
        "--language", "-l",
        type=str,
        help="Language of the source (default: inferred from the file extension)",
    )

    stdin_group = parser.add_mutually_exclusive_group()
    stdin_group.add_argument("--stdin", "-i", type=str, help="Standard input as a string")
    stdin_group.add_argument("--stdin-file", type=str, help="Read standard input from a file")

    parser.add_argument(
        "--timeout-ms", "-t",
        type=int,
        default=None,
        help="Execution timeout in milliseconds (default: SANDBOX_BRIDGE_DEFAULT_TIMEOUT_MS or 5000)",
    )
    parser.add_argument(
        "--format",
        choices=["pretty", "json", "yaml"],
        default="pretty",
        help="Output format (default: pretty)",
    )
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run the dispatcher on this process's event loop instead of a worker process",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")
    return parser.parse_args(argv)


def infer_language(script_path: Path) -> Optional[str]:
    return EXTENSION_LANGUAGES.get(script_path.suffix.lower())


def exit_status(exit_code: int) -> int:
    """Shell-style status: a run killed by signal N exits with 128 + N"""
    if exit_code < 0:
        return EXIT_SIGNAL_BASE - exit_code
    return exit_code


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI function, returns the process exit code"""
    args = parse_args(argv)
    configure_logging(args.log_level, get_settings().log_format)

    script_path = Path(args.script_path)
    if not script_path.is_file():
        print(f"Error: Script file not found: {args.script_path}", file=sys.stderr)
        return EXIT_USAGE

    language = args.language or infer_language(script_path)
    if language is None:
        print(f"Error: Cannot infer language from '{script_path.suffix}', use --language", file=sys.stderr)
        return EXIT_USAGE

    if args.timeout_ms is not None and args.timeout_ms <= 0:
        print("Error: --timeout-ms must be positive", file=sys.stderr)
        return EXIT_USAGE

    try:
        code = script_path.read_text(encoding="utf-8")
        if args.stdin_file:
            stdin = Path(args.stdin_file).read_text(encoding="utf-8")
        else:
            stdin = args.stdin or ""
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    formatter = ResultFormatter(format=args.format)
    async with create_controller(in_process=args.in_process) as controller:
        try:
            result = await run_code(controller, language, code, stdin=stdin, timeout_ms=args.timeout_ms)
        except SandboxBridgeError as e:
            print(formatter.format_error(e), file=sys.stderr)
            if e.kind in (ErrorKind.EXECUTION_TIMEOUT, ErrorKind.REQUEST_TIMEOUT):
                return EXIT_TIMEOUT
            return EXIT_FAILURE

    print(formatter.format_result(result))
    return exit_status(result.exit_code)


def entry_point():
    """CLI entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    entry_point()
