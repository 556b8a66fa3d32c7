from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

from tools.hash_manifest import DEFAULT_MANIFEST_NAME
from tools.tree_hasher_core import (
    DEFAULT_ALGORITHM,
    AlgorithmUnavailableError,
    ConfigurationError,
    HasherConfig,
    Stats,
    TreeHasher,
    check_roots,
)

logger = logging.getLogger("tree_hasher")

EXECUTABLE_NAME = "tree-hasher"

STATUS_OK = 0
STATUS_HASH_ERROR = 1
STATUS_COMMAND_LINE_ERROR = 2
STATUS_MISSING_DIRECTORY = 3
STATUS_ALGORITHM_NOT_AVAILABLE = 4
STATUS_IO_ERROR = 5

_LOG_LEVELS: Dict[str, Optional[int]] = {
    "DEBUG": logging.DEBUG,
    "FINEST": logging.DEBUG,
    "FINER": logging.DEBUG,
    "FINE": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "SEVERE": logging.ERROR,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "OFF": None,
}


def _parse_log_level(value: str) -> str:
    key = value.upper()
    if key not in _LOG_LEVELS:
        raise argparse.ArgumentTypeError(f"Unknown log level: {value}")
    return key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=EXECUTABLE_NAME, description="Hash and verify entire directory trees")
    parser.add_argument("directories", nargs="*", help="The directories to update/verify")
    parser.add_argument("-u", "--update", action="store_true", help="Create or update hashes")
    parser.add_argument("-v", "--verify", action="store_true", help="Verify hashes")
    parser.add_argument(
        "-l",
        "--loglevel",
        default="INFO",
        type=_parse_log_level,
        help="How much to log (DEBUG|INFO|WARNING|ERROR|CRITICAL|OFF)",
    )
    parser.add_argument(
        "-a",
        "--algorithm",
        default=DEFAULT_ALGORITHM,
        help="The hashing algorithm (MD5, SHA-1, SHA-256, ...)",
    )
    parser.add_argument(
        "-f",
        "--hashfile",
        default=DEFAULT_MANIFEST_NAME,
        help="The name of the file containing the hashes",
    )
    parser.add_argument(
        "--skip-empty-manifests",
        action="store_true",
        help="Do not write a manifest for folders without any tracked files",
    )
    parser.add_argument("--follow-symlinks", action="store_true", help="Follow symlinks when scanning")
    parser.add_argument("--out", choices=["JSON", "TEXT"], default="TEXT", help="Output format")
    parser.add_argument("--gui", action="store_true", help="Open the desktop panel instead of running")
    return parser


def _configure_logging(level_name: str) -> None:
    level = _LOG_LEVELS[level_name]
    if level is None:
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(level)


def _launch_gui(args: argparse.Namespace) -> int:
    from plugins.base import LaunchRequest, run_plugin_standalone
    from tools.tree_hasher_tool import PLUGIN

    request = LaunchRequest(
        directories=[Path(d).expanduser() for d in args.directories],
        update=args.update,
        verify=args.verify,
        skip_empty_manifests=args.skip_empty_manifests,
        follow_symlinks=args.follow_symlinks,
    )
    run_plugin_standalone(PLUGIN, request)
    return STATUS_OK


def _exit_status(stats: Stats) -> int:
    if stats.verification_errors:
        return STATUS_HASH_ERROR
    if stats.other_errors:
        return STATUS_IO_ERROR
    return STATUS_OK


def _report(hasher: TreeHasher, directories: Sequence[Path], stats: Stats, out: str) -> None:
    if out == "JSON":
        payload = {
            "operation": hasher.operation_name,
            "directories": [str(d) for d in directories],
            "stats": stats.as_dict(),
        }
        json.dump(payload, sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")
        return
    print(stats.render(), file=sys.stderr)
    print(file=sys.stderr)
    if stats.verification_errors:
        print("There were verification errors. See log for details.", file=sys.stderr)
    elif stats.other_errors:
        print(
            "There were other errors (probably I/O errors) performing the operation. See log for details.",
            file=sys.stderr,
        )
    else:
        print("Operation successful.", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.gui:
        return _launch_gui(args)
    if not args.directories:
        parser.error("at least one directory is required")
    if not (args.update or args.verify):
        parser.error("use --update and/or --verify")

    _configure_logging(args.loglevel)

    directories = [Path(d).expanduser() for d in args.directories]
    problem = check_roots(directories)
    if problem:
        logger.error(problem)
        print("Could not find one of the directories. See log for details.", file=sys.stderr)
        return STATUS_MISSING_DIRECTORY

    config = HasherConfig(
        update=args.update,
        verify=args.verify,
        algorithm=args.algorithm,
        manifest_name=args.hashfile,
        write_empty_manifests=not args.skip_empty_manifests,
        follow_symlinks=args.follow_symlinks,
    )
    try:
        hasher = TreeHasher(config)
    except AlgorithmUnavailableError as exc:
        logger.error(str(exc))
        print(f"Hashing algorithm {args.algorithm} is not available. See log for details.", file=sys.stderr)
        return STATUS_ALGORITHM_NOT_AVAILABLE
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return STATUS_COMMAND_LINE_ERROR

    try:
        stats = hasher.run(directories)
    except OSError as exc:
        logger.error(str(exc))
        print("The operation was aborted by an I/O error. See log for details.", file=sys.stderr)
        return STATUS_IO_ERROR

    _report(hasher, directories, stats, args.out)
    return _exit_status(stats)


if __name__ == "__main__":
    sys.exit(main())
