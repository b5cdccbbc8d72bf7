from __future__ import annotations

import argparse
import importlib
import logging
from pathlib import Path
import sys

from volmirror.config import MirrorConfig, resolve_config
from volmirror.notifier import ConsoleNotifier
from volmirror.run_service import (
    EXIT_INVALID_CONFIG,
    EXIT_MIRROR_FAILED,
    EXIT_SUCCESS,
    run_mirror_job,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volmirror",
        description="Replace a server volume with another one, keeping selected files",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every mirror step")
    subparsers = parser.add_subparsers(dest="command", required=True)

    config_help = "YAML/JSON config file (defaults to SRC_SERVER_UUID/DST_SERVER_UUID/KEEP_FILES from the environment)"

    run_parser = subparsers.add_parser("run", help="Mirror the source into the destination")
    run_parser.add_argument("--config", type=Path, default=None, help=config_help)
    run_parser.add_argument(
        "--no-delete",
        dest="delete_before_copy",
        action="store_false",
        help="Copy over the destination without emptying it first",
    )

    validate_parser = subparsers.add_parser("validate-config", help="Validate config")
    validate_parser.add_argument("--config", type=Path, default=None, help=config_help)

    show_parser = subparsers.add_parser("show", help="Show source, destination and keep files")
    show_parser.add_argument("--config", type=Path, default=None, help=config_help)

    agent_parser = subparsers.add_parser("agent", help="Start the task tray agent")
    agent_parser.add_argument("--config", type=Path, default=None, help=config_help)

    return parser


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("volmirror")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)


def _load(config_path: Path | None) -> MirrorConfig | None:
    try:
        return resolve_config(config_path)
    except Exception as exc:
        print(f"Invalid config: {exc}", file=sys.stderr)
        return None


def cmd_validate(config_path: Path | None) -> int:
    config = _load(config_path)
    if config is None:
        return EXIT_INVALID_CONFIG

    origin = config_path if config_path is not None else "environment"
    print(
        f"Valid config: {origin} "
        f"source={config.source_root} "
        f"destination={config.destination_root} "
        f"keepFiles={len(config.keep_list.entries)} "
        f"keepMatch={config.keep_list.match}"
    )
    return EXIT_SUCCESS


def cmd_show(config_path: Path | None) -> int:
    config = _load(config_path)
    if config is None:
        return EXIT_INVALID_CONFIG

    print(f"source: {config.source_name} ({config.source_root})")
    print(f"destination: {config.destination_name} ({config.destination_root})")
    print(f"keep files ({config.keep_list.match}):")
    for entry in config.keep_list.entries:
        print(f"  - {entry}")
    return EXIT_SUCCESS


def cmd_run(config_path: Path | None, delete_before_copy: bool) -> int:
    exit_code, outcome = run_mirror_job(
        config_path=config_path,
        delete_before_copy=delete_before_copy,
        notifier=ConsoleNotifier(),
    )
    if outcome is None:
        print("Invalid config, see log for details", file=sys.stderr)
    return exit_code


def cmd_agent(config_path: Path | None) -> int:
    try:
        tray_agent = importlib.import_module("volmirror.tray_agent")
    except ModuleNotFoundError as exc:
        missing = exc.name or "unknown"
        print(
            (
                f"Failed to load tray agent dependency: {missing}. "
                "Reinstall dependencies in your active environment with: pip install -e ."
            ),
            file=sys.stderr,
        )
        return EXIT_MIRROR_FAILED
    except Exception as exc:
        print(f"Failed to load tray agent: {exc}", file=sys.stderr)
        return EXIT_MIRROR_FAILED

    argv: list[str] = []
    if config_path is not None:
        argv.extend(["--config", str(config_path)])
    return int(tray_agent.main(argv))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "validate-config":
        return cmd_validate(args.config)
    if args.command == "show":
        return cmd_show(args.config)
    if args.command == "run":
        return cmd_run(
            config_path=args.config,
            delete_before_copy=args.delete_before_copy,
        )
    if args.command == "agent":
        return cmd_agent(config_path=args.config)

    parser.print_help()
    return EXIT_MIRROR_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
