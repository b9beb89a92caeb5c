"""CLI entry point for ``om run``.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``om = "om_run.cli:main"``. Parses command-line
arguments, resolves environment-derived defaults once, and delegates to
``run_task_sync()`` from ``om_run.orchestrator``.
"""

from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
import os
from pathlib import Path
import sys

from om_run.errors import RunError
from om_run.models import (
    DEFAULT_FLAKE_REF,
    DEFAULT_OUT_LINK,
    DEFAULT_TASK_NAME,
    RunCommand,
)
from om_run.orchestrator import apply_env_overrides, configure_logging, run_task_sync

GITHUB_ACTION_ENV = "GITHUB_ACTION"


def _build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Args:
        environ: Environment used to derive the ``--github-output`` default.

    Returns:
        Configured ``ArgumentParser`` with the ``run`` subcommand.
    """
    parser = argparse.ArgumentParser(
        prog="om",
        description="Run declaratively described project tasks.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Run tasks from the om/ directory.",
        description=(
            "Run the task described by om/<TASK_NAME>.yaml. The lockfile, "
            "build and flake-check stages are disabled; only the task's "
            "custom steps run."
        ),
    )
    run.add_argument(
        "name",
        metavar="TASK_NAME",
        nargs="?",
        default=DEFAULT_TASK_NAME,
        help="Task to run; loads om/TASK_NAME.yaml (default: %(default)s).",
    )
    run.add_argument(
        "flake_ref",
        metavar="PROJECT_REF",
        nargs="?",
        default=DEFAULT_FLAKE_REF,
        help="Local path or flake URL of the project (default: %(default)s).",
    )
    run.add_argument(
        "--systems",
        default=None,
        help=(
            "Systems to build for: a system name such as x86_64-linux or a "
            "flake URL returning a list of systems. Defaults to the current system."
        ),
    )
    link = run.add_mutually_exclusive_group()
    link.add_argument(
        "-o",
        "--out-link",
        type=Path,
        default=Path(DEFAULT_OUT_LINK),
        metavar="PATH",
        help="Symlink to the result JSON (default: %(default)s).",
    )
    link.add_argument(
        "--no-link",
        action="store_true",
        help="Do not create a symlink to the result JSON.",
    )
    run.add_argument(
        "--github-output",
        action=argparse.BooleanOptionalAction,
        default=GITHUB_ACTION_ENV in environ,
        help="Print GitHub Actions log groups (default: on inside GitHub Actions).",
    )
    run.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: %(default)s).",
    )
    return parser


def _command_from_args(args: argparse.Namespace) -> RunCommand:
    """Build a ``RunCommand`` from parsed ``run`` arguments."""
    return RunCommand(
        name=args.name,
        flake_ref=args.flake_ref,
        systems=args.systems,
        out_link=None if args.no_link else args.out_link,
        no_link=args.no_link,
        github_output=args.github_output,
        log_level=args.log_level,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``om`` CLI application.

    Args:
        argv: Arguments without the program name; ``sys.argv[1:]`` when ``None``.

    Returns:
        Exit code: 0 on success, 1 on error. Usage errors exit with 2
        through ``argparse``.
    """
    environ = dict(os.environ)
    parser = _build_parser(environ)
    args = parser.parse_args(argv)

    command = apply_env_overrides(_command_from_args(args), environ)
    configure_logging(command.log_level)

    try:
        artifact = run_task_sync(command)
    except RunError as exc:
        print(f"Error in {exc.phase}: {exc}", file=sys.stderr)
        if exc.diagnostics:
            print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(artifact.stable_path)
    print(artifact.summary(), file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
