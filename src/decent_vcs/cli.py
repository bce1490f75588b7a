"""Command-line interface for decent.

Parses arguments, loads configuration, runs one ``SyncEngine`` operation
and prints the formatted result.  This is the only place that turns
``DecentError`` into an exit status.

Exit codes:
    0: success
    1: any ``DecentError``, configuration error or failed merge
    130: interrupted
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import build_config, to_fallbacks
from .exceptions import DecentError, InternalError, MergeError
from .logger import setup_logging
from .vcs import reporter
from .vcs.engine import SyncEngine

logger = logging.getLogger(__name__)

AFFIRMATIVE = ("y", "yes")


def prompt_stdin(prompt: str) -> bool:
    """Ask *prompt* on stderr and read one line from stdin.

    Only ``y``/``yes`` (any case) counts as approval; EOF declines.
    """
    sys.stderr.write(f"{prompt} (y/n) ")
    sys.stderr.flush()
    answer = sys.stdin.readline()
    return answer.strip().lower() in AFFIRMATIVE


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _add_no_confirm(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-y",
        "--no-confirm",
        action="store_true",
        help="Do not ask for confirmation",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="decent",
        description="Decent version control client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a project in the current directory
  decent init my-team/my-project

  # Push local changes
  decent push -m "Add level 3 textures"

  # Pull the latest commit, or a specific one
  decent sync
  decent sync 12

  # Merge another branch and push the result
  decent merge feature-x --push
        """,
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--server-host",
        help="Override the metadata server URL (takes precedence over "
        "DECENT_SERVER_HOST and config files)",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not render transfer progress bars",
    )
    parser.add_argument(
        "--version", action="version", version=f"decent {__version__}"
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    p = sub.add_parser("init", help="Create a new project")
    p.add_argument("name", help="Project name (team/project)")
    p.add_argument("path", nargs="?", type=Path, help="Project directory")

    p = sub.add_parser("clone", help="Clone a project")
    p.add_argument("project", help="Project ID or team/project")
    p.add_argument("path", nargs="?", type=Path, help="Destination directory")
    p.add_argument("-b", "--branch", help="Branch to clone (default branch if omitted)")

    p = sub.add_parser("push", help="Push local changes as a new commit")
    p.add_argument("-m", "--message", help="Commit message")
    p.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Delete remote commits ahead of the local commit first",
    )
    _add_no_confirm(p)

    p = sub.add_parser("sync", help="Sync to the latest or a specific commit")
    p.add_argument("commit_index", nargs="?", type=int, help="Target commit index")
    _add_no_confirm(p)

    p = sub.add_parser("reset", help="Discard local changes")
    _add_no_confirm(p)

    p = sub.add_parser("revert", help="Discard local changes and go back one commit")
    _add_no_confirm(p)

    p = sub.add_parser("merge", help="Merge a branch into the working tree")
    p.add_argument("branch", help="Branch to merge")
    p.add_argument("--push", action="store_true", help="Push after merging")
    _add_no_confirm(p)

    p = sub.add_parser("branch", help="Manage branches")
    bsub = p.add_subparsers(dest="branch_command", metavar="<action>")
    bsub.required = True
    b = bsub.add_parser("new", help="Create a branch at the current commit")
    b.add_argument("name")
    b = bsub.add_parser("use", help="Switch to a branch")
    b.add_argument("name")
    _add_no_confirm(b)
    b = bsub.add_parser("delete", help="Delete a branch")
    b.add_argument("name")
    b = bsub.add_parser("rename", help="Rename a branch")
    b.add_argument("old_name")
    b.add_argument("new_name")
    b = bsub.add_parser("set-default", help="Set the project's default branch")
    b.add_argument("name")
    bsub.add_parser("list", help="List branches")

    sub.add_parser("status", help="Show project state and local changes")

    p = sub.add_parser("history", help="Show recent commits")
    p.add_argument("-n", "--limit", type=int, default=10)

    return parser


# ---------------------------------------------------------------------------
# Command dispatch
# ---------------------------------------------------------------------------


def _confirm(args: argparse.Namespace) -> bool:
    return not getattr(args, "no_confirm", False)


def _branch_command(engine: SyncEngine, args: argparse.Namespace) -> int:
    action = args.branch_command
    if action == "new":
        branch = engine.new_branch(args.name)
        print(f"Created branch \"{branch.name}\" and switched to it")
    elif action == "use":
        result = engine.use_branch(args.name, confirm=_confirm(args))
        print(reporter.format_sync_result(result))
    elif action == "delete":
        engine.delete_branch(args.name)
        print(f"Deleted branch \"{args.name}\"")
    elif action == "rename":
        engine.rename_branch(args.old_name, args.new_name)
        print(f"Renamed branch \"{args.old_name}\" to \"{args.new_name}\"")
    elif action == "set-default":
        engine.set_default_branch(args.name)
        print(f"Default branch set to \"{args.name}\"")
    elif action == "list":
        print(
            reporter.format_branches(
                engine.list_branches(), engine.current_branch_id()
            )
        )
    return 0


def _run_command(engine: SyncEngine, args: argparse.Namespace) -> int:
    command = args.command
    confirm = _confirm(args)

    if command == "init":
        pc = engine.init(args.name, args.path)
        print(f"Project {pc.project_id} initialized at commit #{pc.commit_index}")
    elif command == "clone":
        pc = engine.clone(args.project, args.path, branch=args.branch)
        print(f"Cloned {pc.project_id} at commit #{pc.commit_index}")
    elif command == "push":
        result = engine.push(
            message=args.message, force=args.force, confirm=confirm
        )
        print(reporter.format_push_result(result))
    elif command == "sync":
        result = engine.sync_to_commit(args.commit_index, confirm=confirm)
        print(reporter.format_sync_result(result))
    elif command == "reset":
        print(reporter.format_reset_result(engine.reset(confirm=confirm)))
    elif command == "revert":
        print(reporter.format_sync_result(engine.revert(confirm=confirm)))
    elif command == "merge":
        result = engine.merge(args.branch, push=args.push, confirm=confirm)
        print(reporter.format_merge_result(result))
        if not result.ok:
            print(f"Error: {MergeError(result.failures)}", file=sys.stderr)
            return 1
    elif command == "branch":
        return _branch_command(engine, args)
    elif command == "status":
        print(reporter.format_status(engine.status()))
    elif command == "history":
        print(reporter.format_history(engine.history(limit=args.limit)))
    return 0


def load_runtime_config(args: argparse.Namespace) -> tuple[Config, Any]:
    """Resolve configuration from CLI args, env, .env and YAML files."""
    load_dotenv()

    unified = build_config(load_hierarchical_config())
    config = load_config(
        server_host=args.server_host,
        verbose=args.verbose,
        show_progress=False if args.no_progress else None,
        yaml_fallbacks=to_fallbacks(unified),
    )
    return config, unified


def main(
    argv: list[str] | None = None,
    engine_factory: Callable[[Config], SyncEngine] | None = None,
) -> int:
    """Run the CLI and return the process exit status.

    Args:
        argv: Arguments (default: ``sys.argv[1:]``).
        engine_factory: Builds the engine from the loaded config; tests
            inject fakes here.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config, unified = load_runtime_config(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        verbose=config.verbose,
        log_file=args.log_file or unified.logging.file,
        log_format=unified.logging.format,
        level=None if config.verbose else unified.logging.level,
    )
    config_files = discover_config_files()
    if config_files:
        logger.debug("Configuration loaded from %s", config_files[0])
    logger.debug("Server host: %s", config.server_host)

    try:
        if engine_factory is not None:
            engine = engine_factory(config)
        else:
            engine = SyncEngine(config, confirm=prompt_stdin)
        return _run_command(engine, args)
    except InternalError as e:
        logger.debug("Internal error detail: %s", e.detail, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except DecentError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
