"""Command-line entry point for groupshare-sync."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import discover_config_files, ensure_config, load_hierarchical_config
from .config_schema import build_config
from .core.async_utils import CancellationToken
from .core.result import Result
from .core.retry import RetryPolicy
from .errors import SyncCancelledError, SyncError
from .logger import setup_logging
from .remote.filesystem import FolderRemoteStore
from .store.json_store import JsonLocalStore
from .sync.engine import SyncOrchestrator
from .sync.models import ResolutionAction, SyncSummary
from .sync.remote import GroupRemote
from .sync.reporter import format_conflict_list, format_sync_summary, summary_to_json
from .sync.resolver import ConflictResolver
from .sync.state import SyncState
from .sync.tracker import ChangeTracker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_INCOMPLETE = 3


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def build_orchestrator(config: Config) -> SyncOrchestrator:
    """Wire stores, tracker, remote and resolver from *config*."""
    store = JsonLocalStore(config.store_path)
    state = SyncState(Path(config.state_dir))
    tracker = ChangeTracker(store, state.device_identity(config.device_name))
    retry = RetryPolicy(
        max_attempts=config.max_attempts,
        initial_delay=config.initial_delay,
        backoff=config.backoff,
        max_delay=config.max_delay,
    )
    remote = GroupRemote(
        FolderRemoteStore(Path(config.remote_root).expanduser()),
        retry,
        app_root=config.app_root,
    )
    return SyncOrchestrator(
        store,
        remote,
        tracker,
        state,
        ConflictResolver(window_ms=config.conflict_window_seconds * 1000),
        files_dir=config.files_dir,
        max_parallel_uploads=config.max_parallel_uploads,
        checkpoint_skew_ms=config.checkpoint_skew_seconds * 1000,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_sync(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    result = asyncio.run(
        orchestrator.sync_group(
            args.group_id,
            group_name=args.group_name,
            publish_existing=args.publish_existing,
        )
    )
    if result.is_failure:
        raise result.error
    summary = result.unwrap()
    if args.json:
        print(json.dumps(summary_to_json(summary), indent=2))
    else:
        print(format_sync_summary(summary))
    if summary.conflicts or summary.failures:
        return EXIT_INCOMPLETE
    return EXIT_OK


def _cmd_status(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    state = orchestrator.state.load(args.group_id)
    unsynced = orchestrator.tracker.unsynced_entries(args.group_id)
    pending = SyncState.pending_conflicts(state)
    if args.json:
        print(
            json.dumps(
                {
                    "group_id": args.group_id,
                    "last_sync": state.get("last_sync"),
                    "checkpoint": SyncState.checkpoint(state),
                    "manifest_version": state.get("manifest_version"),
                    "unsynced_changes": len(unsynced),
                    "pending_conflicts": len(pending),
                },
                indent=2,
            )
        )
        return EXIT_OK
    print(f"Group: {args.group_id}")
    print(f"Last sync: {state.get('last_sync') or 'never'}")
    if state.get("manifest_version") is not None:
        print(f"Manifest version: {state['manifest_version']}")
    print(f"Unsynced local changes: {len(unsynced)}")
    print(f"Pending conflicts: {len(pending)}")
    return EXIT_OK


def _cmd_conflicts(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    conflicts = orchestrator.pending_conflicts(args.group_id)
    if args.json:
        print(
            json.dumps(
                [c.model_dump(mode="json", by_alias=True) for c in conflicts],
                indent=2,
            )
        )
    else:
        print(format_conflict_list(conflicts))
    return EXIT_OK


def _cmd_resolve(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    action = ResolutionAction(args.action)
    result = asyncio.run(
        orchestrator.resolve_conflict(args.group_id, args.conflict_id, action)
    )
    if result.is_failure:
        raise result.error
    print(f"Resolved {args.conflict_id} with {action.value}")
    return EXIT_OK


def _cmd_watch(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    token = CancellationToken()

    def report(result: Result[SyncSummary]) -> None:
        if result.is_failure:
            if not isinstance(result.error, SyncCancelledError):
                _stderr_print(f"Sync failed ({result.error.error_type}): {result.error}")
            return
        summary = result.unwrap()
        if args.json:
            print(json.dumps(summary_to_json(summary)), flush=True)
        else:
            print(format_sync_summary(summary), flush=True)

    async def _watch() -> Result[SyncSummary] | None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            except (NotImplementedError, RuntimeError):
                logger.debug("Cannot install a handler for %s", sig.name)
        return await orchestrator.run_continuous(
            args.group_id,
            args.interval,
            token,
            group_name=args.group_name,
            on_result=report,
            max_rounds=args.rounds,
        )

    last = asyncio.run(_watch())
    if last is None or token.cancelled:
        return EXIT_OK
    if last.is_failure:
        raise last.error
    summary = last.unwrap()
    if summary.conflicts or summary.failures:
        return EXIT_INCOMPLETE
    return EXIT_OK


_COMMANDS = {
    "sync": _cmd_sync,
    "status": _cmd_status,
    "conflicts": _cmd_conflicts,
    "resolve": _cmd_resolve,
    "watch": _cmd_watch,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="groupshare-sync",
        description="groupshare-sync - offline-first sync of shared songs, setlists and annotations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync a group against a shared folder
  groupshare-sync --remote-root /mnt/share sync band-1

  # Join a group whose folder is named differently from its id
  groupshare-sync sync band-1 --group-name "Friday Band"

  # Review and resolve conflicts
  groupshare-sync conflicts band-1
  groupshare-sync resolve band-1 c1_c2 KEEP_LOCAL

  # Keep syncing every minute until Ctrl-C
  groupshare-sync watch band-1 --interval 60

  # Write a starter config file
  groupshare-sync init

Exit codes: 0 ok, 1 sync error, 2 configuration error,
3 sync completed with conflicts or failures.
        """,
    )
    parser.add_argument(
        "--remote-root",
        help="Shared folder used as the remote store (overrides GROUPSHARE_REMOTE_ROOT and config files)",
    )
    parser.add_argument("--device-name", help="Name shown to other group members")
    parser.add_argument("--data-dir", help="Local data directory")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--version",
        action="version",
        version=f"groupshare-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Run one sync session for a group")
    p_sync.add_argument("group_id")
    p_sync.add_argument(
        "--group-name", help="Remote folder name when joining a new group"
    )
    p_sync.add_argument(
        "--publish-existing",
        action="store_true",
        help="Also queue songs and setlists that were never tracked",
    )
    p_sync.add_argument("--json", action="store_true", help="JSON output")

    p_status = sub.add_parser("status", help="Show sync state of a group")
    p_status.add_argument("group_id")
    p_status.add_argument("--json", action="store_true", help="JSON output")

    p_conflicts = sub.add_parser("conflicts", help="List pending conflicts")
    p_conflicts.add_argument("group_id")
    p_conflicts.add_argument("--json", action="store_true", help="JSON output")

    p_resolve = sub.add_parser("resolve", help="Resolve a pending conflict")
    p_resolve.add_argument("group_id")
    p_resolve.add_argument("conflict_id")
    p_resolve.add_argument(
        "action", choices=[a.value for a in ResolutionAction]
    )

    p_watch = sub.add_parser(
        "watch", help="Sync a group repeatedly until interrupted"
    )
    p_watch.add_argument("group_id")
    p_watch.add_argument(
        "--group-name", help="Remote folder name when joining a new group"
    )
    p_watch.add_argument(
        "--interval",
        type=float,
        help="Seconds between sessions (default: sync_interval_seconds, 30)",
    )
    p_watch.add_argument(
        "--rounds", type=int, help="Stop after this many sessions"
    )
    p_watch.add_argument(
        "--json", action="store_true", help="One JSON summary per line"
    )

    sub.add_parser("init", help="Write a starter config file if none exists")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the command and return the exit code."""
    args = build_parser().parse_args(argv)

    # .env first so ${VAR} references in YAML can see its values
    load_dotenv()

    if args.command == "init":
        setup_logging(mode="cli", debug=args.debug, log_file=args.log_file)
        print(ensure_config())
        return EXIT_OK

    try:
        unified = build_config(load_hierarchical_config())
        config = load_config(
            remote_root=args.remote_root,
            device_name=args.device_name,
            data_dir=args.data_dir,
            debug=args.debug,
            unified=unified,
        )
    except (ValueError, FileNotFoundError) as exc:
        _stderr_print(f"Configuration error: {exc}")
        return EXIT_CONFIG

    setup_logging(
        mode="cli",
        debug=config.debug,
        log_file=args.log_file or config.log_file,
        level=config.log_level,
    )
    sources = discover_config_files()
    if sources:
        logger.debug("Config files: %s", ", ".join(str(p) for p in sources))

    if args.command == "watch":
        if args.interval is None:
            args.interval = config.sync_interval_seconds
        if args.interval < 0:
            _stderr_print("Configuration error: --interval must not be negative")
            return EXIT_CONFIG

    orchestrator = build_orchestrator(config)
    try:
        return _COMMANDS[args.command](orchestrator, args)
    except SyncError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        _stderr_print(f"Error ({exc.error_type}): {exc}")
        return EXIT_ERROR


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        _stderr_print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    run()
