"""CLI entry point: automode run|resume|follow-up|verify|commit|approve|merge|analyze|loop|status."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import AutoModeError

if TYPE_CHECKING:
    from .config import AutoModeConfig
    from .engine import AutoModeEngine
    from .events import AutoModeEvent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automode",
        description="Auto mode -- drive a coding agent through implement, verify and commit",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory (default: current dir)",
    )
    common.add_argument("--model", type=str, help="Model override (alias or full id)")
    common.add_argument(
        "--worktrees", action="store_true",
        help="Isolate each feature in a git worktree for its branch",
    )
    common.add_argument(
        "--mock-agent", action="store_true",
        help="Use a scripted agent instead of calling a model",
    )
    common.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logging",
    )

    # --- run ---
    run_cmd = subparsers.add_parser("run", parents=[common], help="Implement one feature")
    run_cmd.add_argument("feature_id", type=str)

    # --- resume ---
    resume_cmd = subparsers.add_parser(
        "resume", parents=[common], help="Resume a feature from its transcript",
    )
    resume_cmd.add_argument("feature_id", type=str)
    resume_cmd.add_argument(
        "--retries", type=int,
        help="Auto-retry budget while the feature stays in progress",
    )

    # --- follow-up ---
    follow_cmd = subparsers.add_parser(
        "follow-up", parents=[common], help="Send follow-up instructions for a feature",
    )
    follow_cmd.add_argument("feature_id", type=str)
    follow_cmd.add_argument("instructions", type=str, help="Follow-up instructions")
    follow_cmd.add_argument(
        "--image", dest="images", action="append", default=[],
        help="Image to attach (repeatable)",
    )

    # --- verify / commit / approve ---
    verify_cmd = subparsers.add_parser("verify", parents=[common], help="Run verification steps")
    verify_cmd.add_argument("feature_id", type=str)

    commit_cmd = subparsers.add_parser("commit", parents=[common], help="Commit a feature's changes")
    commit_cmd.add_argument("feature_id", type=str)
    commit_cmd.add_argument("--worktree", type=str, help="Worktree to commit from")

    approve_cmd = subparsers.add_parser("approve", parents=[common], help="Mark a feature verified")
    approve_cmd.add_argument("feature_id", type=str)

    # --- merge ---
    merge_cmd = subparsers.add_parser(
        "merge", parents=[common], help="Merge a feature branch into the target branch",
    )
    merge_cmd.add_argument("feature_id", type=str)
    merge_cmd.add_argument("--target", type=str, help="Target branch (default from config)")
    merge_cmd.add_argument("--squash", action="store_true", help="Squash merge")
    merge_cmd.add_argument(
        "--cleanup", action="store_true",
        help="Remove the worktree and delete the branch after merging",
    )

    # --- analyze / loop / status ---
    subparsers.add_parser("analyze", parents=[common], help="Analyze the project structure")
    subparsers.add_parser("loop", parents=[common], help="Run backlog features unattended")
    subparsers.add_parser("status", parents=[common], help="Show feature statuses")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = _load(args)

    if args.command == "status":
        return _status(config)

    from .app import build_engine

    engine = build_engine(config)
    engine.events.subscribe(_print_event)
    try:
        return asyncio.run(_dispatch(engine, args))
    except KeyboardInterrupt:
        return 130
    except AutoModeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _load(args: argparse.Namespace) -> AutoModeConfig:
    from .config import load_config

    cli_args = {
        "project": args.project,
        "model": args.model,
        "use_worktrees": True if args.worktrees else None,
        "mock_agent": True if args.mock_agent else None,
        "log_level": "DEBUG" if args.verbose else None,
    }
    return load_config(cli_args)


async def _dispatch(engine: AutoModeEngine, args: argparse.Namespace) -> int:
    _install_signal_handlers(engine)
    project = engine.config.project_dir
    use_worktrees = engine.config.use_worktrees

    if args.command == "run":
        outcome = await engine.execute_feature(project, args.feature_id, use_worktrees)
        return 0 if outcome.passes else 1

    if args.command == "resume":
        from .retry import resume_with_retries

        outcome = await resume_with_retries(
            engine, project, args.feature_id, use_worktrees, max_attempts=args.retries,
        )
        return 0 if outcome.passes else 1

    if args.command == "follow-up":
        outcome = await engine.follow_up_feature(
            project, args.feature_id, args.instructions,
            image_paths=[Path(p).resolve() for p in args.images],
            use_worktrees=use_worktrees,
        )
        return 0 if outcome.passes else 1

    if args.command == "verify":
        result = await engine.verify_feature(project, args.feature_id)
        for step in result.steps:
            print(f"  [{'PASS' if step.passed else 'FAIL'}] {step.name}")
        return 0 if result.passes else 1

    if args.command == "commit":
        worktree = Path(args.worktree).resolve() if args.worktree else None
        commit_hash = await engine.commit_feature(project, args.feature_id, worktree)
        print(commit_hash or "Nothing to commit")
        return 0

    if args.command == "approve":
        feature = await engine.approve_feature(project, args.feature_id)
        print(f"Feature {feature.id} is {feature.status.value}")
        return 0

    if args.command == "merge":
        result = await engine.merge_feature(
            project, args.feature_id,
            target_branch=args.target,
            squash=args.squash,
            delete_worktree_and_branch=args.cleanup,
        )
        print(f"Merged {result.merged_branch} into {result.target_branch}")
        return 0

    if args.command == "analyze":
        path = await engine.analyze_project(project)
        print(f"Analysis written to {path}")
        return 0

    if args.command == "loop":
        await engine.start_auto_loop(project, use_worktrees)
        return 0

    raise AutoModeError(f"Unknown command: {args.command}")


def _install_signal_handlers(engine: AutoModeEngine) -> None:
    loop = asyncio.get_running_loop()
    received = False

    def handle(sig: signal.Signals) -> None:
        nonlocal received
        if received:
            print(f"\nSecond {sig.name} received -- force exiting", file=sys.stderr)
            raise SystemExit(1)
        received = True
        print(f"\n{sig.name} received -- stopping running features...", file=sys.stderr)
        print("  (press Ctrl-C again to force-quit)", file=sys.stderr)
        engine.stop_auto_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except NotImplementedError:
            # Windows event loops
            pass


def _print_event(event: AutoModeEvent) -> None:
    prefix = f"[{event.feature_id}] " if event.feature_id else ""
    if event.type == "progress":
        print(f"{prefix}{event.content}")
    elif event.type == "tool":
        print(f"{prefix}Tool: {event.tool}")
    elif event.type == "feature_start":
        print(f"{prefix}Started")
    elif event.type == "feature_complete":
        symbol = "PASS" if event.passes else "FAIL"
        print(f"{prefix}[{symbol}] {event.message}")
    elif event.type == "error":
        print(f"{prefix}Error ({event.error_type}): {event.error}", file=sys.stderr)
    elif event.type == "all_complete":
        print(event.message)


def _status(config: AutoModeConfig) -> int:
    from .store import FeatureStore

    store = FeatureStore(config.data_dir)
    features = store.list_features(config.project_dir)
    if not features:
        print(f"No features under {store.features_dir(config.project_dir)}")
        return 0

    counts: dict[str, int] = {}
    for f in features:
        counts[f.status.value] = counts.get(f.status.value, 0) + 1
    print(", ".join(f"{status}: {n}" for status, n in sorted(counts.items())))
    print()
    for f in features:
        extra = ""
        if f.error:
            extra = f" [ERROR: {f.error.splitlines()[0][:60]}]"
        elif f.is_just_finished():
            extra = " [just finished]"
        title = f.description.splitlines()[0][:60] if f.description else ""
        print(f"  [{f.status.value:>16}] {f.id}: {title}{extra}")
    return 0


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
