"""Command line entry point: run ``git gc`` on every repository under a root."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.markup import escape

from git_gc.config import ConfigError, Settings, load_config
from git_gc.discovery import DiscoveryError, find_repositories
from git_gc.progress import ProgressReporter
from git_gc.scheduler import CancelPolicy, Scheduler, SchedulerState
from git_gc.worker import GitGcRunner, WorkItem

log = logging.getLogger("git_gc")
console = Console()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-gc-all",
        description="Run git gc on every git repository under a directory",
    )
    parser.add_argument(
        "--root",
        default=None,
        help="Root directory to search for git repos (default: home directory)",
    )
    parser.add_argument(
        "--parallel",
        type=_positive_int,
        default=None,
        help="Number of parallel git gc processes to run (default: number of CPUs)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML file with default settings; command line flags take precedence",
    )
    parser.add_argument(
        "--aggressive",
        action="store_true",
        default=False,
        help="Pass --aggressive to git gc",
    )
    parser.add_argument(
        "--gc-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Extra argument for git gc (repeatable)",
    )
    parser.add_argument(
        "--cancel-policy",
        choices=[p.value for p in CancelPolicy],
        default=None,
        help=(
            "On interrupt, 'abandon' exits at once; 'drain' waits for running "
            "git gc processes to finish (default: abandon)"
        ),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="List the repositories that would be cleaned without running git gc",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        default=False,
        help="Disable the live progress bar",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log more (-v for info, -vv for debug)",
    )
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    settings = load_config(args.config) if args.config else Settings()
    gc_args = list(settings.gc_args)
    if args.aggressive and "--aggressive" not in gc_args:
        gc_args.append("--aggressive")
    gc_args.extend(args.gc_arg)
    return settings.override(
        root=args.root,
        parallel=args.parallel,
        cancel_policy=args.cancel_policy,
        gc_args=gc_args,
    )


def dry_run_plan(repos: list[WorkItem], settings: Settings) -> None:
    """Print what a real run would do, without running anything."""
    console.rule("[bold cyan]Dry Run")
    console.print(f"[bold]Repositories:[/bold] {len(repos)}")
    console.print(f"[bold]Parallel:[/bold]     {settings.parallel}")
    command = " ".join([settings.git, "-C", "<repo>", "gc", *settings.gc_args])
    console.print(f"[bold]Command:[/bold]      {escape(command)}")
    console.print()
    for repo in repos:
        console.print(f"  {escape(repo)}")
    console.rule("[bold cyan]End of Dry Run")


async def run_gc(
    repos: list[WorkItem],
    settings: Settings,
    live: bool = True,
) -> tuple[SchedulerState, Scheduler, ProgressReporter]:
    """Run git gc over *repos*, forwarding SIGINT/SIGTERM as a cancellation."""
    runner = GitGcRunner(
        git=settings.git,
        gc_args=settings.gc_args,
        detach=settings.cancel_policy is CancelPolicy.DRAIN,
    )
    reporter = ProgressReporter(len(repos), console=console, live=live)
    scheduler = Scheduler(
        repos,
        runner.run,
        settings.parallel,
        reporter=reporter,
        cancel_policy=settings.cancel_policy,
        on_abandon=runner.terminate_all,
    )

    loop = asyncio.get_running_loop()
    interrupts = 0
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def signal_handler(sig, frame):
        nonlocal interrupts
        interrupts += 1
        if interrupts > 1:
            # Second signal - force exit
            console.print("\n[red]Force shutdown...[/red]")
            runner.terminate_all()
            raise SystemExit(EXIT_INTERRUPTED)
        if settings.cancel_policy is CancelPolicy.DRAIN:
            console.print("\n[yellow]Interrupted, waiting for running git gc processes...[/yellow]")
        else:
            console.print("\n[yellow]Interrupted, stopping...[/yellow]")
        loop.call_soon_threadsafe(scheduler.request_cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    try:
        with reporter:
            state = await scheduler.run()
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)

    return state, scheduler, reporter


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        settings = resolve_settings(args)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return EXIT_ERROR

    try:
        repos = find_repositories(settings.root, settings.metadata_dir, settings.hidden_prefix)
    except DiscoveryError as e:
        console.print(f"[bold red]Error finding repositories:[/bold red] {escape(str(e))}")
        log.error("Discovery failed: %s", e)
        return EXIT_ERROR

    if args.dry_run:
        dry_run_plan(repos, settings)
        return EXIT_OK

    live = not args.no_progress and console.is_terminal
    try:
        state, scheduler, reporter = asyncio.run(run_gc(repos, settings, live=live))
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red]")
        log.warning("KeyboardInterrupt - shutting down")
        return EXIT_INTERRUPTED

    reporter.print_summary(state, scheduler.events)
    if state.cancel_requested:
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
