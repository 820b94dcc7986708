"""Ralphy: run Claude in a loop against tracker issues until each one is done.

Subcommands
-----------
``ralphy run ISSUE`` / ``ralphy run --all-ready``
    Work one issue, or every ready issue in priority order.
``ralphy watch``
    Poll the tracker and work new ready issues as they appear.
``ralphy status``
    Show configuration, tracker health and run history.
"""

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from batch import BatchScheduler, BatchSummary, render_batch_summary
from executor import is_claude_available
from history import HistoryStore, summarize_history
from loop_runner import IterationRunner, format_duration
from notify import notify_result
from ralphy_config import (
    ConfigError,
    RalphyConfig,
    build_prioritizer,
    build_runner_settings,
    create_ticket_service,
    describe_config,
    is_initialized,
    load_config,
)
from stop_control import StopController
from tickets import (
    Issue,
    Priority,
    TicketService,
    filter_actionable,
    parse_priority,
    resolve_team_scope,
)
from watcher import DEFAULT_INTERVAL_SECONDS, WatchPoller, render_watch_summary

from rich.console import Console
from rich.table import Table

log = logging.getLogger("ralphy")
console = Console()

CLAUDE_INSTALL_HINT = "Claude CLI is not available. Please install it first: https://claude.ai/code"
DESCRIPTION_PREVIEW = 150


# ---------------------------------------------------------------------------
# Issue selection
# ---------------------------------------------------------------------------

def fetch_ready_issues(service: TicketService, config: RalphyConfig) -> list[Issue] | None:
    """Return issues carrying the ready label, or None if the tracker call failed."""
    scope = resolve_team_scope(config.provider)
    result = service.fetch_issues_by_label(scope.team_id, config.labels.ready, scope.project_id)
    if not result.success:
        log.error("%s", result.error)
        return None
    return result.data


def filter_by_priority(issues: list[Issue], priorities: list[Priority]) -> tuple[list[Issue], list[Issue]]:
    """Split *issues* into (kept, dropped); an empty filter keeps everything."""
    if not priorities:
        return list(issues), []
    wanted = set(priorities)
    kept = [i for i in issues if i.priority in wanted]
    dropped = [i for i in issues if i.priority not in wanted]
    return kept, dropped


def build_queue_table(issues: list[Issue], title: str = "Issue queue") -> Table:
    table = Table(title=title, expand=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Issue", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("State")
    for n, issue in enumerate(issues, start=1):
        table.add_row(str(n), issue.identifier, issue.title, issue.priority.label, issue.state.name)
    return table


def render_dry_run(issues: list[Issue], args: argparse.Namespace, max_iterations: int) -> None:
    console.print("\n[dim]\\[Dry run mode - no changes will be made][/dim]\n")
    console.rule("Ralph Wiggum Dry Run Preview")
    console.print(f"Issues to process: {len(issues)}")
    console.print(f"Max iterations per issue: {max_iterations}")
    console.print(f"Auto-commit: {'Yes' if args.commit else 'No'}")
    console.print(f"Notifications: {'Yes' if args.notify else 'No'}")
    for n, issue in enumerate(issues, start=1):
        console.print(f"\n{n}. [cyan]{issue.identifier}[/cyan]: {issue.title}")
        console.print(f"   Priority: {issue.priority.label}")
        console.print(f"   State: {issue.state.name}")
        console.print(f"   Labels: {', '.join(issue.label_names) or 'None'}")
        if issue.url:
            console.print(f"   URL: [dim]{issue.url}[/dim]")
        if issue.description:
            preview = issue.description[:DESCRIPTION_PREVIEW].replace("\n", " ")
            suffix = "..." if len(issue.description) > DESCRIPTION_PREVIEW else ""
            console.print(f"   Description: [dim]{preview}{suffix}[/dim]")
    console.rule()
    target = "--all-ready" if args.all_ready else (issues[0].identifier if issues else "")
    console.print(f"To run: ralphy run {target}")


# ---------------------------------------------------------------------------
# Session wiring
# ---------------------------------------------------------------------------

def build_scheduler_factory(
    config: RalphyConfig,
    service: TicketService,
    stop: StopController,
    max_iterations: int | None,
    auto_commit: bool | None,
    notify: bool,
    verbose: bool = False,
) -> Callable[[bool], BatchScheduler]:
    """Return ``factory(prioritize)`` building schedulers that share one runner."""
    settings = build_runner_settings(
        config, max_iterations=max_iterations, auto_commit=auto_commit, verbose=verbose
    )
    runner = IterationRunner(
        settings,
        ticket_service=service,
        history=HistoryStore(config.history_dir),
        stop=stop,
    )
    prioritizer = build_prioritizer(config)

    def factory(prioritize: bool) -> BatchScheduler:
        return BatchScheduler(
            runner,
            stop,
            prioritizer=prioritizer if prioritize else None,
            use_prioritization=prioritize,
            notifier=notify_result if notify else None,
            max_iterations=settings.max_iterations,
        )

    return factory


def _load_config() -> RalphyConfig | None:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    if not args.issue and not args.all_ready:
        console.print("[red]Please provide an issue identifier or use --all-ready[/red]")
        return 1

    config = _load_config()
    if config is None:
        return 1
    if not args.dry_run and not is_claude_available():
        console.print(f"[bold red]{CLAUDE_INSTALL_HINT}[/bold red]")
        return 1

    service = create_ticket_service(config)
    max_iterations = args.max_iterations or config.claude.max_iterations

    if args.all_ready:
        issues = fetch_ready_issues(service, config)
        if issues is None:
            return 1
        issues, skipped = filter_actionable(issues)
        if skipped:
            console.print(f"\nSkipping {len(skipped)} issue(s) already in Done/Review state:")
            for issue in skipped:
                console.print(f"[dim]  - {issue.identifier}: {issue.title} ({issue.state.name})[/dim]")
        issues, dropped = filter_by_priority(issues, args.priority)
        if dropped:
            console.print(f"\nFiltering by priority: {', '.join(p.value for p in args.priority)}")
            console.print(f"Skipping {len(dropped)} issue(s) with different priority.")
        if not issues:
            console.print(f'\nNo actionable issues found with the "{config.labels.ready}" label.')
            return 0
        console.print(build_queue_table(issues))
    else:
        result = service.fetch_issue_by_id(args.issue)
        if not result.success:
            console.print(f"[red]{result.error}[/red]")
            return 1
        issues = [result.data]

    if args.dry_run:
        render_dry_run(issues, args, max_iterations)
        return 0

    stop = StopController()
    factory = build_scheduler_factory(
        config,
        service,
        stop,
        max_iterations=args.max_iterations,
        auto_commit=args.commit,
        notify=args.notify,
        verbose=args.verbose,
    )
    prioritize = args.all_ready and len(issues) > 1 and not args.fifo
    if len(issues) > 1:
        console.print("[dim]Tip: Press Ctrl+C to stop after current issue, twice to force exit.[/dim]")
        if prioritize:
            console.print("[dim]Using intelligent prioritization. Use --fifo to process in order.[/dim]")

    stop.install()
    try:
        summary = factory(prioritize).run(issues)
    finally:
        stop.uninstall()

    render_run_outcome(summary, batch=args.all_ready)
    return summary.exit_code


def render_run_outcome(summary: BatchSummary, batch: bool) -> None:
    if batch:
        render_batch_summary(summary, console)
        return
    for r in summary.results:
        console.print(f"\nIssue {r.issue.identifier} Summary:")
        console.print(f"  Status: {r.status.value}")
        console.print(f"  Iterations: {r.iterations}")
        console.print(f"  Duration: {format_duration(r.total_duration_ms)}")
        if r.error:
            console.print(f"  [red]Error: {r.error}[/red]")


def cmd_watch(args: argparse.Namespace) -> int:
    config = _load_config()
    if config is None:
        return 1
    if not args.dry_run and not is_claude_available():
        console.print(f"[bold red]{CLAUDE_INSTALL_HINT}[/bold red]")
        return 1

    service = create_ticket_service(config)
    stop = StopController()
    factory = build_scheduler_factory(
        config,
        service,
        stop,
        max_iterations=args.max_iterations,
        auto_commit=None,
        notify=args.notify,
        verbose=args.verbose,
    )
    poller = WatchPoller(
        fetch_issues=lambda: fetch_ready_issues(service, config),
        scheduler_factory=factory,
        stop=stop,
        interval=args.interval,
        use_fifo=args.fifo,
        dry_run=args.dry_run,
        console=console,
    )

    console.rule("Ralphy Watch Mode")
    console.print(f"Label: {config.labels.ready}")
    console.print(f"Poll interval: {args.interval}s")
    console.print(f"Max iterations: {args.max_iterations or config.claude.max_iterations}")
    console.print("[dim]Press Ctrl+C to stop gracefully, twice to force exit.[/dim]")

    stop.install()
    try:
        stats = poller.run()
    finally:
        stop.uninstall()
    render_watch_summary(stats, console)
    return 0


def collect_status(config: RalphyConfig | None, limit: int, history_dir: Path) -> dict:
    """Gather everything ``ralphy status`` reports as a JSON-ready dict."""
    data: dict = {"config": {"initialized": config is not None}}
    health: dict = {"claude_available": is_claude_available(), "provider_connected": False, "provider_error": None}

    if config is not None:
        data["config"].update(describe_config(config))
        service = create_ticket_service(config)
        connection = service.validate_connection()
        health["provider_connected"] = bool(connection.success and connection.data)
        health["provider_error"] = connection.error
        if health["provider_connected"]:
            scope = resolve_team_scope(config.provider)
            counts: dict = {}
            for key, label in (
                ("candidates", config.labels.candidate),
                ("ready", config.labels.ready),
                ("enriched", config.labels.enriched),
            ):
                result = service.fetch_issues_by_label(scope.team_id, label, scope.project_id)
                counts[key] = len(result.data) if result.success else None
            data["issues"] = counts

    summary = summarize_history(HistoryStore(history_dir).load_all(), limit=limit)
    data["history"] = {
        "total_runs": summary.total_runs,
        "completed_runs": summary.completed_runs,
        "max_iteration_runs": summary.max_iteration_runs,
        "error_runs": summary.error_runs,
        "completion_rate": round(summary.completion_rate, 1),
        "recent_runs": [e.to_dict() for e in summary.recent_runs],
    }
    data["health"] = health
    return data


def render_status(data: dict) -> None:
    cfg = data["config"]
    console.rule("Ralphy Status")
    if not cfg["initialized"]:
        console.print("[yellow]Not initialized: create .ralphy/config.yaml[/yellow]")
    else:
        console.print(f"Provider: {cfg['provider']}  Project: {cfg.get('project') or '-'}")
        console.print(
            f"Labels: ready={cfg['labels']['ready']} candidate={cfg['labels']['candidate']} "
            f"enriched={cfg['labels']['enriched']}"
        )
        claude = cfg["claude"]
        console.print(
            f"Claude: model={claude['model']} max_iterations={claude['max_iterations']} "
            f"timeout={claude['timeout_seconds']}s"
        )

    health = data["health"]
    console.print(f"Claude CLI: {'[green]available[/green]' if health['claude_available'] else '[red]missing[/red]'}")
    if cfg["initialized"]:
        if health["provider_connected"]:
            console.print("Tracker: [green]connected[/green]")
        else:
            console.print(f"Tracker: [red]unreachable[/red] {health['provider_error'] or ''}")

    issues = data.get("issues")
    if issues:
        console.print(
            "Issues: "
            + "  ".join(f"{k}={'?' if v is None else v}" for k, v in issues.items())
        )

    history = data["history"]
    table = Table(title="Recent runs")
    table.add_column("Issue", style="cyan")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Duration", justify="right")
    for run in history["recent_runs"]:
        table.add_row(
            run["identifier"],
            run["startedAt"],
            run["status"],
            str(run["iterations"]),
            format_duration(run["totalDurationMs"]),
        )
    table.caption = (
        f"Total: {history['total_runs']}  Completed: {history['completed_runs']}  "
        f"Max iterations: {history['max_iteration_runs']}  Errors: {history['error_runs']}  "
        f"Completion rate: {history['completion_rate']:.1f}%"
    )
    console.print(table)


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config() if is_initialized() else None
    history_dir = config.history_dir if config else Path.cwd() / ".ralphy" / "history"
    data = collect_status(config, args.limit, history_dir)
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        render_status(data)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _priority_arg(value: str) -> Priority:
    try:
        return parse_priority(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int_arg(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False,
        help="Enable debug logging and show Claude tool activity",
    )

    parser = argparse.ArgumentParser(prog="ralphy", description="Run Claude in a loop until issues are done")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Work one issue or every ready issue")
    run.add_argument("issue", nargs="?", default=None, help="Issue identifier (e.g. ENG-42 or #42)")
    run.add_argument("--all-ready", action="store_true", default=False, help="Process every issue with the ready label")
    run.add_argument("--fifo", action="store_true", default=False, help="Process in fetch order instead of prioritizing")
    run.add_argument(
        "--priority",
        type=_priority_arg,
        nargs="+",
        default=[],
        help="Only process issues with these priorities (urgent, high, medium, low, none)",
    )
    run.add_argument("--max-iterations", type=_positive_int_arg, default=None, help="Override the iteration budget per issue")
    run.add_argument(
        "--commit",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Commit changes after each issue (default: True)",
    )
    run.add_argument(
        "--notify",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Send a desktop notification per finished issue (default: False)",
    )
    run.add_argument("--dry-run", action="store_true", default=False, help="Preview the queue without running Claude")
    run.set_defaults(func=cmd_run)

    watch = sub.add_parser("watch", parents=[common], help="Poll for new ready issues and process them")
    watch.add_argument(
        "--interval",
        type=int,
        default=DEFAULT_INTERVAL_SECONDS,
        help=f"Seconds between polls (default: {DEFAULT_INTERVAL_SECONDS})",
    )
    watch.add_argument("--max-iterations", type=_positive_int_arg, default=None, help="Override the iteration budget per issue")
    watch.add_argument("--fifo", action="store_true", default=False, help="Process in fetch order instead of prioritizing")
    watch.add_argument(
        "--notify",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Send a desktop notification per finished issue (default: True)",
    )
    watch.add_argument("--dry-run", action="store_true", default=False, help="List new issues without running Claude")
    watch.set_defaults(func=cmd_watch)

    status = sub.add_parser("status", parents=[common], help="Show configuration, health and history")
    status.add_argument("--json", action="store_true", default=False, help="Print machine-readable JSON")
    status.add_argument("--limit", type=int, default=5, help="Number of recent runs to show (default: 5)")
    status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        code = args.func(args)
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red]")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
