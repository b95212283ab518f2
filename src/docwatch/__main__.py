"""Command-line interface for docwatch.

Usage:
    python -m docwatch run --track doccnABC:chat-1
    python -m docwatch status
    python -m docwatch rules list --doc doccnABC
    python -m docwatch rules add --doc doccnABC --name "Alice" \\
        --condition '{"type": "modified_by_user", "value": "alice"}' \\
        --action '{"type": "notify", "target": "chat-1"}'
    python -m docwatch snapshots doccnABC --diffs
    python -m docwatch snapshots doccnABC --prune
    python -m docwatch changes --limit 10
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from docwatch import __version__
from docwatch.clock import ms_to_datetime
from docwatch.config import Config, load_config
from docwatch.errors import DocwatchError
from docwatch.logging import get_logger, setup_logging
from docwatch.service import DocWatchService

log = get_logger()

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="docwatch",
        description="Watch hosted documents for changes and run change rules",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (can be repeated)",
    )
    parser.add_argument(
        "--project-root",
        help="Directory holding .docwatch/config.yaml",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    run_parser = subparsers.add_parser("run", help="Poll tracked documents until interrupted")
    run_parser.add_argument(
        "--track",
        action="append",
        default=[],
        metavar="TOKEN:TARGET[:TYPE]",
        help="Start tracking a document before polling (repeatable)",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit",
    )

    subparsers.add_parser("status", help="Show tracked documents, metrics and health")

    rules_parser = subparsers.add_parser("rules", help="Manage change rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command")
    list_parser = rules_sub.add_parser("list", help="List rules")
    list_parser.add_argument("--doc", help="Only rules for this document")
    add_parser = rules_sub.add_parser("add", help="Create a rule")
    add_parser.add_argument("--doc", required=True)
    add_parser.add_argument("--name", required=True)
    add_parser.add_argument("--description")
    add_parser.add_argument("--condition", required=True, help="Condition as JSON")
    add_parser.add_argument("--action", required=True, help="Action as JSON")
    delete_parser = rules_sub.add_parser("delete", help="Delete a rule")
    delete_parser.add_argument("rule_id")
    for name, help_text in (("enable", "Enable a rule"), ("disable", "Disable a rule")):
        toggle = rules_sub.add_parser(name, help=help_text)
        toggle.add_argument("rule_id")

    snapshots_parser = subparsers.add_parser("snapshots", help="Show snapshot history")
    snapshots_parser.add_argument("doc")
    snapshots_parser.add_argument("--limit", type=int, default=20)
    snapshots_parser.add_argument(
        "--diffs", action="store_true", help="Show the diff summary between snapshots"
    )
    snapshots_parser.add_argument(
        "--prune", action="store_true", help="Apply the retention policy before listing"
    )

    changes_parser = subparsers.add_parser("changes", help="Show recent change events")
    changes_parser.add_argument("--doc", help="Only changes for this document")
    changes_parser.add_argument("--limit", type=int, default=20)

    return parser


def _parse_track(value: str) -> tuple[str, str, str]:
    parts = value.split(":")
    if len(parts) not in (2, 3) or not all(parts):
        raise DocwatchError(f"Invalid --track value {value!r}, expected TOKEN:TARGET[:TYPE]")
    doc_type = parts[2] if len(parts) == 3 else "docx"
    return parts[0], parts[1], doc_type


async def _run(service: DocWatchService, track: list[str], once: bool) -> None:
    service.restore()
    for value in track:
        doc_token, target, doc_type = _parse_track(value)
        service.start_tracking(doc_token, target, doc_type)

    if once:
        summary = await service.poll_once()
        await service.stop()
        console.print(
            f"Polled {summary.polled} document(s): {summary.succeeded} ok, "
            f"{summary.failed} failed, {summary.changes} change(s)"
        )
        return

    await service.start()
    console.print(
        f"[bold]Polling {len(service.list_tracked())} document(s)[/bold] "
        f"every {service.config.polling.interval_ms}ms. Ctrl-C to stop."
    )
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await service.stop()


def _print_status(service: DocWatchService) -> None:
    service.restore()
    docs = service.list_tracked()
    if docs:
        table = Table(title="Tracked Documents")
        table.add_column("Token", style="bold")
        table.add_column("Type")
        table.add_column("Notify")
        table.add_column("Last modified by")
        table.add_column("Last modified")
        for doc in docs:
            modified = (
                ms_to_datetime(doc.last_known_modified_time).strftime("%Y-%m-%d %H:%M:%S")
                if doc.last_known_modified_time is not None
                else "-"
            )
            table.add_row(
                doc.doc_token, doc.doc_type, doc.notify_target, doc.last_known_user or "-", modified
            )
        console.print(table)
    else:
        console.print("[dim]No tracked documents[/dim]")

    health = service.health()
    console.print("[bold]Health:[/bold]")
    poller = health["poller"]
    if poller is not None:
        color = "green" if poller["status"] == "healthy" else "yellow"
        console.print(f"  Poller: [{color}]{poller['status']}[/{color}] ({poller['reason']})")
    else:
        console.print("  Poller: [dim]no document source configured[/dim]")
    for name in ("store", "snapshots", "rules"):
        status = "[green]ok[/green]" if health[name] else "[red]unreachable[/red]"
        console.print(f"  {name.capitalize()}: {status}")

    metrics = service.metrics()
    if metrics is not None:
        console.print("[bold]Metrics:[/bold]")
        for key, value in metrics.to_dict().items():
            console.print(f"  {key}: {value}")


def _rules_command(service: DocWatchService, args: argparse.Namespace) -> int:
    if args.rules_command == "add":
        rule = service.create_rule(
            args.doc,
            args.name,
            json.loads(args.condition),
            json.loads(args.action),
            description=args.description,
        )
        console.print(f"Created rule [bold]{rule.id}[/bold]")
        return 0
    if args.rules_command == "delete":
        service.delete_rule(args.rule_id)
        console.print(f"Deleted rule {args.rule_id}")
        return 0
    if args.rules_command in ("enable", "disable"):
        service.update_rule(args.rule_id, enabled=args.rules_command == "enable")
        console.print(f"Rule {args.rule_id} {args.rules_command}d")
        return 0

    rules = service.list_rules(getattr(args, "doc", None))
    if not rules:
        console.print("[dim]No rules[/dim]")
        return 0
    table = Table(title="Change Rules")
    table.add_column("ID", style="bold")
    table.add_column("Document")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Action")
    table.add_column("Enabled")
    table.add_column("Runs", justify="right")
    for rule in rules:
        table.add_row(
            rule.id,
            rule.doc_token,
            rule.name,
            json.dumps(rule.condition.model_dump(mode="json")),
            json.dumps(rule.action.model_dump(mode="json")),
            "yes" if rule.enabled else "no",
            str(rule.execution_count),
        )
    console.print(table)
    return 0


def _print_snapshots(service: DocWatchService, doc_token: str, limit: int, diffs: bool) -> None:
    snapshots = service.snapshot_history(doc_token, limit)
    if not snapshots:
        console.print(f"[dim]No snapshots for {doc_token}[/dim]")
        return

    summaries: dict[int, str] = {}
    if diffs:
        for entry in service.change_history_with_diffs(doc_token, limit):
            summaries[entry.snapshot.revision_number] = entry.diff_summary

    table = Table(title=f"Snapshots for {doc_token}")
    table.add_column("Revision", style="bold")
    table.add_column("Modified by")
    table.add_column("Stored")
    table.add_column("Size", justify="right")
    table.add_column("Ratio", justify="right")
    if diffs:
        table.add_column("Changes")
    for snapshot in snapshots:
        row = [
            str(snapshot.revision_number) + (" *" if snapshot.is_latest else ""),
            snapshot.modified_by,
            snapshot.stored_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(snapshot.content_size),
            f"{snapshot.compression_ratio:.2f}",
        ]
        if diffs:
            row.append(summaries.get(snapshot.revision_number, "-"))
        table.add_row(*row)
    console.print(table)

    stats = service.snapshot_stats(doc_token)
    console.print(
        f"{stats.total_snapshots} snapshot(s), {stats.total_compressed_size} bytes stored, "
        f"average ratio {stats.average_compression_ratio:.2f}"
    )


def _print_changes(service: DocWatchService, doc_token: str | None, limit: int) -> None:
    events = service.recent_changes(doc_token, limit)
    if not events:
        console.print("[dim]No recorded changes[/dim]")
        return
    table = Table(title="Recent Changes")
    table.add_column("Detected")
    table.add_column("Document", style="bold")
    table.add_column("Type")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Notified")
    table.add_column("Diff")
    for event in events:
        table.add_row(
            event.change_detected_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.doc_token,
            str(event.change_type),
            event.previous_modified_user or "-",
            event.new_modified_user,
            "yes" if event.notification_sent else "no",
            str(event.metadata.get("diff_summary", "-")),
        )
    console.print(table)


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    config: Config = load_config(parsed.project_root)
    if parsed.verbose:
        config.logging.verbose = parsed.verbose
    setup_logging(config.logging)

    try:
        service = DocWatchService(config)
        if parsed.command == "run":
            asyncio.run(_run(service, parsed.track, parsed.once))
        elif parsed.command == "status":
            _print_status(service)
        elif parsed.command == "rules":
            return _rules_command(service, parsed)
        elif parsed.command == "snapshots":
            if parsed.prune:
                removed = service.prune_snapshots(parsed.doc)
                console.print(f"Pruned {removed} snapshot(s) of {escape(parsed.doc)}")
            _print_snapshots(service, parsed.doc, parsed.limit, parsed.diffs)
        elif parsed.command == "changes":
            _print_changes(service, parsed.doc, parsed.limit)
    except KeyboardInterrupt:
        console.print("Stopped")
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON: {escape(str(e))}[/red]")
        return 2
    except DocwatchError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 1
    return 0


def main() -> None:
    sys.exit(run_cli(sys.argv[1:]))


if __name__ == "__main__":
    main()
