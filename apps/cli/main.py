#!/usr/bin/env python3
# apps/cli/main.py
from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from apps.common.log import configure_logging
from apps.common.settings import AppSettings, load_settings
from services.import_job.clients import HttpImportClient
from services.import_job.curation import CurationStore
from services.import_job.errors import InvalidInputError, PersistenceError
from services.import_job.models import Document, DraftPatch, Record, WorkflowSnapshot, WorkflowState
from services.import_job.workflow import ImportWorkflow

console = Console()

STATE_STYLE = {
    WorkflowState.ERROR: "red",
    WorkflowState.COMPLETE: "green",
}


def _print_snapshot(snap: WorkflowSnapshot) -> None:
    style = STATE_STYLE.get(snap.state, "cyan")
    line = f"[{style}]{snap.state.value}[/{style}]"
    if snap.job_handle:
        line += f" job={snap.job_handle}"
    if snap.message:
        line += f" - {snap.message}"
    console.print(line)


def _print_preview(records: Sequence[Record], columns: Sequence[str]) -> None:
    table = Table(show_header=True, title=f"Preview ({len(records)} rows)")
    table.add_column("Order", justify="right")
    for c in columns:
        table.add_column(c.replace("_", " ").title(), overflow="fold")
    for r in records:
        table.add_row(str(r.order), *[r.fields.get(c, "") for c in columns])
    console.print(table)


def _load_patches(path: Path) -> List[DraftPatch]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise InvalidInputError(f"Could not read patches from {path}: {e}") from e
    if not isinstance(data, list):
        raise InvalidInputError(f"{path} must hold a JSON list of row patches")
    try:
        return [DraftPatch.from_dict(item) for item in data]
    except (KeyError, TypeError, AttributeError) as e:
        raise InvalidInputError(f"Every patch in {path} needs an 'id': {e}") from e


def _write_json_atomic(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
    tmp.replace(path)


def _blank_rows(store: CurationStore) -> List[str]:
    return [
        r.stable_id for r in store.records
        if r.stable_id and not any(v.strip() for v in r.fields.values())
    ]


async def run_import(args: argparse.Namespace, settings: AppSettings, client: Any) -> int:
    workflow = ImportWorkflow(
        job_client=client,
        persistence_client=client,
        store=CurationStore(columns=settings.columns),
        poll_interval_s=settings.poll_interval_s,
        accepted_extensions=settings.accepted_extensions,
    )
    workflow.subscribe(_print_snapshot)

    try:
        document = Document.from_path(args.document)
        await workflow.submit(document)
    except OSError as e:
        console.print(f"[red]Could not read {args.document}: {e}[/red]")
        return 2
    except InvalidInputError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    snap = await workflow.wait_settled()
    if snap.state is not WorkflowState.COMPLETE:
        console.print(f"[red]Import failed: {snap.error_detail or 'Unknown error'}[/red]")
        return 1

    store = workflow.store
    try:
        if args.patches:
            store.apply_patches(_load_patches(Path(args.patches)))
        if args.drop_empty:
            store.select(_blank_rows(store))
            store.delete_selected()
    except InvalidInputError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    _print_preview(store.snapshot(), store.columns)

    if args.export:
        out = Path(args.export)
        _write_json_atomic(out, store.to_wire())
        console.print(f"[green]Saved preview → {out}[/green]")

    if not args.commit:
        return 0
    if not workflow.can_commit:
        console.print("[yellow]Nothing to save.[/yellow]")
        return 1

    try:
        summary = await workflow.commit(args.container)
    except PersistenceError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    msg = f"Saved! Created {summary.created_count} records"
    if summary.container_id:
        msg += f" under {summary.container_name or summary.container_id}"
    console.print(f"[bold green]{msg}[/bold green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="import-wizard", description="Import records from a document.")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Upload a document, wait for extraction, review and optionally save.")
    run.add_argument("document", help="Path to the document to import.")
    run.add_argument("--config", default=None, help="Path to app.yaml (default: config/app.yaml).")
    run.add_argument("--gateway", default=None, help="Gateway base URL (overrides config).")
    run.add_argument("--interval", type=float, default=None, help="Poll interval in seconds.")
    run.add_argument("--patches", default=None, help="JSON list of row patches, each with an 'id'.")
    run.add_argument("--drop-empty", action="store_true", help="Delete rows whose fields are all blank.")
    run.add_argument("--export", default=None, help="Write the curated rows to this JSON file.")
    run.add_argument("--commit", action="store_true", help="Save the curated rows.")
    run.add_argument("--container", default=None, help="Optional container name for saved rows.")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config, gateway_url=args.gateway)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 2
    if args.interval is not None:
        if args.interval <= 0:
            console.print(f"[red]--interval must be > 0, got {args.interval}[/red]")
            return 2
        settings = replace(settings, poll_interval_s=args.interval)

    configure_logging(settings.log_level)

    client = HttpImportClient(
        settings.gateway_url,
        timeout_s=settings.request_timeout_s,
        columns=settings.columns,
    )
    try:
        return asyncio.run(run_import(args, settings, client))
    finally:
        client.close()


if __name__ == "__main__":
    raise SystemExit(main())
