#!/usr/bin/env python3
import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm
from rich.console import Console
from rich.table import Table

# project root
sys.path.append(str(Path(__file__).resolve().parents[1]))
from apps.common.pipeline_loader import build_coordinator
from apps.common.settings import load_settings
from services.segmentation.models import OutputMode

console = Console()

STATUS_STYLE = {
    "done": "green",
    "waiting_review": "yellow",
    "error": "red",
}


def iter_pdfs(root: Path):
    return sorted(p for p in root.rglob("*") if p.suffix.lower() == ".pdf")


def print_files(coordinator):
    table = Table(show_header=True)
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Docs", justify="right")
    table.add_column("Note")
    for f in coordinator.files():
        style = STATUS_STYLE.get(f.status.value, "white")
        note = f.error or "; ".join(f.warnings)
        table.add_row(f.name, f"[{style}]{f.status.value}[/{style}]", str(len(f.segments)), note)
    console.print(table)


def main():
    ap = argparse.ArgumentParser(description="Split every PDF packet in a folder without manual review")
    ap.add_argument("input_dir", help="Folder scanned recursively for *.pdf")
    ap.add_argument("--config", default=None, help="YAML config (defaults to config/app.yaml)")
    ap.add_argument("--storage-root", default=None, help="Override storage_root from config")
    ap.add_argument("--output-mode", choices=[m.value for m in OutputMode], default=None)
    ap.add_argument("--include-original", action="store_true")
    ap.add_argument("--reference", default=None, help="Reference table JSON to verify against")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    root = Path(args.input_dir)
    if not root.is_dir():
        console.print(f"[red]Not a directory: {root}[/red]")
        sys.exit(2)

    settings = load_settings(args.config)
    coordinator = build_coordinator(settings, storage_root=args.storage_root)

    changes = {"manual_review_mode": False}
    if args.output_mode:
        changes["output_mode"] = OutputMode(args.output_mode)
    if args.include_original:
        changes["include_original"] = True
    coordinator.update_settings(**changes)

    if args.reference:
        count = coordinator.load_reference_table(Path(args.reference).read_bytes())
        console.print(f"Loaded {count} reference records")

    pdfs = iter_pdfs(root)
    if not pdfs:
        console.print(f"[yellow]No PDFs under {root}[/yellow]")
        return

    for p in tqdm(pdfs, desc="Queueing", unit="pdf"):
        source = coordinator.add_file(p.name, p.read_bytes())
        if source.duplicate:
            tqdm.write(f"already processed before: {p.name}")

    archives = []
    with console.status(f"Processing {len(pdfs)} packet(s)..."):
        summary = coordinator.run()
    archives.append(summary.archive)
    while summary.stopped_at_cap:
        console.print("[yellow]Batch limit reached, continuing with the rest[/yellow]")
        with console.status("Processing..."):
            summary = coordinator.run()
        archives.append(summary.archive)

    print_files(coordinator)

    counts = coordinator.status_counts()
    console.print(
        f"\n[bold]done[/bold] {counts['done']}  "
        f"[bold]review[/bold] {counts['waiting_review']}  "
        f"[bold]error[/bold] {counts['error']}"
    )
    if counts["waiting_review"]:
        # nothing reviews them in a headless run, so ship what did finish
        console.print("[yellow]Flagged packets were left out of the archive; re-run them through the review console.[/yellow]")
        archives.append(coordinator.flush_batch_archive())
    for archive in filter(None, archives):
        path = coordinator.storage.archive_path(archive.name)
        console.print(f"[green]Saved archive → {path}[/green] ({archive.entry_count} entries)")


if __name__ == "__main__":
    main()
