#!/usr/bin/env python3
"""
migrate.py - Move stored files from old key layouts to the category layout

Target layout:
    {type}/{YYYY-MM}/{category1}/{category2}/{filename}

Modes:
- default:              migrate pairs listed in an exported obj.json
- --scan-all:           scan the bucket and migrate every non-compliant pair
- --reclassify:         re-run categorization for files under 未分类/未分类
- --list-uncategorized: list files under 未分类/未分类 only
- --list-non-compliant: list non-compliant files grouped by violation type
- --dry-run:            preview any migrating mode without touching storage

Each pair is handled on its own: fetch metadata JSON, extract labels,
resolve the category, compute the destination, then skip or move
(copy image, delete image, copy json, delete json). A failure is recorded
against that pair and the run continues. Moves are not atomic; a re-run
picks up halves that were already moved.
"""

import json
import sys
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from categories import (
    UNCATEGORIZED_CATEGORY,
    CategoryInfo,
    CategoryResolver,
    LabelIdTable,
    extract_labels,
    load_category_tables,
    load_label_id_table,
)
from migration_stats import StatsTracker
from object_store import config_from_options, connect, store_options
from pairing import (
    FilePair,
    normalize_entry,
    pair_entries,
    parse_listing,
    scan_bucket_non_compliant,
    scan_uncategorized,
    separate,
)
from storage_errors import (
    ConfigurationError,
    ObjectNotFound,
    ParseError,
    StorageOperationError,
    StorageToolError,
)
from storage_paths import (
    UNCATEGORIZED,
    basename,
    calculate_new_path,
    classify,
    extract_month,
    extract_type,
    is_correct_location,
    is_valid,
)

console = Console()

DEFAULT_OBJ_LIST = Path("logs/obj.json")
DEFAULT_CLASSES_FILE = Path("docs/classes.csv")
DEFAULT_LOG_FILE = Path("migrate-log.txt")


@dataclass
class PairResult:
    """Outcome of processing one file pair."""

    pair: FilePair
    outcome: str  # "migrated", "skipped", "error" or "reclassified"
    new_image_path: str | None = None
    new_json_path: str | None = None
    message: str = ""


def violation_of(pair: FilePair) -> str:
    return classify(pair.source_image_path).value


def group_by_violation(pairs: list[FilePair]) -> dict[str, list[FilePair]]:
    groups = defaultdict(list)
    for pair in pairs:
        groups[violation_of(pair)].append(pair)
    return dict(groups)


class MigrationOrchestrator:
    """Drives the per-pair migration across all modes."""

    def __init__(
        self,
        store,
        resolver: CategoryResolver,
        label_ids: LabelIdTable | None = None,
        stats: StatsTracker | None = None,
        console: Console = console,
        dry_run: bool = False,
        verbose: bool = False,
        limit: int | None = None,
        show_progress: bool = False,
    ):
        self.store = store
        self.resolver = resolver
        self.label_ids = label_ids or LabelIdTable()
        self.stats = stats or StatsTracker()
        self.console = console
        self.dry_run = dry_run
        self.verbose = verbose
        self.limit = limit
        self.show_progress = show_progress
        self.results: list[PairResult] = []

    def debug(self, message: str) -> None:
        if self.verbose:
            self.console.print(f"[dim]\\[DEBUG] {escape(message)}[/dim]")

    # --- Per-pair steps ----------------------------------------------------

    def fetch_metadata(self, key: str):
        data = self.store.get(key)
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseError(f"Invalid metadata JSON {key}: {e}") from e

    def find_moved_json(self, pair: FilePair) -> str | None:
        """
        Canonical key of metadata JSON that an earlier run already moved while
        the image stayed at the source. Only an unambiguous match is returned.
        """
        prefix = f"{extract_type(pair.image_path)}/{extract_month(pair.image_path)}/"
        json_name = basename(pair.json_path)
        image_name = basename(pair.image_path)

        candidates = []
        for entry in self.store.list(prefix):
            if basename(entry.key) != json_name or not is_valid(entry.key):
                continue
            directory = entry.key.rsplit("/", 1)[0]
            # A moved image beside it means the JSON belongs to a finished pair
            if not self.store.exists(f"{directory}/{image_name}"):
                candidates.append(entry.key)

        return candidates[0] if len(candidates) == 1 else None

    def labels_for(self, pair: FilePair) -> list[str]:
        try:
            metadata = self.fetch_metadata(pair.source_json_path)
        except ObjectNotFound:
            moved = self.find_moved_json(pair)
            if moved is None:
                raise
            self.debug(f"Metadata already at destination: {moved}")
            metadata = self.fetch_metadata(moved)
        labels = extract_labels(metadata, self.label_ids)
        self.debug(f"Labels extracted: {', '.join(labels) or '(none)'}")
        return labels

    def category_for_labels(self, labels: list[str]) -> CategoryInfo:
        """First resolved category, or 未分类/未分类 when nothing resolves."""
        if not labels:
            return UNCATEGORIZED_CATEGORY
        categories = self.resolver.resolve(labels)
        return categories[0] if categories else UNCATEGORIZED_CATEGORY

    def destination_for(self, pair: FilePair, category: CategoryInfo) -> tuple[str, str]:
        """New image and json keys, computed from the decoded keys."""
        month = extract_month(pair.image_path)
        return (
            calculate_new_path(pair.image_path, month, category),
            calculate_new_path(pair.json_path, month, category),
        )

    def move_object(self, src: str, dst: str) -> None:
        """
        Copy then delete one object. A source that is already gone while
        the destination exists counts as moved by an earlier run.
        """
        if src == dst:
            return
        if self.store.exists(src):
            self.store.copy(src, dst)
            self.store.delete(src)
        elif self.store.exists(dst):
            self.debug(f"Already at destination: {dst}")
        else:
            raise ObjectNotFound(f"move {src}: missing at source and destination", key=src)

    def move_pair(self, pair: FilePair, new_image: str, new_json: str, verb: str) -> None:
        if self.dry_run:
            self.console.print(
                f"[blue]\\[DRY-RUN][/blue] Would {verb} ({violation_of(pair)}):"
            )
            if pair.is_encoded:
                self.console.print(f"    [yellow](encoded) {escape(pair.source_image_path)}[/yellow]")
                self.console.print(f"    [red](decoded) {escape(pair.image_path)}[/red]")
            else:
                self.console.print(f"    [red]{escape(pair.image_path)}[/red]")
            self.console.print(f"    [green]-> {escape(new_image)}[/green]")
            return

        self.move_object(pair.source_image_path, new_image)
        self.move_object(pair.source_json_path, new_json)
        self.debug(f"Moved: {pair.image_path} -> {new_image}")

    def _record(self, result: PairResult) -> PairResult:
        self.stats.record(result.outcome)
        self.results.append(result)
        return result

    def _record_error(self, pair: FilePair, message: str) -> PairResult:
        self.console.print(f"[red]Failed to process {escape(pair.image_path)}: {escape(message)}[/red]")
        return self._record(PairResult(pair, "error", message=message))

    def process_pair(self, pair: FilePair) -> PairResult:
        """Migrate one pair to its canonical location."""
        self.debug(f"Processing ({violation_of(pair)}): {pair.image_path}")
        try:
            category = self.category_for_labels(self.labels_for(pair))
            new_image, new_json = self.destination_for(pair, category)

            # Encoded root keys compare by literal key, so a decoded key that
            # is already canonical still gets moved out of the root
            if is_correct_location(pair.source_image_path, new_image):
                self.debug(f"Already correct: {pair.image_path}")
                return self._record(PairResult(pair, "skipped", new_image, new_json, "already in place"))

            self.move_pair(pair, new_image, new_json, "move")
        except (ParseError, StorageOperationError) as e:
            return self._record_error(pair, str(e))
        except Exception as e:
            return self._record_error(pair, f"Error: {e}")

        return self._record(PairResult(pair, "migrated", new_image, new_json))

    def process_reclassify_pair(self, pair: FilePair) -> PairResult:
        """Re-categorize one pair stored under 未分类/未分类."""
        self.debug(f"Reclassifying: {pair.image_path}")
        try:
            category = self.category_for_labels(self.labels_for(pair))
            if category.category1 == UNCATEGORIZED:
                self.debug(f"Still uncategorized: {pair.image_path}")
                return self._record(PairResult(pair, "skipped", message="still uncategorized"))

            new_image, new_json = self.destination_for(pair, category)
            self.move_pair(pair, new_image, new_json, "reclassify")
        except (ParseError, StorageOperationError) as e:
            return self._record_error(pair, str(e))
        except Exception as e:
            return self._record_error(pair, f"Error: {e}")

        return self._record(PairResult(pair, "reclassified", new_image, new_json))

    # --- Modes -------------------------------------------------------------

    def _warn_dry_run(self) -> None:
        if self.dry_run:
            self.console.print("[yellow]DRY-RUN MODE - No changes will be made[/yellow]")

    def process_all(self, pairs: list[FilePair], handler, description: str) -> None:
        if self.limit is not None:
            pairs = pairs[:self.limit]
            self.console.print(f"Limited to first {len(pairs):,} pairs")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            disable=not self.show_progress,
        ) as progress:
            task = progress.add_task(description, total=len(pairs))
            for pair in pairs:
                handler(pair)
                progress.advance(task)

    def run_listing(self, text: str) -> None:
        """Migrate pairs found in an exported object listing."""
        self.console.print("[bold]Starting migration...[/bold]")
        self._warn_dry_run()

        entries = [normalize_entry(e) for e in parse_listing(text)]
        images, jsons = separate(entries)
        self.console.print(f"Found {len(images):,} images and {len(jsons):,} JSON files")

        pairs = pair_entries(entries)
        self.console.print(f"Matched {len(pairs):,} file pairs")

        self.process_all(pairs, self.process_pair, "Migrating")

    def run_scan(self) -> None:
        """Scan the bucket and migrate every non-compliant pair."""
        self.console.print("[bold]Scanning all files for non-compliant paths...[/bold]")
        self._warn_dry_run()

        pairs = scan_bucket_non_compliant(
            self.store,
            on_progress=lambda t, n: self.debug(f"Scanned {t}/: found {n} non-compliant files"),
        )
        self.console.print(f"Found {len(pairs):,} non-compliant file pairs")

        if not pairs:
            self.console.print("[green]All files are compliant with standard path format[/green]")
            return

        table = Table(title="Violation types")
        table.add_column("Type", style="cyan")
        table.add_column("Pairs", justify="right")
        for violation, group in group_by_violation(pairs).items():
            table.add_row(violation, f"{len(group):,}")
        self.console.print(table)

        self.process_all(pairs, self.process_pair, "Migrating")

    def run_reclassify(self) -> None:
        """Re-categorize everything stored under 未分类/未分类."""
        self.console.print("[bold]Starting reclassification of uncategorized files...[/bold]")
        self._warn_dry_run()

        pairs = self.list_uncategorized()
        self.console.print(f"Found {len(pairs):,} uncategorized file pairs")

        self.process_all(pairs, self.process_reclassify_pair, "Reclassifying")

    def list_uncategorized(self) -> list[FilePair]:
        self.console.print("Scanning for uncategorized files...")
        return scan_uncategorized(self.store)

    def list_non_compliant(self) -> dict[str, list[FilePair]]:
        self.console.print("Scanning for non-compliant files...")
        pairs = scan_bucket_non_compliant(
            self.store,
            on_progress=lambda t, n: self.console.print(f"  Scanned {t}/: {n} non-compliant files"),
        )
        return group_by_violation(pairs)


# --- Reporting ----------------------------------------------------------------

def print_uncategorized(pairs: list[FilePair], out: Console = console) -> None:
    if not pairs:
        out.print("No uncategorized files found")
        return

    out.print("\n[bold]Uncategorized files:[/bold]")
    for pair in pairs:
        out.print(f"  {escape(pair.image_path)}")
    out.print(f"\nTotal: {len(pairs):,} file pairs")


def print_non_compliant(groups: dict[str, list[FilePair]], out: Console = console) -> None:
    total = sum(len(g) for g in groups.values())
    if not total:
        out.print("[green]All files are compliant with standard path format[/green]")
        return

    out.print("\n" + "=" * 60)
    out.print("Non-compliant files by violation type:")
    out.print("=" * 60)

    for violation, pairs in groups.items():
        out.print(f"\n[cyan]\\[{violation}][/cyan] ({len(pairs):,} pairs):")
        for pair in pairs:
            if pair.is_encoded:
                out.print(f"  [yellow](encoded)[/yellow] {escape(pair.source_image_path)}")
                out.print(f"  [blue](decoded)[/blue] {escape(pair.image_path)}")
            else:
                out.print(f"  {escape(pair.image_path)}")

    out.print("\n" + "=" * 60)
    out.print(f"Total: {total:,} non-compliant file pairs")
    out.print("=" * 60)
    out.print("\nRun with [yellow]--scan-all[/yellow] to migrate these files")
    out.print("Run with [yellow]--scan-all --dry-run[/yellow] to preview migration")


def read_listing(obj_list: Path) -> str:
    """Read an exported object listing."""
    if not obj_list.exists():
        raise ConfigurationError(f"Object list not found: {obj_list}")
    try:
        return obj_list.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read object list {obj_list}: {e}") from e


def write_log(log_file: Path, results: list[PairResult], summary: str, dry_run: bool) -> None:
    """Write operation log to file."""
    mode = "DRY RUN" if dry_run else "EXECUTED"

    with open(log_file, "w", encoding="utf-8") as f:
        f.write(f"Migration Operations Log - {mode}\n")
        f.write(f"Generated: {datetime.now().isoformat()}\n")
        f.write(summary + "\n\n")

        moved = [r for r in results if r.outcome in ("migrated", "reclassified")]
        failed = [r for r in results if r.outcome == "error"]

        f.write("MOVES:\n")
        f.write("-" * 40 + "\n")
        for result in moved:
            f.write(f"[{result.outcome.upper()}] {violation_of(result.pair)}\n")
            f.write(f"  FROM: {result.pair.source_image_path}\n")
            f.write(f"  TO:   {result.new_image_path}\n")
            f.write(f"  JSON: {result.pair.source_json_path} -> {result.new_json_path}\n\n")

        if failed:
            f.write("\nFAILED:\n")
            f.write("-" * 40 + "\n")
            for result in failed:
                f.write(f"  FROM: {result.pair.source_image_path}\n")
                f.write(f"  ERROR: {result.message}\n\n")


@click.command()
@click.option("--dry-run", is_flag=True, help="Preview changes without executing")
@click.option("--verbose", "-v", is_flag=True, help="Show detailed output")
@click.option(
    "--obj-list",
    default=str(DEFAULT_OBJ_LIST),
    type=click.Path(path_type=Path),
    help="Path to obj.json listing (JSON array or NDJSON)",
)
@click.option(
    "--classes",
    default=str(DEFAULT_CLASSES_FILE),
    type=click.Path(path_type=Path),
    help="Path to classes.csv",
)
@click.option(
    "--label-ids",
    default=None,
    type=click.Path(path_type=Path),
    help="Path to label-id-map.json (for metadata with labelIds)",
)
@click.option("--reclassify", is_flag=True, help="Re-process uncategorized files only")
@click.option("--list-uncategorized", is_flag=True, help="List uncategorized files without migrating")
@click.option("--scan-all", is_flag=True, help="Scan all files, migrate non-compliant paths")
@click.option("--list-non-compliant", is_flag=True, help="List non-compliant files without migrating")
@click.option(
    "--log-file",
    "-l",
    default=str(DEFAULT_LOG_FILE),
    type=click.Path(path_type=Path),
    help="Path for operation log file",
)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Limit number of pairs to process")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation before moving")
@store_options
def main(
    dry_run: bool,
    verbose: bool,
    obj_list: Path,
    classes: Path,
    label_ids: Path | None,
    reclassify: bool,
    list_uncategorized: bool,
    scan_all: bool,
    list_non_compliant: bool,
    log_file: Path,
    limit: int | None,
    yes: bool,
    endpoint: str,
    access_key: str,
    secret_key: str,
    bucket: str,
    region: str,
):
    """
    Migrate stored files to {type}/{YYYY-MM}/{category1}/{category2}/{filename}.

    Non-compliant layouts: old-taskid ({type}/{YYYY-MM-DD}/{taskId}/{file}),
    old-flat ({type}/{YYYY-MM-DD}/{file}) and url-encoded-root
    (detection%2F2024-01%2F...%2Ffile.jpg at bucket root).
    """
    console.print("[bold blue]Storage Migration[/bold blue]")
    console.print(f"Endpoint: {endpoint}  Bucket: {bucket}")

    listing_mode = not (reclassify or list_uncategorized or scan_all or list_non_compliant)

    console.print("\n[bold]Checking prerequisites...[/bold]")
    try:
        store = connect(config_from_options(endpoint, access_key, secret_key, bucket, region))
        store.head_bucket()
        listing_text = read_listing(obj_list) if listing_mode else ""
        tables = load_category_tables(classes)
        id_table = load_label_id_table(label_ids)
    except StorageToolError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    console.print(f"Loaded {len(tables):,} label mappings from {classes}")
    if id_table.source:
        console.print(f"Loaded {len(id_table):,} label ids from {id_table.source}")
    console.print("[green]All prerequisites met[/green]")

    orchestrator = MigrationOrchestrator(
        store,
        CategoryResolver(tables),
        label_ids=id_table,
        console=console,
        dry_run=dry_run,
        verbose=verbose,
        limit=limit,
        show_progress=not verbose and not dry_run,
    )

    if list_non_compliant:
        print_non_compliant(orchestrator.list_non_compliant())
        return
    if list_uncategorized:
        print_uncategorized(orchestrator.list_uncategorized())
        return

    if not dry_run and not yes:
        console.print("\n[bold yellow]This will MOVE objects in the bucket.[/bold yellow]")
        if not click.confirm("Proceed with migration?"):
            console.print("[yellow]Aborted.[/yellow]")
            sys.exit(0)

    try:
        if scan_all:
            orchestrator.run_scan()
        elif reclassify:
            orchestrator.run_reclassify()
        else:
            orchestrator.run_listing(listing_text)
    except StorageOperationError as e:
        # Listing failures abort the run; per-pair failures never reach here
        console.print(f"[red]Scan failed: {escape(str(e))}[/red]")
        sys.exit(1)

    orchestrator.stats.complete()
    summary = orchestrator.stats.summary()
    console.print(summary)

    write_log(log_file, orchestrator.results, summary, dry_run)
    console.print(f"\n[green]Log written: {log_file}[/green]")

    if dry_run:
        console.print("\n[yellow]DRY RUN - no files were moved. Run without --dry-run to execute.[/yellow]")
    else:
        console.print("\n[bold green]Migration complete![/bold green]")


if __name__ == "__main__":
    main()
