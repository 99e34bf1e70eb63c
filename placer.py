#!/usr/bin/env python3
"""
placer.py - Store a new file and its metadata under every category it belongs to

Layout written:
    {type}/{YYYY-MM}/{category1}/{category2}/{filename}
    {type}/{YYYY-MM}/{category1}/{category2}/{stem}.json
Single-level categories (category2 empty) drop the category2 segment:
    {type}/{YYYY-MM}/未分类/{filename}

Writes go out one category at a time. The first failure stops the run and
is raised; categories written before it stay in place.
"""

import json
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console

from categories import (
    FLAT_UNCATEGORIZED,
    CategoryInfo,
    CategoryResolver,
    extract_labels,
    load_category_tables,
    load_label_id_table,
)
from object_store import config_from_options, connect, store_options
from storage_errors import StorageToolError
from storage_paths import STORAGE_TYPES, StorageType

console = Console()

DEFAULT_CLASSES_FILE = Path("docs/classes.csv")

METADATA_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class PlacementResult:
    primary_path: str
    metadata_path: str
    all_paths: list[tuple[str, str]] | None = None  # (file, metadata) per category


def stem_of(filename: str) -> str:
    """Filename without its last extension ('a.b.jpg' -> 'a.b')."""
    dot = filename.rfind(".")
    return filename[:dot] if dot > 0 else filename


def base_path_for(storage_type: str, month: str, category: CategoryInfo) -> str:
    return f"{storage_type}/{month}/{category.path}"


class StoragePlacer:
    """Write-time placement of files into category directories."""

    def __init__(self, store, resolver: CategoryResolver, now=datetime.now):
        self.store = store
        self.resolver = resolver
        self.now = now

    def categories_for(self, labels: list[str] | None) -> list[CategoryInfo]:
        categories = self.resolver.resolve(labels) if labels else []
        return categories or [FLAT_UNCATEGORIZED]

    def place(
        self,
        storage_type,
        filename: str,
        data: bytes,
        mime_type: str,
        metadata: dict,
        labels: list[str] | None = None,
    ) -> PlacementResult:
        storage_type = StorageType(storage_type).value
        month = self.now().strftime("%Y-%m")
        metadata_bytes = json.dumps(metadata, ensure_ascii=False, indent=2).encode("utf-8")

        written = []
        for category in self.categories_for(labels):
            base_path = base_path_for(storage_type, month, category)
            file_path = f"{base_path}/{filename}"
            metadata_path = f"{base_path}/{stem_of(filename)}.json"

            self.store.put(file_path, data, mime_type)
            self.store.put(metadata_path, metadata_bytes, METADATA_CONTENT_TYPE)
            written.append((file_path, metadata_path))

        primary_path, metadata_path = written[0]
        return PlacementResult(
            primary_path=primary_path,
            metadata_path=metadata_path,
            all_paths=written if len(written) > 1 else None,
        )


def detect_mime_type(data: bytes) -> str:
    """Detect MIME type using libmagic."""
    import magic

    try:
        return magic.from_buffer(data, mime=True)
    except Exception:
        return "application/octet-stream"


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--metadata",
    "-m",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Metadata JSON to store beside the file",
)
@click.option(
    "--type",
    "-t",
    "storage_type",
    default=StorageType.DETECTION.value,
    type=click.Choice(STORAGE_TYPES),
    help="Workflow type (first key segment)",
)
@click.option(
    "--label",
    "-L",
    "labels",
    multiple=True,
    help="Label to categorize by (can repeat). Defaults to labels found in the metadata",
)
@click.option(
    "--classes",
    "-c",
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
@click.option("--mime-type", default=None, help="Override detected MIME type")
@store_options
def main(
    file: Path,
    metadata: Path,
    storage_type: str,
    labels: tuple[str],
    classes: Path,
    label_ids: Path | None,
    mime_type: str | None,
    endpoint: str,
    access_key: str,
    secret_key: str,
    bucket: str,
    region: str,
):
    """Upload FILE and its metadata into category directories."""

    console.print("[bold blue]File Ingest[/bold blue]")
    console.print(f"File: {file}")

    try:
        tables = load_category_tables(classes)
        id_table = load_label_id_table(label_ids)
        store = connect(config_from_options(endpoint, access_key, secret_key, bucket, region))
        store.head_bucket()
    except StorageToolError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    try:
        with open(metadata, "r", encoding="utf-8") as f:
            metadata_doc = json.load(f)
    except ValueError as e:
        console.print(f"[red]Invalid metadata JSON {metadata}: {e}[/red]")
        sys.exit(1)

    label_list = list(labels) or extract_labels(metadata_doc, id_table)
    console.print(f"Labels: {', '.join(label_list) or '(none)'}")

    data = file.read_bytes()
    placer = StoragePlacer(store, CategoryResolver(tables))

    try:
        result = placer.place(
            storage_type,
            file.name,
            data,
            mime_type or detect_mime_type(data),
            metadata_doc,
            labels=label_list,
        )
    except StorageToolError as e:
        console.print(f"[red]Upload failed: {e}[/red]")
        sys.exit(1)

    for file_path, metadata_path in result.all_paths or [(result.primary_path, result.metadata_path)]:
        console.print(f"  [green]{file_path}[/green]")
        console.print(f"  [dim]{metadata_path}[/dim]")

    console.print("\n[bold green]Upload complete![/bold green]")


if __name__ == "__main__":
    main()
