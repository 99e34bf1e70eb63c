"""
pairing.py - Turn object listings into image / metadata JSON pairs

Inputs:
- an exported listing (obj.json): a JSON array or one JSON object per line
- a live bucket scan through an object store

Pairing supports two metadata naming patterns:
- {stem}.json        image.jpg -> image.json      (tried first)
- {imagePath}.json   image.jpg -> image.jpg.json

Root-level keys with percent-encoded separators are paired on their decoded
form; the literal key is kept on the pair for reading and moving.
"""

import json
from dataclasses import dataclass, replace
from typing import Callable

from storage_paths import (
    IMAGE_EXTENSIONS,
    STORAGE_TYPES,
    PathViolationType,
    classify,
    decode_root_key,
    is_uncategorized_path,
    is_valid,
)


@dataclass(frozen=True)
class ObjectEntry:
    """One object from a listing. key is decoded for url-encoded root keys."""

    key: str
    original_key: str | None = None
    size: int | None = None
    last_modified: str | None = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ObjectEntry":
        return cls(
            key=raw["key"],
            original_key=raw.get("originalKey"),
            size=raw.get("size"),
            last_modified=raw.get("lastModified"),
        )


@dataclass(frozen=True)
class FilePair:
    """An image and its companion metadata JSON."""

    image_path: str
    json_path: str
    original_image_path: str | None = None
    original_json_path: str | None = None

    @property
    def source_image_path(self) -> str:
        """Literal key to read / move the image from."""
        return self.original_image_path or self.image_path

    @property
    def source_json_path(self) -> str:
        return self.original_json_path or self.json_path

    @property
    def is_encoded(self) -> bool:
        return self.original_image_path is not None


def _to_entries(items: list) -> list[ObjectEntry]:
    entries = []
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("key"), str):
            entries.append(ObjectEntry.from_dict(item))
    return entries


def parse_listing(text: str) -> list[ObjectEntry]:
    """
    Parse an object listing. A JSON array is tried first when the text
    starts with '['; otherwise (or if that fails) each non-blank line is
    parsed as one JSON object and bad lines are skipped.
    """
    trimmed = text.strip()
    if not trimmed:
        return []

    if trimmed.startswith("["):
        try:
            items = json.loads(trimmed)
        except ValueError:
            items = None
        if isinstance(items, list):
            return _to_entries(items)

    items = []
    for line in trimmed.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            items.append(json.loads(line))
        except ValueError:
            continue
    return _to_entries(items)


def image_extension(key: str) -> str | None:
    """Recognized image extension of key (as listed), matched case-insensitively."""
    lower = key.lower()
    for ext in IMAGE_EXTENSIONS:
        if lower.endswith(ext):
            return ext
    return None


def separate(entries: list[ObjectEntry]) -> tuple[list[str], list[str]]:
    """Split entries into image keys and JSON keys. Anything else is dropped."""
    images = []
    jsons = []
    for entry in entries:
        if entry.key.lower().endswith(".json"):
            jsons.append(entry.key)
        elif image_extension(entry.key):
            images.append(entry.key)
    return images, jsons


def companion_candidates(image_key: str) -> list[str]:
    """Metadata keys that may belong to an image, in preference order."""
    ext = image_extension(image_key)
    if not ext:
        return []
    stem = image_key[:-len(ext)]
    return [f"{stem}.json", f"{image_key}.json"]


def match_pairs(images: list[str], jsons: list[str]) -> list[FilePair]:
    """Pair each image with its metadata JSON. Unpaired images are dropped."""
    json_set = set(jsons)
    pairs = []
    for image in images:
        for candidate in companion_candidates(image):
            if candidate in json_set:
                pairs.append(FilePair(image_path=image, json_path=candidate))
                break
    return pairs


def normalize_entry(entry: ObjectEntry) -> ObjectEntry:
    """
    Decode a url-encoded root key, keeping the literal key as original_key.
    Keys below the root stay literal even when they contain %2F.
    """
    if entry.original_key is not None or "/" in entry.key:
        return entry
    if classify(entry.key) is PathViolationType.URL_ENCODED_ROOT:
        return replace(entry, key=decode_root_key(entry.key), original_key=entry.key)
    return entry


def pair_entries(entries: list[ObjectEntry]) -> list[FilePair]:
    """Pair mixed entries on their decoded keys, carrying literal keys along."""
    originals = {e.key: e.original_key for e in entries if e.original_key}
    images, jsons = separate(entries)
    return [
        replace(
            pair,
            original_image_path=originals.get(pair.image_path),
            original_json_path=originals.get(pair.json_path),
        )
        for pair in match_pairs(images, jsons)
    ]


def filter_non_compliant(entries: list[ObjectEntry]) -> list[ObjectEntry]:
    return [e for e in entries if not is_valid(e.key)]


def scan_root_for_encoded(store) -> list[ObjectEntry]:
    """Root-level (non-recursive) objects whose keys are percent-encoded paths."""
    found = []
    for entry in store.list("", delimiter="/"):
        if classify(entry.key) is PathViolationType.URL_ENCODED_ROOT:
            found.append(normalize_entry(entry))
    return found


def scan_bucket_non_compliant(
    store,
    on_progress: Callable[[str, int], None] | None = None,
) -> list[FilePair]:
    """
    Scan every storage type prefix plus the bucket root and pair up all
    files that do not follow the canonical layout.
    """
    non_compliant = []

    for storage_type in STORAGE_TYPES:
        entries = list(store.list(f"{storage_type}/"))
        found = filter_non_compliant(entries)
        non_compliant.extend(found)
        if on_progress:
            on_progress(storage_type, len(found))

    encoded = scan_root_for_encoded(store)
    if encoded:
        non_compliant.extend(encoded)
        if on_progress:
            on_progress(PathViolationType.URL_ENCODED_ROOT.value, len(encoded))

    return pair_entries(non_compliant)


def scan_uncategorized(store) -> list[FilePair]:
    """Pairs currently stored under a .../未分类/未分类/... directory."""
    found = []
    for storage_type in STORAGE_TYPES:
        found.extend(e for e in store.list(f"{storage_type}/") if is_uncategorized_path(e.key))
    return pair_entries(found)
