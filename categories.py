"""
categories.py - Map annotation labels to storage categories

Sources, in lookup order:
- classes.csv: exact label -> (category1, category2)
- label prefix: "021_..." -> (设备-输电, 未分类)
- otherwise the label is unknown

Filtering rules applied by CategoryResolver.resolve():
- all labels unknown -> single-level 未分类/
- a category1 with any exact (csv) match drops its <category1>/未分类 entry
- unknown labels never reintroduce 未分类/ once something classifies

Also extracts labels from the metadata JSON stored beside each image.
"""

import csv
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping

from storage_errors import ConfigurationError
from storage_paths import UNCATEGORIZED

# Label prefix -> category1, used when a label has no exact csv entry
PREFIX_CATEGORY1: Mapping[str, str] = MappingProxyType({
    "011": "安监",
    "021": "设备-输电",
    "022": "设备-变电",
    "023": "设备-配电",
    "031": "营销",
    "041": "基建",
})

LABEL_PREFIX_RE = re.compile(r"^([0-9]{3})_")

BOM = "\ufeff"

# classes.csv: 专业,部件名称/场景分类,部位名称/场景名称,状态描述/场景描述,标注标签
CATEGORY1_COLUMN = 0
CATEGORY2_COLUMN = 1
LABEL_COLUMN = 4
MIN_COLUMNS = 5

SOURCE_CSV = "csv"
SOURCE_PREFIX = "prefix"
SOURCE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class CategoryInfo:
    category1: str
    category2: str

    @property
    def path(self) -> str:
        """Directory fragment: 'c1/c2', or 'c1' for a single-level category."""
        return f"{self.category1}/{self.category2}" if self.category2 else self.category1


# Single-level fallback used when no label can be classified
FLAT_UNCATEGORIZED = CategoryInfo(UNCATEGORIZED, "")

# Two-level fallback used by migration (keys always keep five segments)
UNCATEGORIZED_CATEGORY = CategoryInfo(UNCATEGORIZED, UNCATEGORIZED)


@dataclass(frozen=True)
class CategoryTables:
    """Read-only lookup tables, loaded once at startup."""

    labels: Mapping[str, CategoryInfo]
    prefixes: Mapping[str, str] = field(default_factory=lambda: PREFIX_CATEGORY1)
    source: Path | None = None

    def __len__(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class LabelIdTable:
    """Numeric label id -> label string (classify workflow)."""

    labels: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))
    source: Path | None = None

    def __len__(self) -> int:
        return len(self.labels)

    def lookup(self, label_ids: list) -> list[str]:
        """Translate ids, skipping unknown ones."""
        found = []
        for label_id in label_ids:
            label = self.labels.get(label_id)
            if label:
                found.append(label)
        return found


def parse_category_rows(rows) -> dict[str, CategoryInfo]:
    """Build label -> category from csv rows. The first row is a header."""
    mapping = {}
    for index, row in enumerate(rows):
        if index == 0 or len(row) < MIN_COLUMNS:
            continue
        category1 = row[CATEGORY1_COLUMN].lstrip(BOM).strip()
        category2 = row[CATEGORY2_COLUMN].strip()
        label = row[LABEL_COLUMN].strip()
        if label and category1 and category2:
            mapping[label] = CategoryInfo(category1, category2)
    return mapping


def load_category_tables(classes_file: Path) -> CategoryTables:
    """
    Load classes.csv into immutable tables.

    Raises ConfigurationError if the file cannot be read or yields no
    usable mappings; a partial table is never returned.
    """
    try:
        with open(classes_file, "r", encoding="utf-8", newline="") as f:
            mapping = parse_category_rows(csv.reader(f))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise ConfigurationError(f"Cannot load category mapping {classes_file}: {e}") from e

    if not mapping:
        raise ConfigurationError(f"No label mappings found in {classes_file}")

    return CategoryTables(labels=MappingProxyType(mapping), source=classes_file)


def load_label_id_table(label_id_file: Path | None) -> LabelIdTable:
    """
    Load label-id-map.json ({"<id>": "<label>"}). No file configured
    gives an empty table.
    """
    if label_id_file is None:
        return LabelIdTable()

    try:
        with open(label_id_file, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load label id mapping {label_id_file}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Label id mapping {label_id_file} must be a JSON object")

    labels = {}
    for id_str, label in raw.items():
        try:
            label_id = int(id_str, 10)
        except ValueError:
            continue
        if isinstance(label, str) and label:
            labels[label_id] = label

    return LabelIdTable(labels=MappingProxyType(labels), source=label_id_file)


# --- Resolution ------------------------------------------------------------

def extract_prefix(label: str) -> str | None:
    """'021_gt_hd_xs' -> '021'"""
    match = LABEL_PREFIX_RE.match(label)
    return match.group(1) if match else None


@dataclass(frozen=True)
class LabelCategory:
    """One label's category and where it came from."""

    label: str
    category: CategoryInfo | None
    source: str  # "csv", "prefix" or "unknown"


class CategoryResolver:
    """Resolve labels to categories against a fixed set of tables."""

    def __init__(self, tables: CategoryTables):
        self.tables = tables

    def category1_for_prefix(self, prefix: str) -> str | None:
        return self.tables.prefixes.get(prefix)

    def categorize(self, label: str) -> LabelCategory:
        category = self.tables.labels.get(label)
        if category:
            return LabelCategory(label, category, SOURCE_CSV)

        prefix = extract_prefix(label)
        if prefix:
            category1 = self.category1_for_prefix(prefix)
            if category1:
                return LabelCategory(label, CategoryInfo(category1, UNCATEGORIZED), SOURCE_PREFIX)

        return LabelCategory(label, None, SOURCE_UNKNOWN)

    def resolve(self, labels: list[str]) -> list[CategoryInfo]:
        """
        All unique categories for a set of labels, in label order.
        Empty input gives an empty list.
        """
        if not labels:
            return []

        results = [self.categorize(label) for label in labels]

        if all(r.source == SOURCE_UNKNOWN for r in results):
            return [FLAT_UNCATEGORIZED]

        specific = {r.category.category1 for r in results if r.source == SOURCE_CSV}

        seen = set()
        categories = []
        for result in results:
            if result.category is None:
                continue
            category = result.category
            if result.source == SOURCE_PREFIX and category.category1 in specific:
                continue
            key = (category.category1, category.category2)
            if key not in seen:
                seen.add(key)
                categories.append(category)

        return categories


# --- Label extraction ------------------------------------------------------

@dataclass(frozen=True)
class DirectLabels:
    """{"labels": [...]} (collector storage format)"""

    labels: list[str]

    def resolve_labels(self, label_ids: LabelIdTable) -> list[str]:
        return self.labels


@dataclass(frozen=True)
class AnnotationList:
    """{"annotations": [{"value": {"rectanglelabels": [...]}}]} (Label Studio)"""

    annotations: list[dict]

    def resolve_labels(self, label_ids: LabelIdTable) -> list[str]:
        labels = []
        for annotation in self.annotations:
            value = annotation.get("value")
            if not isinstance(value, dict):
                continue
            rectangle_labels = value.get("rectanglelabels")
            if isinstance(rectangle_labels, list):
                labels.extend(label for label in rectangle_labels if isinstance(label, str))
        return labels


@dataclass(frozen=True)
class LabelIdList:
    """{"labelIds": [3, 17]} (classify workflow)"""

    label_ids: list[int]

    def resolve_labels(self, label_ids: LabelIdTable) -> list[str]:
        return label_ids.lookup(self.label_ids)


def metadata_shapes(metadata) -> Iterator:
    """Yield the label-bearing shapes present in metadata, in precedence order."""
    if not isinstance(metadata, dict):
        return

    labels = metadata.get("labels")
    if isinstance(labels, list):
        yield DirectLabels([label for label in labels if isinstance(label, str)])

    annotations = metadata.get("annotations")
    if isinstance(annotations, list):
        yield AnnotationList([a for a in annotations if isinstance(a, dict)])

    label_ids = metadata.get("labelIds")
    if isinstance(label_ids, list):
        # bool is an int subclass but never a label id
        yield LabelIdList([
            i for i in label_ids if isinstance(i, int) and not isinstance(i, bool)
        ])


def _unique(labels: list[str]) -> list[str]:
    return list(dict.fromkeys(labels))


def extract_labels(metadata, label_ids: LabelIdTable | None = None) -> list[str]:
    """Labels from the first shape that yields any, deduplicated."""
    label_ids = label_ids or LabelIdTable()
    for shape in metadata_shapes(metadata):
        labels = _unique(shape.resolve_labels(label_ids))
        if labels:
            return labels
    return []
