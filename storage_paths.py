"""
storage_paths.py - Key grammar and destination calculation for the bucket

Canonical layout:
    {type}/{YYYY-MM}/{category1}/{category2}/{filename}

Legacy / corrupted layouts recognized:
- old-taskid:       {type}/{YYYY-MM-DD}/{32-hex-taskId}/{filename}
- old-flat:         {type}/{YYYY-MM-DD}/{filename.ext}
- url-encoded-root: keys at bucket root with %2F instead of /
                    e.g. detection%2F2024-01%2F未分类%2F未分类%2Ffile.jpg
"""

import enum
import re
from dataclasses import dataclass
from datetime import date
from urllib.parse import unquote

UNCATEGORIZED = "未分类"

# Two-segment marker used by migrated-but-unclassifiable files
UNCATEGORIZED_PATH_PATTERN = f"{UNCATEGORIZED}/{UNCATEGORIZED}"


class StorageType(enum.Enum):
    DETECTION = "detection"
    MULTIMODAL = "multimodal"
    TEXT_QA = "text-qa"
    CLASSIFY = "classify"
    QA_PAIR = "qa-pair"


STORAGE_TYPES = [t.value for t in StorageType]

IMAGE_EXTENSIONS = [".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"]

URL_ENCODED_SEPARATOR = "%2F"

_TYPES = "|".join(re.escape(t) for t in STORAGE_TYPES)

VALID_PATH_RE = re.compile(rf"({_TYPES})/[0-9]{{4}}-[0-9]{{2}}/[^/]+/[^/]+/[^/]+")
OLD_TASKID_RE = re.compile(rf"({_TYPES})/[0-9]{{4}}-[0-9]{{2}}-[0-9]{{2}}/[a-f0-9]{{32}}/[^/]+")
OLD_FLAT_RE = re.compile(
    rf"({_TYPES})/[0-9]{{4}}-[0-9]{{2}}-[0-9]{{2}}/[^/]+\.(?i:jpg|jpeg|png|gif|webp|bmp|json)"
)
TASK_ID_RE = re.compile(r"[a-f0-9]{32}")
TYPE_PREFIX_RE = re.compile(rf"({_TYPES})/")

FULL_DATE_RE = re.compile(r"([0-9]{4}-[0-9]{2})-[0-9]{2}")
MONTH_RE = re.compile(r"[0-9]{4}-[0-9]{2}")


class PathViolationType(enum.Enum):
    VALID = "valid"
    OLD_TASKID = "old-taskid"
    OLD_FLAT = "old-flat"
    URL_ENCODED_ROOT = "url-encoded-root"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ParsedPath:
    type: str
    date: str
    filename: str
    category1: str | None = None
    category2: str | None = None
    task_id: str | None = None


# --- Grammar ---------------------------------------------------------------

def is_url_encoded_root(key: str) -> bool:
    """Check for a root-level key whose separators were percent-encoded."""
    if not key or URL_ENCODED_SEPARATOR not in key:
        return False
    return TYPE_PREFIX_RE.match(decode_root_key(key)) is not None


def decode_root_key(key: str) -> str:
    return unquote(key)


def is_valid(key: str) -> bool:
    """True when key matches the canonical 5-segment layout."""
    return classify(key) is PathViolationType.VALID


def classify(key: str) -> PathViolationType:
    """
    Determine which layout a key follows. First match wins:
    url-encoded-root, valid, old-taskid, old-flat, unknown.
    """
    if not key:
        return PathViolationType.UNKNOWN

    # Encoded keys can also look valid once decoded, so test them first
    if is_url_encoded_root(key):
        return PathViolationType.URL_ENCODED_ROOT
    if VALID_PATH_RE.fullmatch(key):
        return PathViolationType.VALID
    if OLD_TASKID_RE.fullmatch(key):
        return PathViolationType.OLD_TASKID
    if OLD_FLAT_RE.fullmatch(key):
        return PathViolationType.OLD_FLAT
    return PathViolationType.UNKNOWN


def parse_existing(key: str) -> ParsedPath:
    """Split a key into its components based on segment count."""
    if not key:
        return ParsedPath(type="", date="", filename="")

    segments = key.split("/")
    type_ = segments[0]
    date_ = segments[1] if len(segments) > 1 else ""
    filename = segments[-1]

    if len(segments) == 5:
        return ParsedPath(
            type=type_,
            date=date_,
            filename=filename,
            category1=segments[2],
            category2=segments[3],
        )

    if len(segments) == 4 and TASK_ID_RE.fullmatch(segments[2]):
        return ParsedPath(type=type_, date=date_, filename=filename, task_id=segments[2])

    return ParsedPath(type=type_, date=date_, filename=filename)


# --- Destination calculation ----------------------------------------------

def extract_type(path: str) -> str:
    """First segment of a key, ignoring one leading slash."""
    if not path:
        return ""
    clean = path[1:] if path.startswith("/") else path
    return clean.split("/", 1)[0]


def extract_month(path: str, today: date | None = None) -> str:
    """
    Month (YYYY-MM) for a key: from the first YYYY-MM-DD, else the first
    YYYY-MM, else the current month.
    """
    match = FULL_DATE_RE.search(path)
    if match:
        return match.group(1)

    match = MONTH_RE.search(path)
    if match:
        return match.group(0)

    today = today or date.today()
    return today.strftime("%Y-%m")


def basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def calculate_new_path(old_path: str, month: str, category) -> str:
    """Canonical key for old_path. Always emits all five segments."""
    category1 = category.category1 or UNCATEGORIZED
    category2 = category.category2 or UNCATEGORIZED
    return f"{extract_type(old_path)}/{month}/{category1}/{category2}/{basename(old_path)}"


def is_correct_location(current: str, computed: str) -> bool:
    if not current or not computed:
        return False
    return current == computed


# --- Unclassified files ----------------------------------------------------

def is_uncategorized_path(key: str) -> bool:
    if not key:
        return False
    return UNCATEGORIZED_PATH_PATTERN in key


def uncategorized_prefix(storage_type: str, month: str | None = None) -> str:
    """Listing prefix for unclassified files of one type (and month)."""
    if month:
        return f"{storage_type}/{month}/{UNCATEGORIZED_PATH_PATTERN}/"
    return f"{storage_type}/"
