"""Shared test fixtures."""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from rich.console import Console

from categories import CategoryResolver, load_category_tables
from pairing import ObjectEntry
from storage_errors import ObjectNotFound

CLASSES_CSV = "\ufeff" + """专业,部件名称/场景分类,部位名称/场景名称,状态描述/场景描述,标注标签
设备-输电,杆塔,塔头,横担锈蚀,021_gt_hd_xs
设备-输电,绝缘子,串,破损,021_jyz_ps
设备-变电,主变,本体,渗油,022_zb_sy
安监,人员,安全帽,未佩戴,011_ry_wdaqm
"""

TASK_ID = "0123456789abcdef0123456789abcdef"


class FakeObjectStore:
    """In-memory object store recording every call."""

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects = dict(objects or {})
        self.content_types: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.failures: dict[tuple[str, str], Exception] = {}

    def fail(self, op: str, key: str, error: Exception) -> None:
        self.failures[(op, key)] = error

    def _call(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        error = self.failures.get((op, args[0] if args else ""))
        if error:
            raise error

    def get(self, key: str) -> bytes:
        self._call("get", key)
        if key not in self.objects:
            raise ObjectNotFound(f"get {key}: not found", key=key)
        return self.objects[key]

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self._call("put", key)
        self.objects[key] = data
        self.content_types[key] = content_type

    def copy(self, src_key: str, dst_key: str) -> None:
        self._call("copy", src_key, dst_key)
        if src_key not in self.objects:
            raise ObjectNotFound(f"copy {src_key}: not found", key=src_key)
        self.objects[dst_key] = self.objects[src_key]

    def delete(self, key: str) -> None:
        self._call("delete", key)
        self.objects.pop(key, None)

    def exists(self, key: str) -> bool:
        return key in self.objects

    def list(self, prefix: str, delimiter: str | None = None):
        self._call("list", prefix)
        for key in sorted(self.objects):
            if not key.startswith(prefix):
                continue
            if delimiter and delimiter in key[len(prefix):]:
                continue
            yield ObjectEntry(key=key, size=len(self.objects[key]))

    def head_bucket(self) -> None:
        self._call("head_bucket")

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("put", "copy", "delete")]


@pytest.fixture
def classes_file(tmp_path: Path) -> Path:
    path = tmp_path / "classes.csv"
    path.write_text(CLASSES_CSV, encoding="utf-8")
    return path


@pytest.fixture
def tables(classes_file):
    return load_category_tables(classes_file)


@pytest.fixture
def resolver(tables) -> CategoryResolver:
    return CategoryResolver(tables)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=300, color_system=None)
