"""Tests for listing parsing, pairing and bucket scans."""

import json

from conftest import TASK_ID, FakeObjectStore
from pairing import (
    FilePair,
    ObjectEntry,
    filter_non_compliant,
    match_pairs,
    normalize_entry,
    pair_entries,
    parse_listing,
    scan_bucket_non_compliant,
    scan_uncategorized,
    separate,
)

ENTRIES = [
    {"key": "detection/2026-01-22/a.jpg", "size": 10},
    {"key": "detection/2026-01-22/a.json", "size": 2},
    {"key": f"classify/2026-01-22/{TASK_ID}/b.png"},
    {"key": f"classify/2026-01-22/{TASK_ID}/b.png.json"},
    {"key": "detection/2026-01-22/orphan.jpg"},
]


def _pairs_of(entries):
    images, jsons = separate(entries)
    return match_pairs(images, jsons)


class TestParseListing:
    def test_array_and_ndjson_give_same_pairs(self):
        array_text = json.dumps(ENTRIES)
        ndjson_text = "\n".join(json.dumps(e) for e in ENTRIES)
        assert _pairs_of(parse_listing(array_text)) == _pairs_of(parse_listing(ndjson_text))
        assert len(_pairs_of(parse_listing(array_text))) == 2

    def test_ndjson_skips_bad_and_blank_lines(self):
        text = '{"key": "a.jpg"}\n\n{broken\n   \n{"key": "a.json", "size": 3}\n'
        entries = parse_listing(text)
        assert [e.key for e in entries] == ["a.jpg", "a.json"]
        assert entries[1].size == 3

    def test_broken_array_falls_back_to_lines(self):
        text = '[{"key": "a.jpg"},\n{"key": "a.json"}'
        # First line keeps the array bracket and is dropped
        assert parse_listing(text) == [ObjectEntry("a.json")]

    def test_empty(self):
        assert parse_listing("   \n") == []

    def test_reads_listing_fields(self):
        entries = parse_listing(json.dumps([
            {"key": "x.jpg", "originalKey": "x%2F.jpg", "size": 5, "lastModified": "2024-01-01T00:00:00Z"},
        ]))
        assert entries == [ObjectEntry("x.jpg", "x%2F.jpg", 5, "2024-01-01T00:00:00Z")]

    def test_entries_without_key_dropped(self):
        assert parse_listing('[{"size": 1}, {"key": "a.jpg"}, 3]') == [ObjectEntry("a.jpg")]


class TestSeparate:
    def test_splits_images_and_json(self):
        entries = [ObjectEntry(k) for k in ["a.JPG", "b.json", "c.txt", "d.webp", "e.bmp", "f"]]
        images, jsons = separate(entries)
        assert images == ["a.JPG", "d.webp", "e.bmp"]
        assert jsons == ["b.json"]

    def test_empty(self):
        assert separate([]) == ([], [])


class TestMatchPairs:
    def test_stem_json(self):
        assert match_pairs(["d/a.jpg"], ["d/a.json"]) == [FilePair("d/a.jpg", "d/a.json")]

    def test_double_extension_json(self):
        assert match_pairs(["d/a.jpg"], ["d/a.jpg.json"]) == [FilePair("d/a.jpg", "d/a.jpg.json")]

    def test_stem_json_preferred(self):
        pairs = match_pairs(["d/a.jpg"], ["d/a.jpg.json", "d/a.json"])
        assert pairs == [FilePair("d/a.jpg", "d/a.json")]

    def test_uppercase_extension(self):
        assert match_pairs(["d/A.PNG"], ["d/A.json"]) == [FilePair("d/A.PNG", "d/A.json")]

    def test_image_without_json_excluded(self):
        assert match_pairs(["d/a.jpg", "d/b.jpg"], ["d/b.json"]) == [FilePair("d/b.jpg", "d/b.json")]

    def test_empty(self):
        assert match_pairs([], []) == []


class TestEncodedEntries:
    def test_normalize_encoded_root_key(self):
        entry = normalize_entry(ObjectEntry("detection%2F2024-01%2Fa.jpg", size=4))
        assert entry.key == "detection/2024-01/a.jpg"
        assert entry.original_key == "detection%2F2024-01%2Fa.jpg"
        assert entry.size == 4

    def test_normalize_leaves_plain_keys(self):
        entry = ObjectEntry("detection/2026-01-22/a.jpg")
        assert normalize_entry(entry) is entry

    def test_normalize_leaves_encoded_text_below_root(self):
        entry = ObjectEntry("detection/2026-01-22/a%2Fimg.jpg")
        assert normalize_entry(entry) is entry

    def test_nested_encoded_names_keep_distinct_pairs(self):
        entries = [normalize_entry(ObjectEntry(k)) for k in [
            "detection/2026-01-22/a%2Fimg.jpg",
            "detection/2026-01-22/a%2Fimg.json",
            "detection/2026-01-22/b%2Fimg.jpg",
            "detection/2026-01-22/b%2Fimg.json",
        ]]
        pairs = pair_entries(entries)
        assert [p.image_path for p in pairs] == [
            "detection/2026-01-22/a%2Fimg.jpg",
            "detection/2026-01-22/b%2Fimg.jpg",
        ]
        assert not any(p.is_encoded for p in pairs)

    def test_pair_entries_carries_original_keys(self):
        entries = [
            normalize_entry(ObjectEntry("detection%2F2024-01%2Fa.jpg")),
            normalize_entry(ObjectEntry("detection%2F2024-01%2Fa.json")),
            ObjectEntry("detection/2026-01-22/b.jpg"),
            ObjectEntry("detection/2026-01-22/b.json"),
        ]
        pairs = pair_entries(entries)
        assert pairs[0].image_path == "detection/2024-01/a.jpg"
        assert pairs[0].source_image_path == "detection%2F2024-01%2Fa.jpg"
        assert pairs[0].source_json_path == "detection%2F2024-01%2Fa.json"
        assert pairs[0].is_encoded
        assert pairs[1] == FilePair("detection/2026-01-22/b.jpg", "detection/2026-01-22/b.json")
        assert not pairs[1].is_encoded


def test_filter_non_compliant():
    entries = [
        ObjectEntry("detection/2024-01/c1/c2/a.jpg"),
        ObjectEntry("detection/2026-01-22/a.jpg"),
        ObjectEntry(f"classify/2026-01-22/{TASK_ID}/b.jpg"),
    ]
    assert [e.key for e in filter_non_compliant(entries)] == [
        "detection/2026-01-22/a.jpg",
        f"classify/2026-01-22/{TASK_ID}/b.jpg",
    ]


class TestScanBucket:
    def _store(self):
        return FakeObjectStore({
            "detection/2024-01/c1/c2/ok.jpg": b"i",
            "detection/2024-01/c1/c2/ok.json": b"{}",
            "detection/2026-01-22/old.jpg": b"i",
            "detection/2026-01-22/old.json": b"{}",
            f"classify/2026-01-22/{TASK_ID}/t.png": b"i",
            f"classify/2026-01-22/{TASK_ID}/t.png.json": b"{}",
            "detection%2F2024-02%2Fenc.jpg": b"i",
            "detection%2F2024-02%2Fenc.json": b"{}",
            "random-root.jpg": b"i",
            "qa-pair/2024-01/未分类/未分类/u.jpg": b"i",
            "qa-pair/2024-01/未分类/未分类/u.json": b"{}",
        })

    def test_finds_non_compliant_pairs(self):
        progress = []
        pairs = scan_bucket_non_compliant(self._store(), on_progress=lambda t, n: progress.append((t, n)))

        images = {p.image_path for p in pairs}
        assert images == {
            "detection/2026-01-22/old.jpg",
            f"classify/2026-01-22/{TASK_ID}/t.png",
            "detection/2024-02/enc.jpg",
        }
        encoded = next(p for p in pairs if p.is_encoded)
        assert encoded.source_image_path == "detection%2F2024-02%2Fenc.jpg"
        assert encoded.json_path == "detection/2024-02/enc.json"
        assert ("url-encoded-root", 2) in progress
        assert ("detection", 2) in progress

    def test_root_listing_is_non_recursive(self):
        store = self._store()
        scan_bucket_non_compliant(store)
        assert ("list", "") in store.calls

    def test_scan_uncategorized(self):
        pairs = scan_uncategorized(self._store())
        assert pairs == [FilePair("qa-pair/2024-01/未分类/未分类/u.jpg", "qa-pair/2024-01/未分类/未分类/u.json")]
