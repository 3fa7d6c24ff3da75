import json
from datetime import timezone

import pytest

from core.audit import AuditLogger
from core.errors import CorruptFileError
from core.storage import (delete_file, discard_lock, iter_json_files, locked, parse_iso, read_json,
                          to_iso, write_json)


def test_write_then_read_document(tmp_path):
    path = tmp_path / "nested" / "doc.json"
    write_json(path, {"a": 1, "name": "Zoë"})

    assert read_json(path) == {"a": 1, "name": "Zoë"}
    assert not list(path.parent.glob("*.tmp"))


def test_read_missing_file_returns_none(tmp_path):
    assert read_json(tmp_path / "absent.json") is None


def test_read_corrupt_file_raises(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(CorruptFileError):
        read_json(path)


def test_read_non_object_raises(tmp_path):
    path = tmp_path / "list.json"
    path.write_text("[1, 2]")

    with pytest.raises(CorruptFileError):
        read_json(path)


def test_delete_file_reports_presence(tmp_path):
    path = tmp_path / "doc.json"
    write_json(path, {})

    assert delete_file(path) is True
    assert delete_file(path) is False


def test_discard_lock_removes_lock_file(tmp_path):
    path = tmp_path / "doc.json"
    with locked(path):
        write_json(path, {})
    delete_file(path)

    discard_lock(path)

    assert not (tmp_path / "doc.json.lock").exists()
    discard_lock(path)


def test_iter_json_files_skips_dot_files(tmp_path):
    write_json(tmp_path / "b.json", {})
    write_json(tmp_path / "a.json", {})
    (tmp_path / ".hidden.json").write_text("{}")
    (tmp_path / "notes.txt").write_text("x")

    assert [p.name for p in iter_json_files(tmp_path)] == ["a.json", "b.json"]


def test_parse_iso_accepts_z_suffix_and_naive_values():
    zulu = parse_iso("2024-05-01T10:00:00Z")
    naive = parse_iso("2024-05-01T10:00:00")

    assert zulu == naive
    assert zulu.tzinfo == timezone.utc
    assert to_iso(naive) == "2024-05-01T10:00:00+00:00"


def test_audit_logger_appends_json_lines(tmp_path):
    log_path = tmp_path / "audit" / "events.log"
    audit = AuditLogger(log_path)

    audit.log("first", reviewId="r1")
    audit.log("second", count=2)

    records = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert [r["event"] for r in records] == ["first", "second"]
    assert records[0]["reviewId"] == "r1"
    assert "timestamp" in records[1]
