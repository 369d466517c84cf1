"""Tests for JSON file helpers and the advisory lock."""

from __future__ import annotations

import json
from pathlib import Path

from epicswarm.protocol.io import append_jsonl, read_json, remove_file, write_json_atomic
from epicswarm.protocol.locks import locked_file


def test_write_and_read(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "data.json"
    write_json_atomic(path, {"a": 1})
    assert read_json(path, default=None) == {"a": 1}
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


def test_read_default_on_missing_or_corrupt(tmp_path: Path) -> None:
    path = tmp_path / "data.json"
    assert read_json(path, default={}) == {}
    path.write_text("{", encoding="utf-8")
    assert read_json(path, default=[]) == []


def test_append_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    append_jsonl(path, {"n": 1})
    append_jsonl(path, {"n": 2})
    assert [json.loads(line)["n"] for line in path.read_text(encoding="utf-8").splitlines()] == [1, 2]


def test_remove_file(tmp_path: Path) -> None:
    path = tmp_path / "x.json"
    path.write_text("{}", encoding="utf-8")
    assert remove_file(path)
    assert not remove_file(path)


def test_locked_file_creates_sidecar(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    with locked_file(path):
        write_json_atomic(path, {"ok": True})
    assert (tmp_path / "store.json.lock").exists()
    assert read_json(path, default=None) == {"ok": True}
