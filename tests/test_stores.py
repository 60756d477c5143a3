"""Tests for schema-validated JSON documents and JSONL logs."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from pydantic import BaseModel, Field

from kata_engine.errors import NotFoundError, StoreError, ValidationError
from kata_engine.stores import JsonlStore, JsonStore

pytestmark = pytest.mark.unit


class Note(BaseModel):
    title: str = Field(min_length=1)
    score: int = 0


def test_write_then_read_round_trips(tmp_path: Path) -> None:
    path = tmp_path / "docs" / "note.json"

    written = JsonStore.write(path, Note(title="hello", score=3), Note)

    assert JsonStore.exists(path)
    assert JsonStore.read(path, Note) == written
    assert json.loads(path.read_text(encoding="utf-8")) == {"title": "hello", "score": 3}


def test_write_rejects_invalid_document_before_touching_disk(tmp_path: Path) -> None:
    path = tmp_path / "note.json"

    with pytest.raises(ValidationError) as exc_info:
        JsonStore.write(path, {"title": ""}, Note)

    assert exc_info.value.issues
    assert not path.exists()


def test_read_missing_document_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        JsonStore.read(tmp_path / "missing.json", Note)


@pytest.mark.parametrize("content", ["{not json", '{"score": 1}'])
def test_read_corrupt_document_raises_store_error(tmp_path: Path, content: str) -> None:
    path = tmp_path / "note.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StoreError):
        JsonStore.read(path, Note)


def test_list_skips_invalid_documents(caplog: pytest.LogCaptureFixture, tmp_path: Path) -> None:
    JsonStore.write(tmp_path / "a.json", Note(title="a"), Note)
    (tmp_path / "b.json").write_text("garbage", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="kata_engine.stores"):
        notes = JsonStore.list(tmp_path, Note)

    assert [n.title for n in notes] == ["a"]
    assert "Skip invalid document b.json" in caplog.text


def test_list_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert JsonStore.list(tmp_path / "nope", Note) == []


def test_jsonl_read_all_skips_corrupt_lines(caplog: pytest.LogCaptureFixture, tmp_path: Path) -> None:
    log = tmp_path / "log.jsonl"
    JsonlStore.append(log, Note(title="first"), Note)
    with log.open("a", encoding="utf-8") as handle:
        handle.write("{truncated\n\n")
        handle.write(json.dumps({"title": ""}) + "\n")
    JsonlStore.append(log, Note(title="last"), Note)

    with caplog.at_level(logging.WARNING, logger="kata_engine.stores"):
        records = JsonlStore.read_all(log, Note)

    assert [r.title for r in records] == ["first", "last"]
    assert "Skip invalid log line log.jsonl:2" in caplog.text
    assert "Skip invalid log line log.jsonl:4" in caplog.text


def test_jsonl_append_validates_record(tmp_path: Path) -> None:
    log = tmp_path / "log.jsonl"

    with pytest.raises(ValidationError):
        JsonlStore.append(log, {"title": ""}, Note)

    assert not log.exists()
    assert JsonlStore.read_all(log, Note) == []
