"""Tests for atomic document replace and lazy-parent appends."""

from __future__ import annotations

from pathlib import Path

import pytest

import kata_engine.file_io as file_io

pytestmark = pytest.mark.unit


def test_replace_file_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.json"
    dst = tmp_path / "dst.json"
    src.write_text("new", encoding="utf-8")
    dst.write_text("old", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io.time, "sleep", lambda _seconds: None)

    file_io._replace_file_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "new"


def test_replace_file_with_retry_raises_non_permission_oserror(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.json"
    src.write_text("x", encoding="utf-8")

    def fail_replace(_self: Path, _target: Path) -> Path:
        raise OSError(5, "io error")

    monkeypatch.setattr(Path, "replace", fail_replace)

    with pytest.raises(OSError) as exc_info:
        file_io._replace_file_with_retry(src, tmp_path / "dst.json")

    assert exc_info.value.errno == 5


def test_atomic_write_text_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "runs" / "r1" / "run.json"

    file_io.atomic_write_text(target, '{"a": 1}\n')
    file_io.atomic_write_text(target, '{"a": 2}\n')

    assert target.read_text(encoding="utf-8") == '{"a": 2}\n'
    assert [p.name for p in target.parent.iterdir()] == ["run.json"]


def test_atomic_write_text_keeps_previous_content_when_replace_fails(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    target = tmp_path / "cycle.json"
    target.write_text("original", encoding="utf-8")

    def fail_replace(_src: Path, _dst: Path) -> None:
        raise OSError(5, "disk gone")

    monkeypatch.setattr(file_io, "_replace_file_with_retry", fail_replace)

    with pytest.raises(OSError):
        file_io.atomic_write_text(target, "replacement")

    assert target.read_text(encoding="utf-8") == "original"
    assert [p.name for p in tmp_path.iterdir()] == ["cycle.json"]


def test_append_text_creates_parent_directories(tmp_path: Path) -> None:
    log = tmp_path / "a" / "b" / "observations.jsonl"

    file_io.append_text(log, "one\n")
    file_io.append_text(log, "two\n")

    assert log.read_text(encoding="utf-8").splitlines() == ["one", "two"]
