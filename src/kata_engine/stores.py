"""Schema-validated JSON document and JSONL log stores.

Every write path validates against a pydantic schema before the first
byte reaches disk. Whole documents are replaced atomically; JSONL logs
are append-only and tolerate corrupt lines on read so a half-written
trailing record from an interrupted writer never hides the rest of the
log.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from kata_engine.errors import NotFoundError, StoreError, ValidationError
from kata_engine.file_io import append_text, atomic_write_text

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_adapter(schema: Any) -> TypeAdapter:
    if isinstance(schema, TypeAdapter):
        return schema
    return TypeAdapter(schema)


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python")
    return value


def validate(value: Any, schema: Any, *, label: str = "document") -> Any:
    """Validate *value* against *schema*, raising :class:`ValidationError`.

    Model instances are dumped and re-validated so in-place mutations that
    bypassed pydantic are still caught.
    """
    adapter = _as_adapter(schema)
    try:
        return adapter.validate_python(_plain(value))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {label}: {exc.error_count()} validation error(s)",
            exc.errors(include_url=False),
        ) from exc


def _dump(value: Any, adapter: TypeAdapter) -> Any:
    return adapter.dump_python(value, mode="json")


class JsonStore:
    """Whole-document JSON persistence with atomic replace."""

    @staticmethod
    def exists(path: Path) -> bool:
        return Path(path).is_file()

    @staticmethod
    def read(path: Path, schema: Any) -> Any:
        """Read and validate one document.

        Raises :class:`NotFoundError` when the file is missing and
        :class:`StoreError` when it is not valid JSON or fails the schema.
        """
        path = Path(path)
        if not path.is_file():
            raise NotFoundError(f"Document not found: {path}")
        adapter = _as_adapter(schema)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read {path}: {exc}") from exc
        try:
            return adapter.validate_python(raw)
        except PydanticValidationError as exc:
            raise StoreError(f"Schema mismatch in {path}: {exc.error_count()} error(s)") from exc

    @staticmethod
    def write(path: Path, value: Any, schema: Any) -> Any:
        """Validate *value* then atomically replace *path*. Returns the validated value."""
        adapter = _as_adapter(schema)
        validated = validate(value, adapter, label=Path(path).name)
        payload = json.dumps(_dump(validated, adapter), indent=2, ensure_ascii=False)
        atomic_write_text(Path(path), payload + "\n")
        return validated

    @staticmethod
    def list(directory: Path, schema: Any) -> list[Any]:
        """Load every ``*.json`` document in *directory*, skipping invalid files."""
        directory = Path(directory)
        if not directory.is_dir():
            return []
        items: list[Any] = []
        for path in sorted(directory.glob("*.json")):
            try:
                items.append(JsonStore.read(path, schema))
            except StoreError as exc:
                logger.warning("Skip invalid document %s: %s", path.name, exc)
        return items


class JsonlStore:
    """Append-only JSON Lines log."""

    @staticmethod
    def append(path: Path, record: Any, schema: Any) -> Any:
        """Validate *record* and append it as one line. Returns the validated record."""
        adapter = _as_adapter(schema)
        validated = validate(record, adapter, label=f"{Path(path).name} record")
        line = json.dumps(_dump(validated, adapter), ensure_ascii=False)
        append_text(Path(path), line + "\n")
        return validated

    @staticmethod
    def read_all(path: Path, schema: Any) -> list[Any]:
        """Return every valid record in append order; a missing log is empty."""
        path = Path(path)
        if not path.is_file():
            return []
        adapter = _as_adapter(schema)
        records: list[Any] = []
        with open(path, encoding="utf-8", errors="replace") as handle:
            for lineno, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(adapter.validate_python(json.loads(line)))
                except (json.JSONDecodeError, PydanticValidationError) as ex:
                    logger.warning("Skip invalid log line %s:%d: %s", path.name, lineno, ex)
        return records
