import json
from pathlib import Path
from typing import Any, Callable

import pytest
from prometheus_client import CollectorRegistry


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def make_record() -> "Callable[..., dict[str, Any]]":
    """
    factory for assistant records in the current transcript schema.
    """

    def _make(
        request_id: "str | None" = "req-1",
        model: "str" = "claude-3-haiku",
        input_tokens: "int" = 100,
        output_tokens: "int" = 200,
        session_id: "str | None" = "session-1",
        timestamp: "str | None" = "2025-06-01T12:00:00Z",
        **extra: "Any",
    ) -> "dict[str, Any]":
        record: "dict[str, Any]" = {
            "type": "assistant",
            "message": {
                "model": model,
                "usage": {
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                },
            },
        }
        if request_id is not None:
            record["requestId"] = request_id
        if session_id is not None:
            record["sessionId"] = session_id
        if timestamp is not None:
            record["timestamp"] = timestamp
        record.update(extra)
        return record

    return _make


@pytest.fixture()
def log_dir(tmp_path: "Path") -> "Path":
    path = tmp_path / "projects"
    path.mkdir()
    return path


@pytest.fixture()
def write_log() -> "Callable[..., Path]":
    """
    writes records as JSONL lines, appending when the file exists.
    Strings are written verbatim.
    """

    def _write(path: "Path", *records: "dict[str, Any] | str") -> "Path":
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            for record in records:
                line = record if isinstance(record, str) else json.dumps(record)
                fh.write(line + "\n")
        return path

    return _write
