import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Callable

import structlog

from tokenledger.decoder import decode_line
from tokenledger.errors import FileScanError, LineDecodeError, LogDirectoryError
from tokenledger.models import UsageEvent
from tokenledger.normalizer import normalize, rejection_reason
from tokenledger.pricing import DEFAULT_RATE_CARD, RateCard

logger = structlog.get_logger()

LOG_SUFFIX = ".jsonl"


@dataclass(frozen=True, slots=True)
class LogFile:
    """
    LogFile is one transcript found under the log directory.
    """

    path: "str"
    # "/" followed by the directories between the log root and the file
    project_path: "str"
    size: "int"
    modified: "float"


@dataclass(slots=True)
class FileScanResult:
    log_file: "LogFile"
    start_offset: "int"
    # first byte not consumed, the next incremental pass resumes here
    end_offset: "int"
    events: "list[UsageEvent]" = field(default_factory=list)
    lines_read: "int" = 0
    parse_failures: "int" = 0
    # rejection reason -> count
    filtered: "Counter[str]" = field(default_factory=Counter)

    @property
    def records_filtered(self) -> "int":
        return sum(self.filtered.values())


def extract_project_path(file_path: "str | Path", log_dir: "str | Path") -> "str":
    """
    derives the project path from the directories between the log
    root and the file, e.g. <root>/-Users-me-app/x.jsonl -> /-Users-me-app
    """
    relative = Path(file_path).relative_to(Path(log_dir))
    return "/" + "/".join(relative.parts[:-1])


def discover_log_files(log_dir: "str | Path") -> "list[LogFile]":
    """
    enumerates every *.jsonl file below log_dir, sorted by path.

    Raises:
        LogDirectoryError: if the directory is missing or unreadable
    """
    root = Path(log_dir)
    if not root.is_dir():
        raise LogDirectoryError(f"log directory not found: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise LogDirectoryError(f"log directory not readable: {root}")

    def _on_error(exc: "OSError") -> "None":
        # an unreadable subdirectory only hides its own files
        logger.warning("log_directory_walk_error", path=exc.filename, error=str(exc))

    files: "list[LogFile]" = []
    for dirpath, _, filenames in os.walk(root, onerror=_on_error):
        for name in filenames:
            if not name.endswith(LOG_SUFFIX):
                continue
            path = Path(dirpath) / name
            try:
                stat = path.stat()
            except OSError as exc:
                # vanished between listing and stat
                logger.debug("log_file_stat_failed", path=str(path), error=str(exc))
                continue
            files.append(
                LogFile(
                    path=str(path),
                    project_path=extract_project_path(path, root),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                )
            )

    files.sort(key=lambda f: f.path)
    return files


def scan_file(
    log_file: "LogFile",
    start_offset: "int" = 0,
    *,
    rate_card: "RateCard" = DEFAULT_RATE_CARD,
    tz: "tzinfo | None" = None,
    now: "Callable[[], datetime] | None" = None,
) -> "FileScanResult":
    """
    reads log_file from start_offset to the end, decoding and
    normalizing every line in file order.

    Malformed lines are counted and skipped. A trailing line without
    a newline is only consumed when it parses, as it may still be
    being written.

    Raises:
        FileScanError: if the file cannot be opened or read
    """
    result = FileScanResult(
        log_file=log_file,
        start_offset=start_offset,
        end_offset=start_offset,
    )

    try:
        with open(log_file.path, "rb") as fh:
            fh.seek(start_offset)
            offset = start_offset
            for line in fh:
                complete = line.endswith(b"\n")
                if not line.strip():
                    offset += len(line)
                    continue

                try:
                    raw = decode_line(line)
                except LineDecodeError as exc:
                    if not complete:
                        # partial write, leave it for the next pass
                        break
                    result.parse_failures += 1
                    logger.debug(
                        "line_decode_failed",
                        source_file=log_file.path,
                        offset=offset,
                        error=str(exc),
                    )
                    offset += len(line)
                    continue

                result.lines_read += 1
                event = normalize(
                    raw,
                    log_file.project_path,
                    log_file.path,
                    rate_card=rate_card,
                    tz=tz,
                    source_offset=offset,
                    now=now,
                )
                if event is None:
                    result.filtered[rejection_reason(raw) or "unknown"] += 1
                else:
                    result.events.append(event)
                offset += len(line)

            result.end_offset = offset
    except OSError as exc:
        raise FileScanError(log_file.path, exc.strerror or str(exc)) from exc

    return result
