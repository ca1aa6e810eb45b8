import threading
from dataclasses import dataclass, replace
from typing import Iterable

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


@dataclass(frozen=True, slots=True)
class FileCheckpoint:
    """
    FileCheckpoint records how far a log file has been ingested.
    """

    file_path: "str"
    file_size: "int"
    # st_mtime of the file when it was last read
    last_modified: "float"
    # first byte not yet ingested
    byte_offset: "int"
    entry_count: "int" = 0
    processing_status: "str" = STATUS_PENDING
    error_message: "str | None" = None


class CheckpointTracker:
    """
    CheckpointTracker: Is a thread-safe approach for tracking how
    much of every log file has already been ingested, so incremental
    passes only read the appended tail of each file.

    Updates are staged and only become visible to start_offset()
    after commit(), mirroring the dedup index.

    Supports forgetting files that disappeared via forget_missing()
    to prevent unbounded growth.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._checkpoints: "dict[str, FileCheckpoint]" = {}
        self._pending: "dict[str, FileCheckpoint]" = {}

    def load(self, checkpoints: "Iterable[FileCheckpoint]") -> "None":
        with self._lock:
            self._checkpoints = {c.file_path: c for c in checkpoints}
            self._pending.clear()

    def get(self, file_path: "str") -> "FileCheckpoint | None":
        with self._lock:
            return self._pending.get(file_path) or self._checkpoints.get(file_path)

    def start_offset(
        self,
        file_path: "str",
        file_size: "int",
        last_modified: "float",
    ) -> "int | None":
        """
        returns the offset to resume reading from, or None when the
        file has nothing new. A file that shrank is read from the start.
        """
        with self._lock:
            checkpoint = self._checkpoints.get(file_path)

        if checkpoint is None:
            return 0
        if checkpoint.processing_status == STATUS_ERROR:
            return 0 if file_size < checkpoint.byte_offset else checkpoint.byte_offset
        if file_size < checkpoint.byte_offset:
            # truncated or replaced
            return 0
        if (
            file_size == checkpoint.byte_offset
            and last_modified <= checkpoint.last_modified
        ):
            return None
        return checkpoint.byte_offset

    def advance(
        self,
        file_path: "str",
        file_size: "int",
        last_modified: "float",
        byte_offset: "int",
        entries: "int",
    ) -> "FileCheckpoint":
        """
        stages a successful read up to byte_offset, adding entries to
        the running entry count.
        """
        with self._lock:
            previous = self._pending.get(file_path) or self._checkpoints.get(file_path)
            count = entries
            if previous is not None and byte_offset >= previous.byte_offset:
                count += previous.entry_count
            checkpoint = FileCheckpoint(
                file_path=file_path,
                file_size=file_size,
                last_modified=last_modified,
                byte_offset=byte_offset,
                entry_count=count,
                processing_status=STATUS_COMPLETED,
            )
            self._pending[file_path] = checkpoint
            return checkpoint

    def mark_failed(
        self,
        file_path: "str",
        file_size: "int",
        last_modified: "float",
        error: "str",
    ) -> "FileCheckpoint":
        """
        stages an error for a file, keeping its previous offset so the
        next pass retries from there.
        """
        with self._lock:
            previous = self._pending.get(file_path) or self._checkpoints.get(file_path)
            if previous is None:
                checkpoint = FileCheckpoint(
                    file_path=file_path,
                    file_size=file_size,
                    last_modified=last_modified,
                    byte_offset=0,
                    processing_status=STATUS_ERROR,
                    error_message=error,
                )
            else:
                checkpoint = replace(
                    previous,
                    processing_status=STATUS_ERROR,
                    error_message=error,
                )
            self._pending[file_path] = checkpoint
            return checkpoint

    def pending(self) -> "list[FileCheckpoint]":
        with self._lock:
            return list(self._pending.values())

    def commit(self) -> "None":
        with self._lock:
            self._checkpoints.update(self._pending)
            self._pending.clear()

    def rollback(self) -> "None":
        with self._lock:
            self._pending.clear()

    def forget_missing(self, existing_paths: "Iterable[str]") -> "list[str]":
        """
        removes checkpoints of files that no longer exist. Returns the
        removed paths.
        """
        keep = set(existing_paths)
        with self._lock:
            removed = [p for p in self._checkpoints if p not in keep]
            for p in removed:
                del self._checkpoints[p]
            return removed

    def clear(self) -> "None":
        with self._lock:
            self._checkpoints.clear()
            self._pending.clear()

    def __len__(self) -> "int":
        with self._lock:
            return len(self._checkpoints)
