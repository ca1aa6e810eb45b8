import threading
from typing import Iterable

from tokenledger.models import UsageEvent


class DeduplicationIndex:
    """
    DeduplicationIndex: Is a thread-safe index of the dedup keys of
    every event already folded into the aggregates.

    Prevents double-counting when files are rescanned or overlap.
    Keys marked during a batch stay pending until the batch has been
    persisted, at which point commit() makes them permanent. A failed
    persist calls rollback() so the batch can be re-read later.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._seen: "set[str]" = set()
        # key -> source file, for keys not yet persisted
        self._pending: "dict[str, str]" = {}

    @staticmethod
    def make_key(event: "UsageEvent") -> "str":
        """
        derives the identity of an event: request id, then message id,
        then a composite of source file, timestamp and session.
        """
        if event.request_id:
            return f"req:{event.request_id}"
        if event.message_id:
            return f"msg:{event.message_id}"

        # an inferred timestamp is ingestion time, use the line position
        if event.timestamp_inferred:
            moment = f"@{event.source_offset}"
        else:
            moment = event.timestamp.isoformat()
        return f"cmp:{event.source_file}|{moment}|{event.session_id}"

    def seen(self, key: "str") -> "bool":
        with self._lock:
            return key in self._seen or key in self._pending

    def mark_seen(self, key: "str", source_file: "str" = "") -> "None":
        with self._lock:
            if key not in self._seen:
                self._pending.setdefault(key, source_file)

    def is_new(self, key: "str", source_file: "str" = "") -> "bool":
        """
        checks if the given key is new. If so, mark it as seen
        and returns True.
        """
        with self._lock:
            if key in self._seen or key in self._pending:
                return False

            self._pending[key] = source_file
            return True

    def pending(self) -> "dict[str, str]":
        with self._lock:
            return dict(self._pending)

    def commit(self) -> "int":
        """
        makes pending keys permanent. Returns how many were committed.
        """
        with self._lock:
            count = len(self._pending)
            self._seen.update(self._pending)
            self._pending.clear()
            return count

    def rollback(self) -> "int":
        """
        forgets pending keys. Returns how many were dropped.
        """
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            return count

    def load(self, keys: "Iterable[str]") -> "None":
        """
        replaces the index contents with persisted keys.
        """
        with self._lock:
            self._seen = set(keys)
            self._pending.clear()

    def clear(self) -> "None":
        with self._lock:
            self._seen.clear()
            self._pending.clear()

    def __len__(self) -> "int":
        with self._lock:
            return len(self._seen) + len(self._pending)
