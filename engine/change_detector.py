"""
Content fingerprints for the ``onChange`` trigger and row de-duplication.

Fingerprints are order-insensitive by default: a query without ORDER BY may
return the same rows in a different order, and that must not count as a
change. Pass ``order_sensitive=True`` when the source guarantees ordering.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def row_fingerprint(row: Mapping[str, Any]) -> str:
    """SHA-256 of a row, independent of key order"""
    return hashlib.sha256(_canonical(row).encode("utf-8")).hexdigest()


def fingerprint(rows: Iterable[Mapping[str, Any]], order_sensitive: bool = False) -> str:
    """
    Deterministic hash of a row set.

    Args:
        rows: Result rows
        order_sensitive: Hash rows in the given order instead of sorted

    Returns:
        Hex digest
    """
    hashes = [row_fingerprint(row) for row in rows]
    if not order_sensitive:
        hashes.sort()
    digest = hashlib.sha256()
    for h in hashes:
        digest.update(h.encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def combine_fingerprints(hashes: Iterable[str]) -> str:
    """Order-insensitive combination of per-connection fingerprints"""
    digest = hashlib.sha256()
    for h in sorted(hashes):
        digest.update(h.encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def deduplicate_rows(rows: Iterable[Mapping[str, Any]], seen: Optional[set] = None) -> List[Mapping[str, Any]]:
    """Drop rows whose fingerprint was already seen; first occurrence wins"""
    seen = set() if seen is None else seen
    unique = []
    for row in rows:
        key = row_fingerprint(row)
        if key not in seen:
            seen.add(key)
            unique.append(row)
    return unique


def deduplicate_entries(entries: Sequence[Any]) -> List[Any]:
    """
    De-duplicate rows across per-connection entries.

    Entries are objects with ``rows`` (see ``ConnectionRows``); an identical
    row from a later connection is dropped. Entries keep their position even
    when all of their rows were duplicates, so failure context is preserved.
    """
    seen: set = set()
    return [entry.with_rows(deduplicate_rows(entry.rows, seen)) for entry in entries]


class ChangeDetector:
    """
    Last-seen fingerprints keyed by job (``job_id``) or by job and
    connection (``job_id:connection_id``).
    """

    def __init__(self):
        self._hashes: Dict[str, str] = {}

    @staticmethod
    def key(job_id: str, connection_id: Optional[str] = None) -> str:
        return f"{job_id}:{connection_id}" if connection_id else job_id

    def seed(self, key: str, value: Optional[str]) -> None:
        """Load a previously persisted fingerprint without overwriting newer state"""
        if value and key not in self._hashes:
            self._hashes[key] = value

    def stored(self, key: str) -> Optional[str]:
        return self._hashes.get(key)

    def has_changed(self, key: str, new_hash: str) -> bool:
        return self._hashes.get(key) != new_hash

    def commit(self, key: str, new_hash: str) -> None:
        self._hashes[key] = new_hash
