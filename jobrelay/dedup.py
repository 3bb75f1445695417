import re
import threading
from typing import Iterable

_WS = re.compile(r"\s+")

def normalize_key(title: str | None, company: str | None) -> str:
    """Lower-cased, whitespace-collapsed ``title|company``."""
    def norm(value):
        return _WS.sub(" ", (value or "").strip().lower())
    return f"{norm(title)}|{norm(company)}"

class DedupIndex:
    """Set of normalized (title, company) keys already written to domain storage."""

    def __init__(self, records: Iterable[dict] = ()):
        self._lock = threading.Lock()
        self._keys: set[str] = set()
        for r in records:
            self._keys.add(normalize_key(r.get("title"), r.get("company")))

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __contains__(self, record: dict) -> bool:
        key = normalize_key(record.get("title"), record.get("company"))
        with self._lock:
            return key in self._keys

    def add(self, record: dict) -> bool:
        """True if the record is new (and is now indexed), False for a duplicate."""
        key = normalize_key(record.get("title"), record.get("company"))
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True
