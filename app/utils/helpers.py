"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def chunk_list(lst: Sequence, chunk_size: int) -> List[Sequence]:
    """Split list into chunks"""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def dedupe_by_key(records: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> List[Dict[str, Any]]:
    """Collapse records sharing the same natural key; the last one wins, first position is kept."""
    by_key: Dict[Tuple, Dict[str, Any]] = {}
    for record in records:
        by_key[tuple(record.get(col) for col in key_columns)] = record
    return list(by_key.values())
