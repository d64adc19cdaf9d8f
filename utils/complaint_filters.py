"""Status buckets and counts for complaint dashboards."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Dict, Iterable, List

from models import COMPLAINT_STATUSES


def _status_of(complaint) -> str | None:
    if isinstance(complaint, Mapping):
        return complaint.get("status")
    return getattr(complaint, "status", None)


def filter_by_status(complaints: Iterable, status: str) -> List:
    return [c for c in complaints if _status_of(c) == status]


def partition_by_status(complaints: Iterable) -> Dict[str, List]:
    """Split complaints into ``all`` plus one bucket per known status.

    Matching is exact string equality, so a complaint with an unknown status
    only shows up under ``all``. Input order is preserved in every bucket.
    """
    everything = list(complaints)
    buckets: Dict[str, List] = {"all": everything}
    for status in COMPLAINT_STATUSES:
        buckets[status] = filter_by_status(everything, status)
    return buckets


def status_counts(complaints: Iterable) -> Dict[str, int]:
    return {key: len(items) for key, items in partition_by_status(complaints).items()}
