from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from rollups.schemas import Bucket, CountBucket, Event, EventSummary, Page, StoredEvent

# fields a merge overwrites on every write
DESCRIPTIVE_FIELDS = (
    "application_id",
    "grouping_definition",
    "grouping_id",
    "nested_grouping_ids",
    "window",
    "bucket_start",
)

@dataclass
class BucketUpdate:
    """One merge: overwrite ``set_fields``, add ``increment`` to ``count`` and
    append ``summary`` / ``event_id`` to the bucket's history."""
    set_fields: Dict[str, Any]
    increment: int = 1
    summary: Optional[EventSummary] = None
    event_id: Optional[str] = None

    def __post_init__(self):
        missing = [f for f in DESCRIPTIVE_FIELDS if f not in self.set_fields]
        if missing:
            raise ValueError(f"bucket update missing fields: {missing}")

@dataclass
class BucketQuery:
    start: Optional[int] = None
    end: Optional[int] = None
    grouping: Optional[str] = None
    nested_grouping_id: Optional[str] = None

    def matches(self, doc: Dict[str, Any]) -> bool:
        ts = doc["bucket_start"]
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts > self.end:
            return False
        if self.grouping is not None and doc["grouping_definition"].lower() != self.grouping.lower():
            return False
        if self.nested_grouping_id is not None and self.nested_grouping_id.lower() not in doc["nested_grouping_ids"]:
            return False
        return True

def counts_by_start(docs: List[Dict[str, Any]]) -> List[CountBucket]:
    grouped: Dict[int, List[int]] = {}
    for d in docs:
        cell = grouped.setdefault(d["bucket_start"], [0, 0])
        cell[0] += 1
        cell[1] += int(d["count"])
    return [CountBucket(bucket_start=ts, record_count=rc, aggregate_count=ac)
            for ts, (rc, ac) in sorted(grouped.items())]

class BucketStore(ABC):
    """Document store holding one namespace ("collection") per tenant and
    window plus a raw-event namespace per tenant."""

    @abstractmethod
    def get_bucket(self, collection: str, bucket_id: str) -> Optional[Bucket]:
        ...

    @abstractmethod
    def upsert_bucket(self, collection: str, bucket_id: str, update: BucketUpdate) -> None:
        """Apply ``update`` atomically, creating the bucket if absent."""

    @abstractmethod
    def find_buckets(self, collection: str, query: BucketQuery, limit: Optional[int] = None, skip: int = 0) -> Page[Bucket]:
        ...

    @abstractmethod
    def aggregate_buckets(self, collection: str, query: BucketQuery) -> List[CountBucket]:
        """Group matching buckets by ``bucket_start``, ascending."""

    @abstractmethod
    def insert_event(self, collection: str, event: Event) -> str:
        ...

    @abstractmethod
    def list_events(self, collection: str, limit: Optional[int] = None, skip: int = 0) -> Page[StoredEvent]:
        ...

    def close(self) -> None:
        pass
