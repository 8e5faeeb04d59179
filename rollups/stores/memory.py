from __future__ import annotations
from typing import Any, Dict, List, Optional
import threading, uuid
from rollups.schemas import Bucket, CountBucket, Event, Page, StoredEvent
from rollups.stores.base import BucketQuery, BucketStore, BucketUpdate, counts_by_start

class MemoryStore(BucketStore):
    def __init__(self):
        self._lock = threading.Lock()
        self.buckets: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}

    def get_bucket(self, collection: str, bucket_id: str) -> Optional[Bucket]:
        with self._lock:
            doc = self.buckets.get(collection, {}).get(bucket_id)
            return Bucket.model_validate(doc) if doc else None

    def upsert_bucket(self, collection: str, bucket_id: str, update: BucketUpdate) -> None:
        with self._lock:
            coll = self.buckets.setdefault(collection, {})
            doc = coll.get(bucket_id)
            if doc is None:
                doc = {"id": bucket_id, "count": 0, "events": [], "event_ids": []}
                coll[bucket_id] = doc
            doc.update(update.set_fields)
            doc["nested_grouping_ids"] = list(update.set_fields["nested_grouping_ids"])
            doc["count"] += update.increment
            if update.summary is not None:
                doc["events"].append(update.summary.model_dump())
            if update.event_id is not None:
                doc["event_ids"].append(update.event_id)

    def _matching(self, collection: str, query: BucketQuery) -> List[Dict[str, Any]]:
        with self._lock:
            docs = [d for d in self.buckets.get(collection, {}).values() if query.matches(d)]
            # copy under the lock so callers never see a half-applied merge
            return [{**d, "events": list(d["events"]), "event_ids": list(d["event_ids"])} for d in docs]

    def find_buckets(self, collection: str, query: BucketQuery, limit: Optional[int] = None, skip: int = 0) -> Page[Bucket]:
        docs = sorted(self._matching(collection, query), key=lambda d: (d["bucket_start"], d["id"]))
        window = docs[skip:skip + limit] if limit is not None else docs[skip:]
        return Page[Bucket](items=[Bucket.model_validate(d) for d in window], total_count=len(docs), limit=limit, skip=skip)

    def aggregate_buckets(self, collection: str, query: BucketQuery) -> List[CountBucket]:
        return counts_by_start(self._matching(collection, query))

    def insert_event(self, collection: str, event: Event) -> str:
        event_id = event.id or uuid.uuid4().hex
        with self._lock:
            self.events.setdefault(collection, []).append(
                {"id": event_id, "attributes": [kp.model_dump() for kp in event.attributes], "timestamp": event.timestamp})
        return event_id

    def list_events(self, collection: str, limit: Optional[int] = None, skip: int = 0) -> Page[StoredEvent]:
        with self._lock:
            rows = list(self.events.get(collection, []))
        window = rows[skip:skip + limit] if limit is not None else rows[skip:]
        return Page[StoredEvent](items=[StoredEvent.model_validate(r) for r in window], total_count=len(rows), limit=limit, skip=skip)
