from __future__ import annotations
from typing import Any, Dict, Optional
import logging
from rollups.schemas import EventSummary
from rollups.stores.base import BucketStore, BucketUpdate

logger = logging.getLogger(__name__)

class BucketMerger:
    """Applies one event's contribution to one bucket.

    Every call overwrites the descriptive fields, adds one to ``count`` and
    appends to the history, all as a single store upsert. Replaying the same
    event counts it twice.
    """

    def __init__(self, store: BucketStore):
        self.store = store

    def merge(self, collection: str, bucket_id: str, fields: Dict[str, Any],
              summary: Optional[EventSummary] = None, event_id: Optional[str] = None) -> None:
        update = BucketUpdate(set_fields=dict(fields), increment=1, summary=summary, event_id=event_id)
        self.store.upsert_bucket(collection, bucket_id, update)
        logger.debug("merged %s/%s", collection, bucket_id)
