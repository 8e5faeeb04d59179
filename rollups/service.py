from __future__ import annotations
from typing import List, Optional, Sequence
import logging, os
from rollups.config import Settings
from rollups.dispatcher import AggregationDispatcher
from rollups.errors import BucketNotFoundError, StoreError, WindowNotConfiguredError
from rollups.grouping import bucket_id, group_id
from rollups.merger import BucketMerger
from rollups.schemas import (Bucket, CountResponse, Event, KeyPair, LogEventResult, Page, StoredEvent,
                             TenantConfig, WindowKind)
from rollups.stores import build_store
from rollups.stores.base import BucketQuery, BucketStore
from rollups.tenants import TenantRegistry
from rollups.windowing import collection_name, window_start

logger = logging.getLogger(__name__)

class RollupService:
    """Entry point for ingesting events and reading buckets back.

    Every call validates the tenant against the current config snapshot
    first; an unknown tenant raises ``InvalidTenantError`` before anything is
    written.
    """

    def __init__(self, registry: TenantRegistry, store: BucketStore,
                 dispatcher: Optional[AggregationDispatcher] = None, max_page_size: int = 1000):
        self.registry = registry
        self.store = store
        self.dispatcher = dispatcher or AggregationDispatcher(BucketMerger(store))
        self.max_page_size = max_page_size

    def _window_collection(self, config: TenantConfig, window: WindowKind) -> str:
        window = WindowKind(window)
        if window not in config.windows:
            raise WindowNotConfiguredError(config.application_id, str(window))
        return collection_name(config.application_id, window)

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.max_page_size
        return max(0, min(int(limit), self.max_page_size))

    def log_event(self, application_id: str, event: Event, received_at: Optional[int] = None) -> LogEventResult:
        return self._log_event(self.registry.get(application_id), event, received_at)

    def _log_event(self, config: TenantConfig, event: Event, received_at: Optional[int]) -> LogEventResult:
        event = event.lowercase()

        inserted_id = None
        if config.log_all_events:
            inserted_id = self.store.insert_event(collection_name(config.application_id), event)

        result = self.dispatcher.dispatch(event, config, event_id=inserted_id, received_at=received_at)
        return LogEventResult(success=True, inserted_id=inserted_id, merges=result.merges)

    def log_events(self, application_id: str, events: Sequence[Event], received_at: Optional[int] = None) -> List[LogEventResult]:
        # one snapshot for the whole batch; a refresh mid-batch applies to the next request
        config = self.registry.get(application_id)
        results = []
        for event in events:
            try:
                results.append(self._log_event(config, event, received_at))
            except StoreError as e:
                logger.error("error logging event tenant=%s: %s", application_id, e)
                results.append(LogEventResult(success=False))
        return results

    def all_events(self, application_id: str, limit: Optional[int] = None, skip: int = 0) -> Page[StoredEvent]:
        config = self.registry.get(application_id)
        return self.store.list_events(collection_name(config.application_id), limit=self._limit(limit), skip=skip)

    def bucket_by_keys(self, application_id: str, window: WindowKind, timestamp: int,
                       grouping: str, attributes: Sequence[KeyPair]) -> Bucket:
        config = self.registry.get(application_id)
        collection = self._window_collection(config, window)
        bid = bucket_id(window, window_start(window, timestamp), group_id(grouping, attributes))
        bucket = self.store.get_bucket(collection, bid)
        if bucket is None:
            raise BucketNotFoundError(collection, bid)
        return bucket

    def query_event_groups(self, application_id: str, window: WindowKind, start_timestamp: int, end_timestamp: int,
                           grouping: Optional[str] = None, nested_grouping: Optional[str] = None,
                           limit: Optional[int] = None, skip: int = 0) -> Page[Bucket]:
        config = self.registry.get(application_id)
        collection = self._window_collection(config, window)
        query = BucketQuery(
            start=window_start(window, start_timestamp),
            end=window_start(window, end_timestamp),
            grouping=grouping,
            nested_grouping_id=nested_grouping,
        )
        return self.store.find_buckets(collection, query, limit=self._limit(limit), skip=skip)

    def count_events_by_group(self, application_id: str, window: WindowKind, start_timestamp: int, end_timestamp: int,
                              grouping: str, nested_grouping: Optional[str] = None) -> CountResponse:
        """Per bucket-start totals for one grouping: ``record_count`` is how many
        buckets matched, ``aggregate_count`` the sum of their counts."""
        config = self.registry.get(application_id)
        collection = self._window_collection(config, window)
        query = BucketQuery(
            start=window_start(window, start_timestamp),
            end=window_start(window, end_timestamp),
            grouping=grouping,
            nested_grouping_id=nested_grouping,
        )
        counts = self.store.aggregate_buckets(collection, query)
        return CountResponse(
            total_record_count=sum(c.record_count for c in counts),
            total_aggregate_count=sum(c.aggregate_count for c in counts),
            counts=counts,
        )

    def close(self) -> None:
        self.dispatcher.close()
        self.store.close()

def build_service(s: Settings) -> RollupService:
    registry = TenantRegistry()
    if os.path.exists(s.tenants_path):
        registry.refresh_from_file(s.tenants_path)
    else:
        logger.warning("tenant config file %s not found, starting with no tenants", s.tenants_path)
    store = build_store(s)
    dispatcher = AggregationDispatcher(BucketMerger(store), max_workers=s.merge_workers)
    return RollupService(registry, store, dispatcher, max_page_size=s.max_page_size)
