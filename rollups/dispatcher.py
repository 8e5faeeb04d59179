from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging, time
from rollups.errors import StoreError
from rollups.grouping import bucket_id, group_id, nested_groupings
from rollups.merger import BucketMerger
from rollups.schemas import DispatchResult, Event, EventSummary, MergeOutcome, TenantConfig, WindowKind
from rollups.windowing import collection_name, window_start

logger = logging.getLogger(__name__)

@dataclass
class PlannedMerge:
    collection: str
    bucket_id: str
    window: WindowKind
    fields: Dict[str, Any]
    summary: EventSummary

def plan_merges(event: Event, config: TenantConfig, received_at: int) -> List[PlannedMerge]:
    """Every (window, grouping) pair the event lands in, with its bucket id and
    the descriptive fields the merge writes. ``event`` must already be
    lowercased."""
    attributes = {kp.key: kp.value for kp in reversed(event.attributes)}
    plans = []
    for window in config.windows:
        collection = collection_name(config.application_id, window)
        start = window_start(window, event.timestamp)
        summary = EventSummary(timestamp=event.timestamp, bucket_start=start,
                               raw_timestamp=received_at, attributes=attributes)
        for grouping in config.groups:
            gid = group_id(grouping, event.attributes)
            nested_ids = [group_id(g, event.attributes) for g in nested_groupings(grouping, config.groups)]
            plans.append(PlannedMerge(
                collection=collection,
                bucket_id=bucket_id(window, start, gid),
                window=window,
                fields={
                    "application_id": config.application_id,
                    "grouping_definition": grouping,
                    "grouping_id": gid,
                    "nested_grouping_ids": nested_ids,
                    "window": window,
                    "bucket_start": start,
                },
                summary=summary,
            ))
    return plans

class AggregationDispatcher:
    """Fans one event out over every configured window x grouping of its tenant.

    Merges are independent: a failed one is logged and recorded in the
    returned ``DispatchResult`` while the rest still run. Nothing is rolled
    back and nothing is retried.
    """

    def __init__(self, merger: BucketMerger, max_workers: int = 1):
        self.merger = merger
        self.max_workers = max(1, int(max_workers))
        self._pool: Optional[ThreadPoolExecutor] = None
        if self.max_workers > 1:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="rollup-merge")

    def _apply(self, plan: PlannedMerge, event_id: Optional[str]) -> MergeOutcome:
        outcome = MergeOutcome(window=plan.window, grouping_definition=plan.fields["grouping_definition"],
                               bucket_id=plan.bucket_id, ok=True)
        try:
            self.merger.merge(plan.collection, plan.bucket_id, plan.fields, summary=plan.summary, event_id=event_id)
        except StoreError as e:
            logger.error("bucket merge failed tenant=%s window=%s grouping=%s bucket=%s: %s",
                         plan.fields["application_id"], plan.window, outcome.grouping_definition, plan.bucket_id, e)
            outcome.ok = False
            outcome.error = str(e)
        return outcome

    def dispatch(self, event: Event, config: TenantConfig, event_id: Optional[str] = None,
                 received_at: Optional[int] = None) -> DispatchResult:
        received_at = int(time.time()) if received_at is None else int(received_at)
        plans = plan_merges(event, config, received_at)
        if self._pool is not None and len(plans) > 1:
            merges = list(self._pool.map(lambda p: self._apply(p, event_id), plans))
        else:
            merges = [self._apply(p, event_id) for p in plans]
        result = DispatchResult(merges=merges)
        logger.debug("dispatched event tenant=%s merges=%d failed=%d",
                     config.application_id, len(merges), len(result.failed))
        return result

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
