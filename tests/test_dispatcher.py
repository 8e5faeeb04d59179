from datetime import datetime, timezone
from rollups.dispatcher import AggregationDispatcher, plan_merges
from rollups.errors import StoreError
from rollups.merger import BucketMerger
from rollups.schemas import Event, KeyPair, TenantConfig
from rollups.stores.memory import MemoryStore

DAY = int(datetime(2026, 2, 7, tzinfo=timezone.utc).timestamp())

def _event(ts: int, **attrs) -> Event:
    return Event(attributes=[KeyPair(key=k, value=v) for k, v in attrs.items()], timestamp=ts).lowercase()

class FailingStore(MemoryStore):
    def __init__(self, fail_on: str):
        super().__init__()
        self.fail_on = fail_on

    def upsert_bucket(self, collection, bucket_id, update):
        if update.set_fields["grouping_definition"] == self.fail_on:
            raise StoreError("write conflict")
        super().upsert_bucket(collection, bucket_id, update)

def test_single_event_creates_one_day_bucket():
    store = MemoryStore()
    config = TenantConfig(application_id="App", windows=["Day"], groups=["country"])
    result = AggregationDispatcher(BucketMerger(store)).dispatch(_event(DAY + 3600, country="US"), config)

    assert result.ok
    buckets = store.buckets["app_events_day"]
    assert list(buckets) == [f"day|{DAY}|us"]
    bucket = store.get_bucket("app_events_day", f"day|{DAY}|us")
    assert bucket.count == 1
    assert bucket.application_id == "app"
    assert bucket.grouping_definition == "country"
    assert bucket.grouping_id == "us"
    assert bucket.bucket_start == DAY
    assert bucket.nested_grouping_ids == []

def test_two_events_same_day_merge_in_arrival_order():
    store = MemoryStore()
    config = TenantConfig(application_id="app", windows=["day"], groups=["country"])
    d = AggregationDispatcher(BucketMerger(store))
    d.dispatch(_event(DAY + 50000, country="US", device="ios"), config, received_at=100)
    d.dispatch(_event(DAY + 10, country="us", device="web"), config, received_at=200)

    assert len(store.buckets["app_events_day"]) == 1
    bucket = store.get_bucket("app_events_day", f"day|{DAY}|us")
    assert bucket.count == 2
    assert [e.attributes["device"] for e in bucket.events] == ["ios", "web"]
    assert [e.raw_timestamp for e in bucket.events] == [100, 200]
    assert [e.timestamp for e in bucket.events] == [DAY + 50000, DAY + 10]
    assert all(e.bucket_start == DAY for e in bucket.events)

def test_nested_grouping_ids_are_resolved_from_prefix_groupings():
    store = MemoryStore()
    config = TenantConfig(application_id="app", windows=["day"], groups=["country", "country|city"])
    AggregationDispatcher(BucketMerger(store)).dispatch(_event(DAY, country="US", city="NYC"), config)

    fine = store.get_bucket("app_events_day", f"day|{DAY}|us|nyc")
    assert fine.nested_grouping_ids == ["us"]
    assert fine.grouping_definition == "country|city"
    coarse = store.get_bucket("app_events_day", f"day|{DAY}|us")
    assert coarse.nested_grouping_ids == []

def test_fan_out_covers_every_window_and_grouping():
    config = TenantConfig(application_id="app", windows=["hour", "day", "alltime"], groups=["country", "city", "country|city"])
    plans = plan_merges(_event(DAY + 7200, country="US", city="NYC"), config, received_at=0)
    assert len(plans) == 9
    assert {p.collection for p in plans} == {"app_events_hour", "app_events_day", "app_events_alltime"}
    assert "alltime|-1|us|nyc" in {p.bucket_id for p in plans}
    assert f"hour|{DAY + 7200}|nyc" in {p.bucket_id for p in plans}

def test_descriptive_fields_stable_across_merges_while_count_grows():
    store = MemoryStore()
    config = TenantConfig(application_id="app", windows=["day"], groups=["country", "country|city"])
    d = AggregationDispatcher(BucketMerger(store))
    bid = f"day|{DAY}|us|nyc"

    d.dispatch(_event(DAY + 1, country="US", city="NYC", device="ios"), config)
    first = store.get_bucket("app_events_day", bid)
    d.dispatch(_event(DAY + 2, country="US", city="NYC", device="web"), config)
    second = store.get_bucket("app_events_day", bid)

    for field in ("grouping_id", "nested_grouping_ids", "window", "bucket_start", "grouping_definition"):
        assert getattr(first, field) == getattr(second, field)
    assert second.count == 2
    assert len(second.events) == 2

def test_merge_failure_does_not_stop_sibling_merges():
    store = FailingStore(fail_on="country|city")
    config = TenantConfig(application_id="app", windows=["day", "hour"], groups=["country", "country|city", "city"])
    result = AggregationDispatcher(BucketMerger(store)).dispatch(_event(DAY, country="US", city="NYC"), config)

    assert not result.ok
    assert len(result.merges) == 6
    assert len(result.failed) == 2
    assert all(m.grouping_definition == "country|city" for m in result.failed)
    assert all(m.error == "write conflict" for m in result.failed)
    assert set(store.buckets["app_events_day"]) == {f"day|{DAY}|us", f"day|{DAY}|nyc"}
    assert set(store.buckets["app_events_hour"]) == {f"hour|{DAY}|us", f"hour|{DAY}|nyc"}

def test_event_id_appended_when_given():
    store = MemoryStore()
    config = TenantConfig(application_id="app", windows=["alltime"], groups=["country"])
    d = AggregationDispatcher(BucketMerger(store))
    d.dispatch(_event(DAY, country="US"), config, event_id="e1")
    d.dispatch(_event(DAY + 86400 * 40, country="US"), config, event_id="e2")

    bucket = store.get_bucket("app_events_alltime", "alltime|-1|us")
    assert bucket.count == 2
    assert bucket.event_ids == ["e1", "e2"]

def test_threaded_fan_out_matches_sequential():
    config = TenantConfig(application_id="app", windows=["hour", "day", "week", "month", "alltime"],
                          groups=["country", "country|city", "device"])
    seq_store, par_store = MemoryStore(), MemoryStore()
    seq = AggregationDispatcher(BucketMerger(seq_store))
    par = AggregationDispatcher(BucketMerger(par_store), max_workers=4)
    try:
        for i in range(20):
            ev = _event(DAY + i * 3000, country="US", city="NYC" if i % 2 else "SF", device="ios")
            seq.dispatch(ev, config, received_at=i)
            par.dispatch(ev, config, received_at=i)
    finally:
        par.close()

    for coll, buckets in seq_store.buckets.items():
        assert set(buckets) == set(par_store.buckets[coll])
        for bid, doc in buckets.items():
            assert par_store.buckets[coll][bid]["count"] == doc["count"]
