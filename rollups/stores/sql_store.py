from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
import time, uuid
import orjson
from sqlalchemy import BigInteger, Column, Index, Integer, String, Text, create_engine, exists, func, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase
from rollups.errors import StoreError, StoreUnavailableError
from rollups.schemas import Bucket, CountBucket, Event, Page, StoredEvent
from rollups.stores.base import BucketQuery, BucketStore, BucketUpdate

class Base(DeclarativeBase):
    pass

class BucketRow(Base):
    __tablename__ = "rollup_buckets"
    collection = Column(String(200), primary_key=True)
    id = Column(String(1024), primary_key=True)
    application_id = Column(String(200), nullable=False)
    grouping_definition = Column(Text, nullable=False)
    grouping_id = Column(Text, nullable=False)
    nested_grouping_ids = Column(Text, nullable=False)
    window_kind = Column(String(16), nullable=False)
    bucket_start = Column(BigInteger, nullable=False)
    count = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_rollup_buckets_start", "collection", "bucket_start"),
    )

class BucketNestedIdRow(Base):
    __tablename__ = "rollup_bucket_nested_ids"
    collection = Column(String(200), primary_key=True)
    bucket_id = Column(String(1024), primary_key=True)
    position = Column(Integer, primary_key=True)
    nested_id = Column(Text, nullable=False)

    __table_args__ = (
        Index("idx_rollup_nested_lookup", "collection", "nested_id"),
    )

class BucketEventRow(Base):
    __tablename__ = "rollup_bucket_events"
    seq = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(200), nullable=False)
    bucket_id = Column(String(1024), nullable=False)
    event_id = Column(String(64), nullable=True)
    summary = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_rollup_bucket_events", "collection", "bucket_id", "seq"),
    )

class EventRow(Base):
    __tablename__ = "rollup_events"
    seq = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(200), nullable=False)
    id = Column(String(64), nullable=False)
    attributes = Column(Text, nullable=False)
    timestamp = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_rollup_events_id", "collection", "id", unique=True),
    )

buckets = BucketRow.__table__
nested_ids = BucketNestedIdRow.__table__
bucket_events = BucketEventRow.__table__
raw_events = EventRow.__table__

UPSERT_BUCKET = text("""
INSERT INTO rollup_buckets(collection, id, application_id, grouping_definition, grouping_id,
                           nested_grouping_ids, window_kind, bucket_start, count, updated_at)
VALUES (:collection, :id, :application_id, :grouping_definition, :grouping_id,
        :nested_grouping_ids, :window_kind, :bucket_start, :inc, :updated_at)
ON CONFLICT (collection, id)
DO UPDATE SET
  application_id = EXCLUDED.application_id,
  grouping_definition = EXCLUDED.grouping_definition,
  grouping_id = EXCLUDED.grouping_id,
  nested_grouping_ids = EXCLUDED.nested_grouping_ids,
  window_kind = EXCLUDED.window_kind,
  bucket_start = EXCLUDED.bucket_start,
  count = rollup_buckets.count + EXCLUDED.count,
  updated_at = EXCLUDED.updated_at;
""")

class SqlStore(BucketStore):
    """Bucket store on PostgreSQL (or SQLite for local runs).

    A merge is one transaction: the bucket row upsert, a rewrite of its nested
    grouping ids and one appended history row.
    """

    def __init__(self, url: str):
        self.engine = create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _errors(self):
        try:
            yield
        except OperationalError as e:
            raise StoreUnavailableError(str(e)) from e
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def upsert_bucket(self, collection: str, bucket_id: str, update: BucketUpdate) -> None:
        f = update.set_fields
        nested = list(f["nested_grouping_ids"])
        with self._errors(), self.engine.begin() as conn:
            conn.execute(UPSERT_BUCKET, {
                "collection": collection,
                "id": bucket_id,
                "application_id": f["application_id"],
                "grouping_definition": f["grouping_definition"],
                "grouping_id": f["grouping_id"],
                "nested_grouping_ids": orjson.dumps(nested).decode("utf-8"),
                "window_kind": str(f["window"]),
                "bucket_start": int(f["bucket_start"]),
                "inc": int(update.increment),
                "updated_at": int(time.time()),
            })
            conn.execute(nested_ids.delete().where(
                nested_ids.c.collection == collection, nested_ids.c.bucket_id == bucket_id))
            if nested:
                conn.execute(nested_ids.insert(), [
                    {"collection": collection, "bucket_id": bucket_id, "position": i, "nested_id": n}
                    for i, n in enumerate(nested)
                ])
            if update.summary is not None or update.event_id is not None:
                conn.execute(bucket_events.insert().values(
                    collection=collection,
                    bucket_id=bucket_id,
                    event_id=update.event_id,
                    summary=update.summary.model_dump_json() if update.summary is not None else None,
                ))

    def _history(self, conn, collection: str, ids: List[str]) -> Dict[str, Dict[str, list]]:
        out: Dict[str, Dict[str, list]] = {i: {"events": [], "event_ids": []} for i in ids}
        if not ids:
            return out
        rows = conn.execute(
            select(bucket_events.c.bucket_id, bucket_events.c.event_id, bucket_events.c.summary)
            .where(bucket_events.c.collection == collection, bucket_events.c.bucket_id.in_(ids))
            .order_by(bucket_events.c.seq.asc())
        ).mappings().all()
        for r in rows:
            h = out[r["bucket_id"]]
            if r["summary"] is not None:
                h["events"].append(orjson.loads(r["summary"]))
            if r["event_id"] is not None:
                h["event_ids"].append(r["event_id"])
        return out

    def _to_bucket(self, row: Dict[str, Any], history: Dict[str, list]) -> Bucket:
        return Bucket(
            id=row["id"],
            application_id=row["application_id"],
            grouping_definition=row["grouping_definition"],
            grouping_id=row["grouping_id"],
            nested_grouping_ids=orjson.loads(row["nested_grouping_ids"]),
            window=row["window_kind"],
            bucket_start=row["bucket_start"],
            count=row["count"],
            events=history["events"],
            event_ids=history["event_ids"],
        )

    def get_bucket(self, collection: str, bucket_id: str) -> Optional[Bucket]:
        with self._errors(), self.engine.begin() as conn:
            row = conn.execute(
                select(buckets).where(buckets.c.collection == collection, buckets.c.id == bucket_id)
            ).mappings().first()
            if row is None:
                return None
            return self._to_bucket(row, self._history(conn, collection, [bucket_id])[bucket_id])

    def _conditions(self, collection: str, query: BucketQuery) -> list:
        conds = [buckets.c.collection == collection]
        if query.start is not None:
            conds.append(buckets.c.bucket_start >= query.start)
        if query.end is not None:
            conds.append(buckets.c.bucket_start <= query.end)
        if query.grouping is not None:
            conds.append(func.lower(buckets.c.grouping_definition) == query.grouping.lower())
        if query.nested_grouping_id is not None:
            conds.append(exists().where(
                nested_ids.c.collection == buckets.c.collection,
                nested_ids.c.bucket_id == buckets.c.id,
                nested_ids.c.nested_id == query.nested_grouping_id.lower(),
            ))
        return conds

    def find_buckets(self, collection: str, query: BucketQuery, limit: Optional[int] = None, skip: int = 0) -> Page[Bucket]:
        conds = self._conditions(collection, query)
        with self._errors(), self.engine.begin() as conn:
            total = conn.execute(select(func.count()).select_from(buckets).where(*conds)).scalar_one()
            q = select(buckets).where(*conds).order_by(buckets.c.bucket_start.asc(), buckets.c.id.asc()).offset(skip)
            if limit is not None:
                q = q.limit(limit)
            rows = conn.execute(q).mappings().all()
            history = self._history(conn, collection, [r["id"] for r in rows])
            items = [self._to_bucket(r, history[r["id"]]) for r in rows]
        return Page[Bucket](items=items, total_count=total, limit=limit, skip=skip)

    def aggregate_buckets(self, collection: str, query: BucketQuery) -> List[CountBucket]:
        q = (select(buckets.c.bucket_start,
                    func.count().label("record_count"),
                    func.sum(buckets.c["count"]).label("aggregate_count"))
             .where(*self._conditions(collection, query))
             .group_by(buckets.c.bucket_start)
             .order_by(buckets.c.bucket_start.asc()))
        with self._errors(), self.engine.begin() as conn:
            rows = conn.execute(q).mappings().all()
        return [CountBucket(bucket_start=r["bucket_start"], record_count=r["record_count"],
                            aggregate_count=int(r["aggregate_count"] or 0)) for r in rows]

    def insert_event(self, collection: str, event: Event) -> str:
        event_id = event.id or uuid.uuid4().hex
        with self._errors(), self.engine.begin() as conn:
            conn.execute(raw_events.insert().values(
                collection=collection,
                id=event_id,
                attributes=orjson.dumps([kp.model_dump() for kp in event.attributes]).decode("utf-8"),
                timestamp=int(event.timestamp),
            ))
        return event_id

    def list_events(self, collection: str, limit: Optional[int] = None, skip: int = 0) -> Page[StoredEvent]:
        cond = raw_events.c.collection == collection
        with self._errors(), self.engine.begin() as conn:
            total = conn.execute(select(func.count()).select_from(raw_events).where(cond)).scalar_one()
            q = select(raw_events).where(cond).order_by(raw_events.c.seq.asc()).offset(skip)
            if limit is not None:
                q = q.limit(limit)
            rows = conn.execute(q).mappings().all()
        items = [StoredEvent(id=r["id"], attributes=orjson.loads(r["attributes"]), timestamp=r["timestamp"]) for r in rows]
        return Page[StoredEvent](items=items, total_count=total, limit=limit, skip=skip)

    def close(self) -> None:
        self.engine.dispose()
