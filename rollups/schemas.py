from __future__ import annotations
from enum import Enum
from typing import Dict, Generic, List, Optional, Tuple, TypeVar
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")

class WindowKind(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALLTIME = "alltime"

    @classmethod
    def _missing_(cls, value):
        # stored configs may spell windows "Hour", "AllTime", ...
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    def __str__(self) -> str:
        return self.value

class KeyPair(BaseModel):
    key: str
    value: str

    def lowercase(self) -> "KeyPair":
        return KeyPair(key=self.key.lower(), value=self.value.lower())

class Event(BaseModel):
    id: Optional[str] = None
    attributes: List[KeyPair] = Field(default_factory=list, validation_alias=AliasChoices("attributes", "keys"))
    timestamp: int

    def lowercase(self) -> "Event":
        return self.model_copy(update={"attributes": [kp.lowercase() for kp in self.attributes]})

class TenantConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    application_id: str = Field(validation_alias=AliasChoices("application_id", "applicationId", "_id"))
    windows: Tuple[WindowKind, ...] = ()
    groups: Tuple[str, ...] = ()
    log_all_events: bool = Field(default=False, validation_alias=AliasChoices("log_all_events", "logAllEvents"))

    @field_validator("application_id")
    @classmethod
    def _lower_id(cls, v: str) -> str:
        return v.lower()

    @field_validator("windows", mode="before")
    @classmethod
    def _parse_windows(cls, v):
        return tuple(dict.fromkeys(WindowKind(w) for w in v))

class EventSummary(BaseModel):
    timestamp: int
    bucket_start: int
    raw_timestamp: int
    attributes: Dict[str, str] = Field(default_factory=dict)

class Bucket(BaseModel):
    id: str
    application_id: str
    grouping_definition: str
    grouping_id: str
    nested_grouping_ids: List[str] = Field(default_factory=list)
    window: WindowKind
    bucket_start: int
    count: int = 0
    events: List[EventSummary] = Field(default_factory=list)
    event_ids: List[str] = Field(default_factory=list)

class MergeOutcome(BaseModel):
    window: WindowKind
    grouping_definition: str
    bucket_id: str
    ok: bool
    error: Optional[str] = None

class DispatchResult(BaseModel):
    merges: List[MergeOutcome] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(m.ok for m in self.merges)

    @property
    def failed(self) -> List[MergeOutcome]:
        return [m for m in self.merges if not m.ok]

class LogEventResult(BaseModel):
    success: bool
    inserted_id: Optional[str] = None
    merges: List[MergeOutcome] = Field(default_factory=list)

class CountBucket(BaseModel):
    bucket_start: int
    record_count: int
    aggregate_count: int

class CountResponse(BaseModel):
    total_record_count: int = 0
    total_aggregate_count: int = 0
    counts: List[CountBucket] = Field(default_factory=list)

class StoredEvent(BaseModel):
    id: str
    attributes: List[KeyPair] = Field(default_factory=list)
    timestamp: int

class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    total_count: int = 0
    limit: Optional[int] = None
    skip: int = 0

class IngestMessage(BaseModel):
    application_id: str
    event: Event
