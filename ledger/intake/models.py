from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from ledger.errors import ErrorKind


class IntakeStatus(StrEnum):
    NEW = "NEW"
    REVIEWED = "REVIEWED"
    PROMOTED = "PROMOTED"
    REJECTED = "REJECTED"


class IntakeAction(StrEnum):
    REVIEW = "review"
    PROMOTE = "promote"
    REJECT = "reject"


@dataclass(frozen=True)
class FeedItemCandidate:
    title: str
    link: str
    pub_date: str | None = None
    guid: str | None = None
    description: str | None = None
    categories: tuple[str, ...] = ()


class SnapshotInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: str
    key: str
    sha256: str
    byte_length: int
    content_type: str
    captured_at: datetime

    @property
    def ref(self) -> str:
        return f"{self.bucket}/{self.key}"


class IntakeItem(BaseModel):
    dedupe_key: str = Field(pattern=r"^[0-9a-f]{64}$")
    feed_id: str
    publisher: str
    source_url: str
    canonical_url: str
    title: str
    description: str | None = None
    categories: list[str] = Field(default_factory=list)
    guid: str | None = None
    published_at: datetime | None = None
    discovered_at: datetime
    suggested_tags: list[str] = Field(default_factory=list)
    status: IntakeStatus = IntakeStatus.NEW

    raw_content_ref: str | None = None
    snapshot: SnapshotInfo | None = None

    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    reject_reason: str | None = None
    promoted_source_id: str | None = None
    promoted_card_id: str | None = None
    promoted_entity_ids: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    url: str
    message: str


@dataclass
class FeedResult:
    feed_id: str
    items_created: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    feed_failed: bool = False
    failures: list[Failure] = field(default_factory=list)


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    completed_at: datetime | None = None
    cancelled: bool = False
    feed_results: list[FeedResult] = field(default_factory=list)

    @property
    def items_created(self) -> int:
        return sum(r.items_created for r in self.feed_results)

    @property
    def items_skipped(self) -> int:
        return sum(r.items_skipped for r in self.feed_results)

    @property
    def items_failed(self) -> int:
        return sum(r.items_failed for r in self.feed_results)

    @property
    def feeds_failed(self) -> int:
        return sum(1 for r in self.feed_results if r.feed_failed)
