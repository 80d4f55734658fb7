from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from xml.sax.saxutils import escape

import pytest_asyncio

from ledger.database import Database
from ledger.idempotency import IdempotencyStore
from ledger.intake.lifecycle import IntakeLifecycle
from ledger.intake.models import IntakeItem
from ledger.intake.rails import CrawlRails
from ledger.intake.store import IntakeRepository
from ledger.intake.urls import canonicalize_url, dedupe_key
from ledger.records.audit import AuditLog
from ledger.records.cards import CardRepository
from ledger.records.entities import EntityService
from ledger.records.sources import SourceRepository
from ledger.store.kv import SqliteKeyValueStore


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Database]:
    db = Database(tmp_path / "test_ledger.db")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def kv(db: Database) -> SqliteKeyValueStore:
    store = SqliteKeyValueStore(db.conn)
    await store.init_schema()
    return store


@pytest_asyncio.fixture
async def intake_repo(kv: SqliteKeyValueStore) -> IntakeRepository:
    return IntakeRepository(kv)


@pytest_asyncio.fixture
async def audit(kv: SqliteKeyValueStore) -> AuditLog:
    return AuditLog(kv)


@pytest_asyncio.fixture
async def entities(kv: SqliteKeyValueStore, audit: AuditLog) -> EntityService:
    return EntityService(kv, audit)


@pytest_asyncio.fixture
async def cards(kv: SqliteKeyValueStore) -> CardRepository:
    return CardRepository(kv)


@pytest_asyncio.fixture
async def sources(kv: SqliteKeyValueStore) -> SourceRepository:
    return SourceRepository(kv)


@pytest_asyncio.fixture
async def lifecycle(
    kv: SqliteKeyValueStore,
    intake_repo: IntakeRepository,
    entities: EntityService,
    cards: CardRepository,
    sources: SourceRepository,
    audit: AuditLog,
) -> IntakeLifecycle:
    return IntakeLifecycle(
        intake=intake_repo,
        entities=entities,
        cards=cards,
        sources=sources,
        audit=audit,
        idempotency=IdempotencyStore(kv),
    )


def fast_rails(**overrides) -> CrawlRails:
    """Rails with host pacing switched off so tests never sleep."""
    values = {
        "max_requests_per_host_per_minute": 10_000,
        "min_delay_ms_between_requests_same_host": 0,
    }
    values.update(overrides)
    return CrawlRails(**values)


def make_item(link: str = "https://www.ftc.gov/news/press-release-1", **overrides) -> IntakeItem:
    published = overrides.pop("published_at", datetime(2025, 1, 6, 15, 30, tzinfo=UTC))
    canonical = canonicalize_url(link)
    values = {
        "dedupe_key": dedupe_key(canonical, published.isoformat() if published else ""),
        "feed_id": "ftc_press_releases",
        "publisher": "FTC",
        "source_url": link,
        "canonical_url": canonical,
        "title": "FTC Takes Action Against Acme",
        "description": "The Federal Trade Commission today sued Acme.",
        "published_at": published,
        "discovered_at": datetime.now(UTC),
        "suggested_tags": ["ftc", "consumer-protection"],
    }
    values.update(overrides)
    return IntakeItem(**values)


def rss(*items: dict, title: str = "Press Releases") -> str:
    """Build an RSS 2.0 document from item dicts (title, link, pubDate, guid, description, category)."""
    parts = []
    for item in items:
        fields = []
        for tag in ("title", "link", "pubDate"):
            if item.get(tag) is not None:
                fields.append(f"<{tag}>{escape(item[tag])}</{tag}>")
        if item.get("description") is not None:
            fields.append(f"<description><![CDATA[{item['description']}]]></description>")
        if item.get("guid") is not None:
            fields.append(f'<guid isPermaLink="false">{item["guid"]}</guid>')
        for category in item.get("category", []):
            fields.append(f"<category>{escape(category)}</category>")
        parts.append(f"<item>{''.join(fields)}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<rss version="2.0"><channel><title>{title}</title><link>https://www.ftc.gov/</link>'
        f"<description>Feed</description>{''.join(parts)}</channel></rss>"
    )


class FakeClock:
    """Monotonic clock for host gates; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
