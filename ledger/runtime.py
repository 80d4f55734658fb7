import httpx

from ledger.config import Config, get_config
from ledger.database import Database
from ledger.errors import NotFoundError
from ledger.idempotency import IdempotencyStore
from ledger.intake.fetcher import build_client
from ledger.intake.lifecycle import IntakeLifecycle
from ledger.intake.models import RunSummary
from ledger.intake.rails import CrawlRails, FeedCatalog, load_catalog, with_env_overrides
from ledger.intake.runner import IntakeRunner
from ledger.intake.store import IntakeRepository
from ledger.logging import get_logger
from ledger.records.audit import AuditLog
from ledger.records.cards import CardRepository
from ledger.records.entities import EntityService
from ledger.records.sources import SourceRepository
from ledger.store.blobs import BlobStore, LocalBlobStore, PresignedUrl, S3BlobStore
from ledger.store.kv import SqliteKeyValueStore

_logger = get_logger(__name__)


def create_blob_store(config: Config) -> BlobStore:
    if config.blob_backend == "s3":
        return S3BlobStore(region=config.aws_region, endpoint_url=config.s3_endpoint_url)
    return LocalBlobStore(config.blob_dir)


class Runtime:
    """Wires configuration, storage and services for one process."""

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self.db = Database(self.config.db_path)
        self.blobs = create_blob_store(self.config)
        self.kv: SqliteKeyValueStore | None = None
        self.intake: IntakeRepository | None = None
        self.audit: AuditLog | None = None
        self.entities: EntityService | None = None
        self.cards: CardRepository | None = None
        self.lifecycle: IntakeLifecycle | None = None
        self._catalog: FeedCatalog | None = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return
        await self.db.connect()
        self.kv = SqliteKeyValueStore(self.db.conn)
        await self.kv.init_schema()

        self.intake = IntakeRepository(
            self.kv,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.audit = AuditLog(self.kv)
        self.entities = EntityService(self.kv, self.audit)
        self.cards = CardRepository(self.kv)
        self.lifecycle = IntakeLifecycle(
            intake=self.intake,
            entities=self.entities,
            cards=self.cards,
            sources=SourceRepository(self.kv),
            audit=self.audit,
            idempotency=IdempotencyStore(self.kv, ttl_hours=self.config.idempotency_ttl_hours),
        )
        self._connected = True
        _logger.debug("Runtime connected (db: %s)", self.config.db_path)

    async def close(self) -> None:
        await self.db.close()
        self._connected = False

    async def __aenter__(self) -> "Runtime":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def catalog(self) -> FeedCatalog:
        if self._catalog is None:
            self._catalog = load_catalog(self.config.feeds_path)
        return self._catalog

    def rails(self) -> CrawlRails:
        return with_env_overrides(self.catalog.rails)

    async def run_intake(
        self, feed_ids: list[str] | None = None, client: httpx.AsyncClient | None = None
    ) -> RunSummary:
        feeds = self.catalog.enabled_feeds(feed_ids)
        rails = self.rails()
        own_client = client is None
        client = client or build_client(self.config.user_agent)
        try:
            runner = IntakeRunner(
                rails,
                self.intake,
                client,
                blobs=self.blobs if self.config.capture_snapshots else None,
                snapshot_bucket=self.config.snapshot_bucket,
                max_concurrent_feeds=self.config.max_concurrent_feeds,
            )
            return await runner.run(feeds)
        finally:
            if own_client:
                await client.aclose()

    async def snapshot_url(self, dedupe_key: str) -> PresignedUrl:
        """Presigned download URL for an item's captured snapshot."""
        item = await self.intake.get(dedupe_key)
        if item.snapshot is None:
            raise NotFoundError("Snapshot for intake item", dedupe_key)
        filename = item.snapshot.key.rsplit("/", 1)[-1]
        return await self.blobs.presign_download(
            item.snapshot.bucket,
            item.snapshot.key,
            filename=filename,
            expires_in=self.config.presigned_url_expiry_seconds,
        )
