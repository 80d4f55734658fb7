import asyncio
import hashlib
from collections.abc import Coroutine, Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

import httpx
from tenacity.wait import wait_base

from ledger.constants import MAX_CONCURRENT_FEEDS
from ledger.errors import (
    DomainNotAllowedError,
    FeedParseError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    LedgerError,
    PayloadTooLargeError,
)
from ledger.intake.feeds import parse_feed
from ledger.intake.fetcher import Fetcher
from ledger.intake.gates import HostGates
from ledger.intake.models import Failure, FeedItemCandidate, FeedResult, IntakeItem, RunSummary, SnapshotInfo
from ledger.intake.rails import CrawlRails, FeedConfig
from ledger.intake.store import IntakeRepository
from ledger.intake.urls import canonicalize_url, dedupe_key, effective_date, is_allowed_domain, parse_pub_date
from ledger.logging import get_logger
from ledger.store.blobs import BlobStore

_logger = get_logger(__name__)

# Failures that are recorded in the run summary; anything else propagates
_FEED_FAILURES = (FeedParseError, FetchError, FetchTimeoutError, PayloadTooLargeError, DomainNotAllowedError)
_ITEM_FAILURES = (FetchError, FetchTimeoutError, PayloadTooLargeError, DomainNotAllowedError)


class _RunBudget:
    """Run-wide item cap shared by every feed task.

    Reserve before creating an item and release if the create does not
    happen; reserve and release never await, so no lock is needed.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def try_reserve(self) -> bool:
        if self.exhausted:
            return False
        self.used += 1
        return True

    def release(self) -> None:
        self.used -= 1


@dataclass
class _FeedCursor:
    feed: FeedConfig
    result: FeedResult
    candidates: Iterator[FeedItemCandidate]
    cap: int


async def _gather_all[T](coros: Iterable[Coroutine[object, object, T]]) -> list[T]:
    """Run ``coros`` as sibling tasks; if one raises, cancel the rest and re-raise."""
    tasks = [asyncio.create_task(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class IntakeRunner:
    def __init__(
        self,
        rails: CrawlRails,
        repo: IntakeRepository,
        client: httpx.AsyncClient,
        blobs: BlobStore | None = None,
        snapshot_bucket: str = "ledger-snapshots",
        max_concurrent_feeds: int = MAX_CONCURRENT_FEEDS,
        gates: HostGates | None = None,
        retry_wait: wait_base | None = None,
    ):
        self.rails = rails
        self.repo = repo
        self.blobs = blobs
        self.snapshot_bucket = snapshot_bucket
        self.max_concurrent_feeds = max_concurrent_feeds
        self.gates = gates or HostGates(rails)
        self.fetcher = Fetcher(client, rails, self.gates, wait=retry_wait, should_stop=lambda: self.cancelled)
        self._stop = asyncio.Event()

    def cancel(self) -> None:
        """Stop scheduling new fetches. In-flight fetches run to completion."""
        if not self._stop.is_set():
            _logger.info("Intake run cancellation requested")
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    async def run(self, feeds: list[FeedConfig]) -> RunSummary:
        summary = RunSummary(run_id=uuid4().hex[:12], started_at=datetime.now(UTC))
        _logger.info(
            "Intake run %s started: %d feed(s), max %d items",
            summary.run_id,
            len(feeds),
            self.rails.max_items_per_run,
        )

        budget = _RunBudget(self.rails.max_items_per_run)
        semaphore = asyncio.Semaphore(self.max_concurrent_feeds)
        summary.feed_results = [FeedResult(feed_id=feed.id) for feed in feeds]
        loaded = await _gather_all(
            self._load_feed(feed, result, semaphore)
            for feed, result in zip(feeds, summary.feed_results, strict=True)
        )

        # Each round creates at most one item per feed, so every feed gets an
        # item before any feed gets its second
        active = [cursor for cursor in loaded if cursor is not None]
        while active and not budget.exhausted and not self.cancelled:
            more = await _gather_all(self._take_next(cursor, budget, semaphore) for cursor in active)
            active = [cursor for cursor, again in zip(active, more, strict=True) if again]

        for cursor in loaded:
            if cursor is not None:
                _logger.info(
                    "Feed %s: %d created, %d skipped, %d failed",
                    cursor.feed.id,
                    cursor.result.items_created,
                    cursor.result.items_skipped,
                    cursor.result.items_failed,
                )

        summary.completed_at = datetime.now(UTC)
        summary.cancelled = self.cancelled
        _logger.info(
            "Intake run %s finished: %d created, %d skipped, %d failed item(s), %d failed feed(s)",
            summary.run_id,
            summary.items_created,
            summary.items_skipped,
            summary.items_failed,
            summary.feeds_failed,
        )
        return summary

    def _record_failure(self, result: FeedResult, url: str, error: LedgerError) -> None:
        result.failures.append(Failure(kind=error.kind, url=url, message=error.message))

    async def _load_feed(
        self, feed: FeedConfig, result: FeedResult, semaphore: asyncio.Semaphore
    ) -> _FeedCursor | None:
        async with semaphore:
            if self.cancelled:
                return None
            try:
                if not is_allowed_domain(feed.url, self.rails.allowed_domains):
                    raise DomainNotAllowedError(feed.url)
                _logger.info("Fetching feed %s (%s)", feed.id, feed.url)
                document = await self.fetcher.fetch_feed(feed.url)
                candidates = parse_feed(document.body)
            except FetchCancelledError:
                return None
            except _FEED_FAILURES as e:
                _logger.warning("Feed %s failed: %s", feed.id, e.message)
                result.feed_failed = True
                self._record_failure(result, feed.url, e)
                return None

        cap = self.rails.max_per_feed_per_run
        if feed.per_feed_cap is not None:
            cap = min(cap, feed.per_feed_cap)
        return _FeedCursor(feed=feed, result=result, candidates=candidates, cap=cap)

    async def _take_next(self, cursor: _FeedCursor, budget: _RunBudget, semaphore: asyncio.Semaphore) -> bool:
        """Work through the feed's candidates until one item is created.

        Returns False once the feed has nothing more to give this run.
        """
        if cursor.result.items_created >= cursor.cap:
            return False
        async with semaphore:
            while not budget.exhausted and not self.cancelled:
                candidate = next(cursor.candidates, None)
                if candidate is None:
                    return False
                if await self._process_candidate(cursor.feed, candidate, cursor.result, budget):
                    return cursor.result.items_created < cursor.cap
            return False

    async def _process_candidate(
        self,
        feed: FeedConfig,
        candidate: FeedItemCandidate,
        result: FeedResult,
        budget: _RunBudget,
    ) -> bool:
        if not is_allowed_domain(candidate.link, self.rails.allowed_domains):
            _logger.debug("Skipping item outside allowed domains: %s", candidate.link)
            result.items_skipped += 1
            return False

        canonical = canonicalize_url(candidate.link, self.rails.strip_query_params)
        key = dedupe_key(canonical, effective_date(candidate.pub_date))
        if await self.repo.exists(key):
            _logger.debug("Skipping duplicate item %s: %s", key[:12], candidate.title)
            result.items_skipped += 1
            return False

        if not budget.try_reserve():
            return False

        created = False
        try:
            snapshot = None
            if self.blobs is not None:
                snapshot = await self._capture_snapshot(key, candidate.link)

            item = IntakeItem(
                dedupe_key=key,
                feed_id=feed.id,
                publisher=feed.publisher,
                source_url=candidate.link,
                canonical_url=canonical,
                title=candidate.title,
                description=candidate.description,
                categories=list(candidate.categories),
                guid=candidate.guid,
                published_at=parse_pub_date(candidate.pub_date),
                discovered_at=datetime.now(UTC),
                suggested_tags=list(feed.default_tags),
                raw_content_ref=snapshot.ref if snapshot else None,
                snapshot=snapshot,
            )
            created = await self.repo.create(item)
        except FetchCancelledError:
            return False
        except _ITEM_FAILURES as e:
            _logger.warning("Item %s from %s failed: %s", candidate.link, feed.id, e.message)
            result.items_failed += 1
            self._record_failure(result, candidate.link, e)
            return False
        finally:
            if not created:
                budget.release()

        if created:
            result.items_created += 1
            _logger.info("Ingested %s: %s", key[:12], item.title)
        else:
            # lost a concurrent create on the same dedupe key
            result.items_skipped += 1
        return created

    async def _capture_snapshot(self, key: str, url: str) -> SnapshotInfo:
        document = await self.fetcher.fetch_snapshot(url)
        digest = hashlib.sha256(document.body).hexdigest()
        extension = "pdf" if document.is_pdf else "html"
        content_type = document.content_type or "application/octet-stream"
        blob_key = f"intake/{key}/{digest}.{extension}"
        await self.blobs.put(self.snapshot_bucket, blob_key, document.body, content_type)
        return SnapshotInfo(
            bucket=self.snapshot_bucket,
            key=blob_key,
            sha256=digest,
            byte_length=len(document.body),
            content_type=content_type,
            captured_at=datetime.now(UTC),
        )


async def run_intake(
    feeds: list[FeedConfig],
    rails: CrawlRails,
    *,
    repo: IntakeRepository,
    client: httpx.AsyncClient,
    blobs: BlobStore | None = None,
    **kwargs,
) -> RunSummary:
    runner = IntakeRunner(rails, repo, client, blobs=blobs, **kwargs)
    return await runner.run(feeds)
