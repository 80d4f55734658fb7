import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter
from tenacity.wait import wait_base

from ledger.constants import (
    FEED_ACCEPT,
    FETCH_MAX_ATTEMPTS,
    FETCH_RETRY_INITIAL,
    FETCH_RETRY_MAX,
    MAX_REDIRECTS,
    RETRYABLE_STATUS_CODES,
    SNAPSHOT_ACCEPT,
    USER_AGENT,
)
from ledger.errors import (
    DomainNotAllowedError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    PayloadTooLargeError,
)
from ledger.intake.gates import HostGates
from ledger.intake.rails import CrawlRails
from ledger.intake.urls import is_allowed_domain
from ledger.logging import get_logger

_logger = get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class FetchedDocument:
    url: str
    status_code: int
    content_type: str
    body: bytes

    @property
    def is_pdf(self) -> bool:
        return self.content_type == PDF_CONTENT_TYPE


def _is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, FetchError):
        return False
    if exc.status_code is not None:
        return exc.status_code in RETRYABLE_STATUS_CODES
    cause = exc.__cause__
    return isinstance(cause, httpx.TransportError) and not isinstance(cause, httpx.UnsupportedProtocol)


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Fetch failed (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        FETCH_MAX_ATTEMPTS,
        retry_state.outcome.exception(),
    )


def build_client(user_agent: str = USER_AGENT) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": user_agent},
        follow_redirects=False,
    )


class Fetcher:
    """HTTP GETs under a run's rails.

    Every request (retries and redirect hops included) passes the target
    host's rate gate first. Redirects are followed one hop at a time and a
    hop outside the allowed domains is refused before it is requested. Only
    the request itself counts against ``fetch_timeout_ms``. Timeouts and
    oversize payloads are never retried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        rails: CrawlRails,
        gates: HostGates,
        max_attempts: int = FETCH_MAX_ATTEMPTS,
        wait: wait_base | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.client = client
        self.rails = rails
        self.gates = gates
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential_jitter(initial=FETCH_RETRY_INITIAL, max=FETCH_RETRY_MAX, jitter=1)
        self.should_stop = should_stop or (lambda: False)

    async def fetch_feed(self, url: str) -> FetchedDocument:
        return await self._fetch(url, FEED_ACCEPT)

    async def fetch_snapshot(self, url: str) -> FetchedDocument:
        return await self._fetch(url, SNAPSHOT_ACCEPT)

    def limit_for(self, content_type: str, url: str) -> int:
        if content_type == PDF_CONTENT_TYPE or urlsplit(url).path.lower().endswith(".pdf"):
            return self.rails.max_pdf_bytes
        return self.rails.max_html_snapshot_bytes

    async def _fetch(self, url: str, accept: str) -> FetchedDocument:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            reraise=True,
            before_sleep=_log_retry,
        )
        return await retrying(self._fetch_once, url, accept)

    async def _fetch_once(self, url: str, accept: str) -> FetchedDocument:
        target = url
        for _ in range(MAX_REDIRECTS + 1):
            response = await self._request_hop(target, accept)
            if isinstance(response, FetchedDocument):
                return response
            if not is_allowed_domain(response, self.rails.allowed_domains):
                raise DomainNotAllowedError(response)
            _logger.debug("Following redirect %s -> %s", target, response)
            target = response
        raise FetchError(f"Too many redirects fetching {url}")

    async def _request_hop(self, url: str, accept: str) -> FetchedDocument | str:
        host = urlsplit(url).hostname
        if not host:
            raise FetchError(f"No host in URL: {url}")
        await self.gates.for_host(host).acquire()
        if self.should_stop():
            raise FetchCancelledError(url)

        try:
            async with asyncio.timeout(self.rails.fetch_timeout):
                return await self._request(url, accept)
        except TimeoutError as e:
            raise FetchTimeoutError(f"Fetch of {url} exceeded {self.rails.fetch_timeout_ms}ms") from e
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Fetch of {url} timed out: {e}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(f"Fetch of {url} failed: {e}") from e

    async def _request(self, url: str, accept: str) -> FetchedDocument | str:
        """One GET. A redirect comes back as the absolute URL of the next hop."""
        async with self.client.stream("GET", url, headers={"Accept": accept}, follow_redirects=False) as response:
            if response.next_request is not None:
                return str(response.next_request.url)
            if response.status_code >= 400:
                raise FetchError(f"HTTP {response.status_code} from {url}", status_code=response.status_code)

            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            limit = self.limit_for(content_type, url)
            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > limit:
                raise PayloadTooLargeError(url, limit)

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > limit:
                    raise PayloadTooLargeError(url, limit)

        return FetchedDocument(
            url=url,
            status_code=response.status_code,
            content_type=content_type,
            body=bytes(body),
        )
