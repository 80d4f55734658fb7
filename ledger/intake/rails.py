import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields, replace
from importlib import resources
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from ledger.constants import (
    ALLOWED_DOMAINS,
    FETCH_TIMEOUT_MS,
    MAX_HTML_SNAPSHOT_BYTES,
    MAX_ITEMS_PER_RUN,
    MAX_PDF_BYTES,
    MAX_PER_FEED_PER_RUN,
    MAX_REQUESTS_PER_HOST_PER_MINUTE,
    MIN_DELAY_MS_BETWEEN_REQUESTS_SAME_HOST,
    RAILS_ENV_OVERRIDES,
    STRIP_QUERY_PARAMS,
)
from ledger.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class CrawlRails:
    max_items_per_run: int = MAX_ITEMS_PER_RUN
    max_per_feed_per_run: int = MAX_PER_FEED_PER_RUN
    max_requests_per_host_per_minute: int = MAX_REQUESTS_PER_HOST_PER_MINUTE
    min_delay_ms_between_requests_same_host: int = MIN_DELAY_MS_BETWEEN_REQUESTS_SAME_HOST
    fetch_timeout_ms: int = FETCH_TIMEOUT_MS
    max_html_snapshot_bytes: int = MAX_HTML_SNAPSHOT_BYTES
    max_pdf_bytes: int = MAX_PDF_BYTES
    allowed_domains: frozenset[str] = field(default=ALLOWED_DOMAINS)
    strip_query_params: frozenset[str] = field(default=STRIP_QUERY_PARAMS)

    def __post_init__(self):
        # Lists from YAML become frozensets so the value stays hashable and immutable
        object.__setattr__(self, "allowed_domains", frozenset(d.lower() for d in self.allowed_domains))
        object.__setattr__(self, "strip_query_params", frozenset(self.strip_query_params))

    @property
    def fetch_timeout(self) -> float:
        return self.fetch_timeout_ms / 1000

    @property
    def min_delay(self) -> float:
        return self.min_delay_ms_between_requests_same_host / 1000

    def to_dict(self) -> dict:
        d = asdict(self)
        d["allowed_domains"] = sorted(self.allowed_domains)
        d["strip_query_params"] = sorted(self.strip_query_params)
        return d


def _positive_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def with_env_overrides(base: CrawlRails, environ: Mapping[str, str] | None = None) -> CrawlRails:
    """Apply the deployment-environment overrides to ``base``.

    Only the run caps and the fetch timeout can be changed this way. Values
    that are not positive integers are ignored and the base value kept.
    """
    environ = os.environ if environ is None else environ
    changes: dict[str, int] = {}
    for env_var, field_name in RAILS_ENV_OVERRIDES.items():
        raw = environ.get(env_var)
        value = _positive_int(raw)
        if value is None:
            if raw is not None:
                _logger.debug("Ignoring invalid rails override %s=%r", env_var, raw)
            continue
        changes[field_name] = value
        _logger.info("Applied env override", env_var=env_var, value=value)
    return replace(base, **changes)


class FeedConfig(BaseModel):
    id: str
    publisher: str
    name: str
    url: str
    default_tags: list[str] = Field(default_factory=list)
    per_feed_cap: int | None = Field(default=None, gt=0)
    enabled: bool = True


@dataclass
class FeedCatalog:
    version: int = 1
    rails: CrawlRails = field(default_factory=CrawlRails)
    feeds: list[FeedConfig] = field(default_factory=list)

    def enabled_feeds(self, only: list[str] | None = None) -> list[FeedConfig]:
        feeds = [f for f in self.feeds if f.enabled]
        if only:
            feeds = [f for f in feeds if f.id in only]
        return feeds


_RAILS_FIELDS = {f.name for f in fields(CrawlRails)}


def _read_catalog_text(path: Path | None) -> str:
    if path is not None:
        return path.read_text()
    return resources.files("ledger.intake").joinpath("feeds.yaml").read_text()


def load_catalog(path: Path | None = None) -> FeedCatalog:
    data = yaml.safe_load(_read_catalog_text(path)) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Feed catalog must be a mapping, got {type(data).__name__}")

    raw_rails = data.get("rails") or {}
    unknown = set(raw_rails) - _RAILS_FIELDS
    if unknown:
        raise ValueError(f"Unknown rails fields: {', '.join(sorted(unknown))}")

    catalog = FeedCatalog(
        version=data.get("version", 1),
        rails=CrawlRails(**raw_rails),
        feeds=[FeedConfig.model_validate(f) for f in data.get("feeds") or []],
    )
    _logger.info("Loaded %d feed(s) from catalog", len(catalog.feeds))
    return catalog
