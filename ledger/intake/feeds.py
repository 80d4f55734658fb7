import html
import io
import re
from collections.abc import Iterator

import feedparser

from ledger.errors import FeedParseError
from ledger.intake.models import FeedItemCandidate
from ledger.logging import get_logger

_logger = get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def clean_text(value: str | None) -> str | None:
    """Drop markup, decode entities and collapse whitespace."""
    if value is None:
        return None
    text = _TAG_RE.sub(" ", value)
    text = _WS_RE.sub(" ", html.unescape(text)).strip()
    return text or None


def parse_feed(document: str | bytes) -> Iterator[FeedItemCandidate]:
    """Extract item candidates from an RSS/Atom document, in document order.

    The document is parsed eagerly so structural failures raise
    ``FeedParseError`` here; the returned iterator yields one pass only.
    Items without a title or a link are dropped. Links are not validated.
    """
    raw = document.encode("utf-8") if isinstance(document, str) else document
    # A stream keeps feedparser from treating the payload as a URL or a path
    parsed = feedparser.parse(io.BytesIO(raw))

    if not parsed.get("version") and not parsed.entries:
        reason = parsed.get("bozo_exception") or "no channel or item structure found"
        raise FeedParseError(f"Unparseable feed: {reason}")
    if parsed.get("bozo"):
        _logger.debug("Recovered from malformed feed markup: %s", parsed.get("bozo_exception"))

    return _iter_candidates(parsed.entries)


def _iter_candidates(entries: list) -> Iterator[FeedItemCandidate]:
    for index, entry in enumerate(entries):
        title = clean_text(entry.get("title"))
        link = (entry.get("link") or "").strip()
        if not title or not link:
            _logger.debug("Dropping feed item %d: missing title or link", index)
            continue

        categories = tuple(term for tag in entry.get("tags") or [] if (term := clean_text(tag.get("term"))))
        pub_date = entry.get("published") or entry.get("updated")
        yield FeedItemCandidate(
            title=title,
            link=link,
            pub_date=pub_date.strip() if pub_date else None,
            guid=(entry.get("id") or "").strip() or None,
            description=clean_text(entry.get("summary")),
            categories=categories,
        )
