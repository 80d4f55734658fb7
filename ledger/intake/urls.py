import hashlib
from collections.abc import Iterable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_ALLOWED_SCHEMES = frozenset({"http", "https"})


def canonicalize_url(url: str, strip_params: Iterable[str] = ()) -> str:
    """Rewrite a URL into the normal form used for dedup hashing.

    Tracking parameters in ``strip_params`` are removed (exact, case-sensitive
    names), the rest are sorted by name with ties kept in their original
    order, and trailing slashes are dropped from the path unless it is the
    root. Input that does not parse as an absolute URL is returned unchanged.
    """
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return url
    if not parts.scheme or not host:
        return url

    netloc = parts.netloc
    userinfo, sep, hostport = netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{hostport.lower()}"

    path = parts.path
    if path != "/":
        path = path.rstrip("/") or "/"

    query = ""
    if parts.query:
        drop = frozenset(strip_params)
        params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in drop]
        params.sort(key=lambda kv: kv[0])
        query = urlencode(params)

    return urlunsplit((parts.scheme.lower(), netloc, path, query, parts.fragment))


def is_allowed_domain(url: str, allowed_domains: Iterable[str]) -> bool:
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return False
    if parts.scheme.lower() not in _ALLOWED_SCHEMES or not host:
        return False

    host = host.rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().strip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


def dedupe_key(canonical_url: str, effective_date_iso: str) -> str:
    data = f"{canonical_url}|{effective_date_iso}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def parse_pub_date(value: str | None) -> datetime | None:
    """Best-effort parse of a feed date (RFC 822 first, then ISO 8601)."""
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def effective_date(pub_date: str | None) -> str:
    # Never falls back to the wall clock: an undated item must hash the same on every run
    parsed = parse_pub_date(pub_date)
    if parsed is not None:
        return to_iso(parsed)
    return (pub_date or "").strip()
