# --- Crawl Rails Defaults ---

MAX_ITEMS_PER_RUN = 20
MAX_PER_FEED_PER_RUN = 5
MAX_REQUESTS_PER_HOST_PER_MINUTE = 30
MIN_DELAY_MS_BETWEEN_REQUESTS_SAME_HOST = 750
FETCH_TIMEOUT_MS = 15_000
MAX_HTML_SNAPSHOT_BYTES = 5 * 1024 * 1024
MAX_PDF_BYTES = 25 * 1024 * 1024

ALLOWED_DOMAINS = frozenset(
    {
        "ftc.gov",
        "sec.gov",
        "justice.gov",
        "cfpb.gov",
        "consumerfinance.gov",
        "fda.gov",
        "epa.gov",
        "osha.gov",
        "dol.gov",
        "fcc.gov",
    }
)

STRIP_QUERY_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "ref",
        "source",
    }
)

# Only these rails fields may be changed from the deployment environment
RAILS_ENV_OVERRIDES = {
    "INTAKE_MAX_ITEMS_PER_RUN": "max_items_per_run",
    "INTAKE_MAX_PER_FEED_PER_RUN": "max_per_feed_per_run",
    "INTAKE_FETCH_TIMEOUT_MS": "fetch_timeout_ms",
}

RATE_WINDOW_SECONDS = 60.0


# --- HTTP ---

USER_AGENT = "AccountabilityLedger/1.0 (https://accountabilityledger.org)"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"
SNAPSHOT_ACCEPT = "text/html, application/xhtml+xml, application/pdf;q=0.9, */*;q=0.5"

FETCH_MAX_ATTEMPTS = 3
FETCH_RETRY_INITIAL = 1.0
FETCH_RETRY_MAX = 10.0
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_REDIRECTS = 5

MAX_CONCURRENT_FEEDS = 4


# --- Storage Keys ---

INTAKE_PREFIX = "INTAKE#"
ENTITY_PREFIX = "ENTITY#"
ENTITY_NAME_PREFIX = "ENTITYNAME#"
CARD_PREFIX = "CARD#"
SOURCE_PREFIX = "SOURCE#"
AUDIT_PREFIX = "AUDIT#"
IDEMPOTENCY_PREFIX = "IDEMPOTENCY#"
META_SK = "META"
TERMINAL_SK = "TERMINAL"


# --- API ---

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
PRESIGNED_URL_EXPIRY_SECONDS = 3600
IDEMPOTENCY_TTL_HOURS = 48

SUMMARY_EXCERPT_LIMIT = 1000
