from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ledger.records.models import Entity


class ErrorKind(StrEnum):
    FEED_PARSE = "feed_parse"
    FETCH = "fetch"
    FETCH_TIMEOUT = "fetch_timeout"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    CONFLICT = "conflict"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    CONDITION_FAILED = "condition_failed"
    DOMAIN_NOT_ALLOWED = "domain_not_allowed"
    INVALID_INPUT = "invalid_input"
    CANCELLED = "cancelled"


class LedgerError(Exception):
    """Base for every error the ledger raises on purpose.

    Callers branch on ``err.kind`` rather than on the concrete class, so the
    run summary and the CLI can report failures without importing every type.
    """

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FeedParseError(LedgerError):
    kind = ErrorKind.FEED_PARSE


class FetchError(LedgerError):
    kind = ErrorKind.FETCH

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FetchTimeoutError(LedgerError):
    kind = ErrorKind.FETCH_TIMEOUT


class PayloadTooLargeError(LedgerError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE

    def __init__(self, url: str, limit: int):
        super().__init__(f"Payload from {url} exceeds {limit} bytes")
        self.url = url
        self.limit = limit


class ConflictError(LedgerError):
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, existing: "Entity | None" = None):
        super().__init__(message)
        self.existing = existing


class IdempotencyConflictError(LedgerError):
    kind = ErrorKind.IDEMPOTENCY_CONFLICT

    def __init__(self, token: str):
        super().__init__("Idempotency key already used with different request")
        self.token = token


class InvalidTransitionError(LedgerError):
    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, from_status: str, action: str):
        super().__init__(f"Invalid state transition: cannot {action} from {from_status}")
        self.from_status = from_status
        self.action = action


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class ConditionFailedError(LedgerError):
    kind = ErrorKind.CONDITION_FAILED

    def __init__(self, pk: str, sk: str, message: str | None = None):
        super().__init__(message or f"Record already exists: {pk}/{sk}")
        self.pk = pk
        self.sk = sk


class DomainNotAllowedError(LedgerError):
    kind = ErrorKind.DOMAIN_NOT_ALLOWED

    def __init__(self, url: str):
        super().__init__(f"URL not in allowed domains: {url}")
        self.url = url


class InvalidInputError(LedgerError, ValueError):
    kind = ErrorKind.INVALID_INPUT


class FetchCancelledError(LedgerError):
    kind = ErrorKind.CANCELLED

    def __init__(self, url: str):
        super().__init__(f"Run cancelled before fetching {url}")
        self.url = url
