import hashlib
import json
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from ledger.constants import IDEMPOTENCY_PREFIX, IDEMPOTENCY_TTL_HOURS, META_SK
from ledger.errors import ConditionFailedError, ConflictError, IdempotencyConflictError
from ledger.logging import get_logger
from ledger.store.kv import KeyValueStore, Record

_logger = get_logger(__name__)

_CLAIM_ATTEMPTS = 2


class IdempotencyRecord(BaseModel):
    token: str
    fingerprint: str
    actor: str
    created_at: datetime
    expires_at: datetime
    response: dict | None = None

    @property
    def completed(self) -> bool:
        return self.response is not None


def fingerprint(request: dict) -> str:
    canonical = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Collapses retried requests carrying the same caller token.

    ``claim`` is a create-if-absent write keyed by the token, so exactly one
    concurrent caller proceeds. Records expire after ``ttl_hours``; an expired
    token can be claimed again.
    """

    def __init__(self, kv: KeyValueStore, ttl_hours: int = IDEMPOTENCY_TTL_HOURS):
        self.kv = kv
        self.ttl = timedelta(hours=ttl_hours)

    def _record(self, record: IdempotencyRecord) -> Record:
        return Record(
            pk=f"{IDEMPOTENCY_PREFIX}{record.token}",
            sk=META_SK,
            data=record.model_dump(mode="json"),
            expires_at=record.expires_at,
        )

    async def get(self, token: str) -> IdempotencyRecord | None:
        record = await self.kv.get(f"{IDEMPOTENCY_PREFIX}{token}", META_SK)
        return IdempotencyRecord.model_validate(record.data) if record else None

    async def claim(self, token: str, request_fingerprint: str, actor: str) -> IdempotencyRecord | None:
        """Claim ``token`` for a new request.

        Returns None when the caller owns the token and should do the work,
        or the completed record when this is a replay of a finished request.
        Raises ``IdempotencyConflictError`` when the token was used for a
        different request, and ``ConflictError`` while the original request
        is still in flight.
        """
        for _ in range(_CLAIM_ATTEMPTS):
            now = datetime.now(UTC)
            record = IdempotencyRecord(
                token=token,
                fingerprint=request_fingerprint,
                actor=actor,
                created_at=now,
                expires_at=now + self.ttl,
            )
            try:
                await self.kv.put(self._record(record), if_absent=True)
                return None
            except ConditionFailedError:
                existing = await self.get(token)

            if existing is None:
                # expired between the write and the read
                continue
            if existing.fingerprint != request_fingerprint:
                raise IdempotencyConflictError(token)
            if not existing.completed:
                raise ConflictError(f"Request with idempotency key {token!r} is still in progress")
            return existing

        raise ConflictError(f"Could not claim idempotency key {token!r}")

    async def complete(self, token: str, response: dict) -> None:
        existing = await self.get(token)
        if existing is None:
            _logger.warning("Idempotency record %r vanished before completion", token)
            return
        await self.kv.put(self._record(existing.model_copy(update={"response": response})))

    async def release(self, token: str) -> None:
        await self.kv.delete(f"{IDEMPOTENCY_PREFIX}{token}", META_SK)
