from ledger.constants import AUDIT_PREFIX
from ledger.logging import get_logger
from ledger.records.models import AuditAction, AuditLogEntry
from ledger.store.kv import KeyValueStore, Page, Record

_logger = get_logger(__name__)


def _sort_key(entry: AuditLogEntry) -> str:
    return f"LOG#{entry.timestamp.isoformat()}#{entry.log_id}"


class AuditLog:
    """Append-only audit trail.

    Entries are partitioned by month and indexed by actor (gsi1) and by
    target (gsi2). Writes are create-if-absent, so an entry can never be
    overwritten once stored.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def log(
        self,
        action: AuditAction,
        target_type: str,
        target_id: str,
        actor: str,
        *,
        diff: dict | None = None,
        metadata: dict | None = None,
        request_id: str | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor=actor,
            action=action,
            target_type=target_type,
            target_id=target_id,
            diff=diff,
            metadata=metadata,
            request_id=request_id,
        )
        sk = _sort_key(entry)
        await self.kv.put(
            Record(
                pk=f"{AUDIT_PREFIX}{entry.timestamp:%Y-%m}",
                sk=sk,
                data=entry.model_dump(mode="json"),
                gsi1pk=f"ACTOR#{actor}",
                gsi1sk=sk,
                gsi2pk=f"TARGET#{target_type}#{target_id}",
                gsi2sk=sk,
            ),
            if_absent=True,
        )
        _logger.info("Audit %s on %s %s by %s", action, target_type, target_id, actor)
        return entry

    async def list_for_target(
        self, target_type: str, target_id: str, cursor: str | None = None, limit: int = 50
    ) -> Page[AuditLogEntry]:
        return await self._query(f"TARGET#{target_type}#{target_id}", "gsi2", cursor, limit)

    async def list_by_actor(self, actor: str, cursor: str | None = None, limit: int = 50) -> Page[AuditLogEntry]:
        return await self._query(f"ACTOR#{actor}", "gsi1", cursor, limit)

    async def _query(self, pk: str, index: str, cursor: str | None, limit: int) -> Page[AuditLogEntry]:
        page = await self.kv.query(pk, index=index, cursor=cursor, limit=limit, descending=True)
        return Page(items=[AuditLogEntry.model_validate(r.data) for r in page.items], cursor=page.cursor)
