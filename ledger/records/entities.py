import re
from collections.abc import Iterable
from datetime import UTC, datetime

from ledger.constants import ENTITY_NAME_PREFIX, ENTITY_PREFIX, META_SK
from ledger.errors import ConditionFailedError, ConflictError, InvalidInputError, NotFoundError
from ledger.logging import get_logger
from ledger.records.audit import AuditLog
from ledger.records.models import AuditAction, CreateEntityInput, Entity, UpdateEntityInput
from ledger.store.kv import KeyValueStore, Page, Record

_logger = get_logger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

ENTITY_INDEX_PK = "ENTITIES"


def normalize_name(name: str) -> str:
    return _NON_ALNUM_RE.sub("", name.lower())


def _conflict(existing: Entity) -> ConflictError:
    return ConflictError(
        f"Entity with a matching name already exists: {existing.name!r} ({existing.entity_id})",
        existing=existing,
    )


class EntityService:
    """Entity records plus the normalized-name uniqueness guard.

    Each entity owns a guard record keyed by its normalized name, written with
    create-if-absent once the entity record exists. Of two writers racing on
    "Acme Corp." and "ACME CORP" only one claims the guard; the other removes
    its entity record and raises ``ConflictError``.
    """

    def __init__(self, kv: KeyValueStore, audit: AuditLog):
        self.kv = kv
        self.audit = audit

    def _record(self, entity: Entity) -> Record:
        return Record(
            pk=f"{ENTITY_PREFIX}{entity.entity_id}",
            sk=META_SK,
            data=entity.model_dump(mode="json"),
            gsi2pk=ENTITY_INDEX_PK,
            gsi2sk=f"{entity.normalized_name}#{entity.entity_id}",
        )

    @staticmethod
    def _guard(normalized: str, entity_id: str) -> Record:
        return Record(pk=f"{ENTITY_NAME_PREFIX}{normalized}", sk=META_SK, data={"entity_id": entity_id})

    async def get_entity(self, entity_id: str) -> Entity:
        record = await self.kv.get(f"{ENTITY_PREFIX}{entity_id}", META_SK)
        if record is None:
            raise NotFoundError("Entity", entity_id)
        return Entity.model_validate(record.data)

    async def find_by_normalized_name(self, normalized: str) -> Entity | None:
        guard = await self.kv.get(f"{ENTITY_NAME_PREFIX}{normalized}", META_SK)
        if guard is None:
            return None
        record = await self.kv.get(f"{ENTITY_PREFIX}{guard.data['entity_id']}", META_SK)
        return Entity.model_validate(record.data) if record else None

    async def find_by_name(self, name: str) -> Entity | None:
        return await self.find_by_normalized_name(normalize_name(name))

    async def ensure_names_available(self, names: Iterable[str]) -> None:
        """Raise ``ConflictError`` if any name collides, without writing anything."""
        seen: set[str] = set()
        for name in names:
            normalized = normalize_name(name)
            if not normalized:
                raise InvalidInputError(f"Entity name has no letters or digits: {name!r}")
            if normalized in seen:
                raise ConflictError(f"Duplicate entity name in request: {name!r}")
            seen.add(normalized)
            existing = await self.find_by_normalized_name(normalized)
            if existing is not None:
                raise _conflict(existing)

    async def _claim_name(self, normalized: str, entity_id: str) -> None:
        try:
            await self.kv.put(self._guard(normalized, entity_id), if_absent=True)
        except ConditionFailedError:
            existing = await self.find_by_normalized_name(normalized)
            if existing is not None:
                raise _conflict(existing) from None
            raise ConflictError(f"Entity name {normalized!r} is already claimed") from None

    async def create_entity(self, data: CreateEntityInput, actor: str, *, audit: bool = True) -> Entity:
        normalized = normalize_name(data.name)
        await self.ensure_names_available([data.name])

        entity = Entity(
            name=data.name,
            normalized_name=normalized,
            type=data.type,
            aliases=data.aliases,
            website=data.website,
            parent_entity_id=data.parent_entity_id,
            identifiers=data.identifiers,
        )
        await self.kv.put(self._record(entity), if_absent=True)
        try:
            await self._claim_name(normalized, entity.entity_id)
        except ConflictError:
            await self.kv.delete(f"{ENTITY_PREFIX}{entity.entity_id}", META_SK)
            raise
        _logger.info("Created entity %s (%s)", entity.name, entity.entity_id)

        if audit:
            await self.audit.log(
                AuditAction.CREATE_ENTITY,
                "entity",
                entity.entity_id,
                actor,
                metadata={"name": entity.name, "type": entity.type},
            )
        return entity

    async def discard_entity(self, entity: Entity) -> None:
        """Remove an entity and the name guard it holds, without an audit entry."""
        guard_pk = f"{ENTITY_NAME_PREFIX}{entity.normalized_name}"
        guard = await self.kv.get(guard_pk, META_SK)
        if guard is not None and guard.data.get("entity_id") == entity.entity_id:
            await self.kv.delete(guard_pk, META_SK)
        await self.kv.delete(f"{ENTITY_PREFIX}{entity.entity_id}", META_SK)
        _logger.info("Discarded entity %s (%s)", entity.name, entity.entity_id)

    async def update_entity(self, entity_id: str, data: UpdateEntityInput, actor: str) -> Entity:
        current = await self.get_entity(entity_id)
        changes = data.model_dump(exclude_unset=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            changes["normalized_name"] = normalize_name(changes["name"])

        renamed = changes.get("normalized_name", current.normalized_name) != current.normalized_name
        if renamed:
            await self.ensure_names_available([changes["name"]])
            await self._claim_name(changes["normalized_name"], entity_id)

        updated = current.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
        await self.kv.put(self._record(updated))
        if renamed:
            await self.kv.delete(f"{ENTITY_NAME_PREFIX}{current.normalized_name}", META_SK)

        diff = {
            k: {"from": getattr(current, k), "to": v}
            for k, v in changes.items()
            if getattr(current, k) != v
        }
        await self.audit.log(AuditAction.UPDATE_ENTITY, "entity", entity_id, actor, diff=diff or None)
        return updated

    async def list_entities(
        self, query: str | None = None, cursor: str | None = None, limit: int = 20
    ) -> Page[Entity]:
        """Entities ordered by normalized name; ``query`` is a name prefix."""
        prefix = normalize_name(query) if query else ""
        page = await self.kv.query(ENTITY_INDEX_PK, index="gsi2", sk_prefix=prefix, cursor=cursor, limit=limit)
        return Page(items=[Entity.model_validate(r.data) for r in page.items], cursor=page.cursor)
