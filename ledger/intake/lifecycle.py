from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator

from ledger.constants import SUMMARY_EXCERPT_LIMIT
from ledger.errors import ConditionFailedError, InvalidTransitionError
from ledger.idempotency import IdempotencyStore, fingerprint
from ledger.intake.models import IntakeAction, IntakeItem, IntakeStatus
from ledger.intake.store import IntakeRepository
from ledger.logging import get_logger
from ledger.records.audit import AuditLog
from ledger.records.cards import CardRepository
from ledger.records.entities import EntityService
from ledger.records.models import (
    AuditAction,
    Card,
    CardCategory,
    CreateEntityInput,
    DocType,
    Entity,
    EvidenceStrength,
    Source,
)
from ledger.records.sources import SourceRepository

_logger = get_logger(__name__)

TRANSITIONS: dict[tuple[IntakeStatus, IntakeAction], IntakeStatus] = {
    (IntakeStatus.NEW, IntakeAction.REVIEW): IntakeStatus.REVIEWED,
    (IntakeStatus.NEW, IntakeAction.PROMOTE): IntakeStatus.PROMOTED,
    (IntakeStatus.REVIEWED, IntakeAction.PROMOTE): IntakeStatus.PROMOTED,
    (IntakeStatus.NEW, IntakeAction.REJECT): IntakeStatus.REJECTED,
    (IntakeStatus.REVIEWED, IntakeAction.REJECT): IntakeStatus.REJECTED,
}


class PromotePayload(BaseModel):
    entity_id: str | None = None
    entity_ids: list[str] = Field(default_factory=list)
    create_entity: CreateEntityInput | None = None
    create_entities: list[CreateEntityInput] = Field(default_factory=list)
    card_summary: str = Field(min_length=1)
    tags: list[str] | None = None
    category: CardCategory = CardCategory.CONSUMER

    @model_validator(mode="after")
    def _require_entity(self) -> "PromotePayload":
        if not self.existing_entity_ids() and not self.entities_to_create():
            raise ValueError("Promotion needs an existing entity id or an entity to create")
        return self

    def existing_entity_ids(self) -> list[str]:
        ids = [self.entity_id] if self.entity_id else []
        return list(dict.fromkeys([*ids, *self.entity_ids]))

    def entities_to_create(self) -> list[CreateEntityInput]:
        return [*([self.create_entity] if self.create_entity else []), *self.create_entities]


class RejectPayload(BaseModel):
    reason: str = Field(min_length=1)


class ReviewPayload(BaseModel):
    note: str | None = None


_PAYLOADS: dict[IntakeAction, type[BaseModel]] = {
    IntakeAction.REVIEW: ReviewPayload,
    IntakeAction.PROMOTE: PromotePayload,
    IntakeAction.REJECT: RejectPayload,
}


class IntakeLifecycle:
    """Moves intake items through review, rejection and promotion.

    Promotion and rejection are terminal. Each terminal transition first
    claims a per-item marker with a conditional write, so concurrent callers
    cannot both promote (or promote and reject) the same item. Review writes
    only while the stored status is still the one it read, so it never
    overwrites a terminal state.
    """

    def __init__(
        self,
        intake: IntakeRepository,
        entities: EntityService,
        cards: CardRepository,
        sources: SourceRepository,
        audit: AuditLog,
        idempotency: IdempotencyStore,
    ):
        self.intake = intake
        self.entities = entities
        self.cards = cards
        self.sources = sources
        self.audit = audit
        self.idempotency = idempotency

    async def transition_intake_item(
        self,
        dedupe_key: str,
        action: IntakeAction | str,
        payload: BaseModel | dict | None = None,
        *,
        actor: str,
        idempotency_token: str | None = None,
        request_id: str | None = None,
    ) -> IntakeItem:
        action = IntakeAction(action)
        payload = self._coerce_payload(action, payload)

        if idempotency_token is None:
            return await self._apply(dedupe_key, action, payload, actor, request_id)

        request = {"intake": dedupe_key, "action": action, "payload": payload.model_dump(mode="json")}
        replay = await self.idempotency.claim(idempotency_token, fingerprint(request), actor)
        if replay is not None:
            _logger.info("Replaying %s of %s for idempotency key %s", action, dedupe_key[:12], idempotency_token)
            return IntakeItem.model_validate(replay.response)

        try:
            item = await self._apply(dedupe_key, action, payload, actor, request_id)
        except BaseException:
            await self.idempotency.release(idempotency_token)
            raise
        await self.idempotency.complete(idempotency_token, item.model_dump(mode="json"))
        return item

    @staticmethod
    def _coerce_payload(action: IntakeAction, payload: BaseModel | dict | None) -> BaseModel:
        model = _PAYLOADS[action]
        if isinstance(payload, model):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        return model.model_validate(payload or {})

    async def _apply(
        self,
        dedupe_key: str,
        action: IntakeAction,
        payload: BaseModel,
        actor: str,
        request_id: str | None,
    ) -> IntakeItem:
        item = await self.intake.get(dedupe_key)
        target = TRANSITIONS.get((item.status, action))
        if target is None:
            raise InvalidTransitionError(item.status, action)

        match action:
            case IntakeAction.REVIEW:
                return await self._review(item, actor, request_id)
            case IntakeAction.REJECT:
                return await self._reject(item, payload, actor, request_id)
            case IntakeAction.PROMOTE:
                return await self._promote(item, payload, actor, request_id)

    async def _claim_terminal(self, item: IntakeItem, target: IntakeStatus, action: IntakeAction) -> None:
        try:
            await self.intake.claim_terminal(item.dedupe_key, target)
        except ConditionFailedError:
            current = await self.intake.get(item.dedupe_key)
            raise InvalidTransitionError(current.status, action) from None

    async def _review(self, item: IntakeItem, actor: str, request_id: str | None) -> IntakeItem:
        if await self.intake.is_terminal(item.dedupe_key):
            current = await self.intake.get(item.dedupe_key)
            raise InvalidTransitionError(current.status, IntakeAction.REVIEW)
        reviewed = item.model_copy(
            update={"status": IntakeStatus.REVIEWED, "reviewed_at": datetime.now(UTC), "reviewed_by": actor}
        )
        try:
            await self.intake.save(reviewed, expected_status=item.status)
        except ConditionFailedError:
            # a terminal transition landed after the check above
            current = await self.intake.get(item.dedupe_key)
            raise InvalidTransitionError(current.status, IntakeAction.REVIEW) from None
        await self.audit.log(
            AuditAction.REVIEW_INTAKE,
            "intake",
            item.dedupe_key,
            actor,
            diff={"status": {"from": item.status, "to": reviewed.status}},
            request_id=request_id,
        )
        _logger.info("Reviewed intake item %s", item.dedupe_key[:12])
        return reviewed

    async def _reject(self, item: IntakeItem, payload: RejectPayload, actor: str, request_id: str | None) -> IntakeItem:
        await self._claim_terminal(item, IntakeStatus.REJECTED, IntakeAction.REJECT)
        rejected = item.model_copy(
            update={
                "status": IntakeStatus.REJECTED,
                "reviewed_at": datetime.now(UTC),
                "reviewed_by": actor,
                "reject_reason": payload.reason,
            }
        )
        try:
            await self.intake.save(rejected)
        except BaseException:
            await self.intake.release_terminal(item.dedupe_key)
            raise

        await self.audit.log(
            AuditAction.REJECT_INTAKE,
            "intake",
            item.dedupe_key,
            actor,
            diff={"status": {"from": item.status, "to": rejected.status}},
            metadata={"reason": payload.reason, "title": item.title},
            request_id=request_id,
        )
        _logger.info("Rejected intake item %s: %s", item.dedupe_key[:12], payload.reason)
        return rejected

    async def _promote(
        self, item: IntakeItem, payload: PromotePayload, actor: str, request_id: str | None
    ) -> IntakeItem:
        # Everything that can fail on bad input is checked before the first write
        existing_ids = payload.existing_entity_ids()
        for entity_id in existing_ids:
            await self.entities.get_entity(entity_id)
        to_create = payload.entities_to_create()
        await self.entities.ensure_names_available(e.name for e in to_create)

        await self._claim_terminal(item, IntakeStatus.PROMOTED, IntakeAction.PROMOTE)
        created: list[Entity] = []
        source: Source | None = None
        card: Card | None = None
        try:
            for data in to_create:
                created.append(await self.entities.create_entity(data, actor, audit=False))
            entity_ids = list(dict.fromkeys([*existing_ids, *(e.entity_id for e in created)]))

            is_pdf = item.snapshot is not None and item.snapshot.content_type.startswith("application/pdf")
            source = await self.sources.create(
                Source(
                    title=item.title,
                    publisher=item.publisher,
                    url=item.canonical_url,
                    doc_type=DocType.PDF if is_pdf else DocType.HTML,
                    excerpt=item.description[:SUMMARY_EXCERPT_LIMIT] if item.description else None,
                    raw_content_ref=item.raw_content_ref,
                    content_sha256=item.snapshot.sha256 if item.snapshot else None,
                    created_by=actor,
                )
            )
            event_at = item.published_at or item.discovered_at
            card = await self.cards.create(
                Card(
                    title=item.title,
                    claim=item.title,
                    summary=payload.card_summary,
                    category=payload.category,
                    entity_ids=entity_ids,
                    event_date=event_at.date(),
                    source_refs=[source.source_id],
                    evidence_strength=EvidenceStrength.HIGH,
                    tags=payload.tags if payload.tags is not None else item.suggested_tags,
                    created_by=actor,
                )
            )
            promoted = item.model_copy(
                update={
                    "status": IntakeStatus.PROMOTED,
                    "reviewed_at": datetime.now(UTC),
                    "reviewed_by": actor,
                    "promoted_source_id": source.source_id,
                    "promoted_card_id": card.card_id,
                    "promoted_entity_ids": entity_ids,
                }
            )
            await self.intake.save(promoted)
        except BaseException:
            await self._discard_promotion(item.dedupe_key, created, source, card)
            raise

        await self.audit.log(
            AuditAction.PROMOTE_INTAKE,
            "intake",
            item.dedupe_key,
            actor,
            diff={"status": {"from": item.status, "to": promoted.status}},
            metadata={
                "source_id": source.source_id,
                "card_id": card.card_id,
                "entity_ids": entity_ids,
                "created_entity_ids": [e.entity_id for e in created],
            },
            request_id=request_id,
        )
        _logger.info("Promoted intake item %s to card %s", item.dedupe_key[:12], card.card_id)
        return promoted

    async def _discard_promotion(
        self, dedupe_key: str, created: list[Entity], source: Source | None, card: Card | None
    ) -> None:
        """Undo the writes of a promotion that failed part way, then free the item."""
        if card is not None:
            await self.cards.delete(card)
        if source is not None:
            await self.sources.delete(source.source_id)
        for entity in created:
            await self.entities.discard_entity(entity)
        await self.intake.release_terminal(dedupe_key)
        _logger.warning(
            "Promotion of %s failed, discarded %d new entit(ies)%s%s",
            dedupe_key[:12],
            len(created),
            ", a source" if source else "",
            " and a card" if card else "",
        )
