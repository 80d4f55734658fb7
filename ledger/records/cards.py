from ledger.constants import CARD_PREFIX
from ledger.errors import NotFoundError
from ledger.records.models import Card, CardStatus
from ledger.store.kv import KeyValueStore, Page, Record


class CardRepository:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def _record(self, card: Card) -> Record:
        return Record(
            pk=f"{CARD_PREFIX}{card.card_id}",
            sk=f"V#{card.version}",
            data=card.model_dump(mode="json"),
            gsi1pk=f"CARDSTATUS#{card.status}",
            gsi1sk=f"TS#{card.created_at.isoformat()}",
        )

    async def create(self, card: Card) -> Card:
        await self.kv.put(self._record(card), if_absent=True)
        return card

    async def get(self, card_id: str, version: int = 1) -> Card:
        record = await self.kv.get(f"{CARD_PREFIX}{card_id}", f"V#{version}")
        if record is None:
            raise NotFoundError("Card", card_id)
        return Card.model_validate(record.data)

    async def delete(self, card: Card) -> None:
        await self.kv.delete(f"{CARD_PREFIX}{card.card_id}", f"V#{card.version}")

    async def list_by_status(
        self, status: CardStatus, cursor: str | None = None, limit: int = 20
    ) -> Page[Card]:
        page = await self.kv.query(f"CARDSTATUS#{status}", index="gsi1", cursor=cursor, limit=limit, descending=True)
        return Page(items=[Card.model_validate(r.data) for r in page.items], cursor=page.cursor)
