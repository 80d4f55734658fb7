from ledger.constants import META_SK, SOURCE_PREFIX
from ledger.errors import NotFoundError
from ledger.records.models import Source
from ledger.store.kv import KeyValueStore, Record


class SourceRepository:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def create(self, source: Source) -> Source:
        await self.kv.put(
            Record(pk=f"{SOURCE_PREFIX}{source.source_id}", sk=META_SK, data=source.model_dump(mode="json")),
            if_absent=True,
        )
        return source

    async def get(self, source_id: str) -> Source:
        record = await self.kv.get(f"{SOURCE_PREFIX}{source_id}", META_SK)
        if record is None:
            raise NotFoundError("Source", source_id)
        return Source.model_validate(record.data)

    async def delete(self, source_id: str) -> None:
        await self.kv.delete(f"{SOURCE_PREFIX}{source_id}", META_SK)
