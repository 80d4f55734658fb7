from ledger.constants import DEFAULT_PAGE_SIZE, INTAKE_PREFIX, MAX_PAGE_SIZE, META_SK, TERMINAL_SK
from ledger.errors import ConditionFailedError, NotFoundError
from ledger.intake.models import IntakeItem, IntakeStatus
from ledger.store.kv import KeyValueStore, Page, Record

ALL_ITEMS_PK = "INTAKE_ALL"


class IntakeRepository:
    """Intake items keyed by dedupe key.

    gsi1 lists by status, gsi2 lists everything; both newest-discovered first.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        self.kv = kv
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _record(self, item: IntakeItem) -> Record:
        ts = f"TS#{item.discovered_at.isoformat()}#{item.dedupe_key}"
        return Record(
            pk=f"{INTAKE_PREFIX}{item.dedupe_key}",
            sk=META_SK,
            data=item.model_dump(mode="json"),
            gsi1pk=f"STATUS#{item.status}",
            gsi1sk=ts,
            gsi2pk=ALL_ITEMS_PK,
            gsi2sk=ts,
        )

    async def exists(self, dedupe_key: str) -> bool:
        return await self.kv.get(f"{INTAKE_PREFIX}{dedupe_key}", META_SK) is not None

    async def create(self, item: IntakeItem) -> bool:
        """Create ``item`` unless its dedupe key is already stored.

        Returns False when another writer got there first.
        """
        try:
            await self.kv.put(self._record(item), if_absent=True)
        except ConditionFailedError:
            return False
        return True

    async def get(self, dedupe_key: str) -> IntakeItem:
        record = await self.kv.get(f"{INTAKE_PREFIX}{dedupe_key}", META_SK)
        if record is None:
            raise NotFoundError("Intake item", dedupe_key)
        return IntakeItem.model_validate(record.data)

    async def save(self, item: IntakeItem, *, expected_status: IntakeStatus | None = None) -> None:
        """Overwrite the stored item, or with ``expected_status`` only while it still has that status.

        A status mismatch raises ``ConditionFailedError``.
        """
        expected = {"status": str(expected_status)} if expected_status is not None else None
        await self.kv.put(self._record(item), expected=expected)

    async def list_intake_items(
        self,
        status: IntakeStatus | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page[IntakeItem]:
        limit = min(limit or self.default_page_size, self.max_page_size)
        if status is None:
            page = await self.kv.query(ALL_ITEMS_PK, index="gsi2", cursor=cursor, limit=limit, descending=True)
        else:
            page = await self.kv.query(
                f"STATUS#{IntakeStatus(status)}", index="gsi1", cursor=cursor, limit=limit, descending=True
            )
        return Page(items=[IntakeItem.model_validate(r.data) for r in page.items], cursor=page.cursor)

    async def claim_terminal(self, dedupe_key: str, status: IntakeStatus) -> None:
        """Reserve the item's single terminal transition.

        Raises ``ConditionFailedError`` if another transition already holds it.
        """
        await self.kv.put(
            Record(pk=f"{INTAKE_PREFIX}{dedupe_key}", sk=TERMINAL_SK, data={"status": status}),
            if_absent=True,
        )

    async def release_terminal(self, dedupe_key: str) -> None:
        await self.kv.delete(f"{INTAKE_PREFIX}{dedupe_key}", TERMINAL_SK)

    async def is_terminal(self, dedupe_key: str) -> bool:
        return await self.kv.get(f"{INTAKE_PREFIX}{dedupe_key}", TERMINAL_SK) is not None
