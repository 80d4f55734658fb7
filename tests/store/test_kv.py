from datetime import UTC, datetime, timedelta

import pytest

from ledger.errors import ConditionFailedError, ErrorKind, InvalidInputError
from ledger.store.kv import Record, SqliteKeyValueStore, decode_cursor, encode_cursor


def record(pk: str = "ITEM#1", sk: str = "META", **kwargs) -> Record:
    return Record(pk=pk, sk=sk, data=kwargs.pop("data", {"n": 1}), **kwargs)


class TestPutGet:
    @pytest.mark.asyncio
    async def test_roundtrip(self, kv: SqliteKeyValueStore):
        await kv.put(record(data={"title": "Hello", "tags": ["a"]}))
        stored = await kv.get("ITEM#1", "META")
        assert stored.data == {"title": "Hello", "tags": ["a"]}

    @pytest.mark.asyncio
    async def test_get_missing(self, kv: SqliteKeyValueStore):
        assert await kv.get("ITEM#404", "META") is None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, kv: SqliteKeyValueStore):
        await kv.put(record(data={"n": 1}))
        await kv.put(record(data={"n": 2}))
        assert (await kv.get("ITEM#1", "META")).data == {"n": 2}

    @pytest.mark.asyncio
    async def test_if_absent_conflict(self, kv: SqliteKeyValueStore):
        await kv.put(record(data={"n": 1}), if_absent=True)

        with pytest.raises(ConditionFailedError) as exc_info:
            await kv.put(record(data={"n": 2}), if_absent=True)

        assert exc_info.value.kind == ErrorKind.CONDITION_FAILED
        assert (await kv.get("ITEM#1", "META")).data == {"n": 1}

    @pytest.mark.asyncio
    async def test_store_usable_after_conflict(self, kv: SqliteKeyValueStore):
        await kv.put(record(), if_absent=True)
        with pytest.raises(ConditionFailedError):
            await kv.put(record(), if_absent=True)
        await kv.put(record(pk="ITEM#2"), if_absent=True)
        assert await kv.get("ITEM#2", "META") is not None

    @pytest.mark.asyncio
    async def test_expired_records_invisible_and_reclaimable(self, kv: SqliteKeyValueStore):
        past = datetime.now(UTC) - timedelta(seconds=1)
        await kv.put(record(data={"n": 1}, expires_at=past))

        assert await kv.get("ITEM#1", "META") is None
        await kv.put(record(data={"n": 2}), if_absent=True)
        assert (await kv.get("ITEM#1", "META")).data == {"n": 2}

    @pytest.mark.asyncio
    async def test_live_ttl_record_blocks(self, kv: SqliteKeyValueStore):
        future = datetime.now(UTC) + timedelta(hours=1)
        await kv.put(record(expires_at=future), if_absent=True)
        with pytest.raises(ConditionFailedError):
            await kv.put(record(), if_absent=True)

    @pytest.mark.asyncio
    async def test_delete(self, kv: SqliteKeyValueStore):
        await kv.put(record())
        await kv.delete("ITEM#1", "META")
        assert await kv.get("ITEM#1", "META") is None
        await kv.delete("ITEM#1", "META")


class TestQuery:
    @pytest.mark.asyncio
    async def test_sort_key_order_and_prefix(self, kv: SqliteKeyValueStore):
        for sk in ["V#2", "V#1", "NOTE#1", "V#3"]:
            await kv.put(record(pk="CARD#1", sk=sk))

        page = await kv.query("CARD#1", sk_prefix="V#")
        assert [r.sk for r in page.items] == ["V#1", "V#2", "V#3"]

        page = await kv.query("CARD#1", sk_prefix="V#", descending=True)
        assert [r.sk for r in page.items] == ["V#3", "V#2", "V#1"]

    @pytest.mark.asyncio
    async def test_prefix_is_literal(self, kv: SqliteKeyValueStore):
        await kv.put(record(pk="P", sk="a_b"))
        await kv.put(record(pk="P", sk="axb"))
        page = await kv.query("P", sk_prefix="a_")
        assert [r.sk for r in page.items] == ["a_b"]

    @pytest.mark.asyncio
    async def test_secondary_index(self, kv: SqliteKeyValueStore):
        await kv.put(record(pk="ITEM#1", gsi1pk="STATUS#NEW", gsi1sk="TS#2"))
        await kv.put(record(pk="ITEM#2", gsi1pk="STATUS#NEW", gsi1sk="TS#1"))
        await kv.put(record(pk="ITEM#3", gsi1pk="STATUS#REJECTED", gsi1sk="TS#3"))

        page = await kv.query("STATUS#NEW", index="gsi1", descending=True)

        assert [r.pk for r in page.items] == ["ITEM#1", "ITEM#2"]

    @pytest.mark.asyncio
    async def test_pagination_visits_every_record_once(self, kv: SqliteKeyValueStore):
        for n in range(7):
            # equal index sort keys are broken by primary key
            await kv.put(record(pk=f"ITEM#{n}", gsi2pk="ALL", gsi2sk=f"TS#{n // 2}"))

        seen, cursor = [], None
        while True:
            page = await kv.query("ALL", index="gsi2", limit=3, cursor=cursor, descending=True)
            seen.extend(r.pk for r in page.items)
            cursor = page.cursor
            if cursor is None:
                break

        assert sorted(seen) == [f"ITEM#{n}" for n in range(7)]
        assert len(seen) == 7

    @pytest.mark.asyncio
    async def test_exact_page_has_no_cursor(self, kv: SqliteKeyValueStore):
        for n in range(3):
            await kv.put(record(pk="P", sk=f"S#{n}"))
        page = await kv.query("P", limit=3)
        assert len(page.items) == 3
        assert page.cursor is None

    @pytest.mark.asyncio
    async def test_expired_excluded(self, kv: SqliteKeyValueStore):
        await kv.put(record(pk="P", sk="live"))
        await kv.put(record(pk="P", sk="dead", expires_at=datetime.now(UTC) - timedelta(seconds=1)))
        page = await kv.query("P")
        assert [r.sk for r in page.items] == ["live"]

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, kv: SqliteKeyValueStore):
        with pytest.raises(ValueError):
            await kv.query("P", index="gsi9")
        with pytest.raises(ValueError):
            await kv.query("P", limit=0)
        with pytest.raises(ValueError):
            await kv.query("P", cursor="not-a-cursor")


class TestCursor:
    def test_roundtrip(self):
        key = ["TS#2025-01-06T00:00:00+00:00#abc", "INTAKE#abc", "META"]
        assert decode_cursor(encode_cursor(key)) == key

    @pytest.mark.parametrize("cursor", ["%%%", encode_cursor(["only-one"]), "e30"])
    def test_invalid(self, cursor):
        with pytest.raises(InvalidInputError):
            decode_cursor(cursor)


class TestExpectedReplace:
    @pytest.mark.asyncio
    async def test_replaces_when_fields_match(self, kv: SqliteKeyValueStore):
        await kv.put(record(data={"status": "NEW", "n": 1}, gsi1pk="STATUS#NEW", gsi1sk="1"))

        replacement = record(data={"status": "REVIEWED", "n": 2}, gsi1pk="STATUS#REVIEWED", gsi1sk="1")
        await kv.put(replacement, expected={"status": "NEW"})

        assert (await kv.get("ITEM#1", "META")).data == {"status": "REVIEWED", "n": 2}
        assert [r.data["n"] for r in (await kv.query("STATUS#REVIEWED", index="gsi1")).items] == [2]
        assert (await kv.query("STATUS#NEW", index="gsi1")).items == []

    @pytest.mark.asyncio
    async def test_mismatch_leaves_record(self, kv: SqliteKeyValueStore):
        await kv.put(record(data={"status": "PROMOTED", "n": 1}))

        with pytest.raises(ConditionFailedError) as exc_info:
            await kv.put(record(data={"status": "REVIEWED", "n": 2}), expected={"status": "NEW"})

        assert "changed" in exc_info.value.message
        assert (await kv.get("ITEM#1", "META")).data == {"status": "PROMOTED", "n": 1}

    @pytest.mark.asyncio
    async def test_missing_record_not_created(self, kv: SqliteKeyValueStore):
        with pytest.raises(ConditionFailedError):
            await kv.put(record(data={"status": "REVIEWED"}), expected={"status": "NEW"})
        assert await kv.get("ITEM#1", "META") is None
