import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

import aiosqlite

from ledger.database import BaseRepository
from ledger.errors import ConditionFailedError, InvalidInputError

type IndexName = Literal["gsi1", "gsi2"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    pk TEXT NOT NULL,
    sk TEXT NOT NULL,
    gsi1pk TEXT,
    gsi1sk TEXT,
    gsi2pk TEXT,
    gsi2sk TEXT,
    data TEXT NOT NULL,
    expires_at TEXT,
    PRIMARY KEY (pk, sk)
);

CREATE INDEX IF NOT EXISTS idx_records_gsi1 ON records(gsi1pk, gsi1sk);
CREATE INDEX IF NOT EXISTS idx_records_gsi2 ON records(gsi2pk, gsi2sk);
"""

SQL_INSERT = """
INSERT INTO records (pk, sk, gsi1pk, gsi1sk, gsi2pk, gsi2sk, data, expires_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

SQL_UPSERT = """
INSERT OR REPLACE INTO records (pk, sk, gsi1pk, gsi1sk, gsi2pk, gsi2sk, data, expires_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

SQL_UPDATE = """
UPDATE records
SET gsi1pk = ?, gsi1sk = ?, gsi2pk = ?, gsi2sk = ?, data = ?, expires_at = ?
WHERE pk = ? AND sk = ? AND (expires_at IS NULL OR expires_at > ?)
"""

SQL_DELETE_EXPIRED = """
DELETE FROM records
WHERE pk = ? AND sk = ? AND expires_at IS NOT NULL AND expires_at <= ?
"""

SQL_GET = """
SELECT * FROM records
WHERE pk = ? AND sk = ? AND (expires_at IS NULL OR expires_at > ?)
"""

SQL_DELETE = "DELETE FROM records WHERE pk = ? AND sk = ?"

_KEY_COLUMNS: dict[str | None, tuple[str, str]] = {
    None: ("pk", "sk"),
    "gsi1": ("gsi1pk", "gsi1sk"),
    "gsi2": ("gsi2pk", "gsi2sk"),
}


def _now() -> str:
    return _iso(datetime.now(UTC))


def _iso(dt: datetime) -> str:
    # fixed width so stored expiries compare correctly as text
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _to_dt(v):
    return datetime.fromisoformat(v) if isinstance(v, str) else v


def _to_json_dict(v):
    if isinstance(v, str):
        return json.loads(v) if v else {}
    return v if v is not None else {}


@dataclass
class Record:
    pk: str
    sk: str
    data: dict = field(default_factory=dict)
    gsi1pk: str | None = None
    gsi1sk: str | None = None
    gsi2pk: str | None = None
    gsi2sk: str | None = None
    expires_at: datetime | None = None

    def __post_init__(self):
        self.data = _to_json_dict(self.data)
        self.expires_at = _to_dt(self.expires_at)


@dataclass
class Page[T]:
    items: list[T]
    cursor: str | None = None


def encode_cursor(key: list[str]) -> str:
    raw = json.dumps(key, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> list[str]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        key = json.loads(base64.urlsafe_b64decode(padded))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidInputError(f"Invalid cursor: {cursor!r}") from e
    if not isinstance(key, list) or len(key) != 3 or not all(isinstance(k, str) for k in key):
        raise InvalidInputError(f"Invalid cursor: {cursor!r}")
    return key


class KeyValueStore(ABC):
    """Partition/sort-key record store with two secondary indexes.

    Two conditional writes coordinate concurrent writers, both failing with
    ``ConditionFailedError``: ``put(..., if_absent=True)`` creates only when no
    live record holds the key, and ``put(..., expected={...})`` replaces only
    while the stored record's top-level data fields still hold the given
    values. Records past ``expires_at`` are invisible and count as absent.
    """

    @abstractmethod
    async def put(
        self, record: Record, *, if_absent: bool = False, expected: dict[str, str] | None = None
    ) -> None: ...

    @abstractmethod
    async def get(self, pk: str, sk: str) -> Record | None: ...

    @abstractmethod
    async def delete(self, pk: str, sk: str) -> None: ...

    @abstractmethod
    async def query(
        self,
        pk: str,
        *,
        index: IndexName | None = None,
        sk_prefix: str = "",
        limit: int = 50,
        cursor: str | None = None,
        descending: bool = False,
    ) -> Page[Record]: ...


class SqliteKeyValueStore(KeyValueStore, BaseRepository):
    def __init__(self, conn: aiosqlite.Connection, auto_commit: bool = True):
        BaseRepository.__init__(self, conn, auto_commit)

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def put(
        self, record: Record, *, if_absent: bool = False, expected: dict[str, str] | None = None
    ) -> None:
        row = (
            record.pk,
            record.sk,
            record.gsi1pk,
            record.gsi1sk,
            record.gsi2pk,
            record.gsi2sk,
            json.dumps(record.data, default=str),
            _iso(record.expires_at) if record.expires_at else None,
        )
        if expected is not None:
            await self._replace_if_match(record, row, expected)
            return
        if not if_absent:
            await self.conn.execute(SQL_UPSERT, row)
            await self._commit()
            return

        try:
            await self.conn.execute(SQL_DELETE_EXPIRED, (record.pk, record.sk, _now()))
            await self.conn.execute(SQL_INSERT, row)
        except aiosqlite.IntegrityError as e:
            raise ConditionFailedError(record.pk, record.sk) from e
        finally:
            await self._commit()

    async def _replace_if_match(self, record: Record, row: tuple, expected: dict[str, str]) -> None:
        sql = SQL_UPDATE + "".join(" AND json_extract(data, ?) = ?" for _ in expected)
        params = [*row[2:], record.pk, record.sk, _now()]
        for name, value in expected.items():
            params += [f"$.{name}", value]
        cursor = await self.conn.execute(sql, params)
        await self._commit()
        if cursor.rowcount == 0:
            raise ConditionFailedError(
                record.pk, record.sk, f"Record {record.pk}/{record.sk} is missing or changed: expected {expected}"
            )

    async def get(self, pk: str, sk: str) -> Record | None:
        rows = await self.conn.execute_fetchall(SQL_GET, (pk, sk, _now()))
        if not rows:
            return None
        return Record(**rows[0])

    async def delete(self, pk: str, sk: str) -> None:
        await self.conn.execute(SQL_DELETE, (pk, sk))
        await self._commit()

    async def query(
        self,
        pk: str,
        *,
        index: IndexName | None = None,
        sk_prefix: str = "",
        limit: int = 50,
        cursor: str | None = None,
        descending: bool = False,
    ) -> Page[Record]:
        if index not in _KEY_COLUMNS:
            raise ValueError(f"Unknown index: {index}")
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        pcol, scol = _KEY_COLUMNS[index]
        direction = "DESC" if descending else "ASC"

        sql = f"SELECT * FROM records WHERE {pcol} = ? AND (expires_at IS NULL OR expires_at > ?)"
        params: list = [pk, _now()]
        if sk_prefix:
            sql += f" AND substr({scol}, 1, ?) = ?"
            params += [len(sk_prefix), sk_prefix]
        if cursor:
            op = "<" if descending else ">"
            sql += f" AND ({scol}, pk, sk) {op} (?, ?, ?)"
            params += decode_cursor(cursor)
        sql += f" ORDER BY {scol} {direction}, pk {direction}, sk {direction} LIMIT ?"
        params.append(limit + 1)

        rows = await self.conn.execute_fetchall(sql, params)
        records = [Record(**row) for row in rows[:limit]]
        next_cursor = None
        if len(rows) > limit:
            last = rows[limit - 1]
            next_cursor = encode_cursor([last[scol], last["pk"], last["sk"]])
        return Page(items=records, cursor=next_cursor)
