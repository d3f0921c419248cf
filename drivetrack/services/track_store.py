"""
Persistence sinks for location tracks.

Every store implements the same two calls, scoped to the current user:

    insert(NewTrack) -> TrackRecord       (id and owner assigned by the store)
    query(order, limit=None) -> list[TrackRecord]

Stores:
    RestTrackStore  - hosted location_tracks table over its REST API (httpx)
    LocalTrackStore - SQLite file via aiosqlite, for offline use
    MemoryTrackStore - process memory, for development and tests

Write failures raise SinkWriteFailed and read failures raise FetchFailed.
Neither is retried here.
"""
import uuid
from pathlib import Path
from typing import Callable, Optional, Protocol

import aiosqlite
import httpx
import structlog

from drivetrack.exceptions import FetchFailed, SinkWriteFailed
from drivetrack.models import NewTrack, Order, TrackRecord

logger = structlog.get_logger("track_store")

OwnerFn = Callable[[], Optional[str]]


class TrackSink(Protocol):
    async def insert(self, track: NewTrack) -> TrackRecord:
        ...

    async def query(self, order: Order = Order.ASC, limit: Optional[int] = None) -> list[TrackRecord]:
        ...


def _sort(records: list[TrackRecord], order: Order, limit: Optional[int]) -> list[TrackRecord]:
    records = sorted(records, key=lambda r: r.captured_at, reverse=(order == Order.DESC))
    return records[:limit] if limit is not None else records


# ============ Hosted REST table ============

class RestTrackStore:
    """
    location_tracks table behind the hosted backend's REST interface.

    The backend fills in id and user_id from the bearer token, so rows are
    scoped to the signed-in user without sending an owner.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Callable[[], Optional[str]],
        table: str = "location_tracks",
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.table = table
        self._api_key = api_key
        self._access_token = access_token
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        token = self._access_token() or self._api_key
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def insert(self, track: NewTrack) -> TrackRecord:
        headers = {**self._headers(), "Prefer": "return=representation"}
        try:
            response = await self._client.post(
                f"/rest/v1/{self.table}", json=[track.to_row()], headers=headers
            )
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPStatusError as e:
            raise SinkWriteFailed(f"Track insert rejected: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SinkWriteFailed(f"Track insert failed: {e}") from e
        except ValueError as e:
            raise SinkWriteFailed(f"Track insert returned an unreadable body: {e}") from e

        if not rows:
            raise SinkWriteFailed("Track insert returned no row")
        try:
            return TrackRecord.from_row(rows[0])
        except (KeyError, TypeError, ValueError) as e:
            raise SinkWriteFailed(f"Track insert returned a malformed row: {e}") from e

    async def query(self, order: Order = Order.ASC, limit: Optional[int] = None) -> list[TrackRecord]:
        params = {"select": "*", "order": f"timestamp.{Order(order).value}"}
        if limit is not None:
            params["limit"] = str(limit)
        try:
            response = await self._client.get(
                f"/rest/v1/{self.table}", params=params, headers=self._headers()
            )
            response.raise_for_status()
            return [TrackRecord.from_row(row) for row in response.json()]
        except httpx.HTTPStatusError as e:
            raise FetchFailed(f"Track query rejected: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise FetchFailed(f"Track query failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


# ============ SQLite ============

class LocalTrackStore:
    """Disk-backed track store using SQLite."""

    def __init__(self, db_path: str, owner: OwnerFn = lambda: "local"):
        self.db_path = db_path
        self._owner = owner
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and create the table if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS location_tracks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                timestamp TEXT NOT NULL,
                notes TEXT
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_tracks_user_ts
            ON location_tracks(user_id, timestamp)
        """)
        await self._db.commit()
        logger.info("Local track store initialized", path=self.db_path)

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    async def insert(self, track: NewTrack) -> TrackRecord:
        record = TrackRecord(
            id=str(uuid.uuid4()),
            owner_id=self._owner() or "local",
            latitude=track.latitude,
            longitude=track.longitude,
            captured_at=track.captured_at,
            notes=track.notes,
        )
        try:
            db = await self._conn()
            await db.execute(
                "INSERT INTO location_tracks (id, user_id, latitude, longitude, timestamp, notes) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (record.id, record.owner_id, record.latitude, record.longitude,
                 record.captured_at.isoformat(), record.notes),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise SinkWriteFailed(f"Local track insert failed: {e}") from e
        return record

    async def query(self, order: Order = Order.ASC, limit: Optional[int] = None) -> list[TrackRecord]:
        direction = "DESC" if Order(order) == Order.DESC else "ASC"
        sql = (
            "SELECT id, user_id, latitude, longitude, timestamp, notes FROM location_tracks "
            f"WHERE user_id = ? ORDER BY timestamp {direction}"
        )
        args: tuple = (self._owner() or "local",)
        if limit is not None:
            sql += " LIMIT ?"
            args += (limit,)
        try:
            db = await self._conn()
            cursor = await db.execute(sql, args)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise FetchFailed(f"Local track query failed: {e}") from e

        return [
            TrackRecord.from_row({
                "id": row[0],
                "user_id": row[1],
                "latitude": row[2],
                "longitude": row[3],
                "timestamp": row[4],
                "notes": row[5],
            })
            for row in rows
        ]

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None


# ============ In-memory ============

class MemoryTrackStore:
    """Keeps tracks in a list. Records of every owner are kept; queries see the current one."""

    def __init__(self, owner: OwnerFn = lambda: "local"):
        self._owner = owner
        self.records: list[TrackRecord] = []

    async def insert(self, track: NewTrack) -> TrackRecord:
        record = TrackRecord(
            id=str(uuid.uuid4()),
            owner_id=self._owner() or "local",
            latitude=track.latitude,
            longitude=track.longitude,
            captured_at=track.captured_at,
            notes=track.notes,
        )
        self.records.append(record)
        return record

    async def query(self, order: Order = Order.ASC, limit: Optional[int] = None) -> list[TrackRecord]:
        owner = self._owner() or "local"
        return _sort([r for r in self.records if r.owner_id == owner], Order(order), limit)

    async def close(self) -> None:
        pass
