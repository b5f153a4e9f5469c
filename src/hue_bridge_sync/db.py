from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

import aiosqlite


logger = logging.getLogger("hue_bridge_sync.db")


class Database:
    """Snapshot of last emitted attribute values and registered devices."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        dir_name = os.path.dirname(self._db_path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute("PRAGMA synchronous=NORMAL;")
        await self._init_schema()
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def _init_schema(self) -> None:
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS device_state (
              device_id TEXT NOT NULL,
              attribute TEXT NOT NULL,
              value_json TEXT NOT NULL,
              unit TEXT,
              updated_at INTEGER NOT NULL,
              PRIMARY KEY (device_id, attribute)
            );
            """
        )
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS devices (
              device_id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              bridge_id TEXT NOT NULL,
              json TEXT NOT NULL,
              updated_at INTEGER NOT NULL
            );
            """
        )

    async def upsert_attribute(self, *, device_id: str, attribute: str, value: Any, unit: str | None) -> None:
        now = int(time.time())
        await self.conn.execute(
            """
            INSERT INTO device_state (device_id, attribute, value_json, unit, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_id, attribute) DO UPDATE SET
              value_json=excluded.value_json,
              unit=excluded.unit,
              updated_at=excluded.updated_at
            """,
            (device_id, attribute, json.dumps(value), unit, now),
        )
        await self.conn.commit()

    async def load_attributes(self) -> list[tuple[str, str, Any]]:
        """Returns: [(device_id, attribute, value), ...]"""
        async with self.conn.execute("SELECT device_id, attribute, value_json FROM device_state") as cursor:
            rows = await cursor.fetchall()
        out: list[tuple[str, str, Any]] = []
        for device_id, attribute, value_json in rows:
            try:
                value = json.loads(value_json)
            except ValueError:
                logger.warning("Skipping unreadable snapshot row %s/%s", device_id, attribute)
                continue
            out.append((str(device_id), str(attribute), value))
        return out

    async def delete_device_state(self, device_id: str) -> None:
        await self.conn.execute("DELETE FROM device_state WHERE device_id = ?", (device_id,))
        await self.conn.commit()

    async def delete_device(self, device_id: str) -> None:
        await self.conn.execute("DELETE FROM devices WHERE device_id = ?", (device_id,))
        await self.conn.commit()

    async def upsert_device(self, *, device_id: str, kind: str, bridge_id: str, data: dict[str, Any]) -> None:
        now = int(time.time())
        await self.conn.execute(
            """
            INSERT INTO devices (device_id, kind, bridge_id, json, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
              kind=excluded.kind,
              bridge_id=excluded.bridge_id,
              json=excluded.json,
              updated_at=excluded.updated_at
            """,
            (device_id, kind, bridge_id, json.dumps(data, separators=(",", ":"), ensure_ascii=False), now),
        )
        await self.conn.commit()

    async def list_devices(self) -> list[dict[str, Any]]:
        async with self.conn.execute("SELECT json FROM devices") as cursor:
            rows = await cursor.fetchall()
        out: list[dict[str, Any]] = []
        for (json_text,) in rows:
            try:
                obj = json.loads(json_text)
            except ValueError:
                continue
            if isinstance(obj, dict):
                out.append(obj)
        return out

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
