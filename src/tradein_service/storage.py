from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

import pandas as pd
import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tradein.config import HistoryConfig
from tradein.data_models import ValuationRecord

logger = logging.getLogger(__name__)


metadata = MetaData()

valuations_table = Table(
    "valuations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("taxatie_type", String(32), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("brand", String(64), nullable=False),
    Column("model", String(64), nullable=False),
    Column("build_year", Integer, nullable=False),
    Column("mileage", Integer, nullable=True),
    Column("license_plate", String(16), nullable=True, index=True),
    Column("proposed_price", Float, nullable=True),
    Column("confidence", Float, nullable=False),
    Column("warnings_json", JSON, nullable=False, default=list),
    Column("record_json", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

sold_vehicles_table = Table(
    "sold_vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("brand", String(64), nullable=False, index=True),
    Column("model", String(64), nullable=False),
    Column("build_year", Integer, nullable=True),
    Column("mileage", Integer, nullable=True),
    Column("purchase_price", Float, nullable=True),
    Column("selling_price", Float, nullable=True),
    Column("status", String(32), nullable=False),
    Column("purchase_date", DateTime(timezone=True), nullable=True),
    Column("sold_date", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

valuation_feedback_table = Table(
    "valuation_feedback",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("valuation_id", String(36), nullable=False, index=True),
    Column("rating", Integer, nullable=True),
    Column("was_accurate", Boolean, nullable=True),
    Column("actual_price", Float, nullable=True),
    Column("notes", String(2000), nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

SOLD_VEHICLE_COLUMNS = [
    "id", "brand", "model", "build_year", "mileage", "purchase_price",
    "selling_price", "status", "purchase_date", "sold_date",
]


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "tradein") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception as exc:
            logger.warning("Redis unreachable at %s, using in-memory cache: %s", self.redis_url, exc)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception as exc:
                logger.warning("Redis get failed for %s: %s", full_key, exc)
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception as exc:
                logger.warning("Redis set failed for %s, keeping value in memory: %s", full_key, exc)
        self._mem[full_key] = payload
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds


class PostgresStore:
    """Valuation audit log, dealer sales history and feedback.

    Falls back to in-process lists when the database cannot be reached, so
    the service keeps answering in development and tests.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_valuations: list[dict[str, Any]] = []
        self._mem_sold_vehicles: list[dict[str, Any]] = []
        self._mem_feedback: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Database unreachable, using in-memory store: %s", exc)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Valuations ──────────────────────────────────────────────────

    async def insert(self, record: ValuationRecord) -> str:
        descriptor = record.descriptor
        row = {
            "id": record.id,
            "taxatie_type": record.taxatie_type,
            "status": record.status.value,
            "brand": descriptor.brand,
            "model": descriptor.model,
            "build_year": descriptor.build_year,
            "mileage": descriptor.mileage,
            "license_plate": descriptor.license_plate,
            "proposed_price": record.advice.proposed_price if record.advice else None,
            "confidence": float(record.confidence),
            "warnings_json": list(record.warnings),
            "record_json": json.loads(json.dumps(record.to_dict(), default=str)),
            "created_at": record.created_at,
            "completed_at": record.completed_at,
        }
        if self.engine is None:
            self._mem_valuations.append(row)
            return record.id
        async with self.engine.begin() as conn:
            await conn.execute(insert(valuations_table).values(**row))
        return record.id

    async def get_valuation_by_id(self, valuation_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            for row in self._mem_valuations:
                if row["id"] == valuation_id:
                    return row
            return None
        stmt = select(valuations_table).where(valuations_table.c.id == valuation_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def get_recent_valuations(self, limit: int = 50, taxatie_type: str | None = None) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [r for r in self._mem_valuations if taxatie_type is None or r["taxatie_type"] == taxatie_type]
            return list(reversed(rows[-limit:]))
        stmt = select(valuations_table).order_by(valuations_table.c.created_at.desc()).limit(limit)
        if taxatie_type is not None:
            stmt = stmt.where(valuations_table.c.taxatie_type == taxatie_type)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Sales history ───────────────────────────────────────────────

    async def insert_sold_vehicle(
        self,
        *,
        brand: str,
        model: str,
        status: str,
        build_year: int | None = None,
        mileage: int | None = None,
        purchase_price: float | None = None,
        selling_price: float | None = None,
        purchase_date: datetime | None = None,
        sold_date: datetime | None = None,
    ) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "brand": brand,
            "model": model,
            "build_year": build_year,
            "mileage": mileage,
            "purchase_price": purchase_price,
            "selling_price": selling_price,
            "status": status,
            "purchase_date": purchase_date,
            "sold_date": sold_date,
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_sold_vehicles.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(sold_vehicles_table).values(**row))
        return row_id

    async def fetch_sold_vehicles(
        self,
        brand: str,
        since: datetime,
        limit: int = 20,
        statuses: Iterable[str] = HistoryConfig().sold_statuses,
    ) -> pd.DataFrame:
        statuses = list(statuses)
        if self.engine is None:
            wanted = brand.lower()
            rows = [
                {k: r[k] for k in SOLD_VEHICLE_COLUMNS}
                for r in self._mem_sold_vehicles
                if r["brand"].lower() == wanted
                and r["status"] in statuses
                and r["sold_date"] is not None and r["sold_date"] >= since
                and r["purchase_price"] is not None and r["selling_price"] is not None
            ]
            rows.sort(key=lambda r: r["sold_date"], reverse=True)
            return pd.DataFrame(rows[:limit], columns=SOLD_VEHICLE_COLUMNS)

        t = sold_vehicles_table
        stmt = (
            select(*(t.c[name] for name in SOLD_VEHICLE_COLUMNS))
            .where(func.lower(t.c.brand) == brand.lower())
            .where(t.c.status.in_(statuses))
            .where(t.c.sold_date >= since)
            .where(t.c.purchase_price.is_not(None))
            .where(t.c.selling_price.is_not(None))
            .order_by(t.c.sold_date.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            result = (await conn.execute(stmt)).all()
        return pd.DataFrame([dict(r._mapping) for r in result], columns=SOLD_VEHICLE_COLUMNS)

    # ── Feedback ────────────────────────────────────────────────────

    async def insert_feedback(
        self,
        *,
        valuation_id: str,
        rating: int | None = None,
        was_accurate: bool | None = None,
        actual_price: float | None = None,
        notes: str = "",
    ) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "valuation_id": valuation_id,
            "rating": rating,
            "was_accurate": was_accurate,
            "actual_price": actual_price,
            "notes": notes,
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_feedback.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(valuation_feedback_table).values(**row))
        return row_id
