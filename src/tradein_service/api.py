from __future__ import annotations

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from tradein.data_models import TAXATIE_TYPE_TRADE_IN, VehicleDescriptor
from tradein.descriptors import from_manual_entry
from tradein.errors import SourceUnavailableError, SynthesisError, ValidationError
from tradein.orchestrator import (
    AdviceSynthesizer,
    CatalogProvider,
    HistoryMatcher,
    MarketScanner,
    StageTimeouts,
    ValuationOrchestrator,
)
from tradein_service.advice import OpenAIAdviceSynthesizer, RuleBasedAdviceSynthesizer
from tradein_service.catalog import JPCarsCatalogClient
from tradein_service.history import InternalHistoryMatcher
from tradein_service.logging_config import configure_logging, new_correlation_id
from tradein_service.market import MarketListingAnalyzer, PortalSearchClient
from tradein_service.messaging import VALUATION_REQUESTS_TOPIC, VALUATION_RESULTS_TOPIC, KafkaBus
from tradein_service.registration import RDWRegistrationLookup
from tradein_service.settings import ServiceSettings
from tradein_service.storage import PostgresStore, RedisCache


# ── Request / Response Models ───────────────────────────────────────

class PlateLookupRequest(BaseModel):
    license_plate: str = Field(min_length=1, max_length=16)


class TradeInRequest(BaseModel):
    license_plate: str | None = None
    brand: str | None = None
    model: str | None = None
    build_year: int | None = None
    model_year: int | None = None
    mileage: int | None = None
    fuel_type: str | None = None
    transmission: str | None = None
    body_type: str | None = None
    power_hp: int | None = None
    power_kw: int | None = None
    color: str | None = None
    trim: str | None = None
    options: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class FeedbackRequest(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    was_accurate: bool | None = None
    actual_price: float | None = Field(default=None, gt=0)
    notes: str = Field(default="", max_length=2000)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Prometheus-style Metrics ────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text() -> str:
    lines: list[str] = []
    for k, v in sorted(_prom_counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE tradein_{safe} counter")
        lines.append(f"tradein_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE tradein_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.95, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'tradein_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"tradein_{safe}_seconds_count {n}")
        lines.append(f"tradein_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


def _isoformat_values(row: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if hasattr(v, "isoformat") else v for k, v in row.items()}


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    settings: ServiceSettings | None = None,
    *,
    catalog: CatalogProvider | None = None,
    market: MarketScanner | None = None,
    history: HistoryMatcher | None = None,
    advisor: AdviceSynthesizer | None = None,
    registration: RDWRegistrationLookup | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
        fallback_queue_size=settings.kafka_fallback_queue_size,
    )

    registration = registration or RDWRegistrationLookup(
        cache=cache,
        base_url=settings.rdw_base_url,
        ttl_seconds=settings.plate_cache_ttl_seconds,
        app_token=settings.rdw_app_token,
    )
    catalog = catalog or JPCarsCatalogClient(
        api_token=settings.jpcars_api_token,
        base_url=settings.jpcars_base_url,
        timeout=settings.catalog_timeout_seconds,
    )
    market = market or MarketListingAnalyzer(
        PortalSearchClient(
            base_url=settings.portal_search_url,
            user_agent=settings.portal_user_agent,
            timeout=settings.market_timeout_seconds,
        )
    )
    history = history or InternalHistoryMatcher(store)
    if advisor is None:
        if settings.advice_provider == "openai":
            advisor = OpenAIAdviceSynthesizer(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                model=settings.openai_model,
                timeout=settings.advice_timeout_seconds,
            )
        else:
            advisor = RuleBasedAdviceSynthesizer()

    orchestrator = ValuationOrchestrator(
        catalog, market, history, advisor, store,
        timeouts=StageTimeouts(
            catalog=settings.catalog_timeout_seconds,
            market=settings.market_timeout_seconds,
            history=settings.history_timeout_seconds,
            advice=settings.advice_timeout_seconds,
            store=settings.store_timeout_seconds,
        ),
        listener=kafka.publish_stage_event,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Trade-In Valuation API", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.kafka = kafka
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = new_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    async def _lookup(plate: str) -> VehicleDescriptor:
        try:
            descriptor = await registration.lookup(plate)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail={"message": str(exc), "fields": list(exc.fields)})
        except SourceUnavailableError as exc:
            _prom_counters["registration_unavailable"] += 1
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        if descriptor is None:
            raise HTTPException(status_code=404, detail=f"No registration found for {plate}")
        return descriptor

    # ── Registration ────────────────────────────────────────────────

    @app.post("/registration/lookup")
    async def lookup_registration(payload: PlateLookupRequest) -> dict[str, Any]:
        descriptor = await _lookup(payload.license_plate)
        return {"descriptor": asdict(descriptor), "missing": ["mileage", "transmission"]}

    # ── Trade-in Valuation ──────────────────────────────────────────

    @app.post("/valuations/trade-in")
    async def trade_in_valuation(payload: TradeInRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        entry = payload.model_dump(exclude_none=True)
        if payload.license_plate and not (payload.brand and payload.model and payload.build_year):
            registered = asdict(await _lookup(payload.license_plate))
            for key in ("brand", "model", "build_year", "fuel_type", "body_type", "power_hp", "color"):
                if not entry.get(key) and registered.get(key):
                    entry[key] = registered[key]

        try:
            descriptor = from_manual_entry(entry)
            await kafka.publish(VALUATION_REQUESTS_TOPIC, asdict(descriptor), key=descriptor.license_plate)
            record = await orchestrator.run_valuation(descriptor)
        except ValidationError as exc:
            _prom_counters["valuation_rejected"] += 1
            raise HTTPException(status_code=422, detail={"message": str(exc), "fields": list(exc.fields)})
        except SynthesisError as exc:
            _prom_counters["valuation_failed"] += 1
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "message": "advice synthesis failed",
                    "reason": exc.reason,
                    "valuation_id": exc.record.id if exc.record else None,
                },
            )

        result = record.to_dict()
        await kafka.publish(VALUATION_RESULTS_TOPIC, result, key=record.id)

        _record_latency("trade_in", time.monotonic() - t0)
        _prom_counters["valuation_completed"] += 1
        if record.warnings:
            _prom_counters["valuation_degraded"] += 1
        return result

    @app.get("/valuations/recent")
    async def get_recent_valuations(limit: int = 20) -> dict[str, Any]:
        rows = await store.get_recent_valuations(limit=min(limit, 100), taxatie_type=TAXATIE_TYPE_TRADE_IN)
        sanitized = [_isoformat_values({k: v for k, v in r.items() if k != "record_json"}) for r in rows]
        return {"count": len(sanitized), "valuations": sanitized}

    @app.get("/valuations/{valuation_id}")
    async def get_valuation(valuation_id: str) -> dict[str, Any]:
        row = await store.get_valuation_by_id(valuation_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Valuation not found")
        return row["record_json"]

    # ── Feedback ────────────────────────────────────────────────────

    @app.post("/valuations/{valuation_id}/feedback")
    async def submit_feedback(valuation_id: str, req: FeedbackRequest) -> dict[str, Any]:
        if await store.get_valuation_by_id(valuation_id) is None:
            raise HTTPException(status_code=404, detail="Valuation not found")
        fb_id = await store.insert_feedback(
            valuation_id=valuation_id,
            rating=req.rating,
            was_accurate=req.was_accurate,
            actual_price=req.actual_price,
            notes=req.notes,
        )
        return {"feedback_id": fb_id, "valuation_id": valuation_id, "status": "recorded"}

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("trade_in", []))
        return {
            "counters": dict(_prom_counters),
            "trade_in_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
