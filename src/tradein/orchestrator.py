from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from tradein.config import ConfidenceWeights, MarketScanConfig
from tradein.data_models import (
    Advice,
    CatalogValuation,
    InternalComparison,
    MarketAnalysis,
    SearchWindow,
    StageEvent,
    ValuationRecord,
    VehicleDescriptor,
)
from tradein.descriptors import build_search_filters
from tradein.errors import PersistenceError, SourceUnavailableError, SynthesisError
from tradein.fallbacks import (
    CATALOG_FALLBACK,
    CATALOG_WARNING,
    INTERNAL_FALLBACK,
    INTERNAL_WARNING,
    MARKET_FALLBACK,
    MARKET_WARNING,
)
from tradein.scoring import score_confidence
from tradein.validation import validate_descriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Collaborator contracts ──────────────────────────────────────────

class CatalogProvider(Protocol):
    async def evaluate(self, descriptor: VehicleDescriptor) -> CatalogValuation: ...


class MarketScanner(Protocol):
    async def scan(self, descriptor: VehicleDescriptor, window: SearchWindow) -> MarketAnalysis: ...


class HistoryMatcher(Protocol):
    async def match(self, descriptor: VehicleDescriptor) -> InternalComparison: ...


class AdviceSynthesizer(Protocol):
    async def synthesize(
        self,
        descriptor: VehicleDescriptor,
        catalog: CatalogValuation,
        market: MarketAnalysis,
        internal: InternalComparison,
    ) -> Advice: ...


class ValuationStore(Protocol):
    async def insert(self, record: ValuationRecord) -> str: ...


StageListener = Callable[[StageEvent], Any]


@dataclass(frozen=True)
class StageTimeouts:
    catalog: float = 10.0
    market: float = 20.0
    history: float = 5.0
    advice: float = 45.0
    store: float = 5.0


# ── Orchestrator ────────────────────────────────────────────────────

class ValuationOrchestrator:
    """Runs one trade-in valuation as a small task graph.

    Catalog and internal history are fetched concurrently and joined; the
    market scan follows the catalog result; advice follows the market scan.
    Data sources degrade to their fallback values, synthesis does not.
    """

    def __init__(
        self,
        catalog: CatalogProvider,
        market: MarketScanner,
        history: HistoryMatcher,
        advisor: AdviceSynthesizer,
        store: ValuationStore,
        *,
        timeouts: StageTimeouts | None = None,
        weights: ConfidenceWeights | None = None,
        scan_config: MarketScanConfig | None = None,
        listener: StageListener | None = None,
    ) -> None:
        self.catalog = catalog
        self.market = market
        self.history = history
        self.advisor = advisor
        self.store = store
        self.timeouts = timeouts or StageTimeouts()
        self.weights = weights or ConfidenceWeights()
        self.scan_config = scan_config or MarketScanConfig()
        self.listener = listener

    async def run_valuation(self, descriptor: VehicleDescriptor) -> ValuationRecord:
        validate_descriptor(descriptor)

        record = ValuationRecord(descriptor=descriptor)
        logger.info(
            "Valuation %s started",
            record.id,
            extra={"valuation_id": record.id, "extra_data": {"brand": descriptor.brand, "model": descriptor.model}},
        )
        await self._emit(record, "started")

        (catalog, catalog_degraded), (internal, internal_degraded) = await asyncio.gather(
            self._guarded(
                record, "catalog", lambda: self.catalog.evaluate(descriptor),
                self.timeouts.catalog, CATALOG_FALLBACK, CATALOG_WARNING,
            ),
            self._guarded(
                record, "internal_history", lambda: self.history.match(descriptor),
                self.timeouts.history, INTERNAL_FALLBACK, INTERNAL_WARNING,
            ),
        )
        record.catalog = catalog
        record.internal = internal
        await self._emit(record, "catalog", catalog_degraded)
        await self._emit(record, "internal_history", internal_degraded)

        window = self._market_window(descriptor, catalog)
        market, market_degraded = await self._guarded(
            record, "market", lambda: self.market.scan(descriptor, window),
            self.timeouts.market, MARKET_FALLBACK, MARKET_WARNING,
        )
        record.market = market
        await self._emit(record, "market", market_degraded)

        try:
            advice = await asyncio.wait_for(
                self.advisor.synthesize(descriptor, catalog, market, internal),
                self.timeouts.advice,
            )
        except asyncio.TimeoutError as exc:
            await self._fail(record, f"advice synthesis timed out after {self.timeouts.advice}s", exc)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, SynthesisError) else str(exc) or type(exc).__name__
            await self._fail(record, reason, exc)

        record.advice = self._flag_degraded(advice, record.warnings)
        await self._emit(record, "advice")

        record.complete(score_confidence(catalog, market, internal, self.weights))
        logger.info(
            "Valuation %s completed",
            record.id,
            extra={"valuation_id": record.id, "extra_data": {
                "proposed_price": record.advice.proposed_price,
                "confidence": record.confidence,
                "warnings": list(record.warnings),
            }},
        )
        await self._emit(record, "completed")
        await self._persist(record)
        return record

    async def _guarded(
        self,
        record: ValuationRecord,
        source: str,
        call: Callable[[], Awaitable[T]],
        timeout: float,
        fallback: T,
        warning: str,
    ) -> tuple[T, bool]:
        try:
            return await asyncio.wait_for(call(), timeout), False
        except asyncio.TimeoutError:
            err = SourceUnavailableError(source, f"timed out after {timeout}s")
        except Exception as exc:
            err = SourceUnavailableError(source, str(exc) or type(exc).__name__)
        logger.warning("Valuation %s: %s, using fallback", record.id, err, extra={"valuation_id": record.id})
        record.add_warning(warning)
        return fallback, True

    def _market_window(self, descriptor: VehicleDescriptor, catalog: CatalogValuation) -> SearchWindow:
        if catalog.window.filters is not None:
            return catalog.window
        return replace(catalog.window, filters=build_search_filters(descriptor, self.scan_config))

    @staticmethod
    def _flag_degraded(advice: Advice, warnings: tuple[str, ...]) -> Advice:
        missing = tuple(w for w in warnings if w not in advice.risk_flags)
        if not missing:
            return advice
        return replace(advice, risk_flags=advice.risk_flags + missing)

    async def _fail(self, record: ValuationRecord, reason: str, cause: BaseException) -> None:
        record.fail(reason)
        logger.error("Valuation %s failed: %s", record.id, reason, extra={"valuation_id": record.id})
        await self._emit(record, "failed")
        raise SynthesisError(reason, record) from cause

    async def _persist(self, record: ValuationRecord) -> None:
        try:
            await asyncio.wait_for(self.store.insert(record), self.timeouts.store)
        except Exception as exc:
            logger.error(
                "%s", PersistenceError(record.id, str(exc) or type(exc).__name__),
                extra={"valuation_id": record.id},
            )

    async def _emit(self, record: ValuationRecord, stage: str, degraded: bool = False) -> None:
        if self.listener is None:
            return
        event = StageEvent(valuation_id=record.id, stage=stage, degraded=degraded, snapshot=record.to_dict())
        try:
            result = self.listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Stage listener failed for %s/%s: %s", record.id, stage, exc)
