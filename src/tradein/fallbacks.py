"""Canonical substitutes for data sources that fail or time out.

Each constant is the single value the orchestrator puts in place of a failed
source. Numeric fields are zero and ``available`` is False, so downstream
stages test one flag instead of inspecting every field.
"""

from __future__ import annotations

from tradein.data_models import CatalogValuation, InternalComparison, MarketAnalysis


CATALOG_WARNING = "JP Cars data unavailable"
MARKET_WARNING = "Market scan failed"
INTERNAL_WARNING = "Internal sales history unavailable"

CATALOG_FALLBACK = CatalogValuation(available=False, note=CATALOG_WARNING)

MARKET_FALLBACK = MarketAnalysis(
    deviations=(MARKET_WARNING,),
    data_source="none",
    available=False,
)

INTERNAL_FALLBACK = InternalComparison(available=False, note=INTERNAL_WARNING)
