from __future__ import annotations

from dataclasses import dataclass

from tradein.config import ConfidenceWeights, PricingPolicy
from tradein.data_models import (
    CatalogValuation,
    InternalComparison,
    Liquidity,
    MarketAnalysis,
    TradeInClass,
)


# ── Catalog-derived indicators ──────────────────────────────────────

def window_confidence(window_size: int, weights: ConfidenceWeights = ConfidenceWeights()) -> float:
    """More comparable vehicles in the catalog window means a firmer valuation."""
    for threshold, value in sorted(weights.window_size_steps.items(), reverse=True):
        if window_size >= threshold:
            return value
    return weights.window_size_floor


def classify_liquidity(apr: float) -> Liquidity:
    if apr <= 0:
        return Liquidity.UNKNOWN
    if apr >= 4:
        return Liquidity.HIGH
    if apr >= 2.5:
        return Liquidity.MEDIUM
    return Liquidity.LOW


def estimate_days_to_resale(turnover_ext: float, turnover_int: float, apr: float) -> int:
    # turnover stats are monthly rates
    avg_turnover = (turnover_ext + turnover_int) / 2
    if avg_turnover > 0:
        return round(30 / avg_turnover)
    if apr >= 4:
        return 15
    if apr >= 3:
        return 22
    if apr >= 2:
        return 30
    return 45


# ── Trade-in pricing ────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeInPricing:
    market_floor_price: float
    trade_in_class: TradeInClass
    margin_factor: float
    internal_max_price: float
    calculated_margin: float
    customer_offer_price: float


def classify_trade_in(apr: float, etr: float, policy: PricingPolicy = PricingPolicy()) -> tuple[TradeInClass, float]:
    if apr >= policy.courant_min_score and etr >= policy.courant_min_score:
        return TradeInClass.COURANT, policy.courant_factor
    if apr < policy.incourant_max_score or etr < policy.incourant_max_score:
        return TradeInClass.INCOURANT, policy.incourant_factor
    return TradeInClass.GEMIDDELD, policy.gemiddeld_factor


def market_floor(catalog: CatalogValuation, market: MarketAnalysis) -> float:
    """Lowest serious market price; the catalog value when no listings were found."""
    if market.lowest_price > 0:
        return market.lowest_price
    return catalog.total_value


def price_trade_in(
    catalog: CatalogValuation,
    market: MarketAnalysis,
    policy: PricingPolicy = PricingPolicy(),
) -> TradeInPricing:
    floor = market_floor(catalog, market)
    trade_in_class, factor = classify_trade_in(catalog.apr, catalog.etr, policy)

    internal_max = round(floor * factor)
    if floor - internal_max < policy.min_margin_eur and floor > policy.min_margin_eur:
        internal_max = floor - policy.min_margin_eur

    return TradeInPricing(
        market_floor_price=floor,
        trade_in_class=trade_in_class,
        margin_factor=factor,
        internal_max_price=internal_max,
        calculated_margin=floor - internal_max,
        customer_offer_price=round(internal_max + floor * policy.customer_uplift_pct),
    )


# ── Composite confidence ────────────────────────────────────────────

def score_confidence(
    catalog: CatalogValuation,
    market: MarketAnalysis,
    internal: InternalComparison,
    weights: ConfidenceWeights = ConfidenceWeights(),
) -> float:
    catalog_part = catalog.confidence if catalog.available else 0.0
    market_part = (
        min(market.primary_comparable_count / weights.market_saturation, 1.0) if market.available else 0.0
    )
    internal_part = (
        min(internal.sold_last_year / weights.internal_saturation, 1.0) if internal.available else 0.0
    )
    score = weights.catalog * catalog_part + weights.market * market_part + weights.internal * internal_part
    return round(max(0.0, min(1.0, score)), 4)
