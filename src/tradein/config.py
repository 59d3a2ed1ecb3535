from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class PricingPolicy:
    courant_factor: float = 0.82
    gemiddeld_factor: float = 0.75
    incourant_factor: float = 0.70
    courant_min_score: float = 4.0  # APR and ETR both at or above
    incourant_max_score: float = 2.5  # APR or ETR below
    min_margin_eur: float = 1500.0
    customer_uplift_pct: float = 0.08
    advertised_margin_pct: float = 0.10


@dataclass(frozen=True)
class MarketScanConfig:
    max_window_listings: int = 50
    max_returned_listings: int = 20
    max_reported_deviations: int = 5
    min_primary_comparables: int = 3
    primary_year_tolerance: int = 1
    primary_mileage_tolerance_pct: float = 0.15
    min_mileage_tolerance_km: int = 5_000
    deviation_year_tolerance: int = 2
    deviation_mileage_factor: float = 1.5
    wide_spread_ratio: float = 1.5
    build_year_range: int = 1
    mileage_round_km: int = 10_000
    mileage_buffer_km: int = 20_000


@dataclass(frozen=True)
class HistoryConfig:
    lookback_days: int = 365
    max_rows: int = 20
    max_similar: int = 10
    default_days_to_sell: int = 21
    max_days_to_sell: int = 365
    sold_statuses: tuple[str, ...] = ("sold_b2b", "sold_b2c", "delivered")


@dataclass(frozen=True)
class ConfidenceWeights:
    catalog: float = 0.4
    market: float = 0.4
    internal: float = 0.2
    market_saturation: int = 5
    internal_saturation: int = 5
    window_size_steps: Dict[int, float] = field(
        default_factory=lambda: {20: 0.95, 10: 0.85, 5: 0.75, 2: 0.60}
    )
    window_size_floor: float = 0.40
