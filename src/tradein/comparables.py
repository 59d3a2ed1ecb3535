from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import numpy as np

from tradein.config import MarketScanConfig
from tradein.data_models import MarketListing, VehicleDescriptor


@dataclass(frozen=True)
class PriceStats:
    lowest: float
    median: float
    highest: float


def normalize_price(price: float) -> float:
    """Portals sometimes report prices in thousands (e.g. ``28.5`` for €28 500)."""
    if 0 < price < 500:
        return float(round(price * 1000))
    return float(round(price))


def match_score(descriptor: VehicleDescriptor, build_year: int | None, mileage: int | None) -> int:
    year = build_year or descriptor.build_year
    km = mileage or descriptor.mileage or 0
    score = 100
    score -= abs(year - descriptor.build_year) * 5
    score -= abs(km - (descriptor.mileage or 0)) // 5000
    return int(max(0, min(100, score)))


def _mileage_tolerance(own_km: int, config: MarketScanConfig) -> float:
    # near-new cars still get a fixed band around their own mileage
    return max(own_km * config.primary_mileage_tolerance_pct, config.min_mileage_tolerance_km)


def is_primary_comparable(
    descriptor: VehicleDescriptor,
    build_year: int | None,
    mileage: int | None,
    config: MarketScanConfig = MarketScanConfig(),
) -> bool:
    own_km = descriptor.mileage or 0
    year_diff = abs((build_year or descriptor.build_year) - descriptor.build_year)
    km_diff = abs((mileage or own_km) - own_km)
    return year_diff <= config.primary_year_tolerance and km_diff <= _mileage_tolerance(own_km, config)


def deviation_reason(
    descriptor: VehicleDescriptor,
    build_year: int | None,
    mileage: int | None,
    config: MarketScanConfig = MarketScanConfig(),
) -> str | None:
    """Why a listing is not a like-for-like comparable, or None when it is."""
    own_km = descriptor.mileage or 0
    mileage_ceiling = own_km + _mileage_tolerance(own_km, config)
    if mileage and mileage > mileage_ceiling * config.deviation_mileage_factor:
        return f"Very high mileage ({mileage:,} km)"
    year = build_year or descriptor.build_year
    if abs(year - descriptor.build_year) > config.deviation_year_tolerance:
        return f"Build year deviates strongly ({year})"
    return None


def score_listing(
    descriptor: VehicleDescriptor,
    *,
    listing_id: str,
    portal: str,
    title: str,
    price: float,
    mileage: int | None,
    build_year: int | None,
    url: str = "",
    options: tuple[str, ...] = (),
    dealer: str = "",
    days_in_stock: int | None = None,
    config: MarketScanConfig = MarketScanConfig(),
) -> MarketListing:
    reason = deviation_reason(descriptor, build_year, mileage, config)
    return MarketListing(
        id=listing_id,
        portal=portal,
        title=title,
        price=normalize_price(price),
        mileage=int(mileage or 0),
        build_year=int(build_year or descriptor.build_year),
        url=url,
        options=options,
        match_score=match_score(descriptor, build_year, mileage),
        is_primary_comparable=is_primary_comparable(descriptor, build_year, mileage, config),
        is_logical_deviation=reason is not None,
        deviation_reason=reason,
        dealer=dealer,
        days_in_stock=days_in_stock,
    )


def price_stats(prices: Iterable[float]) -> PriceStats:
    """Lowest, upper median and highest over positive prices; zeros when empty."""
    arr = np.sort(np.asarray([p for p in prices if p > 0], dtype=float))
    if arr.size == 0:
        return PriceStats(0.0, 0.0, 0.0)
    return PriceStats(float(arr[0]), float(arr[arr.size // 2]), float(arr[-1]))


def summarize_deviations(
    listings: Iterable[MarketListing],
    stats: PriceStats,
    config: MarketScanConfig = MarketScanConfig(),
) -> tuple[str, ...]:
    listings = list(listings)
    notes = [
        f"Listing #{i}: {listing.deviation_reason}"
        for i, listing in enumerate(listings, start=1)
        if listing.is_logical_deviation and listing.deviation_reason
    ][: config.max_reported_deviations]

    primary = sum(1 for listing in listings if listing.is_primary_comparable)
    if primary < config.min_primary_comparables:
        notes.append(f"Comparable set too small ({primary} primary comparables)")
    if stats.lowest > 0 and stats.highest > stats.lowest * config.wide_spread_ratio:
        notes.append(
            f"Price spread wide: €{stats.lowest:,.0f} to €{stats.highest:,.0f}"
        )
    return tuple(notes)
