from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from tradein.errors import RecordSealedError


TAXATIE_TYPE_TRADE_IN = "trade_in"


class Transmission(str, Enum):
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"


class Liquidity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class TradeInClass(str, Enum):
    COURANT = "courant"
    GEMIDDELD = "gemiddeld"
    INCOURANT = "incourant"


class ValuationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class VehicleDescriptor:
    brand: str
    model: str
    build_year: int
    fuel_type: str
    mileage: int | None = None
    transmission: Transmission | None = None
    body_type: str = ""
    model_year: int | None = None
    power_hp: int | None = None
    color: str = ""
    trim: str = ""
    options: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    license_plate: str | None = None

    def with_updates(self, **changes: Any) -> VehicleDescriptor:
        return replace(self, **changes)


@dataclass(frozen=True)
class PriceRange:
    low: float = 0.0
    high: float = 0.0


@dataclass(frozen=True)
class SearchFilters:
    brand: str
    model: str
    build_year_from: int
    build_year_to: int
    mileage_max: int
    fuel_type: str
    transmission: str
    body_type: str = ""
    keywords: tuple[str, ...] = ()
    required_options: tuple[str, ...] = ()


@dataclass(frozen=True)
class WindowListing:
    """One comparable listing as returned in the pricing catalog window."""

    price: float
    mileage: int = 0
    build_year: int | None = None
    make: str = ""
    model: str = ""
    url: str = ""
    dealer: str = ""
    days_in_stock: int | None = None
    sold_since: int | None = None
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class SearchWindow:
    filters: SearchFilters | None = None
    portal_urls: dict[str, str] = field(default_factory=dict)
    listings: tuple[WindowListing, ...] = ()


@dataclass(frozen=True)
class CatalogValuation:
    base_value: float = 0.0
    option_value: float = 0.0
    total_value: float = 0.0
    price_range: PriceRange = field(default_factory=PriceRange)
    confidence: float = 0.0
    apr: float = 0.0
    etr: float = 0.0
    liquidity: Liquidity = Liquidity.UNKNOWN
    days_to_resale: int = 0
    stock_count: int = 0
    window: SearchWindow = field(default_factory=SearchWindow)
    available: bool = True
    note: str = ""


@dataclass(frozen=True)
class MarketListing:
    id: str
    portal: str
    title: str
    price: float
    mileage: int
    build_year: int
    url: str = ""
    options: tuple[str, ...] = ()
    match_score: int = 0
    is_primary_comparable: bool = False
    is_logical_deviation: bool = False
    deviation_reason: str | None = None
    dealer: str = ""
    days_in_stock: int | None = None


@dataclass(frozen=True)
class MarketAnalysis:
    lowest_price: float = 0.0
    median_price: float = 0.0
    highest_price: float = 0.0
    listing_count: int = 0
    primary_comparable_count: int = 0
    applied_filters: SearchFilters | None = None
    listings: tuple[MarketListing, ...] = ()
    deviations: tuple[str, ...] = ()
    data_source: str = "none"
    search_urls: dict[str, str] = field(default_factory=dict)
    available: bool = True


@dataclass(frozen=True)
class SimilarSale:
    id: str
    brand: str
    model: str
    build_year: int
    mileage: int
    purchase_price: float
    selling_price: float
    margin: float
    days_to_sell: int
    channel: str
    sold_at: str


@dataclass(frozen=True)
class InternalComparison:
    average_margin: float = 0.0
    average_days_to_sell: float = 0.0
    sold_last_year: int = 0
    sold_b2c: int = 0
    sold_b2b: int = 0
    average_days_to_sell_b2c: float | None = None
    similar_vehicles: tuple[SimilarSale, ...] = ()
    available: bool = True
    note: str = ""


@dataclass(frozen=True)
class Advice:
    proposed_price: float
    rationale: str
    risk_flags: tuple[str, ...] = ()
    market_floor_price: float = 0.0
    internal_max_price: float = 0.0
    calculated_margin: float = 0.0
    trade_in_class: TradeInClass = TradeInClass.GEMIDDELD
    margin_factor: float = 0.75
    customer_story: str = ""
    market_arguments: tuple[str, ...] = ()
    source: str = "rules"


_SEALED_STATUSES = (ValuationStatus.COMPLETED, ValuationStatus.FAILED)


@dataclass
class ValuationRecord:
    """A single trade-in valuation run.

    Filled stage by stage while ``in_progress``. Once completed or failed the
    record is sealed: any further assignment raises ``RecordSealedError``.
    """

    descriptor: VehicleDescriptor
    id: str = field(default_factory=lambda: str(uuid4()))
    taxatie_type: str = TAXATIE_TYPE_TRADE_IN
    status: ValuationStatus = ValuationStatus.IN_PROGRESS
    catalog: CatalogValuation | None = None
    market: MarketAnalysis | None = None
    internal: InternalComparison | None = None
    advice: Advice | None = None
    warnings: tuple[str, ...] = ()
    confidence: float = 0.0
    failure_reason: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("status") in _SEALED_STATUSES:
            raise RecordSealedError(f"valuation {self.id} is {self.status.value} and read-only")
        object.__setattr__(self, name, value)

    @property
    def is_sealed(self) -> bool:
        return self.status in _SEALED_STATUSES

    def add_warning(self, message: str) -> None:
        self.warnings = (*self.warnings, message)

    def complete(self, confidence: float) -> None:
        self.confidence = confidence
        self.completed_at = datetime.now(timezone.utc)
        self.status = ValuationStatus.COMPLETED

    def fail(self, reason: str) -> None:
        self.failure_reason = reason
        self.completed_at = datetime.now(timezone.utc)
        self.status = ValuationStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return payload


@dataclass(frozen=True)
class StageEvent:
    valuation_id: str
    stage: str
    degraded: bool = False
    snapshot: dict[str, Any] = field(default_factory=dict)
