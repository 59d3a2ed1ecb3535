from __future__ import annotations

import math
import re
from typing import Any, Iterable, Mapping

from tradein.config import MarketScanConfig
from tradein.data_models import SearchFilters, Transmission, VehicleDescriptor
from tradein.errors import ValidationError


KW_TO_HP = 1.36

_TRANSMISSION_LABELS = {
    "automatic": Transmission.AUTOMATIC,
    "automaat": Transmission.AUTOMATIC,
    "automatic_gear": Transmission.AUTOMATIC,
    "auto": Transmission.AUTOMATIC,
    "manual": Transmission.MANUAL,
    "handgeschakeld": Transmission.MANUAL,
    "manual_gear": Transmission.MANUAL,
    "handmatig": Transmission.MANUAL,
}
_UNKNOWN_LABELS = {"", "onbekend", "unknown", "n.v.t."}

_FUEL_LABELS = {
    "benzine": "Petrol",
    "petrol": "Petrol",
    "gasoline": "Petrol",
    "diesel": "Diesel",
    "elektriciteit": "Electric",
    "elektrisch": "Electric",
    "electric": "Electric",
    "hybride": "Hybrid",
    "hybrid": "Hybrid",
    "plug-in hybride": "Plug-in Hybrid",
    "plug-in hybrid": "Plug-in Hybrid",
    "lpg": "LPG",
    "cng": "CNG",
    "waterstof": "Hydrogen",
    "hydrogen": "Hydrogen",
}

_BRAND_LABELS = {
    "VOLKSWAGEN": "Volkswagen",
    "MERCEDES-BENZ": "Mercedes-Benz",
    "BMW": "BMW",
    "AUDI": "Audi",
    "CITROEN": "Citroën",
    "CITROËN": "Citroën",
    "SKODA": "Škoda",
    "ŠKODA": "Škoda",
    "MINI": "Mini",
    "LAND ROVER": "Land Rover",
    "ALFA ROMEO": "Alfa Romeo",
    "KIA": "Kia",
    "DS": "DS",
    "MG": "MG",
}

_BODY_LABELS = {
    "sedan": "Sedan",
    "hatchback": "Hatchback",
    "stationwagen": "Station Wagon",
    "station wagon": "Station Wagon",
    "suv": "SUV",
    "terreinwagen": "SUV",
    "cabriolet": "Convertible",
    "cabrio": "Convertible",
    "coupé": "Coupe",
    "coupe": "Coupe",
    "mpv": "MPV",
    "monovolume": "MPV",
    "pick-up": "Pick-up",
    "open opbouw": "Pick-up",
    "gesloten opbouw": "Van",
    "bestelwagen": "Van",
    "personenauto": "",
}

_COLOR_LABELS = {
    "GRIJS": "Grey",
    "ZWART": "Black",
    "WIT": "White",
    "BLAUW": "Blue",
    "ROOD": "Red",
    "ZILVER": "Silver",
    "GROEN": "Green",
    "BRUIN": "Brown",
    "BEIGE": "Beige",
    "ORANJE": "Orange",
    "GEEL": "Yellow",
    "PAARS": "Purple",
    "ROZE": "Pink",
    "GOUD": "Gold",
    "DIVERSEN": "Other",
    "N.V.T.": "",
}

_PLATE_STRIP = re.compile(r"[-\s]")


def normalize_plate(plate: str) -> str:
    return _PLATE_STRIP.sub("", plate or "").upper()


def is_valid_dutch_plate(plate: str) -> bool:
    """Six characters with at least one letter and one digit, e.g. ``AB-123-C``."""
    cleaned = normalize_plate(plate)
    if len(cleaned) != 6 or not cleaned.isalnum():
        return False
    return any(c.isalpha() for c in cleaned) and any(c.isdigit() for c in cleaned)


def parse_transmission(value: Any) -> Transmission | None:
    if value is None:
        return None
    if isinstance(value, Transmission):
        return value
    label = str(value).strip().lower()
    if label in _UNKNOWN_LABELS:
        return None
    try:
        return _TRANSMISSION_LABELS[label]
    except KeyError:
        raise ValidationError(f"unsupported transmission: {value!r}", ("transmission",)) from None


def normalize_fuel(value: str) -> str:
    label = (value or "").strip()
    return _FUEL_LABELS.get(label.lower(), label)


def normalize_brand(value: str) -> str:
    label = (value or "").strip()
    upper = label.upper()
    if upper in _BRAND_LABELS:
        return _BRAND_LABELS[upper]
    return label[:1].upper() + label[1:].lower() if label.isupper() else label


def normalize_body_type(value: str) -> str:
    label = (value or "").strip()
    return _BODY_LABELS.get(label.lower(), label)


def normalize_color(value: str) -> str:
    label = (value or "").strip()
    return _COLOR_LABELS.get(label.upper(), label.title())


def kw_to_hp(kw: float) -> int:
    return round(kw * KW_TO_HP)


def _as_int(payload: Mapping[str, Any], key: str) -> int | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {raw!r}", (key,)) from None


def _as_terms(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    items: Iterable[Any] = raw.split(",") if isinstance(raw, str) else raw
    seen: dict[str, None] = {}
    for item in items:
        term = str(item).strip()
        if term:
            seen.setdefault(term, None)
    return tuple(seen)


def from_manual_entry(payload: Mapping[str, Any]) -> VehicleDescriptor:
    """Build a descriptor from hand-entered attributes.

    Accepts Dutch or English labels for fuel, gearbox and body type. Missing
    mileage or transmission are left unset; the orchestrator rejects such a
    descriptor before any provider is called.
    """
    power_hp = _as_int(payload, "power_hp")
    power_kw = _as_int(payload, "power_kw")
    if power_hp is None and power_kw:
        power_hp = kw_to_hp(power_kw)

    plate = payload.get("license_plate")
    return VehicleDescriptor(
        brand=normalize_brand(str(payload.get("brand") or "")),
        model=str(payload.get("model") or "").strip(),
        build_year=_as_int(payload, "build_year") or 0,
        model_year=_as_int(payload, "model_year"),
        mileage=_as_int(payload, "mileage"),
        fuel_type=normalize_fuel(str(payload.get("fuel_type") or "")),
        transmission=parse_transmission(payload.get("transmission")),
        body_type=normalize_body_type(str(payload.get("body_type") or "")),
        power_hp=power_hp,
        color=normalize_color(str(payload.get("color") or "")),
        trim=str(payload.get("trim") or "").strip(),
        options=_as_terms(payload.get("options")),
        keywords=_as_terms(payload.get("keywords")),
        license_plate=normalize_plate(plate) if plate else None,
    )


def calculate_max_mileage(mileage: int, config: MarketScanConfig = MarketScanConfig()) -> int:
    """Round up to the next 10 000 km and add 20 000 km (45 000 → 70 000)."""
    rounded = math.ceil(mileage / config.mileage_round_km) * config.mileage_round_km
    return rounded + config.mileage_buffer_km


def build_search_filters(
    descriptor: VehicleDescriptor,
    config: MarketScanConfig = MarketScanConfig(),
) -> SearchFilters:
    transmission = descriptor.transmission.value if descriptor.transmission else "Both"
    return SearchFilters(
        brand=descriptor.brand,
        model=descriptor.model,
        build_year_from=descriptor.build_year - config.build_year_range,
        build_year_to=descriptor.build_year + config.build_year_range,
        mileage_max=calculate_max_mileage(descriptor.mileage or 0, config),
        fuel_type=descriptor.fuel_type,
        transmission=transmission,
        body_type=descriptor.body_type,
        keywords=descriptor.keywords,
        required_options=descriptor.options,
    )
