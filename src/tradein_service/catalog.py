from __future__ import annotations

import logging
from typing import Any

import httpx

from tradein.config import MarketScanConfig
from tradein.data_models import (
    CatalogValuation,
    PriceRange,
    SearchWindow,
    Transmission,
    VehicleDescriptor,
    WindowListing,
)
from tradein.descriptors import build_search_filters
from tradein.errors import SourceUnavailableError
from tradein.scoring import classify_liquidity, estimate_days_to_resale, window_confidence

logger = logging.getLogger(__name__)


_FUEL_CODES = {
    "Petrol": "PETROL",
    "Diesel": "DIESEL",
    "Electric": "ELECTRIC",
    "Hybrid": "HYBRID",
    "Plug-in Hybrid": "PLUGIN_HYBRID",
    "LPG": "LPG",
    "CNG": "CNG",
}

_GEAR_CODES = {
    Transmission.AUTOMATIC: "AUTOMATIC_GEAR",
    Transmission.MANUAL: "MANUAL_GEAR",
}


class JPCarsCatalogClient:
    """Async client for the JP Cars valuation API (``POST /api/valuate``)."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.nl.jp.cars",
        timeout: float = 10.0,
        scan_config: MarketScanConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.scan_config = scan_config or MarketScanConfig()
        self._transport = transport
        self._enabled = bool(api_token)

    def build_request(self, descriptor: VehicleDescriptor) -> dict[str, Any]:
        body: dict[str, Any] = {"mileage": descriptor.mileage or 0}
        if descriptor.license_plate:
            body["license_plate"] = descriptor.license_plate
        else:
            body["make"] = descriptor.brand.upper()
            body["model"] = descriptor.model.upper()
            if descriptor.body_type:
                body["body"] = descriptor.body_type
            if descriptor.fuel_type:
                body["fuel"] = _FUEL_CODES.get(descriptor.fuel_type, descriptor.fuel_type.upper())
            if descriptor.transmission:
                body["gear"] = _GEAR_CODES[descriptor.transmission]
            if descriptor.build_year:
                body["build"] = descriptor.build_year
            if descriptor.power_hp:
                body["hp"] = descriptor.power_hp
        if descriptor.options:
            body["options"] = ",".join(descriptor.options)
        return body

    async def evaluate(self, descriptor: VehicleDescriptor) -> CatalogValuation:
        if not self._enabled:
            raise SourceUnavailableError("catalog", "JPCARS_API_TOKEN is not configured")

        url = f"{self.base_url}/api/valuate"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    json=self.build_request(descriptor),
                    headers={"Authorization": f"Bearer {self.api_token}", "Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("JP Cars request failed for %s %s: %s", descriptor.brand, descriptor.model, exc)
            raise SourceUnavailableError("catalog", str(exc) or type(exc).__name__) from exc

        if resp.status_code == 401:
            raise SourceUnavailableError("catalog", "authentication failed, check the API token")
        if resp.status_code == 422:
            raise SourceUnavailableError("catalog", f"vehicle data rejected: {resp.text[:200]}")
        if resp.is_error:
            logger.warning("JP Cars returned HTTP %s", resp.status_code)
            raise SourceUnavailableError("catalog", f"HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning("JP Cars returned a non-JSON body: %s", resp.text[:200])
            raise SourceUnavailableError("catalog", "response is not JSON") from exc
        if not isinstance(data, dict):
            raise SourceUnavailableError("catalog", f"unexpected response shape: {type(data).__name__}")
        if data.get("error"):
            raise SourceUnavailableError("catalog", data.get("error_message") or str(data["error"]))

        valuation = self._map_response(descriptor, data)
        logger.info(
            "JP Cars valuation %s %s: %.0f (window %d)",
            descriptor.brand, descriptor.model, valuation.total_value, valuation.stock_count,
        )
        return valuation

    def _map_response(self, descriptor: VehicleDescriptor, data: dict[str, Any]) -> CatalogValuation:
        value = _safe_float(data.get("value"))
        window_size = int(data.get("window_size") or 0)
        apr = _safe_float(data.get("apr"))
        days = estimate_days_to_resale(
            _safe_float(data.get("stat_turnover_ext")),
            _safe_float(data.get("stat_turnover_int")),
            apr,
        )
        etr = _safe_float(data.get("etr")) or _etr_from_days(days)
        return CatalogValuation(
            base_value=_safe_float(data.get("topdown_value")) or value,
            option_value=0.0,
            total_value=value,
            price_range=_price_range(value, data.get("percents") or []),
            confidence=window_confidence(window_size),
            apr=apr,
            etr=etr,
            liquidity=classify_liquidity(apr),
            days_to_resale=days,
            stock_count=window_size,
            window=self._map_window(descriptor, data),
        )

    def _map_window(self, descriptor: VehicleDescriptor, data: dict[str, Any]) -> SearchWindow:
        portal_urls = {k: v for k, v in (data.get("portal_urls") or {}).items() if v}
        if data.get("window_url"):
            portal_urls["jpcars_window"] = data["window_url"]

        listings = []
        for item in (data.get("window") or [])[: self.scan_config.max_window_listings]:
            price = _safe_float(item.get("price"))
            if price <= 0:
                continue
            options = item.get("options") or ()
            if isinstance(options, str):
                options = [o.strip() for o in options.split(",") if o.strip()]
            listings.append(WindowListing(
                price=price,
                mileage=int(_safe_float(item.get("mileage"))),
                build_year=int(item["build"]) if item.get("build") else None,
                make=item.get("make") or "",
                model=item.get("model") or "",
                url=item.get("url") or "",
                dealer=item.get("dealer_name") or item.get("dealer") or "",
                days_in_stock=item.get("stock_days"),
                sold_since=item.get("sold_since"),
                options=tuple(options),
            ))
        return SearchWindow(
            filters=build_search_filters(descriptor, self.scan_config),
            portal_urls=portal_urls,
            listings=tuple(listings),
        )


def _price_range(value: float, percents: list[dict[str, Any]]) -> PriceRange:
    if percents:
        by_pct = {p.get("percent"): _safe_float(p.get("target_value")) for p in percents}
        low = by_pct.get(10) or _safe_float(percents[0].get("target_value")) or value * 0.85
        high = by_pct.get(90) or _safe_float(percents[-1].get("target_value")) or value * 1.15
        return PriceRange(low=low, high=high)
    return PriceRange(low=value * 0.85, high=value * 1.15)


def _etr_from_days(days: int) -> float:
    # turnover score on the same 1-5 scale as APR
    if days <= 15:
        return 5.0
    if days <= 22:
        return 4.0
    if days <= 30:
        return 3.0
    if days <= 45:
        return 2.0
    return 1.0


def _safe_float(val: Any) -> float:
    if val is None:
        return 0.0
    try:
        f = float(val)
        return f if f > 0 else 0.0
    except (TypeError, ValueError):
        return 0.0
