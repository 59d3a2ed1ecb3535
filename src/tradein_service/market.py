from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator

import httpx
from bs4 import BeautifulSoup

from tradein.comparables import price_stats, score_listing, summarize_deviations
from tradein.config import MarketScanConfig
from tradein.data_models import MarketAnalysis, MarketListing, SearchFilters, SearchWindow, VehicleDescriptor
from tradein.descriptors import build_search_filters
from tradein.errors import SourceUnavailableError

logger = logging.getLogger(__name__)


_VEHICLE_TYPES = {"Car", "Vehicle", "Product", "MotorVehicle"}
_DIGITS = re.compile(r"\d+")
_DOTTED_THOUSANDS = re.compile(r"\d{1,3}(?:\.\d{3})+")

_FUEL_SLUGS = {
    "Petrol": "benzine",
    "Diesel": "diesel",
    "Electric": "elektrisch",
    "Hybrid": "hybride",
    "Plug-in Hybrid": "plug-in-hybride",
    "LPG": "lpg",
}


@dataclass(frozen=True)
class PortalHit:
    id: str
    title: str
    price: float
    mileage: int | None
    build_year: int | None
    url: str = ""
    dealer: str = ""


class PortalSearchClient:
    """Reads structured listing data (JSON-LD) from a portal search page."""

    def __init__(
        self,
        base_url: str = "https://www.gaspedaal.nl",
        user_agent: str = "Mozilla/5.0 (compatible; tradein-valuation/1.0)",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport

    def search_url(self, filters: SearchFilters) -> str:
        path = f"{_slug(filters.brand)}/{_slug(filters.model)}"
        params: dict[str, Any] = {
            "bmin": filters.build_year_from,
            "bmax": filters.build_year_to,
            "kmax": filters.mileage_max,
        }
        if filters.fuel_type in _FUEL_SLUGS:
            params["brandstof"] = _FUEL_SLUGS[filters.fuel_type]
        if filters.transmission in ("Automatic", "Manual"):
            params["transmissie"] = "automaat" if filters.transmission == "Automatic" else "handgeschakeld"
        return str(httpx.URL(f"{self.base_url}/{path}", params=params))

    async def search(self, url: str) -> list[PortalHit]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True,
            ) as client:
                resp = await client.get(url, headers={"User-Agent": self.user_agent, "Accept": "text/html"})
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Portal search failed for %s: %s", url, exc)
            raise SourceUnavailableError("market", str(exc) or type(exc).__name__) from exc
        return parse_listings(resp.text, base_url=self.base_url)


def parse_listings(html: str, base_url: str = "") -> list[PortalHit]:
    soup = BeautifulSoup(html, "html.parser")
    hits: list[PortalHit] = []
    seen: set[str] = set()
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            payload = json.loads(script.string or "")
        except ValueError:
            continue
        for node in _walk(payload):
            hit = _to_hit(node, base_url, len(hits) + 1)
            if hit is not None and hit.id not in seen:
                seen.add(hit.id)
                hits.append(hit)
    return hits


def _walk(node: Any) -> Iterator[dict[str, Any]]:
    if isinstance(node, list):
        for item in node:
            yield from _walk(item)
        return
    if not isinstance(node, dict):
        return
    kind = node.get("@type")
    kinds = set(kind) if isinstance(kind, list) else {kind}
    if kinds & _VEHICLE_TYPES:
        yield node
    for key in ("@graph", "itemListElement", "item"):
        if key in node:
            yield from _walk(node[key])


def _to_hit(node: dict[str, Any], base_url: str, position: int) -> PortalHit | None:
    offers = node.get("offers") or {}
    if isinstance(offers, list):
        offers = offers[0] if offers else {}
    price = _number(offers.get("price") or offers.get("lowPrice"))
    if not price:
        return None

    odometer = node.get("mileageFromOdometer")
    mileage = _number(odometer.get("value") if isinstance(odometer, dict) else odometer)
    year = _number(node.get("vehicleModelDate") or node.get("productionDate") or node.get("dateVehicleFirstRegistered"))
    url = node.get("url") or offers.get("url") or ""
    if url.startswith("/"):
        url = base_url + url
    seller = offers.get("seller") or {}
    return PortalHit(
        id=str(node.get("sku") or node.get("@id") or url or f"portal-{position}"),
        title=str(node.get("name") or "").strip(),
        price=float(price),
        mileage=int(mileage) if mileage else None,
        build_year=int(str(int(year))[:4]) if year else None,
        url=url,
        dealer=seller.get("name", "") if isinstance(seller, dict) else "",
    )


def _number(val: Any) -> float | None:
    if val is None:
        return None
    if isinstance(val, (int, float)):
        return float(val)
    text = str(val).strip()
    if _DOTTED_THOUSANDS.fullmatch(text):
        return float(text.replace(".", ""))
    try:
        return float(text)
    except ValueError:
        pass
    digits = "".join(_DIGITS.findall(text.split(",")[0]))
    return float(digits) if digits else None


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


class MarketListingAnalyzer:
    """Turns comparable listings into market statistics for one vehicle.

    Uses the listings that came with the catalog window when there are any;
    otherwise scans the portal search page built from the window filters.
    """

    def __init__(self, portal: PortalSearchClient, config: MarketScanConfig | None = None) -> None:
        self.portal = portal
        self.config = config or MarketScanConfig()

    async def scan(self, descriptor: VehicleDescriptor, window: SearchWindow) -> MarketAnalysis:
        filters = window.filters or build_search_filters(descriptor, self.config)
        search_urls = dict(window.portal_urls)

        if window.listings:
            data_source = "catalog_window"
            listings = [
                score_listing(
                    descriptor,
                    listing_id=f"jpcars-{i}",
                    portal="JP Cars",
                    title=" ".join(p for p in (item.make, item.model) if p) or f"{descriptor.brand} {descriptor.model}",
                    price=item.price,
                    mileage=item.mileage,
                    build_year=item.build_year,
                    url=item.url,
                    options=item.options,
                    dealer=item.dealer,
                    days_in_stock=item.days_in_stock,
                    config=self.config,
                )
                for i, item in enumerate(window.listings[: self.config.max_window_listings], start=1)
                if item.price > 0
            ]
        else:
            data_source = "portal_scan"
            url = search_urls.get("gaspedaal") or self.portal.search_url(filters)
            search_urls["gaspedaal"] = url
            hits = await self.portal.search(url)
            listings = [
                score_listing(
                    descriptor,
                    listing_id=hit.id,
                    portal="Gaspedaal",
                    title=hit.title,
                    price=hit.price,
                    mileage=hit.mileage,
                    build_year=hit.build_year,
                    url=hit.url,
                    dealer=hit.dealer,
                    config=self.config,
                )
                for hit in hits[: self.config.max_window_listings]
            ]

        return self._analyse(listings, filters, data_source, search_urls)

    def _analyse(
        self,
        listings: list[MarketListing],
        filters: SearchFilters,
        data_source: str,
        search_urls: dict[str, str],
    ) -> MarketAnalysis:
        stats = price_stats(listing.price for listing in listings)
        ranked = sorted(listings, key=lambda listing: (-listing.match_score, listing.price))
        primary = sum(1 for listing in listings if listing.is_primary_comparable)
        logger.info(
            "Market scan (%s): %d listings, %d primary comparables, floor %.0f",
            data_source, len(listings), primary, stats.lowest,
        )
        return MarketAnalysis(
            lowest_price=stats.lowest,
            median_price=stats.median,
            highest_price=stats.highest,
            listing_count=len(listings),
            primary_comparable_count=primary,
            applied_filters=filters,
            listings=tuple(ranked[: self.config.max_returned_listings]),
            deviations=summarize_deviations(listings, stats, self.config),
            data_source=data_source,
            search_urls=search_urls,
        )
