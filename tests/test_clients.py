import json

import httpx
import pytest

from tradein.data_models import (
    CatalogValuation,
    InternalComparison,
    Liquidity,
    MarketAnalysis,
    SearchWindow,
    TradeInClass,
    Transmission,
    VehicleDescriptor,
    WindowListing,
)
from tradein.descriptors import build_search_filters
from tradein.errors import SourceUnavailableError, SynthesisError, ValidationError
from tradein.fallbacks import CATALOG_FALLBACK, MARKET_FALLBACK
from tradein_service.advice import ADVICE_TOOL_NAME, OpenAIAdviceSynthesizer, RuleBasedAdviceSynthesizer
from tradein_service.catalog import JPCarsCatalogClient
from tradein_service.market import MarketListingAnalyzer, PortalSearchClient, parse_listings
from tradein_service.registration import RDWRegistrationLookup
from tradein_service.storage import RedisCache


GOLF = VehicleDescriptor(
    brand="Volkswagen", model="Golf", build_year=2019, fuel_type="Diesel",
    mileage=60000, transmission=Transmission.MANUAL,
)


def _cache():
    # never connected: in-memory mode
    return RedisCache(redis_url="redis://127.0.0.1:1/0")


# ── RDW registration ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rdw_lookup_maps_registry_fields():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        assert request.url.params["kenteken"] == "AB123C"
        if request.url.path.endswith("m9d7-ebf2.json"):
            return httpx.Response(200, json=[{
                "kenteken": "AB123C",
                "merk": "VOLKSWAGEN",
                "handelsbenaming": "GOLF",
                "datum_eerste_toelating": "20190315",
                "inrichting": "hatchback",
                "eerste_kleur": "GRIJS",
            }])
        return httpx.Response(200, json=[{"brandstof_omschrijving": "Diesel", "nettomaximumvermogen": "85.00"}])

    lookup = RDWRegistrationLookup(
        _cache(), "https://rdw.test/resource", ttl_seconds=60, transport=httpx.MockTransport(handler),
    )
    d = await lookup.lookup("ab-123-c")

    assert d.brand == "Volkswagen"
    assert d.model == "GOLF"
    assert d.build_year == 2019
    assert d.fuel_type == "Diesel"
    assert d.power_hp == 116
    assert d.body_type == "Hatchback"
    assert d.color == "Grey"
    assert d.license_plate == "AB123C"
    assert d.mileage is None and d.transmission is None

    again = await lookup.lookup("AB 123 C")
    assert again == d
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_rdw_unknown_plate_returns_none():
    lookup = RDWRegistrationLookup(
        _cache(), "https://rdw.test/resource", ttl_seconds=60,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
    )
    assert await lookup.lookup("ZZ-999-Z") is None


@pytest.mark.asyncio
async def test_rdw_rejects_malformed_plate_without_calling():
    def handler(request):
        raise AssertionError("no request expected")

    lookup = RDWRegistrationLookup(_cache(), "https://rdw.test", 60, transport=httpx.MockTransport(handler))
    with pytest.raises(ValidationError):
        await lookup.lookup("NOPE")


@pytest.mark.asyncio
async def test_rdw_outage_raises_source_unavailable():
    lookup = RDWRegistrationLookup(
        _cache(), "https://rdw.test", 60,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(SourceUnavailableError) as excinfo:
        await lookup.lookup("AB-123-C")
    assert excinfo.value.source == "registration"


# ── JP Cars catalog ─────────────────────────────────────────────────

JPCARS_RESPONSE = {
    "value": 18500,
    "topdown_value": 18200,
    "window_size": 14,
    "apr": 4.2,
    "etr": 4.0,
    "stat_turnover_ext": 1.2,
    "stat_turnover_int": 0.8,
    "percents": [{"percent": 10, "target_value": 16900}, {"percent": 90, "target_value": 20100}],
    "window_url": "https://jp.cars/window/abc",
    "window": [
        {"price": 17950, "mileage": 58000, "build": 2019, "make": "VOLKSWAGEN", "model": "GOLF",
         "url": "https://dealer/1", "dealer_name": "Autohuis", "stock_days": 12},
        {"price": 0, "mileage": 10000, "build": 2020},
    ],
}


@pytest.mark.asyncio
async def test_jpcars_maps_valuation_and_window():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json=JPCARS_RESPONSE)

    client = JPCarsCatalogClient("tok", base_url="https://jp.test", transport=httpx.MockTransport(handler))
    v = await client.evaluate(GOLF.with_updates(options=("ACC", "Navi")))

    assert captured["auth"] == "Bearer tok"
    assert captured["body"]["make"] == "VOLKSWAGEN"
    assert captured["body"]["gear"] == "MANUAL_GEAR"
    assert captured["body"]["fuel"] == "DIESEL"
    assert captured["body"]["options"] == "ACC,Navi"
    assert v.total_value == 18500
    assert v.base_value == 18200
    assert (v.price_range.low, v.price_range.high) == (16900, 20100)
    assert v.confidence == 0.85
    assert v.liquidity == Liquidity.HIGH
    assert v.days_to_resale == 30
    assert v.window.portal_urls["jpcars_window"] == "https://jp.cars/window/abc"
    assert len(v.window.listings) == 1
    assert v.window.listings[0].dealer == "Autohuis"
    assert v.window.filters.mileage_max == 80000


@pytest.mark.asyncio
async def test_jpcars_prefers_licence_plate():
    captured = {}

    def handler(request):
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"value": 10000})

    client = JPCarsCatalogClient("tok", transport=httpx.MockTransport(handler))
    v = await client.evaluate(GOLF.with_updates(license_plate="AB123C"))
    assert captured == {"mileage": 60000, "license_plate": "AB123C"}
    assert (v.price_range.low, v.price_range.high) == pytest.approx((8500, 11500))
    assert v.confidence == 0.40


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, text="bad token"),
        httpx.Response(422, text="unknown model"),
        httpx.Response(500),
        httpx.Response(200, json={"error": "NO_VALUATION", "error_message": "not enough data"}),
        httpx.Response(200, text="<html>gateway timeout</html>"),
        httpx.Response(200, json=[{"value": 18500}]),
    ],
)
async def test_jpcars_errors_raise_source_unavailable(response):
    client = JPCarsCatalogClient("tok", transport=httpx.MockTransport(lambda request: response))
    with pytest.raises(SourceUnavailableError) as excinfo:
        await client.evaluate(GOLF)
    assert excinfo.value.source == "catalog"


@pytest.mark.asyncio
async def test_jpcars_without_token_is_unavailable():
    with pytest.raises(SourceUnavailableError):
        await JPCarsCatalogClient("").evaluate(GOLF)


# ── Market scan ─────────────────────────────────────────────────────

PORTAL_HTML = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "ItemList", "itemListElement": [
  {"@type": "ListItem", "position": 1, "item": {"@type": "Car", "name": "Volkswagen Golf 2.0 TDI",
    "url": "/volkswagen/golf/123", "sku": "gp-123", "vehicleModelDate": "2019",
    "mileageFromOdometer": {"@type": "QuantitativeValue", "value": "61.000"},
    "offers": {"@type": "Offer", "price": "18950", "seller": {"name": "Autobedrijf Jansen"}}}},
  {"@type": "ListItem", "position": 2, "item": {"@type": "Car", "name": "Volkswagen Golf Highline",
    "url": "/volkswagen/golf/456", "sku": "gp-456", "productionDate": "2018-05-01",
    "mileageFromOdometer": {"value": 98000},
    "offers": {"@type": "Offer", "price": 16.5}}},
  {"@type": "ListItem", "position": 3, "item": {"@type": "Car", "name": "No price"}}
]}
</script>
<script type="application/ld+json">not json</script>
</head><body></body></html>
"""


def test_parse_listings_reads_json_ld():
    hits = parse_listings(PORTAL_HTML, base_url="https://www.gaspedaal.nl")
    assert [h.id for h in hits] == ["gp-123", "gp-456"]
    assert hits[0].mileage == 61000
    assert hits[0].build_year == 2019
    assert hits[0].url == "https://www.gaspedaal.nl/volkswagen/golf/123"
    assert hits[0].dealer == "Autobedrijf Jansen"
    assert hits[1].build_year == 2018
    assert hits[1].price == 16.5


def test_portal_search_url_from_filters():
    url = PortalSearchClient("https://www.gaspedaal.nl").search_url(build_search_filters(GOLF))
    assert url.startswith("https://www.gaspedaal.nl/volkswagen/golf?")
    assert "bmin=2018" in url and "bmax=2020" in url and "kmax=80000" in url
    assert "brandstof=diesel" in url and "transmissie=handgeschakeld" in url


@pytest.mark.asyncio
async def test_analyzer_uses_catalog_window_listings():
    window = SearchWindow(
        filters=build_search_filters(GOLF),
        listings=(
            WindowListing(price=17950, mileage=58000, build_year=2019, make="VW", model="Golf"),
            WindowListing(price=18900, mileage=64000, build_year=2020),
            WindowListing(price=19900, mileage=61000, build_year=2019),
            WindowListing(price=0, mileage=1, build_year=2019),
        ),
    )

    class NoPortal:
        async def search(self, url):
            raise AssertionError("portal must not be scanned")

    analysis = await MarketListingAnalyzer(NoPortal()).scan(GOLF, window)
    assert analysis.data_source == "catalog_window"
    assert analysis.listing_count == 3
    assert (analysis.lowest_price, analysis.median_price, analysis.highest_price) == (17950, 18900, 19900)
    assert analysis.primary_comparable_count == 3
    assert analysis.deviations == ()
    assert analysis.listings[0].match_score == 100


@pytest.mark.asyncio
async def test_analyzer_scans_portal_when_window_empty():
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, text=PORTAL_HTML)

    portal = PortalSearchClient("https://www.gaspedaal.nl", transport=httpx.MockTransport(handler))
    analysis = await MarketListingAnalyzer(portal).scan(GOLF, SearchWindow(filters=build_search_filters(GOLF)))

    assert analysis.data_source == "portal_scan"
    assert analysis.listing_count == 2
    assert analysis.lowest_price == 16500
    assert analysis.search_urls["gaspedaal"] == requested[0]
    assert any("Comparable set too small" in d for d in analysis.deviations)


@pytest.mark.asyncio
async def test_portal_outage_raises_source_unavailable():
    portal = PortalSearchClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(SourceUnavailableError):
        await MarketListingAnalyzer(portal).scan(GOLF, SearchWindow())


# ── Advice ──────────────────────────────────────────────────────────

CATALOG = CatalogValuation(total_value=18500, confidence=0.85, apr=4.2, etr=4.0, days_to_resale=20)
MARKET = MarketAnalysis(lowest_price=17950, median_price=18900, highest_price=19900, listing_count=8)
INTERNAL = InternalComparison(average_margin=12.5, average_days_to_sell=24, sold_last_year=6)

TOOL_ARGS = {
    "marketFloorPrice": 17950,
    "courantheid": "courant",
    "courantheidsPercentage": 0.82,
    "internalMaxPrice": 14719,
    "calculatedMargin": 3231,
    "customerOfferPrice": 16155,
    "customerStory": "We apply a standard trade margin of 10%.",
    "modelRisks": ["TDI 2.0: EGR/DPF issues"],
    "marketArguments": ["Comparable cars sell in 20 days"],
    "reasoning": "Floor 17950 x 0.82",
}


def _openai_response(arguments):
    return {"choices": [{"message": {"tool_calls": [
        {"type": "function", "function": {"name": ADVICE_TOOL_NAME, "arguments": arguments}},
    ]}}]}


@pytest.mark.asyncio
async def test_openai_advice_parses_forced_tool_call():
    captured = {}

    def handler(request):
        captured.update(json.loads(request.content))
        return httpx.Response(200, json=_openai_response(json.dumps(TOOL_ARGS)))

    advisor = OpenAIAdviceSynthesizer("sk-test", transport=httpx.MockTransport(handler))
    advice = await advisor.synthesize(GOLF, CATALOG, MARKET, INTERNAL)

    assert captured["tool_choice"]["function"]["name"] == ADVICE_TOOL_NAME
    assert "Volkswagen Golf" in captured["messages"][1]["content"]
    assert advice.proposed_price == 16155
    assert advice.trade_in_class == TradeInClass.COURANT
    assert advice.risk_flags == ("TDI 2.0: EGR/DPF issues",)
    assert advice.source == "openai"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(200, json={"choices": [{"message": {"content": "sure"}}]}),
        httpx.Response(200, json=_openai_response("{not json")),
        httpx.Response(200, json=_openai_response(json.dumps({**TOOL_ARGS, "courantheid": "unknown"}))),
    ],
)
async def test_openai_advice_failures_raise_synthesis_error(response):
    advisor = OpenAIAdviceSynthesizer("sk-test", transport=httpx.MockTransport(lambda request: response))
    with pytest.raises(SynthesisError):
        await advisor.synthesize(GOLF, CATALOG, MARKET, INTERNAL)


@pytest.mark.asyncio
async def test_openai_without_key_raises():
    with pytest.raises(SynthesisError):
        await OpenAIAdviceSynthesizer("").synthesize(GOLF, CATALOG, MARKET, INTERNAL)


@pytest.mark.asyncio
async def test_rule_based_advice_without_price_basis_fails():
    with pytest.raises(SynthesisError):
        await RuleBasedAdviceSynthesizer().synthesize(GOLF, CATALOG_FALLBACK, MARKET_FALLBACK, INTERNAL)


@pytest.mark.asyncio
async def test_rule_based_advice_on_catalog_value_only():
    advice = await RuleBasedAdviceSynthesizer().synthesize(GOLF, CATALOG, MARKET_FALLBACK, INTERNAL)
    assert advice.market_floor_price == 18500
    assert "catalog value" in advice.rationale
    assert advice.risk_flags == MARKET_FALLBACK.deviations
