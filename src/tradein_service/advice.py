from __future__ import annotations

import json
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from tradein.config import PricingPolicy
from tradein.data_models import (
    Advice,
    CatalogValuation,
    InternalComparison,
    MarketAnalysis,
    TradeInClass,
    VehicleDescriptor,
)
from tradein.errors import SynthesisError
from tradein.scoring import price_trade_in

logger = logging.getLogger(__name__)


ADVICE_TOOL_NAME = "generate_trade_in_advice"

_SYSTEM_PROMPT = (
    "You are an experienced used-car buyer specialised in trade-in deals. "
    "Internally you take an 18-30% margin depending on how quickly the car resells; "
    "towards the customer you explain a standard 10% trade margin. The margin is "
    "never below EUR 1,500 unless the car itself is worth less. Always name the "
    "known risks of this specific model and engine. Produce practical advice with a "
    "customer story that can be read out as-is."
)


class TradeInAdviceArgs(BaseModel):
    """Arguments of the ``generate_trade_in_advice`` tool call."""

    market_floor_price: float = Field(alias="marketFloorPrice", ge=0)
    trade_in_class: Literal["courant", "gemiddeld", "incourant"] = Field(alias="courantheid")
    margin_factor: float = Field(alias="courantheidsPercentage", gt=0, le=1)
    internal_max_price: float = Field(alias="internalMaxPrice", ge=0)
    calculated_margin: float = Field(alias="calculatedMargin")
    customer_offer_price: float = Field(alias="customerOfferPrice", gt=0)
    customer_story: str = Field(alias="customerStory")
    model_risks: list[str] = Field(default_factory=list, alias="modelRisks")
    market_arguments: list[str] = Field(default_factory=list, alias="marketArguments")
    reasoning: str = ""


_TOOL_SCHEMA: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": ADVICE_TOOL_NAME,
        "description": "Produce trade-in advice with an internal maximum price and a customer story",
        "parameters": {
            "type": "object",
            "properties": {
                "marketFloorPrice": {"type": "number", "description": "Lowest serious portal price"},
                "courantheid": {"type": "string", "enum": ["courant", "gemiddeld", "incourant"]},
                "courantheidsPercentage": {"type": "number", "description": "0.82, 0.75 or 0.70"},
                "internalMaxPrice": {"type": "number", "description": "Internal maximum purchase price"},
                "calculatedMargin": {"type": "number", "description": "Market floor minus internal max"},
                "customerOfferPrice": {"type": "number", "description": "Internal max plus 8% of the floor"},
                "customerStory": {"type": "string"},
                "modelRisks": {"type": "array", "items": {"type": "string"}},
                "marketArguments": {"type": "array", "items": {"type": "string"}},
                "reasoning": {"type": "string"},
            },
            "required": [
                "marketFloorPrice", "courantheid", "courantheidsPercentage", "internalMaxPrice",
                "calculatedMargin", "customerOfferPrice", "customerStory", "modelRisks",
                "marketArguments", "reasoning",
            ],
        },
    },
}


def build_trade_in_prompt(
    descriptor: VehicleDescriptor,
    catalog: CatalogValuation,
    market: MarketAnalysis,
    internal: InternalComparison,
    policy: PricingPolicy = PricingPolicy(),
) -> str:
    def eur(value: float) -> str:
        return f"€{value:,.0f}" if value else "n/a"

    listing_lines = "\n".join(
        f"{i}. {eur(l.price)} | {l.mileage:,} km | {l.build_year} | {l.title}"
        for i, l in enumerate(market.listings[:8], start=1)
    ) or "No listings available"

    lines = [
        "# STEP 1: market floor",
        f"- Listings found: {market.listing_count}",
        f"- Lowest price: {eur(market.lowest_price)}",
        f"- Median price: {eur(market.median_price)}",
        f"- Catalog value: {eur(catalog.total_value)}",
        "",
        listing_lines,
        "",
        "# STEP 2: internal purchase price",
        f"- APR (price position): {catalog.apr or '?'}/5",
        f"- ETR (turnover): {catalog.etr or '?'}/5",
    ]
    if catalog.stock_count:
        lines.append(f"- Comparable stock: {catalog.stock_count} cars, ~{catalog.days_to_resale} days to sell")
    lines += [
        f"- COURANT (APR >= {policy.courant_min_score:g} and ETR >= {policy.courant_min_score:g}): floor x {policy.courant_factor}",
        f"- GEMIDDELD: floor x {policy.gemiddeld_factor}",
        f"- INCOURANT (APR or ETR < {policy.incourant_max_score:g}): floor x {policy.incourant_factor}",
        "",
        f"# STEP 3: margin must be at least {eur(policy.min_margin_eur)} unless the car is worth less",
        f"# STEP 4: customer offer = internal price + {policy.customer_uplift_pct:.0%} of the floor",
        "",
        "# Vehicle",
        f"- {descriptor.brand} {descriptor.model} {descriptor.trim}".rstrip(),
        f"- Build year: {descriptor.build_year}",
        f"- Mileage: {descriptor.mileage or 0:,} km",
        f"- Engine: {descriptor.power_hp or '?'} hp {descriptor.fuel_type}",
        f"- Transmission: {descriptor.transmission.value if descriptor.transmission else 'unknown'}",
        "",
        "# Own sales history",
        f"- Sold last year: {internal.sold_last_year} (B2C {internal.sold_b2c}, B2B {internal.sold_b2b})",
        f"- Average margin: {internal.average_margin:.1f}%",
        f"- Average days to sell: {internal.average_days_to_sell:.0f}",
    ]
    if market.deviations:
        lines += ["", "# Market remarks", *(f"- {d}" for d in market.deviations)]
    return "\n".join(lines)


class OpenAIAdviceSynthesizer:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        timeout: float = 45.0,
        policy: PricingPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.policy = policy or PricingPolicy()
        self._transport = transport
        self._enabled = bool(api_key)

    async def synthesize(
        self,
        descriptor: VehicleDescriptor,
        catalog: CatalogValuation,
        market: MarketAnalysis,
        internal: InternalComparison,
    ) -> Advice:
        if not self._enabled:
            raise SynthesisError("OPENAI_API_KEY is not configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": build_trade_in_prompt(descriptor, catalog, market, internal, self.policy)},
            ],
            "tools": [_TOOL_SCHEMA],
            "tool_choice": {"type": "function", "function": {"name": ADVICE_TOOL_NAME}},
            "temperature": 0.3,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Advice request failed: %s", exc)
            raise SynthesisError(f"advice service unreachable: {exc}") from exc

        args = _tool_arguments(payload)
        advice = Advice(
            proposed_price=args.customer_offer_price,
            rationale=args.reasoning,
            risk_flags=tuple(args.model_risks),
            market_floor_price=args.market_floor_price,
            internal_max_price=args.internal_max_price,
            calculated_margin=args.calculated_margin,
            trade_in_class=TradeInClass(args.trade_in_class),
            margin_factor=args.margin_factor,
            customer_story=args.customer_story,
            market_arguments=tuple(args.market_arguments),
            source="openai",
        )
        logger.info(
            "Advice for %s %s: offer %.0f, internal max %.0f (%s)",
            descriptor.brand, descriptor.model, advice.proposed_price,
            advice.internal_max_price, advice.trade_in_class.value,
        )
        return advice


def _tool_arguments(payload: dict[str, Any]) -> TradeInAdviceArgs:
    try:
        call = payload["choices"][0]["message"]["tool_calls"][0]["function"]
        raw = call["arguments"]
    except (KeyError, IndexError, TypeError):
        raise SynthesisError("no structured output in advice response") from None
    try:
        return TradeInAdviceArgs.model_validate(json.loads(raw))
    except (ValueError, PydanticValidationError) as exc:
        raise SynthesisError(f"malformed advice arguments: {exc}") from exc


class RuleBasedAdviceSynthesizer:
    """Applies the pricing policy directly, without a language model."""

    def __init__(self, policy: PricingPolicy | None = None) -> None:
        self.policy = policy or PricingPolicy()

    async def synthesize(
        self,
        descriptor: VehicleDescriptor,
        catalog: CatalogValuation,
        market: MarketAnalysis,
        internal: InternalComparison,
    ) -> Advice:
        pricing = price_trade_in(catalog, market, self.policy)
        if pricing.market_floor_price <= 0:
            raise SynthesisError("no price basis: market scan and catalog both empty")

        arguments = []
        if catalog.days_to_resale:
            arguments.append(f"Comparable cars take about {catalog.days_to_resale} days to sell")
        if market.listing_count:
            arguments.append(
                f"{market.listing_count} comparable cars listed, from €{market.lowest_price:,.0f}"
            )
        if internal.sold_last_year:
            arguments.append(
                f"We sold {internal.sold_last_year} {descriptor.brand} cars last year "
                f"in {internal.average_days_to_sell:.0f} days on average"
            )

        basis = "lowest market listing" if market.lowest_price > 0 else "catalog value"
        rationale = (
            f"Market floor €{pricing.market_floor_price:,.0f} ({basis}); "
            f"{pricing.trade_in_class.value} at factor {pricing.margin_factor:.2f} gives an internal "
            f"maximum of €{pricing.internal_max_price:,.0f} and a margin of "
            f"€{pricing.calculated_margin:,.0f}."
        )
        story = (
            f"We apply a standard trade margin of {self.policy.advertised_margin_pct:.0%}. "
            f"Based on the current market for a {descriptor.build_year} {descriptor.brand} "
            f"{descriptor.model} with {descriptor.mileage or 0:,} km we can offer "
            f"€{pricing.customer_offer_price:,.0f}."
        )
        return Advice(
            proposed_price=pricing.customer_offer_price,
            rationale=rationale,
            risk_flags=tuple(market.deviations),
            market_floor_price=pricing.market_floor_price,
            internal_max_price=pricing.internal_max_price,
            calculated_margin=pricing.calculated_margin,
            trade_in_class=pricing.trade_in_class,
            margin_factor=pricing.margin_factor,
            customer_story=story,
            market_arguments=tuple(arguments),
            source="rules",
        )
