from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

import httpx

from tradein.data_models import VehicleDescriptor
from tradein.descriptors import (
    is_valid_dutch_plate,
    kw_to_hp,
    normalize_body_type,
    normalize_brand,
    normalize_color,
    normalize_fuel,
    normalize_plate,
)
from tradein.errors import SourceUnavailableError, ValidationError
from tradein_service.storage import RedisCache

logger = logging.getLogger(__name__)


class RDWRegistrationLookup:
    """Licence plate lookup against the RDW open-data registry.

    RDW knows make, model, first admission and engine data but neither
    mileage nor gearbox; those stay unset on the returned descriptor.
    """

    VEHICLES_DATASET = "m9d7-ebf2"
    FUEL_DATASET = "8ys7-d773"

    def __init__(
        self,
        cache: RedisCache,
        base_url: str,
        ttl_seconds: int,
        app_token: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.app_token = app_token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.app_token:
            headers["X-App-Token"] = self.app_token
        return headers

    async def lookup(self, plate: str) -> VehicleDescriptor | None:
        if not is_valid_dutch_plate(plate):
            raise ValidationError(f"not a valid Dutch licence plate: {plate!r}", ("license_plate",))
        kenteken = normalize_plate(plate)

        cache_key = f"plate_lookup:{kenteken}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return _descriptor_from_cache(cached)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.get(
                    f"{self.base_url}/{self.VEHICLES_DATASET}.json",
                    params={"kenteken": kenteken},
                    headers=self._headers(),
                )
                resp.raise_for_status()
                rows = resp.json()
            except Exception as exc:
                logger.warning("RDW lookup failed for %s: %s", kenteken, exc)
                raise SourceUnavailableError("registration", str(exc)) from exc

            if not rows:
                logger.info("RDW has no registration for %s", kenteken)
                return None

            fuel_row = await self._fetch_fuel(client, kenteken)

        descriptor = _map_rdw(kenteken, rows[0], fuel_row)
        await self.cache.set_json(cache_key, asdict(descriptor), self.ttl_seconds)
        return descriptor

    async def _fetch_fuel(self, client: httpx.AsyncClient, kenteken: str) -> dict[str, Any]:
        try:
            resp = await client.get(
                f"{self.base_url}/{self.FUEL_DATASET}.json",
                params={"kenteken": kenteken},
                headers=self._headers(),
            )
            resp.raise_for_status()
            rows = resp.json()
            return rows[0] if rows else {}
        except Exception as exc:
            logger.warning("RDW fuel data unavailable for %s: %s", kenteken, exc)
            return {}


def _map_rdw(kenteken: str, vehicle: dict[str, Any], fuel: dict[str, Any]) -> VehicleDescriptor:
    brand = normalize_brand(vehicle.get("merk") or "")
    model = (vehicle.get("handelsbenaming") or "").strip()
    if model.upper().startswith(brand.upper() + " "):
        model = model[len(brand) + 1:].strip()

    first_admission = str(vehicle.get("datum_eerste_toelating") or "")
    build_year = int(first_admission[:4]) if first_admission[:4].isdigit() else 0

    kw = _safe_int(fuel.get("nettomaximumvermogen") or vehicle.get("nettomaximumvermogen"))
    return VehicleDescriptor(
        brand=brand,
        model=model,
        build_year=build_year,
        fuel_type=normalize_fuel(fuel.get("brandstof_omschrijving") or vehicle.get("brandstof_omschrijving") or ""),
        body_type=normalize_body_type(vehicle.get("inrichting") or ""),
        power_hp=kw_to_hp(kw) if kw else None,
        color=normalize_color(vehicle.get("eerste_kleur") or ""),
        license_plate=kenteken,
    )


def _descriptor_from_cache(payload: dict[str, Any]) -> VehicleDescriptor:
    data = dict(payload)
    data["options"] = tuple(data.get("options") or ())
    data["keywords"] = tuple(data.get("keywords") or ())
    data["transmission"] = None
    return VehicleDescriptor(**data)


def _safe_int(val: Any) -> int | None:
    if val is None:
        return None
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return None
