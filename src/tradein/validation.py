from __future__ import annotations

from datetime import datetime, timezone

from tradein.data_models import Transmission, VehicleDescriptor
from tradein.errors import ValidationError


_MIN_BUILD_YEAR = 1900


def missing_fields(descriptor: VehicleDescriptor) -> tuple[str, ...]:
    missing: list[str] = []
    for name in ("brand", "model", "fuel_type"):
        if not str(getattr(descriptor, name) or "").strip():
            missing.append(name)
    if not descriptor.build_year:
        missing.append("build_year")
    if descriptor.mileage is None:
        missing.append("mileage")
    if descriptor.transmission is None:
        missing.append("transmission")
    return tuple(missing)


def validate_descriptor(descriptor: VehicleDescriptor) -> VehicleDescriptor:
    """Reject a descriptor the pipeline cannot value. Returns it unchanged otherwise."""
    missing = missing_fields(descriptor)
    if missing:
        raise ValidationError(f"descriptor incomplete, missing: {', '.join(missing)}", missing)

    if descriptor.mileage < 0:
        raise ValidationError(f"mileage must be >= 0, got {descriptor.mileage}", ("mileage",))

    if not isinstance(descriptor.transmission, Transmission):
        raise ValidationError(
            f"transmission must be Automatic or Manual, got {descriptor.transmission!r}",
            ("transmission",),
        )

    latest_year = datetime.now(timezone.utc).year + 1
    if not (_MIN_BUILD_YEAR <= descriptor.build_year <= latest_year):
        raise ValidationError(
            f"build_year must be between {_MIN_BUILD_YEAR} and {latest_year}, got {descriptor.build_year}",
            ("build_year",),
        )
    return descriptor
