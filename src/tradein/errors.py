from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tradein.data_models import ValuationRecord


class ValuationError(Exception):
    """Base class for every failure the trade-in pipeline reports."""


class ValidationError(ValuationError):
    def __init__(self, message: str, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class SourceUnavailableError(ValuationError):
    """A data source failed or timed out. Recovered by fallback substitution."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source} unavailable: {reason}")
        self.source = source
        self.reason = reason


class SynthesisError(ValuationError):
    """The advice step failed; the run is marked failed."""

    def __init__(self, reason: str, record: ValuationRecord | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record = record


class PersistenceError(ValuationError):
    def __init__(self, valuation_id: str, cause: Any) -> None:
        super().__init__(f"failed to persist valuation {valuation_id}: {cause}")
        self.valuation_id = valuation_id


class RecordSealedError(ValuationError):
    pass
