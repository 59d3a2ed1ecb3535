from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd

from tradein.config import HistoryConfig
from tradein.data_models import InternalComparison, SimilarSale, VehicleDescriptor
from tradein_service.storage import PostgresStore

logger = logging.getLogger(__name__)


class InternalHistoryMatcher:
    """Dealer's own sales of the same brand over the last year."""

    def __init__(self, store: PostgresStore, config: HistoryConfig | None = None) -> None:
        self.store = store
        self.config = config or HistoryConfig()

    async def match(self, descriptor: VehicleDescriptor) -> InternalComparison:
        since = datetime.now(timezone.utc) - timedelta(days=self.config.lookback_days)
        frame = await self.store.fetch_sold_vehicles(
            descriptor.brand, since, limit=self.config.max_rows, statuses=self.config.sold_statuses,
        )
        comparison = summarize_sales(frame, descriptor, self.config)
        logger.info(
            "Internal history for %s: %d sales, avg margin %.1f%%",
            descriptor.brand, comparison.sold_last_year, comparison.average_margin,
        )
        return comparison


def summarize_sales(
    frame: pd.DataFrame,
    descriptor: VehicleDescriptor,
    config: HistoryConfig = HistoryConfig(),
) -> InternalComparison:
    df = frame.astype({"purchase_price": float, "selling_price": float})
    # a sale without both prices has no margin
    df = df[(df["purchase_price"] > 0) & (df["selling_price"] > 0)].copy()
    if df.empty:
        return InternalComparison(note=f"No {descriptor.brand} sales in the last {config.lookback_days} days")

    df["margin"] = (df["selling_price"] - df["purchase_price"]) / df["purchase_price"] * 100

    sold = pd.to_datetime(df["sold_date"], utc=True)
    bought = pd.to_datetime(df["purchase_date"], utc=True)
    days = np.ceil((sold - bought).dt.total_seconds() / 86400)
    df["days_to_sell"] = (
        days.clip(lower=1, upper=config.max_days_to_sell)
        .fillna(config.default_days_to_sell)
        .astype(int)
    )
    df["channel"] = df["status"].map(lambda s: "B2B" if s == "sold_b2b" else "B2C")

    b2c = df[df["channel"] == "B2C"]
    df["same_model"] = df["model"].str.lower() == descriptor.model.lower()
    ordered = df.sort_values(["same_model", "sold_date"], ascending=[False, False], kind="stable")

    similar = tuple(
        SimilarSale(
            id=str(row.id),
            brand=row.brand,
            model=row.model,
            build_year=int(row.build_year) if pd.notna(row.build_year) else 0,
            mileage=int(row.mileage) if pd.notna(row.mileage) else 0,
            purchase_price=float(row.purchase_price),
            selling_price=float(row.selling_price),
            margin=round(float(row.margin), 2),
            days_to_sell=int(row.days_to_sell),
            channel=row.channel,
            sold_at=pd.Timestamp(row.sold_date).isoformat() if pd.notna(row.sold_date) else "",
        )
        for row in ordered.head(config.max_similar).itertuples(index=False)
    )

    return InternalComparison(
        average_margin=round(float(df["margin"].mean()), 2),
        average_days_to_sell=round(float(df["days_to_sell"].mean()), 1),
        sold_last_year=len(df),
        sold_b2c=len(b2c),
        sold_b2b=len(df) - len(b2c),
        average_days_to_sell_b2c=round(float(b2c["days_to_sell"].mean()), 1) if not b2c.empty else None,
        similar_vehicles=similar,
    )
