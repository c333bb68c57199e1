"""Windowed transaction velocity per user."""

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from .config import RiskConfig, default_config
from .interfaces import TransactionStore
from .models import VelocityData

logger = structlog.get_logger()


class VelocityAggregator:
    """Computes trailing-window counts and amounts for a user.

    Reads are lock-free: a transaction committed while the windows are being
    queried may or may not be counted.
    """

    def __init__(self, store: TransactionStore, config: RiskConfig | None = None) -> None:
        self._store = store
        self._config = config or default_config

    async def compute(self, user_id: str, as_of: datetime | None = None) -> VelocityData:
        as_of = as_of or datetime.now(UTC)
        one_hour_ago = as_of - timedelta(hours=1)
        one_day_ago = as_of - timedelta(hours=24)
        rapid_minutes = self._config.velocity.rapid_transfer_window_minutes

        windows = [
            self._store.count_and_sum_by_user_in_window(user_id, one_hour_ago, as_of),
            self._store.count_and_sum_by_user_in_window(user_id, one_day_ago, as_of),
        ]
        if rapid_minutes != 60:
            rapid_start = as_of - timedelta(minutes=rapid_minutes)
            windows.append(
                self._store.count_and_sum_by_user_in_window(user_id, rapid_start, as_of)
            )

        results = await asyncio.gather(*windows)
        last_hour, last_day = results[0], results[1]
        rapid = results[2] if len(results) > 2 else last_hour

        avg_amount_24h = last_day.total_amount / last_day.count if last_day.count > 0 else 0.0

        velocity = VelocityData(
            count_1h=last_hour.count,
            amount_1h=last_hour.total_amount,
            count_24h=last_day.count,
            amount_24h=last_day.total_amount,
            avg_amount_24h=avg_amount_24h,
            rapid_window_minutes=rapid_minutes,
            count_rapid_window=rapid.count,
        )
        logger.debug(
            "velocity_computed",
            user_id=user_id,
            count_1h=velocity.count_1h,
            count_24h=velocity.count_24h,
            avg_amount_24h=round(avg_amount_24h, 2),
        )
        return velocity
