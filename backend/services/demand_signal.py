"""Demand signals consumed by the DYNAMIC allocation method."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Protocol, Sequence

import numpy as np
import pandas as pd

from backend.domain.models import Channel
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)


class DemandSignalProvider(Protocol):
    def multipliers(
        self,
        room_type_id: str,
        day: date,
        channels: Sequence[Channel],
    ) -> dict[str, float]:
        """Return a raw (unclamped) demand multiplier per channel name."""


class StaticDemandSignal:
    """Fixed multipliers supplied by an external forecasting collaborator."""

    def __init__(self, values: Optional[Mapping[str, float]] = None) -> None:
        self._values = dict(values or {})

    def multipliers(
        self,
        room_type_id: str,
        day: date,
        channels: Sequence[Channel],
    ) -> dict[str, float]:
        return {
            channel.name: float(self._values[channel.name])
            for channel in channels
            if channel.name in self._values
        }


class BookingVelocityDemandSignal:
    """Relative booking velocity per channel over a trailing window.

    A channel booking at the average pace of the room type gets 1.0; faster
    channels get more, slower ones less. Clamping is left to the resolver.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _velocity_frame(self, room_type_id: str, since: datetime) -> pd.DataFrame:
        records = self._repository.get_booking_history(room_type_id, since)
        frame = pd.DataFrame(
            [
                {
                    "channel_name": record.channel_name,
                    "rooms": record.rooms,
                    "booked_at": record.booked_at,
                }
                for record in records
            ],
            columns=["channel_name", "rooms", "booked_at"],
        )
        if frame.empty:
            return frame
        frame["booked_at"] = pd.to_datetime(frame["booked_at"], utc=True, errors="coerce")
        return frame.dropna(subset=["booked_at"])

    def multipliers(
        self,
        room_type_id: str,
        day: date,
        channels: Sequence[Channel],
    ) -> dict[str, float]:
        lookback_days = self._settings.demand_lookback_days
        since = self._clock() - timedelta(days=lookback_days)
        frame = self._velocity_frame(room_type_id, since)
        active = [channel.name for channel in channels if channel.is_active]
        if frame.empty or not active:
            return {}

        # cancellations are stored as negative rooms
        rooms_by_channel = frame.groupby("channel_name")["rooms"].sum().clip(lower=0)
        velocity = (
            rooms_by_channel.reindex(active, fill_value=0).astype(float) / float(lookback_days)
        )
        mean_velocity = float(np.mean(velocity.to_numpy()))
        if mean_velocity <= 0.0:
            return {}

        result = {name: float(value / mean_velocity) for name, value in velocity.items()}
        logger.debug(
            "Demand multipliers computed | %s",
            format_fields(
                room_type_id=room_type_id,
                date=day.isoformat(),
                lookback_days=lookback_days,
                multipliers=result,
            ),
        )
        return result
