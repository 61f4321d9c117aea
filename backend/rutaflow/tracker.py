from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .calculations import CalculationPolicy, DriverConfig, aggregate, calculate_trip, haversine_km
from .utils import to_number

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"

GPS_STATUS_SEARCHING = "📍 Buscando señal..."

GPS_ERROR_MESSAGES = {
    "permission_denied": "⚠️ Error GPS, verifica permisos",
    "timeout": "⚠️ GPS sin respuesta, reintentando",
    "unavailable": "⚠️ Ubicación no disponible",
    "unsupported": "GPS no disponible en este dispositivo",
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(slots=True)
class GeoFix:
    lat: float
    lon: float


@dataclass(slots=True)
class Odometer:
    """Distance accumulated from accepted GPS fixes."""

    km: float = 0.0
    last_fix: Optional[GeoFix] = None

    def apply_fix(self, fix: GeoFix, threshold_km: float) -> bool:
        if self.last_fix is None:
            self.last_fix = fix
            return False
        delta = haversine_km(self.last_fix.lat, self.last_fix.lon, fix.lat, fix.lon)
        if delta < threshold_km:
            return False
        self.km += delta
        self.last_fix = fix
        return True

    def apply_delta(self, delta_km: float, threshold_km: float) -> bool:
        if delta_km < threshold_km:
            return False
        self.km += delta_km
        return True


@dataclass(slots=True)
class ShiftSnapshot:
    started_at: dt.datetime
    odometer: Odometer
    shift_id: Optional[int] = None


@dataclass(slots=True)
class ActiveTrip:
    started_at: dt.datetime
    odometer: Odometer

    def elapsed_minutes(self, now: dt.datetime) -> float:
        return max((now - self.started_at).total_seconds(), 0.0) / 60


@dataclass(slots=True)
class FinishedTrip:
    started_at: dt.datetime
    ended_at: dt.datetime
    gps_km: float
    gps_min: float
    shift_id: Optional[int] = None


@dataclass(slots=True)
class DayTotals:
    started_at: dt.datetime
    ended_at: dt.datetime
    net: float
    km: float
    gps_km: float
    trip_count: int
    shift_id: Optional[int] = None


class ShiftSessionTracker:
    """A work day: idle -> running (with at most one active trip) -> idle.

    Transitions that do not apply to the current state are ignored and
    reported through the boolean/``None`` return value.
    """

    def __init__(
        self,
        noise_threshold_km: float = 0.005,
        session: Optional[ShiftSnapshot] = None,
        active_trip: Optional[ActiveTrip] = None,
        gps_status: str = "",
    ) -> None:
        self.noise_threshold_km = max(to_number(noise_threshold_km), 0.0)
        self.session = session
        self.active_trip = active_trip if session is not None else None
        self.gps_status = gps_status

    @property
    def state(self) -> str:
        return RUNNING if self.session is not None else IDLE

    @property
    def is_running(self) -> bool:
        return self.session is not None

    @property
    def distance_km(self) -> float:
        return self.session.odometer.km if self.session else 0.0

    def elapsed_seconds(self, now: Optional[dt.datetime] = None) -> int:
        if self.session is None:
            return 0
        now = now or _utcnow()
        return max(int((now - self.session.started_at).total_seconds()), 0)

    def trip_elapsed_seconds(self, now: Optional[dt.datetime] = None) -> int:
        if self.active_trip is None:
            return 0
        now = now or _utcnow()
        return max(int((now - self.active_trip.started_at).total_seconds()), 0)

    def start(self, now: Optional[dt.datetime] = None, shift_id: Optional[int] = None) -> bool:
        if self.session is not None:
            logger.debug("start ignored: a day is already running")
            return False
        self.session = ShiftSnapshot(started_at=now or _utcnow(), odometer=Odometer(), shift_id=shift_id)
        self.active_trip = None
        self.gps_status = GPS_STATUS_SEARCHING
        return True

    def record_distance_delta(self, delta_km: Any) -> bool:
        if self.session is None:
            return False
        delta = to_number(delta_km)
        accepted = self.session.odometer.apply_delta(delta, self.noise_threshold_km)
        if accepted and self.active_trip is not None:
            self.active_trip.odometer.apply_delta(delta, self.noise_threshold_km)
        self._refresh_status()
        return accepted

    def record_fix(self, lat: Any, lon: Any) -> bool:
        """Apply one position sample; fixes closer than the noise threshold are dropped."""
        if self.session is None:
            return False
        fix = GeoFix(lat=to_number(lat), lon=to_number(lon))
        accepted = self.session.odometer.apply_fix(fix, self.noise_threshold_km)
        if self.active_trip is not None:
            self.active_trip.odometer.apply_fix(fix, self.noise_threshold_km)
        logger.debug("gps fix %s (%.5f, %.5f)", "accepted" if accepted else "dropped", fix.lat, fix.lon)
        self._refresh_status()
        return accepted

    def report_location_error(self, code: str) -> str:
        self.gps_status = GPS_ERROR_MESSAGES.get(code, GPS_ERROR_MESSAGES["unavailable"])
        logger.warning("geolocation error: %s", code)
        return self.gps_status

    def start_trip(self, now: Optional[dt.datetime] = None) -> bool:
        if self.session is None or self.active_trip is not None:
            return False
        last_fix = self.session.odometer.last_fix
        self.active_trip = ActiveTrip(
            started_at=now or _utcnow(),
            odometer=Odometer(last_fix=GeoFix(last_fix.lat, last_fix.lon) if last_fix else None),
        )
        return True

    def end_trip(self, now: Optional[dt.datetime] = None) -> Optional[FinishedTrip]:
        if self.session is None or self.active_trip is None:
            return None
        now = now or _utcnow()
        trip = self.active_trip
        self.active_trip = None
        return FinishedTrip(
            started_at=trip.started_at,
            ended_at=now,
            gps_km=round(trip.odometer.km, 2),
            gps_min=round(trip.elapsed_minutes(now), 1),
            shift_id=self.session.shift_id,
        )

    def end(
        self,
        trips: Iterable[Any],
        config: DriverConfig,
        policy: Optional[CalculationPolicy] = None,
        now: Optional[dt.datetime] = None,
    ) -> Optional[DayTotals]:
        """Close the day and total the trips that belong to it."""
        if self.session is None:
            return None
        totals = aggregate(calculate_trip(trip, config, policy) for trip in trips)
        result = DayTotals(
            started_at=self.session.started_at,
            ended_at=now or _utcnow(),
            net=totals.net,
            km=totals.km,
            gps_km=self.session.odometer.km,
            trip_count=totals.count,
            shift_id=self.session.shift_id,
        )
        self.session = None
        self.active_trip = None
        self.gps_status = ""
        return result

    def _refresh_status(self) -> None:
        if self.session is not None:
            self.gps_status = f"📍 {self.session.odometer.km:.2f} km"
