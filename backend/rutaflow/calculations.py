"""Trip profitability: distance/time resolution, fixed-cost amortization and net earnings."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .utils import canonical_field, normalize_fields, to_bool, to_number

PERIOD_DAYS: Dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "quarterly": 90,
    "semiannual": 180,
    "annual": 365,
}

PERIOD_ALIASES: Dict[str, str] = {
    "diario": "daily",
    "semanal": "weekly",
    "mensual": "monthly",
    "trimestral": "quarterly",
    "semestral": "semiannual",
    "anual": "annual",
}

DEFAULT_PERIOD_DAYS = 30
DEFAULT_KM_PER_LITER = 12.0
EARTH_RADIUS_KM = 6371.0

TIME_BASIS = "time"
DISTANCE_BASIS = "distance"

TIME_BASED_ITEMS = ("vehicle_payment", "insurance", "mobile_data")
DISTANCE_BASED_ITEMS = ("tires", "maintenance")

DEFAULT_LIFETIME_KM: Dict[str, float] = {"tires": 40000.0, "maintenance": 5000.0}

VERDICT_GOOD = "good"
VERDICT_ACCEPTABLE = "acceptable"
VERDICT_POOR = "poor"


def normalize_period(value: Any) -> str:
    text = str(value or "").strip().lower()
    text = PERIOD_ALIASES.get(text, text)
    return text if text in PERIOD_DAYS else "monthly"


def period_days(value: Any) -> int:
    text = str(value or "").strip().lower()
    return PERIOD_DAYS.get(PERIOD_ALIASES.get(text, text), DEFAULT_PERIOD_DAYS)


@dataclass(slots=True, frozen=True)
class FixedCostItem:
    basis: str
    enabled: bool = False
    amount: float = 0.0
    period: str = "monthly"
    lifetime_km: float = 0.0

    @classmethod
    def default_for(cls, key: str) -> "FixedCostItem":
        if key in DISTANCE_BASED_ITEMS:
            return cls(basis=DISTANCE_BASIS, lifetime_km=DEFAULT_LIFETIME_KM.get(key, 0.0))
        return cls(basis=TIME_BASIS)

    @classmethod
    def from_mapping(cls, key: str, data: Optional[Mapping[str, Any]]) -> "FixedCostItem":
        base = cls.default_for(key)
        if not isinstance(data, Mapping):
            return base
        values = normalize_fields(data)
        lifetime_km = to_number(values.get("lifetime_km"))
        return cls(
            basis=base.basis,
            enabled=to_bool(values.get("enabled", base.enabled)),
            amount=to_number(values.get("amount", base.amount)),
            period=normalize_period(values.get("period", base.period)),
            lifetime_km=lifetime_km if lifetime_km > 0 else base.lifetime_km,
        )


def default_fixed_costs() -> Dict[str, FixedCostItem]:
    return {key: FixedCostItem.default_for(key) for key in TIME_BASED_ITEMS + DISTANCE_BASED_ITEMS}


@dataclass(slots=True, frozen=True)
class DriverConfig:
    """The driver's economic parameters."""

    gas_price_per_liter: float = 24.0
    km_per_liter: float = 12.0
    target_hourly_rate: float = 200.0
    target_per_km_rate: float = 8.0
    platform_commission: float = 10.0
    fixed_costs: Mapping[str, FixedCostItem] = field(default_factory=default_fixed_costs)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fixed_costs", MappingProxyType(dict(self.fixed_costs)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], defaults: Optional["DriverConfig"] = None) -> "DriverConfig":
        base = defaults or cls()
        values = normalize_fields(data)
        raw_costs = values.get("fixed_costs") or {}
        fixed_costs = dict(base.fixed_costs)
        if isinstance(raw_costs, Mapping):
            for key, item in raw_costs.items():
                canonical = canonical_field(key)
                if canonical in fixed_costs:
                    fixed_costs[canonical] = FixedCostItem.from_mapping(canonical, item)
        return cls(
            gas_price_per_liter=to_number(values.get("gas_price_per_liter", base.gas_price_per_liter)),
            km_per_liter=to_number(values.get("km_per_liter", base.km_per_liter)),
            target_hourly_rate=to_number(values.get("target_hourly_rate", base.target_hourly_rate)),
            target_per_km_rate=to_number(values.get("target_per_km_rate", base.target_per_km_rate)),
            platform_commission=to_number(values.get("platform_commission", base.platform_commission)),
            fixed_costs=fixed_costs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gas_price_per_liter": self.gas_price_per_liter,
            "km_per_liter": self.km_per_liter,
            "target_hourly_rate": self.target_hourly_rate,
            "target_per_km_rate": self.target_per_km_rate,
            "platform_commission": self.platform_commission,
            "fixed_costs": {key: asdict(item) for key, item in self.fixed_costs.items()},
        }


@dataclass(slots=True, frozen=True)
class CalculationPolicy:
    """Classification and amortization knobs shared by every calculation.

    ``acceptable_ratio`` is the fraction of a target that still counts as
    "acceptable"; ``workday_hours`` is the notional day over which time-based
    fixed costs are spread.
    """

    acceptable_ratio: float = 0.75
    workday_hours: float = 8.0


@dataclass(slots=True, frozen=True)
class TripMeasurements:
    fare: float = 0.0
    pickup_km: float = 0.0
    pickup_min: float = 0.0
    dest_km: float = 0.0
    dest_min: float = 0.0
    gps_km: float = 0.0
    gps_min: float = 0.0

    @classmethod
    def from_any(cls, trip: Any) -> "TripMeasurements":
        if isinstance(trip, cls):
            return trip
        if isinstance(trip, Mapping):
            values = normalize_fields(trip)
        else:
            values = {name: getattr(trip, name, None) for name in cls.__dataclass_fields__}
        return cls(**{name: to_number(values.get(name)) for name in cls.__dataclass_fields__})


@dataclass(slots=True, frozen=True)
class TripCalculation:
    total_km: float
    total_min: float
    fare: float
    fuel_cost: float
    platform_fee: float
    fixed_cost: float
    net_earning: float
    hours: float
    net_per_hour: float
    net_per_km: float
    gross_margin_pct: float
    uses_gps: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_distance_time(trip: Any) -> Tuple[float, float]:
    """Return ``(total_km, total_min)`` for a trip.

    A positive GPS distance is authoritative together with its duration; the
    manual pickup/destination phases are ignored in that case. Otherwise the
    two phases are summed. Missing or non-numeric fields count as zero.
    """
    measurements = TripMeasurements.from_any(trip)
    if measurements.gps_km > 0:
        return measurements.gps_km, measurements.gps_min
    return (
        measurements.pickup_km + measurements.dest_km,
        measurements.pickup_min + measurements.dest_min,
    )


def amortize_fixed_costs(
    fixed_costs: Mapping[str, FixedCostItem],
    total_km: float,
    total_min: float,
    workday_hours: float = 8.0,
) -> float:
    """Share of the enabled fixed costs that a single trip carries.

    Time-based items are turned into a daily rate via :data:`PERIOD_DAYS`,
    spread over a ``workday_hours`` day and charged per hour of trip.
    Distance-based items are charged per km of their configured lifetime.
    """
    hours = to_number(total_min) / 60
    distance = to_number(total_km)
    workday = workday_hours if workday_hours and workday_hours > 0 else 8.0
    total = 0.0
    for item in fixed_costs.values():
        if not item.enabled:
            continue
        if item.basis == DISTANCE_BASIS:
            if item.lifetime_km > 0:
                total += item.amount / item.lifetime_km * distance
            continue
        daily = item.amount / period_days(item.period)
        total += daily / workday * hours
    return total


def calculate_trip(
    trip: Any,
    config: DriverConfig,
    policy: Optional[CalculationPolicy] = None,
) -> TripCalculation:
    """Break a trip's fare down into costs and net earnings.

    ``trip`` may be a :class:`TripMeasurements`, a mapping (camelCase or
    snake_case keys) or any object exposing the measurement attributes, such
    as a stored trip row.
    """
    policy = policy or CalculationPolicy()
    measurements = TripMeasurements.from_any(trip)
    total_km, total_min = resolve_distance_time(measurements)
    fare = measurements.fare
    km_per_liter = config.km_per_liter if config.km_per_liter > 0 else DEFAULT_KM_PER_LITER
    fuel_cost = total_km / km_per_liter * config.gas_price_per_liter
    platform_fee = fare * (config.platform_commission / 100)
    fixed_cost = amortize_fixed_costs(config.fixed_costs, total_km, total_min, policy.workday_hours)
    net_earning = fare - platform_fee - fuel_cost - fixed_cost
    hours = total_min / 60
    return TripCalculation(
        total_km=total_km,
        total_min=total_min,
        fare=fare,
        fuel_cost=fuel_cost,
        platform_fee=platform_fee,
        fixed_cost=fixed_cost,
        net_earning=net_earning,
        hours=hours,
        net_per_hour=net_earning / hours if hours > 0 else 0.0,
        net_per_km=net_earning / total_km if total_km > 0 else 0.0,
        gross_margin_pct=net_earning / fare * 100 if fare > 0 else 0.0,
        uses_gps=measurements.gps_km > 0,
    )


def _tier(value: float, target: float, ratio: float) -> str:
    if value >= target:
        return VERDICT_GOOD
    if value >= target * ratio:
        return VERDICT_ACCEPTABLE
    return VERDICT_POOR


def classify_trip(
    calculation: TripCalculation,
    config: DriverConfig,
    policy: Optional[CalculationPolicy] = None,
) -> str:
    policy = policy or CalculationPolicy()
    return _tier(calculation.net_per_hour, config.target_hourly_rate, policy.acceptable_ratio)


def score_trip(calculation: TripCalculation, config: DriverConfig) -> int:
    """Two-axis score: one point for meeting the hourly target, one for the per-km target."""
    score = 0
    if calculation.net_per_hour >= config.target_hourly_rate:
        score += 1
    if calculation.net_per_km >= config.target_per_km_rate:
        score += 1
    return score


@dataclass(slots=True)
class TripTotals:
    count: int = 0
    fare: float = 0.0
    net: float = 0.0
    km: float = 0.0
    minutes: float = 0.0
    fuel_cost: float = 0.0
    platform_fees: float = 0.0
    fixed_costs: float = 0.0

    def add(self, calculation: TripCalculation) -> None:
        self.count += 1
        self.fare += calculation.fare
        self.net += calculation.net_earning
        self.km += calculation.total_km
        self.minutes += calculation.total_min
        self.fuel_cost += calculation.fuel_cost
        self.platform_fees += calculation.platform_fee
        self.fixed_costs += calculation.fixed_cost

    @property
    def hours(self) -> float:
        return self.minutes / 60

    @property
    def net_per_hour(self) -> float:
        return self.net / self.hours if self.hours > 0 else 0.0

    @property
    def net_per_km(self) -> float:
        return self.net / self.km if self.km > 0 else 0.0

    @property
    def net_per_trip(self) -> float:
        return self.net / self.count if self.count else 0.0

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            hours=self.hours,
            net_per_hour=self.net_per_hour,
            net_per_km=self.net_per_km,
            net_per_trip=self.net_per_trip,
        )
        return data


def aggregate(calculations: Iterable[TripCalculation]) -> TripTotals:
    totals = TripTotals()
    for calculation in calculations:
        totals.add(calculation)
    return totals


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two fixes in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
