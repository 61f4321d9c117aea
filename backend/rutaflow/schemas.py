from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer, model_validator

from .calculations import DISTANCE_BASED_ITEMS, TIME_BASED_ITEMS, normalize_period
from .utils import clamp_non_negative, normalize_fields, to_bool, to_optional_number

PLATFORMS = ("uber", "didi", "beat", "otra")

Platform = Literal["uber", "didi", "beat", "otra"]
TripSource = Literal["manual", "gps", "photo"]

MEASUREMENT_FIELDS = ("fare", "pickup_km", "pickup_min", "dest_km", "dest_min", "gps_km", "gps_min")
CONFIG_NUMERIC_FIELDS = (
    "gas_price_per_liter",
    "km_per_liter",
    "target_hourly_rate",
    "target_per_km_rate",
    "platform_commission",
)


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _normalize_platform(value: Any) -> str:
    text = str(value or "uber").strip().lower()
    return text if text in PLATFORMS else "otra"


class TripMeasurementsPayload(BaseModel):
    fare: float = 0.0
    pickup_km: float = 0.0
    pickup_min: float = 0.0
    dest_km: float = 0.0
    dest_min: float = 0.0
    gps_km: float = 0.0
    gps_min: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_fields(data)
        return data

    @field_validator(*MEASUREMENT_FIELDS, mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_non_negative(value)


class TripPreviewRequest(TripMeasurementsPayload):
    platform: Platform = "uber"

    @field_validator("platform", mode="before")
    @classmethod
    def _platform(cls, value: Any) -> str:
        return _normalize_platform(value)


class TripCreateRequest(TripPreviewRequest):
    source: TripSource = "manual"
    date: Optional[dt.date] = None
    created_at: Optional[dt.datetime] = None
    shift_id: Optional[int] = None
    note: Optional[str] = None

    @model_validator(mode="after")
    def _infer_source(self) -> "TripCreateRequest":
        if self.source == "manual" and self.gps_km > 0:
            self.source = "gps"
        return self


class TripCalculationResponse(BaseModel):
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
    uses_gps: bool


class TripPreviewResponse(BaseModel):
    calculation: TripCalculationResponse
    verdict: str
    score: int


class TripResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    platform: str
    fare: float
    pickup_km: float
    pickup_min: float
    dest_km: float
    dest_min: float
    gps_km: float
    gps_min: float
    source: str
    note: Optional[str] = None
    date: dt.date
    created_at: dt.datetime
    shift_id: Optional[int] = None
    calculation: TripCalculationResponse
    verdict: str
    score: int

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in MEASUREMENT_FIELDS}
        data.update(
            {
                "id": self.id,
                "platform": self.platform,
                "source": self.source,
                "note": self.note,
                "date": self.date.isoformat(),
                "created_at": _serialize_datetime(self.created_at),
                "shift_id": self.shift_id,
                "calculation": self.calculation.model_dump(),
                "verdict": self.verdict,
                "score": self.score,
            }
        )
        return data


class FixedCostItemPayload(BaseModel):
    enabled: bool = False
    amount: float = 0.0
    period: str = "monthly"
    lifetime_km: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_fields(data)
        return data

    @field_validator("enabled", mode="before")
    @classmethod
    def _enabled(cls, value: Any) -> bool:
        return to_bool(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_non_negative(value)

    @field_validator("lifetime_km", mode="before")
    @classmethod
    def _lifetime(cls, value: Any) -> Optional[float]:
        number = to_optional_number(value)
        return number if number is not None and number > 0 else None

    @field_validator("period", mode="before")
    @classmethod
    def _period(cls, value: Any) -> str:
        return normalize_period(value)


class ConfigUpdateRequest(BaseModel):
    gas_price_per_liter: Optional[float] = None
    km_per_liter: Optional[float] = None
    target_hourly_rate: Optional[float] = None
    target_per_km_rate: Optional[float] = None
    platform_commission: Optional[float] = Field(default=None, le=100)
    fixed_costs: Dict[str, FixedCostItemPayload] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            normalized = normalize_fields(data)
            costs = normalized.get("fixed_costs")
            if isinstance(costs, dict):
                normalized["fixed_costs"] = normalize_fields(costs)
            return normalized
        return data

    @field_validator(*CONFIG_NUMERIC_FIELDS, mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_non_negative(value)

    @field_validator("fixed_costs")
    @classmethod
    def _known_items(cls, value: Dict[str, FixedCostItemPayload]) -> Dict[str, FixedCostItemPayload]:
        known = set(TIME_BASED_ITEMS + DISTANCE_BASED_ITEMS)
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"Gastos fijos desconocidos: {', '.join(unknown)}")
        return value


class FixedCostItemResponse(BaseModel):
    basis: str
    enabled: bool
    amount: float
    period: str
    lifetime_km: float


class ConfigResponse(BaseModel):
    gas_price_per_liter: float
    km_per_liter: float
    target_hourly_rate: float
    target_per_km_rate: float
    platform_commission: float
    fixed_costs: Dict[str, FixedCostItemResponse]
    acceptable_ratio: float
    standard_workday_hours: float


class ShiftSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    date: dt.date
    status: str
    start_time: dt.datetime
    stop_time: Optional[dt.datetime] = None
    gps_km: float
    total_net: Optional[float] = None
    total_km: Optional[float] = None
    trip_count: Optional[int] = None

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "status": self.status,
            "start_time": _serialize_datetime(self.start_time),
            "stop_time": _serialize_datetime(self.stop_time) if self.stop_time else None,
            "gps_km": self.gps_km,
            "total_net": self.total_net,
            "total_km": self.total_km,
            "trip_count": self.trip_count,
        }


class ActiveTripResponse(BaseModel):
    started_at: dt.datetime
    elapsed_seconds: int
    gps_km: float

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "started_at": _serialize_datetime(self.started_at),
            "elapsed_seconds": self.elapsed_seconds,
            "gps_km": self.gps_km,
        }


class TodayTotalsResponse(BaseModel):
    date: dt.date
    net: float
    km: float
    trip_count: int


class DayStatusResponse(BaseModel):
    state: Literal["idle", "running"]
    session: Optional[ShiftSessionResponse] = None
    elapsed_seconds: int = 0
    gps_km: float = 0.0
    gps_status: str = ""
    active_trip: Optional[ActiveTripResponse] = None
    ended: Optional[ShiftSessionResponse] = None
    saved_trip: Optional[TripResponse] = None
    today: TodayTotalsResponse


class PositionRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class GpsErrorRequest(BaseModel):
    code: str = "unavailable"


class TripEndRequest(BaseModel):
    fare: float = 0.0
    platform: Platform = "uber"
    note: Optional[str] = None

    @field_validator("fare", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_non_negative(value)

    @field_validator("platform", mode="before")
    @classmethod
    def _platform(cls, value: Any) -> str:
        return _normalize_platform(value)


class PlatformStatsResponse(BaseModel):
    platform: str
    count: int
    net: float
    net_per_trip: float


class HourStatsResponse(BaseModel):
    hour: int
    count: int
    net: float
    average_net: float


class WeekdayStatsResponse(BaseModel):
    weekday: int
    count: int
    net: float


class DailyNetResponse(BaseModel):
    date: dt.date
    net: float
    km: float
    trip_count: int


class StatsResponse(BaseModel):
    window_days: int
    from_date: dt.date
    to_date: dt.date
    totals: Dict[str, float]
    by_platform: List[PlatformStatsResponse]
    by_hour: List[HourStatsResponse]
    best_hours: List[int]
    by_weekday: List[WeekdayStatsResponse]
    daily: List[DailyNetResponse]
    verdicts: Dict[str, int]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)


class ChatResponse(BaseModel):
    reply: Optional[str] = None
    notice: Optional[str] = None


class ContextResponse(BaseModel):
    context: str


class ExtractionResponse(BaseModel):
    fare: Optional[float] = None
    dest_km: Optional[float] = None
    dest_min: Optional[float] = None
    notice: Optional[str] = None

    @field_validator("fare", "dest_km", "dest_min", mode="before")
    @classmethod
    def _optional_number(cls, value: Any) -> Optional[float]:
        number = to_optional_number(value)
        if number is None or number < 0:
            return None
        return number


class ExportRequest(BaseModel):
    format: Literal["pdf", "xlsx"]
    range_start: dt.date
    range_end: dt.date

    @model_validator(mode="after")
    def _validate_range(self) -> "ExportRequest":
        if self.range_end < self.range_start:
            raise ValueError("La fecha final no puede ser anterior a la inicial")
        return self


class ExportResponse(BaseModel):
    id: int
    format: str
    range_start: dt.date
    range_end: dt.date
    trip_count: int
    checksum: str
    created_at: dt.datetime
    path: str

    model_config = ConfigDict(from_attributes=True)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "format": self.format,
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "trip_count": self.trip_count,
            "checksum": self.checksum,
            "created_at": _serialize_datetime(self.created_at),
            "path": self.path,
        }
