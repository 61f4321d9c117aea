from __future__ import annotations

import math
import re
from typing import Any, Dict, Mapping, Optional

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")

# Field names written by older clients that do not map 1:1 through snake_case
FIELD_ALIASES: Dict[str, str] = {
    "platform_cut": "platform_commission",
    "renta": "vehicle_payment",
    "seguro": "insurance",
    "datos": "mobile_data",
    "llantas": "tires",
    "mantenimiento": "maintenance",
    "km_vida": "lifetime_km",
    "monto": "amount",
    "periodo": "period",
    "dest_distance": "dest_km",
    "dest_duration": "dest_min",
    "pickup_distance": "pickup_km",
    "pickup_duration": "pickup_min",
    "gps_distance": "gps_km",
    "gps_duration": "gps_min",
    "day_id": "shift_id",
}


def to_number(value: Any) -> float:
    """Coerce user input to a finite float; anything unparsable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if text.startswith("$"):
            text = text[1:]
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def to_optional_number(value: Any) -> Optional[float]:
    """Like :func:`to_number` but keeps "no value" distinguishable from zero."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    number = to_number(value)
    if number == 0 and not _looks_like_zero(value):
        return None
    return number


def _looks_like_zero(value: Any) -> bool:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    text = str(value).strip().replace(",", "")
    if text.startswith("$"):
        text = text[1:]
    try:
        return float(text) == 0
    except ValueError:
        return False


def clamp_non_negative(value: Any) -> float:
    return max(to_number(value), 0.0)


def snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def canonical_field(name: Any) -> str:
    canonical = snake_case(str(name))
    return FIELD_ALIASES.get(canonical, canonical)


def normalize_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate camelCase or legacy keys (``pickupKm``, ``platformCut``) to canonical snake_case."""
    normalized: Dict[str, Any] = {}
    for key, value in payload.items():
        canonical = canonical_field(key)
        if canonical in normalized and value in (None, ""):
            continue
        normalized[canonical] = value
    return normalized


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on", "si", "sí"}
    return bool(value)
