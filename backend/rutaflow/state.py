from __future__ import annotations

import json
import logging
from threading import RLock
from typing import Any, Dict

from sqlalchemy.orm import Session

from .calculations import CalculationPolicy, DriverConfig, default_fixed_costs
from .config import Settings
from .models import AppSetting
from .utils import to_number

logger = logging.getLogger(__name__)

NUMERIC_KEYS = (
    "gas_price_per_liter",
    "km_per_liter",
    "target_hourly_rate",
    "target_per_km_rate",
    "platform_commission",
)

FIXED_COSTS_KEY = "fixed_costs"


def default_config(base_settings: Settings) -> DriverConfig:
    return DriverConfig(
        gas_price_per_liter=base_settings.default_gas_price_per_liter,
        km_per_liter=base_settings.default_km_per_liter,
        target_hourly_rate=base_settings.default_target_hourly_rate,
        target_per_km_rate=base_settings.default_target_per_km_rate,
        platform_commission=base_settings.default_platform_commission,
        fixed_costs=default_fixed_costs(),
    )


class RuntimeState:
    """The driver's Configuration as currently in effect, shared by all requests."""

    def __init__(self, base_settings: Settings):
        self._lock = RLock()
        self._defaults = default_config(base_settings)
        self._config = self._defaults
        self.policy = CalculationPolicy(
            acceptable_ratio=base_settings.acceptable_ratio,
            workday_hours=base_settings.standard_workday_hours,
        )
        self.gps_noise_threshold_km: float = base_settings.gps_noise_threshold_km

    @property
    def config(self) -> DriverConfig:
        with self._lock:
            return self._config

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = self._config.to_dict()
        data["acceptable_ratio"] = self.policy.acceptable_ratio
        data["standard_workday_hours"] = self.policy.workday_hours
        return data

    def apply(self, updates: Dict[str, Any]) -> DriverConfig:
        """Replace the whole Configuration; keys missing from ``updates`` fall back to defaults."""
        config = DriverConfig.from_mapping(updates, defaults=self._defaults)
        with self._lock:
            self._config = config
        return config

    def reset(self) -> None:
        with self._lock:
            self._config = self._defaults

    def load_from_db(self, session: Session) -> None:
        records = session.query(AppSetting).all()
        if not records:
            return
        decoded: Dict[str, Any] = {}
        for record in records:
            if record.key in NUMERIC_KEYS:
                decoded[record.key] = to_number(record.value)
            elif record.key == FIXED_COSTS_KEY:
                try:
                    decoded[FIXED_COSTS_KEY] = json.loads(record.value)
                except json.JSONDecodeError:
                    logger.warning("stored fixed costs are not valid JSON; using defaults")
                    decoded[FIXED_COSTS_KEY] = {}
        if decoded:
            self.apply(decoded)

    def persist(self, session: Session) -> None:
        with self._lock:
            data = self._config.to_dict()
        for key, value in data.items():
            if key == FIXED_COSTS_KEY:
                value = json.dumps(value)
            else:
                value = str(value)
            record = session.query(AppSetting).filter(AppSetting.key == key).one_or_none()
            if record:
                record.value = value
            else:
                session.add(AppSetting(key=key, value=value))
        session.commit()
