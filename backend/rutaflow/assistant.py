"""Hosted language-model collaborator: chat advice and fare extraction from screenshots."""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from .calculations import DriverConfig
from .utils import normalize_fields, to_optional_number

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "Asesor experto en rentabilidad para conductores Uber/Didi México. "
    "Consejos concisos y accionables en español mexicano informal. "
    "Todo basado en datos reales. Contexto: {context}"
)

EXTRACTION_PROMPT = (
    "Analiza esta captura de app de transporte. Extrae solo: tarifa total MXN, "
    "km al destino, minutos al destino. Responde SOLO JSON: "
    '{"fare":0,"dest_km":0,"dest_min":0}'
)

CHAT_FAILURE_NOTICE = "Error de conexión."
EMPTY_REPLY_NOTICE = "Error al responder."
EXTRACTION_FAILURE_NOTICE = "No pude leer la imagen. Intenta manualmente."
NOT_CONFIGURED_NOTICE = "El asistente no está configurado."

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class AssistantError(RuntimeError):
    """Failure talking to the hosted model."""

    def __init__(self, message: str, *, response: Optional[requests.Response] = None) -> None:
        super().__init__(message)
        self.response = response


def _money(value: float) -> str:
    return f"${value:.2f}"


def build_context_summary(stats: Mapping[str, Any], config: DriverConfig) -> str:
    """Render aggregate statistics as the fixed-format context sentence sent to the model."""
    totals = stats.get("totals") or {}
    hours = float(totals.get("hours") or 0.0)
    best_hours = ", ".join(f"{hour}:00" for hour in stats.get("best_hours") or []) or "sin datos"
    platforms = ", ".join(
        f"{row['platform']}:{_money(row['net_per_trip'])}/viaje" for row in stats.get("by_platform") or []
    ) or "sin datos"
    return (
        f"Conductor Uber/Didi México. {stats.get('window_days', 30)} días: "
        f"{int(totals.get('count') or 0)} viajes, neto {_money(float(totals.get('net') or 0.0))}, "
        f"{float(totals.get('km') or 0.0):.0f}km, {_money(float(totals.get('fuel_cost') or 0.0))} gas, "
        f"{hours:.1f}hrs. $/hr={_money(float(totals.get('net_per_hour') or 0.0))}, "
        f"meta={_money(config.target_hourly_rate)}/hr. Mejores horas: {best_hours}. "
        f"Plataformas: {platforms}. Gas ${config.gas_price_per_liter:g}/L, {config.km_per_liter:g}km/L."
    )


def parse_extraction(text: Optional[str]) -> Dict[str, Optional[float]]:
    """Best-effort parse of the model's JSON answer; unusable fields come back as ``None``."""
    draft: Dict[str, Optional[float]] = {"fare": None, "dest_km": None, "dest_min": None}
    if not text:
        return draft
    cleaned = _FENCE.sub("", text).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        return draft
    try:
        payload = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError:
        return draft
    if not isinstance(payload, dict):
        return draft
    values = normalize_fields(payload)
    for key in draft:
        number = to_optional_number(values.get(key))
        draft[key] = number if number is not None and number > 0 else None
    return draft


def _reply_text(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for block in payload.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            return block.get("text")
    return None


class AssistantClient:
    """Thin wrapper around the hosted messages endpoint."""

    def __init__(self, api_url: str, api_key: Optional[str], model: str, timeout: int = 30) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _request(self, body: Dict[str, Any]) -> Any:
        if not self.configured:
            raise AssistantError(NOT_CONFIGURED_NOTICE)
        try:
            response = requests.post(self.api_url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise AssistantError(str(exc)) from exc
        if response.status_code >= 400:
            raise AssistantError(f"Assistant error {response.status_code}: {response.text[:200]}", response=response)
        try:
            return response.json()
        except ValueError as exc:
            raise AssistantError("Assistant returned invalid JSON", response=response) from exc

    def chat(self, context: str, messages: Iterable[Mapping[str, str]], max_tokens: int = 700) -> str:
        body = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": SYSTEM_PROMPT.format(context=context),
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        text = _reply_text(self._request(body))
        if not text:
            raise AssistantError(EMPTY_REPLY_NOTICE)
        return text

    def extract_trip(self, image: bytes, media_type: Optional[str] = None) -> Dict[str, Optional[float]]:
        content: List[Dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": media_type or "image/jpeg",
                    "data": base64.b64encode(image).decode("ascii"),
                },
            },
            {"type": "text", "text": EXTRACTION_PROMPT},
        ]
        body = {"model": self.model, "max_tokens": 200, "messages": [{"role": "user", "content": content}]}
        return parse_extraction(_reply_text(self._request(body)))
