from __future__ import annotations

import datetime as dt

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from rutaflow import models
from rutaflow.tracker import GPS_ERROR_MESSAGES, GPS_STATUS_SEARCHING

MANUAL_TRIP = {"fare": 100, "pickup_km": 2, "pickup_min": 5, "dest_km": 8, "dest_min": 20, "platform": "uber"}


def test_healthz(client: TestClient):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_config_defaults_and_update(client: TestClient, session: Session):
    resp = client.get("/config")
    assert resp.status_code == 200
    data = resp.json()
    assert data["gas_price_per_liter"] == 24.0
    assert data["platform_commission"] == 10.0
    assert data["acceptable_ratio"] == 0.75
    assert data["fixed_costs"]["tires"]["basis"] == "distance"
    assert data["fixed_costs"]["vehicle_payment"]["enabled"] is False

    payload = {
        "gasPricePerLiter": 25,
        "kmPerLiter": 14,
        "targetHourlyRate": 180,
        "platformCut": 15,
        "fixedCosts": {"renta": {"enabled": True, "monto": 6000, "periodo": "mensual"}},
    }
    resp = client.put("/config", json=payload)
    assert resp.status_code == 200
    data = resp.json()
    assert data["gas_price_per_liter"] == 25
    assert data["platform_commission"] == 15
    assert data["target_per_km_rate"] == 8.0
    assert data["fixed_costs"]["vehicle_payment"] == {
        "basis": "time",
        "enabled": True,
        "amount": 6000,
        "period": "monthly",
        "lifetime_km": 0,
    }
    assert client.get("/config").json()["km_per_liter"] == 14

    stored = {row.key: row.value for row in session.query(models.AppSetting).all()}
    assert stored["gas_price_per_liter"] == "25.0"
    assert "vehicle_payment" in stored["fixed_costs"]


def test_config_update_rejects_bad_values(client: TestClient):
    base = {"gas_price_per_liter": 24, "km_per_liter": 12, "target_hourly_rate": 200, "platform_commission": 10}
    assert client.put("/config", json=dict(base, platform_commission=120)).status_code == 422
    resp = client.put("/config", json=dict(base, fixed_costs={"gimnasio": {"enabled": True}}))
    assert resp.status_code == 422


def test_config_update_coerces_unparsable_numbers(client: TestClient):
    payload = {"gas_price_per_liter": "abc", "km_per_liter": 0, "target_hourly_rate": -5, "platform_commission": "12"}
    resp = client.put("/config", json=payload)
    assert resp.status_code == 200
    data = resp.json()
    assert data["gas_price_per_liter"] == 0
    assert data["km_per_liter"] == 0
    assert data["target_hourly_rate"] == 0
    assert data["platform_commission"] == 12

    calc = client.post("/trips/preview", json={"fare": 100, "dest_km": 12, "dest_min": 30}).json()["calculation"]
    assert calc["fuel_cost"] == 0
    assert calc["net_earning"] == pytest.approx(88)


def test_config_update_keeps_defaults_for_missing_fields(client: TestClient):
    resp = client.put("/config", json={"platformCut": 15})
    assert resp.status_code == 200
    data = resp.json()
    assert data["platform_commission"] == 15
    assert data["gas_price_per_liter"] == 24.0
    assert data["km_per_liter"] == 12.0


def test_enabled_distance_item_without_lifetime_uses_default(client: TestClient):
    resp = client.put("/config", json={"fixed_costs": {"tires": {"enabled": True, "amount": 3000}}})
    assert resp.status_code == 200
    assert resp.json()["fixed_costs"]["tires"]["lifetime_km"] == 40000
    calc = client.post("/trips/preview", json={"fare": 100, "dest_km": 10}).json()["calculation"]
    assert calc["fixed_cost"] == pytest.approx(0.75)

    resp = client.put("/config", json={"fixed_costs": {"maintenance": {"enabled": True, "amount": 500, "kmVida": 0}}})
    assert resp.json()["fixed_costs"]["maintenance"]["lifetime_km"] == 5000


def test_preview_accepts_camel_case_and_strings(client: TestClient):
    resp = client.post("/trips/preview", json={"fare": "100", "destKm": 12, "destMin": 30})
    assert resp.status_code == 200
    data = resp.json()
    calc = data["calculation"]
    assert calc["total_km"] == 12
    assert calc["fuel_cost"] == pytest.approx(24)
    assert calc["platform_fee"] == pytest.approx(10)
    assert calc["net_earning"] == pytest.approx(66)
    assert calc["net_per_hour"] == pytest.approx(132)
    assert data["verdict"] == "poor"
    assert data["score"] == 0


def test_negative_inputs_are_clamped(client: TestClient):
    resp = client.post("/trips/preview", json={"fare": -50, "dest_km": -3, "dest_min": 10})
    assert resp.status_code == 200
    calc = resp.json()["calculation"]
    assert calc["fare"] == 0
    assert calc["total_km"] == 0
    assert calc["net_earning"] == 0


def test_trip_crud(client: TestClient):
    resp = client.post("/trips", json=dict(MANUAL_TRIP, date="2024-03-04", note="aeropuerto"))
    assert resp.status_code == 201
    trip = resp.json()
    trip_id = trip["id"]
    assert trip["source"] == "manual"
    assert trip["date"] == "2024-03-04"
    assert trip["created_at"].endswith("+00:00")
    assert trip["shift_id"] is None
    assert trip["calculation"]["net_earning"] == pytest.approx(70)
    assert trip["calculation"]["net_per_hour"] == pytest.approx(168)
    assert trip["verdict"] == "acceptable"

    other = client.post("/trips", json={"fare": 80, "gpsKm": 6.5, "gpsMin": 15, "platform": "DiDi", "date": "2024-03-05"})
    assert other.status_code == 201
    assert other.json()["source"] == "gps"
    assert other.json()["platform"] == "didi"

    listed = client.get("/trips", params={"from_date": "2024-03-04", "to_date": "2024-03-04"}).json()
    assert [t["id"] for t in listed] == [trip_id]
    assert [t["platform"] for t in client.get("/trips", params={"platform": "didi"}).json()] == ["didi"]

    assert client.get(f"/trips/{trip_id}").json()["note"] == "aeropuerto"
    assert client.delete(f"/trips/{trip_id}").status_code == 204
    missing = client.get(f"/trips/{trip_id}")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Viaje no encontrado"
    assert client.delete(f"/trips/{trip_id}").status_code == 404


def test_unknown_platform_and_shift(client: TestClient):
    resp = client.post("/trips", json=dict(MANUAL_TRIP, platform="cabify"))
    assert resp.status_code == 201
    assert resp.json()["platform"] == "otra"
    resp = client.post("/trips", json=dict(MANUAL_TRIP, shift_id=9999))
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Jornada no encontrada"


def test_idle_day_transitions_are_no_ops(client: TestClient):
    status_resp = client.get("/day")
    assert status_resp.status_code == 200
    assert status_resp.json()["state"] == "idle"
    assert status_resp.json()["today"]["trip_count"] == 0

    for path, body in (
        ("/day/end", None),
        ("/day/position", {"lat": 19.4326, "lon": -99.1332}),
        ("/day/trip/start", None),
        ("/day/trip/end", {"fare": 50}),
    ):
        resp = client.post(path, json=body)
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "idle"
        assert data["gps_km"] == 0
        assert data["ended"] is None
        assert data["saved_trip"] is None
    assert client.get("/days").json() == []


def test_position_payload_is_validated(client: TestClient):
    client.post("/day/start")
    assert client.post("/day/position", json={"lat": 120, "lon": 0}).status_code == 422


def test_full_work_day(client: TestClient):
    started = client.post("/day/start")
    assert started.status_code == 200
    data = started.json()
    assert data["state"] == "running"
    assert data["gps_status"] == GPS_STATUS_SEARCHING
    shift_id = data["session"]["id"]
    assert data["session"]["status"] == "running"

    again = client.post("/day/start").json()
    assert again["session"]["id"] == shift_id

    assert client.post("/day/position", json={"lat": 19.4326, "lon": -99.1332}).json()["gps_km"] == 0
    tripping = client.post("/day/trip/start").json()
    assert tripping["active_trip"] is not None
    moved = client.post("/day/position", json={"lat": 19.4336, "lon": -99.1332}).json()
    assert moved["gps_km"] == pytest.approx(0.1112, abs=1e-3)
    assert moved["active_trip"]["gps_km"] == pytest.approx(0.1112, abs=1e-3)
    assert moved["gps_status"] == "📍 0.11 km"

    ended_trip = client.post("/day/trip/end", json={"fare": 50, "platform": "didi"}).json()
    assert ended_trip["active_trip"] is None
    saved = ended_trip["saved_trip"]
    assert saved["source"] == "gps"
    assert saved["gps_km"] == 0.11
    assert saved["shift_id"] == shift_id
    assert saved["calculation"]["uses_gps"] is True

    manual = client.post("/trips", json=MANUAL_TRIP).json()
    assert manual["shift_id"] == shift_id

    errored = client.post("/day/gps-error", json={"code": "permission_denied"}).json()
    assert errored["gps_status"] == GPS_ERROR_MESSAGES["permission_denied"]
    assert errored["state"] == "running"

    running = client.get("/day").json()
    assert running["today"]["trip_count"] == 2

    closed = client.post("/day/end")
    assert closed.status_code == 200
    data = closed.json()
    assert data["state"] == "idle"
    ended = data["ended"]
    assert ended["id"] == shift_id
    assert ended["status"] == "ended"
    assert ended["trip_count"] == 2
    assert ended["total_km"] == pytest.approx(10.11)
    expected_net = saved["calculation"]["net_earning"] + manual["calculation"]["net_earning"]
    assert ended["total_net"] == pytest.approx(expected_net)
    assert ended["gps_km"] == pytest.approx(0.1112, abs=1e-3)

    days = client.get("/days").json()
    assert [d["id"] for d in days] == [shift_id]
    assert client.post("/day/end").json()["ended"] is None


def test_summaries_are_zero_filled(client: TestClient):
    client.post("/trips", json=dict(MANUAL_TRIP, date="2024-03-02"))
    client.post("/trips", json=dict(MANUAL_TRIP, date="2024-03-02", platform="didi"))
    resp = client.get("/summaries", params={"from_date": "2024-03-01", "to_date": "2024-03-03"})
    assert resp.status_code == 200
    rows = resp.json()
    assert [row["date"] for row in rows] == ["2024-03-01", "2024-03-02", "2024-03-03"]
    assert [row["trip_count"] for row in rows] == [0, 2, 0]
    assert rows[1]["net"] == pytest.approx(140)
    assert rows[1]["km"] == pytest.approx(20)


def test_stats_window(client: TestClient):
    client.post("/trips", json=MANUAL_TRIP)
    client.post("/trips", json=dict(MANUAL_TRIP, platform="didi", fare=200))
    old_day = (dt.date.today() - dt.timedelta(days=90)).isoformat()
    client.post("/trips", json=dict(MANUAL_TRIP, date=old_day))

    resp = client.get("/stats", params={"days": 7})
    assert resp.status_code == 200
    data = resp.json()
    assert data["window_days"] == 7
    assert data["totals"]["count"] == 2
    assert data["totals"]["km"] == pytest.approx(20)
    platforms = {row["platform"]: row for row in data["by_platform"]}
    assert set(platforms) == {"didi", "uber"}
    assert platforms["didi"]["net_per_trip"] == pytest.approx(160)
    assert len(data["daily"]) == 7
    assert sum(data["verdicts"].values()) == 2
    assert len(data["best_hours"]) == 1
    assert client.get("/stats", params={"days": 0}).status_code == 422
