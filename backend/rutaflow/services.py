from __future__ import annotations

import datetime as dt
import hashlib
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from zoneinfo import ZoneInfo

from fastapi import HTTPException, status
from openpyxl import Workbook
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from .calculations import (
    VERDICT_ACCEPTABLE,
    VERDICT_GOOD,
    VERDICT_POOR,
    TripCalculation,
    TripTotals,
    calculate_trip,
    classify_trip,
    score_trip,
)
from .config import settings
from .models import ExportRecord, ShiftSession, Trip
from .state import RuntimeState
from .tracker import ActiveTrip, GeoFix, Odometer, ShiftSessionTracker, ShiftSnapshot

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc
LOCAL_TZ = ZoneInfo(settings.timezone)

TRIP_FIELDS = ("fare", "pickup_km", "pickup_min", "dest_km", "dest_min", "gps_km", "gps_min")


def _now() -> dt.datetime:
    return dt.datetime.now(UTC)


def _ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(UTC)


def _local_date(value: dt.datetime) -> dt.date:
    return _ensure_utc(value).astimezone(LOCAL_TZ).date()


def _local_today(now: Optional[dt.datetime] = None) -> dt.date:
    return _local_date(now or _now())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def update_config(db: Session, state: RuntimeState, updates: Dict[str, Any]) -> Dict[str, Any]:
    state.apply(updates)
    state.persist(db)
    logger.info("configuration saved")
    return state.snapshot()


# ---------------------------------------------------------------------------
# Trips
# ---------------------------------------------------------------------------


def evaluate(trip: Any, state: RuntimeState) -> Tuple[TripCalculation, str, int]:
    config = state.config
    calculation = calculate_trip(trip, config, state.policy)
    return calculation, classify_trip(calculation, config, state.policy), score_trip(calculation, config)


def trip_preview(state: RuntimeState, draft: Dict[str, Any]) -> Dict[str, Any]:
    calculation, verdict, score = evaluate(draft, state)
    return {"calculation": calculation.as_dict(), "verdict": verdict, "score": score}


def trip_payload(trip: Trip, state: RuntimeState) -> Dict[str, Any]:
    calculation, verdict, score = evaluate(trip, state)
    data = {name: getattr(trip, name) for name in TRIP_FIELDS}
    data.update(
        {
            "id": trip.id,
            "platform": trip.platform,
            "source": trip.source,
            "note": trip.note,
            "date": trip.date,
            "created_at": trip.created_at_utc,
            "shift_id": trip.shift_id,
            "calculation": calculation.as_dict(),
            "verdict": verdict,
            "score": score,
        }
    )
    return data


def create_trip(db: Session, state: RuntimeState, data: Dict[str, Any]) -> Trip:
    created_at = _ensure_utc(data["created_at"]) if data.get("created_at") else _now()
    shift_id = data.get("shift_id")
    if shift_id is not None:
        if db.get(ShiftSession, shift_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Jornada no encontrada")
    else:
        running = get_running_shift(db)
        shift_id = running.id if running else None
    trip = Trip(
        platform=data.get("platform") or "uber",
        source=data.get("source") or "manual",
        note=data.get("note"),
        date=data.get("date") or _local_date(created_at),
        created_at=created_at,
        shift_id=shift_id,
        **{name: float(data.get(name) or 0.0) for name in TRIP_FIELDS},
    )
    db.add(trip)
    db.commit()
    db.refresh(trip)
    logger.info("trip %s saved (%s, fare %.2f, shift %s)", trip.id, trip.platform, trip.fare, trip.shift_id)
    return trip


def get_trip(db: Session, trip_id: int) -> Trip:
    trip = db.get(Trip, trip_id)
    if not trip:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Viaje no encontrado")
    return trip


def list_trips(
    db: Session,
    start_date: Optional[dt.date] = None,
    end_date: Optional[dt.date] = None,
    platform: Optional[str] = None,
) -> List[Trip]:
    query = db.query(Trip)
    if start_date:
        query = query.filter(Trip.date >= start_date)
    if end_date:
        query = query.filter(Trip.date <= end_date)
    if platform:
        query = query.filter(Trip.platform == platform.lower())
    return query.order_by(Trip.created_at.desc(), Trip.id.desc()).all()


def delete_trip(db: Session, trip_id: int) -> None:
    trip = get_trip(db, trip_id)
    db.delete(trip)
    db.commit()
    logger.info("trip %s deleted", trip_id)


# ---------------------------------------------------------------------------
# Work day
# ---------------------------------------------------------------------------


def get_running_shift(db: Session) -> Optional[ShiftSession]:
    return (
        db.query(ShiftSession)
        .filter(ShiftSession.status == "running")
        .order_by(ShiftSession.start_time.desc())
        .first()
    )


def _fix(lat: Optional[float], lon: Optional[float]) -> Optional[GeoFix]:
    if lat is None or lon is None:
        return None
    return GeoFix(lat=lat, lon=lon)


def _load_tracker(db: Session, state: RuntimeState) -> Tuple[ShiftSessionTracker, Optional[ShiftSession]]:
    row = get_running_shift(db)
    tracker = ShiftSessionTracker(noise_threshold_km=state.gps_noise_threshold_km)
    if row is None:
        return tracker, None
    tracker.session = ShiftSnapshot(
        started_at=row.start_time_utc,
        odometer=Odometer(km=row.gps_km or 0.0, last_fix=_fix(row.last_lat, row.last_lon)),
        shift_id=row.id,
    )
    if row.trip_started_at is not None:
        tracker.active_trip = ActiveTrip(
            started_at=row.trip_started_at_utc,
            odometer=Odometer(km=row.trip_gps_km or 0.0, last_fix=_fix(row.trip_last_lat, row.trip_last_lon)),
        )
    tracker.gps_status = row.gps_status or ""
    return tracker, row


def _store_tracker(db: Session, row: ShiftSession, tracker: ShiftSessionTracker) -> None:
    session = tracker.session
    if session is not None:
        row.gps_km = session.odometer.km
        last_fix = session.odometer.last_fix
        row.last_lat = last_fix.lat if last_fix else None
        row.last_lon = last_fix.lon if last_fix else None
    trip = tracker.active_trip
    if trip is not None:
        row.trip_started_at = trip.started_at
        row.trip_gps_km = trip.odometer.km
        trip_fix = trip.odometer.last_fix
        row.trip_last_lat = trip_fix.lat if trip_fix else None
        row.trip_last_lon = trip_fix.lon if trip_fix else None
    else:
        row.trip_started_at = None
        row.trip_gps_km = 0.0
        row.trip_last_lat = None
        row.trip_last_lon = None
    row.gps_status = tracker.gps_status
    db.add(row)
    db.commit()
    db.refresh(row)


def _today_totals(db: Session, state: RuntimeState, now: dt.datetime) -> Dict[str, Any]:
    today = _local_today(now)
    totals = TripTotals()
    for trip in db.query(Trip).filter(Trip.date == today).all():
        totals.add(calculate_trip(trip, state.config, state.policy))
    return {"date": today, "net": totals.net, "km": totals.km, "trip_count": totals.count}


def day_status(
    db: Session,
    state: RuntimeState,
    now: Optional[dt.datetime] = None,
    tracker: Optional[ShiftSessionTracker] = None,
    row: Optional[ShiftSession] = None,
) -> Dict[str, Any]:
    now = now or _now()
    if tracker is None:
        tracker, row = _load_tracker(db, state)
    result: Dict[str, Any] = {
        "state": tracker.state,
        "session": row if tracker.is_running else None,
        "elapsed_seconds": tracker.elapsed_seconds(now),
        "gps_km": tracker.distance_km,
        "gps_status": tracker.gps_status,
        "active_trip": None,
        "today": _today_totals(db, state, now),
    }
    if tracker.active_trip is not None:
        result["active_trip"] = {
            "started_at": tracker.active_trip.started_at,
            "elapsed_seconds": tracker.trip_elapsed_seconds(now),
            "gps_km": tracker.active_trip.odometer.km,
        }
    return result


def start_day(db: Session, state: RuntimeState, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    now = now or _now()
    tracker, row = _load_tracker(db, state)
    if tracker.is_running:
        return day_status(db, state, now, tracker, row)
    row = ShiftSession(date=_local_date(now), status="running", start_time=now, gps_km=0.0)
    db.add(row)
    db.commit()
    db.refresh(row)
    tracker.start(now, shift_id=row.id)
    _store_tracker(db, row, tracker)
    logger.info("day %s started (shift %s)", row.date, row.id)
    return day_status(db, state, now, tracker, row)


def record_position(
    db: Session,
    state: RuntimeState,
    lat: float,
    lon: float,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    tracker, row = _load_tracker(db, state)
    if row is None:
        return day_status(db, state, now, tracker, row)
    tracker.record_fix(lat, lon)
    _store_tracker(db, row, tracker)
    return day_status(db, state, now, tracker, row)


def report_gps_error(db: Session, state: RuntimeState, code: str) -> Dict[str, Any]:
    tracker, row = _load_tracker(db, state)
    message = tracker.report_location_error(code)
    if row is not None:
        _store_tracker(db, row, tracker)
    result = day_status(db, state, None, tracker, row)
    result["gps_status"] = message
    return result


def start_active_trip(db: Session, state: RuntimeState, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    now = now or _now()
    tracker, row = _load_tracker(db, state)
    if row is not None and tracker.start_trip(now):
        _store_tracker(db, row, tracker)
        logger.info("trip started in shift %s", row.id)
    return day_status(db, state, now, tracker, row)


def end_active_trip(
    db: Session,
    state: RuntimeState,
    fare: float,
    platform: str,
    note: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    now = now or _now()
    tracker, row = _load_tracker(db, state)
    finished = tracker.end_trip(now) if row is not None else None
    if finished is None:
        return day_status(db, state, now, tracker, row)
    _store_tracker(db, row, tracker)
    trip = create_trip(
        db,
        state,
        {
            "fare": fare,
            "platform": platform,
            "note": note,
            "gps_km": finished.gps_km,
            "gps_min": finished.gps_min,
            "source": "gps",
            "created_at": finished.started_at,
            "date": _local_date(finished.ended_at),
            "shift_id": finished.shift_id,
        },
    )
    result = day_status(db, state, now, tracker, row)
    result["saved_trip"] = trip_payload(trip, state)
    return result


def _trips_for_shift(db: Session, row: ShiftSession) -> List[Trip]:
    return (
        db.query(Trip)
        .filter(or_(Trip.shift_id == row.id, and_(Trip.shift_id.is_(None), Trip.date == row.date)))
        .all()
    )


def end_day(db: Session, state: RuntimeState, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    now = now or _now()
    tracker, row = _load_tracker(db, state)
    if row is None:
        return day_status(db, state, now, tracker, row)
    totals = tracker.end(_trips_for_shift(db, row), state.config, state.policy, now)
    row.status = "ended"
    row.stop_time = totals.ended_at
    row.gps_km = totals.gps_km
    row.total_net = totals.net
    row.total_km = totals.km
    row.trip_count = totals.trip_count
    row.trip_started_at = None
    row.trip_gps_km = 0.0
    row.trip_last_lat = None
    row.trip_last_lon = None
    row.gps_status = None
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "day %s ended (shift %s): %d trips, net %.2f, %.2f km",
        row.date,
        row.id,
        totals.trip_count,
        totals.net,
        totals.km,
    )
    result = day_status(db, state, now, tracker, None)
    result["ended"] = row
    return result


def list_days(
    db: Session,
    start_date: Optional[dt.date] = None,
    end_date: Optional[dt.date] = None,
) -> List[ShiftSession]:
    query = db.query(ShiftSession).filter(ShiftSession.status == "ended")
    if start_date:
        query = query.filter(ShiftSession.date >= start_date)
    if end_date:
        query = query.filter(ShiftSession.date <= end_date)
    return query.order_by(ShiftSession.date.desc(), ShiftSession.start_time.desc()).all()


def range_day_summaries(
    db: Session,
    state: RuntimeState,
    start_day: dt.date,
    end_day: dt.date,
) -> List[Dict[str, Any]]:
    totals: Dict[dt.date, TripTotals] = defaultdict(TripTotals)
    for trip in list_trips(db, start_day, end_day):
        totals[trip.date].add(calculate_trip(trip, state.config, state.policy))
    summaries: List[Dict[str, Any]] = []
    current = start_day
    while current <= end_day:
        day_totals = totals.get(current, TripTotals())
        summaries.append(
            {
                "date": current,
                "net": day_totals.net,
                "km": day_totals.km,
                "trip_count": day_totals.count,
            }
        )
        current += dt.timedelta(days=1)
    return summaries


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def _window(days: int, now: Optional[dt.datetime] = None) -> Tuple[dt.date, dt.date]:
    days = max(int(days), 1)
    end = _local_today(now)
    return end - dt.timedelta(days=days - 1), end


def compute_stats(
    db: Session,
    state: RuntimeState,
    days: int = 30,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    start, end = _window(days, now)
    trips = list_trips(db, start, end)
    totals = TripTotals()
    by_platform: Dict[str, TripTotals] = defaultdict(TripTotals)
    by_hour: Dict[int, TripTotals] = defaultdict(TripTotals)
    by_weekday: Dict[int, TripTotals] = defaultdict(TripTotals)
    verdicts = {VERDICT_GOOD: 0, VERDICT_ACCEPTABLE: 0, VERDICT_POOR: 0}
    for trip in trips:
        calculation, verdict, _score = evaluate(trip, state)
        totals.add(calculation)
        by_platform[trip.platform or "uber"].add(calculation)
        by_hour[trip.created_at_utc.astimezone(LOCAL_TZ).hour].add(calculation)
        by_weekday[trip.date.weekday()].add(calculation)
        verdicts[verdict] += 1
    hour_rows = [
        {"hour": hour, "count": bucket.count, "net": bucket.net, "average_net": bucket.net_per_trip}
        for hour, bucket in sorted(by_hour.items())
    ]
    best_hours = [row["hour"] for row in sorted(hour_rows, key=lambda row: (-row["average_net"], row["hour"]))[:3]]
    return {
        "window_days": (end - start).days + 1,
        "from_date": start,
        "to_date": end,
        "totals": totals.as_dict(),
        "by_platform": [
            {"platform": platform, "count": bucket.count, "net": bucket.net, "net_per_trip": bucket.net_per_trip}
            for platform, bucket in sorted(by_platform.items())
        ],
        "by_hour": hour_rows,
        "best_hours": best_hours,
        "by_weekday": [
            {"weekday": weekday, "count": bucket.count, "net": bucket.net}
            for weekday, bucket in sorted(by_weekday.items())
        ],
        "daily": range_day_summaries(db, state, start, end),
        "verdicts": verdicts,
    }


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def _export_rows(trips: Iterable[Trip], state: RuntimeState) -> List[List[Any]]:
    rows: List[List[Any]] = []
    for trip in trips:
        calculation, verdict, _score = evaluate(trip, state)
        rows.append(
            [
                trip.date.isoformat(),
                trip.platform,
                round(calculation.fare, 2),
                round(calculation.total_km, 2),
                round(calculation.total_min, 1),
                round(calculation.fuel_cost, 2),
                round(calculation.platform_fee, 2),
                round(calculation.fixed_cost, 2),
                round(calculation.net_earning, 2),
                round(calculation.net_per_hour, 2),
                verdict,
            ]
        )
    return rows


EXPORT_HEADER = ["Fecha", "Plataforma", "Tarifa", "Km", "Min", "Gasolina", "Comisión", "Fijos", "Neto", "Neto/h", "Veredicto"]


def _write_pdf(path: Path, title: str, rows: List[List[Any]]) -> None:
    pagesize = landscape(A4)
    pdf = canvas.Canvas(str(path), pagesize=pagesize)
    width, height = pagesize
    y = height - 2 * cm
    pdf.setTitle(title)
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(2 * cm, y, title)
    y -= 1 * cm
    pdf.setFont("Helvetica", 10)
    pdf.drawString(2 * cm, y, " | ".join(EXPORT_HEADER))
    y -= 0.8 * cm
    for row in rows:
        pdf.drawString(2 * cm, y, " | ".join(str(value) for value in row))
        y -= 0.7 * cm
        if y < 2 * cm:
            pdf.showPage()
            y = height - 2 * cm
            pdf.setFont("Helvetica", 10)
    pdf.save()


def _write_xlsx(path: Path, rows: List[List[Any]]) -> None:
    wb = Workbook()
    ws = wb.active
    ws.title = "Viajes"
    ws.append(EXPORT_HEADER)
    for row in rows:
        ws.append(row)
    wb.save(path)


def _checksum_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def export_trips(
    db: Session,
    state: RuntimeState,
    export_format: str,
    start_date: dt.date,
    end_date: dt.date,
) -> ExportRecord:
    if export_format not in {"pdf", "xlsx"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Formato de exportación no soportado")
    if end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Rango de fechas inválido")
    trips = sorted(list_trips(db, start_date, end_date), key=lambda trip: (trip.date, trip.id))
    rows = _export_rows(trips, state)

    filename = f"viajes_{start_date}_{end_date}_{int(_now().timestamp())}.{export_format}"
    path = settings.export_dir / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    if export_format == "pdf":
        _write_pdf(path, f"RutaFlow viajes {start_date} a {end_date}", rows)
    else:
        _write_xlsx(path, rows)

    export = ExportRecord(
        format=export_format,
        range_start=start_date,
        range_end=end_date,
        path=str(path),
        checksum=_checksum_file(path),
        trip_count=len(rows),
    )
    db.add(export)
    db.commit()
    db.refresh(export)
    logger.info("export %s written to %s (%d trips)", export.id, path, len(rows))
    return export


def get_export(db: Session, export_id: int) -> ExportRecord:
    export = db.get(ExportRecord, export_id)
    if not export or not Path(export.path).exists():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exportación no encontrada")
    return export
