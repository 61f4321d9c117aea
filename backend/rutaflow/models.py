from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


UTC = dt.timezone.utc


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ShiftSession(Base):
    __tablename__ = "shift_sessions"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="running", index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    stop_time = Column(DateTime(timezone=True), nullable=True)
    gps_km = Column(Float, nullable=False, default=0.0)
    last_lat = Column(Float, nullable=True)
    last_lon = Column(Float, nullable=True)
    gps_status = Column(String(120), nullable=True)
    trip_started_at = Column(DateTime(timezone=True), nullable=True)
    trip_gps_km = Column(Float, nullable=False, default=0.0)
    trip_last_lat = Column(Float, nullable=True)
    trip_last_lon = Column(Float, nullable=True)
    total_net = Column(Float, nullable=True)
    total_km = Column(Float, nullable=True)
    trip_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    trips = relationship("Trip", back_populates="shift")

    @property
    def start_time_utc(self) -> dt.datetime:
        return _as_utc(self.start_time)

    @property
    def trip_started_at_utc(self) -> dt.datetime | None:
        return _as_utc(self.trip_started_at) if self.trip_started_at else None


class Trip(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)
    platform = Column(String(20), nullable=False, default="uber", index=True)
    fare = Column(Float, nullable=False, default=0.0)
    pickup_km = Column(Float, nullable=False, default=0.0)
    pickup_min = Column(Float, nullable=False, default=0.0)
    dest_km = Column(Float, nullable=False, default=0.0)
    dest_min = Column(Float, nullable=False, default=0.0)
    gps_km = Column(Float, nullable=False, default=0.0)
    gps_min = Column(Float, nullable=False, default=0.0)
    source = Column(String(20), nullable=False, default="manual")
    note = Column(Text, nullable=True)
    date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    shift_id = Column(Integer, ForeignKey("shift_sessions.id", ondelete="SET NULL"), nullable=True, index=True)

    shift = relationship("ShiftSession", back_populates="trips")

    @property
    def created_at_utc(self) -> dt.datetime:
        return _as_utc(self.created_at)


class ExportRecord(Base):
    __tablename__ = "exports"

    id = Column(Integer, primary_key=True)
    format = Column(String(10), nullable=False)
    range_start = Column(Date, nullable=False)
    range_end = Column(Date, nullable=False)
    path = Column(String(255), nullable=False)
    checksum = Column(String(128), nullable=False)
    trip_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
