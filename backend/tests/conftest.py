from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Generator

_DATA_DIR = Path(tempfile.mkdtemp(prefix="rutaflow-tests-"))
os.environ.setdefault("RF_SQLITE_PATH", str(_DATA_DIR / "app.db"))
os.environ.setdefault("RF_EXPORT_DIR", str(_DATA_DIR / "exports"))
os.environ.setdefault("RF_TIMEZONE", "America/Mexico_City")
os.environ.pop("RF_ASSISTANT_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from rutaflow import models
from rutaflow.calculations import DriverConfig, FixedCostItem, default_fixed_costs
from rutaflow.database import get_db
from rutaflow.main import app


@pytest.fixture(scope="session")
def temp_db_path() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "test.db"
        yield path


@pytest.fixture(scope="session")
def engine(temp_db_path: Path):
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionTesting = sessionmaker(bind=connection, autoflush=False, autocommit=False, future=True)
    session = SessionTesting()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(scope="function")
def client(session: Session) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.runtime_state.reset()


@pytest.fixture()
def base_config() -> DriverConfig:
    return DriverConfig(
        gas_price_per_liter=24.5,
        km_per_liter=12,
        target_hourly_rate=150,
        target_per_km_rate=5,
        platform_commission=25,
        fixed_costs=default_fixed_costs(),
    )


@pytest.fixture()
def with_fixed_costs(base_config: DriverConfig):
    def build(**items: FixedCostItem) -> DriverConfig:
        costs = dict(base_config.fixed_costs)
        costs.update(items)
        return DriverConfig(
            gas_price_per_liter=base_config.gas_price_per_liter,
            km_per_liter=base_config.km_per_liter,
            target_hourly_rate=base_config.target_hourly_rate,
            target_per_km_rate=base_config.target_per_km_rate,
            platform_commission=base_config.platform_commission,
            fixed_costs=costs,
        )

    return build
