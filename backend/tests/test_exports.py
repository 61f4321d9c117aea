from __future__ import annotations

from io import BytesIO
from pathlib import Path

from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy.orm import Session

from rutaflow import models


def _seed(client: TestClient) -> None:
    client.post("/trips", json={"fare": 100, "dest_km": 12, "dest_min": 30, "date": "2024-03-02"})
    client.post("/trips", json={"fare": 60, "dest_km": 5, "dest_min": 12, "platform": "didi", "date": "2024-03-03"})
    client.post("/trips", json={"fare": 75, "dest_km": 7, "dest_min": 14, "date": "2024-04-01"})


def test_xlsx_export_and_download(client: TestClient, session: Session):
    _seed(client)
    resp = client.post("/exports", json={"format": "xlsx", "range_start": "2024-03-01", "range_end": "2024-03-31"})
    assert resp.status_code == 201
    data = resp.json()
    assert data["trip_count"] == 2
    assert len(data["checksum"]) == 64
    assert Path(data["path"]).exists()
    assert session.get(models.ExportRecord, data["id"]) is not None

    download = client.get(f"/exports/{data['id']}/download")
    assert download.status_code == 200
    wb = load_workbook(BytesIO(download.content))
    ws = wb["Viajes"]
    assert ws["A1"].value == "Fecha"
    assert ws["A2"].value == "2024-03-02"
    assert ws["B3"].value == "didi"
    assert ws["I2"].value == 66
    assert ws.max_row == 3


def test_pdf_export(client: TestClient):
    _seed(client)
    resp = client.post("/exports", json={"format": "pdf", "range_start": "2024-03-01", "range_end": "2024-04-30"})
    assert resp.status_code == 201
    assert resp.json()["trip_count"] == 3
    download = client.get(f"/exports/{resp.json()['id']}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.content.startswith(b"%PDF")


def test_export_validation(client: TestClient):
    bad_range = {"format": "xlsx", "range_start": "2024-03-31", "range_end": "2024-03-01"}
    assert client.post("/exports", json=bad_range).status_code == 422
    bad_format = {"format": "csv", "range_start": "2024-03-01", "range_end": "2024-03-31"}
    assert client.post("/exports", json=bad_format).status_code == 422
    assert client.get("/exports/9999/download").status_code == 404
