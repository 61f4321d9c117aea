from __future__ import annotations

import datetime as dt
import logging
import mimetypes
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Query, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from . import models
from .assistant import (
    CHAT_FAILURE_NOTICE,
    EXTRACTION_FAILURE_NOTICE,
    NOT_CONFIGURED_NOTICE,
    AssistantClient,
    AssistantError,
    build_context_summary,
)
from .config import settings
from .database import db_session, engine, get_db
from .logging_setup import configure_logging
from .schemas import (
    ChatRequest,
    ChatResponse,
    ConfigResponse,
    ConfigUpdateRequest,
    ContextResponse,
    DailyNetResponse,
    DayStatusResponse,
    ExportRequest,
    ExportResponse,
    ExtractionResponse,
    GpsErrorRequest,
    PositionRequest,
    ShiftSessionResponse,
    StatsResponse,
    TripCreateRequest,
    TripEndRequest,
    TripPreviewRequest,
    TripPreviewResponse,
    TripResponse,
)
from .services import (
    compute_stats,
    create_trip,
    day_status,
    delete_trip,
    end_active_trip,
    end_day,
    export_trips,
    get_export,
    get_trip,
    list_days,
    list_trips,
    range_day_summaries,
    record_position,
    report_gps_error,
    start_active_trip,
    start_day,
    trip_payload,
    trip_preview,
    update_config,
)
from .state import RuntimeState

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

runtime_state = RuntimeState(settings)
with db_session() as session:
    try:
        runtime_state.load_from_db(session)
    except Exception:
        logger.exception("could not load stored configuration; using defaults")

app = FastAPI(title=settings.app_name)
app.state.runtime_state = runtime_state
app.state.assistant = AssistantClient(
    settings.assistant_api_url,
    settings.assistant_api_key,
    settings.assistant_model,
    settings.assistant_timeout,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def get_state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


def get_assistant(request: Request) -> AssistantClient:
    return request.app.state.assistant


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/config", response_model=ConfigResponse)
def config_get(state: RuntimeState = Depends(get_state)) -> ConfigResponse:
    return state.snapshot()


@app.put("/config", response_model=ConfigResponse)
def config_put(
    payload: ConfigUpdateRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> ConfigResponse:
    return update_config(db, state, payload.model_dump(exclude_none=True))


@app.post("/trips/preview", response_model=TripPreviewResponse)
def trips_preview(payload: TripPreviewRequest, state: RuntimeState = Depends(get_state)) -> TripPreviewResponse:
    return trip_preview(state, payload.model_dump())


@app.post("/trips", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
def trips_create(
    payload: TripCreateRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> TripResponse:
    trip = create_trip(db, state, payload.model_dump())
    return trip_payload(trip, state)


@app.get("/trips", response_model=List[TripResponse])
def trips_list(
    from_date: Optional[dt.date] = Query(None),
    to_date: Optional[dt.date] = Query(None),
    platform: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> List[TripResponse]:
    return [trip_payload(trip, state) for trip in list_trips(db, from_date, to_date, platform)]


@app.get("/trips/{trip_id}", response_model=TripResponse)
def trips_detail(
    trip_id: int,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> TripResponse:
    return trip_payload(get_trip(db, trip_id), state)


@app.delete("/trips/{trip_id}", status_code=status.HTTP_204_NO_CONTENT)
def trips_delete(trip_id: int, db: Session = Depends(get_db)) -> Response:
    delete_trip(db, trip_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/day", response_model=DayStatusResponse)
def day_get(db: Session = Depends(get_db), state: RuntimeState = Depends(get_state)) -> DayStatusResponse:
    return day_status(db, state)


@app.post("/day/start", response_model=DayStatusResponse)
def day_start(db: Session = Depends(get_db), state: RuntimeState = Depends(get_state)) -> DayStatusResponse:
    return start_day(db, state)


@app.post("/day/end", response_model=DayStatusResponse)
def day_end(db: Session = Depends(get_db), state: RuntimeState = Depends(get_state)) -> DayStatusResponse:
    return end_day(db, state)


@app.post("/day/position", response_model=DayStatusResponse)
def day_position(
    payload: PositionRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> DayStatusResponse:
    return record_position(db, state, payload.lat, payload.lon)


@app.post("/day/gps-error", response_model=DayStatusResponse)
def day_gps_error(
    payload: GpsErrorRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> DayStatusResponse:
    return report_gps_error(db, state, payload.code)


@app.post("/day/trip/start", response_model=DayStatusResponse)
def day_trip_start(db: Session = Depends(get_db), state: RuntimeState = Depends(get_state)) -> DayStatusResponse:
    return start_active_trip(db, state)


@app.post("/day/trip/end", response_model=DayStatusResponse)
def day_trip_end(
    payload: TripEndRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> DayStatusResponse:
    return end_active_trip(db, state, payload.fare, payload.platform, payload.note)


@app.get("/days", response_model=List[ShiftSessionResponse])
def days_list(
    from_date: Optional[dt.date] = Query(None),
    to_date: Optional[dt.date] = Query(None),
    db: Session = Depends(get_db),
) -> List[ShiftSessionResponse]:
    return list_days(db, from_date, to_date)


@app.get("/summaries", response_model=List[DailyNetResponse])
def summaries_list(
    from_date: dt.date = Query(...),
    to_date: dt.date = Query(...),
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> List[DailyNetResponse]:
    return range_day_summaries(db, state, from_date, to_date)


@app.get("/stats", response_model=StatsResponse)
def stats_get(
    days: int = Query(30, ge=1, le=366),
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> StatsResponse:
    return compute_stats(db, state, days)


@app.get("/assistant/context", response_model=ContextResponse)
def assistant_context(db: Session = Depends(get_db), state: RuntimeState = Depends(get_state)) -> ContextResponse:
    stats = compute_stats(db, state, settings.summary_window_days)
    return ContextResponse(context=build_context_summary(stats, state.config))


@app.post("/assistant/chat", response_model=ChatResponse)
def assistant_chat(
    payload: ChatRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
    assistant: AssistantClient = Depends(get_assistant),
) -> ChatResponse:
    if not assistant.configured:
        return ChatResponse(notice=NOT_CONFIGURED_NOTICE)
    context = build_context_summary(compute_stats(db, state, settings.summary_window_days), state.config)
    try:
        reply = assistant.chat(context, [message.model_dump() for message in payload.messages])
    except AssistantError as exc:
        logger.warning("assistant chat failed: %s", exc)
        return ChatResponse(notice=CHAT_FAILURE_NOTICE)
    return ChatResponse(reply=reply)


@app.post("/assistant/extract", response_model=ExtractionResponse)
def assistant_extract(
    file: UploadFile = File(...),
    assistant: AssistantClient = Depends(get_assistant),
) -> ExtractionResponse:
    if not assistant.configured:
        return ExtractionResponse(notice=NOT_CONFIGURED_NOTICE)
    image = file.file.read()
    media_type = file.content_type or mimetypes.guess_type(file.filename or "")[0]
    try:
        draft = assistant.extract_trip(image, media_type)
    except AssistantError as exc:
        logger.warning("trip extraction failed: %s", exc)
        return ExtractionResponse(notice=EXTRACTION_FAILURE_NOTICE)
    return ExtractionResponse(**draft)


@app.post("/exports", response_model=ExportResponse, status_code=status.HTTP_201_CREATED)
def exports_create(
    payload: ExportRequest,
    db: Session = Depends(get_db),
    state: RuntimeState = Depends(get_state),
) -> ExportResponse:
    return export_trips(db, state, payload.format, payload.range_start, payload.range_end)


@app.get("/exports/{export_id}/download")
def exports_download(export_id: int, db: Session = Depends(get_db)) -> FileResponse:
    export = get_export(db, export_id)
    path = Path(export.path)
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=path.name)
