from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from pocket_budget.core.db import db_session
from pocket_budget.core.logging import (
    get_logger,
    log_event,
    reset_ingestion_context,
    set_ingestion_context,
)
from pocket_budget.core.storage import StorageError
from pocket_budget.modules.categories.service import list_categories
from pocket_budget.modules.expenses.service import SqlExpenseStore, month_bounds
from pocket_budget.modules.ingestion.domain import CategoryRef
from pocket_budget.modules.ingestion.errors import IngestionValidationError, InvalidTransition
from pocket_budget.modules.ingestion.extraction import ExtractionClient
from pocket_budget.modules.ingestion.schemas import CandidateUpdateIn, SessionOut
from pocket_budget.modules.ingestion.service import (
    IngestionController,
    UploadedImage,
    get_registry,
    open_session,
)

router = APIRouter(tags=["ingestion"])
logger = get_logger(__name__)


async def get_controller(session_id: str) -> IngestionController:
    controller = get_registry().get(session_id)
    if controller is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return controller


def get_extractor() -> ExtractionClient:
    return ExtractionClient()


@contextmanager
def _session_scope(controller: IngestionController) -> Iterator[None]:
    token = set_ingestion_context(controller.session_id)
    try:
        yield
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except IngestionValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    finally:
        reset_ingestion_context(token)


def _snapshot(controller: IngestionController) -> SessionOut:
    out = SessionOut.from_controller(controller)
    if controller.session.closed:
        get_registry().discard(controller.session_id)
    return out


@router.post("/ingestion/sessions", response_model=SessionOut, status_code=201)
async def open_session_endpoint(
    year: int | None = None,
    month: int | None = None,
    session: Session = Depends(db_session),
    extractor: ExtractionClient = Depends(get_extractor),
) -> SessionOut:
    today = date.today()
    year = today.year if year is None else year
    month = today.month if month is None else month
    month_bounds(year, month)
    rows = await run_in_threadpool(list_categories, session)
    categories = [CategoryRef(id=str(c.id), name=c.name) for c in rows]
    controller = open_session(
        store=SqlExpenseStore(),
        categories=categories,
        year=year,
        month=month,
        extractor=extractor,
    )
    get_registry().add(controller)
    return SessionOut.from_controller(controller)


@router.get("/ingestion/sessions/{session_id}", response_model=SessionOut)
def get_session_endpoint(
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    return SessionOut.from_controller(controller)


@router.post("/ingestion/sessions/{session_id}/images", response_model=SessionOut)
async def select_images_endpoint(
    uploads: list[UploadFile] = File(...),
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    files: list[UploadedImage] = []
    for upload in uploads:
        body = await upload.read()
        log_event(
            logger,
            "upload.received",
            ingestion_session_id=controller.session_id,
            filename=upload.filename or "upload.bin",
            content_type=upload.content_type,
            byte_size=len(body),
        )
        files.append(
            UploadedImage(
                filename=upload.filename or "upload.bin",
                content_type=upload.content_type,
                body=body,
            )
        )
    with _session_scope(controller):
        controller.select_images(files)
    return _snapshot(controller)


@router.get("/ingestion/sessions/{session_id}/images/{index}/preview")
def preview_image_endpoint(
    index: int,
    controller: IngestionController = Depends(get_controller),
) -> Response:
    try:
        image, body = controller.read_preview(index)
    except (IndexError, StorageError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found") from e
    return Response(content=body, media_type=image.content_type or "application/octet-stream")


@router.delete("/ingestion/sessions/{session_id}/images/{index}", response_model=SessionOut)
async def remove_image_endpoint(
    index: int,
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        controller.remove_image(index)
    return _snapshot(controller)


@router.post("/ingestion/sessions/{session_id}/analyze", response_model=SessionOut)
async def analyze_endpoint(
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        await controller.start_analysis()
    return _snapshot(controller)


@router.post("/ingestion/sessions/{session_id}/retry", response_model=SessionOut)
async def retry_endpoint(
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        controller.retry()
    return _snapshot(controller)


@router.post("/ingestion/sessions/{session_id}/reupload", response_model=SessionOut)
async def reupload_endpoint(
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        controller.reupload()
    return _snapshot(controller)


@router.patch(
    "/ingestion/sessions/{session_id}/candidates/{candidate_id}", response_model=SessionOut
)
async def edit_candidate_endpoint(
    candidate_id: str,
    payload: CandidateUpdateIn,
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        controller.edit_candidate(candidate_id, payload.model_dump(exclude_unset=True))
    return _snapshot(controller)


@router.post("/ingestion/sessions/{session_id}/commit", response_model=SessionOut)
async def commit_endpoint(
    controller: IngestionController = Depends(get_controller),
) -> SessionOut:
    with _session_scope(controller):
        await controller.confirm()
    return _snapshot(controller)


@router.delete("/ingestion/sessions/{session_id}")
async def close_session_endpoint(session_id: str) -> Response:
    get_registry().close(session_id)
    return Response(status_code=204)
