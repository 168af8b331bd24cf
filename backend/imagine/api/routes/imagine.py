"""Imagine API endpoints: thin HTTP layer over in-memory ImagineSession objects.

Long-running work (survey, render runs) starts in the background and the
client polls GET /imagine/sessions/{id} for phase, progress and narration.
"""

import time
import uuid

import structlog
from fastapi import APIRouter, UploadFile
from fastapi.responses import JSONResponse, Response

from imagine.config import settings
from imagine.errors import ImagineError, SessionNotFoundError
from imagine.models.contracts import (
    ActionResponse,
    CreateSessionResponse,
    ErrorResponse,
    GeometryEstimate,
    PhotoUrlRequest,
    PromptRequest,
    SessionState,
    VolumeRequest,
)
from imagine.utils.http import download_photo
from imagine.utils.image import InvalidPhotoError, sniff_mime_type
from imagine.workflows.imagine_session import ImagineSession, build_models

logger = structlog.get_logger()

router = APIRouter(tags=["imagine"])

# One session per browser; state lives in this process only
_sessions: dict[str, ImagineSession] = {}

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def _new_session(session_id: str) -> ImagineSession:
    model, audit_model = build_models()
    return ImagineSession(session_id, model, audit_model)


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )


def _evict_idle_sessions() -> None:
    now = time.monotonic()
    for session_id, session in list(_sessions.items()):
        idle = session.idle_for(now)
        # A running survey or render keeps its session alive
        if idle > settings.session_ttl_seconds and not session.busy:
            del _sessions[session_id]
            session.close()
            logger.info("session_evicted", session_id=session_id, idle_seconds=round(idle))


def _get_session(session_id: str) -> ImagineSession:
    """Look up a live session and mark it as used. Raises SessionNotFoundError."""
    _evict_idle_sessions()
    session = _sessions.get(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    session.touch()
    return session


def _ingest(session: ImagineSession, data: bytes) -> JSONResponse | ActionResponse:
    if len(data) > settings.max_photo_bytes:
        return _error(
            413,
            "photo_too_large",
            f"Photo exceeds {settings.max_photo_bytes // (1024 * 1024)} MB limit",
        )
    try:
        run_id = session.ingest(data)
    except InvalidPhotoError as exc:
        return _error(422, "invalid_photo", str(exc))
    return ActionResponse(run_id=run_id)


@router.post("/imagine/sessions", status_code=201, response_model=CreateSessionResponse)
async def create_session() -> CreateSessionResponse:
    _evict_idle_sessions()
    session_id = str(uuid.uuid4())
    _sessions[session_id] = _new_session(session_id)
    logger.info("session_created", session_id=session_id)
    return CreateSessionResponse(session_id=session_id)


@router.get(
    "/imagine/sessions/{session_id}",
    response_model=SessionState,
    responses={404: {"model": ErrorResponse}},
)
async def get_session(session_id: str) -> SessionState:
    return _get_session(session_id).snapshot()


@router.delete("/imagine/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str) -> Response:
    session = _get_session(session_id)
    del _sessions[session_id]
    session.close()
    logger.info("session_deleted", session_id=session_id)
    return Response(status_code=204)


@router.post(
    "/imagine/sessions/{session_id}/photo",
    status_code=202,
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse}, 413: {"model": ErrorResponse}},
)
async def upload_photo(session_id: str, file: UploadFile) -> ActionResponse | JSONResponse:
    """Ingest a room photo and start the structural survey."""
    session = _get_session(session_id)
    if file.content_type and not file.content_type.startswith("image/"):
        return _error(422, "invalid_photo", f"Expected an image, got {file.content_type}")
    # Read one byte past the limit so oversize uploads are detected without buffering them whole
    data = await file.read(settings.max_photo_bytes + 1)
    return _ingest(session, data)


@router.post(
    "/imagine/sessions/{session_id}/photo/url",
    status_code=202,
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def upload_photo_from_url(
    session_id: str, body: PhotoUrlRequest
) -> ActionResponse | JSONResponse:
    session = _get_session(session_id)
    try:
        data = await download_photo(str(body.url), settings.max_photo_bytes)
    except ImagineError as exc:
        logger.warning("photo_download_failed", session_id=session_id, error=exc.message)
        return _error(502, "photo_download_failed", exc.message, retryable=exc.retryable)
    return _ingest(session, data)


@router.post(
    "/imagine/sessions/{session_id}/volume",
    response_model=GeometryEstimate,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def confirm_volume(session_id: str, body: VolumeRequest) -> GeometryEstimate | JSONResponse:
    session = _get_session(session_id)
    try:
        return session.confirm_volume(body)
    except ImagineError as exc:
        return _error(409, "volume_not_confirmable", exc.message)


@router.post(
    "/imagine/sessions/{session_id}/generate",
    status_code=202,
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def generate(session_id: str, body: PromptRequest) -> ActionResponse | JSONResponse:
    """Start an initial render run. Refused until the volume is confirmed."""
    session = _get_session(session_id)
    run_id = session.start_generate(body.prompt)
    if run_id is None:
        return _error(
            409, "generation_unavailable", "Upload a photo and confirm the room volume first"
        )
    return ActionResponse(run_id=run_id)


@router.post(
    "/imagine/sessions/{session_id}/refine",
    status_code=202,
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def refine(session_id: str, body: PromptRequest) -> ActionResponse | JSONResponse:
    """Start a refinement run on the current result."""
    session = _get_session(session_id)
    run_id = session.start_refine(body.prompt)
    if run_id is None:
        return _error(409, "refinement_unavailable", "Generate a result before refining it")
    return ActionResponse(run_id=run_id)


@router.get(
    "/imagine/sessions/{session_id}/result",
    response_class=Response,
    responses={404: {"model": ErrorResponse}},
)
async def download_result(session_id: str) -> Response:
    """Download the current best render as an image file."""
    session = _get_session(session_id)
    image = session.best.image
    if image is None:
        return _error(404, "no_result", "No generated image yet")
    mime_type = sniff_mime_type(image)
    filename = f"proposal_{int(time.time() * 1000)}.{_EXTENSIONS.get(mime_type, 'png')}"
    return Response(
        content=image,
        media_type=mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
