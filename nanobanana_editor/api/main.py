from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from nanobanana_editor import __version__
from nanobanana_editor.api import gemini_service, sessions
from nanobanana_editor.api.db import ensure_schema, get_db
from nanobanana_editor.api.schemas import (
    EditHistoryItem,
    EditorConfig,
    HealthResponse,
    InstructionRequest,
    ResultOut,
    SessionState,
    UploadedImageOut,
)
from nanobanana_editor.api.storage import resolve_path
from nanobanana_editor.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and editor configuration."},
    {"name": "sessions", "description": "Editor sessions: images, instruction, status and result."},
    {"name": "images", "description": "Image upload, removal and file download."},
    {"name": "editing", "description": "Gemini-powered edits and their results."},
]


@asynccontextmanager
async def lifespan(_: FastAPI):
    """
    Ensure the schema exists, but keep serving even when the database is not
    reachable yet; DB-backed endpoints will fail until it is.
    """
    try:
        ensure_schema()
    except Exception as exc:
        logger.warning("Startup DB initialization skipped: %s", exc)
    yield


app = FastAPI(
    title="Nano Banana Editor",
    description=(
        "Backend for an image editor. Upload one or more images, describe the edit in plain "
        "language and receive the image edited by the Gemini 2.5 Flash Image model."
    ),
    version=__version__,
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)


def _get_cors_origins() -> list[str]:
    """
    Parse CORS allow-origins from env.

    Env:
      - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins, or '*' to allow all.
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*").strip()
    if not raw or raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _public_url(path: str) -> str:
    """Prefix `path` with PUBLIC_API_BASE_URL (e.g. 'http://localhost:8000') when set."""
    base = os.getenv("PUBLIC_API_BASE_URL", "").strip().rstrip("/")
    return f"{base}{path}" if base else path


def _image_out(image: Dict[str, Any]) -> UploadedImageOut:
    base = f"/sessions/{image['session_id']}/images/{image['id']}"
    return UploadedImageOut(
        id=image["id"],
        filename=image["filename"],
        mime_type=image["mime_type"],
        width=image.get("width"),
        height=image.get("height"),
        size_bytes=image["size_bytes"],
        url=_public_url(f"{base}/file"),
        preview_url=_public_url(f"{base}/preview"),
        created_at=image["created_at"],
    )


def _session_state(db: Session, row: Dict[str, Any]) -> SessionState:
    images = sessions.list_images(db, row["id"])
    result = None
    if row.get("result_storage_key"):
        result = ResultOut(
            mime_type=row["result_mime_type"],
            width=row.get("result_width"),
            height=row.get("result_height"),
            url=_public_url(f"/sessions/{row['id']}/result"),
        )
    return SessionState(
        id=row["id"],
        instruction=row["instruction"],
        status=row["status"],
        error_message=row.get("error_message") or "",
        images=[_image_out(img) for img in images],
        result=result,
        can_generate=sessions.can_generate(row, images),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# PUBLIC_INTERFACE
@app.get("/", response_model=HealthResponse, tags=["health"], summary="Health check", description="Basic liveness endpoint.")
def health_check() -> HealthResponse:
    return HealthResponse(message="Healthy")


# PUBLIC_INTERFACE
@app.get(
    "/editor/config",
    response_model=EditorConfig,
    tags=["health"],
    summary="Editor configuration",
    description="Model name, default instruction and upload constraints for the editor page.",
)
def editor_config() -> EditorConfig:
    return EditorConfig(
        model=gemini_service.get_model_id(),
        default_instruction=sessions.DEFAULT_INSTRUCTION,
        preview_max_side=sessions.preview_max_side(),
    )


# PUBLIC_INTERFACE
@app.post(
    "/sessions",
    response_model=SessionState,
    status_code=status.HTTP_201_CREATED,
    tags=["sessions"],
    summary="Create session",
    description="Start an empty editor session in IDLE state with the default instruction.",
)
def create_session(db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.create_session(db))


# PUBLIC_INTERFACE
@app.get(
    "/sessions/{session_id}",
    response_model=SessionState,
    tags=["sessions"],
    summary="Get session",
    description="Current editor state: images, instruction, status, error message and result.",
)
def get_session(session_id: str, db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.get_session(db, session_id))


# PUBLIC_INTERFACE
@app.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["sessions"],
    summary="Delete session",
    description="Delete the session together with its stored images and result.",
)
def delete_session(session_id: str, db: Session = Depends(get_db)) -> None:
    sessions.delete_session(db, session_id)


# PUBLIC_INTERFACE
@app.put(
    "/sessions/{session_id}/instruction",
    response_model=SessionState,
    tags=["sessions"],
    summary="Set instruction",
    description="Replace the editing instruction.",
)
def set_instruction(session_id: str, payload: InstructionRequest, db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.set_instruction(db, session_id, payload.instruction))


# PUBLIC_INTERFACE
@app.get(
    "/sessions/{session_id}/history",
    response_model=List[EditHistoryItem],
    tags=["sessions"],
    summary="Edit history",
    description="Operations applied to the session, oldest first.",
)
def get_history(session_id: str, db: Session = Depends(get_db)) -> List[EditHistoryItem]:
    return [EditHistoryItem(**item) for item in sessions.list_history(db, session_id)]


# PUBLIC_INTERFACE
@app.post(
    "/sessions/{session_id}/images",
    response_model=SessionState,
    tags=["images"],
    summary="Upload images",
    description=(
        "Upload one or more files. Non-image files are skipped and listed in `error_message`. "
        "Uploading clears any previous result."
    ),
)
def upload_images(
    session_id: str,
    files: List[UploadFile] = File(..., description="Image files to upload"),
    db: Session = Depends(get_db),
) -> SessionState:
    return _session_state(db, sessions.add_images(db, session_id, files))


# PUBLIC_INTERFACE
@app.delete(
    "/sessions/{session_id}/images",
    response_model=SessionState,
    tags=["images"],
    summary="Clear images",
    description="Remove every uploaded image, the result and the error message.",
)
def clear_images(session_id: str, db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.clear_images(db, session_id))


# PUBLIC_INTERFACE
@app.delete(
    "/sessions/{session_id}/images/{image_id}",
    response_model=SessionState,
    tags=["images"],
    summary="Remove image",
    description="Remove one uploaded image. Removing the last image also clears the result.",
)
def remove_image(session_id: str, image_id: str, db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.remove_image(db, session_id, image_id))


# PUBLIC_INTERFACE
@app.get(
    "/sessions/{session_id}/images/{image_id}/file",
    tags=["images"],
    summary="Get uploaded file",
    description="Download the uploaded bytes as they were received.",
)
def get_image_file(session_id: str, image_id: str, db: Session = Depends(get_db)) -> FileResponse:
    image = sessions.get_image(db, session_id, image_id)
    return FileResponse(resolve_path(image["storage_key"]), media_type=image["mime_type"], filename=image["filename"])


# PUBLIC_INTERFACE
@app.get(
    "/sessions/{session_id}/images/{image_id}/preview",
    tags=["images"],
    summary="Get preview",
    description="Downscaled preview of an uploaded image; falls back to the original when no preview could be made.",
)
def get_image_preview(session_id: str, image_id: str, db: Session = Depends(get_db)) -> FileResponse:
    image = sessions.get_image(db, session_id, image_id)
    if image.get("preview_storage_key"):
        return FileResponse(resolve_path(image["preview_storage_key"]), media_type=image["preview_mime_type"])
    return FileResponse(resolve_path(image["storage_key"]), media_type=image["mime_type"])


# PUBLIC_INTERFACE
@app.post(
    "/sessions/{session_id}/generate",
    response_model=SessionState,
    tags=["editing"],
    summary="Generate edit",
    description=(
        "Send every uploaded image plus the instruction to Gemini. On success the session is SUCCESS "
        "and carries a result; on failure it is ERROR with a readable `error_message`.\n\n"
        "Returns 400 when images or instruction are missing and 409 while a generation is running."
    ),
)
def generate(session_id: str, db: Session = Depends(get_db)) -> SessionState:
    return _session_state(db, sessions.generate(db, session_id))


# PUBLIC_INTERFACE
@app.get(
    "/sessions/{session_id}/result",
    tags=["editing"],
    summary="Download result",
    description="Download the edited image as `gemini-edit.<ext>`.",
    responses={
        200: {
            "description": "Binary image response (the edited image bytes).",
            "content": {
                "image/png": {"schema": {"type": "string", "format": "binary"}},
                "image/jpeg": {"schema": {"type": "string", "format": "binary"}},
                "image/webp": {"schema": {"type": "string", "format": "binary"}},
            },
        }
    },
)
def get_result(session_id: str, db: Session = Depends(get_db)) -> FileResponse:
    row = sessions.get_session(db, session_id)
    key = row.get("result_storage_key")
    if not key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No result for this session")
    mime = row.get("result_mime_type") or gemini_service.DEFAULT_MIME_TYPE
    return FileResponse(resolve_path(key), media_type=mime, filename=sessions.result_filename(mime))
