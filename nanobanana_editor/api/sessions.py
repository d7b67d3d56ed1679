"""
Editor sessions: the state one editor page works on.

A session holds the uploaded images (in upload order), the instruction, a
four-state status (IDLE/PROCESSING/SUCCESS/ERROR), the last error message and
the latest edited result. Rows live in the database; image bytes live in
`storage` under `sessions/<session_id>/`.
"""
from __future__ import annotations

import base64
import json
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException, UploadFile, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from nanobanana_editor.api import gemini_service
from nanobanana_editor.api.db import new_id, utcnow
from nanobanana_editor.api.image_processing import DEFAULT_PREVIEW_SIDE, inspect_image, make_preview
from nanobanana_editor.api.schemas import AppState, InlineImage
from nanobanana_editor.api.storage import delete_key, delete_prefix, load_bytes, save_bytes, save_upload

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = "Remove from this image those green markers"

MISSING_INPUT_ERROR = "Please upload at least one image and provide a prompt."
GENERATION_FAILED_ERROR = "Failed to generate image."
UNEXPECTED_GENERATION_ERROR = "An unexpected error occurred."

DEFAULT_GENERATION_TIMEOUT_SECONDS = 300


def preview_max_side() -> int:
    val = os.getenv("PREVIEW_MAX_SIDE", str(DEFAULT_PREVIEW_SIDE)).strip()
    try:
        side = int(val)
    except ValueError:
        return DEFAULT_PREVIEW_SIDE
    return side if side > 0 else DEFAULT_PREVIEW_SIDE


def generation_timeout_seconds() -> int:
    """How long a PROCESSING status holds before another request may take over the session."""
    val = os.getenv("GENERATION_TIMEOUT_SECONDS", str(DEFAULT_GENERATION_TIMEOUT_SECONDS)).strip()
    try:
        seconds = int(val)
    except ValueError:
        return DEFAULT_GENERATION_TIMEOUT_SECONDS
    return seconds if seconds > 0 else DEFAULT_GENERATION_TIMEOUT_SECONDS


def _stale_before() -> datetime:
    return utcnow() - timedelta(seconds=generation_timeout_seconds())


def _as_datetime(value: Any) -> datetime:
    # SQLite hands timestamps back as ISO strings
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def _row(mapping) -> Dict[str, Any]:
    data = dict(mapping)
    for key in ("created_at", "updated_at"):
        if key in data and data[key] is not None:
            data[key] = _as_datetime(data[key])
    return data


def _session_prefix(session_id: str) -> str:
    return f"sessions/{session_id}"


def _log_edit(db: Session, session_id: str, operation: str, params: dict) -> None:
    db.execute(
        text(
            """
            INSERT INTO edit_history (id, session_id, operation, params, created_at)
            VALUES (:id, :session_id, :operation, :params, :created_at)
            """
        ),
        {
            "id": new_id(),
            "session_id": session_id,
            "operation": operation,
            "params": json.dumps(params),
            "created_at": utcnow(),
        },
    )


def _update_session(db: Session, session_id: str, **fields: Any) -> None:
    fields["updated_at"] = utcnow()
    assignments = ", ".join(f"{name} = :{name}" for name in fields)
    db.execute(
        text(f"UPDATE editor_sessions SET {assignments} WHERE id = :id"),
        {**fields, "id": session_id},
    )


def _clear_result(db: Session, row: Dict[str, Any]) -> None:
    if row.get("result_storage_key"):
        delete_key(row["result_storage_key"])
    _update_session(
        db,
        row["id"],
        result_storage_key=None,
        result_mime_type=None,
        result_width=None,
        result_height=None,
    )


def _is_running(row: Dict[str, Any]) -> bool:
    # A worker that died mid-generation leaves PROCESSING behind; it expires after the timeout
    return row["status"] == AppState.PROCESSING.value and row["updated_at"] >= _stale_before()


def _require_idle_slot(row: Dict[str, Any]) -> None:
    if _is_running(row):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A generation is already in progress for this session",
        )


# PUBLIC_INTERFACE
def create_session(db: Session) -> Dict[str, Any]:
    """Create an IDLE session with the default instruction."""
    session_id = new_id()
    now = utcnow()
    db.execute(
        text(
            """
            INSERT INTO editor_sessions (id, instruction, status, error_message, created_at, updated_at)
            VALUES (:id, :instruction, :status, '', :created_at, :updated_at)
            """
        ),
        {
            "id": session_id,
            "instruction": DEFAULT_INSTRUCTION,
            "status": AppState.IDLE.value,
            "created_at": now,
            "updated_at": now,
        },
    )
    db.commit()
    logger.info("Created session %s", session_id)
    return get_session(db, session_id)


# PUBLIC_INTERFACE
def get_session(db: Session, session_id: str) -> Dict[str, Any]:
    """Return the session row, or raise 404."""
    row = db.execute(
        text("SELECT * FROM editor_sessions WHERE id = :id"),
        {"id": session_id},
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return _row(row)


# PUBLIC_INTERFACE
def list_images(db: Session, session_id: str) -> List[Dict[str, Any]]:
    """Uploaded images of a session, in upload order."""
    rows = db.execute(
        text(
            """
            SELECT *
            FROM uploaded_images
            WHERE session_id = :session_id
            ORDER BY position
            """
        ),
        {"session_id": session_id},
    ).mappings().all()
    return [_row(r) for r in rows]


# PUBLIC_INTERFACE
def get_image(db: Session, session_id: str, image_id: str) -> Dict[str, Any]:
    row = db.execute(
        text("SELECT * FROM uploaded_images WHERE id = :id AND session_id = :session_id"),
        {"id": image_id, "session_id": session_id},
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return _row(row)


def _store_upload(db: Session, session_id: str, upload: UploadFile, position: int) -> Dict[str, Any]:
    prefix = _session_prefix(session_id)
    storage_key, size_bytes = save_upload(upload, prefix=f"{prefix}/uploads")
    data = load_bytes(storage_key)

    width = height = None
    preview_key = preview_mime = None
    info = inspect_image(data)
    if info is not None:
        width, height = info.width, info.height
        try:
            preview, preview_mime, _, _ = make_preview(data, preview_max_side())
        except (OSError, ValueError) as exc:
            # Pillow can read the header but not the pixels; serve the original instead
            logger.warning("Preview generation failed for %s: %s", upload.filename, exc)
        else:
            preview_key = f"{prefix}/previews/{uuid.uuid4().hex}{gemini_service.infer_extension(preview_mime)}"
            save_bytes(preview, preview_key)

    image = {
        "id": new_id(),
        "session_id": session_id,
        "position": position,
        "filename": upload.filename or "image",
        "mime_type": upload.content_type,
        "storage_key": storage_key,
        "preview_storage_key": preview_key,
        "preview_mime_type": preview_mime,
        "width": width,
        "height": height,
        "size_bytes": size_bytes,
        "created_at": utcnow(),
    }
    db.execute(
        text(
            """
            INSERT INTO uploaded_images (
              id, session_id, position, filename, mime_type,
              storage_key, preview_storage_key, preview_mime_type,
              width, height, size_bytes, created_at
            )
            VALUES (
              :id, :session_id, :position, :filename, :mime_type,
              :storage_key, :preview_storage_key, :preview_mime_type,
              :width, :height, :size_bytes, :created_at
            )
            """
        ),
        image,
    )
    return image


# PUBLIC_INTERFACE
def add_images(db: Session, session_id: str, uploads: Iterable[UploadFile]) -> Dict[str, Any]:
    """
    Append uploaded files to the session.

    Files whose content type is not `image/*` are skipped and reported in the
    session's error message, one sentence per file. Any previous result is
    dropped and the session returns to IDLE.
    """
    row = get_session(db, session_id)
    _require_idle_slot(row)

    current = db.execute(
        text("SELECT COALESCE(MAX(position), -1) FROM uploaded_images WHERE session_id = :session_id"),
        {"session_id": session_id},
    ).scalar()
    position = int(current) + 1

    messages: List[str] = []
    added: List[str] = []
    for upload in uploads:
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            messages.append(f'File "{upload.filename}" is not a valid image. Skipping.')
            continue
        image = _store_upload(db, session_id, upload, position)
        added.append(image["id"])
        position += 1

    _clear_result(db, row)
    _update_session(db, session_id, status=AppState.IDLE.value, error_message=" ".join(messages))
    _log_edit(db, session_id, "upload", {"added": added, "skipped": len(messages)})
    db.commit()
    logger.info("Session %s: %d image(s) added, %d skipped", session_id, len(added), len(messages))
    return get_session(db, session_id)


def _delete_image_files(image: Dict[str, Any]) -> None:
    delete_key(image["storage_key"])
    if image.get("preview_storage_key"):
        delete_key(image["preview_storage_key"])


# PUBLIC_INTERFACE
def remove_image(db: Session, session_id: str, image_id: str) -> Dict[str, Any]:
    """Remove one image. Removing the last image also drops the result and resets status to IDLE."""
    row = get_session(db, session_id)
    _require_idle_slot(row)
    image = get_image(db, session_id, image_id)

    db.execute(text("DELETE FROM uploaded_images WHERE id = :id"), {"id": image_id})
    _delete_image_files(image)

    remaining = db.execute(
        text("SELECT COUNT(*) FROM uploaded_images WHERE session_id = :session_id"),
        {"session_id": session_id},
    ).scalar()
    if not remaining:
        _clear_result(db, row)
        _update_session(db, session_id, status=AppState.IDLE.value)
    _log_edit(db, session_id, "remove", {"image_id": image_id})
    db.commit()
    return get_session(db, session_id)


# PUBLIC_INTERFACE
def clear_images(db: Session, session_id: str) -> Dict[str, Any]:
    """Remove every image, the result and the error message."""
    row = get_session(db, session_id)
    _require_idle_slot(row)

    for image in list_images(db, session_id):
        _delete_image_files(image)
    db.execute(text("DELETE FROM uploaded_images WHERE session_id = :session_id"), {"session_id": session_id})
    _clear_result(db, row)
    _update_session(db, session_id, status=AppState.IDLE.value, error_message="")
    _log_edit(db, session_id, "clear", {})
    db.commit()
    return get_session(db, session_id)


# PUBLIC_INTERFACE
def set_instruction(db: Session, session_id: str, instruction: str) -> Dict[str, Any]:
    get_session(db, session_id)
    _update_session(db, session_id, instruction=instruction)
    _log_edit(db, session_id, "instruction", {"length": len(instruction)})
    db.commit()
    return get_session(db, session_id)


# PUBLIC_INTERFACE
def delete_session(db: Session, session_id: str) -> None:
    """Delete a session with its images, history and stored files. Refused while a generation runs."""
    row = get_session(db, session_id)
    _require_idle_slot(row)
    db.execute(text("DELETE FROM edit_history WHERE session_id = :id"), {"id": session_id})
    db.execute(text("DELETE FROM uploaded_images WHERE session_id = :id"), {"id": session_id})
    db.execute(text("DELETE FROM editor_sessions WHERE id = :id"), {"id": session_id})
    db.commit()
    delete_prefix(_session_prefix(session_id))


def _claim_generation(db: Session, session_id: str) -> None:
    # Conditional update: only one request can move a session into PROCESSING
    result = db.execute(
        text(
            """
            UPDATE editor_sessions
            SET status = :processing, error_message = '', updated_at = :now
            WHERE id = :id AND (status != :processing OR updated_at < :stale_before)
            """
        ),
        {
            "processing": AppState.PROCESSING.value,
            "now": utcnow(),
            "stale_before": _stale_before(),
            "id": session_id,
        },
    )
    claimed = result.rowcount
    db.commit()
    if not claimed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A generation is already in progress for this session",
        )


def _inline_images(images: List[Dict[str, Any]]) -> List[InlineImage]:
    return [
        InlineImage(
            base64_data=base64.b64encode(load_bytes(img["storage_key"])).decode("ascii"),
            mime_type=img["mime_type"],
        )
        for img in images
    ]


def _store_result(db: Session, session_id: str, data_url: str) -> None:
    raw, mime = gemini_service.parse_data_url(data_url)
    info = inspect_image(raw)
    key = f"{_session_prefix(session_id)}/results/{uuid.uuid4().hex}{gemini_service.infer_extension(mime)}"
    save_bytes(raw, key)
    previous = get_session(db, session_id).get("result_storage_key")
    _update_session(
        db,
        session_id,
        status=AppState.SUCCESS.value,
        error_message="",
        result_storage_key=key,
        result_mime_type=mime,
        result_width=info.width if info else None,
        result_height=info.height if info else None,
    )
    if previous:
        delete_key(previous)


# PUBLIC_INTERFACE
def generate(db: Session, session_id: str) -> Dict[str, Any]:
    """
    Send the session's images and instruction to Gemini and record the outcome.

    Raises 400 when there is no image or the instruction is blank (the message
    is also stored on the session) and 409 when a generation is already running.
    Model failures do not raise: they leave the session in ERROR with a
    human-readable message.
    """
    row = get_session(db, session_id)
    images = list_images(db, session_id)
    if not images or not (row["instruction"] or "").strip():
        _update_session(db, session_id, error_message=MISSING_INPUT_ERROR)
        db.commit()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=MISSING_INPUT_ERROR)

    _claim_generation(db, session_id)

    outcome: Dict[str, Any] = {"images": len(images)}
    try:
        response = gemini_service.edit_image_with_gemini(_inline_images(images), row["instruction"])
        if response.success and response.image:
            _store_result(db, session_id, response.image)
            outcome["success"] = True
        else:
            error = response.error or GENERATION_FAILED_ERROR
            _update_session(db, session_id, status=AppState.ERROR.value, error_message=error)
            outcome.update(success=False, error=error)
    except Exception:
        logger.exception("Generation failed for session %s", session_id)
        db.rollback()
        _update_session(db, session_id, status=AppState.ERROR.value, error_message=UNEXPECTED_GENERATION_ERROR)
        outcome.update(success=False, error=UNEXPECTED_GENERATION_ERROR)

    _log_edit(db, session_id, "generate", outcome)
    db.commit()
    return get_session(db, session_id)


# PUBLIC_INTERFACE
def list_history(db: Session, session_id: str) -> List[Dict[str, Any]]:
    get_session(db, session_id)
    rows = db.execute(
        text(
            """
            SELECT id, session_id, operation, params, created_at
            FROM edit_history
            WHERE session_id = :session_id
            ORDER BY created_at, id
            """
        ),
        {"session_id": session_id},
    ).mappings().all()
    history = []
    for r in rows:
        item = _row(r)
        item["params"] = json.loads(item["params"] or "{}")
        history.append(item)
    return history


def can_generate(row: Dict[str, Any], images: List[Dict[str, Any]]) -> bool:
    return bool(images) and bool((row["instruction"] or "").strip()) and not _is_running(row)


def result_filename(mime_type: Optional[str]) -> str:
    return f"gemini-edit{gemini_service.infer_extension(mime_type or gemini_service.DEFAULT_MIME_TYPE)}"
