"""Gemini image editing call.

Sends an instruction plus one or more inline images to the Gemini image model
and unwraps the reply into an `EditResponse`: the first inline image part wins,
otherwise the model's explanatory text becomes the error message.
"""
from __future__ import annotations

import base64
import binascii
import functools
import logging
import os
import re
from typing import List, Optional, Sequence, Tuple

from google import genai
from google.genai import types as genai_types

from nanobanana_editor.api.schemas import EditResponse, InlineImage

logger = logging.getLogger(__name__)

# Checked in order; the first one set wins
API_KEY_ENVS = ("GEMINI_API_KEY", "API_KEY", "GOOGLE_API_KEY")
MODEL_ENV = "GEMINI_IMAGE_MODEL"

# "Nano Banana"
DEFAULT_MODEL_ID = "gemini-2.5-flash-image"
DEFAULT_MIME_TYPE = "image/png"

NO_IMAGES_ERROR = "No image data provided for editing."
NO_CANDIDATES_ERROR = "No response candidates from Gemini."
NO_IMAGE_RETURNED_ERROR = (
    "The model processed the request but did not return an image. "
    "Try rephrasing your prompt or ensure the request is valid for the provided images."
)
UNEXPECTED_ERROR = "An unexpected error occurred while communicating with Gemini."

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg|webp);base64,")
_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?;base64,(?P<data>.*)$", re.DOTALL)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def get_api_key() -> Optional[str]:
    """Return the first configured Gemini API key, or None."""
    for name in API_KEY_ENVS:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def get_model_id() -> str:
    return os.getenv(MODEL_ENV, "").strip() or DEFAULT_MODEL_ID


@functools.lru_cache(maxsize=4)
def _client_for_key(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def get_client() -> genai.Client:
    """Return a process-wide Gemini client for the configured API key."""
    key = get_api_key()
    if not key:
        raise ValueError(
            f"Missing API key. Set one of {', '.join(API_KEY_ENVS)} in the backend environment."
        )
    return _client_for_key(key)


def strip_data_url_prefix(data: str) -> str:
    """Drop a leading `data:image/...;base64,` header from a base64 string."""
    return _DATA_URL_PREFIX.sub("", data, count=1)


def to_data_url(data: str, mime_type: Optional[str] = None) -> str:
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{data}"


def parse_data_url(data_url: str) -> Tuple[bytes, str]:
    """Decode a base64 data URL into (bytes, mime_type).

    Raises:
        ValueError: if `data_url` is not a base64 data URL.
    """
    match = _DATA_URL.match((data_url or "").strip())
    if not match:
        raise ValueError("Expected a base64 data URL")
    try:
        raw = base64.b64decode(match.group("data"), validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc
    return raw, match.group("mime") or DEFAULT_MIME_TYPE


def infer_extension(mime_type: str = DEFAULT_MIME_TYPE) -> str:
    """Get a file extension for a MIME type, defaulting to .png."""
    return _EXTENSIONS.get((mime_type or "").lower(), ".png")


def build_parts(images: Sequence[InlineImage], prompt: str) -> List[genai_types.Part]:
    """Instruction first, then every image in upload order."""
    parts = [genai_types.Part(text=prompt)]
    for img in images:
        parts.append(
            genai_types.Part(
                inline_data=genai_types.Blob(
                    mime_type=img.mime_type,
                    data=base64.b64decode(strip_data_url_prefix(img.base64_data)),
                )
            )
        )
    return parts


def _inline_data_url(part: genai_types.Part) -> Optional[str]:
    inline = getattr(part, "inline_data", None)
    if inline is None or not inline.data:
        return None
    data = inline.data
    if isinstance(data, (bytes, bytearray)):
        data = base64.b64encode(data).decode("ascii")
    return to_data_url(data, inline.mime_type)


def parse_response(response: genai_types.GenerateContentResponse) -> EditResponse:
    """Pull the edited image, or the model's explanation, out of a Gemini response."""
    candidates = response.candidates or []
    if not candidates:
        return EditResponse(success=False, error=NO_CANDIDATES_ERROR)

    content = candidates[0].content
    parts = (content.parts if content is not None else None) or []

    for part in parts:
        image = _inline_data_url(part)
        if image:
            return EditResponse(success=True, image=image)

    # No image: the model usually explains why in a text part
    text = next((p.text for p in parts if getattr(p, "text", None)), None)
    return EditResponse(success=False, error=text or NO_IMAGE_RETURNED_ERROR)


# PUBLIC_INTERFACE
def edit_image_with_gemini(images: Sequence[InlineImage], prompt: str) -> EditResponse:
    """
    Send one or more images and an instruction to the Gemini image model for editing.

    Never raises: every failure, including SDK and network errors, comes back as
    `EditResponse(success=False, error=...)`.
    """
    if not images:
        return EditResponse(success=False, error=NO_IMAGES_ERROR)

    try:
        model_id = get_model_id()
        parts = build_parts(images, prompt)
        logger.info("Sending %d image(s) to %s", len(images), model_id)
        response = get_client().models.generate_content(
            model=model_id,
            contents=[genai_types.Content(role="user", parts=parts)],
        )
        result = parse_response(response)
    except Exception as exc:
        logger.exception("Gemini API error")
        return EditResponse(success=False, error=str(exc) or UNEXPECTED_ERROR)

    if not result.success:
        logger.warning("Gemini returned no image: %s", result.error)
    return result
