from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

DEFAULT_PREVIEW_SIDE = 512


@dataclass(frozen=True)
class ImageInfo:
    """What Pillow could tell about an encoded image."""

    format: str
    mime_type: str
    width: int
    height: int


def _open_image(data: bytes) -> Image.Image:
    im = Image.open(io.BytesIO(data))
    # Honour camera orientation before any resize
    im = ImageOps.exif_transpose(im)
    if im.mode not in ("RGB", "RGBA"):
        im = im.convert("RGBA") if "A" in im.getbands() else im.convert("RGB")
    return im


def _to_bytes(im: Image.Image, keep_alpha: bool) -> Tuple[bytes, str]:
    out = io.BytesIO()
    if keep_alpha:
        im.save(out, format="PNG", optimize=True)
        return out.getvalue(), "image/png"
    im.convert("RGB").save(out, format="JPEG", quality=85, optimize=True)
    return out.getvalue(), "image/jpeg"


# PUBLIC_INTERFACE
def inspect_image(data: bytes) -> Optional[ImageInfo]:
    """Identify format, MIME type and size of `data`. Returns None when Pillow cannot decode it."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            fmt = im.format or ""
            mime = Image.MIME.get(fmt) or "application/octet-stream"
            width, height = im.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return ImageInfo(format=fmt, mime_type=mime, width=width, height=height)


# PUBLIC_INTERFACE
def make_preview(data: bytes, max_side: int = DEFAULT_PREVIEW_SIDE) -> Tuple[bytes, str, int, int]:
    """Downscale an image so its longest side is at most `max_side`. Returns (bytes, mime, w, h).

    Images with transparency stay PNG, everything else becomes JPEG.
    """
    if max_side <= 0:
        raise ValueError("max_side must be positive")
    im = _open_image(data)
    im.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
    out, mime = _to_bytes(im, keep_alpha=im.mode == "RGBA")
    return out, mime, im.width, im.height
