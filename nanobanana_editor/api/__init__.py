"""
API package for the Nano Banana Editor backend.

This module intentionally exposes the FastAPI `app` for ASGI servers and tooling.
"""

from nanobanana_editor.api.main import app  # noqa: F401
