"""Nano Banana Editor: image editing backend powered by Gemini."""

__version__ = "0.1.0"
