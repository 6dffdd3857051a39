"""HTTP inspection surface over ProcessingService."""

from .main import create_app

__all__ = ["create_app"]
