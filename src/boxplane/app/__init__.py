"""Box control plane FastAPI application."""

from .main import create_app
from .settings import BoxPlaneSettings

__all__ = ["create_app", "BoxPlaneSettings"]
