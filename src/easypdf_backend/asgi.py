"""ASGI entry point: ``uvicorn easypdf_backend.asgi:app``."""

from .main import create_app

app = create_app()
