"""Compatibility shim exposing the main FastAPI app."""

from __future__ import annotations

from app.main import app, build_services, create_app

__all__ = ["app", "build_services", "create_app"]
