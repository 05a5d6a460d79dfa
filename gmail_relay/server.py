"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from the
settings returned by :func:`gmail_relay.config_loader.load_settings`.

Usage:
    uvicorn gmail_relay.server:app --host 0.0.0.0 --port 3001

Environment variables:
    GMR_CONFIG: Path to the INI configuration file (default: config.ini)
"""

from __future__ import annotations

from .api import build_app
from .config_loader import load_settings
from .logger import configure_logging

_settings = load_settings()
configure_logging(_settings["log_level"])

app = build_app(_settings)
