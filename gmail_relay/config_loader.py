"""Configuration loader for the Gmail relay.

Settings come from an INI file (default: ``config.ini``) with environment
variables as fallbacks.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 3001
        cors_origins = https://app.example.com, https://admin.example.com
        max_body_mb = 50

        [smtp]
        host = smtp.gmail.com
        port = 465
        simple_port = 587
        timeout = 30

        [logging]
        level = INFO

        [service]
        name = Email Server
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict

from .transport import TransportProfile, full_profile, simple_profile


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file with environment variables as fallbacks.

    Environment variables (all prefixed with GMR_):
      GMR_CONFIG - Path to config.ini file (default: config.ini)
      GMR_HOST - Server host (default: 0.0.0.0)
      GMR_PORT - Server port (default: $PORT, then 3001)
      GMR_CORS_ORIGINS - Comma separated allowed origins (default: *)
      GMR_MAX_BODY_MB - Maximum request body size in MiB (default: 50)
      GMR_SMTP_HOST - SMTP server (default: smtp.gmail.com)
      GMR_SMTP_PORT - Implicit TLS port used by /send-gmail (default: 465)
      GMR_SMTP_SIMPLE_PORT - STARTTLS port used by /send-gmail-simple (default: 587)
      GMR_SMTP_TIMEOUT - Socket timeout in seconds (default: 30)
      GMR_LOG_LEVEL - Logging level (default: INFO)
      GMR_SERVICE_NAME - Name reported by /health (default: Email Server)

    Config file sections/keys:
      [server] host, port, cors_origins, max_body_mb
      [smtp] host, port, simple_port, timeout
      [logging] level
      [service] name
    """
    path = Path(config_path or os.getenv("GMR_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return float(value)

    cors_raw = get("server", "cors_origins", os.getenv("GMR_CORS_ORIGINS", "*")) or "*"
    settings = {
        "http_host": get("server", "host", os.getenv("GMR_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("GMR_PORT", os.getenv("PORT")), default=3001),
        "cors_origins": [origin.strip() for origin in cors_raw.split(",") if origin.strip()],
        "max_body_mb": get_float("server", "max_body_mb", os.getenv("GMR_MAX_BODY_MB"), default=50.0),
        "smtp_host": get("smtp", "host", os.getenv("GMR_SMTP_HOST", "smtp.gmail.com")),
        "smtp_port": get_int("smtp", "port", os.getenv("GMR_SMTP_PORT"), default=465),
        "smtp_simple_port": get_int("smtp", "simple_port", os.getenv("GMR_SMTP_SIMPLE_PORT"), default=587),
        "smtp_timeout": get_float("smtp", "timeout", os.getenv("GMR_SMTP_TIMEOUT"), default=30.0),
        "log_level": (get("logging", "level", os.getenv("GMR_LOG_LEVEL", "INFO")) or "INFO").upper(),
        "service_name": get("service", "name", os.getenv("GMR_SERVICE_NAME", "Email Server")),
    }
    return settings


def build_profiles(settings: Dict[str, Any]) -> Dict[str, TransportProfile]:
    """Create the ``full`` and ``simple`` transport profiles from settings."""
    host = str(settings.get("smtp_host") or "smtp.gmail.com")
    timeout = float(settings.get("smtp_timeout") or 30.0)
    return {
        "full": full_profile(host=host, port=int(settings.get("smtp_port") or 465), timeout=timeout),
        "simple": simple_profile(host=host, port=int(settings.get("smtp_simple_port") or 587), timeout=timeout),
    }
