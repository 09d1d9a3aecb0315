"""HTTP audit logging middleware and per-service log files."""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from time import time
from typing import Optional

from fastapi import FastAPI, Request

from .config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _file_handler(service_name: str) -> logging.Handler:
    log_dir = Path(get_settings().log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / f"{service_name}.log")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def build_audit_logger(service_name: str) -> logging.Logger:
    """Return the ``audit.<service>`` logger, wiring it (and ``camrent.*``) to a file once."""

    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    handler = _file_handler(service_name)
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)

    domain_logger = logging.getLogger("camrent")
    domain_logger.setLevel(logging.INFO)
    domain_logger.addHandler(handler)
    return logger


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = build_audit_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        start = time()
        response = await call_next(request)
        duration_ms = (time() - start) * 1000
        client_ip: Optional[str] = None
        if request.client:
            client_ip = request.client.host
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s | status=%s | client=%s | request=%s | duration=%.2fms",
            request.method,
            request.url.path,
            response.status_code,
            client_ip or "unknown",
            request_id,
            duration_ms,
        )
        return response
