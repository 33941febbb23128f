"""OpenTelemetry tracing for the compliance co-pilot."""

from __future__ import annotations

import logging
import os
from typing import Optional

from agent_framework.observability import setup_observability

logger = logging.getLogger(__name__)

CAPTURE_ENV = "SUITABILITY_TRACING_CAPTURE_SENSITIVE"

_active_endpoint: Optional[str] = None


def capture_client_answers() -> bool:
    """Whether prompt and reply text may be attached to spans."""

    return os.getenv(CAPTURE_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def initialize_tracing(endpoint: Optional[str], *, capture: Optional[bool] = None) -> bool:
    global _active_endpoint

    if _active_endpoint is not None:
        logger.debug("Tracing already exporting to %s", _active_endpoint)
        return False
    target = (endpoint or "").strip()
    if not target:
        logger.info("Tracing requested but SUITABILITY_OTLP_ENDPOINT is not set.")
        return False

    sensitive = capture_client_answers() if capture is None else capture
    try:
        setup_observability(otlp_endpoint=target, enable_sensitive_data=sensitive)
    except Exception as exc:  # pragma: no cover - exporter misconfiguration
        logger.warning("Tracing initialization failed for %s: %s", target, exc)
        return False

    _active_endpoint = target
    logger.info(
        "Compliance tracing exporting to %s (client answers %s)",
        target,
        "captured" if sensitive else "redacted",
    )
    return True
