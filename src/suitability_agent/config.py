"""Configuration helpers for the suitability interview engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from importlib import import_module
from pathlib import Path
from typing import Optional

TRUTHY_FLAGS = frozenset({"1", "true", "yes", "on"})


class ResponderMode(str, Enum):
    """How free-form compliance questions are answered."""

    LIVE = "live"
    STUB = "stub"

    @classmethod
    def from_string(
        cls,
        mode: str | None,
        default: Optional["ResponderMode"] = None,
    ) -> "ResponderMode":
        """Normalize arbitrary user input into a valid responder mode."""
        if not mode:
            if default is None:
                raise ValueError("Responder mode is required.")
            return default
        normalized = mode.strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        if default is not None:
            return default
        raise ValueError(f"Unsupported responder mode: {mode}")


@dataclass(slots=True)
class ModelSettings:
    """Holds model-related configuration for the compliance responder."""

    provider: str
    model: str
    endpoint: Optional[str]
    api_key: Optional[str]
    api_version: Optional[str]


@dataclass(slots=True)
class AppSettings:
    """Top-level application settings loaded from environment variables."""

    model: ModelSettings
    responder_mode: ResponderMode
    compliance_strict: bool
    output_dir: Path
    session_log: Path
    redis_url: Optional[str]
    report_version: str
    investment_top_n: int
    otlp_endpoint: Optional[str] = None

    @property
    def reports_dir(self) -> Path:
        return self.output_dir / "reports"

    @classmethod
    def load(cls) -> "AppSettings":
        """Load settings from the environment or .env file."""
        _ensure_dotenv()
        provider = os.getenv("SUITABILITY_MODEL_PROVIDER", "openai")
        model = os.getenv("SUITABILITY_MODEL", "gpt-4o-mini")
        endpoint = os.getenv("SUITABILITY_MODEL_ENDPOINT") or None
        api_key = os.getenv("SUITABILITY_MODEL_API_KEY") or None
        api_version = os.getenv("SUITABILITY_MODEL_API_VERSION") or None
        stub_forced = _flag("COMPLIANCE_STUB")
        responder_mode = (
            ResponderMode.STUB
            if stub_forced or not api_key
            else ResponderMode.LIVE
        )
        output_dir = Path(os.getenv("SUITABILITY_OUTPUT_DIR", "outputs"))
        output_dir.mkdir(parents=True, exist_ok=True)
        session_log = Path(
            os.getenv(
                "SUITABILITY_SESSION_JSONL",
                str(output_dir / "sessions.jsonl"),
            )
        )
        session_log.parent.mkdir(parents=True, exist_ok=True)
        redis_url = os.getenv("SUITABILITY_REDIS_URL")
        if redis_url is not None and not redis_url.strip():
            redis_url = None
        top_n_raw = os.getenv("SUITABILITY_INVESTMENT_TOP_N", "3")
        try:
            investment_top_n = int(top_n_raw)
        except ValueError as exc:
            raise RuntimeError(
                "SUITABILITY_INVESTMENT_TOP_N must be an integer"
            ) from exc
        if investment_top_n < 1:
            raise RuntimeError(
                "SUITABILITY_INVESTMENT_TOP_N must be at least 1"
            )
        otlp_endpoint = os.getenv("SUITABILITY_OTLP_ENDPOINT", "").strip()
        return cls(
            model=ModelSettings(
                provider=provider,
                model=model,
                endpoint=endpoint,
                api_key=api_key,
                api_version=api_version,
            ),
            responder_mode=responder_mode,
            compliance_strict=_flag("COMPLIANCE_STRICT"),
            output_dir=output_dir,
            session_log=session_log,
            redis_url=redis_url,
            report_version=os.getenv("SUITABILITY_REPORT_VERSION", "v1.0"),
            investment_top_n=investment_top_n,
            otlp_endpoint=otlp_endpoint or None,
        )

    @classmethod
    def for_tests(cls, output_dir: Path) -> "AppSettings":
        """Offline settings rooted in a scratch directory."""
        output_dir.mkdir(parents=True, exist_ok=True)
        return cls(
            model=ModelSettings(
                provider="openai",
                model="gpt-4o-mini",
                endpoint=None,
                api_key=None,
                api_version=None,
            ),
            responder_mode=ResponderMode.STUB,
            compliance_strict=False,
            output_dir=output_dir,
            session_log=output_dir / "sessions.jsonl",
            redis_url=None,
            report_version="v1.0",
            investment_top_n=3,
        )


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in TRUTHY_FLAGS


def _ensure_dotenv() -> None:
    """Load dotenv variables and provide a helpful error if missing."""

    try:
        dotenv_module = import_module("dotenv")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
        raise RuntimeError(
            "python-dotenv is required. Install with `pip install "
            "python-dotenv`."
        ) from exc

    load_dotenv = getattr(dotenv_module, "load_dotenv")
    load_dotenv()
