"""FastAPI entrypoint exposing the suitability interview over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from .compliance import ComplianceUnauthorizedError
from .config import AppSettings
from .engine import ConversationEngine
from .models import Session, SessionEvent
from .validator import validate

logger = logging.getLogger(__name__)


class EventRequest(BaseModel):
    author: str
    type: str = "message"
    content: Dict[str, Any] = Field(default_factory=dict)


class AdviserNotesRequest(BaseModel):
    adviser_notes: str


def _session_payload(session: Session) -> Dict[str, Any]:
    payload = session.to_dict()
    payload.pop("events", None)
    payload["event_count"] = len(session.events)
    return payload


def _case_summary(session: Session) -> Dict[str, Any]:
    profile = session.data["client_profile"]
    report = session.data["report"]
    return {
        "id": session.id,
        "stage": session.stage.value,
        "client_type": profile.get("client_type"),
        "objectives": profile.get("objectives"),
        "risk_tolerance": profile.get("risk_tolerance"),
        "guardrail_triggers": len(session.data["audit"]["guardrail_triggers"]),
        "report_status": report.get("status"),
        "created_at": session.created_at,
        "updated_at": session.updated_at,
    }


def create_app(
    settings: Optional[AppSettings] = None,
    *,
    engine: Optional[ConversationEngine] = None,
    allow_origins: Sequence[str] | None = None,
) -> FastAPI:
    """Create the FastAPI app around a conversation engine."""

    if engine is None:
        engine = ConversationEngine.from_settings(settings or AppSettings.load())
        restored = engine.store.load_archive()
        if restored:
            logger.info("Restored %d session(s) from archive", restored)

    app = FastAPI(title="Suitability Interview Agent")

    origins = list(allow_origins) if allow_origins else ["*"]
    allow_credentials = origins != ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _require_session(session_id: str) -> Session:
        session = engine.store.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return session

    @app.get("/api/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/sessions", status_code=201)
    async def create_session(request: Request) -> Dict[str, Any]:
        client_ip = request.client.host if request.client else None
        session = engine.store.create(ip=client_ip)
        messages = engine.start(session)
        engine.store.save(session)
        return {"session": _session_payload(session), "messages": messages}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        session = _require_session(session_id)
        payload = session.to_dict()
        payload["current_question"] = engine.current_question(session)
        return payload

    @app.post("/api/sessions/{session_id}/events")
    async def post_event(session_id: str, payload: EventRequest) -> Dict[str, Any]:
        session = _require_session(session_id)
        try:
            event = SessionEvent(
                author=payload.author,
                type=payload.type,
                content=dict(payload.content),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            response = await engine.handle_event(session, event)
        except ComplianceUnauthorizedError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            **response.to_dict(),
            "stage": session.stage.value,
            "session": _session_payload(session),
        }

    @app.api_route("/api/sessions/{session_id}/validate", methods=["GET", "POST"])
    async def validate_session(session_id: str) -> Dict[str, Any]:
        session = _require_session(session_id)
        return validate(session).to_dict()

    @app.get("/api/sessions/{session_id}/report.pdf")
    async def download_report(session_id: str) -> Response:
        _require_session(session_id)
        artifacts = engine.report_store.get(session_id)
        if artifacts is None:
            raise HTTPException(status_code=404, detail="Report has not been generated.")
        return Response(
            content=artifacts.artifact_bytes,
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'attachment; filename="suitability-{session_id}.pdf"'
            },
        )

    @app.get("/api/adviser/cases")
    async def list_cases() -> List[Dict[str, Any]]:
        return [_case_summary(session) for session in engine.store.list()]

    @app.get("/api/adviser/cases/{session_id}")
    async def get_case(session_id: str) -> Dict[str, Any]:
        session = _require_session(session_id)
        return {
            **_case_summary(session),
            "data": session.data,
            "validation": validate(session).to_dict(),
        }

    @app.patch("/api/adviser/cases/{session_id}")
    async def update_case(session_id: str, payload: AdviserNotesRequest) -> Dict[str, Any]:
        session = _require_session(session_id)
        session.data["adviser_notes"] = payload.adviser_notes.strip()
        session.touch()
        engine.store.save(session)
        logger.info("Adviser notes updated for session %s", session_id)
        return _case_summary(session) | {"adviser_notes": session.data["adviser_notes"]}

    return app


def run_server(
    settings: AppSettings,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    allow_origins: Sequence[str] | None = None,
    log_level: str = "info",
) -> None:
    """Start the HTTP server."""

    app = create_app(settings, allow_origins=allow_origins)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level,
    )
