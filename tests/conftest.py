"""Shared pytest fixtures for the suitability agent test suite.

Every fixture runs fully offline: settings come from
``AppSettings.for_tests`` (stub compliance responder, no Redis) and the
session archive and reports live under ``tmp_path``.
"""

import asyncio
from typing import Iterable

import pytest

from suitability_agent.config import AppSettings
from suitability_agent.engine import ConversationEngine
from suitability_agent.models import SessionEvent, empty_session_data
from suitability_agent.sessions import SessionStore
from suitability_agent.stages import Stage


# ---------------------------------------------------------------------------
# Canned free-text answers that walk a session stage by stage
# ---------------------------------------------------------------------------

ONBOARDING_ANSWERS = (
    "individual",
    "growth",
    "10 years",
    "4",
    "medium",
    "none",
    "I have held funds and shares for 5 years",
    "no",
)
CONSENT_ANSWERS = ("yes", "yes", "no")
EDUCATION_ANSWERS = ("yes, I have read it", "no")
HIGH_LEVEL_OPTIONS_ANSWERS = ("high level", "Focus", "none")

ANSWERS_BY_STAGE = {
    Stage.EXPLANATION: ("ready",),
    Stage.ONBOARDING: ONBOARDING_ANSWERS,
    Stage.CONSENT: CONSENT_ANSWERS,
    Stage.EDUCATION: EDUCATION_ANSWERS,
    Stage.OPTIONS: HIGH_LEVEL_OPTIONS_ANSWERS,
    Stage.CONFIRMATION: ("yes",),
    Stage.REPORT: ("ok",),
    Stage.DELIVERY: ("received",),
}


@pytest.fixture
def settings(tmp_path):
    return AppSettings.for_tests(tmp_path)


@pytest.fixture
def store(settings):
    return SessionStore(settings.session_log)


@pytest.fixture
def engine(store, settings):
    return ConversationEngine(store, settings=settings)


@pytest.fixture
def session(engine):
    created = engine.store.create(ip="127.0.0.1")
    engine.start(created)
    engine.store.save(created)
    return created


@pytest.fixture
def send(engine):
    """Send one free-text client message and return the turn response."""

    def _send(session, text):
        event = SessionEvent(author="client", type="message", content={"text": text})
        return asyncio.run(engine.handle_event(session, event))

    return _send


@pytest.fixture
def submit(engine):
    """Send a structured ``data_update`` payload for the current stage."""

    def _submit(session, payload):
        event = SessionEvent(author="client", type="data_update", content=dict(payload))
        return asyncio.run(engine.handle_event(session, event))

    return _submit


@pytest.fixture
def advance_to(send):
    """Walk ``session`` to ``target`` with canned answers, then send ``answers``."""

    def _advance(session, target, answers: Iterable[str] = ()):
        while session.stage.index < target.index:
            stage = session.stage
            for text in ANSWERS_BY_STAGE[stage]:
                send(session, text)
            assert session.stage is not stage, f"stuck in {stage.value}"
        assert session.stage is target
        for text in answers:
            send(session, text)
        return session

    return _advance


@pytest.fixture
def complete_data():
    """A business record that passes every completeness check."""

    data = empty_session_data()
    data["audit"]["explanation_shown"] = True
    data["client_profile"].update(
        {
            "client_type": "individual",
            "objectives": "growth",
            "horizon_years": 10,
            "risk_tolerance": 4,
            "capacity_for_loss": "medium",
            "liquidity_needs": "none",
        }
    )
    data["client_profile"]["knowledge_experience"]["summary"] = "Funds for 5 years"
    data["consent"]["data_processing"] = {"granted": True, "timestamp": "2026-01-05T10:00:00Z"}
    data["sustainability_preferences"].update(
        {
            "preference_level": "high_level",
            "labels_interest": ["Sustainability: Focus"],
        }
    )
    data["disclosures"]["agr_disclaimer_presented"] = True
    data["summary_confirmation"]["client_summary_confirmed"] = True
    return data
