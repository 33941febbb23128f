import asyncio
import copy

import pytest

from suitability_agent.engine import ConversationEngine, StageTransitionError
from suitability_agent.guardrails import RISK_CAPACITY_OVERRIDE, RISK_HORIZON_WARNING
from suitability_agent.models import SessionEvent
from suitability_agent.prompts import (
    AGR_DISCLAIMER,
    COMPLETE_MESSAGE,
    CONFIRMATION_QUESTION,
    CONSENT_STEPS,
    EDUCATION_STEPS,
    ONBOARDING_STEPS,
    OPTIONS_STEPS,
    RISK_CAPACITY_OVERRIDE as OVERRIDE_PROMPT,
    RISK_HORIZON_WARNING as HORIZON_PROMPT,
)
from suitability_agent.report import ReportGenerationError, ReportGenerator
from suitability_agent.stages import PATHWAY_DETAILS, STAGE_ORDER, STAGE_PROMPTS, Stage
from suitability_agent.validator import validate


ONBOARDING_ANSWERS = {
    "client_type": "individual",
    "objectives": "growth",
    "horizon_years": 2,
    "risk_tolerance": 6,
    "capacity_for_loss": "low",
    "liquidity_needs": "none",
    "knowledge_summary": "Funds and shares for 3 years",
    "financial": {"provided": False},
}


def _trigger_types(session):
    return [entry["type"] for entry in session.data["audit"]["guardrail_triggers"]]


# ---------------------------------------------------------------------------
# Stage transitions
# ---------------------------------------------------------------------------

class TestStageTransitions:
    def test_start_marks_explanation_once(self, engine, session):
        first = session.data["timestamps"]["explanation_shown_at"]
        assert session.data["audit"]["explanation_shown"] is True
        assert engine.start(session) == [STAGE_PROMPTS[Stage.EXPLANATION]]
        assert session.data["timestamps"]["explanation_shown_at"] == first

    def test_backwards_move_rejected(self, engine, session, advance_to):
        advance_to(session, Stage.CONSENT)
        with pytest.raises(StageTransitionError):
            engine.move_to_stage(session, Stage.ONBOARDING)
        with pytest.raises(StageTransitionError):
            engine.move_to_stage(session, Stage.CONSENT)

    def test_unknown_stage_rejected(self, engine, session):
        with pytest.raises(StageTransitionError):
            engine.move_to_stage(session, "SEGMENT_Z_UNKNOWN")
        assert session.stage is Stage.EXPLANATION

    def test_ready_moves_to_onboarding(self, send, session):
        response = send(session, "ready")
        assert session.stage is Stage.ONBOARDING
        assert response.messages == [
            STAGE_PROMPTS[Stage.ONBOARDING],
            ONBOARDING_STEPS[0].question,
        ]

    def test_stage_always_canonical(self, send, session):
        for text in ("ready", "individual", "growth", "purple", "10 years", "what is ESG?"):
            send(session, text)
            assert session.stage in STAGE_ORDER


# ---------------------------------------------------------------------------
# Full free-text interview
# ---------------------------------------------------------------------------

class TestHappyPath:
    def test_interview_reaches_complete(self, session, advance_to, settings):
        advance_to(session, Stage.COMPLETE)
        data = session.data
        assert data["client_profile"]["horizon_years"] == 10
        assert data["client_profile"]["knowledge_experience"]["duration"] == "5 years"
        assert data["consent"]["e_delivery"]["granted"] is True
        assert data["sustainability_preferences"]["educ_pack_sent"] is True
        assert data["disclosures"]["agr_disclaimer_presented"] is True
        assert data["report"]["status"] == "generated"
        assert len(data["report"]["hash"]) == 64
        assert data["report"]["doc_url"] == f"/api/sessions/{session.id}/report.pdf"
        assert data["delivery"]["method"] == "email"
        assert data["timestamps"]["completed_at"]
        assert validate(session).valid
        report_path = settings.reports_dir / f"{session.id}.pdf"
        assert report_path.read_bytes().startswith(b"%PDF")

    def test_complete_session_rejects_events(self, send, session, advance_to):
        advance_to(session, Stage.COMPLETE)
        event_count = len(session.events)
        response = send(session, "Can I change my answers?")
        assert response.messages == [COMPLETE_MESSAGE]
        assert len(session.events) == event_count

    def test_complete_session_still_saved(self, send, session, advance_to, settings):
        advance_to(session, Stage.COMPLETE)
        archived = len(settings.session_log.read_text(encoding="utf-8").splitlines())
        send(session, "Hello again")
        lines = settings.session_log.read_text(encoding="utf-8").splitlines()
        assert len(lines) == archived + 2

    def test_download_when_e_delivery_declined(self, send, session, advance_to):
        advance_to(session, Stage.CONSENT)
        for text in ("yes", "no", "no"):
            send(session, text)
        advance_to(session, Stage.DELIVERY)
        assert session.data["delivery"]["method"] == "download"


# ---------------------------------------------------------------------------
# Onboarding and guardrails
# ---------------------------------------------------------------------------

class TestOnboarding:
    def test_unparseable_answer_changes_nothing(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING)
        profile_before = copy.deepcopy(session.data["client_profile"])
        response = send(session, "purple elephants")
        assert session.stage is Stage.ONBOARDING
        assert session.context.onboarding_step == 0
        assert session.data["client_profile"] == profile_before
        assert response.compliance is not None
        assert response.messages[-1].endswith(ONBOARDING_STEPS[0].question)

    def test_high_risk_short_horizon_warns(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth", "2 years"])
        response = send(session, "6")
        assert response.messages == [HORIZON_PROMPT, ONBOARDING_STEPS[4].question]
        assert _trigger_types(session) == [RISK_HORIZON_WARNING]

    def test_capacity_override_confirmed(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth", "10 years", "6"])
        response = send(session, "low")
        assert response.messages == [OVERRIDE_PROMPT]
        assert session.context.require_risk_override is True
        assert session.context.onboarding_step == 5

        response = send(session, "yes")
        assert session.context.require_risk_override is False
        assert response.messages[-1] == ONBOARDING_STEPS[5].question
        entry = session.data["audit"]["guardrail_triggers"][0]
        assert entry["type"] == RISK_CAPACITY_OVERRIDE
        assert entry["confirmed_at"]

        for text in ["none", "funds", "no"]:
            send(session, text)
        assert session.stage is Stage.CONSENT
        assert _trigger_types(session) == [RISK_CAPACITY_OVERRIDE]

    def test_capacity_override_resolved_by_lower_risk(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth", "10 years", "6", "low"])
        send(session, "let's make it 3")
        assert session.context.require_risk_override is False
        assert session.data["client_profile"]["risk_tolerance"] == 3
        entry = session.data["audit"]["guardrail_triggers"][0]
        assert entry["resolved_at"]
        assert entry["confirmed_at"] is None

    def test_override_prompt_repeats_until_answered(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth", "10 years", "6", "low"])
        response = send(session, "hmm")
        assert session.context.require_risk_override is True
        assert response.messages[-1] == OVERRIDE_PROMPT

    def test_financial_details(self, send, session, advance_to):
        advance_to(
            session,
            Stage.ONBOARDING,
            ["individual", "income", "5", "3", "high", "none", "ISAs for years", "yes"],
        )
        assert session.context.onboarding_step == 8
        send(session, "income 40k, savings 120k, no debt")
        financial = session.data["client_profile"]["financial_situation"]
        assert financial["provided"] is True
        assert financial["income"] == 40000
        assert financial["assets"] == 120000
        assert session.stage is Stage.CONSENT

    def test_structured_override_confirmed(self, submit, session, advance_to):
        advance_to(session, Stage.ONBOARDING)
        response = submit(session, {"answers": ONBOARDING_ANSWERS, "confirm_override": True})
        assert session.stage is Stage.CONSENT
        assert _trigger_types(session) == [RISK_HORIZON_WARNING, RISK_CAPACITY_OVERRIDE]
        assert session.data["audit"]["guardrail_triggers"][1]["confirmed_at"]
        assert session.context.require_risk_override is False
        assert response.messages[0] == HORIZON_PROMPT
        assert response.messages[-1] == CONSENT_STEPS[0].question

    def test_structured_override_awaits_confirmation(self, submit, session, advance_to):
        advance_to(session, Stage.ONBOARDING)
        response = submit(session, {"answers": ONBOARDING_ANSWERS})
        assert session.stage is Stage.ONBOARDING
        assert session.context.require_risk_override is True
        assert response.messages[-1] == OVERRIDE_PROMPT

        submit(session, {"confirm_override": True})
        assert session.stage is Stage.CONSENT
        assert session.data["audit"]["guardrail_triggers"][1]["confirmed_at"]

    def test_structured_invalid_answers_rejected(self, submit, session, advance_to):
        advance_to(session, Stage.ONBOARDING)
        profile_before = copy.deepcopy(session.data["client_profile"])
        answers = dict(ONBOARDING_ANSWERS, risk_tolerance=9, client_type="alien")
        response = submit(session, {"answers": answers})
        assert session.stage is Stage.ONBOARDING
        assert session.data["client_profile"] == profile_before
        assert "Risk tolerance must be a whole number from 1 to 7." in response.messages[0]
        assert "Client type must be one of" in response.messages[0]


# ---------------------------------------------------------------------------
# Consent and education
# ---------------------------------------------------------------------------

class TestConsentAndEducation:
    def test_data_processing_refusal_blocks(self, send, session, advance_to):
        advance_to(session, Stage.CONSENT)
        send(session, "no")
        assert session.stage is Stage.CONSENT
        assert session.context.consent_step == 0
        assert session.data["consent"]["data_processing"]["granted"] is False

    def test_future_contact_purpose_recorded(self, send, session, advance_to):
        advance_to(session, Stage.CONSENT, ["yes", "yes", "yes"])
        assert session.context.consent_step == 3
        send(session, "annual portfolio reviews")
        future_contact = session.data["consent"]["future_contact"]
        assert future_contact == {
            "granted": True,
            "purpose": "annual portfolio reviews",
            "timestamp": future_contact["timestamp"],
        }
        assert session.stage is Stage.EDUCATION

    def test_structured_consent_requires_purpose(self, submit, session, advance_to):
        advance_to(session, Stage.CONSENT)
        submit(
            session,
            {"consent": {"data_processing": True, "e_delivery": False, "future_contact": True}},
        )
        assert session.stage is Stage.CONSENT
        submit(
            session,
            {
                "consent": {
                    "data_processing": {"granted": True},
                    "e_delivery": False,
                    "future_contact": {"granted": True, "purpose": "reviews"},
                }
            },
        )
        assert session.stage is Stage.EDUCATION
        assert session.data["consent"]["future_contact"]["purpose"] == "reviews"

    def test_pathway_question_explains_without_advancing(self, send, session, advance_to):
        advance_to(session, Stage.EDUCATION)
        response = send(session, "Tell me more about Focus")
        assert response.messages == [
            PATHWAY_DETAILS["Sustainability: Focus"],
            EDUCATION_STEPS[0].question,
        ]
        assert session.data["education"]["pathways_explained"] == ["Sustainability: Focus"]
        assert session.context.education_phase == 0

    def test_focus_summary_requested(self, send, session, advance_to):
        advance_to(session, Stage.EDUCATION, ["yes, I have read it"])
        send(session, "yes please")
        assert session.data["education"]["wants_summary"] is True
        assert session.stage is Stage.OPTIONS


# ---------------------------------------------------------------------------
# Sustainability preferences
# ---------------------------------------------------------------------------

class TestOptions:
    def test_no_preferences_skips_to_confirmation(self, send, session, advance_to):
        advance_to(session, Stage.OPTIONS)
        response = send(session, "none")
        assert session.stage is Stage.CONFIRMATION
        assert session.data["sustainability_preferences"]["preference_level"] == "none"
        assert session.data["disclosures"]["agr_disclaimer_presented"] is False
        assert AGR_DISCLAIMER not in response.messages
        assert response.messages[-1] == CONFIRMATION_QUESTION

    def test_high_level_flow_presents_disclaimer(self, send, session, advance_to):
        advance_to(session, Stage.OPTIONS, ["high level", "Focus"])
        response = send(session, "none")
        assert response.messages[0] == AGR_DISCLAIMER
        assert session.stage is Stage.CONFIRMATION
        assert session.data["disclosures"]["agr_disclaimer_presented_at"]

    def test_impact_requires_goals_and_cadence(self, send, session, advance_to):
        advance_to(session, Stage.OPTIONS, ["detailed", "Impact", "climate", "none"])
        assert OPTIONS_STEPS[session.context.options_step].key == "impact_goals"

        response = send(session, "none")
        assert "Impact labels require at least one impact goal." in response.messages[0]
        assert OPTIONS_STEPS[session.context.options_step].key == "impact_goals"

        send(session, "clean energy access")
        send(session, "very important to me")
        assert OPTIONS_STEPS[session.context.options_step].key == "reporting_frequency_pref"

        response = send(session, "none")
        assert "reporting cadence other than 'none'" in response.messages[0]
        assert session.data["sustainability_preferences"]["reporting_frequency_pref"] is None

        send(session, "annually")
        send(session, "small trade-offs are fine")
        preferences = session.data["sustainability_preferences"]
        assert session.stage is Stage.CONFIRMATION
        assert preferences["impact_goals"] == ["clean energy access"]
        assert preferences["reporting_frequency_pref"] == "annual"

    def test_fossil_fuel_exclusion_needs_threshold(self, send, session, advance_to):
        advance_to(session, Stage.OPTIONS, ["high level", "Focus"])
        response = send(session, "fossil fuels")
        assert "requires a revenue threshold" in response.messages[0]
        assert session.data["sustainability_preferences"]["exclusions"] == []
        send(session, "fossil fuels above 5%")
        assert session.data["sustainability_preferences"]["exclusions"] == [
            {"sector": "Fossil fuels", "threshold": 5}
        ]

    def test_allocations_must_total_one_hundred(self, send, session, advance_to):
        advance_to(session, Stage.OPTIONS, ["high level"])
        response = send(session, "Focus 60%, Impact 30%")
        assert "Pathway allocations must add up to 100%." in response.messages[0]
        assert session.data["sustainability_preferences"]["labels_interest"] == []
        send(session, "Focus 60%, Impact 40%")
        assert sorted(session.data["sustainability_preferences"]["labels_interest"]) == [
            "Sustainability: Focus",
            "Sustainability: Impact",
        ]

    def test_structured_impact_without_goals_rejected(self, submit, session, advance_to):
        advance_to(session, Stage.OPTIONS)
        before = copy.deepcopy(session.data["sustainability_preferences"])
        response = submit(
            session,
            {
                "preferences": {
                    "preference_level": "detailed",
                    "labels_interest": ["Sustainability: Impact"],
                    "themes": ["Climate"],
                    "engagement_importance": "high",
                    "tradeoff_tolerance": "some",
                    "impact_goals": [],
                    "reporting_frequency_pref": "none",
                }
            },
        )
        assert session.stage is Stage.OPTIONS
        assert session.data["sustainability_preferences"] == before
        assert response.validation["valid"] is False
        assert "Impact labels require at least one impact goal." in response.validation["issues"]
        assert (
            "Impact labels require a reporting cadence other than 'none'."
            in response.validation["issues"]
        )

    def test_structured_preferences_committed(self, submit, session, advance_to):
        advance_to(session, Stage.OPTIONS)
        submit(
            session,
            {
                "preferences": {
                    "preference_level": "detailed",
                    "labels_interest": ["impact"],
                    "themes": ["Climate"],
                    "exclusions": [{"sector": "Fossil fuels", "threshold": 5}],
                    "impact_goals": ["Clean energy"],
                    "engagement_importance": "high",
                    "reporting_frequency_pref": "annual",
                    "tradeoff_tolerance": "some",
                }
            },
        )
        preferences = session.data["sustainability_preferences"]
        assert session.stage is Stage.CONFIRMATION
        assert preferences["labels_interest"] == ["Sustainability: Impact"]
        assert session.data["disclosures"]["agr_disclaimer_presented"] is True


# ---------------------------------------------------------------------------
# Confirmation and report trigger
# ---------------------------------------------------------------------------

class FailingReportGenerator(ReportGenerator):
    def generate(self, session):
        raise ReportGenerationError("renderer unavailable")


class TestConfirmation:
    def test_edit_request_recorded(self, send, session, advance_to):
        advance_to(session, Stage.CONFIRMATION)
        send(session, "Please change my horizon to 12 years")
        assert session.stage is Stage.CONFIRMATION
        assert session.data["summary_confirmation"]["edits_requested"] == (
            "Please change my horizon to 12 years"
        )
        assert session.data["summary_confirmation"]["client_summary_confirmed"] is False

    def test_validation_failure_blocks_report(self, send, session, advance_to):
        advance_to(session, Stage.CONFIRMATION)
        session.data["client_profile"]["liquidity_needs"] = ""
        response = send(session, "yes")
        assert session.stage is Stage.CONFIRMATION
        assert response.validation == {
            "valid": False,
            "issues": ["Liquidity needs must be recorded."],
        }
        assert session.data["summary_confirmation"]["client_summary_confirmed"] is False
        assert session.data["report"]["status"] == "not_started"

    def test_report_failure_keeps_stage(self, store, settings):
        failing = ConversationEngine(
            store, report_generator=FailingReportGenerator(), settings=settings
        )
        session = store.create()
        failing.start(session)

        def _send(text):
            event = SessionEvent(author="client", type="message", content={"text": text})
            return asyncio.run(failing.handle_event(session, event))

        answers = ["ready", *[
            "individual", "growth", "10 years", "4", "medium", "none", "funds", "no",
        ], "yes", "yes", "no", "yes", "no", "none", "yes"]
        for text in answers:
            _send(text)
        assert session.stage is Stage.CONFIRMATION
        assert session.data["report"]["status"] == "failed"
        assert session.data["summary_confirmation"]["client_summary_confirmed"] is True


# ---------------------------------------------------------------------------
# Non-client events
# ---------------------------------------------------------------------------

class TestOtherEvents:
    def test_adviser_note_logged(self, engine, session):
        event = SessionEvent(author="adviser", type="note", content={"text": "Called client"})
        response = asyncio.run(engine.handle_event(session, event))
        assert response.messages == []
        assert session.data["notes"][-1]["text"] == "Called client"
        assert session.data["notes"][-1]["author"] == "adviser"

    def test_assistant_stage_data_patch(self, engine, session):
        event = SessionEvent(
            author="assistant",
            type="message",
            content={
                "text": "Noted.",
                "stage_data": {"client_profile": {"liquidity_needs": "emergency fund"}},
            },
        )
        asyncio.run(engine.handle_event(session, event))
        assert session.data["client_profile"]["liquidity_needs"] == "emergency fund"
        assert session.stage is Stage.EXPLANATION

    def test_assistant_patch_cannot_shrink_logs(self, engine, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth"])
        send(session, "Why do you need that?")
        send(session, "2 years")
        send(session, "6")
        assert _trigger_types(session) == [RISK_HORIZON_WARNING]
        assert len(session.data["extra_questions"]) == 1
        audit_events = len(session.data["audit"]["events"])

        event = SessionEvent(
            author="assistant",
            type="message",
            content={
                "text": "Noted.",
                "stage_data": {
                    "audit": {"guardrail_triggers": [], "events": []},
                    "extra_questions": [],
                    "educational_requests": [],
                },
            },
        )
        asyncio.run(engine.handle_event(session, event))
        assert _trigger_types(session) == [RISK_HORIZON_WARNING]
        assert len(session.data["extra_questions"]) == 1
        assert len(session.data["audit"]["events"]) == audit_events + 1

    def test_assistant_patch_cannot_write_engine_sections(self, engine, session):
        event = SessionEvent(
            author="assistant",
            type="message",
            content={
                "stage_data": {
                    "summary_confirmation": {"client_summary_confirmed": True},
                    "report": {"status": "generated"},
                    "audit": {"ip": "10.0.0.1"},
                    "client_profile": {"liquidity_needs": "school fees"},
                }
            },
        )
        asyncio.run(engine.handle_event(session, event))
        assert session.data["summary_confirmation"]["client_summary_confirmed"] is False
        assert session.data["report"]["status"] == "not_started"
        assert session.data["audit"]["ip"] == "127.0.0.1"
        assert session.data["client_profile"]["liquidity_needs"] == "school fees"

    def test_every_turn_is_archived(self, send, session, settings):
        send(session, "ready")
        lines = settings.session_log.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 4
