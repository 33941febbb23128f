import copy

from suitability_agent.detours import has_preference_profile, run_detours
from suitability_agent.models import Session
from suitability_agent.prompts import INVESTMENT_COME_BACK_LATER, ONBOARDING_STEPS
from suitability_agent.stages import Stage


# ---------------------------------------------------------------------------
# Detours called directly
# ---------------------------------------------------------------------------

class TestRunDetours:
    def test_plain_answer_is_not_a_detour(self):
        session = Session()
        assert run_detours(session, "10 years", resume_prompt="q", step_key="horizon_years") is None

    def test_educational_question(self):
        session = Session()
        result = run_detours(session, "What is greenwashing?", resume_prompt="q", step_key=None)
        assert result.kind == "educational"
        assert result.messages[-1] == "q"
        request = session.data["educational_requests"][0]
        assert request["topic"] == "anti_greenwashing"
        assert request["stage"] == Stage.EXPLANATION.value

    def test_rationale_uses_step(self):
        session = Session()
        result = run_detours(
            session, "Why do you need that?", resume_prompt="q", step_key="horizon_years"
        )
        assert result.kind == "rationale"
        assert "investment horizon" in result.messages[0]
        assert session.data["extra_questions"][0]["step"] == "horizon_years"

    def test_long_question_truncated_in_log(self):
        session = Session()
        question = "Why do you need that? " + "x" * 300
        run_detours(session, question, resume_prompt="q", step_key=None)
        assert len(session.data["extra_questions"][0]["question"]) == 200

    def test_investment_question_deferred_without_preferences(self):
        session = Session()
        result = run_detours(
            session, "Which funds would suit me?", resume_prompt="q", step_key=None
        )
        assert result.kind == "investment"
        assert result.messages[0].startswith(INVESTMENT_COME_BACK_LATER)
        assert session.data["investment_queries"][0]["status"] == "deferred"

    def test_preference_profile_detection(self, complete_data):
        assert not has_preference_profile(Session())
        session = Session(data=complete_data)
        assert has_preference_profile(session)


# ---------------------------------------------------------------------------
# Detours during a live interview
# ---------------------------------------------------------------------------

class TestDetoursInInterview:
    def test_rationale_keeps_position(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING, ["individual", "growth"])
        context_before = session.context.snapshot()
        response = send(session, "Why do you need that?")
        assert "investment horizon" in response.messages[0]
        assert response.messages[-1] == ONBOARDING_STEPS[2].question
        assert len(session.data["extra_questions"]) == 1
        assert session.context.snapshot() == context_before
        assert session.stage is Stage.ONBOARDING

    def test_educational_request_logged(self, send, session, advance_to):
        advance_to(session, Stage.CONSENT)
        send(session, "What is greenwashing?")
        assert session.data["educational_requests"][-1]["topic"] == "anti_greenwashing"
        assert session.stage is Stage.CONSENT
        assert session.context.consent_step == 0

    def test_investment_query_deferred_in_onboarding(self, send, session, advance_to):
        advance_to(session, Stage.ONBOARDING)
        profile_before = copy.deepcopy(session.data["client_profile"])
        send(session, "Which funds would suit me?")
        query = session.data["investment_queries"][0]
        assert query["status"] == "deferred"
        assert query["authorised"] == []
        assert session.data["client_profile"] == profile_before

    def test_investment_query_matched_at_confirmation(self, send, session, advance_to):
        advance_to(session, Stage.CONFIRMATION)
        response = send(session, "Which funds would suit me?")
        query = session.data["investment_queries"][-1]
        assert query["status"] == "matched"
        assert query["authorised"] == [
            "harbor_balanced_focus",
            "aurora_green_growth",
            "sterling_sustainable_income",
        ]
        assert query["market"] == ["northstar_responsible_credit"]
        assert "Harbor ESG Balanced Focus Portfolio" in response.messages[0]
        assert session.stage is Stage.CONFIRMATION
        assert session.data["summary_confirmation"]["client_summary_confirmed"] is False
