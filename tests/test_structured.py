from suitability_agent.structured import (
    parse_confirmation,
    parse_consent,
    parse_education,
    parse_onboarding,
    parse_preferences,
)


def _answers(**overrides):
    answers = {
        "client_type": "Joint",
        "objectives": "income",
        "horizon_years": "7",
        "risk_tolerance": 3,
        "capacity_for_loss": "medium",
        "liquidity_needs": "none",
        "knowledge_summary": "Bonds and ISAs monthly for 12 years",
    }
    answers.update(overrides)
    return answers


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------

class TestParseOnboarding:
    def test_valid_answers_build_patch(self):
        update = parse_onboarding(_answers())
        assert update.ok
        profile = update.patch["client_profile"]
        assert profile["client_type"] == "joint"
        assert profile["horizon_years"] == 7
        assert profile["knowledge_experience"]["duration"] == "12 years"
        assert profile["knowledge_experience"]["frequency"] == "monthly"
        assert profile["financial_situation"] == {"provided": False, "notes": ""}

    def test_all_issues_reported_together(self):
        update = parse_onboarding({})
        assert not update.ok
        assert update.patch == {}
        assert len(update.issues) == 7

    def test_boolean_risk_rejected(self):
        update = parse_onboarding(_answers(risk_tolerance=True))
        assert update.issues == ["Risk tolerance must be a whole number from 1 to 7."]

    def test_financial_figures_parsed(self):
        update = parse_onboarding(
            _answers(financial={"provided": True, "income": "45,000", "assets": 120000})
        )
        financial = update.patch["client_profile"]["financial_situation"]
        assert financial["income"] == 45000
        assert financial["assets"] == 120000
        assert "liabilities" not in financial

    def test_financial_disclosure_needs_a_figure(self):
        update = parse_onboarding(_answers(financial={"provided": True}))
        assert len(update.issues) == 1
        assert "at least one of income" in update.issues[0]

    def test_malformed_figure(self):
        update = parse_onboarding(_answers(financial={"provided": True, "income": "lots"}))
        assert update.issues == ["Financial income must be a number."]


# ---------------------------------------------------------------------------
# Consent, education and confirmation
# ---------------------------------------------------------------------------

class TestParseConsent:
    def test_data_processing_required(self):
        update = parse_consent(
            {"data_processing": False, "e_delivery": True, "future_contact": False}
        )
        assert update.issues == [
            "Consent to data processing is required before we can continue."
        ]

    def test_declined_contact_clears_purpose(self):
        update = parse_consent(
            {
                "data_processing": {"granted": True},
                "e_delivery": {"granted": True},
                "future_contact": {"granted": False, "purpose": "ignored"},
            }
        )
        consent = update.patch["consent"]
        assert consent["future_contact"] == {"granted": False, "purpose": "", "timestamp": None}
        assert consent["e_delivery"]["timestamp"]


def test_education_requires_acknowledgement():
    assert not parse_education({"acknowledged": "yes"}).ok
    update = parse_education({"acknowledged": True})
    assert update.patch == {"education": {"acknowledged": True, "wants_summary": False}}


def test_confirmation_needs_answer():
    assert not parse_confirmation({}).ok
    update = parse_confirmation({"confirmed": False, "edits_requested": "Change horizon"})
    assert update.patch["summary_confirmation"] == {
        "client_summary_confirmed": False,
        "edits_requested": "Change horizon",
    }


# ---------------------------------------------------------------------------
# Sustainability preferences
# ---------------------------------------------------------------------------

class TestParsePreferences:
    def test_labels_resolved_by_alias(self):
        update = parse_preferences(
            {"preference_level": "High level", "labels_interest": ["focus", "Ethical"]}
        )
        assert update.ok
        preferences = update.patch["sustainability_preferences"]
        assert preferences["preference_level"] == "high_level"
        assert preferences["labels_interest"] == ["Sustainability: Focus", "Ethical"]

    def test_unknown_label(self):
        update = parse_preferences(
            {"preference_level": "high_level", "labels_interest": ["moonshots"]}
        )
        assert "Unknown SDR label or pathway: moonshots." in update.issues

    def test_none_level_clears_lists(self):
        update = parse_preferences(
            {"preference_level": "none", "labels_interest": ["focus"], "themes": ["Climate"]}
        )
        preferences = update.patch["sustainability_preferences"]
        assert preferences["labels_interest"] == []
        assert preferences["themes"] == []

    def test_exclusions_from_text(self):
        update = parse_preferences(
            {
                "preference_level": "high_level",
                "labels_interest": ["Ethical"],
                "exclusions": "tobacco 0%, fossil fuels 5%",
            }
        )
        assert update.patch["sustainability_preferences"]["exclusions"] == [
            {"sector": "Tobacco", "threshold": 0},
            {"sector": "Fossil fuels", "threshold": 5},
        ]

    def test_allocations_checked(self):
        update = parse_preferences(
            {
                "preference_level": "high_level",
                "labels_interest": ["focus"],
                "pathway_allocations": [{"name": "focus", "allocation_pct": "80"}],
            }
        )
        assert update.issues == ["Pathway allocations must add up to 100%."]
