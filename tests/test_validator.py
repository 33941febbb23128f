from suitability_agent.models import Session
from suitability_agent.validator import (
    allocation_issues,
    exclusion_issues,
    has_recorded_preferences,
    validate,
    validate_data,
)


# ---------------------------------------------------------------------------
# Whole-record validation
# ---------------------------------------------------------------------------

class TestValidateData:
    def test_complete_record_is_valid(self, complete_data):
        result = validate_data(complete_data)
        assert result.valid
        assert result.issues == []

    def test_empty_record_reports_every_issue(self):
        result = validate(Session())
        assert not result.valid
        assert "The session explanation must be shown before advice is given." in result.issues
        assert "Consent to data processing must be granted." in result.issues
        assert "The client must confirm the captured summary." in result.issues
        assert len(result.issues) >= 9

    def test_string_risk_tolerance_rejected(self, complete_data):
        complete_data["client_profile"]["risk_tolerance"] = "4"
        result = validate_data(complete_data)
        assert result.issues == ["Risk tolerance must be a whole number from 1 to 7."]

    def test_financial_figures_must_be_numeric_when_provided(self, complete_data):
        complete_data["client_profile"]["financial_situation"].update(
            {"provided": True, "income": "lots"}
        )
        result = validate_data(complete_data)
        assert result.issues == [
            "Financial situation figures must be numeric when disclosure is provided."
        ]

    def test_future_contact_needs_purpose(self, complete_data):
        complete_data["consent"]["future_contact"]["granted"] = True
        result = validate_data(complete_data)
        assert result.issues == ["Future contact consent requires a stated purpose."]

    def test_disclaimer_required_with_preferences(self, complete_data):
        complete_data["disclosures"]["agr_disclaimer_presented"] = False
        result = validate_data(complete_data)
        assert len(result.issues) == 1
        assert "Anti-Greenwashing" in result.issues[0]

    def test_no_preferences_skips_preference_rules(self, complete_data):
        complete_data["sustainability_preferences"].update(
            {"preference_level": "none", "labels_interest": []}
        )
        complete_data["disclosures"]["agr_disclaimer_presented"] = False
        assert validate_data(complete_data).valid

    def test_detailed_level_needs_themes_and_answers(self, complete_data):
        complete_data["sustainability_preferences"]["preference_level"] = "detailed"
        issues = validate_data(complete_data).issues
        assert "Detailed preferences require at least one sustainability theme." in issues
        assert "Detailed preferences require an engagement importance answer." in issues
        assert "Detailed preferences require a trade-off tolerance answer." in issues

    def test_impact_label_needs_goals_and_cadence(self, complete_data):
        complete_data["sustainability_preferences"].update(
            {
                "labels_interest": ["Sustainability: Impact"],
                "reporting_frequency_pref": "none",
            }
        )
        issues = validate_data(complete_data).issues
        assert issues == [
            "Impact labels require at least one impact goal.",
            "Impact labels require a reporting cadence other than 'none'.",
        ]

    def test_validate_ignores_dialogue_context(self, complete_data):
        session = Session(data=complete_data)
        session.context.require_risk_override = True
        assert validate(session).valid

    def test_unknown_delivery_method(self, complete_data):
        complete_data["delivery"]["method"] = "fax"
        assert validate_data(complete_data).issues == [
            "Delivery method must be one of: email, download."
        ]

    def test_email_delivery_needs_consent(self, complete_data):
        complete_data["delivery"]["method"] = "email"
        assert validate_data(complete_data).issues == [
            "Email delivery requires consent to electronic delivery."
        ]
        complete_data["consent"]["e_delivery"]["granted"] = True
        assert validate_data(complete_data).valid


# ---------------------------------------------------------------------------
# Shared rule helpers
# ---------------------------------------------------------------------------

class TestExclusionIssues:
    def test_fossil_fuels_need_threshold(self):
        assert exclusion_issues([{"sector": "Fossil fuels", "threshold": None}]) == [
            "Exclusion for Fossil fuels requires a revenue threshold (for example 5%)."
        ]

    def test_threshold_range(self):
        issues = exclusion_issues([{"sector": "Tobacco", "threshold": 150}])
        assert issues == ["Exclusion threshold for Tobacco must be a number between 0 and 100."]

    def test_sector_required(self):
        assert exclusion_issues([{"threshold": 5}]) == ["Exclusion 1 must name a sector."]

    def test_empty_is_fine(self):
        assert exclusion_issues([]) == []


class TestAllocationIssues:
    def test_must_total_one_hundred(self):
        allocations = [
            {"name": "Sustainability: Focus", "allocation_pct": 60},
            {"name": "Sustainability: Impact", "allocation_pct": 30},
        ]
        labels = ["Sustainability: Focus", "Sustainability: Impact"]
        assert allocation_issues(allocations, labels) == ["Pathway allocations must add up to 100%."]

    def test_unselected_label(self):
        allocations = [{"name": "Ethical", "allocation_pct": 100}]
        assert allocation_issues(allocations, ["Sustainability: Focus"]) == [
            "Allocation for Ethical does not match a selected label."
        ]

    def test_unknown_pathway(self):
        issues = allocation_issues([{"name": "Moonshots", "allocation_pct": 100}], [])
        assert issues == ["Allocation refers to an unknown pathway: 'Moonshots'."]


def test_has_recorded_preferences(complete_data):
    assert has_recorded_preferences(complete_data)
    complete_data["sustainability_preferences"].update(
        {"preference_level": None, "labels_interest": []}
    )
    assert not has_recorded_preferences(complete_data)
