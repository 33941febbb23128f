from suitability_agent.investments import (
    AUTHORISED_INVESTMENTS,
    InvestmentMatches,
    format_matches,
    match_investments,
    score_product,
)


def _product(product_id):
    return next(item for item in AUTHORISED_INVESTMENTS if item.id == product_id)


class TestScoreProduct:
    def test_risk_outside_band_disqualifies(self):
        profile = {"risk_tolerance": 7, "horizon_years": 10, "objectives": "growth"}
        assert score_product(_product("harbor_balanced_focus"), profile, {}) is None

    def test_short_horizon_disqualifies(self):
        profile = {"risk_tolerance": 4, "horizon_years": 2, "objectives": "growth"}
        assert score_product(_product("aurora_green_growth"), profile, {}) is None

    def test_label_and_theme_points(self):
        profile = {"risk_tolerance": 4, "horizon_years": 10, "objectives": "growth"}
        preferences = {
            "preference_level": "detailed",
            "labels_interest": ["Sustainability: Focus"],
            "themes": ["climate"],
        }
        scored = score_product(_product("harbor_balanced_focus"), profile, preferences)
        assert scored.score == 9
        assert "carries the Sustainability: Focus label" in scored.reasons


class TestMatchInvestments:
    def test_ranked_by_score(self, complete_data):
        matches = match_investments(complete_data)
        assert [item.product.id for item in matches.authorised] == [
            "harbor_balanced_focus",
            "aurora_green_growth",
            "sterling_sustainable_income",
        ]
        assert [item.score for item in matches.authorised] == [7, 3, 0]
        assert [item.product.id for item in matches.market] == ["northstar_responsible_credit"]

    def test_top_n_limits_each_list(self, complete_data):
        matches = match_investments(complete_data, top_n=1)
        assert matches.matched_ids == ["harbor_balanced_focus", "northstar_responsible_credit"]

    def test_qualifying_products_kept_without_points(self, complete_data):
        complete_data["client_profile"]["objectives"] = "other"
        complete_data["sustainability_preferences"]["labels_interest"] = ["Ethical"]
        matches = match_investments(complete_data)
        assert [item.product.id for item in matches.authorised] == [
            "aurora_green_growth",
            "sterling_sustainable_income",
            "harbor_balanced_focus",
        ]
        assert all(item.score == 0 for item in matches.authorised)
        assert [item.product.id for item in matches.market] == ["northstar_responsible_credit"]
        text = format_matches(matches)
        assert "None of the products" not in text
        assert "Why it fits: within your risk level and investment horizon." in text


def test_format_empty_matches():
    text = format_matches(InvestmentMatches())
    assert "None of the products" in text


def test_format_matches_has_disclaimer(complete_data):
    text = format_matches(match_investments(complete_data))
    assert text.startswith("From our authorised list:")
    assert "not a personal recommendation" in text
