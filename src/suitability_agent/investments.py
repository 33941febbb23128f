"""Investment universe and preference-based product matching."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

OBJECTIVE_WEIGHT = 3
LABEL_WEIGHT = 4
THEME_WEIGHT = 2


@dataclass(frozen=True, slots=True)
class InvestmentProduct:
    """A fund or model portfolio that can be matched to a client."""

    id: str
    name: str
    type: str
    provider: str
    objectives: Tuple[str, ...]
    labels: Tuple[str, ...]
    themes: Tuple[str, ...]
    exclusions_supported: Tuple[str, ...]
    risk_band: Tuple[int, int]
    min_horizon_years: float
    preference_levels: Tuple[str, ...]
    summary: str
    charges: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "provider": self.provider,
            "objectives": list(self.objectives),
            "labels": list(self.labels),
            "themes": list(self.themes),
            "exclusions_supported": list(self.exclusions_supported),
            "risk_band": list(self.risk_band),
            "min_horizon_years": self.min_horizon_years,
            "preference_levels": list(self.preference_levels),
            "summary": self.summary,
            "charges": self.charges,
        }


AUTHORISED_INVESTMENTS: Tuple[InvestmentProduct, ...] = (
    InvestmentProduct(
        id="aurora_green_growth",
        name="Aurora Green Growth Fund",
        type="Global Equity Fund",
        provider="Aurora Asset Management",
        objectives=("growth", "impact"),
        labels=("Sustainability: Impact",),
        themes=("Climate", "Energy transition"),
        exclusions_supported=("Thermal coal under 5%", "Tobacco 0%"),
        risk_band=(4, 6),
        min_horizon_years=5,
        preference_levels=("high_level", "detailed"),
        summary=(
            "Global equities focusing on companies delivering measurable "
            "climate transition outcomes with active stewardship."
        ),
        charges="0.78% ongoing charge",
    ),
    InvestmentProduct(
        id="sterling_sustainable_income",
        name="Sterling Sustainable Income Bond",
        type="Global Bond Fund",
        provider="Sterling Fixed Income Partners",
        objectives=("income", "preservation"),
        labels=("Sustainability: Improvers",),
        themes=("Social", "Climate"),
        exclusions_supported=("Thermal coal under 10%", "Controversial weapons 0%"),
        risk_band=(2, 4),
        min_horizon_years=3,
        preference_levels=("high_level", "detailed"),
        summary=(
            "Diversified investment grade bond portfolio engaging issuers on "
            "climate transition and workforce standards."
        ),
        charges="0.52% ongoing charge",
    ),
    InvestmentProduct(
        id="harbor_balanced_focus",
        name="Harbor ESG Balanced Focus Portfolio",
        type="Multi-Asset Model Portfolio",
        provider="Harbor Advisory Services",
        objectives=("growth", "preservation"),
        labels=("Sustainability: Focus",),
        themes=("Climate", "Biodiversity", "Corporate governance"),
        exclusions_supported=(
            "Thermal coal under 5%",
            "Tobacco 0%",
            "Predatory lending 0%",
        ),
        risk_band=(3, 5),
        min_horizon_years=4,
        preference_levels=("high_level", "detailed"),
        summary=(
            "Blended equity and bond model emphasising companies already "
            "leading on sustainability metrics."
        ),
        charges="0.68% ongoing charge",
    ),
)

MARKET_ALTERNATIVES: Tuple[InvestmentProduct, ...] = (
    InvestmentProduct(
        id="solstice_global_impact",
        name="Solstice Global Impact Opportunities",
        type="Global Equity Fund",
        provider="Solstice Capital",
        objectives=("growth", "impact"),
        labels=("Sustainability: Impact",),
        themes=("Climate", "Health"),
        exclusions_supported=("Thermal coal under 0%", "Tobacco 0%"),
        risk_band=(4, 6),
        min_horizon_years=5,
        preference_levels=("detailed",),
        summary=(
            "Concentrated portfolio targeting companies with verified impact "
            "metrics and outcome-linked remuneration."
        ),
        charges="0.85% ongoing charge",
    ),
    InvestmentProduct(
        id="northstar_responsible_credit",
        name="Northstar Responsible Credit Fund",
        type="Corporate Bond Fund",
        provider="Northstar Asset Co.",
        objectives=("income", "preservation"),
        labels=("Sustainability: Improvers",),
        themes=("Social", "Climate"),
        exclusions_supported=("Thermal coal under 20%", "Civilian firearms 0%"),
        risk_band=(2, 4),
        min_horizon_years=3,
        preference_levels=("high_level", "detailed"),
        summary=(
            "Investment grade credit fund with structured engagement "
            "milestones for issuers on net-zero and labour standards."
        ),
        charges="0.60% ongoing charge",
    ),
)


@dataclass(slots=True)
class ScoredProduct:
    product: InvestmentProduct
    score: int
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.product.id,
            "name": self.product.name,
            "score": self.score,
            "reasons": list(self.reasons),
            "charges": self.product.charges,
        }


@dataclass(slots=True)
class InvestmentMatches:
    """Ranked matches from the authorised list and the market scan."""

    authorised: List[ScoredProduct] = field(default_factory=list)
    market: List[ScoredProduct] = field(default_factory=list)

    @property
    def matched_ids(self) -> List[str]:
        return [item.product.id for item in (*self.authorised, *self.market)]

    @property
    def is_empty(self) -> bool:
        return not self.authorised and not self.market


def _lower_set(values: Sequence[Any]) -> set[str]:
    return {str(value).strip().lower() for value in values if str(value).strip()}


def score_product(
    product: InvestmentProduct,
    profile: Mapping[str, Any],
    preferences: Mapping[str, Any],
) -> Optional[ScoredProduct]:
    """Score ``product`` for a client or return ``None`` when disqualified."""

    risk = profile.get("risk_tolerance")
    if isinstance(risk, int) and not isinstance(risk, bool):
        low, high = product.risk_band
        if risk < low or risk > high:
            return None
    horizon = profile.get("horizon_years")
    if isinstance(horizon, (int, float)) and not isinstance(horizon, bool):
        if horizon < product.min_horizon_years:
            return None
    level = preferences.get("preference_level")
    if level and product.preference_levels and level not in product.preference_levels:
        return None

    score = 0
    reasons: List[str] = []
    objective = profile.get("objectives")
    if objective and objective in product.objectives:
        score += OBJECTIVE_WEIGHT
        reasons.append(f"matches your {objective} objective")
    for label in product.labels:
        if label in (preferences.get("labels_interest") or []):
            score += LABEL_WEIGHT
            reasons.append(f"carries the {label} label")
    wanted_themes = _lower_set(preferences.get("themes") or [])
    for theme in product.themes:
        if theme.lower() in wanted_themes:
            score += THEME_WEIGHT
            reasons.append(f"covers {theme}")
    return ScoredProduct(product=product, score=score, reasons=reasons)


def _rank(
    catalog: Sequence[InvestmentProduct],
    profile: Mapping[str, Any],
    preferences: Mapping[str, Any],
    top_n: int,
) -> List[ScoredProduct]:
    """Qualifying products by descending score; ties keep catalog order."""

    scored = [
        item
        for item in (score_product(product, profile, preferences) for product in catalog)
        if item is not None
    ]
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored[:top_n]


def match_investments(data: Mapping[str, Any], top_n: int = 3) -> InvestmentMatches:
    """Rank both catalogs against the client's recorded profile."""

    profile = data.get("client_profile") or {}
    preferences = data.get("sustainability_preferences") or {}
    matches = InvestmentMatches(
        authorised=_rank(AUTHORISED_INVESTMENTS, profile, preferences, top_n),
        market=_rank(MARKET_ALTERNATIVES, profile, preferences, top_n),
    )
    logger.debug("Investment matching produced %s", matches.matched_ids)
    return matches


def _describe(item: ScoredProduct) -> str:
    reasons = "; ".join(item.reasons) or "within your risk level and investment horizon"
    return (
        f"- {item.product.name} ({item.product.provider}, {item.product.charges}): "
        f"{item.product.summary} Why it fits: {reasons}."
    )


def format_matches(matches: InvestmentMatches) -> str:
    """Render matches for display in the chat transcript."""

    if matches.is_empty:
        return (
            "None of the products on our list currently fit your recorded "
            "risk level, horizon and sustainability preferences. Your adviser "
            "will review wider options with you."
        )
    lines: List[str] = []
    if matches.authorised:
        lines.append("From our authorised list:")
        lines.extend(_describe(item) for item in matches.authorised)
    if matches.market:
        lines.append("From a wider market scan:")
        lines.extend(_describe(item) for item in matches.market)
    lines.append(
        "These are illustrations only, not a personal recommendation. Your "
        "adviser will confirm suitability in your report."
    )
    return "\n".join(lines)
