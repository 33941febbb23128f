"""Stage catalog and enumerated value sets for the advice questionnaire."""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


class Stage(str, Enum):
    """Conversation stages in canonical order."""

    EXPLANATION = "SEGMENT_A_EXPLANATION"
    ONBOARDING = "SEGMENT_B_ONBOARDING"
    CONSENT = "SEGMENT_C_CONSENT"
    EDUCATION = "SEGMENT_D_EDUCATION"
    OPTIONS = "SEGMENT_E_OPTIONS"
    CONFIRMATION = "SEGMENT_F_CONFIRMATION"
    REPORT = "SEGMENT_G_REPORT"
    DELIVERY = "SEGMENT_H_DELIVERY"
    COMPLETE = "SEGMENT_COMPLETE"

    @classmethod
    def from_string(cls, value: str | None) -> Optional["Stage"]:
        """Return the matching stage or ``None`` for unknown identifiers."""
        if not value:
            return None
        normalized = value.strip().upper()
        for candidate in cls:
            if candidate.value == normalized or candidate.name == normalized:
                return candidate
        return None

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: Tuple[Stage, ...] = tuple(Stage)

STAGE_PROMPTS: Mapping[Stage, str] = MappingProxyType(
    {
        Stage.EXPLANATION: (
            "Welcome. This session records your suitability profile, your "
            "consents and your sustainability preferences so that your "
            "adviser can prepare a personalised recommendation. It takes "
            "around 15 minutes. Reply 'ready' when you'd like to begin."
        ),
        Stage.ONBOARDING: (
            "Let's start with your suitability profile: your objectives, "
            "investment horizon, attitude to risk and capacity for loss."
        ),
        Stage.CONSENT: (
            "Next, we need to record your consents for data processing, "
            "electronic delivery and future contact."
        ),
        Stage.EDUCATION: (
            "Before we talk about sustainability preferences, please review "
            "the education pack. It explains the SDR investment labels. "
            "None of the labels is ranked above the others."
        ),
        Stage.OPTIONS: (
            "Now let's capture your sustainability preferences."
        ),
        Stage.CONFIRMATION: (
            "Here is a summary of everything we've captured. Please check "
            "it carefully."
        ),
        Stage.REPORT: (
            "Your suitability and sustainability preference report has been "
            "generated."
        ),
        Stage.DELIVERY: (
            "We're delivering your report now."
        ),
        Stage.COMPLETE: (
            "This session is complete. Your adviser will be in touch to "
            "discuss the recommendation."
        ),
    }
)

CLIENT_TYPES: Tuple[str, ...] = ("individual", "joint", "trust", "company")
OBJECTIVES: Tuple[str, ...] = (
    "growth",
    "income",
    "preservation",
    "impact",
    "other",
)
RISK_SCALE: Tuple[int, ...] = (1, 2, 3, 4, 5, 6, 7)
CAPACITY_FOR_LOSS_LEVELS: Tuple[str, ...] = ("low", "medium", "high")
PREFERENCE_LEVELS: Tuple[str, ...] = ("none", "high_level", "detailed")
REPORTING_FREQUENCIES: Tuple[str, ...] = (
    "none",
    "quarterly",
    "semiannual",
    "annual",
)
DELIVERY_METHODS: Tuple[str, ...] = ("email", "download")

PATHWAY_NAMES: Tuple[str, ...] = (
    "Conventional",
    "Conventional incl. ESG",
    "Sustainability: Improvers",
    "Sustainability: Focus",
    "Sustainability: Impact",
    "Sustainability: Mixed Goals",
    "Ethical",
    "Philanthropy",
)

PATHWAY_ALIASES: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "Conventional": ("traditional", "mainstream"),
        "Conventional incl. ESG": (
            "conventional including esg",
            "conventional with esg",
            "esg integrated",
            "esg integration",
            "esg",
        ),
        "Sustainability: Improvers": (
            "improvers",
            "improver",
            "sustainability improvers",
        ),
        "Sustainability: Focus": (
            "focus",
            "sustainability focus",
            "sustainable focus",
        ),
        "Sustainability: Impact": (
            "impact",
            "sustainability impact",
            "impact investing",
        ),
        "Sustainability: Mixed Goals": (
            "mixed goals",
            "mixed",
            "sustainability mixed goals",
        ),
        "Ethical": ("ethical", "ethics", "values based", "faith based"),
        "Philanthropy": ("philanthropy", "philanthropic", "charitable"),
    }
)

PATHWAY_DETAILS: Mapping[str, str] = MappingProxyType(
    {
        "Conventional": (
            "Conventional: investments selected on financial merit alone, "
            "with no specific sustainability objective."
        ),
        "Conventional incl. ESG": (
            "Conventional incl. ESG: mainstream funds that take "
            "environmental, social and governance risks into account when "
            "managing money, without a sustainability objective."
        ),
        "Sustainability: Improvers": (
            "Sustainability: Improvers: funds investing in assets that are "
            "not yet sustainable but aim to improve over time, backed by "
            "measurable targets and active stewardship."
        ),
        "Sustainability: Focus": (
            "Sustainability: Focus: funds that invest mainly in assets "
            "already meeting a robust, evidence-based standard of "
            "environmental or social sustainability."
        ),
        "Sustainability: Impact": (
            "Sustainability: Impact: funds aiming to achieve a pre-defined, "
            "positive and measurable environmental or social outcome "
            "alongside a financial return."
        ),
        "Sustainability: Mixed Goals": (
            "Sustainability: Mixed Goals: funds combining two or more of "
            "the Improvers, Focus and Impact strategies."
        ),
        "Ethical": (
            "Ethical: portfolios built around values-based screens, such "
            "as excluding sectors you object to."
        ),
        "Philanthropy": (
            "Philanthropy: arrangements that prioritise charitable giving "
            "or donor-advised structures over investment return."
        ),
    }
)

IMPACT_LABEL_KEYWORD = "impact"


def is_impact_label(label: str) -> bool:
    return IMPACT_LABEL_KEYWORD in (label or "").lower()


def is_fossil_fuel_sector(sector: str) -> bool:
    return "fossil" in (sector or "").lower()
