"""Prompt scaffolding for the suitability interview and compliance co-pilot."""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Tuple

from .stages import (
    CAPACITY_FOR_LOSS_LEVELS,
    CLIENT_TYPES,
    OBJECTIVES,
    PATHWAY_NAMES,
    REPORTING_FREQUENCIES,
    Stage,
)


@dataclass(frozen=True, slots=True)
class StepPrompt:
    """Question asked at a single step of a stage."""

    key: str
    question: str


ONBOARDING_STEPS: Tuple[StepPrompt, ...] = (
    StepPrompt(
        key="client_type",
        question=(
            "Who is this advice for? Options: " + ", ".join(CLIENT_TYPES) + "."
        ),
    ),
    StepPrompt(
        key="objectives",
        question=(
            "What is your main investment objective? Options: "
            + ", ".join(OBJECTIVES)
            + "."
        ),
    ),
    StepPrompt(
        key="horizon_years",
        question="How many years do you expect to stay invested?",
    ),
    StepPrompt(
        key="risk_tolerance",
        question=(
            "On a scale of 1 (very low) to 7 (very high), how much investment "
            "risk are you comfortable taking?"
        ),
    ),
    StepPrompt(
        key="capacity_for_loss",
        question=(
            "How much of a fall in value could you absorb without it affecting "
            "your lifestyle? Options: "
            + ", ".join(CAPACITY_FOR_LOSS_LEVELS)
            + "."
        ),
    ),
    StepPrompt(
        key="liquidity_needs",
        question=(
            "Do you expect to need access to this money, for example regular "
            "withdrawals or a lump sum? Reply 'none' if not."
        ),
    ),
    StepPrompt(
        key="knowledge_experience",
        question=(
            "Briefly describe your investment knowledge and experience, for "
            "example which products you've held and for how long."
        ),
    ),
    StepPrompt(
        key="financial_opt_in",
        question=(
            "Would you like to share details of your income, assets and "
            "liabilities? This is optional. (yes/no)"
        ),
    ),
    StepPrompt(
        key="financial_details",
        question=(
            "Please share your annual income, total assets and total "
            "liabilities, for example 'income 65k, assets 250k, liabilities 40k'."
        ),
    ),
)

CONSENT_STEPS: Tuple[StepPrompt, ...] = (
    StepPrompt(
        key="data_processing",
        question=(
            "Do you consent to us processing your personal data for this advice "
            "session? (yes/no)"
        ),
    ),
    StepPrompt(
        key="e_delivery",
        question=(
            "Are you happy to receive documents, including your report, "
            "electronically? (yes/no)"
        ),
    ),
    StepPrompt(
        key="future_contact",
        question=(
            "May we contact you in future about your investments? (yes/no)"
        ),
    ),
    StepPrompt(
        key="future_contact_purpose",
        question=(
            "What should we contact you about? For example 'annual review' or "
            "'product updates'."
        ),
    ),
)

EDUCATION_STEPS: Tuple[StepPrompt, ...] = (
    StepPrompt(
        key="education_pack",
        question=(
            "Please confirm once you've read the education pack. Mention any "
            "label, for example 'tell me about Focus', if you'd like more detail."
        ),
    ),
    StepPrompt(
        key="focus_vs_improvers",
        question=(
            "Would you like a short explanation of the difference between "
            "the Focus and Improvers labels? (yes/no)"
        ),
    ),
)

OPTIONS_STEPS: Tuple[StepPrompt, ...] = (
    StepPrompt(
        key="preference_level",
        question=(
            "How much do sustainability considerations matter to you? Options: "
            "none, high level, or detailed."
        ),
    ),
    StepPrompt(
        key="labels_interest",
        question=(
            "Which SDR labels or pathways interest you? Options: "
            + ", ".join(PATHWAY_NAMES)
            + ". You can add percentages, for example 'Focus 60%, Impact 40%'."
        ),
    ),
    StepPrompt(
        key="themes",
        question=(
            "Which sustainability themes matter most to you, for example "
            "climate, biodiversity or social housing?"
        ),
    ),
    StepPrompt(
        key="exclusions",
        question=(
            "Are there sectors you want to exclude? Give a revenue threshold "
            "where relevant, for example 'fossil fuels 5%, tobacco 0%'. "
            "Reply 'none' if not."
        ),
    ),
    StepPrompt(
        key="impact_goals",
        question=(
            "Which measurable impact goals would you like to target, for "
            "example 'SDG7 clean energy'?"
        ),
    ),
    StepPrompt(
        key="engagement_importance",
        question=(
            "How important is it that fund managers engage with companies and "
            "vote on sustainability issues?"
        ),
    ),
    StepPrompt(
        key="reporting_frequency_pref",
        question=(
            "How often would you like sustainability reporting? Options: "
            + ", ".join(REPORTING_FREQUENCIES)
            + "."
        ),
    ),
    StepPrompt(
        key="tradeoff_tolerance",
        question=(
            "Would you accept any trade-offs, such as higher charges, narrower "
            "diversification or different performance, to meet these preferences?"
        ),
    ),
)

CONFIRMATION_QUESTION = (
    "Reply 'yes' to confirm this summary is accurate and I'll prepare your "
    "report, or tell me what needs changing."
)
REPORT_QUESTION = (
    "Reply 'ok' when you've reviewed the preview and I'll arrange delivery."
)
DELIVERY_QUESTION = "Reply 'received' once you have your report."
EXPLANATION_QUESTION = "Reply 'ready' when you'd like to begin."
COMPLETE_MESSAGE = (
    "This session is complete and can no longer be changed. Please start a "
    "new session if anything needs updating."
)

RISK_HORIZON_WARNING = (
    "Note: a risk level of 5 or above with a horizon of under 3 years means "
    "short-term falls may not have time to recover. Your adviser will review "
    "this."
)
RISK_CAPACITY_OVERRIDE = (
    "You've chosen a risk level of 5 or above but told us your capacity for "
    "loss is low. Losses at that risk level could affect your standard of "
    "living. Reply 'yes' to confirm you understand and wish to keep this risk "
    "level, or give a new risk level from 1 to 7."
)

AGR_DISCLAIMER = (
    "Anti-Greenwashing notice: sustainability labels describe a fund's "
    "objectives and approach, not a guarantee of outcomes. Funds with a label "
    "can still invest in companies with some environmental or social harms, "
    "and past sustainability performance does not predict future results."
)

FOCUS_VS_IMPROVERS = (
    "Focus funds invest mainly in assets that already meet a high "
    "sustainability standard today. Improvers funds invest in assets that "
    "fall short today but have credible plans and targets to improve, and "
    "the manager engages to drive that change. Neither is ranked above the "
    "other."
)

INVESTMENT_COME_BACK_LATER = (
    "I can suggest matching investments once we've captured your "
    "sustainability preferences. Let's finish the current step first."
)


@dataclass(frozen=True, slots=True)
class EducationalTopic:
    """Canned explainer for a recognised educational question."""

    topic: str
    pattern: Pattern[str]
    explainer: str


_QUESTION_CUE = (
    r"(?:what\s+is|what's|whats|what\s+are|what\s+does|what\s+do|explain|"
    r"tell\s+me\s+(?:more\s+)?about|meaning\s+of|define|how\s+does|how\s+do|"
    r"help\s+me\s+understand)"
)


def _topic(topic: str, keywords: str, explainer: str) -> EducationalTopic:
    pattern = re.compile(rf"\b{_QUESTION_CUE}\b.*\b(?:{keywords})\b", re.IGNORECASE)
    return EducationalTopic(topic=topic, pattern=pattern, explainer=explainer)


EDUCATIONAL_TOPICS: Tuple[EducationalTopic, ...] = (
    _topic(
        "anti_greenwashing",
        r"greenwash\w*|anti-greenwashing|anti greenwashing",
        "Greenwashing is when a product is presented as more sustainable than "
        "it really is. The FCA's anti-greenwashing rule requires every "
        "sustainability claim to be fair, clear, not misleading and backed "
        "by evidence.",
    ),
    _topic(
        "sdr_labels",
        r"sdr|sustainability disclosure|investment labels?|labels?\b",
        "The Sustainability Disclosure Requirements (SDR) introduce four "
        "investment labels: Sustainability Focus, Improvers, Impact and "
        "Mixed Goals. A fund can only use a label if it meets the FCA's "
        "criteria, including a clear sustainability objective and ongoing "
        "reporting.",
    ),
    _topic(
        "esg",
        r"esg|environmental,? social",
        "ESG stands for Environmental, Social and Governance. ESG "
        "integration means a manager considers these risks when choosing "
        "investments. It does not by itself mean a fund has a "
        "sustainability objective.",
    ),
    _topic(
        "stewardship",
        r"stewardship|engagement|engage\w*|proxy voting|voting",
        "Stewardship is how a fund manager uses its influence as an "
        "investor, for example by meeting company boards and voting at "
        "shareholder meetings, to push for better practices.",
    ),
    _topic(
        "exclusions",
        r"exclusions?|negative screening|screens?|thresholds?",
        "Exclusions (negative screening) remove companies involved in "
        "activities you object to. A threshold such as 5% means companies "
        "earning more than 5% of revenue from that activity are excluded.",
    ),
    _topic(
        "impact_investing",
        r"impact investing|impact goals?|sdgs?|sustainable development goals?",
        "Impact investing targets a positive, measurable environmental or "
        "social outcome alongside a financial return. Goals are often mapped "
        "to the UN Sustainable Development Goals (SDGs) and progress is "
        "reported regularly.",
    ),
    _topic(
        "capacity_for_loss",
        r"capacity for loss|cfl|capacity to lose",
        "Capacity for loss is how much of a fall in value you could absorb "
        "without it affecting your standard of living. It is separate from "
        "how comfortable you feel with risk.",
    ),
    _topic(
        "attitude_to_risk",
        r"attitude to risk|atr|risk tolerance|risk scale|risk level",
        "Attitude to risk describes how comfortable you are with the value "
        "of your investments going up and down. We use a 1 to 7 scale, "
        "where higher numbers mean more potential volatility.",
    ),
    _topic(
        "charges",
        r"charges?|fees?|costs?|ongoing charge",
        "Every fund has an ongoing charge, shown as a yearly percentage. "
        "Sustainable funds can cost more because of extra research and "
        "reporting. Your report will set out all charges before you decide.",
    ),
)

RATIONALE_PATTERN: Pattern[str] = re.compile(
    r"\bwhy\b.*\b(?:need|ask|asking|want|require|collect|matter|important)\b"
    r"|\bwhat(?:'s| is)\s+(?:this|that)\s+for\b"
    r"|\bwhy\s+(?:this|that)\s+question\b",
    re.IGNORECASE,
)

_STAGE_RATIONALE: Mapping[Stage, str] = MappingProxyType(
    {
        Stage.EXPLANATION: (
            "We explain the process first so you can make an informed choice "
            "about taking part, as required under the FCA Consumer Duty."
        ),
        Stage.CONSENT: (
            "UK GDPR requires a lawful basis and clear consent before we "
            "process your data or contact you."
        ),
        Stage.EDUCATION: (
            "The FCA expects clients to understand what sustainability labels "
            "mean before choosing one, so your choice is informed."
        ),
        Stage.OPTIONS: (
            "Since 2022, suitability rules require advisers to ask about "
            "sustainability preferences and reflect them in any recommendation."
        ),
        Stage.CONFIRMATION: (
            "We ask you to confirm the summary so the recommendation rests on "
            "accurate, agreed information."
        ),
        Stage.REPORT: (
            "Your report documents the basis of the advice, as the suitability "
            "rules require."
        ),
        Stage.DELIVERY: (
            "We must provide the suitability report in a durable medium you "
            "can keep."
        ),
        Stage.COMPLETE: (
            "We keep a record of the session to evidence the advice process."
        ),
    }
)

_STEP_RATIONALE: Mapping[str, str] = MappingProxyType(
    {
        "client_type": (
            "Knowing who the advice is for determines which suitability and "
            "tax rules apply."
        ),
        "objectives": (
            "Suitability rules (COBS 9A) require us to understand your "
            "objectives so any recommendation meets them."
        ),
        "horizon_years": (
            "Suitability rules require us to match recommendations to your "
            "investment horizon. Higher-risk investments need time to "
            "recover from falls, so how long you can stay invested is key."
        ),
        "risk_tolerance": (
            "Suitability rules require us to assess your attitude to risk so "
            "we don't recommend investments more volatile than you accept."
        ),
        "capacity_for_loss": (
            "Suitability rules require us to check your capacity for loss: "
            "how far a fall would affect your lifestyle."
        ),
        "liquidity_needs": (
            "Suitability assessments must consider when you need access to "
            "money so we avoid locking it away."
        ),
        "knowledge_experience": (
            "Suitability rules require us to consider your knowledge and "
            "experience so you understand the risks of what we recommend."
        ),
        "financial_opt_in": (
            "Your financial situation helps us confirm suitability and "
            "affordability. Sharing it is optional."
        ),
        "financial_details": (
            "Income, assets and liabilities help us confirm the investment is "
            "affordable and suitable for your financial situation."
        ),
        "risk_override": (
            "Suitability rules require us to flag when your risk level "
            "exceeds your capacity for loss and record that you understand."
        ),
        "data_processing": (
            "UK GDPR requires your consent before we process personal data."
        ),
        "e_delivery": (
            "We need permission before sending regulated documents "
            "electronically."
        ),
        "future_contact": (
            "Marketing and contact rules require your permission before we "
            "contact you in future."
        ),
        "future_contact_purpose": (
            "Consent to contact must be specific, so we record its purpose."
        ),
        "labels_interest": (
            "Recording which labels interest you lets us match products to "
            "your sustainability preferences, as suitability rules require."
        ),
        "exclusions": (
            "Exclusions with thresholds let us check products against your "
            "values precisely and evidence that match."
        ),
        "impact_goals": (
            "Impact products must target measurable outcomes, so we record "
            "the goals you want to pursue."
        ),
        "reporting_frequency_pref": (
            "Impact and sustainability products report on progress; we need "
            "your preferred cadence to select suitable products."
        ),
        "tradeoff_tolerance": (
            "Sustainability preferences can involve trade-offs in cost or "
            "diversification, and we must know what you would accept."
        ),
    }
)


def rationale_for(stage: Stage, step_key: Optional[str]) -> str:
    """Return the compliance justification for the active question."""

    if step_key and step_key in _STEP_RATIONALE:
        return _STEP_RATIONALE[step_key]
    if stage in _STAGE_RATIONALE:
        return _STAGE_RATIONALE[stage]
    return (
        "We ask this so the advice we provide is suitable and properly "
        "documented."
    )


COMPLIANCE_SYSTEM_PROMPT = (
    "You are an FCA Consumer Duty compliance co-pilot.\n"
    "- Answer as the assistant for a UK sustainability preference and "
    "suitability meeting.\n"
    "- Be transparent about guardrails and say when adviser review is "
    "required.\n"
    "- Keep the client on topic with SDR, ESG and suitability requirements.\n"
    "- Never make a personal recommendation; the adviser does that.\n"
    "- Always return valid JSON matching the provided schema."
)

COMPLIANCE_RESPONSE_INSTRUCTIONS = (
    "Respond ONLY with valid JSON matching this schema. Do not wrap it in "
    "markdown fences or add commentary.\n"
    "{\n"
    '  "reply": string,\n'
    '  "compliance": {\n'
    '    "educational_requests": [string],\n'
    '    "extra_questions": [string],\n'
    '    "notes": [string]\n'
    "  }\n"
    "}"
)
