"""Structured (form) payload parsing for each stage.

Every parser checks the whole payload in one pass and returns either a data
patch ready for :func:`suitability_agent.models.apply_data_patch` or the
complete list of issues. Nothing is committed here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .lexicon import (
    extract_duration,
    extract_frequency,
    extract_instruments,
    find_pathway_by_alias,
    parse_exclusions,
)
from .models import utc_now
from .stages import (
    CAPACITY_FOR_LOSS_LEVELS,
    CLIENT_TYPES,
    OBJECTIVES,
    PATHWAY_NAMES,
    RISK_SCALE,
)
from .validator import preference_issues


@dataclass(slots=True)
class StructuredUpdate:
    """Result of parsing a form payload."""

    patch: Dict[str, Any] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.replace(",", ""))
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def _flag(value: Any) -> Optional[bool]:
    """Accept ``true``/``false`` or ``{"granted": bool}``."""

    if isinstance(value, Mapping):
        value = value.get("granted")
    if isinstance(value, bool):
        return value
    return None


def _string_items(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_onboarding(answers: Mapping[str, Any]) -> StructuredUpdate:
    update = StructuredUpdate()
    client_type = _text(answers.get("client_type")).lower()
    if client_type not in CLIENT_TYPES:
        update.issues.append("Client type must be one of: " + ", ".join(CLIENT_TYPES) + ".")
    objective = _text(answers.get("objectives")).lower()
    if objective not in OBJECTIVES:
        update.issues.append(
            "Investment objective must be one of: " + ", ".join(OBJECTIVES) + "."
        )
    horizon = _number(answers.get("horizon_years"))
    if horizon is None or horizon <= 0:
        update.issues.append("Investment horizon must be a positive number of years.")
    risk = _number(answers.get("risk_tolerance"))
    if risk is None or risk not in RISK_SCALE:
        update.issues.append("Risk tolerance must be a whole number from 1 to 7.")
    capacity = _text(answers.get("capacity_for_loss")).lower()
    if capacity not in CAPACITY_FOR_LOSS_LEVELS:
        update.issues.append("Capacity for loss must be low, medium or high.")
    liquidity = _text(answers.get("liquidity_needs"))
    if not liquidity:
        update.issues.append("Please describe your liquidity needs (or 'none').")
    knowledge = _text(answers.get("knowledge_summary"))
    if not knowledge:
        update.issues.append("Please summarise your investment knowledge and experience.")

    financial_in = answers.get("financial") if isinstance(answers.get("financial"), Mapping) else {}
    provided = financial_in.get("provided") is True
    financial: Dict[str, Any] = {"provided": provided, "notes": _text(financial_in.get("notes"))}
    if provided:
        figures = {}
        malformed = False
        for key in ("income", "assets", "liabilities"):
            raw = financial_in.get(key)
            if raw is None or raw == "":
                continue
            value = _number(raw)
            if value is None:
                update.issues.append(f"Financial {key} must be a number.")
                malformed = True
                continue
            figures[key] = value
        if not figures and not malformed:
            update.issues.append(
                "Please provide at least one of income, assets or liabilities, "
                "or mark the financial disclosure as not provided."
            )
        financial.update(figures)

    if update.issues:
        return update
    update.patch = {
        "client_profile": {
            "client_type": client_type,
            "objectives": objective,
            "horizon_years": horizon,
            "risk_tolerance": int(risk),
            "capacity_for_loss": capacity,
            "liquidity_needs": liquidity,
            "knowledge_experience": {
                "summary": knowledge,
                "instruments": extract_instruments(knowledge),
                "frequency": extract_frequency(knowledge),
                "duration": extract_duration(knowledge),
            },
            "financial_situation": financial,
        }
    }
    return update


def parse_consent(consent: Mapping[str, Any]) -> StructuredUpdate:
    update = StructuredUpdate()
    now = utc_now()
    data_processing = _flag(consent.get("data_processing"))
    if data_processing is not True:
        update.issues.append(
            "Consent to data processing is required before we can continue."
        )
    e_delivery = _flag(consent.get("e_delivery"))
    if e_delivery is None:
        update.issues.append("Please answer whether you accept electronic delivery.")
    future_raw = consent.get("future_contact")
    future_contact = _flag(future_raw)
    purpose = _text(future_raw.get("purpose")) if isinstance(future_raw, Mapping) else ""
    if future_contact is None:
        update.issues.append("Please answer whether we may contact you in future.")
    elif future_contact and not purpose:
        update.issues.append("Please state the purpose for future contact.")
    if update.issues:
        return update
    update.patch = {
        "consent": {
            "data_processing": {"granted": True, "timestamp": now},
            "e_delivery": {"granted": e_delivery, "timestamp": now if e_delivery else None},
            "future_contact": {
                "granted": future_contact,
                "purpose": purpose if future_contact else "",
                "timestamp": now if future_contact else None,
            },
        }
    }
    return update


def parse_education(payload: Mapping[str, Any]) -> StructuredUpdate:
    update = StructuredUpdate()
    if payload.get("acknowledged") is not True:
        update.issues.append("Please confirm you have read the education pack.")
        return update
    update.patch = {
        "education": {
            "acknowledged": True,
            "wants_summary": payload.get("wants_summary") is True,
        }
    }
    return update


def _resolve_label(value: str) -> Optional[str]:
    if value in PATHWAY_NAMES:
        return value
    return find_pathway_by_alias(value)


def _parse_exclusion_items(raw: Any, issues: List[str]) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return parse_exclusions(raw) or []
    if not isinstance(raw, list):
        issues.append("Exclusions must be a list of sector entries.")
        return []
    exclusions: List[Dict[str, Any]] = []
    for item in raw:
        if isinstance(item, str):
            exclusions.extend(parse_exclusions(item) or [])
            continue
        if isinstance(item, Mapping):
            threshold = item.get("threshold")
            number = _number(threshold)
            exclusions.append(
                {
                    "sector": _text(item.get("sector")),
                    "threshold": number if number is not None else threshold,
                }
            )
            continue
        issues.append("Each exclusion must name a sector.")
    return exclusions


def parse_preferences(payload: Mapping[str, Any]) -> StructuredUpdate:
    update = StructuredUpdate()
    level = _text(payload.get("preference_level")).lower().replace(" ", "_").replace("-", "_")

    labels: List[str] = []
    for raw_label in _string_items(payload.get("labels_interest")):
        resolved = _resolve_label(raw_label)
        if resolved is None:
            update.issues.append(f"Unknown SDR label or pathway: {raw_label}.")
        elif resolved not in labels:
            labels.append(resolved)

    allocations: List[Dict[str, Any]] = []
    for item in payload.get("pathway_allocations") or []:
        if not isinstance(item, Mapping):
            update.issues.append("Pathway allocations must name a pathway and a percentage.")
            continue
        name = _resolve_label(_text(item.get("name"))) or _text(item.get("name"))
        allocations.append({"name": name, "allocation_pct": _number(item.get("allocation_pct"))})

    frequency = _text(payload.get("reporting_frequency_pref")).lower() or None
    candidate: Dict[str, Any] = {
        "preference_level": level or None,
        "labels_interest": labels,
        "pathway_allocations": allocations,
        "themes": _string_items(payload.get("themes")),
        "exclusions": _parse_exclusion_items(payload.get("exclusions"), update.issues),
        "impact_goals": _string_items(payload.get("impact_goals")),
        "engagement_importance": _text(payload.get("engagement_importance")),
        "reporting_frequency_pref": frequency,
        "tradeoff_tolerance": _text(payload.get("tradeoff_tolerance")),
    }
    if level == "none":
        candidate.update(
            {
                "labels_interest": [],
                "pathway_allocations": [],
                "themes": [],
                "exclusions": [],
                "impact_goals": [],
            }
        )
    update.issues.extend(preference_issues(candidate))
    if update.issues:
        return update
    update.patch = {"sustainability_preferences": candidate}
    return update


def parse_confirmation(payload: Mapping[str, Any]) -> StructuredUpdate:
    update = StructuredUpdate()
    confirmed = payload.get("confirmed")
    edits = _text(payload.get("edits_requested"))
    if confirmed is not True and not edits:
        update.issues.append(
            "Please confirm the summary or tell us what needs changing."
        )
        return update
    update.patch = {
        "summary_confirmation": {
            "client_summary_confirmed": confirmed is True,
            "edits_requested": edits,
        }
    }
    return update
