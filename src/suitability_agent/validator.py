"""Regulatory completeness checks over a session's business record."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .stages import (
    CAPACITY_FOR_LOSS_LEVELS,
    CLIENT_TYPES,
    DELIVERY_METHODS,
    OBJECTIVES,
    PATHWAY_NAMES,
    PREFERENCE_LEVELS,
    REPORTING_FREQUENCIES,
    RISK_SCALE,
    is_fossil_fuel_sector,
    is_impact_label,
)


@dataclass(slots=True)
class ValidationResult:
    """Outcome of a validation pass."""

    valid: bool
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "issues": list(self.issues)}


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if _is_non_empty_string(item)]


def has_impact_label(labels: Sequence[Any]) -> bool:
    return any(isinstance(label, str) and is_impact_label(label) for label in labels)


def exclusion_issues(exclusions: Any) -> List[str]:
    """Structural checks for exclusion entries.

    Shared by the batch validator and the inline options dialogue.
    """

    issues: List[str] = []
    if exclusions in (None, []):
        return issues
    if not isinstance(exclusions, list):
        return ["Exclusions must be a list of sector entries."]
    for position, entry in enumerate(exclusions, start=1):
        if not isinstance(entry, Mapping) or not _is_non_empty_string(entry.get("sector")):
            issues.append(f"Exclusion {position} must name a sector.")
            continue
        sector = entry["sector"].strip()
        threshold = entry.get("threshold")
        if threshold is not None:
            number = _as_number(threshold)
            if number is None or number < 0 or number > 100:
                issues.append(
                    f"Exclusion threshold for {sector} must be a number between 0 and 100."
                )
                continue
        if is_fossil_fuel_sector(sector) and threshold is None:
            issues.append(
                f"Exclusion for {sector} requires a revenue threshold (for example 5%)."
            )
    return issues


def allocation_issues(allocations: Any, labels: Sequence[Any]) -> List[str]:
    """Checks that pathway allocations are well formed and total 100%."""

    if allocations in (None, []):
        return []
    if not isinstance(allocations, list):
        return ["Pathway allocations must be a list."]
    issues: List[str] = []
    total = 0.0
    for entry in allocations:
        name = entry.get("name") if isinstance(entry, Mapping) else None
        percent = _as_number(entry.get("allocation_pct")) if isinstance(entry, Mapping) else None
        if name not in PATHWAY_NAMES:
            issues.append(f"Allocation refers to an unknown pathway: {name!r}.")
            continue
        if percent is None or percent < 0 or percent > 100:
            issues.append(f"Allocation for {name} must be between 0 and 100.")
            continue
        if labels and name not in labels:
            issues.append(f"Allocation for {name} does not match a selected label.")
        total += percent
    if not issues and round(total) != 100:
        issues.append("Pathway allocations must add up to 100%.")
    return issues


def impact_issues(preferences: Mapping[str, Any]) -> List[str]:
    """Cross-field requirements triggered by an impact label."""

    issues: List[str] = []
    if not has_impact_label(_string_list(preferences.get("labels_interest"))):
        return issues
    if not _string_list(preferences.get("impact_goals")):
        issues.append("Impact labels require at least one impact goal.")
    if preferences.get("reporting_frequency_pref") in (None, "", "none"):
        issues.append(
            "Impact labels require a reporting cadence other than 'none'."
        )
    return issues


def _check_explanation(data: Mapping[str, Any], issues: List[str]) -> None:
    if _section(data, "audit").get("explanation_shown") is not True:
        issues.append("The session explanation must be shown before advice is given.")


def _check_profile(data: Mapping[str, Any], issues: List[str]) -> None:
    profile = _section(data, "client_profile")
    if profile.get("client_type") not in CLIENT_TYPES:
        issues.append("Client type must be one of: " + ", ".join(CLIENT_TYPES) + ".")
    if profile.get("objectives") not in OBJECTIVES:
        issues.append("Investment objective must be one of: " + ", ".join(OBJECTIVES) + ".")
    horizon = _as_number(profile.get("horizon_years"))
    if horizon is None or horizon <= 0:
        issues.append("Investment horizon must be a positive number of years.")
    risk = profile.get("risk_tolerance")
    if isinstance(risk, bool) or not isinstance(risk, int) or risk not in RISK_SCALE:
        issues.append("Risk tolerance must be a whole number from 1 to 7.")
    if profile.get("capacity_for_loss") not in CAPACITY_FOR_LOSS_LEVELS:
        issues.append("Capacity for loss must be low, medium or high.")
    if not _is_non_empty_string(profile.get("liquidity_needs")):
        issues.append("Liquidity needs must be recorded.")
    knowledge = _section(profile, "knowledge_experience")
    if not _is_non_empty_string(knowledge.get("summary")):
        issues.append("A summary of investment knowledge and experience is required.")
    financial = _section(profile, "financial_situation")
    if financial.get("provided") is True:
        figures = [financial.get(key) for key in ("income", "assets", "liabilities")]
        present = [value for value in figures if value is not None]
        if not present or any(_as_number(value) is None for value in present):
            issues.append(
                "Financial situation figures must be numeric when disclosure is provided."
            )


def _check_consent(data: Mapping[str, Any], issues: List[str]) -> None:
    consent = _section(data, "consent")
    processing = _section(consent, "data_processing")
    if processing.get("granted") is not True:
        issues.append("Consent to data processing must be granted.")
    elif not _is_non_empty_string(processing.get("timestamp")):
        issues.append("Data processing consent requires a timestamp.")
    future_contact = _section(consent, "future_contact")
    if future_contact.get("granted") is True and not _is_non_empty_string(
        future_contact.get("purpose")
    ):
        issues.append("Future contact consent requires a stated purpose.")


def _check_preferences(data: Mapping[str, Any], issues: List[str]) -> None:
    issues.extend(preference_issues(_section(data, "sustainability_preferences")))


def preference_issues(preferences: Mapping[str, Any]) -> List[str]:
    """All sustainability preference rules for a single preferences record."""

    issues: List[str] = []
    level = preferences.get("preference_level")
    if level not in PREFERENCE_LEVELS:
        issues.append(
            "Sustainability preference level must be none, high_level or detailed."
        )
        return issues
    if level == "none":
        return issues
    labels = preferences.get("labels_interest")
    label_list = _string_list(labels)
    if not label_list:
        issues.append("Select at least one SDR label or pathway.")
    for label in label_list:
        if label not in PATHWAY_NAMES:
            issues.append(f"Unknown SDR label or pathway: {label}.")
    issues.extend(allocation_issues(preferences.get("pathway_allocations"), label_list))
    if level == "detailed":
        if not _string_list(preferences.get("themes")):
            issues.append("Detailed preferences require at least one sustainability theme.")
        if not _is_non_empty_string(preferences.get("engagement_importance")):
            issues.append("Detailed preferences require an engagement importance answer.")
        if not _is_non_empty_string(preferences.get("tradeoff_tolerance")):
            issues.append("Detailed preferences require a trade-off tolerance answer.")
    issues.extend(exclusion_issues(preferences.get("exclusions")))
    issues.extend(impact_issues(preferences))
    frequency = preferences.get("reporting_frequency_pref")
    if frequency is not None and frequency not in REPORTING_FREQUENCIES:
        issues.append(
            "Reporting cadence must be one of: " + ", ".join(REPORTING_FREQUENCIES) + "."
        )
    return issues


def has_recorded_preferences(data: Mapping[str, Any]) -> bool:
    preferences = _section(data, "sustainability_preferences")
    level = preferences.get("preference_level")
    if level in ("high_level", "detailed"):
        return True
    return bool(
        _string_list(preferences.get("labels_interest"))
        or _string_list(preferences.get("themes"))
        or preferences.get("exclusions")
        or _string_list(preferences.get("impact_goals"))
    )


def _check_disclaimer(data: Mapping[str, Any], issues: List[str]) -> None:
    if not has_recorded_preferences(data):
        return
    if _section(data, "disclosures").get("agr_disclaimer_presented") is not True:
        issues.append(
            "The Anti-Greenwashing disclaimer must be presented when sustainability "
            "preferences are recorded."
        )


def _check_summary_confirmation(data: Mapping[str, Any], issues: List[str]) -> None:
    if _section(data, "summary_confirmation").get("client_summary_confirmed") is not True:
        issues.append("The client must confirm the captured summary.")


def _check_delivery(data: Mapping[str, Any], issues: List[str]) -> None:
    method = _section(data, "delivery").get("method")
    if method is None:
        return
    if method not in DELIVERY_METHODS:
        issues.append("Delivery method must be one of: " + ", ".join(DELIVERY_METHODS) + ".")
    elif method == "email":
        e_delivery = _section(_section(data, "consent"), "e_delivery")
        if e_delivery.get("granted") is not True:
            issues.append("Email delivery requires consent to electronic delivery.")


_CHECKS: Sequence[Callable[[Mapping[str, Any], List[str]], None]] = (
    _check_explanation,
    _check_profile,
    _check_consent,
    _check_preferences,
    _check_disclaimer,
    _check_summary_confirmation,
    _check_delivery,
)


def validate_data(data: Mapping[str, Any]) -> ValidationResult:
    """Run every check over ``data`` and collect all issues."""

    issues: List[str] = []
    for check in _CHECKS:
        check(data or {}, issues)
    return ValidationResult(valid=not issues, issues=issues)


def validate(session: Any) -> ValidationResult:
    """Validate a session's ``data``; dialogue context is ignored."""

    data = getattr(session, "data", None)
    if data is None and isinstance(session, Mapping):
        data = session.get("data")
    return validate_data(data or {})
