"""Compliance guardrails raised while capturing the suitability profile."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .models import utc_now

logger = logging.getLogger(__name__)

RISK_HORIZON_WARNING = "risk_horizon_warning"
RISK_CAPACITY_OVERRIDE = "risk_capacity_override"

HIGH_RISK_THRESHOLD = 5
SHORT_HORIZON_YEARS = 3


@dataclass(slots=True)
class GuardrailTrigger:
    """Durable audit entry describing a guardrail condition."""

    type: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    confirmed_at: Optional[str] = None
    resolved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_high_risk(risk: Any) -> bool:
    return _is_number(risk) and risk >= HIGH_RISK_THRESHOLD


def needs_horizon_warning(risk: Any, horizon: Any) -> bool:
    return is_high_risk(risk) and _is_number(horizon) and horizon < SHORT_HORIZON_YEARS


def needs_capacity_override(risk: Any, capacity: Any) -> bool:
    return is_high_risk(risk) and capacity == "low"


def guardrail_log(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    return data["audit"]["guardrail_triggers"]


def open_override(data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the unconfirmed, unresolved capacity override if any."""

    for entry in reversed(data["audit"]["guardrail_triggers"]):
        if (
            entry.get("type") == RISK_CAPACITY_OVERRIDE
            and not entry.get("confirmed_at")
            and not entry.get("resolved_at")
        ):
            return entry
    return None


def record_horizon_warning(data: Dict[str, Any], risk: Any, horizon: Any) -> bool:
    """Log a non-blocking warning for high risk over a short horizon.

    Returns ``True`` when a new entry was appended. Repeated detection of the
    same risk and horizon pair does not add a second entry.
    """

    if not needs_horizon_warning(risk, horizon):
        return False
    log = guardrail_log(data)
    for entry in log:
        details = entry.get("details") or {}
        if (
            entry.get("type") == RISK_HORIZON_WARNING
            and details.get("risk_tolerance") == risk
            and details.get("horizon_years") == horizon
        ):
            return False
    log.append(
        GuardrailTrigger(
            type=RISK_HORIZON_WARNING,
            details={"risk_tolerance": risk, "horizon_years": horizon},
        ).to_dict()
    )
    logger.info("Risk/horizon warning raised (risk=%s, horizon=%s)", risk, horizon)
    return True


def record_capacity_override(data: Dict[str, Any], risk: Any, capacity: Any) -> bool:
    """Log a blocking override for high risk with low capacity for loss.

    At most one open entry exists at a time. Returns ``True`` when an
    override is pending after the call, whether new or existing.
    """

    if not needs_capacity_override(risk, capacity):
        return False
    if open_override(data) is not None:
        return True
    guardrail_log(data).append(
        GuardrailTrigger(
            type=RISK_CAPACITY_OVERRIDE,
            details={"risk_tolerance": risk, "capacity_for_loss": capacity},
        ).to_dict()
    )
    logger.info("Risk/capacity override required (risk=%s)", risk)
    return True


def confirm_override(data: Dict[str, Any]) -> bool:
    entry = open_override(data)
    if entry is None:
        return False
    entry["confirmed_at"] = utc_now()
    return True


def resolve_override(data: Dict[str, Any], revised_risk: int) -> bool:
    """Close the open override because the client lowered their risk level."""

    entry = open_override(data)
    if entry is None:
        return False
    entry["resolved_at"] = utc_now()
    entry.setdefault("details", {})["revised_risk_tolerance"] = revised_risk
    return True
