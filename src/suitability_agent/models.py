"""Session aggregate, dialogue context and event records."""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from .stages import STAGE_ORDER, Stage

logger = logging.getLogger(__name__)

EVENT_AUTHORS = ("client", "assistant", "adviser", "system")
EVENT_TYPES = ("message", "note", "data_update")


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""

    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def empty_session_data() -> Dict[str, Any]:
    """Return the blank business record for a new session."""

    return {
        "client_profile": {
            "client_type": None,
            "objectives": None,
            "horizon_years": None,
            "risk_tolerance": None,
            "capacity_for_loss": None,
            "liquidity_needs": "",
            "knowledge_experience": {
                "summary": "",
                "instruments": [],
                "frequency": "",
                "duration": "",
            },
            "financial_situation": {
                "provided": False,
                "income": None,
                "assets": None,
                "liabilities": None,
                "notes": "",
            },
        },
        "consent": {
            "data_processing": {"granted": False, "timestamp": None},
            "e_delivery": {"granted": False, "timestamp": None},
            "future_contact": {"granted": False, "purpose": "", "timestamp": None},
        },
        "education": {
            "acknowledged": False,
            "wants_summary": False,
            "pathways_explained": [],
        },
        "sustainability_preferences": {
            "preference_level": None,
            "labels_interest": [],
            "pathway_allocations": [],
            "themes": [],
            "exclusions": [],
            "impact_goals": [],
            "engagement_importance": "",
            "reporting_frequency_pref": None,
            "tradeoff_tolerance": "",
            "educ_pack_sent": False,
        },
        "advice_outcome": {
            "recommended_products": [],
            "rationale": "",
        },
        "disclosures": {
            "agr_disclaimer_presented": False,
            "agr_disclaimer_presented_at": None,
        },
        "summary_confirmation": {
            "client_summary_confirmed": False,
            "confirmed_at": None,
            "edits_requested": "",
        },
        "audit": {
            "explanation_shown": False,
            "guardrail_triggers": [],
            "events": [],
            "ip": None,
        },
        "timestamps": {
            "explanation_shown_at": None,
            "onboarding_completed_at": None,
            "consent_recorded_at": None,
            "education_completed_at": None,
            "preferences_recorded_at": None,
            "summary_confirmed_at": None,
            "report_generated_at": None,
            "delivered_at": None,
            "completed_at": None,
        },
        "educational_requests": [],
        "extra_questions": [],
        "notes": [],
        "investment_queries": [],
        "report": {
            "version": "v1.0",
            "status": "not_started",
            "preview": None,
            "hash": None,
            "doc_url": None,
            "generated_at": None,
        },
        "delivery": {"method": None, "delivered_at": None},
        "adviser_notes": "",
    }


_DATA_TEMPLATE = empty_session_data()

# Logs that may only grow once recorded.
APPEND_ONLY_FIELDS = frozenset(
    {
        "data.educational_requests",
        "data.extra_questions",
        "data.notes",
        "data.investment_queries",
        "data.audit.guardrail_triggers",
        "data.audit.events",
    }
)

# Sections owned by the engine; event payloads may not write them.
ENGINE_OWNED_SECTIONS = ("summary_confirmation", "audit", "report")


def _extend_log(target: Dict[str, Any], key: str, value: Any, path: str) -> None:
    current = target.get(key)
    if not isinstance(current, list):
        current = []
        target[key] = current
    if not isinstance(value, list) or value[: len(current)] != current:
        logger.warning("Refusing to rewrite append-only log %s", path)
        return
    current.extend(copy.deepcopy(value[len(current):]))


def _merge_section(
    target: Dict[str, Any],
    patch: Mapping[str, Any],
    template: Mapping[str, Any],
    path: str,
    append_only: bool,
) -> None:
    for key, value in patch.items():
        if value is None:
            continue
        if key not in template:
            logger.debug("Ignoring unknown data field %s.%s", path, key)
            continue
        declared = template[key]
        field_path = f"{path}.{key}"
        if isinstance(declared, dict):
            if not isinstance(value, Mapping):
                logger.warning(
                    "Ignoring non-mapping value for section %s", field_path
                )
                continue
            section = target.get(key)
            if not isinstance(section, dict):
                section = copy.deepcopy(declared)
                target[key] = section
            _merge_section(section, value, declared, field_path, append_only)
            continue
        if append_only and field_path in APPEND_ONLY_FIELDS:
            _extend_log(target, key, value, field_path)
            continue
        target[key] = copy.deepcopy(value)


def apply_data_patch(
    data: Dict[str, Any],
    patch: Mapping[str, Any],
    *,
    append_only: bool = True,
) -> Dict[str, Any]:
    """Merge ``patch`` into ``data`` following the session data template.

    Sections declared as mappings merge recursively; other lists and scalars
    are replaced wholesale. Fields in :data:`APPEND_ONLY_FIELDS` only accept
    a list that extends what is already recorded, unless ``append_only`` is
    false (restoring a stored snapshot). Unknown fields and ``None`` values
    are skipped.
    """

    if not isinstance(patch, Mapping):
        return data
    _merge_section(data, patch, _DATA_TEMPLATE, "data", append_only)
    return data


@dataclass(slots=True)
class DialogueContext:
    """Transient per-stage progress for the dialogue."""

    onboarding_step: int = 0
    consent_step: int = 0
    education_phase: int = 0
    options_step: int = 0
    confirmation_awaiting: bool = False
    require_risk_override: bool = False
    report_acknowledged: bool = False

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "DialogueContext":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in (payload or {}).items() if key in known}
        return cls(**values)


@dataclass(slots=True)
class SessionEvent:
    """A single turn recorded against a session."""

    author: str
    type: str
    content: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.author not in EVENT_AUTHORS:
            raise ValueError(f"Invalid event author: {self.author}")
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Invalid event type: {self.type}")
        if not isinstance(self.content, dict):
            raise ValueError("Event content must be a mapping.")

    @property
    def text(self) -> str:
        value = self.content.get("text", "")
        return value if isinstance(value, str) else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "type": self.type,
            "content": copy.deepcopy(self.content),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionEvent":
        return cls(
            author=str(payload.get("author", "")),
            type=str(payload.get("type", "")),
            content=dict(payload.get("content") or {}),
            id=str(payload.get("id") or uuid4()),
            created_at=str(payload.get("created_at") or utc_now()),
        )


@dataclass(slots=True)
class Session:
    """Root aggregate for one client interaction.

    ``stage`` must only be changed through
    :meth:`suitability_agent.engine.ConversationEngine.move_to_stage`.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    stage: Stage = STAGE_ORDER[0]
    data: Dict[str, Any] = field(default_factory=empty_session_data)
    context: DialogueContext = field(default_factory=DialogueContext)
    events: List[SessionEvent] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def append_event(self, event: SessionEvent) -> SessionEvent:
        """Record ``event`` in the turn log and its audit summary."""

        self.events.append(event)
        self.data["audit"]["events"].append(
            {
                "id": event.id,
                "author": event.author,
                "type": event.type,
                "created_at": event.created_at,
            }
        )
        self.touch()
        return event

    def apply_patch(self, patch: Mapping[str, Any], *, from_event: bool = False) -> None:
        """Merge ``patch`` into the business record.

        Patches carried by events cannot write engine-owned sections.
        """

        if from_event:
            patch = {
                key: value for key, value in patch.items() if key not in ENGINE_OWNED_SECTIONS
            }
        apply_data_patch(self.data, patch)
        self.touch()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "data": copy.deepcopy(self.data),
            "context": self.context.snapshot(),
            "events": [event.to_dict() for event in self.events],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Session":
        stage = Stage.from_string(str(payload.get("stage", "")))
        if stage is None:
            raise ValueError(f"Unknown session stage: {payload.get('stage')!r}")
        data = empty_session_data()
        apply_data_patch(data, payload.get("data") or {}, append_only=False)
        return cls(
            id=str(payload["id"]),
            stage=stage,
            data=data,
            context=DialogueContext.from_dict(payload.get("context")),
            events=[SessionEvent.from_dict(item) for item in payload.get("events") or []],
            created_at=str(payload.get("created_at") or utc_now()),
            updated_at=str(payload.get("updated_at") or utc_now()),
        )
