"""Stage-driven dialogue controller for the suitability interview.

The engine owns every mutation of a :class:`~suitability_agent.models.Session`.
Each inbound event is recorded, routed to the handler for the current stage
and answered with one or more assistant messages. Invalid answers never
raise: the handler re-prompts and leaves the session untouched. When free
text is neither understood by the stage nor caught by a detour, the question
is escalated to the compliance co-pilot.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .compliance import ComplianceEscalator, Responder, build_default_responder, stub_responder
from .config import AppSettings
from .detours import run_detours
from .guardrails import (
    confirm_override,
    needs_capacity_override,
    open_override,
    record_capacity_override,
    record_horizon_warning,
    resolve_override,
)
from .lexicon import (
    extract_duration,
    extract_frequency,
    extract_instruments,
    find_pathways_in_text,
    is_affirmative,
    is_empty_answer,
    is_negative,
    parse_allocations,
    parse_capacity_for_loss,
    parse_choice,
    parse_exclusions,
    parse_financials,
    parse_horizon_years,
    parse_risk_scale,
    split_list,
)
from .models import Session, SessionEvent, utc_now
from .prompts import (
    AGR_DISCLAIMER,
    COMPLETE_MESSAGE,
    CONFIRMATION_QUESTION,
    CONSENT_STEPS,
    DELIVERY_QUESTION,
    EDUCATION_STEPS,
    EXPLANATION_QUESTION,
    FOCUS_VS_IMPROVERS,
    ONBOARDING_STEPS,
    OPTIONS_STEPS,
    REPORT_QUESTION,
    RISK_CAPACITY_OVERRIDE,
    RISK_HORIZON_WARNING,
    StepPrompt,
)
from .report import ReportGenerationError, ReportGenerator, ReportStore, render_summary
from .sessions import SessionStore
from .stages import (
    CLIENT_TYPES,
    OBJECTIVES,
    PATHWAY_DETAILS,
    PREFERENCE_LEVELS,
    REPORTING_FREQUENCIES,
    STAGE_ORDER,
    STAGE_PROMPTS,
    Stage,
)
from .structured import (
    parse_confirmation,
    parse_consent,
    parse_education,
    parse_onboarding,
    parse_preferences,
)
from .validator import ValidationResult, allocation_issues, exclusion_issues, has_impact_label, validate_data

logger = logging.getLogger(__name__)


class StageTransitionError(RuntimeError):
    """Raised when code attempts an unknown or backwards stage move."""


CLIENT_TYPE_SYNONYMS: Mapping[str, str] = MappingProxyType(
    {
        "myself": "individual",
        "just me": "individual",
        "single": "individual",
        "personal": "individual",
        "sole": "individual",
        "couple": "joint",
        "partner": "joint",
        "spouse": "joint",
        "wife": "joint",
        "husband": "joint",
        "together": "joint",
        "trustee": "trust",
        "trustees": "trust",
        "business": "company",
        "limited company": "company",
        "ltd": "company",
        "corporate": "company",
        "firm": "company",
    }
)

OBJECTIVE_SYNONYMS: Mapping[str, str] = MappingProxyType(
    {
        "grow": "growth",
        "capital growth": "growth",
        "returns": "growth",
        "regular income": "income",
        "dividends": "income",
        "yield": "income",
        "preserve": "preservation",
        "protect": "preservation",
        "capital preservation": "preservation",
        "keep it safe": "preservation",
        "safety": "preservation",
        "positive impact": "impact",
        "make a difference": "impact",
    }
)

PREFERENCE_LEVEL_SYNONYMS: Mapping[str, str] = MappingProxyType(
    {
        "high level": "high_level",
        "broad": "high_level",
        "general": "high_level",
        "somewhat": "high_level",
        "a bit": "high_level",
        "detail": "detailed",
        "in depth": "detailed",
        "very": "detailed",
        "a lot": "detailed",
        "not important": "none",
        "not bothered": "none",
        "don t mind": "none",
        "no preference": "none",
        "no preferences": "none",
        "nothing": "none",
        "no": "none",
    }
)

REPORTING_SYNONYMS: Mapping[str, str] = MappingProxyType(
    {
        "quarter": "quarterly",
        "every quarter": "quarterly",
        "every three months": "quarterly",
        "semi annual": "semiannual",
        "semi annually": "semiannual",
        "twice a year": "semiannual",
        "every six months": "semiannual",
        "half yearly": "semiannual",
        "annually": "annual",
        "yearly": "annual",
        "once a year": "annual",
        "every year": "annual",
        "never": "none",
        "no reporting": "none",
        "not needed": "none",
    }
)

_EDIT_CUE_RE = re.compile(
    r"\b(?:change|edit|update|amend|fix|wrong|incorrect|mistake|not right)\b",
    re.IGNORECASE,
)
_DETAIL_CUE_RE = re.compile(
    r"\b(?:tell|explain|more|detail|details|what|describe|about)\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class TurnResponse:
    """What the engine returns for one inbound event."""

    messages: List[str] = field(default_factory=list)
    compliance: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"messages": list(self.messages)}
        if self.compliance is not None:
            payload["compliance"] = self.compliance
        if self.validation is not None:
            payload["validation"] = self.validation
        return payload


@dataclass(slots=True)
class _HandlerResult:
    messages: List[str]
    recognised: bool = True
    validation: Optional[ValidationResult] = None


def _rejected(messages: Sequence[str]) -> _HandlerResult:
    return _HandlerResult(messages=list(messages), recognised=False)


class ConversationEngine:
    """Finite-state controller driving a session through the stage list."""

    def __init__(
        self,
        store: SessionStore,
        *,
        responder: Optional[Responder] = None,
        report_generator: Optional[ReportGenerator] = None,
        report_store: Optional[ReportStore] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        strict = settings.compliance_strict if settings else False
        self._escalator = ComplianceEscalator(responder or stub_responder, strict=strict)
        self._report_generator = report_generator or ReportGenerator(
            version=settings.report_version if settings else "v1.0"
        )
        self._report_store = report_store or ReportStore(
            settings.reports_dir if settings else None
        )
        self._investment_top_n = settings.investment_top_n if settings else 3

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ConversationEngine":
        """Wire the default collaborators for ``settings``."""

        store = SessionStore(settings.session_log, settings.redis_url)
        return cls(
            store,
            responder=build_default_responder(settings),
            report_generator=ReportGenerator(version=settings.report_version),
            report_store=ReportStore(settings.reports_dir),
            settings=settings,
        )

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def report_store(self) -> ReportStore:
        return self._report_store

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def start(self, session: Session) -> List[str]:
        """Apply the initial stage's entry effects and return its prompt."""

        messages = [STAGE_PROMPTS[session.stage]]
        if session.stage is STAGE_ORDER[0]:
            self._mark_explanation_shown(session)
        else:
            messages.append(self.current_question(session))
        return messages

    def move_to_stage(
        self,
        session: Session,
        target: Stage | str,
        extra: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Advance ``session`` to ``target`` and return its opening messages."""

        stage = target if isinstance(target, Stage) else Stage.from_string(target)
        if stage is None:
            raise StageTransitionError(f"Unknown stage: {target!r}")
        if stage.index <= session.stage.index:
            raise StageTransitionError(
                f"Cannot move from {session.stage.value} to {stage.value}"
            )
        previous = session.stage
        session.stage = stage
        session.touch()
        logger.info("Session %s moved %s -> %s", session.id, previous.value, stage.value)
        return [STAGE_PROMPTS[stage], *self._on_enter(session, stage), *(extra or [])]

    def _on_enter(self, session: Session, stage: Stage) -> List[str]:
        data = session.data
        if stage is Stage.EXPLANATION:
            self._mark_explanation_shown(session)
        elif stage is Stage.EDUCATION:
            data["sustainability_preferences"]["educ_pack_sent"] = True
        elif stage is Stage.CONFIRMATION:
            session.context.confirmation_awaiting = True
            return [render_summary(data), CONFIRMATION_QUESTION]
        elif stage is Stage.COMPLETE:
            data["timestamps"]["completed_at"] = utc_now()
        return []

    @staticmethod
    def _mark_explanation_shown(session: Session) -> None:
        audit = session.data["audit"]
        if audit.get("explanation_shown"):
            return
        audit["explanation_shown"] = True
        session.data["timestamps"]["explanation_shown_at"] = utc_now()

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _step(steps: Tuple[StepPrompt, ...], index: int) -> Optional[StepPrompt]:
        if 0 <= index < len(steps):
            return steps[index]
        return None

    def current_step_key(self, session: Session) -> Optional[str]:
        ctx = session.context
        step: Optional[StepPrompt] = None
        if session.stage is Stage.ONBOARDING:
            if ctx.require_risk_override:
                return "risk_override"
            step = self._step(ONBOARDING_STEPS, ctx.onboarding_step)
        elif session.stage is Stage.CONSENT:
            step = self._step(CONSENT_STEPS, ctx.consent_step)
        elif session.stage is Stage.EDUCATION:
            step = self._step(EDUCATION_STEPS, ctx.education_phase)
        elif session.stage is Stage.OPTIONS:
            step = self._step(OPTIONS_STEPS, ctx.options_step)
        return step.key if step else None

    def current_question(self, session: Session) -> str:
        """The question the client is currently expected to answer."""

        stage = session.stage
        ctx = session.context
        step: Optional[StepPrompt] = None
        if stage is Stage.EXPLANATION:
            return EXPLANATION_QUESTION
        if stage is Stage.ONBOARDING:
            if ctx.require_risk_override:
                return RISK_CAPACITY_OVERRIDE
            step = self._step(ONBOARDING_STEPS, ctx.onboarding_step)
        elif stage is Stage.CONSENT:
            step = self._step(CONSENT_STEPS, ctx.consent_step)
        elif stage is Stage.EDUCATION:
            step = self._step(EDUCATION_STEPS, ctx.education_phase)
        elif stage is Stage.OPTIONS:
            step = self._step(OPTIONS_STEPS, ctx.options_step)
        elif stage is Stage.CONFIRMATION:
            return CONFIRMATION_QUESTION
        elif stage is Stage.REPORT:
            return REPORT_QUESTION
        elif stage is Stage.DELIVERY:
            return DELIVERY_QUESTION
        elif stage is Stage.COMPLETE:
            return COMPLETE_MESSAGE
        return step.question if step else STAGE_PROMPTS[stage]

    @staticmethod
    def _progress_marker(session: Session) -> Tuple[str, Dict[str, Any]]:
        return session.stage.value, session.context.snapshot()

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    async def handle_event(self, session: Session, event: SessionEvent) -> TurnResponse:
        """Record ``event``, route it and persist the session."""

        try:
            if session.stage is Stage.COMPLETE:
                return TurnResponse(messages=[COMPLETE_MESSAGE])
            session.append_event(event)
            if event.author == "client" and event.type == "message":
                return await self.handle_client_turn(
                    session, event.text, exclude_event_id=event.id
                )
            if event.author == "client" and event.type == "data_update":
                result = self._handle_structured(session, event.content)
                self._record_reply(session, result.messages)
                return TurnResponse(
                    messages=result.messages,
                    validation=result.validation.to_dict() if result.validation else None,
                )
            if event.type == "note":
                if event.text.strip():
                    session.data["notes"].append(
                        {
                            "author": event.author,
                            "text": event.text.strip(),
                            "stage": session.stage.value,
                            "created_at": event.created_at,
                        }
                    )
                return TurnResponse()
            if event.author == "assistant" and event.type == "message":
                stage_data = event.content.get("stage_data")
                if isinstance(stage_data, Mapping):
                    session.apply_patch(stage_data, from_event=True)
                return TurnResponse()
            logger.debug(
                "Ignoring %s/%s event for session %s", event.author, event.type, session.id
            )
            return TurnResponse()
        finally:
            self._store.save(session)

    async def handle_client_turn(
        self,
        session: Session,
        text: str,
        *,
        exclude_event_id: Optional[str] = None,
    ) -> TurnResponse:
        """Process one free-text client message."""

        text = (text or "").strip()
        if session.stage is Stage.COMPLETE:
            return TurnResponse(messages=[COMPLETE_MESSAGE])
        if not text:
            messages = [self.current_question(session)]
            self._record_reply(session, messages)
            return TurnResponse(messages=messages)

        detour = run_detours(
            session,
            text,
            resume_prompt=self.current_question(session),
            step_key=self.current_step_key(session),
            top_n=self._investment_top_n,
        )
        if detour is not None:
            self._record_reply(session, detour.messages)
            return TurnResponse(messages=detour.messages)

        before = self._progress_marker(session)
        result = self._dispatch_text(session, text)
        validation = result.validation.to_dict() if result.validation else None
        if result.recognised or self._progress_marker(session) != before:
            self._record_reply(session, result.messages)
            return TurnResponse(messages=result.messages, validation=validation)

        escalation = await self._escalator.escalate(session, text, exclude_event_id)
        self._record_reply(session, result.messages)
        return TurnResponse(
            messages=[escalation.reply, *result.messages],
            compliance=escalation.to_dict(),
            validation=validation,
        )

    @staticmethod
    def _record_reply(session: Session, messages: Sequence[str]) -> None:
        if not messages:
            return
        session.append_event(
            SessionEvent(
                author="assistant",
                type="message",
                content={"text": "\n\n".join(messages), "messages": list(messages)},
            )
        )

    def _dispatch_text(self, session: Session, text: str) -> _HandlerResult:
        stage = session.stage
        if stage is Stage.EXPLANATION:
            return self._explanation_text(session, text)
        if stage is Stage.ONBOARDING:
            return self._onboarding_text(session, text)
        if stage is Stage.CONSENT:
            return self._consent_text(session, text)
        if stage is Stage.EDUCATION:
            return self._education_text(session, text)
        if stage is Stage.OPTIONS:
            return self._options_text(session, text)
        if stage is Stage.CONFIRMATION:
            return self._confirmation_text(session, text)
        if stage is Stage.REPORT:
            return self._report_text(session, text)
        if stage is Stage.DELIVERY:
            return self._delivery_text(session, text)
        return _HandlerResult(messages=[COMPLETE_MESSAGE])

    def _handle_structured(self, session: Session, payload: Mapping[str, Any]) -> _HandlerResult:
        stage = session.stage
        if stage is Stage.EXPLANATION:
            if payload.get("ready") is True:
                return self._begin_onboarding(session)
            return _HandlerResult(messages=[EXPLANATION_QUESTION])
        if stage is Stage.ONBOARDING:
            return self._onboarding_structured(session, payload)
        if stage is Stage.CONSENT:
            consent = payload.get("consent")
            return self._consent_structured(
                session, consent if isinstance(consent, Mapping) else {}
            )
        if stage is Stage.EDUCATION:
            return self._education_structured(session, payload)
        if stage is Stage.OPTIONS:
            preferences = payload.get("preferences")
            return self._options_structured(
                session, preferences if isinstance(preferences, Mapping) else {}
            )
        if stage is Stage.CONFIRMATION:
            confirmation = payload.get("confirmation")
            return self._confirmation_structured(
                session, confirmation if isinstance(confirmation, Mapping) else {}
            )
        if stage is Stage.REPORT:
            if payload.get("acknowledged") is True:
                return self._acknowledge_report(session)
            return _HandlerResult(messages=[REPORT_QUESTION])
        if stage is Stage.DELIVERY:
            if payload.get("received") is True or payload.get("acknowledged") is True:
                return self._complete_delivery(session)
            return _HandlerResult(messages=[DELIVERY_QUESTION])
        return _HandlerResult(messages=[COMPLETE_MESSAGE])

    @staticmethod
    def _issues_reply(issues: Sequence[str], follow_up: Optional[str] = None) -> List[str]:
        lines = "\n".join(f"- {issue}" for issue in issues)
        messages = [f"Please fix the following before we continue:\n{lines}"]
        if follow_up:
            messages.append(follow_up)
        return messages

    # ------------------------------------------------------------------
    # Explanation
    # ------------------------------------------------------------------

    def _explanation_text(self, session: Session, text: str) -> _HandlerResult:
        if is_affirmative(text):
            return self._begin_onboarding(session)
        if is_negative(text):
            return _HandlerResult(
                messages=[
                    "No problem. Take your time, and reply 'ready' whenever "
                    "you'd like to begin."
                ]
            )
        return _rejected([EXPLANATION_QUESTION])

    def _begin_onboarding(self, session: Session) -> _HandlerResult:
        self._mark_explanation_shown(session)
        return _HandlerResult(
            messages=self.move_to_stage(
                session, Stage.ONBOARDING, [ONBOARDING_STEPS[0].question]
            )
        )

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    def _onboarding_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        if ctx.require_risk_override:
            return self._risk_override_text(session, text)
        step = self._step(ONBOARDING_STEPS, ctx.onboarding_step)
        if step is None:
            return self._finish_onboarding(session)
        profile = session.data["client_profile"]
        retry = [f"Sorry, I didn't catch that. {step.question}"]
        messages: List[str] = []

        if step.key == "client_type":
            value = parse_choice(text, CLIENT_TYPES, CLIENT_TYPE_SYNONYMS)
            if value is None:
                return _rejected(retry)
            profile["client_type"] = value
        elif step.key == "objectives":
            value = parse_choice(text, OBJECTIVES, OBJECTIVE_SYNONYMS)
            if value is None:
                return _rejected(retry)
            profile["objectives"] = value
        elif step.key == "horizon_years":
            horizon = parse_horizon_years(text)
            if horizon is None:
                return _rejected(retry)
            profile["horizon_years"] = horizon
        elif step.key == "risk_tolerance":
            risk = parse_risk_scale(text)
            if risk is None:
                return _rejected(retry)
            profile["risk_tolerance"] = risk
            if record_horizon_warning(session.data, risk, profile.get("horizon_years")):
                messages.append(RISK_HORIZON_WARNING)
        elif step.key == "capacity_for_loss":
            capacity = parse_capacity_for_loss(text)
            if capacity is None:
                return _rejected(retry)
            profile["capacity_for_loss"] = capacity
            if record_capacity_override(session.data, profile.get("risk_tolerance"), capacity):
                ctx.require_risk_override = True
                ctx.onboarding_step += 1
                return _HandlerResult(messages=[RISK_CAPACITY_OVERRIDE])
        elif step.key == "liquidity_needs":
            profile["liquidity_needs"] = "none" if is_empty_answer(text) else text
        elif step.key == "knowledge_experience":
            profile["knowledge_experience"] = {
                "summary": text,
                "instruments": extract_instruments(text),
                "frequency": extract_frequency(text),
                "duration": extract_duration(text),
            }
        elif step.key == "financial_opt_in":
            if is_affirmative(text):
                profile["financial_situation"]["provided"] = True
            elif is_negative(text):
                profile["financial_situation"]["provided"] = False
                return self._finish_onboarding(session)
            else:
                return _rejected(retry)
        elif step.key == "financial_details":
            figures = parse_financials(text)
            if all(value is None for value in figures.values()):
                return _rejected(retry)
            profile["financial_situation"].update(figures)
            profile["financial_situation"]["provided"] = True
            profile["financial_situation"]["notes"] = text
            return self._finish_onboarding(session)

        ctx.onboarding_step += 1
        follow_up = self._step(ONBOARDING_STEPS, ctx.onboarding_step)
        if follow_up is None:
            result = self._finish_onboarding(session)
            return _HandlerResult(messages=messages + result.messages)
        messages.append(follow_up.question)
        return _HandlerResult(messages=messages)

    def _risk_override_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        profile = session.data["client_profile"]
        revised = parse_risk_scale(text)
        if revised is not None and revised < 5:
            resolve_override(session.data, revised)
            profile["risk_tolerance"] = revised
            ctx.require_risk_override = False
            acknowledgement = f"Thanks, I've updated your risk level to {revised}."
        elif is_affirmative(text):
            confirm_override(session.data)
            ctx.require_risk_override = False
            acknowledgement = (
                "Thank you. I've recorded that you understand the risk and "
                "wish to keep your chosen risk level. Your adviser will review it."
            )
        else:
            return _rejected([RISK_CAPACITY_OVERRIDE])
        return self._continue_onboarding(session, [acknowledgement])

    def _continue_onboarding(self, session: Session, messages: List[str]) -> _HandlerResult:
        step = self._step(ONBOARDING_STEPS, session.context.onboarding_step)
        if step is None:
            result = self._finish_onboarding(session)
            return _HandlerResult(messages=messages + result.messages)
        return _HandlerResult(messages=[*messages, step.question])

    def _finish_onboarding(self, session: Session) -> _HandlerResult:
        session.context.onboarding_step = len(ONBOARDING_STEPS)
        session.data["timestamps"]["onboarding_completed_at"] = utc_now()
        return _HandlerResult(
            messages=self.move_to_stage(session, Stage.CONSENT, [CONSENT_STEPS[0].question])
        )

    def _onboarding_structured(
        self, session: Session, payload: Mapping[str, Any]
    ) -> _HandlerResult:
        ctx = session.context
        answers = payload.get("answers")
        confirm = payload.get("confirm_override") is True
        if not isinstance(answers, Mapping):
            if ctx.require_risk_override and confirm:
                confirm_override(session.data)
                ctx.require_risk_override = False
                return self._continue_onboarding(
                    session, ["Thank you. Your risk confirmation has been recorded."]
                )
            return _HandlerResult(
                messages=self._issues_reply(["Onboarding answers are required."])
            )

        update = parse_onboarding(answers)
        if not update.ok:
            return _HandlerResult(messages=self._issues_reply(update.issues))
        session.apply_patch(update.patch)
        ctx.onboarding_step = len(ONBOARDING_STEPS)

        profile = session.data["client_profile"]
        risk = profile["risk_tolerance"]
        messages: List[str] = []
        if record_horizon_warning(session.data, risk, profile["horizon_years"]):
            messages.append(RISK_HORIZON_WARNING)
        if needs_capacity_override(risk, profile["capacity_for_loss"]):
            record_capacity_override(session.data, risk, profile["capacity_for_loss"])
            if not confirm:
                ctx.require_risk_override = True
                return _HandlerResult(messages=[*messages, RISK_CAPACITY_OVERRIDE])
            confirm_override(session.data)
            ctx.require_risk_override = False
        elif open_override(session.data) is not None:
            resolve_override(session.data, risk)
            ctx.require_risk_override = False
        result = self._finish_onboarding(session)
        return _HandlerResult(messages=messages + result.messages)

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def _consent_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        consent = session.data["consent"]
        step = self._step(CONSENT_STEPS, ctx.consent_step)
        if step is None:
            return self._finish_consent(session)
        retry = [f"Sorry, I need a clear answer. {step.question}"]

        if step.key == "data_processing":
            if is_affirmative(text):
                consent["data_processing"] = {"granted": True, "timestamp": utc_now()}
            elif is_negative(text):
                return _HandlerResult(
                    messages=[
                        "We can't provide advice without your consent to process "
                        "your personal data. If you change your mind, reply 'yes'."
                    ]
                )
            else:
                return _rejected(retry)
        elif step.key == "e_delivery":
            if is_affirmative(text):
                consent["e_delivery"] = {"granted": True, "timestamp": utc_now()}
            elif is_negative(text):
                consent["e_delivery"] = {"granted": False, "timestamp": None}
            else:
                return _rejected(retry)
        elif step.key == "future_contact":
            if is_affirmative(text):
                consent["future_contact"].update({"granted": True, "timestamp": utc_now()})
            elif is_negative(text):
                consent["future_contact"] = {"granted": False, "purpose": "", "timestamp": None}
                return self._finish_consent(session)
            else:
                return _rejected(retry)
        elif step.key == "future_contact_purpose":
            if is_empty_answer(text):
                return _rejected(retry)
            consent["future_contact"]["purpose"] = text
            return self._finish_consent(session)

        ctx.consent_step += 1
        return _HandlerResult(messages=[CONSENT_STEPS[ctx.consent_step].question])

    def _finish_consent(self, session: Session) -> _HandlerResult:
        session.context.consent_step = len(CONSENT_STEPS)
        session.data["timestamps"]["consent_recorded_at"] = utc_now()
        return _HandlerResult(
            messages=self.move_to_stage(session, Stage.EDUCATION, [EDUCATION_STEPS[0].question])
        )

    def _consent_structured(self, session: Session, consent: Mapping[str, Any]) -> _HandlerResult:
        update = parse_consent(consent)
        if not update.ok:
            return _HandlerResult(messages=self._issues_reply(update.issues))
        session.apply_patch(update.patch)
        return self._finish_consent(session)

    # ------------------------------------------------------------------
    # Education
    # ------------------------------------------------------------------

    def _pathway_details(self, session: Session, pathways: Sequence[str]) -> List[str]:
        explained = session.data["education"]["pathways_explained"]
        messages = []
        for name in pathways:
            messages.append(PATHWAY_DETAILS[name])
            if name not in explained:
                explained.append(name)
        return messages

    def _education_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        education = session.data["education"]
        pathways = find_pathways_in_text(text)
        affirmative = is_affirmative(text)

        if pathways and (not affirmative or _DETAIL_CUE_RE.search(text)):
            step = self._step(EDUCATION_STEPS, ctx.education_phase) or EDUCATION_STEPS[0]
            return _HandlerResult(
                messages=[*self._pathway_details(session, pathways), step.question]
            )

        if ctx.education_phase == 0:
            if affirmative:
                education["acknowledged"] = True
                ctx.education_phase = 1
                return _HandlerResult(messages=[EDUCATION_STEPS[1].question])
            if is_negative(text):
                return _HandlerResult(
                    messages=[
                        "Please take a moment to read the education pack. "
                        + EDUCATION_STEPS[0].question
                    ]
                )
            return _rejected([EDUCATION_STEPS[0].question])

        if affirmative:
            education["wants_summary"] = True
            return self._finish_education(session, [FOCUS_VS_IMPROVERS])
        if is_negative(text):
            education["wants_summary"] = False
            return self._finish_education(session, [])
        return _rejected([EDUCATION_STEPS[1].question])

    def _finish_education(self, session: Session, messages: List[str]) -> _HandlerResult:
        session.context.education_phase = len(EDUCATION_STEPS)
        session.data["education"]["acknowledged"] = True
        session.data["timestamps"]["education_completed_at"] = utc_now()
        return _HandlerResult(
            messages=messages
            + self.move_to_stage(session, Stage.OPTIONS, [OPTIONS_STEPS[0].question])
        )

    def _education_structured(self, session: Session, payload: Mapping[str, Any]) -> _HandlerResult:
        update = parse_education(payload)
        if not update.ok:
            return _HandlerResult(messages=self._issues_reply(update.issues))
        session.apply_patch(update.patch)
        messages = [FOCUS_VS_IMPROVERS] if update.patch["education"]["wants_summary"] else []
        return self._finish_education(session, messages)

    # ------------------------------------------------------------------
    # Options (sustainability preferences)
    # ------------------------------------------------------------------

    @staticmethod
    def _options_step_applies(key: str, preferences: Mapping[str, Any]) -> bool:
        level = preferences.get("preference_level")
        impact = has_impact_label(preferences.get("labels_interest") or [])
        if key in ("themes", "engagement_importance", "tradeoff_tolerance"):
            return level == "detailed"
        if key == "impact_goals":
            return impact
        if key == "reporting_frequency_pref":
            return level == "detailed" or impact
        return True

    def _advance_options(self, session: Session, messages: List[str]) -> _HandlerResult:
        ctx = session.context
        preferences = session.data["sustainability_preferences"]
        for index in range(ctx.options_step + 1, len(OPTIONS_STEPS)):
            if self._options_step_applies(OPTIONS_STEPS[index].key, preferences):
                ctx.options_step = index
                return _HandlerResult(messages=[*messages, OPTIONS_STEPS[index].question])
        return self._finish_options(session, messages)

    def _finish_options(self, session: Session, messages: List[str]) -> _HandlerResult:
        data = session.data
        now = utc_now()
        session.context.options_step = len(OPTIONS_STEPS)
        data["timestamps"]["preferences_recorded_at"] = now
        if data["sustainability_preferences"].get("preference_level") == "none":
            return _HandlerResult(
                messages=messages + self.move_to_stage(session, Stage.CONFIRMATION)
            )
        data["disclosures"]["agr_disclaimer_presented"] = True
        data["disclosures"]["agr_disclaimer_presented_at"] = now
        return _HandlerResult(
            messages=[*messages, AGR_DISCLAIMER]
            + self.move_to_stage(session, Stage.CONFIRMATION)
        )

    def _options_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        preferences = session.data["sustainability_preferences"]
        step = self._step(OPTIONS_STEPS, ctx.options_step)
        if step is None:
            return self._finish_options(session, [])
        retry = [f"Sorry, I didn't catch that. {step.question}"]

        if step.key == "preference_level":
            level = parse_choice(text, PREFERENCE_LEVELS, PREFERENCE_LEVEL_SYNONYMS)
            if level is None:
                return _rejected(retry)
            preferences["preference_level"] = level
            if level == "none":
                return self._finish_options(
                    session,
                    ["Understood. We won't apply sustainability preferences to your advice."],
                )
        elif step.key == "labels_interest":
            if is_empty_answer(text):
                return _HandlerResult(
                    messages=["Please select at least one label or pathway. " + step.question]
                )
            allocations = parse_allocations(text)
            labels = find_pathways_in_text(text)
            for allocation in allocations:
                if allocation["name"] not in labels:
                    labels.append(allocation["name"])
            if not labels:
                return _rejected(retry)
            issues = allocation_issues(allocations, labels)
            if issues:
                return _HandlerResult(messages=self._issues_reply(issues, step.question))
            preferences["labels_interest"] = labels
            preferences["pathway_allocations"] = allocations
        elif step.key == "themes":
            themes = [] if is_empty_answer(text) else split_list(text)
            if not themes:
                return _HandlerResult(
                    messages=[
                        "Detailed preferences need at least one theme. " + step.question
                    ]
                )
            preferences["themes"] = themes
        elif step.key == "exclusions":
            exclusions = parse_exclusions(text)
            if exclusions is None:
                return _rejected(retry)
            issues = exclusion_issues(exclusions)
            if issues:
                return _HandlerResult(messages=self._issues_reply(issues, step.question))
            preferences["exclusions"] = exclusions
        elif step.key == "impact_goals":
            goals = [] if is_empty_answer(text) else split_list(text)
            if not goals:
                return _HandlerResult(
                    messages=self._issues_reply(
                        ["Impact labels require at least one impact goal."], step.question
                    )
                )
            preferences["impact_goals"] = goals
        elif step.key == "engagement_importance":
            preferences["engagement_importance"] = text
        elif step.key == "reporting_frequency_pref":
            frequency = parse_choice(text, REPORTING_FREQUENCIES, REPORTING_SYNONYMS)
            if frequency is None:
                return _rejected(retry)
            if frequency == "none" and has_impact_label(preferences.get("labels_interest") or []):
                return _HandlerResult(
                    messages=self._issues_reply(
                        ["Impact labels require a reporting cadence other than 'none'."],
                        step.question,
                    )
                )
            preferences["reporting_frequency_pref"] = frequency
        elif step.key == "tradeoff_tolerance":
            preferences["tradeoff_tolerance"] = text

        return self._advance_options(session, [])

    def _options_structured(
        self, session: Session, payload: Mapping[str, Any]
    ) -> _HandlerResult:
        update = parse_preferences(payload)
        if not update.ok:
            return _HandlerResult(
                messages=self._issues_reply(update.issues),
                validation=ValidationResult(valid=False, issues=list(update.issues)),
            )
        session.apply_patch(update.patch)
        return self._finish_options(session, [])

    # ------------------------------------------------------------------
    # Confirmation and report trigger
    # ------------------------------------------------------------------

    def _confirmation_text(self, session: Session, text: str) -> _HandlerResult:
        ctx = session.context
        if not ctx.confirmation_awaiting:
            ctx.confirmation_awaiting = True
            return _HandlerResult(messages=[render_summary(session.data), CONFIRMATION_QUESTION])
        if _EDIT_CUE_RE.search(text) or (is_negative(text) and not is_affirmative(text)):
            return self._record_edits(session, text)
        if is_affirmative(text):
            return self._confirm_summary(session)
        return _rejected([CONFIRMATION_QUESTION])

    def _record_edits(self, session: Session, text: str) -> _HandlerResult:
        session.data["summary_confirmation"]["edits_requested"] = text
        return _HandlerResult(
            messages=[
                "Thanks, I've noted the changes you'd like and your adviser will "
                "review them with you. Reply 'yes' once the rest of the summary "
                "is correct."
            ]
        )

    def _confirm_summary(self, session: Session) -> _HandlerResult:
        now = utc_now()
        candidate = copy.deepcopy(session.data)
        candidate["summary_confirmation"]["client_summary_confirmed"] = True
        candidate["summary_confirmation"]["confirmed_at"] = now
        candidate["timestamps"]["summary_confirmed_at"] = now
        result = validate_data(candidate)
        if not result.valid:
            logger.info(
                "Session %s failed validation with %d issue(s)", session.id, len(result.issues)
            )
            lines = "\n".join(f"- {issue}" for issue in result.issues)
            return _HandlerResult(
                messages=[
                    "I can't prepare your report yet. The following needs "
                    f"attention:\n{lines}"
                ],
                validation=result,
            )

        session.data = candidate
        session.touch()
        try:
            artifacts = self._report_generator.generate(session)
            self._report_store.save(session.id, artifacts)
        except ReportGenerationError as exc:
            logger.error("Report generation failed for session %s: %s", session.id, exc)
            session.data["report"]["status"] = "failed"
            return _HandlerResult(
                messages=[
                    "Your summary is confirmed, but the report couldn't be "
                    "generated just now. Reply 'yes' to try again."
                ],
                validation=result,
            )

        session.data["report"] = {
            "version": self._report_generator.version,
            "status": "generated",
            "preview": artifacts.preview,
            "hash": artifacts.hash,
            "doc_url": f"/api/sessions/{session.id}/report.pdf",
            "generated_at": now,
        }
        session.data["timestamps"]["report_generated_at"] = now
        session.context.confirmation_awaiting = False
        return _HandlerResult(
            messages=self.move_to_stage(
                session, Stage.REPORT, [artifacts.preview, REPORT_QUESTION]
            ),
            validation=result,
        )

    def _confirmation_structured(
        self, session: Session, payload: Mapping[str, Any]
    ) -> _HandlerResult:
        update = parse_confirmation(payload)
        if not update.ok:
            return _HandlerResult(messages=self._issues_reply(update.issues))
        edits = update.patch["summary_confirmation"]["edits_requested"]
        if update.patch["summary_confirmation"]["client_summary_confirmed"]:
            if edits:
                session.data["summary_confirmation"]["edits_requested"] = edits
            return self._confirm_summary(session)
        return self._record_edits(session, edits)

    # ------------------------------------------------------------------
    # Report, delivery and completion
    # ------------------------------------------------------------------

    def _report_text(self, session: Session, text: str) -> _HandlerResult:
        if is_affirmative(text):
            return self._acknowledge_report(session)
        return _rejected([REPORT_QUESTION])

    def _acknowledge_report(self, session: Session) -> _HandlerResult:
        data = session.data
        session.context.report_acknowledged = True
        method = "email" if data["consent"]["e_delivery"].get("granted") else "download"
        data["delivery"]["method"] = method
        if method == "email":
            notice = "We'll send your report to you by email."
        else:
            notice = (
                "Your report is ready to download from "
                f"{data['report'].get('doc_url') or 'your adviser portal'}."
            )
        return _HandlerResult(
            messages=self.move_to_stage(session, Stage.DELIVERY, [notice, DELIVERY_QUESTION])
        )

    def _delivery_text(self, session: Session, text: str) -> _HandlerResult:
        if is_affirmative(text) or re.search(r"\b(?:received|got it|downloaded)\b", text, re.IGNORECASE):
            return self._complete_delivery(session)
        return _rejected([DELIVERY_QUESTION])

    def _complete_delivery(self, session: Session) -> _HandlerResult:
        now = utc_now()
        session.data["delivery"]["delivered_at"] = now
        session.data["timestamps"]["delivered_at"] = now
        return _HandlerResult(messages=self.move_to_stage(session, Stage.COMPLETE))
