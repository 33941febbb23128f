"""Escalation of unrecognised client questions to a compliance co-pilot.

The escalator builds a chat transcript from the session, hands it to a
responder and folds the structured reply back into the session logs. The
default responder goes through the Microsoft Agent Framework; a
deterministic stub answers when no model is configured or when the live
model rejects our credentials.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple

from .config import AppSettings, ModelSettings, ResponderMode
from .lexicon import truncate
from .maf_client import ChatMessage, MAFChatClient, MAFIntegrationError
from .models import Session, SessionEvent, utc_now
from .prompts import COMPLIANCE_RESPONSE_INSTRUCTIONS, COMPLIANCE_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

Responder = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

COMPLIANCE_LOG_KEYS = ("educational_requests", "extra_questions", "notes")

UNAUTHORIZED_PREFIX = (
    "I couldn't reach the compliance assistant due to an authorization "
    "error, but"
)
ENGINE_FALLBACK_MESSAGE = (
    "I couldn't get an answer to that right now. I've logged your question "
    "for your adviser, who will follow up."
)


class ComplianceResponderError(RuntimeError):
    """Raised when the compliance responder fails."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ComplianceUnauthorizedError(ComplianceResponderError):
    """Raised in strict mode when the responder rejects our credentials."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=401)


def _as_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def status_code_of(exc: Optional[BaseException]) -> Optional[int]:
    """Find an HTTP-like status code on ``exc`` or anything that caused it."""

    seen: set[int] = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        response = getattr(current, "response", None)
        for candidate in (
            getattr(current, "status", None),
            getattr(current, "status_code", None),
            getattr(current, "code", None),
            getattr(response, "status_code", None),
            getattr(response, "status", None),
        ):
            status = _as_status(candidate)
            if status is not None:
                return status
        current = current.__cause__ or current.__context__
    return None


_STUB_GUIDANCE: Tuple[Tuple[Pattern[str], str], ...] = (
    (
        re.compile(r"pathway", re.IGNORECASE),
        "here's what we can confirm right now: your current sustainability "
        "pathway remains as recorded. Any updates will be reviewed with you "
        "before changes are made.",
    ),
    (
        re.compile(r"cost|fee", re.IGNORECASE),
        "we've noted your question about charges. We'll confirm fee "
        "calculations against the disclosure pack and respond once the live "
        "assistant is available.",
    ),
    (
        re.compile(r"risk|atr|capacity", re.IGNORECASE),
        "the documented risk profile and capacity for loss stay unchanged. "
        "We'll revisit suitability if you flag new information when the "
        "adviser follows up.",
    ),
    (
        re.compile(r"esg|sustainab|impact|sdg", re.IGNORECASE),
        "the ESG preferences you've captured so far remain valid. We'll "
        "provide any extra disclosures about fund coverage during the "
        "adviser review.",
    ),
)


def select_stub_guidance(summary: str) -> str:
    if not summary:
        return (
            "I've recorded this for adviser review and will provide a "
            "detailed answer once the live assistant is back online."
        )
    for pattern, guidance in _STUB_GUIDANCE:
        if pattern.search(summary):
            return guidance
    return (
        f'I\'ve logged your question about "{summary}" and the adviser team '
        "will respond with a full answer shortly."
    )


def _last_user_text(messages: Iterable[Mapping[str, Any]]) -> str:
    for message in reversed(list(messages)):
        if message.get("role") == "user":
            content = message.get("content")
            return content if isinstance(content, str) else ""
    return ""


def build_compliance_stub(
    payload: Mapping[str, Any],
    *,
    note: Optional[str] = None,
    reply_prefix: Optional[str] = None,
    status: Optional[int] = None,
    guidance_builder: Optional[Callable[[str], str]] = None,
) -> Dict[str, Any]:
    """Deterministic reply that logs the question for adviser review."""

    raw = _last_user_text(payload.get("messages") or [])
    summary = truncate(" ".join(raw.split()))
    notes: List[str] = []
    if note:
        notes.append(f"{note} (status {status})" if status else note)
    guidance = (guidance_builder or select_stub_guidance)(summary)
    prefix = f"{reply_prefix.strip()} " if reply_prefix else ""
    return {
        "reply": f"{prefix}{guidance}".strip(),
        "compliance": {
            "educational_requests": (
                [f"Free-form question logged for adviser review: {summary}"]
                if summary
                else []
            ),
            "extra_questions": [],
            "notes": notes,
        },
    }


async def stub_responder(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Offline responder used when no live model is configured."""

    return build_compliance_stub(
        payload,
        note="Compliance stub responder used because no live model is configured",
        reply_prefix=(
            "The compliance assistant is running offline, so"
        ),
    )


def unauthorized_fallback(
    payload: Mapping[str, Any], status: Optional[int] = 401
) -> Dict[str, Any]:
    return build_compliance_stub(
        payload,
        status=status,
        note="Fallback compliance stub used after an authorization failure",
        reply_prefix=UNAUTHORIZED_PREFIX,
    )


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = re.sub(r"^```[a-zA-Z]*\s*", "", stripped)
        stripped = re.sub(r"\s*```$", "", stripped)
    return stripped.strip()


class MAFComplianceResponder:
    """Live responder backed by a Microsoft Agent Framework chat client."""

    def __init__(
        self,
        settings: ModelSettings,
        client: Optional[MAFChatClient] = None,
    ) -> None:
        self._client = client or MAFChatClient(settings)

    async def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        messages = [
            ChatMessage(role=str(item.get("role", "user")), content=str(item.get("content", "")))
            for item in payload.get("messages") or []
        ]
        messages.append(ChatMessage(role="user", content=COMPLIANCE_RESPONSE_INSTRUCTIONS))
        response = await self._client.complete(messages)
        content = _strip_code_fence(response.content)
        if not content:
            raise ComplianceResponderError(
                "Compliance model returned an empty response", status=502
            )
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ComplianceResponderError(
                "Compliance model returned invalid JSON", status=502
            ) from exc
        if not isinstance(parsed, dict):
            raise ComplianceResponderError(
                "Compliance model returned a non-object payload", status=502
            )
        return parsed


def build_default_responder(settings: AppSettings) -> Responder:
    """Pick the live or offline responder for ``settings``."""

    if settings.responder_mode is ResponderMode.STUB:
        return stub_responder
    try:
        return MAFComplianceResponder(settings.model)
    except MAFIntegrationError as exc:
        logger.warning("Compliance co-pilot unavailable, using offline stub: %s", exc)
        detail = str(exc)

        async def _offline(payload: Dict[str, Any]) -> Dict[str, Any]:
            return build_compliance_stub(
                payload,
                note=f"Compliance stub responder used because the model client failed: {detail}",
                reply_prefix="The compliance assistant is running in offline mode, so",
            )

        return _offline


def normalise_reply(result: Any) -> Tuple[str, Dict[str, List[str]]]:
    """Coerce a responder result into ``(reply, compliance logs)``."""

    if not isinstance(result, Mapping):
        raise ComplianceResponderError("Compliance responder returned a non-object payload")
    reply = result.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        raise ComplianceResponderError("Compliance responder returned no reply")
    raw = result.get("compliance") if isinstance(result.get("compliance"), Mapping) else {}
    compliance: Dict[str, List[str]] = {}
    for key in COMPLIANCE_LOG_KEYS:
        values = raw.get(key) or []
        if isinstance(values, str):
            values = [values]
        compliance[key] = [str(item).strip() for item in values if str(item).strip()]
    return reply.strip(), compliance


def build_stage_summary(session: Session) -> str:
    """Compact, model-friendly summary of what has been captured."""

    data = session.data
    profile = data["client_profile"]
    preferences = data["sustainability_preferences"]
    consent = data["consent"]
    guardrails = [entry.get("type") for entry in data["audit"]["guardrail_triggers"]]
    lines = [
        f"Current stage: {session.stage.value}",
        "Client profile: "
        f"type={profile.get('client_type')}, objective={profile.get('objectives')}, "
        f"horizon_years={profile.get('horizon_years')}, "
        f"risk_tolerance={profile.get('risk_tolerance')}, "
        f"capacity_for_loss={profile.get('capacity_for_loss')}",
        "Consent: "
        f"data_processing={consent['data_processing'].get('granted')}, "
        f"e_delivery={consent['e_delivery'].get('granted')}, "
        f"future_contact={consent['future_contact'].get('granted')}",
        "Sustainability preferences: "
        f"level={preferences.get('preference_level')}, "
        f"labels={', '.join(preferences.get('labels_interest') or []) or 'none'}, "
        f"themes={', '.join(preferences.get('themes') or []) or 'none'}, "
        f"reporting={preferences.get('reporting_frequency_pref')}",
        f"Guardrails raised: {', '.join(guardrails) if guardrails else 'none'}",
    ]
    return "\n".join(lines)


_EVENT_ROLES = {"client": "user", "assistant": "assistant", "adviser": "assistant"}


def build_transcript(
    session: Session,
    text: str,
    exclude_event_id: Optional[str] = None,
) -> List[ChatMessage]:
    """System preamble, session history and the pending question."""

    messages = [
        ChatMessage(
            role="system",
            content=f"{COMPLIANCE_SYSTEM_PROMPT}\n\nSession summary:\n{build_stage_summary(session)}",
        )
    ]
    for event in session.events:
        if event.id == exclude_event_id or event.type != "message":
            continue
        role = _EVENT_ROLES.get(event.author)
        content = event.text.strip()
        if role is None or not content:
            continue
        messages.append(ChatMessage(role=role, content=content))
    messages.append(ChatMessage(role="user", content=text))
    return messages


@dataclass(slots=True)
class EscalationResult:
    reply: str
    compliance: Dict[str, List[str]] = field(default_factory=dict)
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "compliance": {key: list(values) for key, values in self.compliance.items()},
            "fallback": self.fallback,
        }


class ComplianceEscalator:
    """Routes unrecognised free text to the compliance responder."""

    def __init__(self, responder: Responder, *, strict: bool = False) -> None:
        self._responder = responder
        self._strict = strict

    async def _call(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._responder(payload)
        except Exception as exc:
            if status_code_of(exc) != 401:
                raise
            if self._strict:
                raise ComplianceUnauthorizedError(
                    "Compliance responder rejected the request. Check "
                    "SUITABILITY_MODEL_API_KEY or enable COMPLIANCE_STUB."
                ) from exc
            logger.warning("Compliance responder unauthorized, using fallback stub")
            return unauthorized_fallback(payload, status=401)

    async def escalate(
        self,
        session: Session,
        text: str,
        exclude_event_id: Optional[str] = None,
    ) -> EscalationResult:
        payload = {
            "messages": [
                message.to_dict()
                for message in build_transcript(session, text, exclude_event_id)
            ]
        }
        try:
            reply, compliance = normalise_reply(await self._call(payload))
        except ComplianceUnauthorizedError:
            raise
        except Exception as exc:
            if self._strict:
                raise
            logger.warning("Compliance responder failed: %s", exc)
            session.data["extra_questions"].append(
                {
                    "question": truncate(text),
                    "stage": session.stage.value,
                    "source": "compliance_fallback",
                    "created_at": utc_now(),
                }
            )
            session.append_event(
                SessionEvent(
                    author="assistant",
                    type="message",
                    content={"text": ENGINE_FALLBACK_MESSAGE, "fallback": True},
                )
            )
            return EscalationResult(reply=ENGINE_FALLBACK_MESSAGE, fallback=True)

        created_at = utc_now()
        for key in COMPLIANCE_LOG_KEYS:
            for item in compliance.get(key, []):
                session.data[key].append(
                    {
                        "text": item,
                        "stage": session.stage.value,
                        "source": "compliance",
                        "created_at": created_at,
                    }
                )
        session.append_event(
            SessionEvent(
                author="assistant",
                type="message",
                content={"text": reply, "compliance": compliance},
            )
        )
        return EscalationResult(reply=reply, compliance=compliance)
