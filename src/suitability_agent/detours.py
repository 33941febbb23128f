"""Side-question handling that never moves the conversation forward."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern

from .investments import format_matches, match_investments
from .lexicon import truncate
from .models import Session, utc_now
from .prompts import (
    EDUCATIONAL_TOPICS,
    INVESTMENT_COME_BACK_LATER,
    RATIONALE_PATTERN,
    rationale_for,
)
from .validator import has_recorded_preferences

logger = logging.getLogger(__name__)

INVESTMENT_QUERY_PATTERN: Pattern[str] = re.compile(
    r"\b(?:suggest|recommend|show\s+me|find\s+me|match\s+me)\b.*"
    r"\b(?:funds?|investments?|products?|portfolios?)\b"
    r"|\b(?:which|what)\s+(?:sustainable\s+|green\s+|esg\s+)?"
    r"(?:funds?|investments?|products?|portfolios?)\b.*"
    r"\b(?:suit|fit|match|recommend|would|should|could)\w*\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class DetourResult:
    """Reply produced by a detour; ``kind`` names the matcher that fired."""

    kind: str
    messages: List[str] = field(default_factory=list)


def has_preference_profile(session: Session) -> bool:
    preferences = session.data["sustainability_preferences"]
    return preferences.get("preference_level") is not None or has_recorded_preferences(
        session.data
    )


def _investment_detour(
    session: Session,
    text: str,
    resume_prompt: str,
    top_n: int,
) -> DetourResult:
    entry = {
        "query": truncate(text),
        "stage": session.stage.value,
        "created_at": utc_now(),
    }
    if not has_preference_profile(session):
        entry.update({"status": "deferred", "authorised": [], "market": []})
        session.data["investment_queries"].append(entry)
        return DetourResult(
            kind="investment",
            messages=[
                f"{INVESTMENT_COME_BACK_LATER} The question waiting for you is: {resume_prompt}"
            ],
        )
    matches = match_investments(session.data, top_n=top_n)
    entry.update(
        {
            "status": "matched",
            "authorised": [item.product.id for item in matches.authorised],
            "market": [item.product.id for item in matches.market],
        }
    )
    session.data["investment_queries"].append(entry)
    logger.info(
        "Investment query for session %s matched %s",
        session.id,
        matches.matched_ids,
    )
    return DetourResult(kind="investment", messages=[format_matches(matches), resume_prompt])


def run_detours(
    session: Session,
    text: str,
    *,
    resume_prompt: str,
    step_key: Optional[str],
    top_n: int = 3,
) -> Optional[DetourResult]:
    """Try each detour in turn and return the first match.

    Only the relevant log in ``session.data`` is touched; ``stage`` and the
    dialogue context are left alone.
    """

    if INVESTMENT_QUERY_PATTERN.search(text):
        return _investment_detour(session, text, resume_prompt, top_n)

    for topic in EDUCATIONAL_TOPICS:
        if topic.pattern.search(text):
            session.data["educational_requests"].append(
                {
                    "topic": topic.topic,
                    "question": truncate(text),
                    "stage": session.stage.value,
                    "created_at": utc_now(),
                }
            )
            return DetourResult(kind="educational", messages=[topic.explainer, resume_prompt])

    if RATIONALE_PATTERN.search(text):
        rationale = rationale_for(session.stage, step_key)
        session.data["extra_questions"].append(
            {
                "question": truncate(text),
                "stage": session.stage.value,
                "step": step_key,
                "answer": rationale,
                "created_at": utc_now(),
            }
        )
        return DetourResult(kind="rationale", messages=[rationale, resume_prompt])

    logger.debug("No detour matched for session %s", session.id)
    return None
