"""Suitability report generation and storage."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .models import Session

logger = logging.getLogger(__name__)


class ReportGenerationError(RuntimeError):
    """Raised when a suitability report cannot be produced or stored."""


@dataclass(slots=True)
class ReportArtifacts:
    """Rendered report plus the fingerprint recorded on the session."""

    preview: str
    artifact_bytes: bytes
    hash: str


@dataclass(slots=True)
class _RenderBlock:
    """A logical block of report content."""

    kind: str
    text: str = ""
    rows: List[List[str]] = field(default_factory=list)


def _display(value: Any, empty: str = "Not provided") -> str:
    if value is None or value == "" or value == []:
        return empty
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def _format_exclusions(exclusions: List[Mapping[str, Any]]) -> str:
    items = []
    for entry in exclusions or []:
        threshold = entry.get("threshold")
        suffix = f" (above {threshold}% revenue)" if threshold is not None else ""
        items.append(f"{entry.get('sector')}{suffix}")
    return ", ".join(items) if items else "None"


def _format_allocations(allocations: List[Mapping[str, Any]]) -> str:
    return ", ".join(
        f"{item.get('name')} {item.get('allocation_pct')}%" for item in allocations or []
    )


def summary_sections(data: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Group the captured record into titled lines.

    Used for both the confirmation read-back and the report body.
    """

    profile = data["client_profile"]
    knowledge = profile["knowledge_experience"]
    financial = profile["financial_situation"]
    consent = data["consent"]
    preferences = data["sustainability_preferences"]

    horizon = profile.get("horizon_years")
    profile_lines = [
        f"Client type: {_display(profile.get('client_type'))}",
        f"Objective: {_display(profile.get('objectives'))}",
        f"Investment horizon: {_display(horizon)}{' years' if horizon is not None else ''}",
        f"Risk tolerance (1-7): {_display(profile.get('risk_tolerance'))}",
        f"Capacity for loss: {_display(profile.get('capacity_for_loss'))}",
        f"Liquidity needs: {_display(profile.get('liquidity_needs'))}",
        f"Knowledge and experience: {_display(knowledge.get('summary'))}",
    ]
    if financial.get("provided"):
        profile_lines.append(
            "Financial situation: "
            f"income {_display(financial.get('income'))}, "
            f"assets {_display(financial.get('assets'))}, "
            f"liabilities {_display(financial.get('liabilities'))}"
        )
    else:
        profile_lines.append("Financial situation: not disclosed")

    future_contact = consent["future_contact"]
    consent_lines = [
        f"Data processing: {_display(consent['data_processing'].get('granted'))}",
        f"Electronic delivery: {_display(consent['e_delivery'].get('granted'))}",
        "Future contact: "
        + _display(future_contact.get("granted"))
        + (
            f" ({future_contact.get('purpose')})"
            if future_contact.get("granted") and future_contact.get("purpose")
            else ""
        ),
    ]

    level = preferences.get("preference_level")
    if level in (None, "none"):
        preference_lines = ["No sustainability preferences recorded."]
    else:
        preference_lines = [
            f"Preference level: {level.replace('_', ' ')}",
            f"Labels of interest: {_display(preferences.get('labels_interest'))}",
        ]
        if preferences.get("pathway_allocations"):
            preference_lines.append(
                f"Allocations: {_format_allocations(preferences['pathway_allocations'])}"
            )
        if preferences.get("themes"):
            preference_lines.append(f"Themes: {_display(preferences.get('themes'))}")
        preference_lines.append(
            f"Exclusions: {_format_exclusions(preferences.get('exclusions') or [])}"
        )
        if preferences.get("impact_goals"):
            preference_lines.append(
                f"Impact goals: {_display(preferences.get('impact_goals'))}"
            )
        if preferences.get("engagement_importance"):
            preference_lines.append(
                f"Engagement importance: {preferences['engagement_importance']}"
            )
        preference_lines.append(
            f"Reporting cadence: {_display(preferences.get('reporting_frequency_pref'))}"
        )
        if preferences.get("tradeoff_tolerance"):
            preference_lines.append(
                f"Trade-off tolerance: {preferences['tradeoff_tolerance']}"
            )

    guardrail_lines = []
    for entry in data["audit"]["guardrail_triggers"]:
        status = "open"
        if entry.get("confirmed_at"):
            status = f"confirmed {entry['confirmed_at']}"
        elif entry.get("resolved_at"):
            status = f"resolved {entry['resolved_at']}"
        guardrail_lines.append(f"{entry.get('type')} ({status})")

    return {
        "Client profile": profile_lines,
        "Consents": consent_lines,
        "Sustainability preferences": preference_lines,
        "Guardrails": guardrail_lines or ["None raised"],
    }


def render_summary(data: Mapping[str, Any]) -> str:
    parts = []
    for title, lines in summary_sections(data).items():
        parts.append(title + ":\n" + "\n".join(f"- {line}" for line in lines))
    return "\n\n".join(parts)


class ReportGenerator:
    """Render a validated session into a preview and a PDF document."""

    _UNICODE_TRANSLATION = str.maketrans(
        {
            "\u00a0": " ",  # non-breaking space
            "\u2010": "-",  # hyphen
            "\u2011": "-",  # non-breaking hyphen
            "\u2013": "-",  # en dash
            "\u2014": "-",  # em dash
            "\u2018": "'",  # left single quote
            "\u2019": "'",  # right single quote
            "\u201c": '"',  # left double quote
            "\u201d": '"',  # right double quote
            "\u2212": "-",  # minus sign
        }
    )

    def __init__(self, version: str = "v1.0") -> None:
        self._version = version

    @property
    def version(self) -> str:
        return self._version

    def build_preview(self, session: Session) -> str:
        data = session.data
        lines = [
            "Suitability and Sustainability Preference Report",
            f"Session: {session.id}",
            f"Report version: {self._version}",
            "",
            render_summary(data),
        ]
        if data["disclosures"].get("agr_disclaimer_presented"):
            lines.extend(["", "Anti-Greenwashing disclaimer presented and acknowledged."])
        lines.extend(["", "Adviser notes:", data.get("adviser_notes") or "To be confirmed"])
        return "\n".join(lines)

    def _iter_blocks(self, session: Session) -> Iterator[_RenderBlock]:
        data = session.data
        yield _RenderBlock(kind="heading1", text="Suitability and Sustainability Preference Report")
        yield _RenderBlock(
            kind="table",
            rows=[
                ["Session", "Version", "Confirmed at"],
                [
                    session.id,
                    self._version,
                    _display(data["summary_confirmation"].get("confirmed_at")),
                ],
            ],
        )
        for title, lines in summary_sections(data).items():
            yield _RenderBlock(kind="heading2", text=title)
            for line in lines:
                yield _RenderBlock(kind="bullet", text=line)
        if data["disclosures"].get("agr_disclaimer_presented"):
            yield _RenderBlock(kind="heading2", text="Disclosures")
            yield _RenderBlock(
                kind="paragraph",
                text=(
                    "The Anti-Greenwashing disclaimer was presented at "
                    f"{_display(data['disclosures'].get('agr_disclaimer_presented_at'))}."
                ),
            )
        yield _RenderBlock(kind="heading2", text="Adviser notes")
        yield _RenderBlock(kind="paragraph", text=data.get("adviser_notes") or "To be confirmed")

    def render_pdf(self, session: Session) -> bytes:
        try:
            from fpdf import FPDF  # type: ignore[import]
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ReportGenerationError(
                "fpdf2 is required to render suitability reports."
            ) from exc

        pdf: Any = FPDF(unit="mm", format="A4")
        pdf.set_auto_page_break(auto=True, margin=15)
        pdf.set_margin(15)
        pdf.add_page()
        pdf.set_title("Suitability Report")
        for block in self._iter_blocks(session):
            self._render_block(pdf, block)
        try:
            return bytes(pdf.output())
        except (OSError, RuntimeError) as exc:
            raise ReportGenerationError(
                f"Unable to render report for session {session.id}"
            ) from exc

    def generate(self, session: Session) -> ReportArtifacts:
        preview = self.build_preview(session)
        artifact_bytes = self.render_pdf(session)
        digest = hashlib.sha256(artifact_bytes).hexdigest()
        logger.info("Generated report for session %s (sha256=%s)", session.id, digest[:12])
        return ReportArtifacts(preview=preview, artifact_bytes=artifact_bytes, hash=digest)

    def _render_block(self, pdf: Any, block: _RenderBlock) -> None:
        if block.kind in {"heading1", "heading2"}:
            pdf.set_font("Helvetica", "B", size=18 if block.kind == "heading1" else 14)
            pdf.set_x(pdf.l_margin)
            pdf.multi_cell(0, 8, self._safe_text(block.text))
            pdf.ln(2)
            pdf.set_font("Helvetica", size=11)
            return
        if block.kind == "paragraph":
            pdf.set_font("Helvetica", size=11)
            pdf.set_x(pdf.l_margin)
            pdf.multi_cell(0, 6, self._safe_text(block.text))
            pdf.ln(2)
            return
        if block.kind == "bullet":
            pdf.set_font("Helvetica", size=11)
            pdf.set_x(pdf.l_margin + 4)
            pdf.multi_cell(0, 6, self._safe_text(f"- {block.text}"))
            pdf.ln(1)
            return
        if block.kind == "table":
            self._render_table(pdf, block.rows)
            pdf.ln(2)
            return
        logger.debug("Unhandled render block kind: %s", block.kind)

    def _render_table(self, pdf: Any, rows: List[List[str]]) -> None:
        if not rows:
            return
        available_width = pdf.w - pdf.l_margin - pdf.r_margin
        column_count = len(rows[0])
        width = available_width / column_count
        for index, row in enumerate(rows):
            header = index == 0
            pdf.set_font("Helvetica", "B" if header else "", size=10 if header else 9)
            pdf.set_x(pdf.l_margin)
            for cell in row:
                pdf.cell(width, 7, self._safe_text(cell), border=1)
            pdf.ln(7)
        pdf.set_font("Helvetica", size=11)

    @classmethod
    def _safe_text(cls, text: str) -> str:
        text = (text or "").translate(cls._UNICODE_TRANSLATION)
        try:
            text.encode("latin-1")
        except UnicodeEncodeError:
            return text.encode("latin-1", "replace").decode("latin-1")
        return text


class ReportStore:
    """Keeps generated reports in memory and on disk."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = Path(directory) if directory else None
        self._artifacts: Dict[str, ReportArtifacts] = {}

    def path_for(self, session_id: str) -> Optional[Path]:
        if self._directory is None:
            return None
        return self._directory / f"{session_id}.pdf"

    def save(self, session_id: str, artifacts: ReportArtifacts) -> Optional[Path]:
        self._artifacts[session_id] = artifacts
        destination = self.path_for(session_id)
        if destination is None:
            return None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(artifacts.artifact_bytes)
        except OSError as exc:
            raise ReportGenerationError(
                f"Unable to write report PDF: {destination}"
            ) from exc
        return destination

    def get(self, session_id: str) -> Optional[ReportArtifacts]:
        artifacts = self._artifacts.get(session_id)
        if artifacts is not None:
            return artifacts
        path = self.path_for(session_id)
        if path is None or not path.exists():
            return None
        payload = path.read_bytes()
        artifacts = ReportArtifacts(
            preview="",
            artifact_bytes=payload,
            hash=hashlib.sha256(payload).hexdigest(),
        )
        self._artifacts[session_id] = artifacts
        return artifacts
