"""Keyword and pattern helpers used to interpret free-text answers.

Every helper is pure and signals "no match" with ``None`` or an empty
collection. Callers are expected to re-prompt rather than raise.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .stages import PATHWAY_ALIASES, PATHWAY_NAMES, RISK_SCALE

Number = int | float

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_LIST_SPLIT_RE = re.compile(r"[,;\n]|\band\b", re.IGNORECASE)
_THRESHOLD_RE = re.compile(
    r"(?<![A-Za-z0-9.])(\d{1,3}(?:\.\d+)?)\s*(?:%|percent\b|per cent\b|pc\b)?",
    re.IGNORECASE,
)
_THRESHOLD_CONNECTORS_RE = re.compile(
    r"\b(?:above|over|under|below|beyond|max(?:imum)?|more than|less than|"
    r"greater than|threshold|revenue|exceeding)\b",
    re.IGNORECASE,
)
_ALLOCATION_RE = re.compile(
    r"(\d{1,3}(?:\.\d+)?)\s*(?:%|percent\b|per cent\b)",
    re.IGNORECASE,
)
_HORIZON_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(years?|yrs?|y\b|months?|mos?\b)?",
    re.IGNORECASE,
)
_SINGLE_DIGIT_RE = re.compile(r"(?<![\d.])(\d+)(?![\d.])")
_DURATION_RE = re.compile(r"(\d+)\s*(years?|yrs?|months?)", re.IGNORECASE)
_AMOUNT_PATTERN = (
    r"[^0-9\n]{0,20}?[£$€]?\s*(\d[\d,]*(?:\.\d+)?)\s*(k|m|thousand|million)?\b"
)

AFFIRMATIVE_RE = re.compile(
    r"\b(yes|yep|yeah|yup|y|sure|ok|okay|ready|agreed|agree|confirm|"
    r"confirmed|correct|proceed|go ahead|understood|absolutely|of course|"
    r"happy to|i consent|i agree|i understand|i have read|i ve read|"
    r"read it|sounds good|looks good|that s right|continue)\b"
)
NEGATIVE_RE = re.compile(
    r"\b(no|nope|nah|not|don t|do not|dont|decline|disagree|refuse|"
    r"never|withdraw|stop)\b"
)

NO_ITEMS_PHRASES = frozenset(
    {
        "none",
        "no",
        "nothing",
        "nope",
        "n a",
        "na",
        "no exclusions",
        "no exclusion",
        "none thanks",
        "no thanks",
        "not applicable",
        "no preference",
        "no preferences",
        "no goals",
        "no themes",
        "none at all",
    }
)

NUMBER_WORDS: Mapping[str, int] = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "fifteen": 15,
    "twenty": 20,
    "twenty five": 25,
    "thirty": 30,
    "a couple of": 2,
    "a couple": 2,
    "a few": 3,
    "a decade": 10,
    "decade": 10,
    "a year": 1,
}

RISK_WORDS: Mapping[str, int] = {
    "very low": 1,
    "very cautious": 1,
    "low": 2,
    "cautious": 2,
    "lowish": 3,
    "medium": 4,
    "moderate": 4,
    "balanced": 4,
    "high": 6,
    "adventurous": 6,
    "very high": 7,
    "very adventurous": 7,
    "aggressive": 7,
}

CAPACITY_WORDS: Mapping[str, str] = {
    "low": "low",
    "limited": "low",
    "small": "low",
    "little": "low",
    "minimal": "low",
    "medium": "medium",
    "moderate": "medium",
    "some": "medium",
    "average": "medium",
    "high": "high",
    "significant": "high",
    "large": "high",
    "substantial": "high",
    "plenty": "high",
}

INSTRUMENT_KEYWORDS: Mapping[str, str] = {
    "fund": "Funds",
    "funds": "Funds",
    "unit trust": "Funds",
    "share": "Shares",
    "shares": "Shares",
    "equities": "Shares",
    "equity": "Shares",
    "stocks": "Shares",
    "bond": "Bonds",
    "bonds": "Bonds",
    "gilts": "Bonds",
    "etf": "ETFs",
    "etfs": "ETFs",
    "pension": "Pensions",
    "pensions": "Pensions",
    "sipp": "Pensions",
    "isa": "ISAs",
    "isas": "ISAs",
    "property": "Property",
    "cash": "Cash",
    "crypto": "Crypto",
    "derivatives": "Derivatives",
    "options": "Derivatives",
}

FREQUENCY_KEYWORDS: Mapping[str, str] = {
    "daily": "daily",
    "every day": "daily",
    "weekly": "weekly",
    "every week": "weekly",
    "monthly": "monthly",
    "every month": "monthly",
    "quarterly": "quarterly",
    "annually": "annually",
    "yearly": "annually",
    "every year": "annually",
    "occasionally": "occasionally",
    "rarely": "rarely",
    "never": "never",
}

FINANCIAL_LABELS: Mapping[str, Tuple[str, ...]] = {
    "income": ("income", "salary", "earnings", "earn"),
    "assets": ("assets", "savings", "wealth", "net worth", "investments"),
    "liabilities": ("liabilities", "liability", "debts", "debt", "mortgage", "loans", "loan"),
}


def normalise(value: Any) -> str:
    """Lowercase ``value`` and fold punctuation and whitespace."""

    text = "" if value is None else str(value)
    return _NON_ALNUM_RE.sub(" ", text.strip().lower()).strip()


def _padded(text: str) -> str:
    return f" {normalise(text)} "


def _contains_phrase(padded_text: str, phrase: str) -> bool:
    return f" {phrase} " in padded_text


def _longest_first(keys: Iterable[str]) -> List[str]:
    return sorted(keys, key=len, reverse=True)


def split_list(text: str) -> List[str]:
    """Split free text on commas, semicolons, newlines or the word "and"."""

    if not text:
        return []
    return [item.strip() for item in _LIST_SPLIT_RE.split(text) if item and item.strip()]


def is_empty_answer(text: str) -> bool:
    """Return ``True`` for replies such as "none" or "no exclusions"."""

    return normalise(text) in NO_ITEMS_PHRASES


def is_affirmative(text: str) -> bool:
    normalized = normalise(text)
    if not normalized:
        return False
    return bool(AFFIRMATIVE_RE.search(normalized)) and not NEGATIVE_RE.search(normalized)


def is_negative(text: str) -> bool:
    normalized = normalise(text)
    if not normalized:
        return False
    return bool(NEGATIVE_RE.search(normalized))


def _as_number(raw: str) -> Number:
    value = float(raw)
    return int(value) if value.is_integer() else value


def parse_exclusions(text: str) -> Optional[List[Dict[str, Any]]]:
    """Parse exclusion preferences into ``{"sector", "threshold"}`` items.

    "none" style answers yield an empty list. ``None`` is returned when no
    sector could be identified at all.
    """

    if not text or not text.strip():
        return None
    if is_empty_answer(text):
        return []
    exclusions: List[Dict[str, Any]] = []
    for item in split_list(text):
        threshold: Optional[Number] = None
        match = _THRESHOLD_RE.search(item)
        sector_text = item
        if match:
            threshold = _as_number(match.group(1))
            sector_text = item[: match.start()] + " " + item[match.end():]
        sector_text = _THRESHOLD_CONNECTORS_RE.sub(" ", sector_text)
        sector = re.sub(r"[\s:=\-–>]+", " ", sector_text).strip(" .:-")
        if not sector:
            continue
        exclusions.append({"sector": sector[0].upper() + sector[1:], "threshold": threshold})
    return exclusions or None


def parse_horizon_years(text: str) -> Optional[Number]:
    """Extract an investment horizon in years."""

    if not text:
        return None
    match = _HORIZON_RE.search(text)
    if match:
        amount = float(match.group(1))
        unit = (match.group(2) or "").lower()
        if unit.startswith("m"):
            amount = round(amount / 12, 1)
        if amount <= 0:
            return None
        return _as_number(str(amount))
    padded = _padded(text)
    for phrase in _longest_first(NUMBER_WORDS):
        if _contains_phrase(padded, phrase):
            years: Number = NUMBER_WORDS[phrase]
            if _contains_phrase(padded, "months"):
                years = round(years / 12, 1)
            return years if years > 0 else None
    return None


def parse_risk_scale(text: str) -> Optional[int]:
    """Map digits (1–7) or qualitative wording onto the 1–7 risk scale."""

    if not text:
        return None
    digits = _SINGLE_DIGIT_RE.findall(text)
    if digits:
        for raw in digits:
            value = int(raw)
            if value in RISK_SCALE:
                return value
        return None
    padded = _padded(text)
    for phrase in _longest_first(RISK_WORDS):
        if _contains_phrase(padded, phrase):
            return RISK_WORDS[phrase]
    return None


def parse_capacity_for_loss(text: str) -> Optional[str]:
    """Qualitative capacity-for-loss match; numbers are ignored."""

    if not text:
        return None
    padded = _padded(re.sub(r"\d+", " ", text))
    for phrase in _longest_first(CAPACITY_WORDS):
        if _contains_phrase(padded, phrase):
            return CAPACITY_WORDS[phrase]
    return None


def parse_choice(
    text: str,
    options: Sequence[str],
    synonyms: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Resolve ``text`` to one of ``options`` by phrase or synonym."""

    if not text:
        return None
    lookup: Dict[str, str] = {}
    for option in options:
        lookup[normalise(option.replace("_", " "))] = option
    for phrase, option in (synonyms or {}).items():
        lookup[normalise(phrase)] = option
    padded = _padded(text)
    for phrase in _longest_first(lookup):
        if phrase and _contains_phrase(padded, phrase):
            return lookup[phrase]
    return None


def _build_alias_index() -> Tuple[Tuple[str, str], ...]:
    entries: List[Tuple[str, str]] = []
    for name in PATHWAY_NAMES:
        for alias in (name, *PATHWAY_ALIASES.get(name, ())):
            normalized = normalise(alias)
            if normalized:
                entries.append((normalized, name))
    entries.sort(key=lambda entry: len(entry[0]), reverse=True)
    return tuple(entries)


PATHWAY_ALIAS_INDEX: Tuple[Tuple[str, str], ...] = _build_alias_index()


def find_pathway_by_alias(fragment: str) -> Optional[str]:
    """Return the first pathway whose alias appears in ``fragment``."""

    padded = _padded(fragment)
    if not padded.strip():
        return None
    for alias, name in PATHWAY_ALIAS_INDEX:
        if _contains_phrase(padded, alias):
            return name
    return None


def find_pathways_in_text(text: str) -> List[str]:
    """Return every pathway mentioned in ``text`` in order of discovery.

    Aliases are tried longest first and each match is consumed so that
    "conventional including esg" does not also count as "conventional".
    """

    padded = _padded(text)
    if not padded.strip():
        return []
    results: List[str] = []
    for alias, name in PATHWAY_ALIAS_INDEX:
        needle = f" {alias} "
        if needle in padded:
            padded = padded.replace(needle, "  ")
            if name not in results:
                results.append(name)
    return results


def parse_allocations(text: str) -> List[Dict[str, Any]]:
    """Parse "Focus 60%, Impact 40%" style allocations."""

    allocations: Dict[str, Dict[str, Any]] = {}
    for chunk in split_list(text or ""):
        match = _ALLOCATION_RE.search(chunk)
        if not match:
            continue
        name = find_pathway_by_alias(chunk)
        if not name:
            continue
        allocations[name] = {"name": name, "allocation_pct": _as_number(match.group(1))}
    return list(allocations.values())


def _scale_amount(raw: str, suffix: Optional[str]) -> Number:
    value = float(raw.replace(",", ""))
    suffix = (suffix or "").lower()
    if suffix in {"k", "thousand"}:
        value *= 1_000
    elif suffix in {"m", "million"}:
        value *= 1_000_000
    return _as_number(str(value))


def parse_financials(text: str) -> Dict[str, Optional[Number]]:
    """Extract income, assets and liabilities figures from free text."""

    figures: Dict[str, Optional[Number]] = {key: None for key in FINANCIAL_LABELS}
    if not text:
        return figures
    for key, labels in FINANCIAL_LABELS.items():
        label_pattern = "|".join(re.escape(label) for label in _longest_first(labels))
        pattern = re.compile(rf"\b(?:{label_pattern})\b{_AMOUNT_PATTERN}", re.IGNORECASE)
        match = pattern.search(text)
        if match:
            figures[key] = _scale_amount(match.group(1), match.group(2))
    return figures


def extract_instruments(text: str) -> List[str]:
    padded = _padded(text)
    found: List[str] = []
    for keyword in _longest_first(INSTRUMENT_KEYWORDS):
        label = INSTRUMENT_KEYWORDS[keyword]
        if _contains_phrase(padded, keyword) and label not in found:
            found.append(label)
    return found


def extract_frequency(text: str) -> str:
    padded = _padded(text)
    for phrase in _longest_first(FREQUENCY_KEYWORDS):
        if _contains_phrase(padded, phrase):
            return FREQUENCY_KEYWORDS[phrase]
    return ""


def extract_duration(text: str) -> str:
    match = _DURATION_RE.search(text or "")
    if not match:
        return ""
    unit = match.group(2).lower()
    unit = "years" if unit.startswith("y") else "months"
    amount = int(match.group(1))
    if amount == 1:
        unit = unit[:-1]
    return f"{amount} {unit}"


def truncate(text: str, length: int = 200) -> str:
    """Shorten ``text`` to ``length`` characters with an ellipsis."""

    if not text or len(text) <= length:
        return text or ""
    return text[: max(0, length - 3)] + "..."
