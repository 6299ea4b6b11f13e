"""
Multi-exercise line splitter.

Some coaches write several exercises on one line:

    Vuelos Laterales (3x12)Vuelos Posteriores (3x12)
    Sentadilla 3x8 y Press banca 4x10
    Sentadilla 3x8 tempo lento, press banca 4x10

The splitter cuts such lines into one segment per exercise before matching.
When a line clearly holds more than one prescription but no cut can be
validated, it is kept whole and flagged as unresolved.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from routine_import_api.parsers.contract_matchers import parse_contract_candidate
from routine_import_api.parsers.legacy_matchers import parse_legacy_line
from routine_import_api.utils import compact_whitespace

logger = logging.getLogger(__name__)

_WORD_NUMBERS = r"(?:un|una|dos|tres|cuatro|cinco|seis|siete|ocho|nueve|diez|once|doce|quince)"

PRESCRIPTION_SPAN_PATTERN = re.compile(
    r"\d{1,2}\s*(?:x|\*|×|por)\s*\d{1,3}(?:\s*(?:-|–|a)\s*\d{1,3})?"
    r"|\d{1,2}\s+series\s+(?:de\s+|x\s*)?\d{1,3}"
    rf"|\b{_WORD_NUMBERS}\s+series\s+de\s+(?:\d{{1,3}}|{_WORD_NUMBERS})\b",
    re.IGNORECASE,
)

# Lines that look like several prescriptions but describe a single one
_REP_LIST = re.compile(r"\b\d{1,3}\s*,\s*\d{1,3}\s*,\s*\d{1,3}\b")
_LOAD_LADDER = re.compile(
    r"\b\d+(?:[.,]\d+)?\s*(?:kg|lb|lbs)?\s*[xX*]\s*\d+\s*,\s*\d+(?:[.,]\d+)?\s*(?:kg|lb|lbs)?\s*[xX*]\s*\d+"
)
_TEMPO_WORD = re.compile(r"\btempo\b", re.IGNORECASE)
_TEMPO_DIGITS = re.compile(r"\b\d\s*-\s*\d\s*-\s*\d\b")

_PAREN_BOUNDARY = re.compile(r"(?<=\))\s*(?=[A-Za-zÁÉÍÓÚÑáéíóúñ])")
_SEPARATORS = (re.compile(r"\s+y\s+", re.IGNORECASE), re.compile(r"\s*;\s*"))

_GAP_PUNCTUATION = set(",;:)(]/|•·+-–—")
_GAP_WORD = re.compile(r"[A-Za-zÁÉÍÓÚÜÑáéíóúüñ]+")
_LEADING_CONNECTORS = frozenset({"y", "e", "luego", "despues", "después", "mas", "más", "con"})


@dataclass
class SplitResult:
    segments: List[str] = field(default_factory=list)
    unresolved: bool = False
    stage: Optional[str] = None

    @property
    def splits_applied(self) -> int:
        return max(0, len(self.segments) - 1) if self.stage else 0


def _parses(segment: str) -> bool:
    return parse_contract_candidate(segment) is not None or parse_legacy_line(segment) is not None


def _keep_whole(compact: str) -> bool:
    if _REP_LIST.search(compact) or _LOAD_LADDER.search(compact):
        return True
    return bool(_TEMPO_WORD.search(compact) and _TEMPO_DIGITS.search(compact))


def _next_name_start(line: str, gap_start: int, gap_end: int) -> Optional[int]:
    """Offset where the next exercise name starts inside a gap, if any."""
    gap = line[gap_start:gap_end]
    cut = 0
    for index, char in enumerate(gap):
        if char in _GAP_PUNCTUATION:
            cut = index + 1
    words = list(_GAP_WORD.finditer(gap, cut))
    while words and words[0].group(0).lower() in _LEADING_CONNECTORS:
        words.pop(0)
    if not words:
        return None
    capitalized = [match for match in words if match.group(0)[0].isupper()]
    chosen = capitalized[0] if capitalized else words[0]
    return gap_start + chosen.start()


def _split_between_spans(line: str, spans) -> Optional[List[str]]:
    cuts = []
    for left, right in zip(spans, spans[1:]):
        start = _next_name_start(line, left.end(), right.start())
        if start is None:
            return None
        cuts.append(start)
    bounds = [0] + cuts + [len(line)]
    segments = [line[a:b].strip() for a, b in zip(bounds, bounds[1:])]
    if any(not segment for segment in segments):
        return None
    return segments


def split_multi_exercise_line(line: str) -> SplitResult:
    raw = line.strip()
    if not raw:
        return SplitResult()
    compact = compact_whitespace(raw)
    if _keep_whole(compact):
        return SplitResult(segments=[raw])

    by_paren = [segment.strip() for segment in _PAREN_BOUNDARY.split(raw) if segment.strip()]
    if len(by_paren) > 1 and all(_parses(segment) for segment in by_paren):
        return SplitResult(segments=by_paren, stage="parenthesis")

    for separator in _SEPARATORS:
        pieces = [segment.strip() for segment in separator.split(raw) if segment.strip()]
        if len(pieces) >= 2 and all(_parses(segment) for segment in pieces):
            return SplitResult(segments=pieces, stage="separator")

    spans = list(PRESCRIPTION_SPAN_PATTERN.finditer(raw))
    if len(spans) < 2:
        return SplitResult(segments=[raw])

    segments = _split_between_spans(raw, spans)
    if segments and all(_parses(segment) for segment in segments):
        return SplitResult(segments=segments, stage="gap")

    logger.info("Could not segment multi-exercise line: %r", raw[:80])
    return SplitResult(segments=[raw], unresolved=True)
