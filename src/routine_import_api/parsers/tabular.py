"""
Tabular rows to draft.

Shared by the CSV and XLSX parsers. Each row is one exercise; the day
column groups rows into days. Headers are matched against a Spanish/English
alias table, exactly first and then by fuzzy similarity.
"""

import json
import logging
import re
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Tuple

from routine_import_api.constants import DRAFT_VERSION, REPS_SPECIAL_MAX_CHARS, WEEK_DAY_KEYS
from routine_import_api.models import Coverage, Draft, DraftBlock, DraftDay, DraftNode, Presentation
from routine_import_api.parsers.draft_builder import parse_indexed_day
from routine_import_api.parsers.models import ParserContext
from routine_import_api.parsers.name_note import split_meta
from routine_import_api.utils import map_spanish_weekday_to_key, normalize_line, normalize_word, to_confidence

logger = logging.getLogger(__name__)

HEADER_ALIASES = {
    "day": ("day", "dia", "d", "weekday"),
    "exercise": ("exercise", "ejercicio", "nombre"),
    "sets": ("sets", "series"),
    "reps": ("reps", "repes", "repeticiones"),
    "reps_min": ("reps_min", "min", "rep_min"),
    "reps_max": ("reps_max", "max", "rep_max"),
    "note": ("note", "nota", "notas", "notes", "observaciones"),
}

ENGLISH_WEEKDAYS = {key: key for key in WEEK_DAY_KEYS}

FUZZY_MATCH_THRESHOLD = 0.85  # 85% similarity for header matching

RANGE_PATTERN = re.compile(r"^(\d{1,3})\s*[-–]\s*(\d{1,3})$")
WORDED_RANGE_PATTERN = re.compile(r"^de\s+(\d{1,3})\s+a\s+(\d{1,3})$", re.IGNORECASE)
EXACT_PATTERN = re.compile(r"^(\d{1,3})$")
AMRAP_PATTERN = re.compile(r"^amrap$", re.IGNORECASE)
LEADING_INT = re.compile(r"^\s*(\d{1,3})\b")


def detect_header_key(raw: Any) -> str:
    """Canonical column key for a header cell (``Repeticiones`` -> ``reps``)."""
    value = normalize_word(normalize_line(str(raw or "")))
    for key, aliases in HEADER_ALIASES.items():
        if value in aliases:
            return key

    # Fuzzy match using SequenceMatcher, only for headers long enough to be meaningful
    best_key, best_score = None, 0.0
    if len(value) >= 4:
        for key, aliases in HEADER_ALIASES.items():
            for alias in aliases:
                if len(alias) < 4:
                    continue
                similarity = SequenceMatcher(None, value, alias).ratio()
                if similarity >= FUZZY_MATCH_THRESHOLD and similarity > best_score:
                    best_key, best_score = key, similarity
    return best_key or value


def normalize_row(row: Dict[Any, Any]) -> Dict[str, Any]:
    mapped: Dict[str, Any] = {}
    for key, value in row.items():
        if key is None:
            continue
        mapped.setdefault(detect_header_key(key), value)
    return mapped


def cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return normalize_line(str(value))


def _positive_int(value: Any) -> Optional[int]:
    match = LEADING_INT.match(cell_to_text(value))
    if not match:
        return None
    number = int(match.group(1))
    return number if number > 0 else None


def parse_reps_cell(raw: Any) -> Dict[str, Any]:
    """Reps column sub-grammar: ``8-10``, ``de 8 a 10``, ``12``, ``AMRAP`` or free text."""
    value = cell_to_text(raw)
    result = {"reps_min": None, "reps_max": None, "reps_text": None, "reps_mode": "number", "reps_special": None}
    if not value:
        return result

    range_match = RANGE_PATTERN.match(value) or WORDED_RANGE_PATTERN.match(value)
    if range_match:
        reps_min, reps_max = int(range_match.group(1)), int(range_match.group(2))
        if reps_min > 0:
            reps_max = reps_max if reps_max > reps_min else None
            result.update(
                reps_min=reps_min,
                reps_max=reps_max,
                reps_text=f"{reps_min}-{reps_max}" if reps_max else str(reps_min),
            )
            return result

    exact = EXACT_PATTERN.match(value)
    if exact and int(exact.group(1)) > 0:
        result.update(reps_min=int(exact.group(1)), reps_text=exact.group(1))
        return result

    special = "AMRAP" if AMRAP_PATTERN.match(value) else value[:REPS_SPECIAL_MAX_CHARS]
    result.update(reps_mode="special", reps_text=special, reps_special=special)
    return result


def _reps_fields(row: Dict[str, Any]) -> Dict[str, Any]:
    explicit_min = _positive_int(row.get("reps_min"))
    if explicit_min:
        explicit_max = _positive_int(row.get("reps_max"))
        reps_max = explicit_max if explicit_max and explicit_max > explicit_min else None
        return {
            "reps_min": explicit_min,
            "reps_max": reps_max,
            "reps_text": f"{explicit_min}-{reps_max}" if reps_max else str(explicit_min),
            "reps_mode": "number",
            "reps_special": None,
        }
    return parse_reps_cell(row.get("reps"))


def _has_required_fields(node: DraftNode) -> bool:
    if not node.raw_exercise_name or not node.sets:
        return False
    if node.reps_mode == "special":
        return bool(node.reps_special)
    return bool(node.reps_min and node.reps_text)


class TabularDraftBuilder:
    """Groups normalized rows by their day column."""

    def __init__(self, context: ParserContext, confidence_score: float):
        self.context = context
        self.confidence_score = confidence_score
        self._sequence = 0

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}{self._sequence}"

    def row_to_node(self, row: Dict[str, Any], row_index: int) -> Optional[Tuple[str, DraftNode]]:
        day_label = cell_to_text(row.get("day"))
        name = cell_to_text(row.get("exercise"))
        if not name or not day_label:
            return None
        note = cell_to_text(row.get("note")) or None

        confidence = to_confidence(self.confidence_score)
        provenance = {
            "source_page": 1,
            "line_index": row_index,
            "line_span": [row_index, row_index],
            "bbox": None,
            "raw_snippet": json.dumps(row, ensure_ascii=False, default=str)[:500],
        }
        meta = {"confidence": confidence, "provenance": provenance}
        node = DraftNode(
            id=self._next_id("n"),
            source_raw_name=name,
            raw_exercise_name=name,
            sets=_positive_int(row.get("sets")),
            note=note,
            split_meta=split_meta("not_applied", "tabular_note_column") if note else None,
            field_meta={
                "day": meta,
                "name": meta,
                "sets": meta,
                "reps": meta,
                "note": {
                    "confidence": to_confidence(max(0.6, self.confidence_score - 0.15)),
                    "provenance": provenance,
                } if note else None,
            },
            debug={"path": "tabular", "matcher_id": f"{self.context.source_type}_row"},
            **_reps_fields(row),
        )
        return day_label, node

    def build(self, rows: List[Dict[str, Any]]) -> Draft:
        days: Dict[str, DraftDay] = {}
        candidate_rows = parsed_rows = required = 0

        for index, row in enumerate(rows, start=1):
            candidate_rows += 1
            parsed = self.row_to_node(row, index)
            if parsed is None:
                continue
            day_label, node = parsed
            parsed_rows += 1
            if _has_required_fields(node):
                required += 1
            key = day_label.lower()
            if key not in days:
                days[key] = DraftDay(
                    id=self._next_id("d"),
                    source_label=day_label,
                    mapped_day_key=map_spanish_weekday_to_key(day_label) or ENGLISH_WEEKDAYS.get(key),
                    blocks=[DraftBlock(id=self._next_id("b"), block_type="single")],
                )
            days[key].blocks[0].nodes.append(node)

        draft_days = list(days.values())
        mode = self._resolve_indexed_days(draft_days)
        exercises = sum(len(day.blocks[0].nodes) for day in draft_days)
        logger.info(
            "Built %s draft from %d rows: %d days, %d exercises",
            self.context.source_type,
            candidate_rows,
            len(draft_days),
            exercises,
        )
        return Draft(
            version=DRAFT_VERSION,
            source_type=self.context.source_type,
            parser_version=self.context.parser_version,
            ruleset_version=self.context.ruleset_version,
            extractor_version=self.context.extractor_version,
            coverage=Coverage(
                days_detected=len(draft_days),
                exercises_parsed=exercises,
                candidate_lines=candidate_rows,
                parsed_lines=parsed_rows,
                parseable_ratio=round(parsed_rows / candidate_rows, 4) if candidate_rows else 0,
                required_fields_ratio=round(required / parsed_rows, 4) if parsed_rows else 0,
                lines_in=candidate_rows,
                lines_after_split=candidate_rows,
                lines_with_prescription_detected=parsed_rows,
                exercise_nodes_out=exercises,
            ),
            presentation=Presentation(day_label_mode=mode),
            days=draft_days,
        )

    def _resolve_indexed_days(self, days: List[DraftDay]) -> str:
        """``Día 1``/``Día 2`` day columns map positionally when no weekday names appear."""
        if not days or any(day.mapped_day_key for day in days):
            return "weekday"
        indexes = [parse_indexed_day(day.source_label) for day in days]
        if not all(indexes) or len(set(indexes)) != len(indexes):
            return "weekday"
        for day, index in zip(days, indexes):
            if index <= len(WEEK_DAY_KEYS):
                day.mapped_day_key = WEEK_DAY_KEYS[index - 1]
        return "sequential"


def rows_to_draft(rows: List[Dict[str, Any]], context: ParserContext, confidence_score: float) -> Draft:
    return TabularDraftBuilder(context, confidence_score).build(rows)
