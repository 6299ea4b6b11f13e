"""
Draft builder.

Walks the lines of a source in order and folds them into a ``Draft``:
day headings open days, circuit/superset headings open grouped blocks,
``Name:`` headings followed by ``weight x reps`` lines become load ladders,
and every other line is split, matched and turned into a ``DraftNode``.

The fold state is explicit on the builder: the current day, the open
block context (circuit, superset or ladder, pending until it proves itself
with two entries), and the last node, which receives wrapped note lines.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError

from routine_import_api.constants import (
    CONTRACT_CONFIDENCE,
    DRAFT_VERSION,
    LAYOUT_CONFIDENCE_PENALTY,
    LEGACY_CONFIDENCE,
    REPS_SPECIAL_MAX_CHARS,
    WEEK_DAY_KEYS,
)
from routine_import_api.models import (
    Coverage,
    Draft,
    DraftBlock,
    DraftDay,
    DraftNode,
    FieldMeta,
    Presentation,
    SplitMeta,
)
from routine_import_api.parsers.contract_matchers import (
    make_shape,
    parse_circuit_entry,
    parse_contract_candidate,
    parse_ladder_entries,
    split_circuit_segments,
    with_heuristic,
)
from routine_import_api.parsers.legacy_matchers import parse_legacy_line
from routine_import_api.parsers.line_splitter import split_multi_exercise_line
from routine_import_api.parsers.models import ContractCandidate, LegacyMatch, ParsedLine, ParserContext
from routine_import_api.parsers.name_note import (
    clean_note,
    looks_like_note_continuation,
    resolve_name_and_note,
    sanitize_exercise_name,
    split_meta,
)
from routine_import_api.utils import (
    compact_whitespace,
    make_provenance,
    map_spanish_weekday_to_key,
    normalize_word,
    sanitize_custom_label,
    to_confidence,
)

logger = logging.getLogger(__name__)

DAY_HEADING_PATTERN = re.compile(
    r"^(lunes|martes|mi[eé]rcoles|jueves|viernes|s[aá]bado|domingo|d[ií]a\s*\d+|day\s*\d+)\b\s*:?\s*(.*)?$",
    re.IGNORECASE,
)
CUSTOM_DAY_HEADING_PATTERN = re.compile(r"^(d[ií]a|day)\s+([^:]+?)(?:\s*:\s*(.*))?$", re.IGNORECASE)
SUPERSET_HEADING_PATTERN = re.compile(
    r"^(?:superset|super\s*set|superserie|super\s*serie|serie\s+gigante)"
    r"(?:\s*(?:x\s*(\d{1,2})|(\d{1,2})\s*vueltas?|#?\s*(\d{1,2})))?\b\s*:?\s*(.*)?$",
    re.IGNORECASE,
)
CIRCUIT_HEADING_PATTERN = re.compile(
    r"^circuito(?:\s*x?\s*(\d{1,2})\s*(?:vueltas?)?)?\b\s*:?\s*(.*)?$", re.IGNORECASE
)
LOAD_HEADING_PATTERN = re.compile(r"^([^:]{2,80}):\s*(.*)$")
LOAD_HEADING_EXCLUDED = re.compile(
    r"^(?:hoy\s+hacemos|despues|después|finalizamos\s+con|hoy|notas?|obs|observaciones|descanso)$", re.IGNORECASE
)
NOISE_PATTERN = re.compile(
    r"^(rutina|semana|objetivo|total|resumen|importar|paso\s*\d+|bloque\s*\d+)\b", re.IGNORECASE
)
RULE_PATTERN = re.compile(r"^[-–—=]{3,}$")
INDEXED_DAY_PATTERN = re.compile(r"^(?:dia|day)\s*(\d{1,2})")
PARENTHETICAL_PATTERN = re.compile(r"^\(.*\)\s*:?$")
NOTE_LABEL_PATTERN = re.compile(r"^nota\s*:?$", re.IGNORECASE)
GLUED_UNIT_PATTERN = re.compile(r"^(s|seg|sec|min|mins|m)\b", re.IGNORECASE)
TRAILING_DIGITS = re.compile(r"\d+$")

CIRCUIT_COMMENT_PATTERNS = (
    re.compile(r"^descanso\b", re.IGNORECASE),
    re.compile(r"^nota\b", re.IGNORECASE),
    re.compile(r"^\d{1,2}:\d{2}\b"),
    re.compile(r"^\d{1,3}\s*(?:s|seg|sec|min|m)\b", re.IGNORECASE),
)

INVARIANT_FAILURE_CONFIDENCE = 0.45
LEGACY_NOTE_CONFIDENCE = 0.55
NAME_CONFIDENCE_DELTAS = {"none": 0.0, "medium": 0.1, "low": 0.25}


# ============================================================================
# Heading grammar
# ============================================================================

@dataclass
class DayHeading:
    label: str
    mapped: Optional[str]
    kind: str  # weekday | indexed | custom
    rest: str = ""
    index: Optional[int] = None


@dataclass
class BlockHeading:
    kind: str  # circuit | superset
    rounds: int
    header_text: str
    rest: str = ""


def parse_indexed_day(value: str) -> Optional[int]:
    match = INDEXED_DAY_PATTERN.match(normalize_word(value))
    if not match:
        return None
    index = int(match.group(1))
    return index if index >= 1 else None


def parse_day_heading(line: str) -> Optional[DayHeading]:
    """``Lunes``, ``Día 2 (Empuje):``, ``Day 3: Press 3x8`` or ``Día de piernas``."""
    text = line.strip()
    match = DAY_HEADING_PATTERN.match(text)
    if match:
        token = compact_whitespace(match.group(1))
        rest = (match.group(2) or "").strip()
        label = token
        if rest and PARENTHETICAL_PATTERN.match(rest):
            label = f"{token} {rest.rstrip(':').strip()}"
            rest = ""
        weekday = map_spanish_weekday_to_key(token)
        if weekday:
            return DayHeading(label=label, mapped=weekday, kind="weekday", rest=rest)
        index = parse_indexed_day(token)
        if index:
            mapped = WEEK_DAY_KEYS[index - 1] if index <= len(WEEK_DAY_KEYS) else None
            return DayHeading(label=label, mapped=mapped, kind="indexed", rest=rest, index=index)

    custom = CUSTOM_DAY_HEADING_PATTERN.match(text)
    if not custom:
        return None
    custom_label = compact_whitespace(custom.group(2) or "")
    if not custom_label:
        return None
    return DayHeading(
        label=compact_whitespace(f"{custom.group(1)} {custom_label}"),
        mapped=None,
        kind="custom",
        rest=(custom.group(3) or "").strip(),
    )


def parse_superset_heading(line: str) -> Optional[BlockHeading]:
    match = SUPERSET_HEADING_PATTERN.match(line.strip())
    if not match:
        return None
    raw_rounds = match.group(1) or match.group(2)
    rounds = int(raw_rounds) if raw_rounds and int(raw_rounds) > 0 else 1
    return BlockHeading("superset", rounds, line.strip(), (match.group(4) or "").strip())


def parse_circuit_heading(line: str) -> Optional[BlockHeading]:
    match = CIRCUIT_HEADING_PATTERN.match(line.strip())
    if not match:
        return None
    rounds = int(match.group(1)) if match.group(1) and int(match.group(1)) > 0 else 1
    return BlockHeading("circuit", rounds, line.strip(), (match.group(2) or "").strip())


def parse_load_heading(line: str) -> Optional[str]:
    """``Press banca:`` alone on a line opens a load ladder."""
    match = LOAD_HEADING_PATTERN.match(line.strip())
    if not match or match.group(2).strip():
        return None
    header = sanitize_exercise_name(match.group(1), strip_imperatives=False)
    if not header or LOAD_HEADING_EXCLUDED.match(header):
        return None
    if parse_day_heading(header) or parse_circuit_heading(header) or parse_superset_heading(header):
        return None
    return header


def is_noise_line(line: str) -> bool:
    text = line.strip()
    return not text or bool(NOISE_PATTERN.match(text)) or bool(RULE_PATTERN.match(text))


def is_circuit_comment_line(line: str) -> bool:
    text = line.strip()
    return not text or any(pattern.match(text) for pattern in CIRCUIT_COMMENT_PATTERNS)


def append_block_note(current: Optional[str], line: str) -> Optional[str]:
    """Join circuit comment lines with `` · ``, ignoring repeats and bare ``nota:``."""
    value = (line or "").strip()
    if not value or NOTE_LABEL_PATTERN.match(value):
        return current
    if not current:
        return value
    if current.lower() == value.lower():
        return current
    return f"{current} · {value}"


# ============================================================================
# Shapes to node fields
# ============================================================================

def _reps_text(reps_min: Optional[int], reps_max: Optional[int]) -> Optional[str]:
    if not reps_min or reps_min <= 0:
        return None
    if reps_max and reps_max > reps_min:
        return f"{reps_min}-{reps_max}"
    return str(reps_min)


def shape_to_fields(shape: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a prescription shape into the node's editable fields."""
    kind = shape["kind"]
    if kind in ("fixed", "range"):
        reps_max = shape.get("reps_max") if kind == "range" else None
        return {
            "sets": shape["sets"],
            "reps_mode": "number",
            "reps_min": shape["reps_min"],
            "reps_max": reps_max,
            "reps_text": _reps_text(shape["reps_min"], reps_max),
            "reps_special": None,
        }
    if kind == "scheme":
        special = "-".join(str(value) for value in shape["reps_list"])[:REPS_SPECIAL_MAX_CHARS]
        return {
            "sets": shape["sets"],
            "reps_mode": "special",
            "reps_min": None,
            "reps_max": None,
            "reps_text": special,
            "reps_special": special,
        }
    if kind == "amrap":
        return {
            "sets": shape["sets"],
            "reps_mode": "special",
            "reps_min": None,
            "reps_max": None,
            "reps_text": "AMRAP",
            "reps_special": "AMRAP",
        }
    reps = [entry["reps"] for entry in shape["load_entries"]]
    reps_min, reps_max = min(reps), max(reps)
    reps_max = reps_max if reps_max > reps_min else None
    return {
        "sets": len(reps),
        "reps_mode": "number",
        "reps_min": reps_min,
        "reps_max": reps_max,
        "reps_text": _reps_text(reps_min, reps_max),
        "reps_special": None,
    }


def has_required_fields(node: DraftNode) -> bool:
    if not node.raw_exercise_name or not node.sets:
        return False
    if node.reps_mode == "special":
        return bool((node.reps_special or "").strip())
    return bool(node.reps_min and node.reps_text)


# ============================================================================
# Fold state
# ============================================================================

@dataclass
class LineUnit:
    id: str
    raw: str
    line_index: int
    source_page: Optional[int] = None
    source_kind: str = "input"  # input | synthetic | rollback
    skip_context_open: bool = False

    def as_line(self) -> ParsedLine:
        return ParsedLine(text=self.raw, line_index=self.line_index, source_page=self.source_page)


@dataclass
class Counters:
    lines_in: int = 0
    candidate_lines: int = 0
    parsed_lines: int = 0
    required_fields_completed: int = 0
    lines_with_prescription_detected: int = 0
    multi_exercise_splits_applied: int = 0
    unresolved_multi_exercise_lines: int = 0
    contract_lines_total: int = 0
    contract_lines_parsed: int = 0
    contract_lines_failed_invariants: int = 0
    legacy_fallback_hits: int = 0


@dataclass
class _Block:
    id: str
    block_type: str
    nodes: List[DraftNode] = field(default_factory=list)


@dataclass
class _Day:
    id: str
    label: str
    mapped: Optional[str]
    kind: Optional[str]
    index: Optional[int] = None
    blocks: List[_Block] = field(default_factory=list)

    @property
    def node_count(self) -> int:
        return sum(len(block.nodes) for block in self.blocks)


@dataclass
class BlockState:
    """An open circuit or superset; ``pending`` until it holds two entries."""
    kind: str
    header_unit_id: str
    header_text: str
    rounds: int
    block: _Block
    pending: bool = True
    note: Optional[str] = None
    buffer: List[LineUnit] = field(default_factory=list)
    entries: List[Tuple[ParsedLine, Dict[str, Any]]] = field(default_factory=list)
    held: List[LineUnit] = field(default_factory=list)


@dataclass
class LadderState:
    header_unit_id: str
    header_text: str
    header_line: ParsedLine
    pending: bool = True
    buffer: List[LineUnit] = field(default_factory=list)
    entries: List[Dict[str, Any]] = field(default_factory=list)


class DraftBuilder:
    """Folds parsed lines into a ``Draft``. One instance per source."""

    def __init__(self, context: ParserContext):
        self.context = context
        self.counters = Counters()
        self._sequence = 0
        self.fallback_day = _Day(id=self._next_id("d"), label="Día 1", mapped="monday", kind=None)
        self.days: List[_Day] = [self.fallback_day]
        self.current_day = self.fallback_day
        self.last_node: Optional[DraftNode] = None
        self.state = None
        self._reopened: set = set()
        self._queue: Deque[LineUnit] = deque()

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}{self._sequence}"

    # ------------------------------------------------------------------
    # Confidence and node construction
    # ------------------------------------------------------------------

    def _base_score(self, score: float) -> float:
        if self.context.degrade_confidence_for_layout:
            return max(0.0, score - LAYOUT_CONFIDENCE_PENALTY)
        return score

    def _field_meta(
        self,
        line: ParsedLine,
        score: float,
        has_note: bool,
        name_delta: str = "none",
        note_score: Optional[float] = None,
    ) -> Dict[str, Any]:
        score = self._base_score(score)
        provenance = make_provenance(line.text, line.line_index, line.source_page)
        meta = {"confidence": to_confidence(score), "provenance": provenance}
        name_score = score - NAME_CONFIDENCE_DELTAS.get(name_delta, 0.0)
        note_value = note_score if note_score is not None else max(0.35, score - 0.2)
        return {
            "day": meta,
            "name": {"confidence": to_confidence(name_score), "provenance": provenance},
            "sets": meta,
            "reps": meta,
            "note": {"confidence": to_confidence(note_value), "provenance": provenance} if has_note else None,
        }

    def _note_only_node(self, line: ParsedLine, segment: str) -> DraftNode:
        name = sanitize_exercise_name(segment) or segment.strip()
        note = clean_note(segment)
        return DraftNode(
            id=self._next_id("n"),
            source_raw_name=name,
            raw_exercise_name=name,
            note=note,
            split_meta=split_meta("not_applied", "invariant_failure_note_only") if note else None,
            field_meta=self._field_meta(line, INVARIANT_FAILURE_CONFIDENCE, bool(note)),
            debug={"path": "contract", "struct_tokens_used_count": 0},
        )

    def _build_node(
        self,
        line: ParsedLine,
        segment: str,
        name: str,
        shape: Dict[str, Any],
        path: str,
        matcher_id: Optional[str],
        refs_used: int = 0,
        note: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        note_score: Optional[float] = None,
    ) -> DraftNode:
        score = CONTRACT_CONFIDENCE if path == "contract" else LEGACY_CONFIDENCE
        delta = (meta or {}).get("confidence_delta", "none")
        try:
            return DraftNode(
                id=self._next_id("n"),
                source_raw_name=name,
                raw_exercise_name=name,
                note=note,
                parsed_shape=shape,
                split_meta=meta,
                field_meta=self._field_meta(line, score, bool(note), delta, note_score),
                debug={"path": path, "matcher_id": matcher_id, "struct_tokens_used_count": refs_used},
                **shape_to_fields(shape),
            )
        except ValidationError as exc:
            self.counters.contract_lines_failed_invariants += 1
            logger.warning("Prescription invariant failed for %r: %s", segment[:80], exc.errors()[:1])
            return self._note_only_node(line, segment)

    def _node_from_contract(self, line: ParsedLine, segment: str, candidate: ContractCandidate) -> DraftNode:
        shape = dict(candidate.shape)
        name_span = segment[candidate.name_start:candidate.name_end]
        trailing = segment[candidate.note_start:]
        captured = ""
        if candidate.note_start == candidate.structure_end:
            captured = segment[candidate.name_end:candidate.structure_end]
        glued = None
        unit = GLUED_UNIT_PATTERN.match(trailing)
        reps_digits = TRAILING_DIGITS.search(segment[:candidate.structure_end])
        if unit and reps_digits and shape["kind"] in ("fixed", "range"):
            glued = reps_digits.group(0) + unit.group(0)
            trailing = trailing[unit.end():]
        resolution = resolve_name_and_note(name_span, candidate.name, trailing, captured, glued)
        return self._build_node(
            line,
            segment,
            resolution.name or candidate.name,
            shape,
            "contract",
            candidate.matcher_id,
            len(candidate.refs),
            resolution.note,
            resolution.split_meta,
        )

    def _node_from_legacy(self, line: ParsedLine, segment: str, legacy: LegacyMatch) -> DraftNode:
        resolution = resolve_name_and_note(legacy.name, legacy.name, segment.strip()[legacy.structure_end:])
        return self._build_node(
            line,
            segment,
            resolution.name or legacy.name,
            legacy.shape,
            "legacy",
            "legacy_regex",
            note=resolution.note,
            meta=resolution.split_meta,
            note_score=LEGACY_NOTE_CONFIDENCE,
        )

    # ------------------------------------------------------------------
    # Days and blocks
    # ------------------------------------------------------------------

    def _open_block(self, block_type: str) -> _Block:
        block = _Block(id=self._next_id("b"), block_type=block_type)
        self.current_day.blocks.append(block)
        return block

    def _single_block(self) -> _Block:
        blocks = self.current_day.blocks
        if blocks and blocks[-1].block_type == "single":
            return blocks[-1]
        return self._open_block("single")

    def _append_node(self, block: _Block, node: DraftNode, counted: bool = True) -> None:
        block.nodes.append(node)
        self.last_node = node
        if not counted:
            return
        self.counters.parsed_lines += 1
        self.counters.lines_with_prescription_detected += 1
        if has_required_fields(node):
            self.counters.required_fields_completed += 1

    def _start_day(self, heading: DayHeading) -> None:
        day = _Day(
            id=self._next_id("d"),
            label=heading.label,
            mapped=heading.mapped,
            kind=heading.kind,
            index=heading.index,
        )
        self.days.append(day)
        self.current_day = day
        self.last_node = None

    # ------------------------------------------------------------------
    # Queue helpers
    # ------------------------------------------------------------------

    def _requeue(self, unit: LineUnit, skip_context_open: bool = False) -> None:
        if skip_context_open:
            unit = LineUnit(
                id=unit.id,
                raw=unit.raw,
                line_index=unit.line_index,
                source_page=unit.source_page,
                source_kind="rollback",
                skip_context_open=True,
            )
        self._queue.appendleft(unit)

    def _rollback(self, buffered: List[LineUnit]) -> None:
        for unit in reversed(buffered):
            self._requeue(unit, skip_context_open=True)

    def _queue_inline(self, unit: LineUnit, rest: str) -> None:
        value = (rest or "").strip()
        if not value:
            return
        self._queue.appendleft(
            LineUnit(
                id=self._next_id("u"),
                raw=value,
                line_index=unit.line_index,
                source_page=unit.source_page,
                source_kind="synthetic",
                skip_context_open=True,
            )
        )

    # ------------------------------------------------------------------
    # Circuit / superset blocks
    # ------------------------------------------------------------------

    def _block_context(self, state: BlockState, position: int) -> Dict[str, Any]:
        if state.kind == "circuit":
            return {
                "kind": "circuit",
                "rounds": state.rounds,
                "header_text": state.header_text,
                "header_unit_id": state.header_unit_id,
            }
        return {
            "kind": "superset",
            "group_id": state.header_unit_id,
            "index": position,
            "header_text": state.header_text,
            "header_unit_id": state.header_unit_id,
        }

    def _parse_block_line(self, text: str, rounds: int):
        if is_circuit_comment_line(text):
            return "noise", []
        segments = split_circuit_segments(text)
        if not segments:
            return "noise", []
        entries = []
        for segment in segments:
            parsed = parse_circuit_entry(segment)
            if parsed is None:
                return "invalid", []
            shape = parsed["shape"]
            if shape["kind"] == "fixed" and "circuit_grouped" in shape.get("inference_reasons", []):
                shape = with_heuristic({**shape, "sets": rounds}, "circuit_grouped")
            entries.append({"name": parsed["name"], "shape": shape})
        return "valid", entries

    def _apply_block_note(self, node: DraftNode, note: Optional[str]) -> None:
        if not note:
            return
        node.note = note
        if node.field_meta.note is None:
            score = max(0.35, node.field_meta.reps.confidence.score - 0.2)
            node.field_meta.note = FieldMeta(
                confidence=to_confidence(score), provenance=node.field_meta.reps.provenance
            )
        if node.split_meta is None:
            node.split_meta = SplitMeta(**split_meta("split_kept", "circuit_block_note"))

    def _emit_block_entries(self, state: BlockState, entries) -> None:
        if not state.block.nodes:
            self.current_day.blocks.append(state.block)
        for line, entry in entries:
            self.counters.candidate_lines += 1
            self.counters.contract_lines_total += 1
            self.counters.contract_lines_parsed += 1
            shape = {**entry["shape"], "block": self._block_context(state, len(state.block.nodes) + 1)}
            node = self._build_node(line, line.text, entry["name"], shape, "contract", f"{state.kind}_entry")
            self._apply_block_note(node, state.note)
            self._append_node(state.block, node)

    def _flush_held(self, state: BlockState) -> None:
        for unit in state.held:
            state.note = append_block_note(state.note, unit.raw)
        for node in state.block.nodes:
            self._apply_block_note(node, state.note)
        state.held = []

    def _step_block(self, unit: LineUnit, text: str, opens_context: bool) -> None:
        state: BlockState = self.state
        if opens_context:
            if state.pending:
                self._requeue(unit)
                self._rollback(state.buffer)
            else:
                self._flush_held(state)
                self._requeue(unit)
            self.state = None
            return

        outcome, entries = self._parse_block_line(text, state.rounds)
        line = unit.as_line()

        if outcome == "valid":
            if state.pending:
                state.buffer.append(unit)
                state.entries.extend((line, entry) for entry in entries)
                if len(state.entries) >= 2:
                    state.pending = False
                    self._emit_block_entries(state, state.entries)
                    state.entries = []
                    state.buffer = []
            else:
                if state.held:
                    self._flush_held(state)
                self._emit_block_entries(state, [(line, entry) for entry in entries])
            return

        if outcome == "noise":
            state.note = append_block_note(state.note, text)
            for node in state.block.nodes:
                self._apply_block_note(node, state.note)
            if state.pending:
                state.buffer.append(unit)
            return

        if state.pending:
            state.buffer.append(unit)
            self._rollback(state.buffer)
            self.state = None
            return

        state.held.append(unit)
        if len(state.held) >= 2:
            held, state.held = state.held, []
            for node in state.block.nodes:
                self._apply_block_note(node, state.note)
            self.state = None
            self._rollback(held)

    # ------------------------------------------------------------------
    # Load ladders
    # ------------------------------------------------------------------

    def _finish_ladder(self, state: LadderState) -> None:
        shape = make_shape(
            "load_ladder",
            "heuristic",
            ["ladder_grouped"],
            load_entries=[dict(entry) for entry in state.entries],
        )
        self.counters.candidate_lines += 1
        self.counters.contract_lines_total += 1
        self.counters.contract_lines_parsed += 1
        node = self._build_node(
            state.header_line, state.header_text, state.header_text, shape, "contract", "load_ladder"
        )
        self._append_node(self._single_block(), node)

    def _step_ladder(self, unit: LineUnit, text: str, opens_context: bool) -> None:
        state: LadderState = self.state
        if opens_context:
            if state.pending:
                self._requeue(unit)
                self._rollback(state.buffer)
            else:
                self._finish_ladder(state)
                self._requeue(unit)
            self.state = None
            return

        # Ladder lines start with a weight; "Sentadilla 4x8" ends the ladder
        entries = parse_ladder_entries(text) if text[:1].isdigit() else []
        if entries:
            state.entries.extend(entries)
            if state.pending:
                state.buffer.append(unit)
                if len(state.entries) >= 2:
                    state.pending = False
                    state.buffer = []
            return

        self.state = None
        if state.pending:
            state.buffer.append(unit)
            self._rollback(state.buffer)
            return
        self._finish_ladder(state)
        self._requeue(unit, skip_context_open=True)

    # ------------------------------------------------------------------
    # Plain lines
    # ------------------------------------------------------------------

    def _parse_segment(self, line: ParsedLine, segment: str) -> Optional[DraftNode]:
        candidate = parse_contract_candidate(segment)
        if candidate is not None:
            self.counters.contract_lines_total += 1
            node = self._node_from_contract(line, segment, candidate)
            if node.parsed_shape is not None:
                self.counters.contract_lines_parsed += 1
            return node
        legacy = parse_legacy_line(segment)
        if legacy is not None:
            self.counters.contract_lines_total += 1
            self.counters.legacy_fallback_hits += 1
            return self._node_from_legacy(line, segment, legacy)
        return None

    def _append_continuation(self, text: str) -> None:
        node = self.last_node
        addition = clean_note(text) or text.strip()
        node.note = f"{node.note} {addition}" if node.note else addition
        if node.field_meta.note is None:
            score = max(0.35, node.field_meta.reps.confidence.score - 0.2)
            node.field_meta.note = FieldMeta(
                confidence=to_confidence(score), provenance=node.field_meta.reps.provenance
            )
        if node.split_meta is None:
            node.split_meta = SplitMeta(**split_meta("split_kept", "note_continuation_line"))

    def _step_plain(self, unit: LineUnit, text: str) -> None:
        self.counters.lines_in += 1
        split = split_multi_exercise_line(text)
        self.counters.multi_exercise_splits_applied += split.splits_applied
        if split.unresolved:
            self.counters.unresolved_multi_exercise_lines += 1

        line = unit.as_line()
        for segment in split.segments:
            node = self._parse_segment(line, segment)
            if node is None:
                if (
                    len(split.segments) == 1
                    and self.last_node is not None
                    and looks_like_note_continuation(segment)
                ):
                    self._append_continuation(segment)
                    continue
                self.counters.candidate_lines += 1
                self.counters.contract_lines_total += 1
                continue
            self.counters.candidate_lines += 1
            counted = node.parsed_shape is not None
            self._append_node(self._single_block(), node, counted=counted)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _step(self, unit: LineUnit) -> None:
        text = unit.raw.strip()
        if not text:
            return

        day_heading = parse_day_heading(text)
        circuit = parse_circuit_heading(text) if not unit.skip_context_open else None
        superset = parse_superset_heading(text) if not unit.skip_context_open else None
        load = parse_load_heading(text) if not unit.skip_context_open else None
        opens_context = bool(day_heading or circuit or superset or load)

        if isinstance(self.state, BlockState):
            self._step_block(unit, text, opens_context)
            return
        if isinstance(self.state, LadderState):
            self._step_ladder(unit, text, opens_context)
            return

        if day_heading:
            self._start_day(day_heading)
            self._queue_inline(unit, day_heading.rest)
            return

        if is_noise_line(text):
            return

        block_heading = circuit or superset
        if block_heading and unit.id not in self._reopened:
            self._reopened.add(unit.id)
            self.state = BlockState(
                kind=block_heading.kind,
                header_unit_id=unit.id,
                header_text=block_heading.header_text,
                rounds=block_heading.rounds,
                block=_Block(id=self._next_id("b"), block_type=block_heading.kind),
            )
            self.last_node = None
            self._queue_inline(unit, block_heading.rest)
            return

        if load and unit.id not in self._reopened:
            self._reopened.add(unit.id)
            self.state = LadderState(header_unit_id=unit.id, header_text=load, header_line=unit.as_line())
            return

        self._step_plain(unit, text)

    def build(self, lines: List[ParsedLine]) -> Draft:
        self._queue = deque(
            LineUnit(
                id=self._next_id("u"),
                raw=line.text,
                line_index=line.line_index,
                source_page=line.source_page,
            )
            for line in lines
        )
        self._drain()
        while self.state is not None:
            state, self.state = self.state, None
            if state.pending:
                self._rollback(state.buffer)
                self._drain()
            elif isinstance(state, LadderState):
                self._finish_ladder(state)
            else:
                self._flush_held(state)
        return self._assemble()

    def _drain(self) -> None:
        while self._queue:
            self._step(self._queue.popleft())

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _resolve_indexed_days(self, days: List[_Day]) -> None:
        """Drop positional ``Día N`` mappings that would be ambiguous."""
        indexed = [day for day in days if day.kind == "indexed"]
        if not indexed:
            return
        has_weekdays = any(day.kind == "weekday" for day in days)
        seen: Dict[int, int] = {}
        for day in indexed:
            seen[day.index] = seen.get(day.index, 0) + 1
        for day in indexed:
            if has_weekdays or seen[day.index] > 1:
                day.mapped = None

    def _assemble(self) -> Draft:
        heading_days = [day for day in self.days if day is not self.fallback_day]
        self._resolve_indexed_days(heading_days)

        kinds = [day.kind for day in heading_days]
        if "custom" in kinds:
            mode = "custom"
        elif "indexed" in kinds and "weekday" not in kinds:
            mode = "sequential"
        else:
            mode = "weekday"

        effective = [day for day in self.days if day.node_count > 0]
        if not effective:
            effective = [self.fallback_day]
        days_detected = sum(1 for day in effective if day is not self.fallback_day)

        draft_days = []
        for position, day in enumerate(effective):
            display_label = None
            if mode == "custom":
                display_label = sanitize_custom_label(day.label, f"Día {position + 1}")
            draft_days.append(
                DraftDay(
                    id=day.id,
                    source_label=day.label,
                    display_label=display_label,
                    mapped_day_key=day.mapped,
                    blocks=[
                        DraftBlock(id=block.id, block_type=block.block_type, nodes=block.nodes)
                        for block in day.blocks
                        if block.nodes
                    ],
                )
            )

        counters = self.counters
        exercises = sum(day.node_count for day in effective)
        parseable = counters.parsed_lines / counters.candidate_lines if counters.candidate_lines else 0.0
        required = counters.required_fields_completed / counters.parsed_lines if counters.parsed_lines else 0.0
        coverage = Coverage(
            days_detected=days_detected,
            exercises_parsed=exercises,
            candidate_lines=counters.candidate_lines,
            parsed_lines=counters.parsed_lines,
            parseable_ratio=round(min(parseable, 1.0), 4),
            required_fields_ratio=round(min(required, 1.0), 4),
            lines_in=counters.lines_in,
            lines_after_split=counters.candidate_lines,
            lines_with_prescription_detected=counters.lines_with_prescription_detected,
            exercise_nodes_out=exercises,
            multi_exercise_splits_applied=counters.multi_exercise_splits_applied,
            unresolved_multi_exercise_lines=counters.unresolved_multi_exercise_lines,
            contract_lines_total=counters.contract_lines_total,
            contract_lines_parsed=counters.contract_lines_parsed,
            contract_lines_failed_invariants=counters.contract_lines_failed_invariants,
            legacy_fallback_hits=counters.legacy_fallback_hits,
        )
        logger.info(
            "Built %s draft: %d days, %d exercises, %d/%d lines parsed",
            self.context.source_type,
            len(draft_days),
            exercises,
            counters.parsed_lines,
            counters.candidate_lines,
        )
        return Draft(
            version=DRAFT_VERSION,
            source_type=self.context.source_type,
            parser_version=self.context.parser_version,
            ruleset_version=self.context.ruleset_version,
            extractor_version=self.context.extractor_version,
            coverage=coverage,
            presentation=Presentation(day_label_mode=mode),
            days=draft_days,
        )


def parse_lines_to_draft(lines: List[ParsedLine], context: ParserContext) -> Draft:
    return DraftBuilder(context).build(lines)
