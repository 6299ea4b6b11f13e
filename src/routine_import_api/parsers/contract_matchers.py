"""
Contract matchers.

Each matcher recognizes one way coaches write a prescription ("3x8",
"3 series de 8", "8 reps x 3 series", "8,8,8", ...) over the token stream of a
line and proposes a ``ContractCandidate``. All matchers run; the best
candidate wins by ``(priority, score, structure end)``.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from routine_import_api.parsers.models import ContractCandidate, StructRef, Token
from routine_import_api.parsers.name_note import sanitize_exercise_name
from routine_import_api.parsers.structural_tokens import dedupe_refs, structural_end_token
from routine_import_api.parsers.tokens import (
    is_amrap_keyword,
    is_comma_connector,
    is_range_connector,
    is_reps_keyword,
    is_separator_x,
    is_series_keyword,
    parse_float_token,
    parse_int_token,
    token_at,
    tokenize_line,
    trim_span,
)
from routine_import_api.utils import normalize_word

logger = logging.getLogger(__name__)

Matcher = Callable[[str, List[Token]], Optional[ContractCandidate]]

SPANISH_NUMBER_WORDS = {
    "un": 1, "uno": 1, "una": 1, "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5,
    "seis": 6, "siete": 7, "ocho": 8, "nueve": 9, "diez": 10, "once": 11,
    "doce": 12, "trece": 13, "catorce": 14, "quince": 15,
}

# Tried in order; the first full match wins.
NARRATIVE_PREFIXES = (
    ("hoy", "arrancamos", "con"),
    ("arrancamos", "con"),
    ("hoy", "empezamos", "con"),
    ("empezamos", "con"),
    ("hoy", "hacemos"),
    ("hacemos",),
    ("hoy", "metemos"),
    ("metemos",),
    ("hoy", "le", "damos", "a"),
    ("le", "damos", "a"),
    ("vamos", "con"),
    ("seguimos", "con"),
    ("pasamos", "a"),
    ("cerramos", "con"),
    ("terminamos", "con"),
    ("finalizamos", "con"),
    ("arranca", "con"),
    ("arranca",),
    ("empeza", "con"),
    ("empeza",),
    ("metele", "a"),
    ("metele",),
    ("hace",),
    ("mandale", "a"),
    ("mandale",),
    ("dale", "con"),
    ("dale", "a"),
    ("anda", "con"),
    ("ejecuta",),
    ("ejecuta", "con"),
    ("hacete",),
    ("hacete", "con"),
    ("despues",),
    ("despues", "hacemos"),
)

_BULLET_SYMBOLS = ("•", "●", "▪", "◦", "-", "+", "*", ".", ")", "(")
_WRAPPER_SYMBOLS = ("(", ")", "[", "]", "{", "}", "/", "\\")
_CIRCUIT_MARKER = re.compile(r"^(?:[-–—*•·‣▪︎]+|\d{1,2}[.)])\s*")
_CIRCUIT_AND = re.compile(r"\b y \b", re.IGNORECASE)
_NAME_THEN_REPS = re.compile(r"^(.+?)\s+(\d{1,3})$")
_REPS_THEN_NAME = re.compile(r"^(\d{1,3})\s+(.+)$")
_TIME_UNIT_PREFIX = re.compile(r"^(?:s|seg|sec|min|mins|m)\b", re.IGNORECASE)
_TIME_PREFIX = re.compile(r"^\d{1,2}:\d{2}\b")


# ============================================================================
# Shape and candidate helpers
# ============================================================================

def make_shape(kind: str, evidence: str = "explicit", reasons: Sequence[str] = (), **fields) -> Dict[str, Any]:
    shape: Dict[str, Any] = {"version": 1, "kind": kind}
    shape.update(fields)
    shape["evidence"] = evidence
    shape["inference_reasons"] = list(reasons)
    return shape


def with_heuristic(shape: Dict[str, Any], reason: str) -> Dict[str, Any]:
    reasons = list(shape.get("inference_reasons") or [])
    if reason not in reasons:
        reasons.append(reason)
    return {**shape, "evidence": "heuristic", "inference_reasons": reasons}


def _fixed(sets: int, reps: int, evidence: str = "explicit") -> Dict[str, Any]:
    return make_shape("fixed", evidence, sets=sets, reps_min=reps, reps_max=None)


def compute_score(name: str, refs: Sequence[StructRef], priority: int) -> int:
    return priority * 100 + len(refs) * 10 + min(len(name.split()), 6)


def build_candidate(
    matcher_id: str,
    priority: int,
    raw_line: str,
    name_start: int,
    name_end: int,
    refs: List[StructRef],
    shape: Dict[str, Any],
    tokens: List[Token],
    force_structure_end: Optional[int] = None,
    force_note_start: Optional[int] = None,
) -> Optional[ContractCandidate]:
    """Validate spans and build a candidate, or return None."""
    refs = dedupe_refs(refs)
    end_token = structural_end_token(tokens, refs)
    if end_token is None and force_structure_end is None:
        return None
    start, end = trim_span(raw_line, name_start, name_end)
    if end <= start:
        return None
    name = sanitize_exercise_name(raw_line[start:end])
    if not name:
        return None

    full_length = len(raw_line)
    structure_end = force_structure_end if force_structure_end is not None else end_token.end
    note_start = force_note_start if force_note_start is not None else structure_end
    if (
        start < 0
        or end > full_length
        or structure_end < end
        or structure_end > full_length
        or note_start < end
        or note_start > full_length
    ):
        return None

    return ContractCandidate(
        matcher_id=matcher_id,
        priority=priority,
        score=compute_score(name, refs, priority),
        name=name,
        name_start=start,
        name_end=end,
        structure_end=structure_end,
        note_start=note_start,
        shape=shape,
        refs=refs,
    )


def parse_flexible_int(token: Optional[Token]) -> Optional[int]:
    """Digits or a Spanish number word ("ocho")."""
    value = parse_int_token(token)
    if value is not None:
        return value
    if token is None or token.type != "word":
        return None
    return SPANISH_NUMBER_WORDS.get(token.normalized)


def _is_word(token: Optional[Token], *values: str) -> bool:
    return token is not None and token.type == "word" and token.normalized in values


def _is_wrapper(token: Optional[Token]) -> bool:
    return token is not None and token.type == "symbol" and token.normalized in _WRAPPER_SYMBOLS


def _skip_wrappers(tokens: List[Token], index: int) -> int:
    while _is_wrapper(token_at(tokens, index)):
        index += 1
    return index


def first_meaningful_index(tokens: List[Token]) -> int:
    """Skip list bullets and ``1.`` / ``1)`` enumerators."""
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.type == "symbol" and token.raw in _BULLET_SYMBOLS:
            index += 1
            continue
        following = token_at(tokens, index + 1)
        if (
            token.type == "number"
            and following is not None
            and following.type == "symbol"
            and following.normalized in (".", ")")
        ):
            index += 2
            continue
        break
    return index


def strip_narrative_prefix(raw_line: str, tokens: List[Token]):
    """Return ``(offset, reasons)`` where the exercise text really starts."""
    cursor = first_meaningful_index(tokens)
    applied = False
    for prefix in NARRATIVE_PREFIXES:
        local = cursor
        matched = True
        for expected in prefix:
            token = token_at(tokens, local)
            if token is None or token.type != "word" or normalize_word(token.raw) != expected:
                matched = False
                break
            local += 1
        if matched:
            separator = token_at(tokens, local)
            if separator is not None and separator.type == "symbol" and separator.normalized in (":", "-"):
                local += 1
            cursor = local
            applied = True
            break
    token = token_at(tokens, cursor)
    offset = token.start if token is not None else 0
    return offset, (["narrative_prefix_removed"] if applied else [])


# ============================================================================
# Matchers
# ============================================================================

def match_classic_sets_reps(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Name 3x8``, ``Name 3x8-10``, ``Name 3xAMRAP``."""
    for i in range(len(tokens) - 2):
        set_token, rep_token = tokens[i], tokens[i + 2]
        if set_token.type != "number" or not is_separator_x(tokens[i + 1]):
            continue
        sets = parse_int_token(set_token)
        if not sets:
            continue
        name_start, name_end = tokens[0].start, set_token.start
        if name_end <= name_start:
            continue

        refs = [StructRef(i, "sets"), StructRef(i + 1, "keyword")]

        if is_amrap_keyword(rep_token):
            refs.append(StructRef(i + 2, "keyword"))
            return build_candidate(
                "classic_sets_amrap", 100, raw_line, name_start, name_end,
                refs, make_shape("amrap", sets=sets), tokens,
            )

        reps = parse_int_token(rep_token)
        if not reps:
            continue
        refs.append(StructRef(i + 2, "reps_min"))

        upper = token_at(tokens, i + 4)
        if is_range_connector(token_at(tokens, i + 3)) and upper is not None and upper.type == "number":
            reps_max = parse_int_token(upper)
            if reps_max and reps_max >= reps:
                refs.append(StructRef(i + 3, "keyword"))
                refs.append(StructRef(i + 4, "reps_max"))
                trailing = i + 5
                if is_reps_keyword(token_at(tokens, trailing)):
                    refs.append(StructRef(trailing, "keyword"))
                    trailing += 1
                while _is_wrapper(token_at(tokens, trailing)):
                    refs.append(StructRef(trailing, "keyword"))
                    trailing += 1
                shape = make_shape("range", sets=sets, reps_min=reps, reps_max=reps_max)
                return build_candidate(
                    "classic_sets_range", 100, raw_line, name_start, name_end, refs, shape, tokens,
                )

        matcher_id = "classic_sets_reps"
        shape = _fixed(sets, reps)
        if sets > 8 and reps <= 8:
            shape = with_heuristic(_fixed(reps, sets), "reps_x_series_reordered")
            matcher_id = "classic_reordered_reps_x_sets"

        candidate = build_candidate(matcher_id, 100, raw_line, name_start, name_end, refs, shape, tokens)
        if candidate:
            return candidate
    return None


def match_x_prefix_compact(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Sentadilla x4 10``."""
    for i in range(len(tokens) - 2):
        if not is_separator_x(tokens[i]):
            continue
        sets = parse_int_token(tokens[i + 1])
        reps = parse_int_token(tokens[i + 2])
        if not sets or not reps:
            continue
        name_start, name_end = tokens[0].start, tokens[i].start
        if name_end <= name_start:
            continue
        refs = [StructRef(i, "keyword"), StructRef(i + 1, "sets"), StructRef(i + 2, "reps_min")]
        return build_candidate(
            "x_prefix_compact", 96, raw_line, name_start, name_end, refs, _fixed(sets, reps), tokens,
        )
    return None


def match_series_wording(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Fondos 3 series de 12``, ``Remo tres series de 8 a 10 reps``."""
    for i in range(1, len(tokens) - 2):
        sets = parse_flexible_int(tokens[i - 1])
        if not sets or not is_series_keyword(tokens[i]):
            continue
        reps_index = i + 1
        if _is_word(token_at(tokens, reps_index), "de", "x", "por"):
            reps_index += 1
        reps = parse_flexible_int(token_at(tokens, reps_index))
        if not reps:
            continue
        name_start, name_end = tokens[0].start, tokens[i - 1].start
        if name_end <= name_start:
            continue
        refs = [StructRef(i - 1, "sets"), StructRef(i, "keyword"), StructRef(reps_index, "reps_min")]
        after = reps_index + 1
        if is_reps_keyword(token_at(tokens, after)):
            refs.append(StructRef(after, "keyword"))
            after += 1
        if is_range_connector(token_at(tokens, after)):
            reps_max = parse_flexible_int(token_at(tokens, after + 1))
            if reps_max and reps_max >= reps:
                refs.append(StructRef(after, "keyword"))
                refs.append(StructRef(after + 1, "reps_max"))
                if is_reps_keyword(token_at(tokens, after + 2)):
                    refs.append(StructRef(after + 2, "keyword"))
                shape = make_shape("range", sets=sets, reps_min=reps, reps_max=reps_max)
                return build_candidate(
                    "series_wording_range", 92, raw_line, name_start, name_end, refs, shape, tokens,
                )
        return build_candidate(
            "series_wording", 92, raw_line, name_start, name_end, refs, _fixed(sets, reps), tokens,
        )
    return None


def match_reps_by_sets_wording(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Press banca 8 reps x 3 series``."""
    for i in range(len(tokens) - 4):
        reps = parse_int_token(tokens[i])
        if not reps or not is_reps_keyword(tokens[i + 1]):
            continue
        if not is_separator_x(tokens[i + 2]) and tokens[i + 2].normalized != "por":
            continue
        sets = parse_int_token(tokens[i + 3])
        if not sets or not is_series_keyword(tokens[i + 4]):
            continue
        name_start, name_end = tokens[0].start, tokens[i].start
        if name_end <= name_start:
            continue
        refs = [
            StructRef(i, "reps_min"),
            StructRef(i + 1, "keyword"),
            StructRef(i + 2, "keyword"),
            StructRef(i + 3, "sets"),
            StructRef(i + 4, "keyword"),
        ]
        return build_candidate(
            "reps_x_sets_wording", 90, raw_line, name_start, name_end, refs, _fixed(sets, reps), tokens,
        )
    return None


def match_reps_by_sets_compact(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Sentadilla 10 rep x 4``."""
    for i in range(len(tokens) - 3):
        reps = parse_int_token(tokens[i])
        if not reps or not is_reps_keyword(tokens[i + 1]):
            continue
        if not is_separator_x(tokens[i + 2]) and tokens[i + 2].normalized != "por":
            continue
        sets = parse_int_token(tokens[i + 3])
        if not sets:
            continue
        name_start, name_end = tokens[0].start, tokens[i].start
        if name_end <= name_start:
            continue
        refs = [
            StructRef(i, "reps_min"),
            StructRef(i + 1, "keyword"),
            StructRef(i + 2, "keyword"),
            StructRef(i + 3, "sets"),
        ]
        return build_candidate(
            "reps_x_sets_compact_wording", 89, raw_line, name_start, name_end, refs,
            _fixed(sets, reps), tokens,
        )
    return None


def match_sets_first_name_after(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``3 series x12 de Banco Plano``, ``(4 series de 12) Remo en Maquina``."""
    if len(tokens) < 4:
        return None
    start_index = first_meaningful_index(tokens)
    sets = parse_flexible_int(token_at(tokens, start_index))
    if not sets:
        return None
    marker = token_at(tokens, start_index + 1)
    if not is_series_keyword(marker) and not is_separator_x(marker):
        return None
    reps_index = start_index + 2
    if _is_word(token_at(tokens, reps_index), "de", "x", "por"):
        reps_index += 1
    if is_separator_x(token_at(tokens, reps_index)):
        reps_index += 1
    reps = parse_flexible_int(token_at(tokens, reps_index))
    if not reps:
        return None
    name_index = _skip_wrappers(tokens, reps_index + 1)
    if is_reps_keyword(token_at(tokens, name_index)):
        name_index += 1
    if _is_word(token_at(tokens, name_index), "de", "en"):
        name_index += 1
    name_index = _skip_wrappers(tokens, name_index)
    name_token = token_at(tokens, name_index)
    if name_token is None:
        return None
    name_start, name_end = name_token.start, tokens[-1].end
    if name_end <= name_start:
        return None
    refs = [StructRef(start_index, "sets"), StructRef(reps_index, "reps_min")]
    return build_candidate(
        "sets_first_name_after", 89, raw_line, name_start, name_end, refs, _fixed(sets, reps), tokens,
        force_structure_end=len(raw_line), force_note_start=len(raw_line),
    )


def match_name_then_sets_of_reps(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Biceps con Barra ocho de 15 repeticiones``."""
    for i in range(len(tokens) - 3):
        sets = parse_flexible_int(tokens[i])
        if not sets:
            continue
        reps_index = i + 1
        if _is_word(token_at(tokens, reps_index), "de"):
            reps_index += 1
        reps = parse_flexible_int(token_at(tokens, reps_index))
        if not reps or not is_reps_keyword(token_at(tokens, reps_index + 1)):
            continue
        name_start, name_end = tokens[0].start, tokens[i].start
        if name_end <= name_start:
            continue
        refs = [StructRef(i, "sets"), StructRef(reps_index, "reps_min"), StructRef(reps_index + 1, "keyword")]
        return build_candidate(
            "name_then_sets_of_reps", 74, raw_line, name_start, name_end, refs,
            _fixed(sets, reps, evidence="heuristic"), tokens,
            force_structure_end=len(raw_line), force_note_start=len(raw_line),
        )
    return None


def match_scheme_number_run(raw_line: str, tokens: List[Token]) -> Optional[ContractCandidate]:
    """``Press banca 8,8,8``, ``Curl 12-10-8``, ``Press banca 8 8 8``."""
    if any(token.type == "number" and is_separator_x(token_at(tokens, index + 1))
           for index, token in enumerate(tokens)):
        return None

    for start, start_token in enumerate(tokens):
        if start_token.type != "number":
            continue
        name_start, name_end = tokens[0].start, start_token.start
        if name_end <= name_start:
            continue
        if "tempo" in raw_line[name_start:name_end].lower():
            continue

        index = start
        number_indexes: List[int] = []
        delimited = False
        while index < len(tokens):
            token = tokens[index]
            if token.type == "number":
                number_indexes.append(index)
            elif token.type == "symbol" and token.normalized in (",", "-"):
                delimited = True
            else:
                break
            index += 1

        if len(number_indexes) < 2:
            continue
        reps_list = [value for value in (parse_int_token(tokens[idx]) for idx in number_indexes) if value]
        if len(reps_list) < 2:
            continue

        shape = make_shape("scheme", sets=len(reps_list), reps_list=reps_list)
        if len(reps_list) == 2 and delimited:
            shape = with_heuristic(shape, "dash_series_assumed")
        refs = [StructRef(idx, "reps") for idx in number_indexes]
        return build_candidate(
            "scheme_number_run", 75, raw_line, name_start, name_end, refs, shape, tokens,
        )
    return None


CONTRACT_MATCHERS: List[Matcher] = [
    match_classic_sets_reps,
    match_x_prefix_compact,
    match_series_wording,
    match_reps_by_sets_wording,
    match_reps_by_sets_compact,
    match_sets_first_name_after,
    match_name_then_sets_of_reps,
    match_scheme_number_run,
]


# ============================================================================
# Entry points
# ============================================================================

def _collect(raw_line: str, offset: int = 0, reasons: Sequence[str] = ()) -> List[ContractCandidate]:
    tokens = tokenize_line(raw_line)
    if not tokens:
        return []
    candidates = []
    for matcher in CONTRACT_MATCHERS:
        candidate = matcher(raw_line, tokens)
        if candidate is None:
            continue
        shape = candidate.shape
        for reason in reasons:
            shape = with_heuristic(shape, reason)
        candidate.shape = shape
        candidate.name_start += offset
        candidate.name_end += offset
        candidate.structure_end += offset
        candidate.note_start += offset
        candidates.append(candidate)
    return candidates


def rank_candidates(candidates: List[ContractCandidate]) -> List[ContractCandidate]:
    return sorted(candidates, key=lambda c: (-c.priority, -c.score, -c.structure_end))


def parse_contract_candidate(raw_line: str) -> Optional[ContractCandidate]:
    """Best contract reading of ``raw_line`` (offsets relative to it), or None.

    Bullets, enumerators and narrative openers ("hoy hacemos", "después")
    are stripped first; the untouched line is only matched when the stripped
    text yields nothing.
    """
    stripped_lead = len(raw_line) - len(raw_line.lstrip())
    raw = raw_line.strip()
    if not raw:
        return None
    tokens = tokenize_line(raw)
    if not tokens:
        return None

    candidates: List[ContractCandidate] = []
    offset, reasons = strip_narrative_prefix(raw, tokens)
    working = raw[offset:].strip()
    if offset > 0 and working:
        candidates = _collect(working, offset, reasons)
    if not candidates:
        candidates = _collect(raw)
    if not candidates:
        return None

    best = rank_candidates(candidates)[0]
    logger.debug("Line %r matched by %s (%d candidates)", raw[:80], best.matcher_id, len(candidates))
    if stripped_lead:
        best.name_start += stripped_lead
        best.name_end += stripped_lead
        best.structure_end += stripped_lead
        best.note_start += stripped_lead
    return best


def parse_ladder_entries(raw_line: str) -> List[Dict[str, Any]]:
    """``60x12, 70kg x 10`` -> ``[{weight, reps, unit}, ...]``."""
    tokens = tokenize_line(raw_line)
    entries: List[Dict[str, Any]] = []
    i = 0
    while i < len(tokens) - 2:
        weight = parse_float_token(tokens[i])
        if weight is None or weight <= 0:
            i += 1
            continue
        unit = None
        separator = i + 1
        maybe_unit = tokens[separator]
        if maybe_unit.type == "word":
            if maybe_unit.normalized == "kg":
                unit = "kg"
                separator += 1
            elif maybe_unit.normalized in ("lb", "lbs"):
                unit = "lb"
                separator += 1
        if not is_separator_x(token_at(tokens, separator)):
            i += 1
            continue
        reps = parse_int_token(token_at(tokens, separator + 1))
        if not reps:
            i += 1
            continue
        entries.append({"weight": weight, "reps": reps, "unit": unit})
        i = separator + 2
        if is_comma_connector(token_at(tokens, i)):
            i += 1
    return entries


def _circuit_grouped(reps: int) -> Dict[str, Any]:
    return make_shape("fixed", "heuristic", ["circuit_grouped"], sets=1, reps_min=reps, reps_max=None)


def parse_circuit_entry(raw_segment: str) -> Optional[Dict[str, Any]]:
    """Parse one circuit/superset entry into ``{name, shape}``."""
    cleaned = _CIRCUIT_MARKER.sub("", raw_segment.strip()).strip()
    if not cleaned:
        return None

    candidate = parse_contract_candidate(cleaned)
    if candidate and candidate.shape["kind"] in ("fixed", "range", "amrap"):
        return {"name": candidate.name, "shape": candidate.shape}

    name_first = _NAME_THEN_REPS.match(cleaned)
    if name_first:
        reps = int(name_first.group(2))
        name = sanitize_exercise_name(name_first.group(1))
        if reps > 0 and name:
            return {"name": name, "shape": _circuit_grouped(reps)}

    implicit = _REPS_THEN_NAME.match(cleaned)
    if not implicit:
        return None
    reps = int(implicit.group(1))
    suffix = implicit.group(2).strip()
    if reps <= 0 or not suffix:
        return None
    if _TIME_UNIT_PREFIX.match(suffix) or _TIME_PREFIX.match(cleaned):
        return None
    name = sanitize_exercise_name(suffix)
    if not name:
        return None
    return {"name": name, "shape": _circuit_grouped(reps)}


def split_circuit_segments(raw_line: str) -> List[str]:
    """Split a circuit line on commas and `` y ``."""
    segments: List[str] = []
    for part in (piece.strip() for piece in raw_line.split(",")):
        if not part:
            continue
        pieces = [piece.strip() for piece in _CIRCUIT_AND.split(part) if piece.strip()]
        for piece in pieces if len(pieces) > 1 else [part]:
            segments.append(_CIRCUIT_MARKER.sub("", piece).strip())
    return [segment for segment in segments if segment]
