"""
Name / note resolver.

Coaches mix exercise names and coaching cues on the same line:

    Press banca - pausa abajo 3x8
    Sentadilla 3x8 tempo 3-1-1
    Press Militar con Barra Parado 3x8 en esa

The matchers only tell us where the prescription is. This module decides
which of the surrounding text is the exercise name and which is a note, and
records every decision in a ``split_meta`` dict so the trainer can audit it.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from routine_import_api.utils import compact_whitespace, normalize_word

_NAME_EDGE_CHARS = r"\s•●▪◦·*+\-:/.()"
_LEADING_NAME_JUNK = re.compile(rf"^[{_NAME_EDGE_CHARS}]+")
_TRAILING_NAME_JUNK = re.compile(rf"[{_NAME_EDGE_CHARS}]+$")
_TRAILING_IMPERATIVE = re.compile(
    r"(?:^|\s+|\s*[-–—/]+\s*)(?:aca|acá|ahi|ahí|hace|hacete|metele|mandale|dale|arranca|empeza)\s*$",
    re.IGNORECASE,
)

_NOTE_LEADING_JUNK = re.compile(r"^[\s)\]}+\-–—:,;./|]+")
_NOTE_TRAILING_JUNK = re.compile(r"[\s,;:\-–—]+$")

# Separators that usually split a name from a cue: "Remo - lento", "Remo: lento"
_STRONG_SEPARATOR = re.compile(r"\s+[-–—]\s+|:\s+")

_STRONG_SIGNAL = re.compile(
    r"\b(?:tempo|descanso|descansar|pausa|pausado|rir|rpe|fallo|amrap|"
    r"lent[oa]s?|controlad[oa]s?|explosiv[oa]s?|ex[c]?entrica|concentrica|isometric[oa]|"
    r"aguant\w*|sosten\w*|cuidado|tecnica|atento|kg|kilos?|lbs?|segundos?|seg|minutos?|min|"
    r"drop\s*set|dropset|rest|pesad[oa]|suave|aumentando|bajando|subiendo|cada\s+lado|por\s+lado|"
    r"ultima\s+serie|calentamiento|progresivo)\b"
    r"|\b(?:rir|rpe)\s*\d"
    r"|\d+\s*(?:s|seg|sec|min|kg|lb|lbs|%)\b"
)

_NOTE_LINE_START = re.compile(
    r"^(?:nota|obs|ojo|importante|tempo|descanso|rir|rpe|pausa|recordar|\()",
    re.IGNORECASE,
)
_PRESCRIPTION_HINT = re.compile(
    r"\d{1,2}\s*(?:x|\*|×|por)\s*\d{1,3}|\d{1,2}\s+series\b|\d{1,3}\s*,\s*\d{1,3}\s*,\s*\d{1,3}",
    re.IGNORECASE,
)

FILLER_WORDS = frozenset({
    "en", "esa", "ese", "eso", "esas", "esos", "este", "esta", "esto", "estas", "estos",
    "aca", "aqui", "ahi", "alli", "alla", "asi",
    "hace", "hacete", "metele", "mandale", "dale", "arranca", "empeza",
    "y", "o", "de", "la", "el", "lo", "los", "las", "pero", "tipo", "bueno", "etc",
})

SINGLE_WORD_EXERCISES = frozenset({
    "sentadilla", "sentadillas", "dominadas", "dominada", "fondos", "flexiones", "plancha",
    "burpees", "burpee", "abdominales", "zancadas", "estocadas", "remo", "curl", "gemelos",
    "prensa", "jalon", "crunch", "crunches", "pullover", "hiperextensiones", "saltos", "soga",
    "trote", "bicicleta", "caminata", "step", "swing", "thruster", "thrusters",
    "squat", "squats", "deadlift", "lunges", "pushups", "pullups", "dips", "plank",
})

SPLIT_DECISIONS = ("not_applied", "split_kept", "split_reverted", "split_kept_note_dropped")


@dataclass
class NameNoteResolution:
    name: str
    note: Optional[str]
    split_meta: Optional[Dict[str, Any]]


def sanitize_exercise_name(raw: str, strip_imperatives: bool = True) -> str:
    """Trim bullets, wrappers and trailing imperative filler off a name."""
    value = _LEADING_NAME_JUNK.sub("", raw or "")
    value = _TRAILING_NAME_JUNK.sub("", value)
    value = compact_whitespace(value)
    if strip_imperatives:
        while _TRAILING_IMPERATIVE.search(value):
            stripped = _TRAILING_IMPERATIVE.sub("", value).strip()
            if stripped == value:
                break
            value = _TRAILING_NAME_JUNK.sub("", stripped)
    return value


def clean_note(raw: Optional[str]) -> Optional[str]:
    value = _NOTE_LEADING_JUNK.sub("", raw or "")
    value = _NOTE_TRAILING_JUNK.sub("", value)
    value = compact_whitespace(value)
    if not value or value in ("(", ")"):
        return None
    return value


def is_filler_text(text: Optional[str]) -> bool:
    """True when text has no content beyond deictic or imperative filler."""
    words = re.findall(r"[^\W\d_]+", normalize_word(text or ""))
    if not words or re.search(r"\d", text or ""):
        return False
    return all(word in FILLER_WORDS for word in words)


def has_strong_signal(text: Optional[str]) -> bool:
    return bool(_STRONG_SIGNAL.search(normalize_word(text or "")))


def is_known_single_word_exercise(name: str) -> bool:
    return normalize_word(name.strip()) in SINGLE_WORD_EXERCISES


def has_prescription_hint(text: str) -> bool:
    return bool(_PRESCRIPTION_HINT.search(text or ""))


def looks_like_note_continuation(text: str) -> bool:
    """A line that reads like the tail of the previous exercise's note."""
    value = (text or "").strip()
    if not value or has_prescription_hint(value):
        return False
    if _NOTE_LINE_START.match(value):
        return True
    first = value[0]
    return first.isalpha() and first.islower()


def split_meta(
    decision: str,
    reason: str,
    confidence_delta: str = "none",
    tail_original: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "decision": decision,
        "reason": reason,
        "confidence_delta": confidence_delta,
        "tail_original": tail_original,
    }


def _split_name_span(name_span: str) -> Optional[Tuple[str, str]]:
    """Split at the last strong separator that has text on both sides."""
    matches = list(_STRONG_SEPARATOR.finditer(name_span))
    for match in reversed(matches):
        head = name_span[:match.start()]
        tail = name_span[match.end():]
        if head.strip() and tail.strip():
            return head, tail
    return None


def _strip_captured(note: Optional[str], captured: str) -> Optional[str]:
    captured = (captured or "").strip()
    if note and captured and len(captured) > 1:
        note = note.replace(captured, " ")
    return clean_note(note)


def resolve_name_and_note(
    name_span: str,
    matched_name: str,
    trailing: str = "",
    captured: str = "",
    glued_unit: Optional[str] = None,
) -> NameNoteResolution:
    """Separate the exercise name from coaching notes.

    Args:
        name_span: Raw text the matcher assigned to the name.
        matched_name: The matcher's sanitized name for that span.
        trailing: Raw text after the prescription.
        captured: Raw prescription text, removed from any note.
        glued_unit: Rep count plus a time unit written without a space
            (``60s`` in ``3x60s``), kept as a duration note.
    """
    name = matched_name
    notes = []
    meta: Optional[Dict[str, Any]] = None

    split = _split_name_span(name_span)
    if split:
        head, tail = split
        head_name = sanitize_exercise_name(head)
        tail_note = clean_note(tail)
        tail_original = compact_whitespace(tail)
        if head_name and (tail_note is None or is_filler_text(tail_note)):
            name = head_name
            meta = split_meta("split_kept_note_dropped", "filler_tail_dropped", "none", tail_original)
        elif head_name and has_strong_signal(tail_note):
            name = head_name
            notes.append(tail_note)
            meta = split_meta("split_kept", "strong_signal_tail", "none", tail_original)
        elif head_name and " " not in head_name and not is_known_single_word_exercise(head_name):
            meta = split_meta("split_reverted", "single_word_name_reverted", "low", tail_original)
        elif head_name:
            name = head_name
            notes.append(tail_note)
            meta = split_meta("split_kept", "separator_tail", "medium", tail_original)

    if glued_unit:
        notes.append(glued_unit)
        if meta is None:
            meta = split_meta("split_kept", "duration_unit_note")

    trailing_note = _strip_captured(trailing, captured)
    if trailing_note:
        if is_filler_text(trailing_note):
            if meta is None:
                meta = split_meta(
                    "not_applied",
                    "garbage_note_dropped_no_split",
                    "none",
                    compact_whitespace(trailing),
                )
        else:
            notes.append(trailing_note)
            if meta is None:
                reason = "strong_signal_note" if has_strong_signal(trailing_note) else "trailing_text_note"
                meta = split_meta("split_kept", reason)

    note = " ".join(notes) if notes else None
    return NameNoteResolution(name=name, note=note, split_meta=meta)
