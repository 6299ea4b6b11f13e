"""
Line tokenizer.

Splits a raw line into word/number/time/symbol tokens while keeping offsets
into the untouched text, so spans can later be sliced back out of the line.
"""

import re
from typing import List, Optional, Tuple

from routine_import_api.parsers.models import Token
from routine_import_api.utils import normalize_word

TOKEN_PATTERN = re.compile(
    r"(\d{1,2}:\d{2})|(\d+(?:[.,]\d+)?)|([A-Za-zÁÉÍÓÚÜÑáéíóúüñ]+)|(\S)"
)

_SYMBOL_ALIASES = {"×": "x", "–": "-", "—": "-"}
_LEADING_INT = re.compile(r"^\d+")

_COMPOUND_KEYWORDS = ("amrap", "fallo")


def _normalize_symbol(value: str) -> str:
    return _SYMBOL_ALIASES.get(value, value)


def tokenize_line(raw_line: str) -> List[Token]:
    """Tokenize ``raw_line``.

    ``8,8`` next to another comma is read as two numbers and a comma symbol
    (a rep list); a lone ``82,5`` stays one decimal number normalized to
    ``82.5``. A word like ``xAMRAP`` right after a number is split into an
    ``x`` separator and the keyword.
    """
    tokens: List[Token] = []
    for match in TOKEN_PATTERN.finditer(raw_line):
        full = match.group(0)
        start, end = match.start(), match.end()

        if match.group(1):
            tokens.append(Token("time", full, full, start, end))
            continue

        if match.group(2):
            previous_char = raw_line[start - 1] if start > 0 else ""
            next_char = raw_line[end] if end < len(raw_line) else ""
            split_list = (
                "," in full
                and (previous_char == "," or next_char == ",")
                and len(full.split(",")) == 2
            )
            if split_list:
                comma = full.index(",")
                left, right = full[:comma], full[comma + 1:]
                comma_at = start + comma
                if left:
                    tokens.append(Token("number", left, left, start, comma_at))
                tokens.append(Token("symbol", ",", ",", comma_at, comma_at + 1))
                if right:
                    tokens.append(Token("number", right, right, comma_at + 1, end))
                continue
            tokens.append(Token("number", full, full.replace(",", "."), start, end))
            continue

        if match.group(3):
            word = normalize_word(full)
            previous = tokens[-1] if tokens else None
            if (
                previous is not None
                and previous.type == "number"
                and word.startswith("x")
                and word[1:] in _COMPOUND_KEYWORDS
            ):
                tokens.append(Token("word", full[:1], "x", start, start + 1))
                tokens.append(Token("word", full[1:], word[1:], start + 1, end))
                continue
            tokens.append(Token("word", full, word, start, end))
            continue

        tokens.append(Token("symbol", full, _normalize_symbol(full), start, end))
    return tokens


def token_at(tokens: List[Token], index: int) -> Optional[Token]:
    if 0 <= index < len(tokens):
        return tokens[index]
    return None


def is_separator_x(token: Optional[Token]) -> bool:
    if token is None:
        return False
    if token.type == "symbol":
        return token.normalized in ("x", "*")
    if token.type == "word":
        return token.normalized in ("x", "por")
    return False


def is_range_connector(token: Optional[Token]) -> bool:
    if token is None:
        return False
    if token.type == "symbol":
        return token.normalized in ("-", "/")
    if token.type == "word":
        return token.normalized in ("a", "to", "hasta")
    return False


def is_comma_connector(token: Optional[Token]) -> bool:
    return token is not None and token.type == "symbol" and token.normalized == ","


def is_series_keyword(token: Optional[Token]) -> bool:
    return token is not None and token.type == "word" and token.normalized in ("serie", "series", "set", "sets")


def is_reps_keyword(token: Optional[Token]) -> bool:
    return (
        token is not None
        and token.type == "word"
        and token.normalized in ("rep", "reps", "repeticion", "repeticiones")
    )


def is_amrap_keyword(token: Optional[Token]) -> bool:
    return token is not None and token.type == "word" and token.normalized in ("amrap", "fallo", "afallo")


def is_time_unit_word(token: Optional[Token]) -> bool:
    return (
        token is not None
        and token.type == "word"
        and token.normalized in ("s", "seg", "sec", "min", "mins", "m")
    )


def parse_int_token(token: Optional[Token]) -> Optional[int]:
    """Integer part of a number token (``82.5`` -> 82)."""
    if token is None or token.type != "number":
        return None
    match = _LEADING_INT.match(token.normalized)
    return int(match.group(0)) if match else None


def parse_float_token(token: Optional[Token]) -> Optional[float]:
    if token is None or token.type != "number":
        return None
    try:
        return float(token.normalized)
    except ValueError:
        return None


def trim_span(raw: str, start: int, end: int) -> Tuple[int, int]:
    """Shrink ``[start, end)`` so it neither starts nor ends on whitespace."""
    left = max(0, start)
    right = min(len(raw), end)
    while left < right and raw[left].isspace():
        left += 1
    while right > left and raw[right - 1].isspace():
        right -= 1
    return left, right
