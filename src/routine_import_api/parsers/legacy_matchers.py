"""Regex fallbacks for lines the contract matchers cannot read."""
import re
from typing import Optional

from routine_import_api.parsers.contract_matchers import make_shape
from routine_import_api.parsers.models import LegacyMatch
from routine_import_api.parsers.name_note import sanitize_exercise_name

CLASSIC_PATTERN = re.compile(
    r"^(.+?)\s+(\d{1,2})\s*(?:x|X|\*|por)\s*(\d{1,3})(?:\s*(?:-|–|a)\s*(\d{1,3}))?"
)
SCHEME_PATTERN = re.compile(r"^(.+?)\s+(\d{1,3}(?:\s*[,-]\s*\d{1,3}|\s+\d{1,3}){1,6})$")


def parse_legacy_line(raw_line: str) -> Optional[LegacyMatch]:
    """Classic ``Name SxR[-R]`` or ``Name R,R,R`` read with plain regexes.

    Offsets in the result are relative to the stripped line.
    """
    raw = raw_line.strip()
    if not raw:
        return None

    classic = CLASSIC_PATTERN.match(raw)
    if classic:
        name = sanitize_exercise_name(classic.group(1), strip_imperatives=False)
        sets = int(classic.group(2))
        reps_min = int(classic.group(3))
        reps_max = int(classic.group(4)) if classic.group(4) else None
        if not name or sets <= 0 or reps_min <= 0:
            return None
        reasons = []
        if reps_max is None and sets > 8 and reps_min <= 8:
            sets, reps_min = reps_min, sets
            reasons.append("reps_x_series_reordered")
        if reps_max and reps_max > reps_min:
            shape = make_shape("range", "heuristic", reasons, sets=sets, reps_min=reps_min, reps_max=reps_max)
        else:
            shape = make_shape("fixed", "heuristic", reasons, sets=sets, reps_min=reps_min, reps_max=None)
        return LegacyMatch(name=name, shape=shape, structure_end=classic.end())

    scheme = SCHEME_PATTERN.match(raw)
    if scheme:
        name = sanitize_exercise_name(scheme.group(1), strip_imperatives=False)
        if not name:
            return None
        values = [int(item) for item in re.split(r"[\s,\-]+", scheme.group(2)) if item.isdigit() and int(item) > 0]
        if len(values) < 2:
            return None
        shape = make_shape(
            "scheme", "heuristic", ["dash_series_assumed"], sets=len(values), reps_list=values,
        )
        return LegacyMatch(name=name, shape=shape, structure_end=scheme.end())

    return None
