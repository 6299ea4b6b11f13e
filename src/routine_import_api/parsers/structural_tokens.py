"""Helpers for the tokens a matcher consumed."""
from typing import Iterable, List, Optional

from routine_import_api.parsers.models import StructRef, Token


def structural_end_token(tokens: List[Token], refs: Iterable[StructRef]) -> Optional[Token]:
    """Return the consumed token that ends furthest to the right."""
    end_token: Optional[Token] = None
    for ref in refs:
        if not 0 <= ref.index < len(tokens):
            continue
        token = tokens[ref.index]
        if end_token is None or token.end > end_token.end:
            end_token = token
    return end_token


def dedupe_refs(refs: Iterable[StructRef]) -> List[StructRef]:
    seen = set()
    out: List[StructRef] = []
    for ref in refs:
        key = (ref.index, ref.role)
        if key in seen:
            continue
        seen.add(key)
        out.append(ref)
    return out
