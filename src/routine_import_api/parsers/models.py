"""
Parser Models

Lightweight value objects passed between the tokenizer, the matchers and the
draft builder. Draft documents themselves are pydantic models (see
``routine_import_api.models``).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

TokenType = Literal["word", "number", "time", "symbol"]
StructuralRole = Literal["sets", "reps", "reps_min", "reps_max", "weight", "keyword", "rounds"]


@dataclass(frozen=True)
class Token:
    """One lexical unit of a line, with offsets into the raw text."""
    type: TokenType
    raw: str
    normalized: str
    start: int
    end: int


@dataclass(frozen=True)
class StructRef:
    """A token index tagged with the role it played in a match."""
    index: int
    role: StructuralRole


@dataclass
class ContractCandidate:
    """A matcher's proposal for how to read one line."""
    matcher_id: str
    priority: int
    score: int
    name: str
    name_start: int
    name_end: int
    structure_end: int
    note_start: int
    shape: Dict
    refs: List[StructRef] = field(default_factory=list)


@dataclass
class LegacyMatch:
    name: str
    shape: Dict
    structure_end: int


@dataclass
class ParsedLine:
    text: str
    line_index: int
    source_page: Optional[int] = None


@dataclass
class ParserContext:
    source_type: str
    parser_version: str
    ruleset_version: str
    extractor_version: str
    degrade_confidence_for_layout: bool = False
