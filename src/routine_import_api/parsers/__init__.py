"""Source parser registry for routine imports."""
from typing import Dict, Optional, Type

from routine_import_api.constants import EXTRACTOR_VERSION, PARSER_VERSION, RULESET_VERSION
from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from .base import BaseParser
from .models import ParsedLine, ParserContext

_PARSER_REGISTRY: Dict[str, Type[BaseParser]] = {}


def register_parser(parser_class: Type[BaseParser]) -> None:
    """Register a parser class for its source type.

    Raises:
        ValueError: If a parser is already registered for this source type.
    """
    name = parser_class.source_type()
    if name in _PARSER_REGISTRY:
        raise ValueError(f"Parser already registered for source type '{name}'")
    _PARSER_REGISTRY[name] = parser_class


def get_parser(source_type: str) -> BaseParser:
    """Get an instantiated parser for the given source type.

    Raises:
        KeyError: If no parser is registered for the source type.
    """
    cls = _PARSER_REGISTRY[source_type]
    return cls()


def build_parser_context(source_type: str) -> ParserContext:
    return ParserContext(
        source_type=source_type,
        parser_version=PARSER_VERSION,
        ruleset_version=RULESET_VERSION,
        extractor_version=EXTRACTOR_VERSION,
    )


def parse_payload(source_type: str, payload: bytes, context: Optional[ParserContext] = None) -> Draft:
    """Dispatch artifact bytes to the parser for ``source_type``."""
    try:
        parser = get_parser(source_type)
    except KeyError:
        raise ParserError(f"Unsupported source type: {source_type}")
    draft = parser.parse(payload, context or build_parser_context(source_type))
    if parser.warnings:
        draft.warnings.extend(parser.warnings)
    return draft


__all__ = [
    "register_parser",
    "get_parser",
    "build_parser_context",
    "parse_payload",
    "BaseParser",
    "ParsedLine",
    "ParserContext",
]

# Auto-load parsers (triggers self-registration)
from . import text_parser  # noqa: F401,E402
from . import csv_parser  # noqa: F401,E402
from . import excel_parser  # noqa: F401,E402
from . import docx_parser  # noqa: F401,E402
from . import pdf_parser  # noqa: F401,E402
