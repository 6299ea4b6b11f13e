"""
Text Parser

Parses pasted or uploaded plain text. Lines are kept as written apart from
line-break and NBSP normalization, so note offsets stay aligned with the
raw snippet shown to the trainer.
"""

import logging
from typing import List

from routine_import_api.models import Draft
from routine_import_api.parsers import register_parser
from routine_import_api.parsers.base import BaseParser
from routine_import_api.parsers.draft_builder import parse_lines_to_draft
from routine_import_api.parsers.models import ParsedLine, ParserContext

logger = logging.getLogger(__name__)


def text_to_lines(text: str) -> List[ParsedLine]:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    return [ParsedLine(text=line, line_index=index) for index, line in enumerate(text.split("\n"))]


class TextParser(BaseParser):
    """Parser for plain text routines"""

    @staticmethod
    def source_type() -> str:
        return "text"

    def parse(self, content: bytes, context: ParserContext) -> Draft:
        lines = text_to_lines(self._decode_content(content))
        logger.debug("Text payload split into %d lines", len(lines))
        return parse_lines_to_draft(lines, context)


register_parser(TextParser)
