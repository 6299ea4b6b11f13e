"""Word (.docx) routines: body text in document order, table cells included."""

import io
import logging
from typing import Iterator

from docx import Document
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph

from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from routine_import_api.parsers import register_parser
from routine_import_api.parsers.base import BaseParser
from routine_import_api.parsers.draft_builder import parse_lines_to_draft
from routine_import_api.parsers.models import ParserContext
from routine_import_api.parsers.text_parser import text_to_lines
from routine_import_api.utils import normalize_text

logger = logging.getLogger(__name__)


def iter_block_text(element, parent) -> Iterator[str]:
    """Paragraph texts under a body or cell element; each table cell paragraph is its own line."""
    for child in element.iterchildren():
        if child.tag == qn("w:p"):
            yield Paragraph(child, parent).text
        elif child.tag == qn("w:tbl"):
            for row in child.iterchildren(qn("w:tr")):
                for cell in row.iterchildren(qn("w:tc")):
                    yield from iter_block_text(cell, parent)


def extract_docx_text(content: bytes) -> str:
    try:
        document = Document(io.BytesIO(content))
    except Exception as e:
        raise ParserError(f"Failed to read DOCX file: {e}") from e
    text = "\n".join(iter_block_text(document.element.body, document))
    return normalize_text(text)


class DocxParser(BaseParser):
    """Parser for Word documents"""

    @staticmethod
    def source_type() -> str:
        return "docx"

    def parse(self, content: bytes, context: ParserContext) -> Draft:
        text = extract_docx_text(content)
        lines = text_to_lines(text)
        logger.debug("DOCX payload: %d lines of text", len(lines))
        return parse_lines_to_draft(lines, context)


register_parser(DocxParser)
