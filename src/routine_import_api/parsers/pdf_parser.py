"""
Digital PDF Parser

Rebuilds text lines from positioned words: words whose ``top`` lies within
a small tolerance share a line, lines are read top to bottom and words left
to right. Layout reconstruction is lossy, so confidence is degraded for
every node built from a PDF. Scanned PDFs carry no words and simply fail
the coverage gates downstream.
"""

import io
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Tuple

import pdfplumber

from routine_import_api.constants import MAX_PAGE_COUNT
from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from routine_import_api.parsers import register_parser
from routine_import_api.parsers.base import BaseParser
from routine_import_api.parsers.draft_builder import parse_lines_to_draft
from routine_import_api.parsers.models import ParsedLine, ParserContext
from routine_import_api.utils import normalize_line

logger = logging.getLogger(__name__)

Y_TOLERANCE = 2.5


@dataclass
class LineBucket:
    top: float
    items: List[Tuple[float, str]] = field(default_factory=list)


def group_words_into_lines(words: Iterable[Dict[str, Any]]) -> List[str]:
    """Join ``extract_words`` output into reading-order lines."""
    buckets: List[LineBucket] = []
    for word in words:
        text = normalize_line(str(word.get("text") or ""))
        if not text:
            continue
        x = float(word.get("x0") or 0)
        top = float(word.get("top") or 0)
        bucket = next((b for b in buckets if abs(b.top - top) <= Y_TOLERANCE), None)
        if bucket is None:
            bucket = LineBucket(top=top)
            buckets.append(bucket)
        bucket.items.append((x, text))

    lines = []
    for bucket in sorted(buckets, key=lambda b: b.top):
        line = " ".join(text for _, text in sorted(bucket.items, key=lambda item: item[0])).strip()
        if line:
            lines.append(line)
    return lines


class PDFParser(BaseParser):
    """Parser for digital (text-layer) PDFs"""

    @staticmethod
    def source_type() -> str:
        return "pdf"

    def parse(self, content: bytes, context: ParserContext) -> Draft:
        try:
            pdf = pdfplumber.open(io.BytesIO(content))
        except Exception as e:
            raise ParserError(f"Failed to open PDF file: {e}") from e

        lines: List[ParsedLine] = []
        with pdf:
            page_count = len(pdf.pages)
            if page_count > MAX_PAGE_COUNT:
                raise ParserError(f"PDF exceeds page limit ({MAX_PAGE_COUNT}).")
            for page_number, page in enumerate(pdf.pages, start=1):
                for text in group_words_into_lines(page.extract_words()):
                    lines.append(ParsedLine(text=text, line_index=len(lines), source_page=page_number))

        if not lines:
            self.add_warning("PDF has no extractable text layer")
        logger.info("PDF payload: %d pages, %d lines", page_count, len(lines))
        return parse_lines_to_draft(lines, replace(context, degrade_confidence_for_layout=True))


register_parser(PDFParser)
