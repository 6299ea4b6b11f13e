"""
CSV Parser

Parses spreadsheet exports saved as CSV:
- Delimiter detection (comma, semicolon, tab)
- Spanish/English header aliases with fuzzy matching
- One row per exercise, grouped by the day column
"""

import csv
import io
import logging

from routine_import_api.constants import CSV_CONFIDENCE
from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from routine_import_api.parsers import register_parser
from routine_import_api.parsers.base import BaseParser
from routine_import_api.parsers.models import ParserContext
from routine_import_api.parsers.tabular import normalize_row, rows_to_draft

logger = logging.getLogger(__name__)


class CSVParser(BaseParser):
    """Parser for CSV routines"""

    @staticmethod
    def source_type() -> str:
        return "csv"

    def parse(self, content: bytes, context: ParserContext) -> Draft:
        self.warnings = []

        text = self._decode_content(content)
        delimiter = self._detect_delimiter(text)
        try:
            reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
            headers = reader.fieldnames or []
            rows = [normalize_row(row) for row in reader]
        except csv.Error as e:
            raise ParserError(f"Failed to parse CSV file: {e}") from e

        if not headers:
            self.add_warning("No headers found in CSV file")
        logger.info("CSV payload: delimiter=%r, %d columns, %d rows", delimiter, len(headers), len(rows))
        return rows_to_draft(rows, context, CSV_CONFIDENCE)

    def _detect_delimiter(self, text: str) -> str:
        """Detect CSV delimiter"""
        # Get first few lines
        sample = "\n".join(text.split("\n")[:5])

        delimiters = {
            ",": sample.count(","),
            ";": sample.count(";"),
            "\t": sample.count("\t"),
        }

        # Return the most common one
        return max(delimiters, key=delimiters.get)


register_parser(CSVParser)
