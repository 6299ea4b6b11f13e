"""
Excel Parser

Parses .xlsx workbooks: the first worksheet, with the first non-empty row
taken as the header row.
"""

import io
import logging
from typing import Any, Dict, List, Optional

from openpyxl import load_workbook
from openpyxl.worksheet.worksheet import Worksheet

from routine_import_api.constants import XLSX_CONFIDENCE
from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from routine_import_api.parsers import register_parser
from routine_import_api.parsers.base import BaseParser
from routine_import_api.parsers.models import ParserContext
from routine_import_api.parsers.tabular import cell_to_text, detect_header_key, rows_to_draft

logger = logging.getLogger(__name__)


class ExcelParser(BaseParser):
    """Parser for Excel (.xlsx) routines"""

    @staticmethod
    def source_type() -> str:
        return "xlsx"

    def parse(self, content: bytes, context: ParserContext) -> Draft:
        self.warnings = []

        try:
            wb = load_workbook(io.BytesIO(content), data_only=True)
        except Exception as e:
            logger.exception(f"Failed to open Excel file: {e}")
            raise ParserError(f"Failed to parse Excel file: {str(e)}") from e

        if not wb.worksheets:
            self.add_warning("Workbook has no worksheets")
            return rows_to_draft([], context, XLSX_CONFIDENCE)

        ws = wb.worksheets[0]
        rows = self._read_rows(ws)
        logger.info("Excel payload: sheet '%s', %d rows", ws.title, len(rows))
        return rows_to_draft(rows, context, XLSX_CONFIDENCE)

    def _read_rows(self, ws: Worksheet) -> List[Dict[str, Any]]:
        """Rows below the header row as ``{column_key: value}`` dicts."""
        headers: Optional[List[str]] = None
        rows: List[Dict[str, Any]] = []

        for values in ws.iter_rows(values_only=True):
            if all(cell_to_text(value) == "" for value in values):
                continue
            if headers is None:
                headers = [detect_header_key(value) if value is not None else "" for value in values]
                continue
            row: Dict[str, Any] = {}
            for key, value in zip(headers, values):
                if key and key not in row:
                    row[key] = value
            rows.append(row)

        if headers is None:
            self.add_warning(f"No header row found in sheet '{ws.title}'")
        return rows


register_parser(ExcelParser)
