"""
Base Parser

Abstract base class for the per-source parsers. Every parser turns raw
artifact bytes into a ``Draft``.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

from routine_import_api.models import Draft
from routine_import_api.parsers.models import ParserContext
from routine_import_api.utils import decode_bytes

logger = logging.getLogger(__name__)


class BaseParser(ABC):
    """Abstract base class for source parsers"""

    def __init__(self):
        self.warnings: List[str] = []

    @staticmethod
    @abstractmethod
    def source_type() -> str:
        """Return the source type this parser handles (e.g. 'csv')."""
        ...

    @abstractmethod
    def parse(self, content: bytes, context: ParserContext) -> Draft:
        """
        Parse source bytes into a draft.

        Args:
            content: Raw artifact bytes
            context: Version stamps and layout flags for the draft

        Returns:
            Draft with days, blocks, nodes and coverage counters

        Raises:
            ParserError: If the payload cannot be read at all
        """
        ...

    def _decode_content(self, content: bytes) -> str:
        return decode_bytes(content)

    def add_warning(self, warning: str):
        """Add a warning message"""
        self.warnings.append(warning)
        logger.warning(f"Parser warning: {warning}")
