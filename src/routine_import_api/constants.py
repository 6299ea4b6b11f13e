"""Version stamps, limits and thresholds for the routine import pipeline."""
from typing import Dict, List

PARSER_VERSION = "2.0.0"
RULESET_VERSION = "2.0.0"
EXTRACTOR_VERSION = "1.1.0"
DRAFT_VERSION = 1

MAX_FILE_SIZE_BYTES = 12 * 1024 * 1024
MAX_RAW_TEXT_CHARS = 200_000
MAX_PAGE_COUNT = 25
ARTIFACT_TTL_HOURS = 24
BACKUP_MAX_PER_CLIENT = 20
BACKUP_MAX_AGE_DAYS = 30

# Hard coverage floors for digital PDFs
PDF_MIN_DAYS_DETECTED = 1
PDF_MIN_EXERCISES_PARSED = 5
PDF_MIN_PARSEABLE_RATIO = 0.6
PDF_MIN_REQUIRED_FIELDS_RATIO = 0.7

# Soft gate for already-linear sources
NON_PDF_MIN_CANDIDATE_LINES = 5
NON_PDF_MIN_PARSEABLE_RATIO = 0.75

# Worker clamps
WORKER_DEFAULT_LIMIT = 3
WORKER_MAX_LIMIT = 20
WORKER_DEFAULT_LEASE_SECONDS = 180
WORKER_MIN_LEASE_SECONDS = 30
WORKER_MAX_LEASE_SECONDS = 900

SOURCE_TYPES = ("text", "csv", "xlsx", "docx", "pdf")

SOURCE_MIME_BY_TYPE: Dict[str, List[str]] = {
    "text": ["text/plain"],
    "csv": ["text/csv", "application/csv", "text/plain"],
    "xlsx": [
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/octet-stream",
    ],
    "docx": [
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/octet-stream",
    ],
    "pdf": ["application/pdf"],
}

SOURCE_TYPE_BY_EXTENSION = {
    ".txt": "text",
    ".csv": "csv",
    ".xlsx": "xlsx",
    ".docx": "docx",
    ".pdf": "pdf",
}

WEEK_DAY_KEYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

WEEK_DAY_LABELS = {
    "monday": "Lunes",
    "tuesday": "Martes",
    "wednesday": "Miércoles",
    "thursday": "Jueves",
    "friday": "Viernes",
    "saturday": "Sábado",
    "sunday": "Domingo",
}

# Confidence baselines per parse path
CONTRACT_CONFIDENCE = 0.9
LEGACY_CONFIDENCE = 0.65
LAYOUT_CONFIDENCE_PENALTY = 0.15
XLSX_CONFIDENCE = 0.95
CSV_CONFIDENCE = 0.9

REPS_SPECIAL_MAX_CHARS = 80
