"""Utility functions."""
import base64
import hashlib
import re
import unicodedata
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from routine_import_api.constants import SOURCE_TYPE_BY_EXTENSION


_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F]")
MAX_CUSTOM_DAY_LABEL_LENGTH = 40


def to_int(s: Any) -> Optional[int]:
    """Convert a value to int, returning None if conversion fails."""
    try:
        return int(str(s).strip()) if s is not None else None
    except (TypeError, ValueError):
        return None


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def to_base64(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def from_base64(value: str) -> bytes:
    return base64.b64decode(value)


def decode_bytes(content: bytes) -> str:
    """Decode bytes to string, trying multiple encodings."""
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte
    return content.decode("latin-1")


def normalize_word(value: str) -> str:
    """Lowercase and strip diacritics (``Miércoles`` -> ``miercoles``)."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def normalize_text(value: str) -> str:
    value = value.replace("\r\n", "\n").replace("\r", "\n")
    value = value.replace("\u00a0", " ").replace("×", "x")
    return re.sub(r"[ \t]+", " ", value).strip()


def normalize_line(value: str) -> str:
    value = value.replace("\u00a0", " ").replace("×", "x")
    return re.sub(r"[ \t]+", " ", value).strip()


def compact_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def to_confidence(score: float) -> Dict[str, Any]:
    clamped = max(0.0, min(1.0, score))
    if clamped >= 0.8:
        label = "high"
    elif clamped >= 0.55:
        label = "medium"
    else:
        label = "low"
    return {"score": round(clamped, 4), "label": label}


def make_provenance(raw: str, line_index: int, source_page: Optional[int] = None) -> Dict[str, Any]:
    return {
        "source_page": source_page,
        "line_index": line_index,
        "line_span": [line_index, line_index],
        "bbox": None,
        "raw_snippet": raw[:500],
    }


def make_id() -> str:
    return str(uuid.uuid4())


def map_spanish_weekday_to_key(raw: str) -> Optional[str]:
    value = normalize_word(raw.strip())
    for prefix, key in (
        ("lunes", "monday"),
        ("martes", "tuesday"),
        ("miercoles", "wednesday"),
        ("jueves", "thursday"),
        ("viernes", "friday"),
        ("sabado", "saturday"),
        ("domingo", "sunday"),
    ):
        if value.startswith(prefix):
            return key
    return None


def infer_source_type_from_name(file_name: str) -> Optional[str]:
    lower = (file_name or "").lower()
    for extension, source_type in SOURCE_TYPE_BY_EXTENSION.items():
        if lower.endswith(extension):
            return source_type
    return None


def sanitize_custom_label(value: Optional[str], fallback: str) -> str:
    cleaned = compact_whitespace(_CONTROL_CHARS.sub("", value or ""))[:MAX_CUSTOM_DAY_LABEL_LENGTH]
    return cleaned or fallback


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def add_hours_iso(hours: float, start: Optional[datetime] = None) -> str:
    return ((start or utc_now()) + timedelta(hours=hours)).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
