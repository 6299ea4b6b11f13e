"""Tests for shared helpers."""

import pytest

from routine_import_api.utils import (
    decode_bytes,
    infer_source_type_from_name,
    map_spanish_weekday_to_key,
    to_confidence,
    to_int,
)


class TestDecodeBytes:
    def test_utf8(self):
        assert decode_bytes("Miércoles".encode("utf-8")) == "Miércoles"

    def test_utf8_bom_is_stripped(self):
        assert decode_bytes("\ufeffLunes".encode("utf-8")) == "Lunes"

    def test_windows_quotes_and_dashes(self):
        raw = "Sentadilla 4x8 “lento” – pausa".encode("cp1252")
        assert decode_bytes(raw) == "Sentadilla 4x8 “lento” – pausa"

    def test_latin1(self):
        assert decode_bytes("Sábado".encode("latin-1")) == "Sábado"

    def test_bytes_undefined_in_cp1252(self):
        assert decode_bytes(b"Remo 3x12 \x81") == "Remo 3x12 \x81"


@pytest.mark.parametrize(
    "score,label",
    [(0.95, "high"), (0.8, "high"), (0.55, "medium"), (0.54, "low"), (1.7, "high")],
)
def test_to_confidence(score, label):
    assert to_confidence(score)["label"] == label
    assert 0 <= to_confidence(score)["score"] <= 1


@pytest.mark.parametrize(
    "raw,key",
    [("Lunes", "monday"), ("MIÉRCOLES", "wednesday"), ("sábado 12/3", "saturday"), ("Día 1", None)],
)
def test_map_spanish_weekday_to_key(raw, key):
    assert map_spanish_weekday_to_key(raw) == key


def test_infer_source_type_from_name():
    assert infer_source_type_from_name("Rutina.XLSX") == "xlsx"
    assert infer_source_type_from_name("foto.png") is None


def test_to_int():
    assert to_int(" 4 ") == 4
    assert to_int("4x") is None
    assert to_int(None) is None
