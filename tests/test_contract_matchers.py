"""Tests for contract matchers, ladder entries and circuit entries."""

import pytest

from routine_import_api.parsers.contract_matchers import (
    parse_circuit_entry,
    parse_contract_candidate,
    parse_ladder_entries,
    split_circuit_segments,
)
from routine_import_api.parsers.legacy_matchers import parse_legacy_line


class TestParseContractCandidate:
    def test_classic_sets_reps(self):
        candidate = parse_contract_candidate("Sentadilla 3x8")
        assert candidate.matcher_id == "classic_sets_reps"
        assert candidate.name == "Sentadilla"
        assert candidate.shape == {
            "version": 1,
            "kind": "fixed",
            "sets": 3,
            "reps_min": 8,
            "reps_max": None,
            "evidence": "explicit",
            "inference_reasons": [],
        }

    def test_classic_range(self):
        candidate = parse_contract_candidate("Remo 4x8-10")
        assert candidate.matcher_id == "classic_sets_range"
        assert candidate.shape["kind"] == "range"
        assert (candidate.shape["sets"], candidate.shape["reps_min"], candidate.shape["reps_max"]) == (4, 8, 10)

    def test_classic_amrap(self):
        candidate = parse_contract_candidate("Dominadas 3xAMRAP")
        assert candidate.matcher_id == "classic_sets_amrap"
        assert candidate.shape["kind"] == "amrap"
        assert candidate.shape["sets"] == 3

    def test_scheme_number_run(self):
        candidate = parse_contract_candidate("Press banca 8,8,8")
        assert candidate.matcher_id == "scheme_number_run"
        assert candidate.name == "Press banca"
        assert candidate.shape["sets"] == 3
        assert candidate.shape["reps_list"] == [8, 8, 8]

    def test_reps_by_series_is_reordered(self):
        candidate = parse_contract_candidate("Sentadilla 12x4")
        assert candidate.matcher_id == "classic_reordered_reps_x_sets"
        assert candidate.shape["sets"] == 4
        assert candidate.shape["reps_min"] == 12
        assert candidate.shape["evidence"] == "heuristic"
        assert candidate.shape["inference_reasons"] == ["reps_x_series_reordered"]

    def test_series_wording(self):
        candidate = parse_contract_candidate("Fondos 3 series de 12")
        assert candidate.matcher_id == "series_wording"
        assert candidate.name == "Fondos"
        assert (candidate.shape["sets"], candidate.shape["reps_min"]) == (3, 12)

    def test_reps_by_sets_wording(self):
        candidate = parse_contract_candidate("Press banca 8 reps x 3 series")
        assert candidate.matcher_id == "reps_x_sets_wording"
        assert (candidate.shape["sets"], candidate.shape["reps_min"]) == (3, 8)

    def test_sets_first_name_after(self):
        candidate = parse_contract_candidate("3 series x12 de Banco Plano")
        assert candidate.matcher_id == "sets_first_name_after"
        assert candidate.name == "Banco Plano"
        assert (candidate.shape["sets"], candidate.shape["reps_min"]) == (3, 12)

    def test_narrative_prefix_is_stripped(self):
        raw = "Hoy hacemos sentadilla 3x8"
        candidate = parse_contract_candidate(raw)
        assert candidate.name == "sentadilla"
        assert raw[candidate.name_start:candidate.name_end] == "sentadilla"
        assert "narrative_prefix_removed" in candidate.shape["inference_reasons"]
        assert candidate.shape["evidence"] == "heuristic"

    def test_bullet_is_ignored(self):
        candidate = parse_contract_candidate("• Sentadilla 3x8")
        assert candidate.name == "Sentadilla"

    def test_leading_whitespace_keeps_offsets_aligned(self):
        raw = "   Remo 3x10"
        candidate = parse_contract_candidate(raw)
        assert raw[candidate.name_start:candidate.name_end] == "Remo"

    @pytest.mark.parametrize("line", ["", "Movilidad general", "Hola profe"])
    def test_no_prescription_returns_none(self, line):
        assert parse_contract_candidate(line) is None


class TestLegacyFallback:
    def test_classic_with_por(self):
        match = parse_legacy_line("Curl martillo 3 por 12")
        assert match.name == "Curl martillo"
        assert match.shape["kind"] == "fixed"
        assert match.shape["evidence"] == "heuristic"

    def test_dash_scheme(self):
        match = parse_legacy_line("Curl 12-10-8")
        assert match.shape["kind"] == "scheme"
        assert match.shape["reps_list"] == [12, 10, 8]

    def test_plain_text_is_not_matched(self):
        assert parse_legacy_line("Estiramientos varios") is None


class TestLadderEntries:
    def test_weight_by_reps_entries(self):
        entries = parse_ladder_entries("60x12, 70x10")
        assert entries == [
            {"weight": 60.0, "reps": 12, "unit": None},
            {"weight": 70.0, "reps": 10, "unit": None},
        ]

    def test_unit_is_kept(self):
        entries = parse_ladder_entries("80kg x 8")
        assert entries == [{"weight": 80.0, "reps": 8, "unit": "kg"}]

    def test_decimal_weight(self):
        entries = parse_ladder_entries("82,5 x 6")
        assert entries[0]["weight"] == 82.5

    def test_text_without_entries(self):
        assert parse_ladder_entries("subir de a poco") == []


class TestCircuitEntries:
    def test_reps_then_name(self):
        entry = parse_circuit_entry("10 burpees")
        assert entry["name"] == "burpees"
        assert entry["shape"]["reps_min"] == 10
        assert entry["shape"]["inference_reasons"] == ["circuit_grouped"]

    def test_name_then_reps(self):
        entry = parse_circuit_entry("Curl biceps 12")
        assert entry["name"] == "Curl biceps"
        assert entry["shape"]["reps_min"] == 12

    def test_full_prescription_is_kept(self):
        entry = parse_circuit_entry("Sentadilla 4x8")
        assert entry["shape"]["sets"] == 4
        assert entry["shape"]["inference_reasons"] == []

    def test_duration_is_not_an_entry(self):
        assert parse_circuit_entry("30 seg descanso") is None

    def test_split_on_commas_and_y(self):
        assert split_circuit_segments("10 burpees, 15 sentadillas y 20 abdominales") == [
            "10 burpees",
            "15 sentadillas",
            "20 abdominales",
        ]
