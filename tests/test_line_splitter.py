"""Tests for splitting lines that hold more than one exercise."""

from routine_import_api.parsers.line_splitter import split_multi_exercise_line


def test_single_exercise_is_kept_whole():
    result = split_multi_exercise_line("Sentadilla 4x8")
    assert result.segments == ["Sentadilla 4x8"]
    assert result.stage is None
    assert result.splits_applied == 0
    assert not result.unresolved


def test_parenthesis_boundary():
    result = split_multi_exercise_line("Vuelos Laterales (3x12)Vuelos Posteriores (3x12)")
    assert result.stage == "parenthesis"
    assert result.segments == ["Vuelos Laterales (3x12)", "Vuelos Posteriores (3x12)"]
    assert result.splits_applied == 1


def test_y_separator():
    result = split_multi_exercise_line("Sentadilla 3x8 y Press banca 4x10")
    assert result.stage == "separator"
    assert result.segments == ["Sentadilla 3x8", "Press banca 4x10"]


def test_semicolon_separator():
    result = split_multi_exercise_line("Remo 3x10; Curl 3x12")
    assert result.stage == "separator"
    assert len(result.segments) == 2


def test_gap_between_prescriptions():
    result = split_multi_exercise_line("Sentadilla 3x8 tempo lento, Press banca 4x10")
    assert result.stage == "gap"
    assert result.segments == ["Sentadilla 3x8 tempo lento,", "Press banca 4x10"]


def test_rep_list_is_not_split():
    result = split_multi_exercise_line("Press banca 8,8,8")
    assert result.segments == ["Press banca 8,8,8"]
    assert result.stage is None


def test_load_ladder_is_not_split():
    result = split_multi_exercise_line("Press banca 60x12, 70x10")
    assert result.segments == ["Press banca 60x12, 70x10"]
    assert not result.unresolved


def test_unsplittable_line_is_flagged():
    result = split_multi_exercise_line("Press Banca (3x8) 4x12")
    assert result.segments == ["Press Banca (3x8) 4x12"]
    assert result.unresolved
    assert result.splits_applied == 0


def test_empty_line():
    result = split_multi_exercise_line("   ")
    assert result.segments == []
