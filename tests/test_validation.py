"""Tests for the issue engine and draft bundles."""

from routine_import_api.models import Coverage, Draft
from routine_import_api.parsers import parse_payload
from routine_import_api.services.validation import (
    build_draft_bundle,
    has_blocking_issues,
    has_issue_code,
    validate_coverage,
    validate_coverage_for_pdf,
)


def _draft(text):
    return parse_payload("text", text.encode("utf-8"))


def _codes(issues):
    return [issue.code for issue in issues]


def _pdf_draft(**coverage):
    return Draft(
        source_type="pdf",
        parser_version="p",
        ruleset_version="r",
        extractor_version="e",
        coverage=Coverage(**coverage),
    )


class TestPdfCoverage:
    def test_healthy_pdf_passes(self):
        draft = _pdf_draft(
            days_detected=2,
            exercises_parsed=8,
            parseable_ratio=0.9,
            required_fields_ratio=1.0,
        )
        assert validate_coverage_for_pdf(draft) == []

    def test_every_floor_is_reported(self):
        issues = validate_coverage_for_pdf(_pdf_draft(exercises_parsed=2, parseable_ratio=0.4))
        assert _codes(issues) == [
            "pdf_days_below_threshold",
            "pdf_exercises_below_threshold",
            "pdf_parseable_ratio_below_threshold",
            "pdf_required_fields_ratio_below_threshold",
        ]
        assert all(issue.severity == "hard_error" for issue in issues)
        assert "40%" in issues[2].message

    def test_non_pdf_is_skipped(self):
        assert validate_coverage_for_pdf(_draft("Sentadilla 4x8")) == []


class TestValidateCoverage:
    def test_clean_routine(self, sample_routine):
        assert validate_coverage(_draft(sample_routine)) == []

    def test_no_exercises(self):
        issues = validate_coverage(_draft("Hola profe"))
        assert _codes(issues) == ["no_exercises_detected"]
        assert has_blocking_issues(issues)

    def test_low_parse_ratio_is_review_only(self):
        draft = _draft("Sentadilla 4x8\nMovilidad general\nPress banca 3x10\nElongacion final\nRemo 3x12")
        issues = validate_coverage(draft)

        assert draft.coverage.parseable_ratio == 0.6
        assert has_issue_code(issues, "low_parse_ratio_non_pdf")
        assert "60%" in issues[0].message
        assert not has_blocking_issues(issues)

    def test_low_ratio_needs_enough_lines(self):
        issues = validate_coverage(_draft("Sentadilla 4x8\nMovilidad general"))
        assert not has_issue_code(issues, "low_parse_ratio_non_pdf")

    def test_unresolved_multi_exercise_line(self):
        issues = validate_coverage(_draft("Lunes\nPress Banca (3x8) 4x12"))
        assert has_issue_code(issues, "possible_multi_exercise_line")

    def test_nodes_below_prescription_lines(self):
        draft = _draft("Sentadilla 4x8\nRemo 3x10")
        draft.coverage.lines_with_prescription_detected = 3
        issues = validate_coverage(draft)
        assert _codes(issues) == ["exercise_nodes_below_prescription_lines"]
        assert issues[0].severity == "needs_review"


class TestBuildDraftBundle:
    def test_stats(self, sample_routine):
        bundle = build_draft_bundle(_draft(sample_routine))

        assert bundle.issues == []
        assert bundle.stats.days_detected == 2
        assert bundle.stats.exercises_parsed == 4
        assert bundle.stats.blocking_issues == 0
        assert bundle.stats.low_confidence_fields == 0
        assert set(bundle.derived_plan) == {
            "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
        }

    def test_adapter_issues_are_merged(self):
        bundle = build_draft_bundle(_draft("Lunes\nSentadilla 4x8\nLunes\nPress banca 3x10"))

        assert _codes(bundle.issues) == ["day_mapping_collision"]
        assert bundle.stats.issues_total == 1
        assert bundle.stats.blocking_issues == 1
