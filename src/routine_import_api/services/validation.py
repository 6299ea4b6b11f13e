"""
Validation / issue engine.

Pure functions from a Draft to its issues, stats and derived plan. PDF
sources face hard coverage floors; linear sources only get a review
warning when too few lines were understood.
"""

import logging
from typing import Iterable, List

from routine_import_api.constants import (
    NON_PDF_MIN_CANDIDATE_LINES,
    NON_PDF_MIN_PARSEABLE_RATIO,
    PDF_MIN_DAYS_DETECTED,
    PDF_MIN_EXERCISES_PARSED,
    PDF_MIN_PARSEABLE_RATIO,
    PDF_MIN_REQUIRED_FIELDS_RATIO,
)
from routine_import_api.models import Draft, DraftBundle, Issue, Stats
from routine_import_api.services.plan_adapter import derive_routine_plan

logger = logging.getLogger(__name__)

PDF_COVERAGE_CODES = (
    "pdf_days_below_threshold",
    "pdf_exercises_below_threshold",
    "pdf_parseable_ratio_below_threshold",
    "pdf_required_fields_ratio_below_threshold",
)


def _percent(ratio: float) -> int:
    return round(ratio * 100)


def count_low_confidence_fields(draft: Draft) -> int:
    total = 0
    for _, _, _, node in draft.iter_nodes():
        meta = node.field_meta
        for field_meta in (meta.day, meta.name, meta.sets, meta.reps, meta.note):
            if field_meta is not None and field_meta.confidence.label == "low":
                total += 1
    return total


def validate_coverage_for_pdf(draft: Draft) -> List[Issue]:
    """Hard floors on what a PDF extraction must have produced."""
    if draft.source_type != "pdf":
        return []
    coverage = draft.coverage
    issues = []

    if coverage.days_detected < PDF_MIN_DAYS_DETECTED:
        issues.append(Issue(
            severity="hard_error",
            code="pdf_days_below_threshold",
            scope="job",
            path="coverage.days_detected",
            message="No pudimos reconocer suficientes días en el PDF.",
            suggested_fix="Probá copiando y pegando el texto de la rutina.",
        ))
    if coverage.exercises_parsed < PDF_MIN_EXERCISES_PARSED:
        issues.append(Issue(
            severity="hard_error",
            code="pdf_exercises_below_threshold",
            scope="job",
            path="coverage.exercises_parsed",
            message="Se reconocieron muy pocos ejercicios en el PDF.",
            suggested_fix="Probá copiando y pegando el texto en lugar del archivo.",
        ))
    if coverage.parseable_ratio < PDF_MIN_PARSEABLE_RATIO:
        issues.append(Issue(
            severity="hard_error",
            code="pdf_parseable_ratio_below_threshold",
            scope="job",
            path="coverage.parseable_ratio",
            message=f"Solo pudimos leer {_percent(coverage.parseable_ratio)}% del contenido del PDF.",
            suggested_fix="Probá con un PDF más claro o copiando y pegando el texto.",
        ))
    if coverage.required_fields_ratio < PDF_MIN_REQUIRED_FIELDS_RATIO:
        issues.append(Issue(
            severity="hard_error",
            code="pdf_required_fields_ratio_below_threshold",
            scope="job",
            path="coverage.required_fields_ratio",
            message=(
                "Faltan datos importantes en varios ejercicios "
                f"({_percent(coverage.required_fields_ratio)}% completo)."
            ),
            suggested_fix="Completá lo faltante en pantalla o probá con un archivo más prolijo.",
        ))
    return issues


def validate_coverage(draft: Draft) -> List[Issue]:
    coverage = draft.coverage
    issues = validate_coverage_for_pdf(draft)

    unresolved = coverage.unresolved_multi_exercise_lines
    if unresolved > 0:
        issues.append(Issue(
            severity="needs_review",
            code="possible_multi_exercise_line",
            scope="job",
            path="coverage.unresolved_multi_exercise_lines",
            message=f"Hay {unresolved} línea(s) con más de un ejercicio que no se separaron solas.",
            suggested_fix="Revisalas y separá manualmente cada ejercicio.",
        ))

    prescription_lines = coverage.lines_with_prescription_detected
    nodes_out = coverage.exercise_nodes_out or coverage.exercises_parsed
    if prescription_lines > 0 and nodes_out < prescription_lines:
        issues.append(Issue(
            severity="needs_review",
            code="exercise_nodes_below_prescription_lines",
            scope="job",
            path="coverage.exercise_nodes_out",
            message=(
                f"Se detectaron {prescription_lines} líneas con ejercicios, "
                f"pero solo {nodes_out} quedaron listadas."
            ),
            suggested_fix="Revisá si hay líneas que incluyan dos ejercicios juntos.",
        ))

    if (
        draft.source_type != "pdf"
        and coverage.candidate_lines >= NON_PDF_MIN_CANDIDATE_LINES
        and coverage.parseable_ratio < NON_PDF_MIN_PARSEABLE_RATIO
    ):
        issues.append(Issue(
            severity="needs_review",
            code="low_parse_ratio_non_pdf",
            scope="job",
            path="coverage.parseable_ratio",
            message=f"Pudimos reconocer {_percent(coverage.parseable_ratio)}% de las líneas con ejercicios.",
            suggested_fix="Corregí lo que falte en pantalla o pegá el texto en un formato más claro.",
        ))

    if coverage.exercises_parsed <= 0:
        issues.append(Issue(
            severity="hard_error",
            code="no_exercises_detected",
            scope="job",
            path="coverage.exercises_parsed",
            message="No pudimos reconocer ejercicios válidos en el contenido cargado.",
            suggested_fix="Revisá el formato y probá nuevamente con archivo o texto pegado.",
        ))
    return issues


def has_blocking_issues(issues: Iterable[Issue]) -> bool:
    return any(issue.is_blocking for issue in issues)


def has_issue_code(issues: Iterable[Issue], *codes: str) -> bool:
    return any(issue.code in codes for issue in issues)


def build_draft_bundle(draft: Draft) -> DraftBundle:
    """Validate a draft and derive its plan and stats."""
    coverage_issues = validate_coverage(draft)
    plan, adapter_issues = derive_routine_plan(draft)
    issues = coverage_issues + adapter_issues
    blocking = [issue for issue in issues if issue.is_blocking]

    stats = Stats(
        days_detected=draft.coverage.days_detected,
        exercises_parsed=draft.coverage.exercises_parsed,
        issues_total=len(issues),
        blocking_issues=len(blocking),
        low_confidence_fields=count_low_confidence_fields(draft),
        parseable_ratio=draft.coverage.parseable_ratio,
        required_fields_ratio=draft.coverage.required_fields_ratio,
    )
    logger.debug("Draft validated: %d issues (%d blocking)", len(issues), len(blocking))
    return DraftBundle(draft=draft, issues=issues, derived_plan=plan, stats=stats)
