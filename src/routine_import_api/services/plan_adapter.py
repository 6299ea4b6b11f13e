"""
Draft to routine plan adapter.

Flattens each mapped draft day into the weekly plan the routine editor
stores, keeping block metadata so circuits and supersets still render as
groups. Problems that stop a commit are returned as issues, never raised.
"""

import logging
from functools import partial
from typing import Dict, List, Optional, Tuple

from routine_import_api.constants import REPS_SPECIAL_MAX_CHARS, WEEK_DAY_KEYS, WEEK_DAY_LABELS
from routine_import_api.models import Draft, DraftBlock, DraftNode, Issue, RoutineDay, RoutineExercise
from routine_import_api.utils import sanitize_custom_label

logger = logging.getLogger(__name__)

MAX_DAYS_PER_ROUTINE = 7
MAX_BLOCK_LABEL_LENGTH = 40
UNNAMED_EXERCISE = "Ejercicio sin nombre"

BLOCK_TYPE_BY_DRAFT_TYPE = {"circuit": "circuit", "superset": "superset"}


def create_empty_plan() -> Dict[str, RoutineDay]:
    return {key: RoutineDay(key=key, label=WEEK_DAY_LABELS[key]) for key in WEEK_DAY_KEYS}


def _node_path(day_index: int, block_index: int, node_index: int, field: str) -> str:
    return f"days.{day_index}.blocks.{block_index}.nodes.{node_index}.{field}"


def _circuit_rounds(block: DraftBlock, node: DraftNode) -> Optional[int]:
    if block.block_type != "circuit":
        return None
    context = node.parsed_shape.block if node.parsed_shape is not None else None
    if context is not None and context.kind == "circuit":
        return context.rounds
    return node.sets


def _node_issues(
    node: DraftNode, name: str, reps_mode: str, reps_special: Optional[str], path
) -> List[Issue]:
    issues = []
    display_name = name or "sin nombre"
    if not name:
        issues.append(Issue(
            severity="needs_review_blocking",
            code="missing_exercise_name",
            scope="node",
            path=path("raw_exercise_name"),
            message="Falta el nombre del ejercicio.",
            provenance=node.field_meta.name.provenance,
            suggested_fix="Ingresá un nombre de ejercicio.",
        ))
    if not node.sets or node.sets <= 0:
        issues.append(Issue(
            severity="needs_review_blocking",
            code="missing_sets",
            scope="field",
            path=path("sets"),
            message=f'El ejercicio "{display_name}" no tiene series válidas.',
            provenance=node.field_meta.sets.provenance,
            suggested_fix="Definí un valor de series mayor a 0.",
        ))
    if reps_mode == "special":
        if not reps_special:
            issues.append(Issue(
                severity="needs_review_blocking",
                code="missing_special_reps",
                scope="field",
                path=path("reps_special"),
                message=f'El ejercicio "{display_name}" no tiene indicación de repeticiones especiales.',
                provenance=node.field_meta.reps.provenance,
                suggested_fix="Completá el texto de repeticiones especiales (ej: AMRAP, 30 segundos).",
            ))
    elif not node.reps_min or node.reps_min <= 0:
        issues.append(Issue(
            severity="needs_review_blocking",
            code="missing_reps",
            scope="field",
            path=path("reps_min"),
            message=f'El ejercicio "{display_name}" no tiene repeticiones válidas.',
            provenance=node.field_meta.reps.provenance,
            suggested_fix="Definí repeticiones mínimas mayores a 0.",
        ))
    return issues


def derive_routine_plan(draft: Draft) -> Tuple[Dict[str, RoutineDay], List[Issue]]:
    """Map a draft onto the seven-day plan.

    Returns:
        Tuple of (plan keyed by weekday, adapter issues)
    """
    plan = create_empty_plan()
    issues: List[Issue] = []
    mapped_days = set()
    custom_labels = draft.presentation.day_label_mode == "custom"

    if len(draft.days) > MAX_DAYS_PER_ROUTINE:
        issues.append(Issue(
            severity="hard_error",
            code="too_many_days_for_v1",
            scope="job",
            path="days",
            message=f"Se detectaron {len(draft.days)} días y una rutina admite hasta 7 días.",
            suggested_fix="Asigná un día por bloque o dividí el plan en dos rutinas.",
        ))

    for day_index, day in enumerate(draft.days):
        mapped_day = day.mapped_day_key
        if not mapped_day and custom_labels and day_index < len(WEEK_DAY_KEYS):
            mapped_day = WEEK_DAY_KEYS[day_index]
        if not mapped_day:
            issues.append(Issue(
                severity="needs_review_blocking",
                code="day_mapping_required",
                scope="day",
                path=f"days.{day_index}.mapped_day_key",
                message=f'El día "{day.source_label}" no está mapeado a un día destino.',
                suggested_fix="Elegí el día de destino antes de confirmar.",
            ))
            continue
        if mapped_day in mapped_days:
            issues.append(Issue(
                severity="needs_review_blocking",
                code="day_mapping_collision",
                scope="day",
                path=f"days.{day_index}.mapped_day_key",
                message="Hay dos días apuntando al mismo destino.",
                suggested_fix="Usá un destino distinto por día detectado.",
            ))
            continue
        mapped_days.add(mapped_day)

        target = plan[mapped_day]
        if custom_labels:
            target.label = sanitize_custom_label(day.display_label or day.source_label, target.label)

        for block_index, block in enumerate(day.blocks):
            block_order = block_index
            block_type = BLOCK_TYPE_BY_DRAFT_TYPE.get(block.block_type, "normal")
            block_label = f"Bloque {block_order + 1}"[:MAX_BLOCK_LABEL_LENGTH]

            for node_index, node in enumerate(block.nodes):
                path = partial(_node_path, day_index, block_index, node_index)

                name = (node.raw_exercise_name or "").strip()
                shape = node.parsed_shape
                reps_mode = "special" if node.reps_mode == "special" or (shape and shape.kind == "amrap") else "number"
                reps_special = (node.reps_special or "").strip()
                if not reps_special and reps_mode == "special":
                    reps_special = (node.reps_text or "").strip()
                reps_special = reps_special[:REPS_SPECIAL_MAX_CHARS] or None

                issues.extend(_node_issues(node, name, reps_mode, reps_special, path))

                sets = node.sets or 0
                reps_min = node.reps_min or 0
                reps_max = node.reps_max
                is_number = reps_mode == "number"
                target.exercises.append(RoutineExercise(
                    id=f"{day.id}-{node.id}",
                    name=name or UNNAMED_EXERCISE,
                    order=len(target.exercises),
                    note=node.note,
                    total_sets=sets if sets > 0 else None,
                    reps_mode=reps_mode,
                    reps_special=reps_special if not is_number else None,
                    reps_min=reps_min if is_number and reps_min > 0 else None,
                    reps_max=reps_max if is_number and reps_max and reps_min and reps_max >= reps_min else None,
                    show_range=bool(is_number and reps_max and reps_min and reps_max > reps_min),
                    block_type=block_type,
                    block_id=block.id,
                    block_label=block_label,
                    block_order=block_order,
                    circuit_rounds=_circuit_rounds(block, node),
                    import_shape=shape.model_dump() if shape is not None else None,
                ))

    logger.debug("Derived plan: %d mapped days, %d adapter issues", len(mapped_days), len(issues))
    return plan, issues
