"""Tests for mapping drafts onto the weekly routine plan."""

from routine_import_api.parsers import parse_payload
from routine_import_api.services.plan_adapter import create_empty_plan, derive_routine_plan


def _draft(text):
    return parse_payload("text", text.encode("utf-8"))


def _codes(issues):
    return [issue.code for issue in issues]


def test_empty_plan_has_every_weekday():
    plan = create_empty_plan()
    assert list(plan) == ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    assert all(day.exercises == [] for day in plan.values())


class TestDeriveRoutinePlan:
    def test_weekday_routine(self, sample_routine):
        draft = _draft(sample_routine)
        plan, issues = derive_routine_plan(draft)

        assert issues == []
        monday = plan["monday"]
        assert [exercise.name for exercise in monday.exercises] == ["Sentadilla", "Press banca"]
        squat, bench = monday.exercises
        assert squat.id == f"{draft.days[0].id}-{draft.days[0].blocks[0].nodes[0].id}"
        assert squat.order == 0
        assert squat.total_sets == 4
        assert (squat.reps_min, squat.reps_max, squat.show_range) == (8, None, False)
        assert (bench.reps_min, bench.reps_max, bench.show_range) == (8, 10, True)
        assert squat.block_type == "normal"
        assert squat.block_label == "Bloque 1"
        assert squat.import_shape["kind"] == "fixed"

        pullups, row = plan["tuesday"].exercises
        assert pullups.reps_mode == "special"
        assert pullups.reps_special == "AMRAP"
        assert pullups.reps_min is None
        assert row.reps_special == "8-8-8"
        assert plan["wednesday"].exercises == []

    def test_missing_sets(self):
        draft = _draft("Lunes\nSentadilla 4x8")
        draft.days[0].blocks[0].nodes[0].sets = None
        plan, issues = derive_routine_plan(draft)

        assert _codes(issues) == ["missing_sets"]
        assert issues[0].path == "days.0.blocks.0.nodes.0.sets"
        assert issues[0].severity == "needs_review_blocking"
        assert plan["monday"].exercises[0].total_sets is None

    def test_missing_reps(self):
        draft = _draft("Lunes\nSentadilla 4x8")
        draft.days[0].blocks[0].nodes[0].reps_min = None
        _, issues = derive_routine_plan(draft)
        assert _codes(issues) == ["missing_reps"]

    def test_missing_special_reps(self):
        draft = _draft("Lunes\nDominadas 3xAMRAP")
        node = draft.days[0].blocks[0].nodes[0]
        node.reps_special = None
        node.reps_text = None
        _, issues = derive_routine_plan(draft)
        assert _codes(issues) == ["missing_special_reps"]

    def test_missing_name(self):
        draft = _draft("Lunes\nSentadilla 4x8")
        draft.days[0].blocks[0].nodes[0].raw_exercise_name = "  "
        plan, issues = derive_routine_plan(draft)

        assert _codes(issues) == ["missing_exercise_name"]
        assert plan["monday"].exercises[0].name == "Ejercicio sin nombre"

    def test_day_collision(self):
        plan, issues = derive_routine_plan(_draft("Lunes\nSentadilla 4x8\nLunes\nPress banca 3x10"))

        assert _codes(issues) == ["day_mapping_collision"]
        assert issues[0].path == "days.1.mapped_day_key"
        assert [exercise.name for exercise in plan["monday"].exercises] == ["Sentadilla"]

    def test_unmapped_day(self):
        draft = _draft("Lunes\nSentadilla 4x8\nMartes\nRemo 3x10")
        draft.days[1].mapped_day_key = None
        _, issues = derive_routine_plan(draft)
        assert _codes(issues) == ["day_mapping_required"]

    def test_too_many_days(self):
        text = "\n".join(f"Día {index}\nSentadilla 4x8" for index in range(1, 9))
        _, issues = derive_routine_plan(_draft(text))
        assert "too_many_days_for_v1" in _codes(issues)

    def test_custom_labels_map_in_order(self):
        plan, issues = derive_routine_plan(
            _draft("Día de piernas\nSentadilla 4x8\nDía de empuje\nPress banca 3x10")
        )

        assert issues == []
        assert plan["monday"].label == "Día de piernas"
        assert plan["tuesday"].label == "Día de empuje"
        assert plan["tuesday"].exercises[0].name == "Press banca"

    def test_circuit_block(self):
        plan, _ = derive_routine_plan(_draft("Lunes\nCircuito x3 vueltas\n10 burpees, 15 sentadillas"))

        burpees, squats = plan["monday"].exercises
        assert burpees.block_type == "circuit"
        assert burpees.circuit_rounds == 3
        assert burpees.block_id == squats.block_id
        assert (burpees.total_sets, burpees.reps_min) == (3, 10)
