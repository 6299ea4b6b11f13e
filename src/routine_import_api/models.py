"""Data models for routine imports."""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from routine_import_api.constants import DRAFT_VERSION


SourceType = Literal["text", "csv", "xlsx", "docx", "pdf"]
JobScope = Literal["client", "template"]
JobStatus = Literal[
    "queued",
    "processing",
    "ready",
    "failed",
    "committing",
    "committed",
    "rolled_back",
    "expired",
]
ProgressStage = Literal[
    "queued",
    "processing",
    "extracting",
    "parsing",
    "validating",
    "adapting",
    "ready",
    "failed",
    "committing",
    "committed",
    "rolled_back",
    "expired",
]
CommitPolicy = Literal["overwrite_all", "overwrite_days"]
WeekDayKey = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
IssueSeverity = Literal["hard_error", "needs_review_blocking", "needs_review", "warning", "autofix_applied"]
IssueScope = Literal["job", "day", "block", "node", "field"]
DayLabelMode = Literal["weekday", "sequential", "custom"]
BlockType = Literal["single", "superset", "circuit", "unknown"]
RepsMode = Literal["number", "special"]
Evidence = Literal["explicit", "heuristic"]

BLOCKING_SEVERITIES = ("hard_error", "needs_review_blocking")


# ============================================================================
# Prescription shapes
# ============================================================================

class CircuitContext(BaseModel):
    """Circuit header a node was parsed under."""
    kind: Literal["circuit"] = "circuit"
    rounds: int = Field(..., ge=1)
    header_text: str
    header_unit_id: str


class SupersetContext(BaseModel):
    kind: Literal["superset"] = "superset"
    group_id: Optional[str] = None
    index: Optional[int] = None
    header_text: str
    header_unit_id: str


BlockContext = Annotated[Union[CircuitContext, SupersetContext], Field(discriminator="kind")]


class _ShapeBase(BaseModel):
    version: Literal[1] = 1
    evidence: Evidence = "explicit"
    inference_reasons: List[str] = Field(default_factory=list)
    block: Optional[BlockContext] = None


class FixedShape(_ShapeBase):
    """``sets x reps`` with a single rep count."""
    kind: Literal["fixed"] = "fixed"
    sets: int = Field(..., ge=1)
    reps_min: int = Field(..., ge=1)
    reps_max: None = None


class RangeShape(_ShapeBase):
    kind: Literal["range"] = "range"
    sets: int = Field(..., ge=1)
    reps_min: int = Field(..., ge=1)
    reps_max: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.reps_max < self.reps_min:
            raise ValueError("reps_max must be >= reps_min")
        return self


class SchemeShape(_ShapeBase):
    """Per-set rep counts such as ``8,8,6``."""
    kind: Literal["scheme"] = "scheme"
    sets: int = Field(..., ge=1)
    reps_list: List[Annotated[int, Field(ge=1)]]

    @model_validator(mode="after")
    def _check_length(self):
        if len(self.reps_list) != self.sets:
            raise ValueError("reps_list length must match sets")
        return self


class AmrapShape(_ShapeBase):
    kind: Literal["amrap"] = "amrap"
    sets: int = Field(..., ge=1)


class LoadLadderEntry(BaseModel):
    weight: float = Field(..., gt=0)
    reps: int = Field(..., ge=1)
    unit: Optional[Literal["kg", "lb"]] = None


class LoadLadderShape(_ShapeBase):
    """One ``weight x reps`` entry per set."""
    kind: Literal["load_ladder"] = "load_ladder"
    load_entries: List[LoadLadderEntry] = Field(..., min_length=2)


PrescriptionShape = Annotated[
    Union[FixedShape, RangeShape, SchemeShape, AmrapShape, LoadLadderShape],
    Field(discriminator="kind"),
]


# ============================================================================
# Draft document
# ============================================================================

class Confidence(BaseModel):
    score: float = Field(..., ge=0, le=1)
    label: Literal["high", "medium", "low"]


class Provenance(BaseModel):
    source_page: Optional[int] = None
    line_index: Optional[int] = None
    line_span: Optional[List[int]] = None
    bbox: Optional[List[float]] = None
    raw_snippet: str = ""


class FieldMeta(BaseModel):
    confidence: Confidence
    provenance: Optional[Provenance] = None


class NodeFieldMeta(BaseModel):
    day: FieldMeta
    name: FieldMeta
    sets: FieldMeta
    reps: FieldMeta
    note: Optional[FieldMeta] = None


class SplitMeta(BaseModel):
    """How a node's name and note were separated."""
    decision: Literal["not_applied", "split_kept", "split_reverted", "split_kept_note_dropped"]
    reason: str
    confidence_delta: Literal["none", "medium", "low"] = "none"
    tail_original: Optional[str] = None


class NodeDebug(BaseModel):
    path: Literal["contract", "legacy", "tabular"]
    matcher_id: Optional[str] = None
    struct_tokens_used_count: int = Field(default=0, ge=0)


class DraftNode(BaseModel):
    """One exercise occurrence in the draft."""
    id: str = Field(..., min_length=1)
    source_raw_name: str = Field(..., min_length=1)
    raw_exercise_name: str = Field(..., min_length=1)
    sets: Optional[int] = Field(default=None, ge=1)
    reps_mode: RepsMode = "number"
    reps_text: Optional[str] = None
    reps_min: Optional[int] = Field(default=None, ge=1)
    reps_max: Optional[int] = Field(default=None, ge=1)
    reps_special: Optional[str] = Field(default=None, max_length=80)
    note: Optional[str] = None
    parsed_shape: Optional[PrescriptionShape] = None
    split_meta: Optional[SplitMeta] = None
    field_meta: NodeFieldMeta
    debug: Optional[NodeDebug] = None

    class Config:
        extra = "ignore"


class DraftBlock(BaseModel):
    id: str = Field(..., min_length=1)
    block_type: BlockType = "single"
    nodes: List[DraftNode] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class DraftDay(BaseModel):
    id: str = Field(..., min_length=1)
    source_label: str = Field(..., min_length=1)
    display_label: Optional[str] = Field(default=None, max_length=40)
    mapped_day_key: Optional[WeekDayKey] = None
    blocks: List[DraftBlock] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class Coverage(BaseModel):
    days_detected: int = Field(default=0, ge=0)
    exercises_parsed: int = Field(default=0, ge=0)
    candidate_lines: int = Field(default=0, ge=0)
    parsed_lines: int = Field(default=0, ge=0)
    parseable_ratio: float = Field(default=0, ge=0, le=1)
    required_fields_ratio: float = Field(default=0, ge=0, le=1)
    lines_in: int = Field(default=0, ge=0)
    lines_after_split: int = Field(default=0, ge=0)
    lines_with_prescription_detected: int = Field(default=0, ge=0)
    exercise_nodes_out: int = Field(default=0, ge=0)
    multi_exercise_splits_applied: int = Field(default=0, ge=0)
    unresolved_multi_exercise_lines: int = Field(default=0, ge=0)
    contract_lines_total: int = Field(default=0, ge=0)
    contract_lines_parsed: int = Field(default=0, ge=0)
    contract_lines_failed_invariants: int = Field(default=0, ge=0)
    legacy_fallback_hits: int = Field(default=0, ge=0)


class Presentation(BaseModel):
    day_label_mode: DayLabelMode = "weekday"


class Draft(BaseModel):
    """Parse result of one import job, replaced wholesale on edit."""
    version: int = Field(default=DRAFT_VERSION, ge=1)
    source_type: SourceType
    parser_version: str = Field(..., min_length=1)
    ruleset_version: str = Field(..., min_length=1)
    extractor_version: str = Field(..., min_length=1)
    coverage: Coverage = Field(default_factory=Coverage)
    presentation: Presentation = Field(default_factory=Presentation)
    days: List[DraftDay] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    class Config:
        extra = "ignore"

    def iter_nodes(self):
        """Yield ``(day_index, block_index, node_index, node)`` in draft order."""
        for day_index, day in enumerate(self.days):
            for block_index, block in enumerate(day.blocks):
                for node_index, node in enumerate(block.nodes):
                    yield day_index, block_index, node_index, node


# ============================================================================
# Issues, stats and the derived plan
# ============================================================================

class Issue(BaseModel):
    severity: IssueSeverity
    code: str = Field(..., min_length=1)
    scope: IssueScope
    path: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    provenance: Optional[Provenance] = None
    suggested_fix: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES


class Stats(BaseModel):
    days_detected: int = 0
    exercises_parsed: int = 0
    issues_total: int = 0
    blocking_issues: int = 0
    low_confidence_fields: int = 0
    parseable_ratio: float = 0
    required_fields_ratio: float = 0


class RoutineExercise(BaseModel):
    """Exercise as stored in a live routine plan."""
    id: str
    name: str
    scheme: str = ""
    order: int = 0
    note: Optional[str] = None
    total_sets: Optional[int] = None
    reps_mode: RepsMode = "number"
    reps_special: Optional[str] = None
    reps_min: Optional[int] = None
    reps_max: Optional[int] = None
    show_range: bool = False
    block_type: Literal["normal", "circuit", "superset"] = "normal"
    block_id: Optional[str] = None
    block_label: Optional[str] = None
    block_order: Optional[int] = None
    circuit_rounds: Optional[int] = None
    import_shape: Optional[Dict[str, Any]] = None

    class Config:
        extra = "ignore"


class RoutineDay(BaseModel):
    key: WeekDayKey
    label: str
    exercises: List[RoutineExercise] = Field(default_factory=list)


RoutinePlan = Dict[str, RoutineDay]


class DraftBundle(BaseModel):
    """Draft plus everything derived from it by validation."""
    draft: Draft
    issues: List[Issue] = Field(default_factory=list)
    derived_plan: Dict[str, RoutineDay] = Field(default_factory=dict)
    stats: Stats = Field(default_factory=Stats)

    @property
    def has_blocking_issues(self) -> bool:
        return any(issue.is_blocking for issue in self.issues)


# ============================================================================
# Jobs
# ============================================================================

class ImportJob(BaseModel):
    id: str
    trainer_id: str
    client_id: Optional[str] = None
    scope: JobScope = "client"
    status: JobStatus = "queued"
    source_type: SourceType
    file_hash_sha256: str
    storage_path: Optional[str] = None
    file_meta: Optional[Dict[str, Any]] = None
    parser_version: str
    ruleset_version: str
    extractor_version: str
    attempts: int = 0
    max_attempts: int = 3
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[str] = None
    progress_stage: ProgressStage = "queued"
    progress_percent: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    last_error_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None

    class Config:
        extra = "ignore"


class Artifact(BaseModel):
    job_id: str
    payload: bytes
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    expires_at: Optional[str] = None


class RoutineBackup(BaseModel):
    id: str
    client_id: str
    job_id: Optional[str] = None
    created_by: Optional[str] = None
    plan: Dict[str, Any] = Field(default_factory=dict)
    ui_meta: Optional[Dict[str, Any]] = None
    routine_version: int
    created_at: str

    class Config:
        extra = "ignore"


class Routine(BaseModel):
    client_id: str
    plan: Dict[str, Any] = Field(default_factory=dict)
    ui_meta: Optional[Dict[str, Any]] = None
    version: int = 1
    last_saved_at: Optional[str] = None

    class Config:
        extra = "ignore"


class CommitResult(BaseModel):
    commit_id: str
    routine_version_after: int
    backup_id: Optional[str] = None


class RollbackResult(BaseModel):
    backup_id: str
    routine_version_after: int


# ============================================================================
# API payloads
# ============================================================================

class CreateJobRequest(BaseModel):
    client_id: Optional[str] = None
    scope: JobScope = "client"
    source_type: Optional[SourceType] = None
    raw_text: str = Field(..., min_length=1, max_length=200_000)


class CreateJobResponse(BaseModel):
    job_id: str
    reused: bool = False


class PatchDraftRequest(BaseModel):
    draft: Draft


class UiMeta(BaseModel):
    day_label_mode: Optional[DayLabelMode] = None
    hide_empty_days_in_sequential: Optional[bool] = None


class CommitRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    policy: CommitPolicy
    overwrite_days: Optional[List[WeekDayKey]] = None
    ui_meta: Optional[UiMeta] = None
    routine_version_expected: int = Field(..., ge=1)
    commit_idempotency_key: str = Field(..., min_length=1, max_length=128)


class RollbackRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    backup_id: Optional[str] = None


class JobView(BaseModel):
    job: ImportJob
    draft: Optional[Draft] = None
    issues: List[Issue] = Field(default_factory=list)
    stats: Optional[Stats] = None
    derived_plan: Optional[Dict[str, RoutineDay]] = None


class BundleResponse(BaseModel):
    draft: Draft
    issues: List[Issue] = Field(default_factory=list)
    stats: Stats
    derived_plan: Dict[str, RoutineDay] = Field(default_factory=dict)


class WorkerTickResponse(BaseModel):
    worker_id: str
    claimed: int = 0
    processed: int = 0
    failed: int = 0


class PurgeResponse(BaseModel):
    ok: bool = True
    artifacts_deleted: int = 0
    jobs_expired: int = 0
    jobs_deleted: int = 0
    backups_deleted: int = 0
    run_at: str
