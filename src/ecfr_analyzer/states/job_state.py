from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, model_validator
from ecfr_analyzer.models.job_record import JobKind, JobStatus


# ── Value objects shared by the store, the orchestrator and the workers ──────

class Progress(BaseModel):
    """current/total/percentage triple. current is clamped into [0, total]."""
    current: int = 0
    total: int = 0
    percentage: int = 0

    @model_validator(mode="after")
    def _normalise(self) -> "Progress":
        self.total = max(self.total, 0)
        self.current = min(max(self.current, 0), self.total)
        self.percentage = round(100 * self.current / self.total) if self.total > 0 else 0
        return self

    @classmethod
    def of(cls, current: int, total: int) -> "Progress":
        return cls(current=current, total=total)


class CurrentItem(BaseModel):
    title_number: int
    title_name: Optional[str] = None
    description: Optional[str] = None


class Statistics(BaseModel):
    items_processed: int = 0
    items_failed: int = 0
    average_time_per_item: float = 0.0     # ms, simple mean over the current run


# ── Resume checkpoints, one shape per job kind ───────────────────────────────

class TitleCursor(BaseModel):
    """Checkpoint for the title-based workers: every title <= last_title_number is done."""
    kind: Literal["title"] = "title"
    last_title_number: int

    def covers(self, key: tuple) -> bool:
        return key[0] <= self.last_title_number


class SectionCursor(BaseModel):
    """Checkpoint for section_analysis: every (title, identifier) <= the cursor is done."""
    kind: Literal["section"] = "section"
    last_title_number: int
    last_section_identifier: str

    def covers(self, key: tuple) -> bool:
        return key <= (self.last_title_number, self.last_section_identifier)


ResumeCursor = Annotated[Union[TitleCursor, SectionCursor], Field(discriminator="kind")]
_cursor_adapter = TypeAdapter(ResumeCursor)


def parse_resume_data(kind: JobKind, raw: dict | None) -> TitleCursor | SectionCursor | None:
    """Decode persisted resume data; anything unreadable or of the wrong shape means start over."""
    if not raw:
        return None
    try:
        cursor = _cursor_adapter.validate_python(raw)
    except ValueError:
        return None
    expected = SectionCursor if kind == JobKind.SECTION_ANALYSIS else TitleCursor
    return cursor if isinstance(cursor, expected) else None


# ── ProgressPatch: closed set of JobRecord updates ───────────────────────────

class StatusPatch(BaseModel):
    op: Literal["status"] = "status"
    status: JobStatus


class ProgressTriplePatch(BaseModel):
    op: Literal["progress"] = "progress"
    progress: Progress


class CurrentItemPatch(BaseModel):
    op: Literal["current_item"] = "current_item"
    current_item: Optional[CurrentItem] = None


class ResumeDataPatch(BaseModel):
    op: Literal["resume_data"] = "resume_data"
    resume_data: Optional[dict] = None


class StatisticsPatch(BaseModel):
    """Fields left as None are untouched; increment=True adds instead of replacing counters."""
    op: Literal["statistics"] = "statistics"
    items_processed: Optional[int] = None
    items_failed: Optional[int] = None
    average_time_per_item: Optional[float] = None
    increment: bool = False


class ErrorPatch(BaseModel):
    op: Literal["error"] = "error"
    error: Optional[str] = None


class TimestampPatch(BaseModel):
    op: Literal["timestamp"] = "timestamp"
    field: Literal["last_start_time", "last_stop_time", "last_completed_time"]
    value: Optional[datetime] = None


class RunTimePatch(BaseModel):
    op: Literal["run_time"] = "run_time"
    add_ms: int


ProgressPatch = Annotated[
    Union[StatusPatch, ProgressTriplePatch, CurrentItemPatch, ResumeDataPatch,
          StatisticsPatch, ErrorPatch, TimestampPatch, RunTimePatch],
    Field(discriminator="op"),
]
patch_adapter = TypeAdapter(ProgressPatch)


# ── Worker <-> orchestrator wire messages ────────────────────────────────────

class StartPayload(BaseModel):
    """Handed to a worker when it is spawned."""
    job_kind: JobKind
    restart: bool = False
    database_url: str


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    progress: Optional[Progress] = None
    current_item: Optional[CurrentItem] = None
    resume_data: Optional[ResumeCursor] = None
    statistics: Optional[Statistics] = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str


class CompletedMessage(BaseModel):
    type: Literal["completed"] = "completed"
    total: int
    failed_count: int = 0


WorkerMessage = Annotated[Union[ProgressMessage, ErrorMessage, CompletedMessage], Field(discriminator="type")]
message_adapter = TypeAdapter(WorkerMessage)

STOP_COMMAND = {"type": "stop"}


def patches_for_progress(message: ProgressMessage) -> list:
    """Translate a worker progress message into the store's patch vocabulary."""
    patches = []
    if message.progress is not None:
        patches.append(ProgressTriplePatch(progress=message.progress))
    if message.current_item is not None:
        patches.append(CurrentItemPatch(current_item=message.current_item))
    if message.resume_data is not None:
        patches.append(ResumeDataPatch(resume_data=message.resume_data.model_dump()))
    if message.statistics is not None:
        patches.append(StatisticsPatch(**message.statistics.model_dump()))
    return patches
