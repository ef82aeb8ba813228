from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import pyarrow as pa

from exchange.errors import CheckpointIOError


class VidType(str, Enum):
    """Identifier kind, fixed for the whole ingestion job."""
    STRING = "string"
    INT = "int"


@dataclass(frozen=True)
class ExtractionRange:
    """A contiguous [start, start + size) window over a source's ordered result set."""
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size

    def __str__(self) -> str:
        return f"({self.start},{self.size})"


class PlanStatus(str, Enum):
    PENDING = "pending"
    # Source count query returned zero rows
    EMPTY_SOURCE = "empty_source"
    # Every worker's checkpoint is at or past its range end
    ALREADY_DONE = "already_done"


@dataclass(frozen=True)
class CheckpointRecord:
    source_name: str
    worker_index: int
    resume_offset: int


@dataclass(frozen=True)
class RangePlan:
    """Ranges for one planning call, indexed by worker."""
    source_name: str
    total_count: int
    ranges: tuple[ExtractionRange, ...]
    status: PlanStatus
    checkpoints: tuple[CheckpointRecord, ...] = ()
    # Workers whose checkpoint could not be read; their ranges are left out of this plan
    checkpoint_errors: tuple[CheckpointIOError, ...] = ()

    @property
    def remaining_rows(self) -> int:
        return sum(r.size for r in self.ranges)


@dataclass(frozen=True)
class RowBatch:
    """
    One page of rows read by one worker, already coerced to the unified schema.

    start_offset is the absolute source offset of the first row in the batch.
    """
    worker_index: int
    start_offset: int
    records: pa.RecordBatch

    @property
    def num_rows(self) -> int:
        return self.records.num_rows

    @property
    def schema(self) -> pa.Schema:
        return self.records.schema


@dataclass(frozen=True)
class RunContext:
    """Per-run context."""
    run_id: str


class ExtractionStatus(str, Enum):
    COMPLETED = "completed"
    ALREADY_DONE = "already_done"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of running one source through count -> plan -> read -> stage."""
    source_name: str
    status: ExtractionStatus
    rows_read: int = 0
    partition_counts: dict[int, int] = field(default_factory=dict)
    staged_path: Path | None = None
    error_message: str | None = None
