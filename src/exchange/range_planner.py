import logging
from pathlib import Path

from exchange.checkpoint_store import CheckpointStore, FileCheckpointStore
from exchange.domain import CheckpointRecord, ExtractionRange, PlanStatus, RangePlan
from exchange.errors import CheckpointIOError, InvalidConfigurationError

logger = logging.getLogger(__name__)


def split_ranges(total_count: int, parallelism: int) -> list[ExtractionRange]:
    """
    Even, contiguous split of [0, total_count) into `parallelism` ranges.

    The first total_count % parallelism ranges carry one extra row.
    """
    if parallelism < 1:
        raise InvalidConfigurationError(f"parallelism must be >= 1, got {parallelism}")
    if total_count < 0:
        raise InvalidConfigurationError(f"total_count must be >= 0, got {total_count}")

    base, remainder = divmod(total_count, parallelism)

    ranges: list[ExtractionRange] = []
    start = 0
    for worker_index in range(parallelism):
        size = base + 1 if worker_index < remainder else base
        ranges.append(ExtractionRange(start=start, size=size))
        start += size
    return ranges


def apply_checkpoint(planned: ExtractionRange, resume_offset: int) -> ExtractionRange:
    """Shrink a planned range to start at a persisted offset. Never grows it."""
    if resume_offset >= planned.end:
        return ExtractionRange(start=planned.end, size=0)
    if resume_offset <= planned.start:
        return planned
    return ExtractionRange(start=resume_offset, size=planned.end - resume_offset)


class RangeCheckpointPlanner:
    """
    Plans per-worker extraction ranges, resuming from persisted checkpoints.

    Without a checkpoint store every plan is the plain even split.
    """

    def __init__(self, checkpoint_store: CheckpointStore | None = None):
        self.checkpoint_store = checkpoint_store

    def plan(self, total_count: int, parallelism: int, source_name: str) -> RangePlan:
        ranges = split_ranges(total_count, parallelism)
        checkpoints: list[CheckpointRecord] = []
        checkpoint_errors: list[CheckpointIOError] = []

        if self.checkpoint_store is not None:
            for worker_index, planned in enumerate(ranges):
                try:
                    resume_offset = self.checkpoint_store.read_offset(source_name, worker_index)
                except CheckpointIOError as e:
                    # Only this worker is blocked; it is reported as failed and retried next run.
                    logger.error("%s worker %s cannot resume and is skipped: %s", source_name, worker_index, e)
                    checkpoint_errors.append(e)
                    ranges[worker_index] = ExtractionRange(start=planned.start, size=0)
                    continue
                if resume_offset is None:
                    continue

                if resume_offset < planned.start:
                    logger.warning(
                        "%s worker %s checkpoint %s is before its planned range %s; "
                        "was parallelism changed since the last run?",
                        source_name, worker_index, resume_offset, planned,
                    )

                checkpoints.append(CheckpointRecord(source_name, worker_index, resume_offset))
                ranges[worker_index] = apply_checkpoint(planned, resume_offset)

        if any(r.size > 0 for r in ranges):
            status = PlanStatus.PENDING
        elif total_count == 0:
            status = PlanStatus.EMPTY_SOURCE
        elif checkpoint_errors:
            # Unreadable checkpoints leave work whose extent is unknown
            status = PlanStatus.PENDING
        else:
            status = PlanStatus.ALREADY_DONE

        plan = RangePlan(
            source_name=source_name,
            total_count=total_count,
            ranges=tuple(ranges),
            status=status,
            checkpoints=tuple(checkpoints),
            checkpoint_errors=tuple(checkpoint_errors),
        )
        logger.info(
            "%s offsets: %s (total=%s, remaining=%s, resumed_workers=%s)",
            source_name, ",".join(str(r) for r in plan.ranges), total_count, plan.remaining_rows, len(checkpoints),
        )
        return plan


def plan_ranges(
    total_count: int,
    parallelism: int,
    checkpoint_root: Path | str | None,
    source_name: str,
) -> RangePlan:
    """Plan against the file checkpoint convention {checkpoint_root}/{source_name}.{worker_index}."""
    store = FileCheckpointStore(checkpoint_root) if checkpoint_root is not None else None
    return RangeCheckpointPlanner(store).plan(total_count, parallelism, source_name)
