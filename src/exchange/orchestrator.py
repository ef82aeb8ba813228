from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Sequence

import pyarrow as pa
import pyarrow.compute as pc

from core.settings import READER_QUEUE_SIZE, STAGING_SEGMENT_ROWS, SYSTEM_COL_PARTITION_ID
from exchange.checkpoint_store import FileCheckpointStore
from exchange.domain import ExtractionOutcome, ExtractionStatus, PlanStatus, RowBatch, RunContext
from exchange.errors import CheckpointIOError, EmptyResultError, ExtractionFailedError
from exchange.partitioning import PartitionAssigner
from exchange.range_planner import RangeCheckpointPlanner
from exchange.range_reader import ResumableRangeReader
from exchange.source_config import DuckDBSourceSpec, ExtractionSpec
from exchange.sources import SourceAdapter, build_source_adapter, warn_if_unordered
from exchange.staging import StagingLayout, StagingWriter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[DuckDBSourceSpec], SourceAdapter]


@dataclass(frozen=True)
class OrchestrationConfig:
    reader_queue_size: int = READER_QUEUE_SIZE
    # Rows per staged parquet segment; checkpoints advance each time a segment is committed
    segment_rows: int = STAGING_SEGMENT_ROWS


class Orchestrator:
    """
    Coordinates, per source: count -> plan -> read -> assign partitions -> stage.

    Checkpoint files are the only state carried between runs. They only move past
    rows whose staged segment has been committed, so re-running after a failure
    re-plans from them and reads what is left (at worst an uncommitted segment again).
    """

    def __init__(
        self,
        *,
        specs: Sequence[ExtractionSpec],
        staging_layout: StagingLayout,
        config: OrchestrationConfig,
        adapter_factory: AdapterFactory = build_source_adapter,
    ):
        if config.segment_rows <= 0:
            raise ValueError(f"segment_rows must be positive, got {config.segment_rows}")
        self.specs = {s.name: s for s in specs}
        self.staging_layout = staging_layout
        self.config = config
        self.adapter_factory = adapter_factory

    def run(self, ctx: RunContext) -> dict[str, ExtractionOutcome]:
        outcomes: dict[str, ExtractionOutcome] = {}

        for name, spec in self.specs.items():
            try:
                outcomes[name] = self.run_source(spec, ctx)
            except (ExtractionFailedError, CheckpointIOError) as e:
                # Other sources are unaffected; the failed ranges resume from their checkpoints next run.
                logger.exception("Extraction failed for %s", name)
                outcomes[name] = ExtractionOutcome(
                    source_name=name, status=ExtractionStatus.FAILED, error_message=str(e)
                )

        failed = [o.source_name for o in outcomes.values() if o.status == ExtractionStatus.FAILED]
        logger.info("Extraction run %s complete. %s source(s), %s failed.", ctx.run_id, len(outcomes), len(failed))
        return outcomes

    def run_source(self, spec: ExtractionSpec, ctx: RunContext) -> ExtractionOutcome:
        checkpoint_store = FileCheckpointStore(spec.check_point_path) if spec.check_point_path else None
        assigner = PartitionAssigner(spec.partition.partition_count, spec.partition.vid_type)

        with self.adapter_factory(spec.source) as adapter:
            warn_if_unordered(spec.name, adapter.sentence)

            total_count = adapter.execute_count_query()
            plan = RangeCheckpointPlanner(checkpoint_store).plan(total_count, spec.parallel, spec.name)

            if plan.status == PlanStatus.ALREADY_DONE:
                logger.warning("%s already written completely according to its checkpoints.", spec.name)
                return ExtractionOutcome(source_name=spec.name, status=ExtractionStatus.ALREADY_DONE)
            if plan.status == PlanStatus.EMPTY_SOURCE:
                raise EmptyResultError(f"{spec.name}: the count query matched nothing. Check the sentence.")

            reader = ResumableRangeReader(
                adapter.execute_range_query,
                source_name=spec.name,
                checkpoint_store=checkpoint_store,
                page_size=spec.page_size,
                queue_size=self.config.reader_queue_size,
                auto_commit=False,
            )

            partition_counts: Counter[int] = Counter()
            failures = list(plan.checkpoint_errors)
            uncommitted: list[RowBatch] = []
            batches = reader.read(plan.ranges)
            with self.staging_layout.open_writer(spec.name, ctx.run_id) as writer:
                try:
                    for batch in batches:
                        annotated = assigner.annotate(batch.records, spec.partition.vid_field)
                        writer.write(annotated)
                        uncommitted.append(batch)
                        self._count_partitions(annotated, partition_counts)

                        if writer.pending_rows >= self.config.segment_rows:
                            self._commit_segment(writer, reader, uncommitted)
                except ExtractionFailedError as e:
                    # Healthy workers' rows are still committed below.
                    failures.extend(e.failures)
                finally:
                    batches.close()

                self._commit_segment(writer, reader, uncommitted)

        if failures:
            logger.warning(
                "%s: committed %s rows from healthy workers before reporting failure", spec.name, writer.rows_written
            )
            raise ExtractionFailedError(spec.name, failures)

        logger.info(
            "%s: staged %s rows across %s partition(s)", spec.name, writer.rows_written, len(partition_counts)
        )
        return ExtractionOutcome(
            source_name=spec.name,
            status=ExtractionStatus.COMPLETED,
            rows_read=writer.rows_written,
            partition_counts=dict(sorted(partition_counts.items())),
            staged_path=self.staging_layout.get_run_dir(spec.name, ctx.run_id),
        )

    @staticmethod
    def _commit_segment(writer: StagingWriter, reader: ResumableRangeReader, uncommitted: list[RowBatch]) -> None:
        """Promote the open segment, then move checkpoints past the batches it holds."""
        writer.commit()
        for batch in uncommitted:
            reader.commit(batch)
        uncommitted.clear()

    @staticmethod
    def _count_partitions(batch: pa.RecordBatch, partition_counts: Counter[int]) -> None:
        counts = pc.value_counts(batch.column(SYSTEM_COL_PARTITION_ID))
        for entry in counts.to_pylist():
            partition_counts[entry["values"]] += entry["counts"]
