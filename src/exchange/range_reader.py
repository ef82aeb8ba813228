from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import pyarrow as pa

from core.settings import READER_QUEUE_SIZE
from exchange.checkpoint_store import CheckpointStore
from exchange.domain import ExtractionRange, RowBatch
from exchange.errors import CheckpointIOError, EmptyResultError, ExtractionFailedError, SourceQueryError

logger = logging.getLogger(__name__)

RangeQuery = Callable[[int, int], Iterable[Sequence[Mapping[str, Any]]]]

_EXHAUSTED = object()


@dataclass(frozen=True)
class _WorkerPage:
    worker_index: int
    start_offset: int
    rows: list[Mapping[str, Any]]


@dataclass(frozen=True)
class _WorkerDone:
    worker_index: int
    extraction_range: ExtractionRange
    error: SourceQueryError | CheckpointIOError | None = None


def infer_schema(rows: Sequence[Mapping[str, Any]]) -> pa.Schema:
    """Union of field names in encounter order. Every column is a nullable string."""
    names: dict[str, None] = {}
    for row in rows:
        for key in row:
            names.setdefault(str(key), None)
    return pa.schema([pa.field(name, pa.string(), nullable=True) for name in names])


def stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def coerce_rows(rows: Sequence[Mapping[str, Any]], schema: pa.Schema) -> pa.RecordBatch:
    """Fit rows to the unified schema: missing fields become null, unknown fields are dropped."""
    columns = {name: [stringify(row.get(name)) for row in rows] for name in schema.names}
    return pa.RecordBatch.from_pydict(columns, schema=schema)


class ResumableRangeReader:
    """
    Runs one skip/limit query per extraction range in parallel and merges the results.

    Checkpoints only move over rows the consumer has committed:
      - before every page request a worker persists its committed offset (write-ahead);
        on the first request that is the start of its range
      - commit(batch) advances a worker's offset to the end of that batch

    With auto_commit a batch counts as committed once the consumer pulls the next one.
    Consumers that stage rows somewhere first pass auto_commit=False and call commit()
    after the rows are durable. A crash or early close therefore re-reads rows, never skips them.

    Pages travel through a bounded queue (backpressure) to the consuming generator,
    which infers the output schema from the first non-empty page it receives and
    coerces everything after it. Order is kept within a worker, not across workers.
    """

    def __init__(
        self,
        execute_range_query: RangeQuery,
        *,
        source_name: str,
        checkpoint_store: CheckpointStore | None = None,
        page_size: int | None = None,
        queue_size: int = READER_QUEUE_SIZE,
        put_timeout_seconds: float = 0.1,
        auto_commit: bool = True,
    ):
        if page_size is not None and page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")

        self._execute_range_query = execute_range_query
        self.source_name = source_name
        self.checkpoint_store = checkpoint_store
        self.page_size = page_size
        self.queue_size = queue_size
        self.put_timeout_seconds = put_timeout_seconds
        self.auto_commit = auto_commit

        # worker_index -> offset up to which the consumer has committed rows
        self._committed: dict[int, int] = {}
        self._checkpoint_locks: dict[int, threading.Lock] = {}

    def read(self, ranges: Sequence[ExtractionRange]) -> Iterator[RowBatch]:
        # Worker index is the position in the plan so checkpoint names survive re-planning.
        active = [(worker_index, r) for worker_index, r in enumerate(ranges) if r.size > 0]
        if not active:
            logger.info("%s: every range is empty, nothing to read", self.source_name)
            return

        self._committed = {worker_index: r.start for worker_index, r in active}
        self._checkpoint_locks = {worker_index: threading.Lock() for worker_index, _ in active}

        page_queue: queue.Queue[_WorkerPage | _WorkerDone] = queue.Queue(maxsize=self.queue_size)
        cancel_event = threading.Event()
        failures: list[SourceQueryError | CheckpointIOError] = []
        schema: pa.Schema | None = None
        rows_total = 0

        logger.info("%s: reading %s range(s) in parallel", self.source_name, len(active))

        executor = ThreadPoolExecutor(max_workers=len(active), thread_name_prefix=f"{self.source_name}-range")
        try:
            for worker_index, extraction_range in active:
                executor.submit(self._run_worker, worker_index, extraction_range, page_queue, cancel_event)

            finished = 0
            while finished < len(active):
                item = page_queue.get()

                if isinstance(item, _WorkerDone):
                    finished += 1
                    if item.error is not None:
                        logger.error(
                            "%s worker %s failed on range %s: %s",
                            self.source_name, item.worker_index, item.extraction_range, item.error,
                        )
                        failures.append(item.error)
                    continue

                if schema is None:
                    schema = infer_schema(item.rows)
                    logger.info(
                        "%s: schema inferred from worker %s: %s", self.source_name, item.worker_index, schema.names
                    )

                rows_total += len(item.rows)
                batch = RowBatch(
                    worker_index=item.worker_index,
                    start_offset=item.start_offset,
                    records=coerce_rows(item.rows, schema),
                )
                yield batch
                if self.auto_commit:
                    self.commit(batch)
        finally:
            cancel_event.set()
            executor.shutdown(wait=True)

        if failures:
            raise ExtractionFailedError(self.source_name, failures)
        if rows_total == 0:
            raise EmptyResultError(
                f"{self.source_name}: the source query returned no rows for any range. Check the sentence."
            )

        logger.info("%s: read %s rows", self.source_name, rows_total)

    def commit(self, batch: RowBatch) -> None:
        """
        Mark a batch's rows as durably handled and move its worker's checkpoint past them.

        Batches of one worker must be committed in the order they were yielded.
        """
        worker_index = batch.worker_index
        if worker_index not in self._committed:
            raise ValueError(f"{self.source_name}: batch from unknown worker {worker_index}")

        with self._checkpoint_locks[worker_index]:
            committed = self._committed[worker_index]
            if batch.start_offset != committed:
                raise ValueError(
                    f"{self.source_name} worker {worker_index}: commit at offset {batch.start_offset} "
                    f"but rows are committed up to {committed}"
                )
            offset = committed + batch.num_rows
            self._persist(worker_index, offset)
            self._committed[worker_index] = offset

    # ----------------------------
    # Worker side
    # ----------------------------
    def _run_worker(
        self,
        worker_index: int,
        extraction_range: ExtractionRange,
        page_queue: queue.Queue,
        cancel_event: threading.Event,
    ) -> None:
        error: SourceQueryError | CheckpointIOError | None = None
        try:
            self._read_range(worker_index, extraction_range, page_queue, cancel_event)
        except (SourceQueryError, CheckpointIOError) as e:
            error = e
        finally:
            self._put(page_queue, _WorkerDone(worker_index, extraction_range, error), cancel_event)

    def _read_range(
        self,
        worker_index: int,
        extraction_range: ExtractionRange,
        page_queue: queue.Queue,
        cancel_event: threading.Event,
    ) -> None:
        logger.debug("%s worker %s starting range %s", self.source_name, worker_index, extraction_range)

        for sub_range in self._sub_ranges(extraction_range):
            offset = sub_range.start
            if cancel_event.is_set():
                return

            # Write-ahead: every request to the source is preceded by a checkpoint write.
            self._save_checkpoint(worker_index)
            try:
                pages = iter(self._execute_range_query(sub_range.start, sub_range.size))
            except Exception as e:
                raise self._source_error(worker_index, extraction_range, sub_range, e) from e

            try:
                while True:
                    try:
                        page = next(pages, _EXHAUSTED)
                    except Exception as e:
                        raise self._source_error(worker_index, extraction_range, sub_range, e) from e
                    if page is _EXHAUSTED:
                        break

                    rows = list(page)
                    if rows and not self._put(page_queue, _WorkerPage(worker_index, offset, rows), cancel_event):
                        return
                    offset += len(rows)

                    if cancel_event.is_set():
                        return
                    self._save_checkpoint(worker_index)
            finally:
                close = getattr(pages, "close", None)
                if close is not None:
                    close()

        logger.debug("%s worker %s finished range %s", self.source_name, worker_index, extraction_range)

    def _sub_ranges(self, extraction_range: ExtractionRange) -> Iterator[ExtractionRange]:
        if self.page_size is None:
            yield extraction_range
            return

        start = extraction_range.start
        while start < extraction_range.end:
            size = min(self.page_size, extraction_range.end - start)
            yield ExtractionRange(start=start, size=size)
            start += size

    def _save_checkpoint(self, worker_index: int) -> None:
        with self._checkpoint_locks[worker_index]:
            self._persist(worker_index, self._committed[worker_index])

    def _persist(self, worker_index: int, offset: int) -> None:
        if self.checkpoint_store is None:
            return
        try:
            self.checkpoint_store.write_offset(self.source_name, worker_index, offset)
        except CheckpointIOError:
            raise
        except Exception as e:
            raise CheckpointIOError(
                f"Checkpoint write failed for {self.source_name}.{worker_index} at offset {offset}: {e}",
                source_name=self.source_name,
                worker_index=worker_index,
            ) from e

    def _source_error(
        self,
        worker_index: int,
        extraction_range: ExtractionRange,
        sub_range: ExtractionRange,
        cause: Exception,
    ) -> SourceQueryError:
        return SourceQueryError(
            f"{self.source_name} worker {worker_index}: query for {sub_range} failed: {cause}",
            worker_index=worker_index,
            extraction_range=extraction_range,
        )

    def _put(self, page_queue: queue.Queue, item: _WorkerPage | _WorkerDone, cancel_event: threading.Event) -> bool:
        """Blocking put that gives up once the consumer has gone away."""
        while not cancel_event.is_set():
            try:
                page_queue.put(item, timeout=self.put_timeout_seconds)
                return True
            except queue.Full:
                continue
        return False
