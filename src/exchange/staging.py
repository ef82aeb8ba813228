from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)


class StagingWriter:
    """
    Streams record batches into numbered parquet segments of one run.

    Rows are durable only once commit() has closed the open segment and promoted it;
    rows_written counts committed rows, pending_rows the ones still in the tmp segment.
    """

    def __init__(self, layout: StagingLayout, source_name: str, run_id: str):
        self.layout = layout
        self.source_name = source_name
        self.run_id = run_id

        self.rows_written = 0
        self.pending_rows = 0
        self.committed_paths: list[Path] = []

        self._segment_index = 0
        self._tmp_path: Path | None = None
        self._writer: pq.ParquetWriter | None = None

    def write(self, batch: pa.RecordBatch) -> None:
        if self._writer is None:
            self._tmp_path = self.layout.get_tmp_segment_path(self.source_name, self.run_id, self._segment_index)
            self._tmp_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = pq.ParquetWriter(self._tmp_path, batch.schema, compression="snappy")
        self._writer.write_batch(batch)
        self.pending_rows += batch.num_rows

    def commit(self) -> Path | None:
        """Close and promote the open segment. Returns its final path, or None if nothing was pending."""
        if self._writer is None:
            return None

        self._writer.close()
        self._writer = None

        final_path = self.layout.get_segment_path(self.source_name, self.run_id, self._segment_index)
        self.layout.promote(tmp_path=self._tmp_path, final_path=final_path)

        self.committed_paths.append(final_path)
        self.rows_written += self.pending_rows
        self.pending_rows = 0
        self._segment_index += 1
        self._tmp_path = None
        return final_path

    def discard(self) -> None:
        """Drop the open segment. Already committed segments stay in place."""
        if self._writer is None:
            return

        self._writer.close()
        self._writer = None
        logger.warning(
            "%s: discarding %s uncommitted row(s) in %s", self.source_name, self.pending_rows, self._tmp_path
        )
        self._tmp_path.unlink(missing_ok=True)
        self.layout.prune_empty_parents(self._tmp_path.parent)
        self.pending_rows = 0
        self._tmp_path = None


@dataclass(frozen=True)
class StagingLayout:
    """Filesystem layout for staged, partition-annotated extraction output.

    Layout:
      staging_root/
        _tmp/<source_name>/<run_id>/part-NNNNN.parquet  -> Segment being written
        <source_name>/<run_id>/part-NNNNN.parquet       -> Committed segments waiting for bulk load

    A resumed run writes a new <run_id> directory holding only the rows it read; earlier
    runs' segments stay in place for the loader.
    """

    staging_root: Path
    tmp_dirname: str = "_tmp"

    @property
    def tmp_root(self) -> Path:
        return self.staging_root / self.tmp_dirname

    def get_run_dir(self, source_name: str, run_id: str) -> Path:
        return self.staging_root / source_name / run_id

    def get_segment_path(self, source_name: str, run_id: str, segment_index: int) -> Path:
        return self.get_run_dir(source_name, run_id) / f"part-{segment_index:05d}.parquet"

    def get_tmp_segment_path(self, source_name: str, run_id: str, segment_index: int) -> Path:
        return self.tmp_root / source_name / run_id / f"part-{segment_index:05d}.parquet"

    @contextmanager
    def open_writer(self, source_name: str, run_id: str) -> Iterator[StagingWriter]:
        """
        Yields a segment writer and commits its open segment on clean exit.

        On error only the open segment is dropped; committed segments are kept.
        """
        writer = StagingWriter(self, source_name, run_id)
        try:
            yield writer
        except BaseException:
            writer.discard()
            raise
        writer.commit()

    def promote(self, *, tmp_path: Path, final_path: Path) -> None:
        """
        Atomically move a finished tmp file into place.
        Handles Windows micro-locks (Defender/OneDrive) with a tight retry loop.
        """
        final_path.parent.mkdir(parents=True, exist_ok=True)

        max_retries = 10
        for i in range(max_retries):
            try:
                os.replace(tmp_path, final_path)
                self.prune_empty_parents(tmp_path.parent)
                logger.info("Staged %s", final_path)
                return
            except PermissionError:
                if i == max_retries - 1:
                    raise
                time.sleep(0.05 * (i + 1))

    def prune_empty_parents(self, start_dir: Path) -> int:
        """
        Walk upward deleting empty dirs until staging_root is reached.
        Returns number of dirs removed.
        """
        removed = 0
        current = start_dir

        while current != self.staging_root:
            try:
                current.relative_to(self.staging_root)
            except ValueError:
                break

            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
                removed += 1
            except OSError:
                break

            current = current.parent

        return removed
