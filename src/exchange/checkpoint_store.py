from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Protocol

from exchange.errors import CheckpointIOError

logger = logging.getLogger(__name__)

_OFFSET_PATTERN = re.compile(r"[0-9]+")


class CheckpointStore(Protocol):
    def read_offset(self, source_name: str, worker_index: int) -> int | None:
        ...

    def write_offset(self, source_name: str, worker_index: int, offset: int) -> None:
        ...


class FileCheckpointStore:
    """
    One small file per (source, worker) holding the offset a worker resumes from.

    Layout:
      checkpoint_root/
        <source_name>.<worker_index>   -> decimal resume offset

    The store is a CHECKPOINT, not a log:
      - each worker owns exactly one file, overwritten with the offset its rows are committed up to
      - files are never deleted here; clearing them is an operator decision
    Writes go through a tmp file + fsync + os.replace so readers never see a torn value.
    """

    def __init__(self, checkpoint_root: Path | str):
        self.checkpoint_root = Path(checkpoint_root)

    def get_checkpoint_path(self, source_name: str, worker_index: int) -> Path:
        return self.checkpoint_root / f"{source_name}.{worker_index}"

    def read_offset(self, source_name: str, worker_index: int) -> int | None:
        path = self.get_checkpoint_path(source_name, worker_index)
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CheckpointIOError(
                f"Could not read checkpoint {path}: {e}", source_name=source_name, worker_index=worker_index
            ) from e

        if not _OFFSET_PATTERN.fullmatch(content):
            raise CheckpointIOError(
                f"Malformed checkpoint {path}: expected a non-negative integer, found {content!r}",
                source_name=source_name,
                worker_index=worker_index,
            )
        return int(content)

    def write_offset(self, source_name: str, worker_index: int, offset: int) -> None:
        if offset < 0:
            raise ValueError(f"Checkpoint offset must be non-negative, got {offset}")

        path = self.get_checkpoint_path(source_name, worker_index)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.checkpoint_root.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(str(offset))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise CheckpointIOError(
                f"Could not write checkpoint {path}: {e}", source_name=source_name, worker_index=worker_index
            ) from e

        logger.debug("Checkpoint %s.%s -> %s", source_name, worker_index, offset)

