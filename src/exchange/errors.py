from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from exchange.domain import ExtractionRange


class ExchangeError(Exception):
    pass


class InvalidConfigurationError(ExchangeError, ValueError):
    """Caller or config file violated a contract; raised before any work starts."""


class InvalidIdentifierError(ExchangeError, ValueError):
    pass


class EmptyResultError(ExchangeError):
    """The whole extraction matched nothing, which usually means a bad source sentence."""


class CheckpointIOError(ExchangeError):
    def __init__(self, message: str, *, source_name: str, worker_index: int):
        super().__init__(message)
        self.source_name = source_name
        self.worker_index = worker_index


class SourceQueryError(ExchangeError):
    def __init__(self, message: str, *, worker_index: int, extraction_range: ExtractionRange):
        super().__init__(message)
        self.worker_index = worker_index
        self.extraction_range = extraction_range


class ExtractionFailedError(ExchangeError):
    """
    Raised once every worker has finished and at least one of them failed.

    Rows from the healthy workers have already been yielded; re-running
    plan + read resumes the failed ranges from their checkpoints.
    """

    def __init__(self, source_name: str, failures: Sequence[SourceQueryError | CheckpointIOError]):
        self.source_name = source_name
        self.failures = list(failures)
        worker_list = ", ".join(str(f.worker_index) for f in self.failures)
        super().__init__(f"{len(self.failures)} worker(s) failed for source '{source_name}': [{worker_list}]")
