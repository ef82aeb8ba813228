"""In-memory source doubles shared by reader and orchestrator tests."""

from __future__ import annotations

from typing import Any, Callable, Iterator


def make_rows(count: int) -> list[dict[str, Any]]:
    return [{"id": i, "name": f"vertex_{i}"} for i in range(count)]


class ListSource:
    """
    Serves skip/limit windows over a Python list, page_rows rows per page.

    on_page(page_start) runs right before a page is handed out, which lets tests
    look at checkpoint state at fetch time. fail_at_offset raises instead of
    serving the page that starts there.
    """

    def __init__(
        self,
        rows: list[dict[str, Any]],
        *,
        page_rows: int = 10,
        fail_at_offset: int | None = None,
        on_page: Callable[[int], None] | None = None,
    ):
        self.rows = rows
        self.page_rows = page_rows
        self.fail_at_offset = fail_at_offset
        self.on_page = on_page
        self.calls: list[tuple[int, int]] = []

    def execute_range_query(self, start: int, size: int) -> Iterator[list[dict[str, Any]]]:
        self.calls.append((start, size))
        end = min(start + size, len(self.rows))
        for page_start in range(start, end, self.page_rows):
            if page_start == self.fail_at_offset:
                raise RuntimeError(f"connection reset at offset {page_start}")
            if self.on_page is not None:
                self.on_page(page_start)
            yield self.rows[page_start:min(page_start + self.page_rows, end)]
