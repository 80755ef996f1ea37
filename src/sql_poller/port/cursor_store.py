"""Port for cursor value persistence."""

from __future__ import annotations

from typing import Protocol

from sql_poller.domain.models import CursorValue


class CursorStore(Protocol):
    """Durable storage for a single cursor value.

    Writes must be atomic from the caller's perspective: a crash between
    writes never leaves a partial value behind.
    """

    def read(self) -> CursorValue | None: ...

    def write(self, value: CursorValue) -> None: ...

    def clear(self) -> None: ...
