"""Migration history emission.

The core only emits records; persisting them (log files, reports) belongs to
whatever sink the caller passes in.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable

from .models import MigrationHistoryRecord

logger: logging.Logger = logging.getLogger(__name__)

HistorySink = Callable[[MigrationHistoryRecord], None]


class HistoryEmitter:
    """Builds history records, keeps them in memory and forwards them to a sink."""

    def __init__(self, sink: HistorySink | None = None) -> None:
        self._sink: HistorySink | None = sink
        self.records: list[MigrationHistoryRecord] = []

    def emit(self, operation_type: str, status: str, detail: str = "") -> MigrationHistoryRecord:
        record = MigrationHistoryRecord(
            timestamp=dt.datetime.now(dt.UTC),
            operation_type=operation_type,
            status=status,
            detail=detail,
        )
        self.records.append(record)
        logger.debug(f"History: {operation_type} {status} {detail}")
        if self._sink is not None:
            self._sink(record)
        return record
