#!/usr/bin/env python3
"""Rate-limited status summary for the liquidator log."""

from __future__ import annotations

import logging
import time
from typing import Callable

from job_state import PersistedJobState

ONE_HOUR_SEC = 3600


class StatusReporter:
    """Logs one summary line on the first pass and then at most once per interval."""

    def __init__(
        self,
        log: logging.Logger,
        interval_sec: float = 2 * ONE_HOUR_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.log = log
        self.interval_sec = float(interval_sec)
        self.clock = clock

    def due(self, state: PersistedJobState, now: float) -> bool:
        if state.started_at is None:
            return True
        return now - (state.last_reported_at or 0.0) > self.interval_sec

    def format_report(self, state: PersistedJobState, now: float) -> str:
        uptime_hours = int((now - (state.started_at or now)) // ONE_HOUR_SEC)
        errors_since = state.query_error_count - state.query_errors_at_last_report
        return (
            f"Bot running for {uptime_hours} hours"
            f"  Total Attempts: {state.total_attempts}"
            f"  Successful: {state.success_count}"
            f"  Failed: {state.failure_count}"
            f"  Queries Failed: {max(0, errors_since)}"
            f"  Average Query Length: {state.average_latency():.3f}"
        )

    def maybe_report(self, state: PersistedJobState) -> bool:
        now = self.clock()
        if not self.due(state, now):
            return False
        if state.started_at is None:
            state.started_at = now
        self.log.info(self.format_report(state, now))
        state.last_reported_at = now
        state.query_errors_at_last_report = state.query_error_count
        return True
