#!/usr/bin/env python3
"""
Classify a confirmed transaction and apply the result to the job state.

- success (code 0) needs a structured log as evidence
- failure (code != 0) needs a non-empty raw log
Missing evidence leaves the in-flight reference in place (stuck) and raises
IncompleteEvidenceError. Sequence-mismatch and out-of-gas raw logs are fatal
regardless of the code; the next identical pass would hit them again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from job_state import PersistedJobState
from ledger.base import TxResult

ACCOUNT_SEQUENCE_MISMATCH = "incorrect account sequence"
OUT_OF_GAS = "out of gas"
FATAL_LOG_MARKERS = (
    (ACCOUNT_SEQUENCE_MISMATCH, "account sequence"),
    (OUT_OF_GAS, "out of gas"),
)


class SubmissionError(RuntimeError):
    """Base class for errors surfaced by the submission protocol."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class IncompleteEvidenceError(SubmissionError):
    """Outcome classified without the required log; reference kept for re-check."""


class FatalTxError(SubmissionError):
    """Environment problem (stale sequence, under-priced gas); stop the process."""

    def __init__(self, message: str, tx_hash: Optional[str] = None, reason: str = ""):
        super().__init__(message, tx_hash)
        self.reason = reason


@dataclass
class Outcome:
    tx_hash: str
    succeeded: bool
    has_evidence: bool
    fatal_reason: Optional[str] = None

    @property
    def stuck(self) -> bool:
        return not self.has_evidence


def classify(tx: TxResult) -> Outcome:
    """Pure classification of a confirmed TxResult."""
    if not tx.confirmed:
        raise ValueError(f"Cannot classify unconfirmed tx {tx.tx_hash}")
    succeeded = tx.succeeded
    if succeeded:
        has_evidence = bool(tx.json_log) or bool(tx.array_log)
    else:
        has_evidence = bool(tx.raw_log)
    fatal_reason = None
    raw_log = tx.raw_log or ""
    for marker, reason in FATAL_LOG_MARKERS:
        if marker in raw_log:
            fatal_reason = reason
            break
    return Outcome(
        tx_hash=tx.tx_hash,
        succeeded=succeeded,
        has_evidence=has_evidence,
        fatal_reason=fatal_reason,
    )


def apply_outcome(state: PersistedJobState, outcome: Outcome) -> None:
    """Update counters and the in-flight marker. Does not raise."""
    in_flight = state.in_flight
    already_counted = bool(in_flight and in_flight.tx_hash == outcome.tx_hash and in_flight.outcome_counted)
    if not already_counted:
        if outcome.succeeded:
            state.success_count += 1
        else:
            state.failure_count += 1

    if outcome.stuck:
        if in_flight is not None and in_flight.tx_hash == outcome.tx_hash:
            in_flight.outcome_counted = True
    else:
        state.in_flight = None


def raise_for_outcome(outcome: Outcome) -> None:
    """Raise the stuck or fatal error an outcome calls for (after state is persisted)."""
    if outcome.stuck:
        label = "liquidate" if outcome.succeeded else "failure"
        raise IncompleteEvidenceError(f"Missing log - {label} ({outcome.tx_hash})", outcome.tx_hash)
    if outcome.fatal_reason:
        raise FatalTxError(
            f"{outcome.fatal_reason} ({outcome.tx_hash})",
            outcome.tx_hash,
            reason=outcome.fatal_reason,
        )
