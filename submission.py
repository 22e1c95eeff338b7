#!/usr/bin/env python3
"""
At-most-once submission / recovery protocol.

The persisted ``in_flight`` marker is the only source of truth:

    Idle      --submit-->   InFlight   (marker persisted right after the broadcast ack)
    InFlight  --resolve-->  Idle       (outcome classified with evidence)
    InFlight  --stuck-->    InFlight   (classified without evidence, re-checked next pass)
    InFlight  --expire-->   Idle       (never found on-chain within in_flight_expiry_sec)

While a transaction is in flight nothing new is broadcast and
``total_attempts`` does not move; the pass only re-queries the stored hash.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from candidate_pipeline import LiquidatablePosition
from job_state import InFlightTx, PersistedJobState
from ledger.base import ExecuteMsg, LedgerClient, LedgerError, TxResult
from tx_ledger import TxLedger
from tx_outcome import Outcome, apply_outcome, classify, raise_for_outcome

SUBMITTED = "submitted"
RECOVERED = "recovered"
PENDING = "pending"
EXPIRED = "expired"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class InFlight:
    tx: InFlightTx


SubmissionPhase = Union[Idle, InFlight]


def phase_of(state: PersistedJobState) -> SubmissionPhase:
    if state.in_flight is not None and state.in_flight.tx_hash:
        return InFlight(state.in_flight)
    return Idle()


@dataclass
class SubmissionPlan:
    """Messages for a new broadcast, built only while Idle."""
    msgs: List[ExecuteMsg]
    position: LiquidatablePosition
    strategy: str = "liquidate"
    borrow_amount: Optional[int] = None


class SubmissionProtocol:
    def __init__(
        self,
        client: LedgerClient,
        persist: Callable[[], None],
        tx_ledger: TxLedger,
        log: logging.Logger,
        gas_limit: int,
        fee_denom: str,
        in_flight_expiry_sec: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.persist = persist
        self.tx_ledger = tx_ledger
        self.log = log
        self.gas_limit = int(gas_limit)
        self.fee_denom = fee_denom
        self.in_flight_expiry_sec = float(in_flight_expiry_sec or 0.0)
        self.clock = clock

    async def step(self, state: PersistedJobState, plan: Optional[SubmissionPlan]) -> str:
        """Recover the in-flight transaction if there is one, else submit ``plan``."""
        phase = phase_of(state)
        if isinstance(phase, InFlight):
            return await self.recover(state, phase)
        if plan is None:
            raise ValueError("Nothing to submit: no plan while idle")
        return await self.submit(state, plan)

    # ------------------------------------------------------------ transitions

    async def recover(self, state: PersistedJobState, phase: InFlight) -> str:
        ref = phase.tx
        self.log.info(f"Re-checking in-flight tx {ref.tx_hash}")
        tx = await self.client.get_tx(ref.tx_hash)
        if tx is None or not tx.confirmed:
            return self._still_pending(state, ref)
        return self._resolve(state, tx, RECOVERED)

    async def submit(self, state: PersistedJobState, plan: SubmissionPlan) -> str:
        position = plan.position
        self.log.info(
            f"ATTEMPTING - id: {position.position_id} routes: {position.position_set_id}"
            + (f" borrow: {plan.borrow_amount}" if plan.borrow_amount is not None else "")
        )
        state.total_attempts += 1
        try:
            tx = await self.client.broadcast(plan.msgs, self.gas_limit, self.fee_denom)
        except BaseException:
            self.persist()
            raise

        if tx is None or not tx.tx_hash:
            self.persist()
            raise LedgerError("Broadcast returned no transaction hash")

        now = self.clock()
        state.in_flight = InFlightTx(tx_hash=tx.tx_hash, broadcast_at=now, strategy=plan.strategy)
        self.persist()
        self.tx_ledger.record(now, tx.tx_hash, plan.strategy, plan.borrow_amount)

        if not tx.confirmed:
            # Marker is on disk; a failed or interrupted wait leaves it for recover().
            tx = await self.client.await_inclusion(tx.tx_hash)
        if not tx.confirmed:
            self.log.info(f"Tx {tx.tx_hash} broadcast, awaiting inclusion")
            return PENDING
        return self._resolve(state, tx, SUBMITTED)

    # ------------------------------------------------------------ helpers

    def _still_pending(self, state: PersistedJobState, ref: InFlightTx) -> str:
        age = self.clock() - ref.broadcast_at
        if self.in_flight_expiry_sec > 0 and age > self.in_flight_expiry_sec:
            self.log.warning(
                f"In-flight tx {ref.tx_hash} not found after {age:.0f}s; treating as dropped"
            )
            state.in_flight = None
            self.persist()
            return EXPIRED
        self.log.info(f"In-flight tx {ref.tx_hash} still pending ({age:.0f}s)")
        self.persist()
        return PENDING

    def _resolve(self, state: PersistedJobState, tx: TxResult, label: str) -> str:
        outcome = classify(tx)
        apply_outcome(state, outcome)
        self._log_outcome(tx, outcome)
        self.persist()
        raise_for_outcome(outcome)
        return label

    def _log_outcome(self, tx: TxResult, outcome: Outcome) -> None:
        if outcome.succeeded:
            self.log.info(f"LIQUIDATION ATTEMPT SUCCESSFUL - {tx.tx_hash}")
            if tx.json_log:
                self.log.info(str(tx.json_log))
        else:
            self.log.info(f"LIQUIDATION ATTEMPT FAILED - {tx.tx_hash} (code {tx.code}): {tx.raw_log}")
