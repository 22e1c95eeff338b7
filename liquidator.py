#!/usr/bin/env python3
"""
One liquidation pass.

load state -> advance round-robin cursor -> maybe report -> batch query ->
candidates (+ strategy sizing) -> recover or submit -> persist.

Everything the pass needs travels in a PassContext; there are no module-level
clients or config objects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from arb_sizing import PLAIN_TAG, STRATEGY_TAG, build_strategy_msgs, build_strategy_queries, plan_strategy
from batch_query import BatchQueryGateway, BatchQueryResult, build_position_queries
from candidate_pipeline import collect_candidates, select_candidate
from config_env import LiquidatorConfig
from job_state import PersistedJobState, VaultGroup, load_state, save_state
from ledger.base import ExecuteMsg, LedgerClient
from status_report import StatusReporter
from submission import SubmissionPlan, SubmissionProtocol
from tx_ledger import TxLedger

QUERY_ERROR = "query_error"
NO_CANDIDATES = "no_candidates"


@dataclass
class PassContext:
    config: LiquidatorConfig
    client: LedgerClient
    log: logging.Logger
    clock: Callable[[], float] = time.time
    monotonic: Callable[[], float] = field(default=time.monotonic)


def _build_plan(
    ctx: PassContext,
    state: PersistedJobState,
    group: VaultGroup,
    result: BatchQueryResult,
) -> Optional[SubmissionPlan]:
    candidates = collect_candidates(result, group)
    position = select_candidate(candidates, state.total_attempts)
    if position is None:
        return None

    liquidate = ExecuteMsg(
        sender=ctx.client.address,
        contract_address=group.address,
        code_hash=group.code_hash,
        msg=position.liquidate_msg(),
    )
    strategy = ctx.config.strategy
    sizing = plan_strategy(result, ctx.log) if strategy is not None else None
    if strategy is None or sizing is None:
        return SubmissionPlan(msgs=[liquidate], position=position, strategy=PLAIN_TAG)

    extra = build_strategy_msgs(sizing, strategy, ctx.client.address, position)
    return SubmissionPlan(
        msgs=extra + [liquidate],
        position=position,
        strategy=STRATEGY_TAG,
        borrow_amount=sizing.borrow_amount,
    )


async def run_pass(ctx: PassContext) -> str:
    """Run one pass; returns a short label of how it ended.

    The state is saved on every exit path, including exceptions.
    """
    cfg = ctx.config
    state = load_state(cfg.state_path)

    def persist() -> None:
        save_state(cfg.state_path, state)

    try:
        return await _run(ctx, state, persist)
    except BaseException:
        persist()
        raise


async def _run(ctx: PassContext, state: PersistedJobState, persist: Callable[[], None]) -> str:
    cfg = ctx.config
    state.advance_cursor()
    StatusReporter(ctx.log, cfg.report_interval_sec, ctx.clock).maybe_report(state)

    group = state.current_group()
    sub_queries = build_position_queries(group)
    if cfg.strategy is not None:
        sub_queries += build_strategy_queries(cfg.strategy)

    gateway = BatchQueryGateway(
        ctx.client,
        cfg.batch_query_address,
        cfg.batch_query_code_hash,
        ctx.log,
        clock=ctx.monotonic,
    )
    result = await gateway.execute(sub_queries, state)
    if result is None:
        persist()
        return QUERY_ERROR

    plan = None
    if state.in_flight is None:
        plan = _build_plan(ctx, state, group, result)
        if plan is None:
            persist()
            return NO_CANDIDATES

    protocol = SubmissionProtocol(
        ctx.client,
        persist,
        TxLedger(cfg.tx_ledger_path, ctx.log),
        ctx.log,
        gas_limit=cfg.gas_limit,
        fee_denom=cfg.fee_denom,
        in_flight_expiry_sec=cfg.in_flight_expiry_sec,
        clock=ctx.clock,
    )
    return await protocol.step(state, plan)
