#!/usr/bin/env python3
"""
Borrow sizing for the auxiliary borrow-and-deposit strategy.

When the money-market / oracle contracts are configured, two reserved
sub-queries ride along in the batch query. Their answers size a borrow that is
prepended (borrow, then forward/deposit) to the liquidation message:

    borrowed   = principal + accrued_interest
    available  = max(0, 0.98 * max_borrow_value - borrowed)
    price      = rate / 10^18
    borrow_cap = floor(0.98 * available / price * 10^6)

Decimal arithmetic keeps the result exact; any zero or malformed input
disables the strategy for the pass instead of dividing by zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, List, Optional

from batch_query import ORACLE_ID, USER_POSITION_ID, BatchQueryResult, SubQuery, encode_json_b64
from candidate_pipeline import LiquidatablePosition
from config_env import StrategySettings
from ledger.base import ExecuteMsg

CAPACITY_HAIRCUT = Decimal("0.98")
BORROW_HAIRCUT = Decimal("0.98")
ORACLE_PRECISION = Decimal(10) ** 18
TOKEN_PRECISION = Decimal(10) ** 6  # 6-decimal strategy token

STRATEGY_TAG = "arb"
PLAIN_TAG = "liquidate"


@dataclass
class StrategyPlan:
    borrow_amount: int
    available: Decimal
    price: Decimal


def _to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        number = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def borrow_capacity(max_borrow_value: Decimal, principal: Decimal, accrued_interest: Decimal) -> Decimal:
    borrowed = principal + accrued_interest
    return max(Decimal(0), CAPACITY_HAIRCUT * max_borrow_value - borrowed)


def oracle_price(rate: Decimal) -> Decimal:
    return rate / ORACLE_PRECISION


def borrow_cap(available: Decimal, price: Decimal) -> int:
    if available <= 0 or price <= 0:
        return 0
    raw = BORROW_HAIRCUT * available / price * TOKEN_PRECISION
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def build_strategy_queries(settings: StrategySettings) -> List[SubQuery]:
    """The two reserved sub-queries appended to the batch envelope."""
    return [
        SubQuery(
            query_id=USER_POSITION_ID,
            contract_address=settings.money_market_address,
            code_hash=settings.money_market_code_hash,
            query={"user_position": {"permit": settings.permit}},
        ),
        SubQuery(
            query_id=ORACLE_ID,
            contract_address=settings.oracle_address,
            code_hash=settings.oracle_code_hash,
            query={"get_price": {"key": settings.oracle_key}},
        ),
    ]


def _unwrap(payload: Any, key: str) -> dict:
    if isinstance(payload, dict) and isinstance(payload.get(key), dict):
        return payload[key]
    return payload if isinstance(payload, dict) else {}


def plan_strategy(result: BatchQueryResult, log: logging.Logger) -> Optional[StrategyPlan]:
    """Size the borrow from the reserved answers; None disables the strategy this pass."""
    position = _unwrap(result.get(USER_POSITION_ID), "user_position")
    quote = _unwrap(result.get(ORACLE_ID), "price")
    if not position or not quote:
        log.info("Strategy skipped: money-market position or oracle price missing")
        return None

    try:
        available = borrow_capacity(
            _to_decimal(position.get("max_borrow_value")),
            _to_decimal(position.get("principal")),
            _to_decimal(position.get("accrued_interest")),
        )
        price = oracle_price(_to_decimal(quote.get("rate")))
    except ValueError as exc:
        log.warning(f"Strategy skipped: malformed sizing inputs ({exc})")
        return None

    if available <= 0:
        log.info("Strategy skipped: no borrow capacity available")
        return None
    if price <= 0:
        log.warning("Strategy skipped: oracle price is zero")
        return None

    amount = borrow_cap(available, price)
    if amount <= 0:
        log.info("Strategy skipped: borrow cap rounds to zero")
        return None
    return StrategyPlan(borrow_amount=amount, available=available, price=price)


def build_strategy_msgs(
    plan: StrategyPlan,
    settings: StrategySettings,
    sender: str,
    position: LiquidatablePosition,
) -> List[ExecuteMsg]:
    """Borrow on the money market, then forward the borrowed tokens into the vault."""
    amount = str(plan.borrow_amount)
    borrow = ExecuteMsg(
        sender=sender,
        contract_address=settings.money_market_address,
        code_hash=settings.money_market_code_hash,
        msg={"borrow": {"amount": amount}},
    )
    forward = ExecuteMsg(
        sender=sender,
        contract_address=settings.token_address,
        code_hash=settings.token_code_hash,
        msg={
            "send": {
                "recipient": position.vault.address,
                "recipient_code_hash": position.vault.code_hash,
                "amount": amount,
                "msg": encode_json_b64({"deposit": {"vault_id": position.position_set_id}}),
            }
        },
    )
    return [borrow, forward]
