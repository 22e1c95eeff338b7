"""Turn decoded batch answers into liquidation candidates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from batch_query import RESERVED_IDS, BatchQueryResult
from job_state import VaultGroup
from logging_utils import get_logger

LOG = get_logger("liquidator.candidates")


@dataclass
class LiquidatablePosition:
    position_id: str
    position_set_id: str
    vault: VaultGroup

    def liquidate_msg(self) -> Dict[str, Any]:
        return {
            "liquidate": {
                "position_id": self.position_id,
                "vault_id": self.position_set_id,
            }
        }


def _positions_from_payload(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return []
    out: List[str] = []
    for pos in payload.get("positions") or []:
        if isinstance(pos, dict) and pos.get("position_id") is not None:
            out.append(str(pos["position_id"]))
    return out


def collect_candidates(result: BatchQueryResult, vault: VaultGroup) -> List[LiquidatablePosition]:
    """Flatten per-position-set answers into candidates, in the order queries were issued."""
    candidates: List[LiquidatablePosition] = []
    for query_id, payload in result.ordered_payloads(exclude=RESERVED_IDS):
        for position_id in _positions_from_payload(payload):
            candidates.append(
                LiquidatablePosition(
                    position_id=position_id,
                    position_set_id=query_id,
                    vault=vault,
                )
            )
    if candidates:
        LOG.debug(f"{len(candidates)} liquidatable positions in {vault.address}")
    return candidates


def select_candidate(
    candidates: List[LiquidatablePosition],
    total_attempts: int,
) -> Optional[LiquidatablePosition]:
    """Deterministic rotation: ``candidates[total_attempts % len(candidates)]``."""
    if not candidates:
        return None
    return candidates[int(total_attempts) % len(candidates)]
