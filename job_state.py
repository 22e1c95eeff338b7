#!/usr/bin/env python3
"""
Persisted job state for the liquidator.

One flat JSON record per deployment, read at the start of a pass and written
back (atomically) at the end or on any early exit. The record also carries the
static vault-group configuration the round-robin cursor walks over, and the
single in-flight transaction marker used for crash recovery.

The file must be pre-seeded; a missing record is fatal.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

LATENCY_WINDOW = 100


class MissingStateError(FileNotFoundError):
    """Raised when the state file does not exist (no default is fabricated)."""


@dataclass
class VaultGroup:
    """A lending contract plus the sub-ledgers (position sets) to probe."""
    address: str
    code_hash: str
    position_set_ids: List[int] = field(default_factory=list)
    skip_ids: List[int] = field(default_factory=list)

    def probe_ids(self) -> List[int]:
        skip = set(self.skip_ids)
        return [pid for pid in self.position_set_ids if pid not in skip]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'code_hash': self.code_hash,
            'position_set_ids': list(self.position_set_ids),
            'skip_ids': list(self.skip_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VaultGroup':
        return cls(
            address=str(data.get('address', '')),
            code_hash=str(data.get('code_hash', '')),
            position_set_ids=[int(v) for v in data.get('position_set_ids', []) or []],
            skip_ids=[int(v) for v in data.get('skip_ids', []) or []],
        )


@dataclass
class InFlightTx:
    """A broadcast transaction whose outcome is not yet durably known."""
    tx_hash: str
    broadcast_at: float
    strategy: str = "liquidate"
    outcome_counted: bool = False  # success/failure counter already bumped

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tx_hash': self.tx_hash,
            'broadcast_at': self.broadcast_at,
            'strategy': self.strategy,
            'outcome_counted': self.outcome_counted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InFlightTx':
        return cls(
            tx_hash=str(data.get('tx_hash', '')),
            broadcast_at=float(data.get('broadcast_at', 0.0) or 0.0),
            strategy=str(data.get('strategy', 'liquidate') or 'liquidate'),
            outcome_counted=bool(data.get('outcome_counted', False)),
        )


@dataclass
class PersistedJobState:
    vault_groups: List[VaultGroup]
    started_at: Optional[float] = None
    last_reported_at: Optional[float] = None
    contracts_cursor: Optional[int] = None
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    query_error_count: int = 0
    query_errors_at_last_report: int = 0
    query_latency_samples: List[float] = field(default_factory=list)
    in_flight: Optional[InFlightTx] = None

    # ------------------------------------------------------------ round robin

    def advance_cursor(self) -> int:
        """Move the cursor to the vault group this pass scans.

        The first pass ever starts at 0 without advancing; every later pass
        moves one group forward, wrapping around.
        """
        if not self.vault_groups:
            raise ValueError("state has no vault groups configured")
        if self.contracts_cursor is None:
            self.contracts_cursor = 0
        else:
            self.contracts_cursor = (int(self.contracts_cursor) + 1) % len(self.vault_groups)
        return self.contracts_cursor

    def current_group(self) -> VaultGroup:
        index = self.contracts_cursor or 0
        return self.vault_groups[index % len(self.vault_groups)]

    # ------------------------------------------------------------ latency

    def record_latency(self, seconds: float) -> None:
        self.query_latency_samples.append(float(seconds))
        overflow = len(self.query_latency_samples) - LATENCY_WINDOW
        if overflow > 0:
            del self.query_latency_samples[:overflow]

    def average_latency(self) -> float:
        if not self.query_latency_samples:
            return 0.0
        return sum(self.query_latency_samples) / len(self.query_latency_samples)

    # ------------------------------------------------------------ persistence

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at,
            'last_reported_at': self.last_reported_at,
            'contracts_cursor': self.contracts_cursor,
            'total_attempts': self.total_attempts,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'query_error_count': self.query_error_count,
            'query_errors_at_last_report': self.query_errors_at_last_report,
            'query_latency_samples': list(self.query_latency_samples),
            'in_flight': self.in_flight.to_dict() if self.in_flight else None,
            'vault_groups': [g.to_dict() for g in self.vault_groups],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PersistedJobState':
        cursor = data.get('contracts_cursor')
        in_flight = data.get('in_flight')
        samples = [float(v) for v in data.get('query_latency_samples', []) or []]
        state = cls(
            vault_groups=[VaultGroup.from_dict(g) for g in data.get('vault_groups', []) or []],
            started_at=data.get('started_at'),
            last_reported_at=data.get('last_reported_at'),
            contracts_cursor=int(cursor) if cursor is not None else None,
            total_attempts=int(data.get('total_attempts', 0) or 0),
            success_count=int(data.get('success_count', 0) or 0),
            failure_count=int(data.get('failure_count', 0) or 0),
            query_error_count=int(data.get('query_error_count', 0) or 0),
            query_errors_at_last_report=int(data.get('query_errors_at_last_report', 0) or 0),
            query_latency_samples=samples[-LATENCY_WINDOW:],
            in_flight=InFlightTx.from_dict(in_flight) if isinstance(in_flight, dict) and in_flight.get('tx_hash') else None,
        )
        return state


def load_state(path: str) -> PersistedJobState:
    """Load the state record; raises MissingStateError if it was never seeded."""
    state_path = Path(path)
    if not state_path.exists():
        raise MissingStateError(f"State file not found: {state_path}")
    with state_path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"State file {state_path} does not hold a JSON object")
    state = PersistedJobState.from_dict(raw)
    if not state.vault_groups:
        raise ValueError(f"State file {state_path} has no vault_groups")
    return state


def save_state(path: str, state: PersistedJobState) -> None:
    """Overwrite the state record via temp file + rename."""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2)
    os.replace(tmp_path, path)
