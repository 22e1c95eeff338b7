#!/usr/bin/env python3
"""
Shared ledger client interface and dataclasses.

The liquidator only needs three capabilities from the remote ledger:
- a read-only contract query (used for the multiplexed batch query)
- broadcasting an ordered list of execute messages
- looking up a previously broadcast transaction by hash
Signing, encryption and the chain's wire encoding live behind this interface.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class LedgerError(RuntimeError):
    """Transport-level ledger failure; fatal for the current pass."""


class InvalidResponseError(LedgerError):
    """The ledger answered with a malformed or undecodable response."""


@dataclass
class ExecuteMsg:
    """One contract execute message inside a transaction."""
    sender: str
    contract_address: str
    code_hash: str
    msg: Dict[str, Any]
    sent_funds: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sender': self.sender,
            'contract_address': self.contract_address,
            'code_hash': self.code_hash,
            'msg': self.msg,
            'sent_funds': list(self.sent_funds),
        }


@dataclass
class TxResult:
    """Status record of a broadcast transaction.

    ``code`` is None while the transaction is acknowledged but not yet
    included in a block.
    """
    tx_hash: str
    code: Optional[int] = None
    raw_log: str = ""
    json_log: Optional[Any] = None
    array_log: Optional[Any] = None
    height: int = 0

    @property
    def confirmed(self) -> bool:
        return self.code is not None

    @property
    def succeeded(self) -> bool:
        return self.code == 0


class LedgerClient(abc.ABC):
    """Base class for ledger clients."""

    def __init__(self, log: logging.Logger):
        self.log = log
        self._initialized = False

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """Wallet address used as the sender of execute messages."""
        raise NotImplementedError

    async def initialize(self) -> bool:
        """Open connections. Default: nothing to do."""
        self._initialized = True
        return True

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""
        return None

    @abc.abstractmethod
    async def query_contract(
        self,
        contract_address: str,
        code_hash: str,
        query: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Run a read-only contract query and return the decoded JSON answer.

        Raises InvalidResponseError for malformed answers and LedgerError for
        other transport failures. May return None when the node answered
        with an empty body.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def broadcast(
        self,
        msgs: List[ExecuteMsg],
        gas_limit: int,
        fee_denom: str,
    ) -> TxResult:
        """Sign and broadcast ``msgs`` as one transaction; return the acknowledgment.

        Must not wait for block inclusion: the caller persists the returned
        hash before anything else can fail. ``code`` is set only when the
        ledger rejected the transaction outright (CheckTx).
        """
        raise NotImplementedError

    async def await_inclusion(self, tx_hash: str) -> TxResult:
        """Wait for an acknowledged transaction to land. Default: one lookup.

        Returns an unconfirmed TxResult (``code`` None) when it is not found yet.
        """
        found = await self.get_tx(tx_hash)
        return found if found is not None else TxResult(tx_hash=tx_hash, code=None)

    @abc.abstractmethod
    async def get_tx(self, tx_hash: str) -> Optional[TxResult]:
        """Look up a transaction; None when the ledger has no record of it."""
        raise NotImplementedError
