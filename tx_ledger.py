#!/usr/bin/env python3
"""Append-only audit ledger of broadcast transactions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional


class TxLedger:
    """Appends ``timestamp_ms,tx_hash,strategy[,amount]`` lines; failures are logged only."""

    def __init__(self, path: str, log: logging.Logger):
        self.path = path
        self.log = log

    def record(
        self,
        timestamp: float,
        tx_hash: str,
        strategy: str,
        amount: Optional[int] = None,
    ) -> bool:
        fields = [str(int(timestamp * 1000)), tx_hash, strategy]
        if amount is not None:
            fields.append(str(amount))
        try:
            p = Path(self.path)
            p.parent.mkdir(parents=True, exist_ok=True)
            with p.open("a", encoding="utf-8") as f:
                f.write(",".join(fields) + "\n")
        except OSError as exc:
            self.log.error(f"Failed to append transaction hash {tx_hash} to {self.path}: {exc}")
            return False
        return True
