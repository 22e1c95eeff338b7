"""Ledger clients."""

from .base import ExecuteMsg, InvalidResponseError, LedgerClient, LedgerError, TxResult
from .lcd_client import LcdLedgerClient, TxCodec, load_codec, tx_result_from_response

__all__ = [
    "ExecuteMsg",
    "InvalidResponseError",
    "LedgerClient",
    "LedgerError",
    "TxResult",
    "LcdLedgerClient",
    "TxCodec",
    "load_codec",
    "tx_result_from_response",
]
