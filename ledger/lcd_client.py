#!/usr/bin/env python3
"""LCD REST ledger client: aiohttp transport + pluggable signing/encryption codec.

The node's REST gateway handles account lookup, contract queries, broadcasts
and tx lookup. Query encryption and transaction signing are chain-specific and
are delegated to a ``TxCodec`` implementation named in config
(``ledger.codec: "package.module:ClassName"``).
"""

from __future__ import annotations

import abc
import asyncio
import importlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .base import ExecuteMsg, InvalidResponseError, LedgerClient, LedgerError, TxResult

BROADCAST_MODE = "BROADCAST_MODE_SYNC"
TX_NOT_FOUND_CODE = 5  # cosmos-sdk ErrTxNotFound / grpc NotFound


class TxCodec(abc.ABC):
    """Chain-specific query encryption and transaction signing."""

    @abc.abstractmethod
    async def encrypt_query(self, code_hash: str, query: Dict[str, Any]) -> Tuple[str, Any]:
        """Return (url-safe encoded query, context needed to decrypt the answer)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def decrypt_query_response(self, data: str, context: Any) -> Any:
        """Decrypt the node's ``data`` field back into a JSON value."""
        raise NotImplementedError

    @abc.abstractmethod
    async def sign_tx(
        self,
        msgs: List[ExecuteMsg],
        gas_limit: int,
        fee_denom: str,
        account_number: int,
        sequence: int,
    ) -> str:
        """Return base64 ``tx_bytes`` ready for broadcast."""
        raise NotImplementedError

    def decode_tx_logs(self, tx_response: Dict[str, Any]) -> Tuple[Optional[Any], Optional[Any]]:
        """Return (json_log, array_log) for a tx_response.

        Default reads plaintext ``logs``; codecs for encrypted chains override.
        """
        logs = tx_response.get("logs")
        if not logs:
            return None, None
        array_log: List[Dict[str, Any]] = []
        for entry in logs:
            for event in (entry or {}).get("events", []) or []:
                for attr in event.get("attributes", []) or []:
                    array_log.append({
                        "msg": entry.get("msg_index", 0),
                        "type": event.get("type", ""),
                        "key": attr.get("key", ""),
                        "value": attr.get("value", ""),
                    })
        return logs, (array_log or None)


def load_codec(path: str, **kwargs: Any) -> TxCodec:
    """Instantiate the codec class named by ``module:ClassName``."""
    module_name, _, class_name = str(path or "").partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Codec must be given as 'module:ClassName', got {path!r}")
    module = importlib.import_module(module_name)
    codec_cls = getattr(module, class_name)
    codec = codec_cls(**kwargs)
    if not isinstance(codec, TxCodec):
        raise TypeError(f"{path} is not a TxCodec implementation")
    return codec


def tx_result_from_response(tx_response: Dict[str, Any], codec: Optional[TxCodec] = None) -> TxResult:
    """Build a TxResult from a cosmos ``tx_response`` object."""
    if codec is not None:
        json_log, array_log = codec.decode_tx_logs(tx_response)
    else:
        json_log = tx_response.get("logs") or None
        array_log = None
    try:
        height = int(tx_response.get("height") or 0)
    except (TypeError, ValueError):
        height = 0
    code = tx_response.get("code")
    return TxResult(
        tx_hash=str(tx_response.get("txhash") or ""),
        code=int(code) if code is not None else 0,
        raw_log=str(tx_response.get("raw_log") or ""),
        json_log=json_log,
        array_log=array_log,
        height=height,
    )


class LcdLedgerClient(LedgerClient):
    """Ledger client talking to a cosmos LCD REST endpoint."""

    def __init__(
        self,
        log: logging.Logger,
        url: str,
        wallet_address: str,
        codec: TxCodec,
        request_timeout_sec: float = 0.0,
        confirm_timeout_sec: float = 60.0,
        confirm_poll_sec: float = 3.0,
    ):
        super().__init__(log)
        self._base_url = str(url or "").rstrip("/")
        self._address = wallet_address
        self.codec = codec
        self.request_timeout_sec = float(request_timeout_sec or 0.0)
        self.confirm_timeout_sec = max(0.0, float(confirm_timeout_sec))
        self.confirm_poll_sec = max(0.1, float(confirm_poll_sec))
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def address(self) -> str:
        return self._address

    # ------------------------------------------------------------------ init

    async def initialize(self) -> bool:
        if self._session and not self._session.closed:
            return True
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_sec or None)
        self._session = aiohttp.ClientSession(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        self._initialized = True
        self.log.info(f"LCD ledger client initialized ({self._base_url})")
        return True

    async def close(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------ http

    async def _request(self, method: str, path: str, **kwargs: Any) -> Tuple[int, Any]:
        if not self._session or self._session.closed:
            raise LedgerError("HTTP session not available (not initialized or closed)")
        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                body = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise LedgerError(f"{method} {path} failed: {exc}") from exc
        if not body.strip():
            return status, None
        try:
            return status, json.loads(body)
        except json.JSONDecodeError as exc:
            raise InvalidResponseError(
                f"invalid json response from {path} (HTTP {status}): {body[:200]}"
            ) from exc

    async def _account_numbers(self) -> Tuple[int, int]:
        status, payload = await self._request("GET", f"/cosmos/auth/v1beta1/accounts/{self._address}")
        if status != 200 or not isinstance(payload, dict):
            raise LedgerError(f"Account lookup failed (HTTP {status}): {payload}")
        account = payload.get("account") or {}
        # Vesting / module accounts wrap the base account.
        base = account.get("base_account") or account
        try:
            return int(base.get("account_number") or 0), int(base.get("sequence") or 0)
        except (TypeError, ValueError) as exc:
            raise InvalidResponseError(f"invalid json response for account: {account}") from exc

    # ------------------------------------------------------------------ ledger api

    async def query_contract(
        self,
        contract_address: str,
        code_hash: str,
        query: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        encoded, context = await self.codec.encrypt_query(code_hash, query)
        status, payload = await self._request(
            "GET",
            f"/compute/v1beta1/query/{contract_address}",
            params={"query": encoded},
        )
        if payload is None:
            return None
        if status != 200:
            raise LedgerError(f"Contract query failed (HTTP {status}): {payload}")
        if not isinstance(payload, dict) or "data" not in payload:
            raise InvalidResponseError(f"invalid json response from contract query: {payload}")
        try:
            decoded = await self.codec.decrypt_query_response(payload["data"], context)
        except (ValueError, TypeError) as exc:
            raise InvalidResponseError(f"invalid json response (decrypt failed): {exc}") from exc
        return decoded if isinstance(decoded, dict) else None

    async def broadcast(
        self,
        msgs: List[ExecuteMsg],
        gas_limit: int,
        fee_denom: str,
    ) -> TxResult:
        self.log.debug(f"Broadcasting {json.dumps([m.to_dict() for m in msgs])}")
        account_number, sequence = await self._account_numbers()
        tx_bytes = await self.codec.sign_tx(msgs, gas_limit, fee_denom, account_number, sequence)
        status, payload = await self._request(
            "POST",
            "/cosmos/tx/v1beta1/txs",
            json={"tx_bytes": tx_bytes, "mode": BROADCAST_MODE},
        )
        tx_response = (payload or {}).get("tx_response") if isinstance(payload, dict) else None
        if status != 200 or not isinstance(tx_response, dict) or not tx_response.get("txhash"):
            raise LedgerError(f"Broadcast rejected (HTTP {status}): {payload}")

        tx_hash = str(tx_response["txhash"])
        check_code = int(tx_response.get("code") or 0)
        if check_code != 0:
            # Rejected at CheckTx: final, never enters a block.
            return TxResult(
                tx_hash=tx_hash,
                code=check_code,
                raw_log=str(tx_response.get("raw_log") or ""),
            )
        return TxResult(tx_hash=tx_hash, code=None)

    async def await_inclusion(self, tx_hash: str) -> TxResult:
        """Poll get_tx until the tx is included or confirm_timeout_sec runs out."""
        deadline = time.monotonic() + self.confirm_timeout_sec
        while True:
            found = await self.get_tx(tx_hash)
            if found is not None:
                return found
            if time.monotonic() >= deadline:
                self.log.info(f"Tx {tx_hash} not yet included after {self.confirm_timeout_sec:.0f}s")
                return TxResult(tx_hash=tx_hash, code=None)
            await asyncio.sleep(self.confirm_poll_sec)

    async def get_tx(self, tx_hash: str) -> Optional[TxResult]:
        status, payload = await self._request("GET", f"/cosmos/tx/v1beta1/txs/{tx_hash}")
        if status == 404:
            return None
        if not isinstance(payload, dict):
            raise InvalidResponseError(f"invalid json response for tx {tx_hash}: {payload}")
        if status != 200:
            if int(payload.get("code") or 0) == TX_NOT_FOUND_CODE:
                return None
            raise LedgerError(f"Tx lookup failed (HTTP {status}): {payload}")
        tx_response = payload.get("tx_response")
        if not isinstance(tx_response, dict):
            raise InvalidResponseError(f"invalid json response for tx {tx_hash}: missing tx_response")
        return tx_result_from_response(tx_response, self.codec)
