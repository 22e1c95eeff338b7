#!/usr/bin/env python3
"""
Multiplexed batch query gateway.

Bundles every sub-query a pass needs into one call against the batch-query
contract and decodes the answers into a map keyed by the application-chosen
query id. Responses are paired by id, never by position.

Wire format (ids and queries are base64-encoded JSON):
    {"batch": {"queries": [{"id", "contract": {"address", "code_hash"}, "query"}]}}
    {"batch": {"block_height", "responses": [{"id", "contract", "response": {"response"}}]}}
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from job_state import PersistedJobState, VaultGroup
from ledger.base import InvalidResponseError, LedgerClient

USER_POSITION_ID = "user_position"
ORACLE_ID = "oracle"
RESERVED_IDS = frozenset({USER_POSITION_ID, ORACLE_ID})


def encode_json_b64(value: Any) -> str:
    return base64.b64encode(json.dumps(value, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_b64_json(data: str) -> Any:
    return json.loads(base64.b64decode(data).decode("utf-8"))


@dataclass
class SubQuery:
    query_id: str
    contract_address: str
    code_hash: str
    query: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": encode_json_b64(self.query_id),
            "contract": {
                "address": self.contract_address,
                "code_hash": self.code_hash,
            },
            "query": encode_json_b64(self.query),
        }


@dataclass
class BatchQueryResult:
    """Decoded answers keyed by query id, plus the order they were issued in."""
    block_height: int
    order: List[str]
    payloads: Dict[str, Any] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    def get(self, query_id: str) -> Optional[Any]:
        return self.payloads.get(query_id)

    def ordered_payloads(self, exclude: frozenset = RESERVED_IDS) -> List[tuple]:
        """(query_id, payload) pairs in issue order, skipping ids without an answer."""
        return [
            (qid, self.payloads[qid])
            for qid in self.order
            if qid not in exclude and qid in self.payloads
        ]


def build_position_queries(group: VaultGroup) -> List[SubQuery]:
    """One liquidatable_positions probe per non-skipped position set of ``group``."""
    return [
        SubQuery(
            query_id=str(position_set_id),
            contract_address=group.address,
            code_hash=group.code_hash,
            query={"liquidatable_positions": {"vault_id": str(position_set_id)}},
        )
        for position_set_id in group.probe_ids()
    ]


def build_envelope(sub_queries: List[SubQuery]) -> Dict[str, Any]:
    seen = set()
    for sub in sub_queries:
        if sub.query_id in seen:
            raise ValueError(f"Duplicate batch query id: {sub.query_id!r}")
        seen.add(sub.query_id)
    return {"batch": {"queries": [sub.to_wire() for sub in sub_queries]}}


def decode_batch_response(
    response: Dict[str, Any],
    order: List[str],
    log: logging.Logger,
) -> BatchQueryResult:
    """Pair each response with its issued query by id and decode the payloads.

    A payload that fails to decode is recorded in ``failed`` and skipped;
    the remaining answers are still decoded.
    """
    batch = response.get("batch") or {}
    try:
        block_height = int(batch.get("block_height") or 0)
    except (TypeError, ValueError):
        block_height = 0
    result = BatchQueryResult(block_height=block_height, order=list(order))
    issued = set(order)

    for entry in batch.get("responses", []) or []:
        if not isinstance(entry, dict):
            continue
        try:
            query_id = str(decode_b64_json(entry.get("id") or ""))
        except (ValueError, TypeError) as exc:
            log.warning(f"Skipping batch response with undecodable id {entry.get('id')!r}: {exc}")
            continue
        if query_id not in issued:
            log.warning(f"Ignoring batch response for unknown query id {query_id!r}")
            continue
        encoded = (entry.get("response") or {}).get("response")
        if not encoded:
            # That sub-ledger had nothing to say.
            continue
        try:
            result.payloads[query_id] = decode_b64_json(encoded)
        except (ValueError, TypeError) as exc:
            result.failed[query_id] = str(exc)
            log.warning(f"Failed to decode batch response for {query_id!r}: {exc}")
    return result


class BatchQueryGateway:
    """Issues one batch query per pass and tracks latency / error counters on the state."""

    def __init__(
        self,
        client: LedgerClient,
        contract_address: str,
        code_hash: str,
        log: logging.Logger,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.contract_address = contract_address
        self.code_hash = code_hash
        self.log = log
        self.clock = clock

    async def execute(
        self,
        sub_queries: List[SubQuery],
        state: PersistedJobState,
    ) -> Optional[BatchQueryResult]:
        """Run the batch query.

        Returns None (after counting a query error) when the response was
        malformed or absent. Any other transport error propagates.
        """
        envelope = build_envelope(sub_queries)
        started = self.clock()
        try:
            response = await self.client.query_contract(
                self.contract_address,
                self.code_hash,
                envelope,
            )
        except InvalidResponseError as exc:
            state.query_error_count += 1
            self.log.warning(f"Batch query returned an invalid response: {exc}")
            return None

        if not isinstance(response, dict) or not isinstance(response.get("batch"), dict):
            state.query_error_count += 1
            self.log.warning("Batch query returned no result")
            return None

        state.record_latency(self.clock() - started)
        order = [sub.query_id for sub in sub_queries]
        return decode_batch_response(response, order, self.log)
