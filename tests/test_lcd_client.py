#!/usr/bin/env python3
"""LCD ledger client response handling (HTTP layer stubbed)."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from batch_query import decode_b64_json, encode_json_b64  # noqa: E402
from candidate_pipeline import LiquidatablePosition  # noqa: E402
from job_state import PersistedJobState, VaultGroup, load_state, save_state  # noqa: E402
from ledger import LcdLedgerClient, TxCodec, load_codec, tx_result_from_response  # noqa: E402
from ledger.base import ExecuteMsg, InvalidResponseError, LedgerError  # noqa: E402
from submission import SubmissionPlan, SubmissionProtocol  # noqa: E402
from tx_ledger import TxLedger  # noqa: E402


class PlainCodec(TxCodec):
    """Unencrypted codec: queries and answers are plain base64 JSON."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.signed: List[Tuple[int, int]] = []

    async def encrypt_query(self, code_hash: str, query: Dict[str, Any]) -> Tuple[str, Any]:
        return encode_json_b64(query), code_hash

    async def decrypt_query_response(self, data: str, context: Any) -> Any:
        return decode_b64_json(data)

    async def sign_tx(self, msgs, gas_limit, fee_denom, account_number, sequence) -> str:
        self.signed.append((account_number, sequence))
        return "dHhieXRlcw=="


class DummyLcdClient(LcdLedgerClient):
    """Client with the HTTP layer replaced by a scripted route table."""

    def __init__(self, routes: Dict[Tuple[str, str], List[Tuple[int, Any]]], **kwargs: Any) -> None:
        super().__init__(
            logging.getLogger("dummy_lcd"),
            url="http://lcd.invalid/",
            wallet_address="secret1bot",
            codec=PlainCodec(),
            **kwargs,
        )
        self.routes = routes
        self.requests: List[Tuple[str, str, Dict[str, Any]]] = []

    async def _request(self, method: str, path: str, **kwargs: Any) -> Tuple[int, Any]:
        self.requests.append((method, path, kwargs))
        replies = self.routes[(method, path)]
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


ACCOUNT = ("GET", "/cosmos/auth/v1beta1/accounts/secret1bot")
BROADCAST = ("POST", "/cosmos/tx/v1beta1/txs")
VAULT = VaultGroup(address="secret1vault", code_hash="h", position_set_ids=[1])


def _tx_route(tx_hash: str) -> Tuple[str, str]:
    return ("GET", f"/cosmos/tx/v1beta1/txs/{tx_hash}")


def _msg() -> ExecuteMsg:
    return ExecuteMsg(sender="secret1bot", contract_address="secret1vault", code_hash="h", msg={"liquidate": {}})


def test_tx_result_defaults_missing_code_to_success() -> None:
    tx = tx_result_from_response({"txhash": "AB", "height": "12", "logs": [{"events": []}]})
    assert tx.code == 0
    assert tx.succeeded
    assert tx.height == 12
    assert tx.json_log == [{"events": []}]


def test_default_log_decoding_flattens_attributes() -> None:
    tx_response = {
        "txhash": "AB",
        "code": 0,
        "logs": [
            {
                "msg_index": 1,
                "events": [{"type": "wasm", "attributes": [{"key": "action", "value": "liquidate"}]}],
            }
        ],
    }
    tx = tx_result_from_response(tx_response, PlainCodec())
    assert tx.array_log == [{"msg": 1, "type": "wasm", "key": "action", "value": "liquidate"}]
    assert tx.json_log == tx_response["logs"]


def test_failed_tx_without_logs_has_no_evidence_fields() -> None:
    tx = tx_result_from_response({"txhash": "AB", "code": 11, "raw_log": ""}, PlainCodec())
    assert tx.code == 11
    assert tx.json_log is None and tx.array_log is None
    assert tx.raw_log == ""


def test_load_codec_builds_named_class() -> None:
    codec = load_codec(f"{__name__}:PlainCodec", signing_key="k")
    assert isinstance(codec, TxCodec)
    assert codec.kwargs == {"signing_key": "k"}


@pytest.mark.parametrize(
    "path,error",
    [
        ("no-colon", ValueError),
        ("collections:OrderedDict", TypeError),
        ("definitely_missing_codec_module:Codec", ImportError),
    ],
)
def test_load_codec_rejects_bad_paths(path, error) -> None:
    with pytest.raises(error):
        load_codec(path)


def test_query_contract_round_trips_through_codec() -> None:
    client = DummyLcdClient({("GET", "/compute/v1beta1/query/secret1batch"): [(200, {"data": encode_json_b64({"batch": {}})})]})
    result = asyncio.run(client.query_contract("secret1batch", "h", {"batch": {"queries": []}}))
    assert result == {"batch": {}}
    _, _, kwargs = client.requests[0]
    assert decode_b64_json(kwargs["params"]["query"]) == {"batch": {"queries": []}}


def test_query_contract_without_data_is_invalid() -> None:
    client = DummyLcdClient({("GET", "/compute/v1beta1/query/secret1batch"): [(200, {"unexpected": 1})]})
    with pytest.raises(InvalidResponseError):
        asyncio.run(client.query_contract("secret1batch", "h", {}))


def test_query_contract_http_error_is_transport_error() -> None:
    client = DummyLcdClient({("GET", "/compute/v1beta1/query/secret1batch"): [(500, {"message": "boom"})]})
    with pytest.raises(LedgerError) as exc_info:
        asyncio.run(client.query_contract("secret1batch", "h", {}))
    assert not isinstance(exc_info.value, InvalidResponseError)


def test_broadcast_rejected_at_checktx_is_final() -> None:
    client = DummyLcdClient(
        {
            ACCOUNT: [(200, {"account": {"account_number": "7", "sequence": "42"}})],
            BROADCAST: [(200, {"tx_response": {"txhash": "AB", "code": 32, "raw_log": "incorrect account sequence"}})],
        }
    )
    tx = asyncio.run(client.broadcast([_msg()], 1_500_000, "uscrt"))
    assert tx.code == 32
    assert tx.raw_log == "incorrect account sequence"
    assert client.codec.signed == [(7, 42)]
    assert all(path != _tx_route("AB")[1] for _, path, _ in client.requests)


def test_accepted_broadcast_returns_ack_without_polling(caplog) -> None:
    client = DummyLcdClient(
        {
            ACCOUNT: [(200, {"account": {"base_account": {"account_number": "1", "sequence": "2"}}})],
            BROADCAST: [(200, {"tx_response": {"txhash": "AB", "code": 0}})],
        }
    )
    with caplog.at_level(logging.DEBUG, logger="dummy_lcd"):
        tx = asyncio.run(client.broadcast([_msg()], 1_500_000, "uscrt"))
    assert tx.tx_hash == "AB"
    assert not tx.confirmed
    assert '"contract_address": "secret1vault"' in caplog.text
    assert client.codec.signed == [(1, 2)]
    assert [path for _, path, _ in client.requests] == [ACCOUNT[1], BROADCAST[1]]


def test_await_inclusion_polls_until_included() -> None:
    client = DummyLcdClient(
        {
            _tx_route("AB"): [
                (404, None),
                (200, {"tx_response": {"txhash": "AB", "code": 0, "logs": [{"events": []}]}}),
            ],
        },
        confirm_timeout_sec=30,
        confirm_poll_sec=0.1,
    )
    tx = asyncio.run(client.await_inclusion("AB"))
    assert tx.confirmed and tx.succeeded


def test_await_inclusion_gives_up_with_unconfirmed_result() -> None:
    client = DummyLcdClient({_tx_route("AB"): [(404, None)]}, confirm_timeout_sec=0)
    tx = asyncio.run(client.await_inclusion("AB"))
    assert tx.tx_hash == "AB"
    assert not tx.confirmed


def test_failed_inclusion_poll_leaves_acknowledged_hash_on_disk(tmp_path) -> None:
    client = DummyLcdClient(
        {
            ACCOUNT: [(200, {"account": {"account_number": "1", "sequence": "2"}})],
            BROADCAST: [(200, {"tx_response": {"txhash": "AB", "code": 0}})],
            _tx_route("AB"): [InvalidResponseError("invalid json response from tx lookup (HTTP 502)")],
        },
        confirm_timeout_sec=30,
    )
    state_path = str(tmp_path / "results.json")
    state = PersistedJobState(vault_groups=[VAULT])
    protocol = SubmissionProtocol(
        client,
        lambda: save_state(state_path, state),
        TxLedger(str(tmp_path / "transactions.txt"), client.log),
        client.log,
        gas_limit=1_500_000,
        fee_denom="uscrt",
    )
    position = LiquidatablePosition(position_id="p1", position_set_id="1", vault=VAULT)
    plan = SubmissionPlan(msgs=[_msg()], position=position)

    with pytest.raises(InvalidResponseError):
        asyncio.run(protocol.submit(state, plan))

    disk = load_state(state_path)
    assert disk.in_flight is not None
    assert disk.in_flight.tx_hash == "AB"
    assert disk.total_attempts == 1



def test_get_tx_not_found_code_is_none() -> None:
    client = DummyLcdClient({_tx_route("AB"): [(400, {"code": 5, "message": "tx not found"})]})
    assert asyncio.run(client.get_tx("AB")) is None


def test_request_requires_initialized_session() -> None:
    client = LcdLedgerClient(logging.getLogger("lcd"), url="http://x", wallet_address="a", codec=PlainCodec())
    with pytest.raises(LedgerError):
        asyncio.run(client.get_tx("AB"))
