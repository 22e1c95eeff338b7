#!/usr/bin/env python3
"""End-to-end liquidation passes against a scripted ledger."""

import asyncio
import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from batch_query import ORACLE_ID, USER_POSITION_ID, decode_b64_json, encode_json_b64
from config_env import LedgerSettings, LiquidatorConfig, StrategySettings
from job_state import InFlightTx, MissingStateError, PersistedJobState, VaultGroup, load_state, save_state
from ledger.base import LedgerError, TxResult
from liquidator import NO_CANDIDATES, QUERY_ERROR, PassContext, run_pass
from submission import PENDING, RECOVERED, SUBMITTED
from tx_outcome import IncompleteEvidenceError

LOG = logging.getLogger("test_liquidator_pass")
NOW = 50_000.0

GROUPS = [
    VaultGroup(address="secret1vaultA", code_hash="hashA", position_set_ids=[1, 2]),
    VaultGroup(address="secret1vaultB", code_hash="hashB", position_set_ids=[7]),
]

STRATEGY = StrategySettings(
    money_market_address="secret1mm",
    money_market_code_hash="mmhash",
    oracle_address="secret1oracle",
    oracle_code_hash="oraclehash",
    permit={"params": {}, "signature": {}},
    token_address="secret1token",
    token_code_hash="tokenhash",
)


class ScriptedLedger:
    """Answers batch queries from a {query_id: payload} map and records broadcasts."""

    address = "secret1bot"

    def __init__(self, answers=None, broadcast_result=None, txs=None, query_error=None, absent=False):
        self.answers = dict(answers or {})
        self.broadcast_result = broadcast_result
        self.txs = dict(txs or {})
        self.query_error = query_error
        self.absent = absent
        self.queries = []
        self.broadcasts = []

    async def query_contract(self, contract_address, code_hash, query):
        if self.query_error is not None:
            raise self.query_error
        issued = [decode_b64_json(q["id"]) for q in query["batch"]["queries"]]
        self.queries.append(issued)
        if self.absent:
            return None
        responses = [
            {
                "id": encode_json_b64(qid),
                "contract": {"address": contract_address, "code_hash": code_hash},
                "response": {"response": encode_json_b64(self.answers[qid])},
            }
            for qid in issued
            if qid in self.answers
        ]
        return {"batch": {"block_height": 1234, "responses": responses}}

    async def broadcast(self, msgs, gas_limit, fee_denom):
        self.broadcasts.append(msgs)
        return self.broadcast_result

    async def get_tx(self, tx_hash):
        return self.txs.get(tx_hash)

    async def await_inclusion(self, tx_hash):
        found = self.txs.get(tx_hash)
        return found if found is not None else TxResult(tx_hash=tx_hash, code=None)


def _config(tmp_path, strategy=None) -> LiquidatorConfig:
    return LiquidatorConfig(
        ledger=LedgerSettings(
            url="http://lcd.invalid",
            chain_id="secret-4",
            signing_key="unused",
            wallet_address="secret1bot",
            encryption_seed=[1, 2, 3],
        ),
        batch_query_address="secret1batch",
        batch_query_code_hash="batchhash",
        state_path=str(tmp_path / "results.json"),
        tx_ledger_path=str(tmp_path / "transactions.txt"),
        strategy=strategy,
    )


def _seed(cfg: LiquidatorConfig, **fields) -> None:
    save_state(cfg.state_path, PersistedJobState(vault_groups=list(GROUPS), **fields))


def _run(cfg, client) -> str:
    ctx = PassContext(config=cfg, client=client, log=LOG, clock=lambda: NOW)
    return asyncio.run(run_pass(ctx))


def _ok_tx(tx_hash="TX1") -> TxResult:
    return TxResult(tx_hash=tx_hash, code=0, json_log=[{"events": []}])


def test_first_pass_liquidates_first_candidate_of_first_group(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg)
    client = ScriptedLedger(
        answers={"1": {"positions": [{"position_id": "a"}, {"position_id": "b"}]}, "2": {"positions": []}},
        broadcast_result=_ok_tx(),
    )

    assert _run(cfg, client) == SUBMITTED

    assert client.queries == [["1", "2"]]
    (msg,) = client.broadcasts[0]
    assert msg.contract_address == "secret1vaultA"
    assert msg.msg == {"liquidate": {"position_id": "a", "vault_id": "1"}}

    state = load_state(cfg.state_path)
    assert state.contracts_cursor == 0
    assert state.total_attempts == 1
    assert state.success_count == 1
    assert state.started_at == NOW
    assert state.in_flight is None
    assert len(state.query_latency_samples) == 1
    assert Path(cfg.tx_ledger_path).read_text().startswith(f"{int(NOW * 1000)},TX1,liquidate")


def test_cursor_moves_to_next_group_each_pass(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, contracts_cursor=0)
    client = ScriptedLedger(answers={"7": {"positions": []}})

    assert _run(cfg, client) == NO_CANDIDATES
    assert client.queries == [["7"]]
    assert load_state(cfg.state_path).contracts_cursor == 1

    _run(cfg, client)
    assert load_state(cfg.state_path).contracts_cursor == 0


def test_no_candidates_does_not_count_an_attempt(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, total_attempts=3)
    client = ScriptedLedger(answers={"1": {"positions": []}})

    assert _run(cfg, client) == NO_CANDIDATES
    assert client.broadcasts == []
    assert load_state(cfg.state_path).total_attempts == 3


def test_selection_rotates_with_total_attempts(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, total_attempts=3)
    client = ScriptedLedger(
        answers={"1": {"positions": [{"position_id": "a"}, {"position_id": "b"}]}},
        broadcast_result=_ok_tx(),
    )

    _run(cfg, client)
    assert client.broadcasts[0][0].msg["liquidate"]["position_id"] == "b"


def test_absent_batch_result_counts_query_error(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg)
    client = ScriptedLedger(absent=True)

    assert _run(cfg, client) == QUERY_ERROR
    state = load_state(cfg.state_path)
    assert state.query_error_count == 1
    assert state.contracts_cursor == 0
    assert client.broadcasts == []


def test_transport_error_persists_cursor_and_propagates(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, contracts_cursor=0)
    client = ScriptedLedger(query_error=LedgerError("connection refused"))

    with pytest.raises(LedgerError):
        _run(cfg, client)
    state = load_state(cfg.state_path)
    assert state.contracts_cursor == 1
    assert state.query_error_count == 0


def test_missing_state_file_is_fatal(tmp_path) -> None:
    with pytest.raises(MissingStateError):
        _run(_config(tmp_path), ScriptedLedger())


def test_in_flight_tx_is_recovered_instead_of_broadcasting(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, total_attempts=5, in_flight=InFlightTx(tx_hash="OLD", broadcast_at=NOW - 30))
    client = ScriptedLedger(
        answers={"1": {"positions": [{"position_id": "a"}]}},
        broadcast_result=_ok_tx("NEW"),
        txs={"OLD": _ok_tx("OLD")},
    )

    assert _run(cfg, client) == RECOVERED
    assert client.broadcasts == []
    state = load_state(cfg.state_path)
    assert state.total_attempts == 5
    assert state.success_count == 1
    assert state.in_flight is None


def test_in_flight_tx_not_found_stays_pending(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, in_flight=InFlightTx(tx_hash="OLD", broadcast_at=NOW - 30))
    client = ScriptedLedger(answers={"1": {"positions": []}})

    assert _run(cfg, client) == PENDING
    assert load_state(cfg.state_path).in_flight.tx_hash == "OLD"


def test_stuck_outcome_keeps_reference_on_disk(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg)
    client = ScriptedLedger(
        answers={"1": {"positions": [{"position_id": "a"}]}},
        broadcast_result=TxResult(tx_hash="TX9", code=4, raw_log=""),
    )

    with pytest.raises(IncompleteEvidenceError):
        _run(cfg, client)
    state = load_state(cfg.state_path)
    assert state.in_flight.tx_hash == "TX9"
    assert state.failure_count == 1


def test_strategy_msgs_are_prepended_to_liquidation(tmp_path) -> None:
    cfg = _config(tmp_path, strategy=STRATEGY)
    _seed(cfg)
    client = ScriptedLedger(
        answers={
            "1": {"positions": [{"position_id": "a"}]},
            USER_POSITION_ID: {"principal": "100", "accrued_interest": "10", "max_borrow_value": "1000"},
            ORACLE_ID: {"rate": "1000000000000000000"},
        },
        broadcast_result=_ok_tx(),
    )

    assert _run(cfg, client) == SUBMITTED

    assert client.queries == [["1", "2", USER_POSITION_ID, ORACLE_ID]]
    borrow, forward, liquidate = client.broadcasts[0]
    assert borrow.msg == {"borrow": {"amount": "852600000"}}
    assert forward.contract_address == "secret1token"
    assert liquidate.msg == {"liquidate": {"position_id": "a", "vault_id": "1"}}
    assert Path(cfg.tx_ledger_path).read_text().strip() == f"{int(NOW * 1000)},TX1,arb,852600000"


def test_strategy_falls_back_to_plain_liquidation_without_answers(tmp_path) -> None:
    cfg = _config(tmp_path, strategy=STRATEGY)
    _seed(cfg)
    client = ScriptedLedger(
        answers={"1": {"positions": [{"position_id": "a"}]}},
        broadcast_result=_ok_tx(),
    )

    assert _run(cfg, client) == SUBMITTED
    (only,) = client.broadcasts[0]
    assert only.msg["liquidate"]["position_id"] == "a"


def test_strategy_falls_back_to_plain_liquidation_without_capacity(tmp_path) -> None:
    cfg = _config(tmp_path, strategy=STRATEGY)
    _seed(cfg)
    client = ScriptedLedger(
        answers={
            "1": {"positions": [{"position_id": "a"}]},
            # 0.98 * 1000 - 980 leaves nothing to borrow
            USER_POSITION_ID: {"principal": "970", "accrued_interest": "10", "max_borrow_value": "1000"},
            ORACLE_ID: {"rate": "1000000000000000000"},
        },
        broadcast_result=_ok_tx(),
    )

    assert _run(cfg, client) == SUBMITTED
    (only,) = client.broadcasts[0]
    assert only.msg["liquidate"]["position_id"] == "a"
    assert Path(cfg.tx_ledger_path).read_text().strip() == f"{int(NOW * 1000)},TX1,liquidate"


def test_cancelled_pass_still_persists_cursor(tmp_path) -> None:
    cfg = _config(tmp_path)
    _seed(cfg, contracts_cursor=0)
    client = ScriptedLedger(query_error=asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        _run(cfg, client)
    assert load_state(cfg.state_path).contracts_cursor == 1
