"""Load liquidator.yaml, apply env overrides, and validate required secrets."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from env_utils import (
    LIQUIDATOR_RUNTIME_DIR,
    env_bool,
    env_int,
    env_int_list,
    env_json,
    env_present,
    env_str,
    resolve_path,
)


PathKey = Tuple[str, ...]

# Env may only override connectivity / runtime plumbing; tuning is YAML-first.
ALLOWED_ENV_OVERRIDES = {
    "LIQUIDATOR_STATE_PATH",
    "LIQUIDATOR_TX_LEDGER_PATH",
    "LIQUIDATOR_GAS_LIMIT",
    "LIQUIDATOR_FEE_DENOM",
    "LIQUIDATOR_STRATEGY_ENABLED",
}

REQUIRED_ENV = (
    "LIQUIDATOR_LCD_URL",
    "LIQUIDATOR_CHAIN_ID",
    "LIQUIDATOR_SIGNING_KEY",
    "LIQUIDATOR_WALLET_ADDRESS",
    "LIQUIDATOR_ENCRYPTION_SEED",
    "LIQUIDATOR_BATCH_QUERY_CONTRACT",
    "LIQUIDATOR_BATCH_QUERY_HASH",
)

STRATEGY_ENV = (
    "LIQUIDATOR_MONEY_MARKET_CONTRACT",
    "LIQUIDATOR_MONEY_MARKET_HASH",
    "LIQUIDATOR_ORACLE_CONTRACT",
    "LIQUIDATOR_ORACLE_HASH",
    "LIQUIDATOR_PERMIT",
    "LIQUIDATOR_STRATEGY_TOKEN",
    "LIQUIDATOR_STRATEGY_TOKEN_HASH",
)

DEFAULT_GAS_LIMIT = 1_500_000
DEFAULT_FEE_DENOM = "uscrt"
DEFAULT_REPORT_INTERVAL_SEC = 7200
DEFAULT_IN_FLIGHT_EXPIRY_SEC = 900


class ConfigError(ValueError):
    """Missing or inconsistent configuration; fatal at startup."""


@dataclass
class LedgerSettings:
    url: str
    chain_id: str
    signing_key: str
    wallet_address: str
    encryption_seed: List[int]
    codec: str = ""
    request_timeout_sec: float = 0.0
    confirm_timeout_sec: float = 60.0
    confirm_poll_sec: float = 3.0


@dataclass
class StrategySettings:
    money_market_address: str
    money_market_code_hash: str
    oracle_address: str
    oracle_code_hash: str
    permit: Dict[str, Any]
    token_address: str
    token_code_hash: str
    oracle_key: str = "USD"


@dataclass
class LiquidatorConfig:
    ledger: LedgerSettings
    batch_query_address: str
    batch_query_code_hash: str
    state_path: str
    tx_ledger_path: str
    gas_limit: int = DEFAULT_GAS_LIMIT
    fee_denom: str = DEFAULT_FEE_DENOM
    report_interval_sec: float = DEFAULT_REPORT_INTERVAL_SEC
    in_flight_expiry_sec: float = DEFAULT_IN_FLIGHT_EXPIRY_SEC
    strategy: Optional[StrategySettings] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def strategy_enabled(self) -> bool:
        return self.strategy is not None


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def load_config_file(path: str) -> Dict[str, Any]:
    """Read the YAML config; a missing file yields an empty config."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config {config_path} must be a mapping")
    return loaded


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if env_name not in ALLOWED_ENV_OVERRIDES or not env_present(env_name):
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "state_path"), "LIQUIDATOR_STATE_PATH")
    override(("config", "tx_ledger_path"), "LIQUIDATOR_TX_LEDGER_PATH")
    override(("config", "gas_limit"), "LIQUIDATOR_GAS_LIMIT", kind="int")
    override(("config", "fee_denom"), "LIQUIDATOR_FEE_DENOM")
    override(("config", "strategy", "enabled"), "LIQUIDATOR_STRATEGY_ENABLED", kind="bool")
    return cfg


def _strategy_settings(cfg: Dict[str, Any]) -> Optional[StrategySettings]:
    if not bool(_get_path(cfg, ("config", "strategy", "enabled"), True)):
        return None
    present = [name for name in STRATEGY_ENV if env_present(name)]
    if not present:
        return None
    missing = [name for name in STRATEGY_ENV if name not in present]
    if missing:
        raise ConfigError(
            "Strategy partially configured; missing: " + ", ".join(missing)
        )
    permit = env_json("LIQUIDATOR_PERMIT", None)
    if not isinstance(permit, dict):
        raise ConfigError("LIQUIDATOR_PERMIT must be a JSON object")
    return StrategySettings(
        money_market_address=env_str("LIQUIDATOR_MONEY_MARKET_CONTRACT") or "",
        money_market_code_hash=env_str("LIQUIDATOR_MONEY_MARKET_HASH") or "",
        oracle_address=env_str("LIQUIDATOR_ORACLE_CONTRACT") or "",
        oracle_code_hash=env_str("LIQUIDATOR_ORACLE_HASH") or "",
        permit=permit,
        token_address=env_str("LIQUIDATOR_STRATEGY_TOKEN") or "",
        token_code_hash=env_str("LIQUIDATOR_STRATEGY_TOKEN_HASH") or "",
        oracle_key=str(_get_path(cfg, ("config", "strategy", "oracle_key"), "USD") or "USD"),
    )


def build_config(config: Dict[str, Any]) -> LiquidatorConfig:
    """Validate env secrets and YAML tuning into a LiquidatorConfig."""
    cfg = apply_env_overrides(config)

    missing = [name for name in REQUIRED_ENV if not env_present(name)]
    seed = env_int_list("LIQUIDATOR_ENCRYPTION_SEED")
    if "LIQUIDATOR_ENCRYPTION_SEED" not in missing and seed is None:
        raise ConfigError("LIQUIDATOR_ENCRYPTION_SEED must be comma-separated integers")
    if missing:
        raise ConfigError("Missing environment variables: " + ", ".join(missing))

    ledger_cfg = _get_path(cfg, ("config", "ledger"), {}) or {}
    ledger = LedgerSettings(
        url=env_str("LIQUIDATOR_LCD_URL") or "",
        chain_id=env_str("LIQUIDATOR_CHAIN_ID") or "",
        signing_key=env_str("LIQUIDATOR_SIGNING_KEY") or "",
        wallet_address=env_str("LIQUIDATOR_WALLET_ADDRESS") or "",
        encryption_seed=seed or [],
        codec=str(ledger_cfg.get("codec") or ""),
        request_timeout_sec=float(ledger_cfg.get("request_timeout_sec", 0) or 0),
        confirm_timeout_sec=float(ledger_cfg.get("confirm_timeout_sec", 60) or 0),
        confirm_poll_sec=float(ledger_cfg.get("confirm_poll_sec", 3) or 3),
    )

    def _num(key: str, default: float) -> float:
        value = _get_path(cfg, ("config", key), default)
        try:
            return float(default if value is None else value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"config.{key} must be a number, got {value!r}") from exc

    return LiquidatorConfig(
        ledger=ledger,
        batch_query_address=env_str("LIQUIDATOR_BATCH_QUERY_CONTRACT") or "",
        batch_query_code_hash=env_str("LIQUIDATOR_BATCH_QUERY_HASH") or "",
        state_path=resolve_path(
            _get_path(cfg, ("config", "state_path")),
            str(Path(LIQUIDATOR_RUNTIME_DIR) / "results.json"),
        ),
        tx_ledger_path=resolve_path(_get_path(cfg, ("config", "tx_ledger_path")), "transactions.txt"),
        gas_limit=int(_num("gas_limit", DEFAULT_GAS_LIMIT)),
        fee_denom=str(_get_path(cfg, ("config", "fee_denom"), DEFAULT_FEE_DENOM) or DEFAULT_FEE_DENOM),
        report_interval_sec=_num("report_interval_sec", DEFAULT_REPORT_INTERVAL_SEC),
        in_flight_expiry_sec=_num("in_flight_expiry_sec", DEFAULT_IN_FLIGHT_EXPIRY_SEC),
        strategy=_strategy_settings(cfg),
        raw=cfg,
    )


def load_config(path: str) -> LiquidatorConfig:
    return build_config(load_config_file(path))
