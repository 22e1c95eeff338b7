#!/usr/bin/env python3
"""
Liquidator entrypoint: run exactly one pass and exit.

Repetition belongs to the external scheduler (cron / systemd timer). Exit codes:
    0  pass finished (including no-op passes and recoverable query errors)
    1  fatal for the pass (transport error, sequence mismatch, out of gas)
    2  stuck: outcome classified without evidence, in-flight tx retained
    3  configuration error or missing state file
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).parent

# Load environment variables from .env BEFORE any imports that use them
load_dotenv(PACKAGE_DIR / ".env")

from config_env import ConfigError, LiquidatorConfig, load_config
from env_utils import LIQUIDATOR_CONFIG_FILE
from job_state import MissingStateError
from ledger import LcdLedgerClient, LedgerClient, load_codec
from liquidator import PassContext, run_pass
from logging_utils import setup_logging
from tx_outcome import FatalTxError, IncompleteEvidenceError

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_STUCK = 2
EXIT_CONFIG = 3


def build_client(config: LiquidatorConfig, log: logging.Logger) -> LedgerClient:
    ledger = config.ledger
    if not ledger.codec:
        raise ConfigError("config.ledger.codec must name a TxCodec implementation ('module:ClassName')")
    try:
        codec = load_codec(
            ledger.codec,
            signing_key=ledger.signing_key,
            encryption_seed=bytes(ledger.encryption_seed),
            chain_id=ledger.chain_id,
            wallet_address=ledger.wallet_address,
            lcd_url=ledger.url,
        )
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        raise ConfigError(f"Cannot load codec {ledger.codec!r}: {exc}") from exc
    return LcdLedgerClient(
        log,
        url=ledger.url,
        wallet_address=ledger.wallet_address,
        codec=codec,
        request_timeout_sec=ledger.request_timeout_sec,
        confirm_timeout_sec=ledger.confirm_timeout_sec,
        confirm_poll_sec=ledger.confirm_poll_sec,
    )


async def run_once(config: LiquidatorConfig, log: logging.Logger, client: Optional[LedgerClient] = None) -> str:
    client = client or build_client(config, log)
    await client.initialize()
    try:
        return await run_pass(PassContext(config=config, client=client, log=log))
    finally:
        await client.close()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one vault liquidation pass")
    parser.add_argument('--config', default=LIQUIDATOR_CONFIG_FILE, help='Path to liquidator.yaml')
    parser.add_argument('--state', default=None, help='Override the state file path')
    parser.add_argument('--log-file', default=None, help='Also log to this file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    args = parser.parse_args(argv)

    log = setup_logging("liquidator", log_file=args.log_file, verbose=args.verbose)

    try:
        config = load_config(args.config)
        if args.state:
            config.state_path = str(Path(args.state).expanduser().resolve())
        outcome = asyncio.run(run_once(config, log))
    except (ConfigError, MissingStateError) as exc:
        log.error(str(exc))
        return EXIT_CONFIG
    except IncompleteEvidenceError as exc:
        log.error(f"Stuck transaction, will re-check next pass: {exc}")
        return EXIT_STUCK
    except FatalTxError as exc:
        log.error(f"Fatal transaction error: {exc}")
        return EXIT_FATAL
    except Exception as exc:
        log.exception(f"Pass failed: {exc}")
        return EXIT_FATAL

    log.debug(f"Pass finished: {outcome}")
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
