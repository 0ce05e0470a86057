import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional

import base58
import yaml
from dotenv import find_dotenv, load_dotenv
from loguru import logger

from solders.keypair import Keypair  # type: ignore

from self_transfer import (
    DEFAULT_FEE_LAMPORTS,
    DEFAULT_MARGIN_LAMPORTS,
    AmountSelector,
    RetryPolicy,
    SelfTransfer,
    SelfTransferError,
    SolanaLedger,
    parse_addresses,
)

DEFAULT_CONFIG_PATH = os.path.join("~", ".config", "solana", "cli", "config.yml")
DEFAULT_KEYPAIR_PATH = os.path.join("~", ".config", "solana", "id.json")
DEFAULT_RPC_URL = "devnet"

URL_MONIKERS = {
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
    "m": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
    "d": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "t": "https://api.testnet.solana.com",
    "localhost": "http://localhost:8899",
    "l": "http://localhost:8899",
}


class KeypairError(SelfTransferError):
    exit_code = 1


def normalize_url(url_or_moniker: str) -> str:
    return URL_MONIKERS.get(url_or_moniker, url_or_moniker)


def load_keypair(path: str) -> Keypair:
    """Read a Solana CLI JSON keypair file or a file holding a base58 secret."""
    path = os.path.expanduser(path)
    try:
        with open(path) as f:
            content = f.read().strip()
    except OSError as e:
        raise KeypairError(f"unable to read keypair {path}: {e}") from e
    try:
        if content.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(content)))
        return Keypair.from_bytes(base58.b58decode(content))
    except (ValueError, TypeError) as e:
        raise KeypairError(f"invalid keypair {path}: {e}") from e


def load_cli_config(path: str) -> Dict[str, Any]:
    """Solana CLI config.yml as a dict, empty when it is missing or unreadable."""
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        logger.debug(f"No config file at {path}, using defaults")
        return {}
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring config file {path}: {e}")
        return {}
    if not isinstance(config, dict):
        logger.warning(f"Ignoring config file {path}: not a mapping")
        return {}
    return config


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {number}")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def build_parser(config: Optional[Dict[str, Any]] = None) -> argparse.ArgumentParser:
    # string defaults go through each argument's type, so bad env values are reported like bad flags
    config = config or {}
    parser = argparse.ArgumentParser(
        prog="self-transfer",
        description="Transfer a random amount of SOL from a keypair to itself, "
        "optionally naming extra addresses in the transaction.",
    )
    parser.add_argument(
        "-C",
        "--config",
        default=os.getenv("SELF_TRANSFER_CONFIG", DEFAULT_CONFIG_PATH),
        help="Configuration file to use [default: %(default)s]",
    )
    parser.add_argument(
        "--keypair",
        default=os.getenv("SELF_TRANSFER_KEYPAIR", config.get("keypair_path") or DEFAULT_KEYPAIR_PATH),
        help="Filepath to a keypair [default: %(default)s]",
    )
    parser.add_argument(
        "-u",
        "--url",
        default=os.getenv("SELF_TRANSFER_RPC_URL", config.get("json_rpc_url") or DEFAULT_RPC_URL),
        help="JSON RPC URL or moniker (mainnet-beta, devnet, testnet, localhost) [default: %(default)s]",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show additional information")
    parser.add_argument(
        "--fee",
        type=non_negative_int,
        default=os.getenv("SELF_TRANSFER_FEE_LAMPORTS", str(DEFAULT_FEE_LAMPORTS)),
        help="Estimated transaction fee in lamports [default: %(default)s]",
    )
    parser.add_argument(
        "--margin",
        type=non_negative_int,
        default=os.getenv("SELF_TRANSFER_MARGIN_LAMPORTS", str(DEFAULT_MARGIN_LAMPORTS)),
        help="Lamports kept back on top of the fee [default: %(default)s]",
    )
    parser.add_argument(
        "--max-attempts",
        type=positive_int,
        default=os.getenv("SELF_TRANSFER_MAX_ATTEMPTS", str(RetryPolicy.max_attempts)),
        help="Sends attempted before giving up [default: %(default)s]",
    )
    parser.add_argument(
        "--confirm-timeout",
        type=positive_float,
        default=os.getenv("SELF_TRANSFER_CONFIRM_TIMEOUT", str(RetryPolicy.confirm_timeout)),
        help="Seconds to wait for confirmation [default: %(default)s]",
    )
    parser.add_argument("addresses", metavar="ADDRESS", nargs="*", help="Extra addresses to append")
    return parser


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    # the config file supplies defaults for the remaining flags
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("-C", "--config", default=os.getenv("SELF_TRANSFER_CONFIG", DEFAULT_CONFIG_PATH))
    pre.add_argument("-v", "--verbose", action="store_true")
    known, _ = pre.parse_known_args(argv)
    configure_logging(known.verbose)
    return build_parser(load_cli_config(known.config)).parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    args = parse_args(argv)

    try:
        references = parse_addresses(args.addresses)
        keypair = load_keypair(args.keypair)
        rpc_url = normalize_url(args.url)
        logger.debug(f"JSON RPC URL: {rpc_url}")

        run = SelfTransfer(
            SolanaLedger(rpc_url),
            keypair,
            references,
            selector=AmountSelector(fee_lamports=args.fee, margin_lamports=args.margin),
            policy=RetryPolicy(max_attempts=args.max_attempts, confirm_timeout=args.confirm_timeout),
        )
        receipt = run.execute()
    except SelfTransferError as e:
        logger.debug(f"Run {e.outcome.value} with {type(e).__name__} (exit code {e.exit_code})")
        print(f"error: {e.reason}", file=sys.stderr)
        return e.exit_code

    logger.debug(f"Run {receipt.outcome.value}, moved {receipt.amount} lamports")
    print(f"Signature: {receipt.signature}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
