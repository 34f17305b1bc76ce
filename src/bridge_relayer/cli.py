"""Command line entry point for the bridge relayer."""

import argparse
import asyncio
import logging
import sys

from .relayer import BridgeRelayer
from .utils.logging_utils import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Custodial bridge relayer")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--state-file",
        default=None,
        help="Ledger file path (overrides STATE_FILE_PATH)",
    )
    parser.add_argument(
        "--replay-nonce",
        type=int,
        action="append",
        default=[],
        metavar="NONCE",
        help="Move an expired deposit back to pending before starting (repeatable)",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the bridge relayer."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        # Create relayer using factory method
        relayer = BridgeRelayer.from_env(state_file_path=args.state_file)
    except ValueError as e:
        logger.error("relayer.config_error", extra={"error": str(e)})
        logger.error(
            "relayer.config_help",
            extra={"data": {"required": [
                "SOURCE_RPC_URL: Source chain RPC endpoint",
                "DESTINATION_RPC_URL: Destination chain RPC endpoint",
                "ESCROW_ADDRESS: Escrow contract on the source chain",
                "WRAPPED_ASSET_ADDRESS: Wrapped asset contract on the destination chain",
                "RELAYER_PRIVATE_KEY: Key signing mint and release transactions",
            ]}},
        )
        sys.exit(1)

    if args.replay_nonce:
        relayer.replay_deposits(args.replay_nonce)

    try:
        await relayer.run()
    except Exception as e:
        logger.error("relayer.crashed", extra={"error": repr(e)}, exc_info=True)
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("relayer.interrupted")
