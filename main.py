#!/usr/bin/env python3
"""Entry point for the rollup message tracer.

Traces one transaction hash through the rollup bridge and logs what was
found on each chain.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from rollup_tracer import presentation
from rollup_tracer.errors import TracerError
from rollup_tracer.tracer import RollupTracer


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Rollup Message Tracer - Follow cross-chain messages between L1 and an Arbitrum rollup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  L1_RPC_URL              - RPC endpoint for the base chain
  L2_RPC_URL              - RPC endpoint for the rollup chain
  NETWORK                 - Rollup network (default: arbitrum-one)
  ROLLUP_ADDRESS          - Override the rollup core address
  BRIDGE_ADDRESS          - Override the bridge address
  INBOX_ADDRESS           - Override the delayed inbox address
  SEQUENCER_INBOX_ADDRESS - Override the sequencer inbox address
  OUTBOX_ADDRESS          - Override the outbox address
  SEARCH_CHUNK_SIZE       - Blocks per log query (default: 1000)
  L2_MAX_SEARCH_BLOCKS    - L2 search budget (default: 10000)
  L1_MAX_SEARCH_BLOCKS    - L1 search budget (default: 10000)
  L1_ONE_WEEK_BLOCKS      - Dispute period in L1 blocks (default: 45000)
  L1_BLOCK_TIME           - Average L1 block time in seconds (default: 12.5)
  NODE_LOOKBACK_SECONDS   - Node search padding (default: 7200)
  EPOCH_SLOTS             - L1 blocks per finality tier (default: 32)
  REQUEST_TIMEOUT         - RPC request timeout in seconds (default: 30)
  LOG_LEVEL               - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    retryable = subparsers.add_parser("retryable", help="Trace a retryable ticket or ETH deposit (L1 or L2 hash)")
    retryable.add_argument("tx_hash", help="L1 submission or L2 execution transaction hash")

    withdrawal = subparsers.add_parser("withdrawal", help="Trace an L2-to-L1 message through the outbox")
    withdrawal.add_argument("tx_hash", help="L2 transaction hash")

    batch = subparsers.add_parser("batch", help="Find the L1 batch containing an L2 transaction")
    batch.add_argument("tx_hash", help="L2 transaction hash")

    block = subparsers.add_parser("block", help="Report the confirmation state of an L2 block")
    block.add_argument("block_number", type=int, help="L2 block number")

    node = subparsers.add_parser("node", help="Inspect and verify the latest confirmed node")
    node.add_argument(
        "--created",
        action="store_true",
        default=False,
        help="Inspect the latest created node instead"
    )
    return parser


async def run_command(tracer: RollupTracer, args: argparse.Namespace) -> None:
    match args.command:
        case "retryable":
            presentation.log_search_result(await tracer.trace_retryable(args.tx_hash))
        case "withdrawal":
            presentation.log_search_result(await tracer.trace_withdrawal(args.tx_hash))
        case "batch":
            presentation.log_batch(await tracer.find_batch(args.tx_hash))
        case "block":
            presentation.log_block_report(await tracer.block_report(args.block_number))
        case "node":
            presentation.log_node(*await tracer.inspect_node(created=args.created))


async def main() -> None:
    """Main entry point for the rollup message tracer.

    Parses arguments, loads configuration from environment, connects to
    both chains and runs the requested command.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    logger.info("Loading configuration from environment...")

    try:
        tracer: RollupTracer = await RollupTracer.from_env()
        await run_command(tracer, args)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your arguments and environment variables:")
        logger.error("  - L1_RPC_URL: RPC endpoint for the base chain")
        logger.error("  - L2_RPC_URL: RPC endpoint for the rollup chain")
        logger.error("  - NETWORK: arbitrum-one or arbitrum-nova (default: arbitrum-one)")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except TracerError as e:
        logger.error(f"Tracing Error: {e}", exc_info=True)
        sys.exit(1)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
