#!/usr/bin/env python3
"""Configuration management for the rollup message tracer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate. The search heuristics (lookback windows, block budgets,
block times) are deliberately exposed here so they can be overridden when the
block production assumptions behind them drift.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

# Arbitrum precompiles, identical on every Nitro chain
ARB_SYS_ADDRESS = "0x0000000000000000000000000000000000000064"
ARB_RETRYABLE_TX_ADDRESS = "0x000000000000000000000000000000000000006E"
NODE_INTERFACE_ADDRESS = "0x00000000000000000000000000000000000000C8"


def _checksum(label: str, address: str) -> str:
    if not address:
        raise ValueError(f"{label} address is required")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label} address: {address}")
    return Web3.to_checksum_address(address)


@dataclass(frozen=True, slots=True)
class ChainEndpointConfig:
    """Configuration for one chain RPC endpoint.

    Attributes:
        name: Label used in logs ("L1" or "L2")
        rpc_url: HTTP(S) RPC endpoint
        request_timeout: HTTP request timeout in seconds
    """

    name: str
    rpc_url: str
    request_timeout: int = 30

    def __post_init__(self) -> None:
        """Validate endpoint configuration."""
        if not self.rpc_url:
            raise ValueError(f"{self.name} RPC URL is required ({self.name}_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http or https"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class RollupContractsConfig:
    """Addresses of the L1 rollup contracts of one L2 chain.

    Attributes:
        rollup: Rollup core (node storage, NodeCreated/NodeConfirmed)
        bridge: Bridge (MessageDelivered)
        inbox: Delayed inbox (InboxMessageDelivered)
        sequencer_inbox: Sequencer inbox (SequencerBatchDelivered)
        outbox: Outbox (spent bitmap, OutBoxTransactionExecuted)
    """

    rollup: str
    bridge: str
    inbox: str
    sequencer_inbox: str
    outbox: str

    # Known deployments, keyed by network name
    PRESETS: ClassVar[dict[str, dict[str, str]]] = {
        'arbitrum-one': {
            'rollup': '0x5ef0d09d1e6204141b4d37530808ed19f60fba35',
            'bridge': '0x8315177ab297ba92a06054ce80a67ed4dbd7ed3a',
            'inbox': '0x4dbd4fc535ac27206064b68ffcf827b0a60bab3f',
            'sequencer_inbox': '0x1c479675ad559dc151f6ec7ed3fbf8cee79582b6',
            'outbox': '0x0b9857ae2d4a3dbe74ffe1d7df045bb7f96e4840',
        },
        'arbitrum-nova': {
            'rollup': '0xfb209827c58283535b744575e11953dcc4bead88',
            'bridge': '0xc1ebd02f738644983b6c4b2d440b8e77dde276bd',
            'inbox': '0xc4448b71118c9071bcb9734a0eac55d18a153949',
            'sequencer_inbox': '0x211e1c4c7f1bf5351ac850ed10fd68cffcf6c21b',
            'outbox': '0xd4b80c3d7240325d18e645b49e6535a3bf95cc58',
        },
    }

    def __post_init__(self) -> None:
        """Validate and checksum every contract address."""
        for name in ('rollup', 'bridge', 'inbox', 'sequencer_inbox', 'outbox'):
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, name, _checksum(name, getattr(self, name)))

    @classmethod
    def for_network(cls, network: str, **overrides: str | None) -> "RollupContractsConfig":
        """Build the contract set of a known network, applying overrides.

        Raises:
            ValueError: If the network is unknown and addresses are missing
        """
        preset = cls.PRESETS.get(network)
        if preset is None and not all(overrides.get(k) for k in ('rollup', 'bridge', 'inbox', 'sequencer_inbox', 'outbox')):
            raise ValueError(
                f"Unsupported network: {network}. "
                f"Supported networks: {', '.join(sorted(cls.PRESETS))} "
                "(or set every contract address explicitly)"
            )
        addresses = dict(preset or {})
        addresses.update({k: v for k, v in overrides.items() if v})
        return cls(**addresses)


@dataclass(frozen=True, slots=True)
class SearchConfig:
    """Windowed search limits and timing heuristics."""
    chunk_size: int = 1000  # blocks per eth_getLogs query
    l2_max_blocks: int = 10_000  # backward L2 search budget
    l1_max_blocks: int = 10_000  # L1 search budget
    l1_one_week_blocks: int = 45_000  # minimum dispute period expressed in L1 blocks
    l1_block_time: float = 12.5  # seconds, assumed average
    node_lookback_seconds: int = 2 * 60 * 60  # nodes are created roughly hourly
    epoch_slots: int = 32  # lag per finality tier

    def __post_init__(self) -> None:
        """Validate search configuration."""
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_size > 100_000:
            raise ValueError(f"Chunk size too high (max 100000), got {self.chunk_size}")

        for name in ('l2_max_blocks', 'l1_max_blocks'):
            value = getattr(self, name)
            if value < self.chunk_size:
                raise ValueError(f"{name} must be at least the chunk size, got {value}")

        if self.l1_one_week_blocks < 0:
            raise ValueError(f"One week offset must be non-negative, got {self.l1_one_week_blocks}")
        if self.l1_block_time <= 0:
            raise ValueError(f"L1 block time must be positive, got {self.l1_block_time}")
        if self.node_lookback_seconds <= 0:
            raise ValueError(f"Node lookback must be positive, got {self.node_lookback_seconds}")
        if self.epoch_slots <= 0:
            raise ValueError(f"Epoch slots must be positive, got {self.epoch_slots}")

    @property
    def node_lookback_blocks(self) -> int:
        """Lookback padding for node searches, in L1 blocks."""
        return int(self.node_lookback_seconds / self.l1_block_time)


@dataclass(frozen=True, slots=True)
class TracerConfig:
    """Main configuration for the tracer.

    Attributes:
        l1: Base chain endpoint
        l2: Rollup chain endpoint
        contracts: L1 contracts of the rollup
        search: Search limits and heuristics
        network: Name of the rollup network
    """

    l1: ChainEndpointConfig
    l2: ChainEndpointConfig
    contracts: RollupContractsConfig
    search: SearchConfig = field(default_factory=SearchConfig)
    network: str = 'arbitrum-one'

    @classmethod
    def from_env(cls) -> "TracerConfig":
        """Load configuration from environment variables.

        Returns:
            TracerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        request_timeout = int(os.environ.get("REQUEST_TIMEOUT", "30"))

        l1_rpc_url = os.environ.get("L1_RPC_URL", "")
        if not l1_rpc_url:
            raise ValueError(
                "L1_RPC_URL environment variable is required. "
                "Example: https://ethereum.publicnode.com"
            )

        l2_rpc_url = os.environ.get("L2_RPC_URL", "")
        if not l2_rpc_url:
            raise ValueError(
                "L2_RPC_URL environment variable is required. "
                "Example: https://arb1.arbitrum.io/rpc"
            )

        network = os.environ.get("NETWORK", "arbitrum-one")
        contracts = RollupContractsConfig.for_network(
            network,
            rollup=os.environ.get("ROLLUP_ADDRESS"),
            bridge=os.environ.get("BRIDGE_ADDRESS"),
            inbox=os.environ.get("INBOX_ADDRESS"),
            sequencer_inbox=os.environ.get("SEQUENCER_INBOX_ADDRESS"),
            outbox=os.environ.get("OUTBOX_ADDRESS"),
        )

        defaults = SearchConfig()
        search = SearchConfig(
            chunk_size=int(os.environ.get("SEARCH_CHUNK_SIZE", defaults.chunk_size)),
            l2_max_blocks=int(os.environ.get("L2_MAX_SEARCH_BLOCKS", defaults.l2_max_blocks)),
            l1_max_blocks=int(os.environ.get("L1_MAX_SEARCH_BLOCKS", defaults.l1_max_blocks)),
            l1_one_week_blocks=int(os.environ.get("L1_ONE_WEEK_BLOCKS", defaults.l1_one_week_blocks)),
            l1_block_time=float(os.environ.get("L1_BLOCK_TIME", defaults.l1_block_time)),
            node_lookback_seconds=int(os.environ.get("NODE_LOOKBACK_SECONDS", defaults.node_lookback_seconds)),
            epoch_slots=int(os.environ.get("EPOCH_SLOTS", defaults.epoch_slots)),
        )

        return cls(
            l1=ChainEndpointConfig(name="L1", rpc_url=l1_rpc_url, request_timeout=request_timeout),
            l2=ChainEndpointConfig(name="L2", rpc_url=l2_rpc_url, request_timeout=request_timeout),
            contracts=contracts,
            search=search,
            network=network,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Rollup Message Tracer Configuration")
        logger.info("=" * 60)

        logger.info(f"Network: {self.network}")
        logger.info(f"  L1 RPC URL: {self.l1.rpc_url}")
        logger.info(f"  L2 RPC URL: {self.l2.rpc_url}")

        logger.info("Rollup Contracts (L1):")
        logger.info(f"  Rollup: {self.contracts.rollup}")
        logger.info(f"  Bridge: {self.contracts.bridge}")
        logger.info(f"  Inbox: {self.contracts.inbox}")
        logger.info(f"  Sequencer Inbox: {self.contracts.sequencer_inbox}")
        logger.info(f"  Outbox: {self.contracts.outbox}")

        logger.info("Search Settings:")
        logger.info(f"  Chunk Size: {self.search.chunk_size} blocks")
        logger.info(f"  L2 Budget: {self.search.l2_max_blocks} blocks")
        logger.info(f"  L1 Budget: {self.search.l1_max_blocks} blocks")
        logger.info(f"  One Week Offset: {self.search.l1_one_week_blocks} L1 blocks")
        logger.info(f"  L1 Block Time: {self.search.l1_block_time} seconds")
        logger.info(f"  Node Lookback: {self.search.node_lookback_blocks} L1 blocks")
        logger.info(f"  Epoch Slots: {self.search.epoch_slots}")

        logger.info("=" * 60)
