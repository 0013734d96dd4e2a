"""
Rollup tracer service.

This module wires the chain ports, the rollup state reader, the batch locator
and the message classifier together from a single configuration.
"""

import asyncio
import logging

from .batch_locator import BatchLocator
from .chain import ChainRef
from .config import TracerConfig
from .message_classifier import MessageClassifier
from .models import BatchInfo, BlockConfirmationReport, MessageSearchResult, NodeVerification, RollupNode
from .rollup_state import RollupStateReader
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class RollupTracer:
    """
    Entry point for every tracing operation.

    The tracer holds no state beyond its connections: every operation issues
    fresh queries, so repeated calls on an unchanged chain give equal results.
    """

    def __init__(self, config: TracerConfig, l1: ChainRef, l2: ChainRef):
        """
        Initialize the tracer.

        Args:
            config: Tracer configuration
            l1: Connected base chain
            l2: Connected rollup chain
        """
        self.config = config
        self.l1 = l1
        self.l2 = l2

        self.contract_util = ContractUtility()
        self.state = RollupStateReader(l1, l2, config.contracts, config.search, self.contract_util)
        self.batches = BatchLocator(l1, l2, config.contracts, self.contract_util)
        self.classifier = MessageClassifier(
            l1, l2, config.contracts, config.search,
            contract_util=self.contract_util,
            state=self.state,
            batches=self.batches,
        )

    @classmethod
    async def connect(cls, config: TracerConfig) -> "RollupTracer":
        """Open both chain connections and build the tracer."""
        l1, l2 = await asyncio.gather(
            ChainRef.from_rpc_url(config.l1.name, config.l1.rpc_url, config.l1.request_timeout),
            ChainRef.from_rpc_url(config.l2.name, config.l2.rpc_url, config.l2.request_timeout),
        )
        return cls(config, l1, l2)

    @classmethod
    async def from_env(cls) -> "RollupTracer":
        """
        Create a RollupTracer from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = TracerConfig.from_env()
        config.log_config()
        return await cls.connect(config)

    async def trace_retryable(self, tx_hash: str) -> MessageSearchResult:
        return await self.classifier.locate(tx_hash)

    async def trace_withdrawal(self, tx_hash: str) -> MessageSearchResult:
        return await self.classifier.locate_l2_to_l1(tx_hash)

    async def find_batch(self, tx_hash: str) -> BatchInfo:
        return await self.batches.find_batch(tx_hash)

    async def block_report(self, l2_block: int) -> BlockConfirmationReport:
        return await self.state.block_confirmation_report(l2_block)

    async def inspect_node(self, created: bool = False) -> tuple[RollupNode, NodeVerification]:
        """Latest confirmed (or created) node and the verification of its after state."""
        if created:
            node = await self.state.latest_created_node()
        else:
            node = await self.state.latest_confirmed_node()
        logger.info(f"Inspecting {'latest created' if created else 'latest confirmed'} node {node.id}")
        return node, await self.state.verify_node(node)
