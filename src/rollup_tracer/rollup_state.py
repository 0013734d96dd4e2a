"""
Rollup state reader.

Reads rollup assertion (node) state from the L1 rollup core contract, walks
the node graph, classifies L1 finality and estimates confirmation dates.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from hexbytes import HexBytes

from .chain import ChainRef
from .config import RollupContractsConfig, SearchConfig
from .errors import NodeNotFoundError, NotFoundError, SearchBudgetExceeded
from .log_scanner import BlockWindow, EventCriteria, WindowedLogScanner
from .models import (
    BlockConfirmationReport,
    DecodedEvent,
    GlobalState,
    L1FinalityTier,
    L2BlockInfo,
    MessageStatus,
    NodeVerification,
    OutboxStatus,
    RollupNode,
)
from .utils.contract_utility import ContractUtility, to_hex
from .utils.message_encoder import MessageEncoder

logger = logging.getLogger(__name__)

ROLLUP_CONTRACT = "RollupCore"
OUTBOX_CONTRACT = "Outbox"

# Indexes into the getNode() struct
_NODE_CONFIRM_DATA = 2
_NODE_PREV_NUM = 3
_NODE_DEADLINE_BLOCK = 4
_NODE_CREATED_AT_BLOCK = 10


def classify_finality_tier(l1_block: int, latest_block: int, epoch_slots: int = 32) -> L1FinalityTier:
    """
    Classify an L1 block by how far it trails the head.

    SAFE once it is one epoch deep, FINALIZED once it is two epochs deep.
    """
    lag = latest_block - l1_block
    if lag >= 2 * epoch_slots:
        return L1FinalityTier.FINALIZED
    if lag >= epoch_slots:
        return L1FinalityTier.SAFE
    return L1FinalityTier.UNSAFE


class NodeGraph(Protocol):
    """Navigation over rollup nodes."""

    def next_on_canonical_path(self, node_id: int) -> int | None:
        ...


class LinearNodeGraph:
    """
    Follows node ids in creation order (id + 1) up to the latest created node.

    Dispute branches are not modelled: a rejected sibling is visited like any
    other node.
    """

    def __init__(self, latest_created: int):
        self.latest_created = latest_created

    def next_on_canonical_path(self, node_id: int) -> int | None:
        next_id = node_id + 1
        return next_id if next_id <= self.latest_created else None


def _global_state(execution_state: dict[str, Any]) -> GlobalState:
    state = execution_state["globalState"]
    block_hash, send_root = state["bytes32Vals"]
    inbox_position, position_in_message = state["u64Vals"]
    return GlobalState(
        l2_block_hash=to_hex(block_hash),
        send_root=to_hex(send_root),
        inbox_position=inbox_position,
        position_in_message=position_in_message,
    )


class RollupStateReader:
    """
    Read-only view of the rollup core contract and the L2 blocks it commits.
    """

    def __init__(
        self,
        l1: ChainRef,
        l2: ChainRef,
        contracts: RollupContractsConfig,
        search: SearchConfig | None = None,
        contract_util: ContractUtility | None = None,
        node_graph: NodeGraph | None = None,
    ):
        """
        Initialize the reader.

        Args:
            l1: Base chain holding the rollup contracts
            l2: Rollup chain
            contracts: Rollup contract addresses
            search: Search limits and timing heuristics
            contract_util: ABI helper (shared with the scanners)
            node_graph: Node navigation; a LinearNodeGraph is built per walk when omitted
        """
        self.l1 = l1
        self.l2 = l2
        self.contracts = contracts
        self.search = search or SearchConfig()
        self.contract_util = contract_util or ContractUtility()
        self.node_graph = node_graph
        self.l1_scanner = WindowedLogScanner(l1, self.contract_util)
        self.rollup_abi = self.contract_util.get_contract_abi(ROLLUP_CONTRACT)
        self.outbox_abi = self.contract_util.get_contract_abi(OUTBOX_CONTRACT)

    # Node state

    async def latest_confirmed_id(self) -> int:
        return await self.l1.call(self.contracts.rollup, self.rollup_abi, "latestConfirmed")

    async def latest_created_id(self) -> int:
        return await self.l1.call(self.contracts.rollup, self.rollup_abi, "latestNodeCreated")

    async def latest_confirmed_node(self) -> RollupNode:
        return await self.get_node(await self.latest_confirmed_id())

    async def latest_created_node(self) -> RollupNode:
        return await self.get_node(await self.latest_created_id())

    async def find_node_created_event(self, node_id: int, at_block: int | None = None) -> DecodedEvent:
        """
        Look up the NodeCreated event of a node.

        When the creation block is known only that block is queried, otherwise
        the whole L1 history is searched with the indexed node number.

        Raises:
            NodeNotFoundError: If no such event exists
        """
        criteria = EventCriteria(
            ROLLUP_CONTRACT, "NodeCreated",
            address=self.contracts.rollup,
            indexed={"nodeNum": node_id},
        )
        if at_block is None:
            from_block, to_block = 0, await self.l1.block_number()
        else:
            from_block = to_block = at_block

        events = await self.l1_scanner.fetch(criteria, from_block, to_block)
        if not events:
            raise NodeNotFoundError(node_id)
        return events[0]

    async def get_node(self, node_id: int, created_event: DecodedEvent | None = None) -> RollupNode:
        """
        Read a node from rollup storage plus its NodeCreated event.

        Raises:
            NodeNotFoundError: If the node was never created or has been deleted
        """
        raw = await self.l1.call(self.contracts.rollup, self.rollup_abi, "getNode", node_id)
        created_at = raw[_NODE_CREATED_AT_BLOCK]
        if created_at == 0:
            raise NodeNotFoundError(node_id)

        if created_event is None:
            created_event = await self.find_node_created_event(node_id, at_block=created_at)
        assertion = created_event.args["assertion"]

        return RollupNode(
            id=node_id,
            parent_id=raw[_NODE_PREV_NUM],
            created_at_l1_block=created_at,
            deadline_l1_block=raw[_NODE_DEADLINE_BLOCK],
            confirm_data_hash=to_hex(raw[_NODE_CONFIRM_DATA]),
            before_state=_global_state(assertion["beforeState"]),
            after_state=_global_state(assertion["afterState"]),
            num_blocks=assertion["numBlocks"],
            creation_tx_hash=created_event.transaction_hash,
        )

    async def find_node_confirmed_event(self, node_id: int, from_block: int) -> DecodedEvent:
        """
        Forward scan L1 for the NodeConfirmed event of a node.

        Raises:
            SearchBudgetExceeded: If the L1 budget ran out
            NotFoundError: If the node has not been confirmed up to the head
        """
        latest = await self.l1.block_number()
        window = BlockWindow.forward_from(
            from_block, latest,
            chunk_size=self.search.chunk_size,
            max_blocks=self.search.l1_max_blocks,
        )
        criteria = EventCriteria(
            ROLLUP_CONTRACT, "NodeConfirmed",
            address=self.contracts.rollup,
            indexed={"nodeNum": node_id},
        )
        return await self.l1_scanner.find_first(window, criteria)

    # L2 blocks

    async def l2_block_info(self, block_id: int | str) -> L2BlockInfo:
        """Arbitrum fields of an L2 block, by number or hash."""
        raw = await self.l2.get_raw_block(block_id)
        return L2BlockInfo(
            number=int(raw["number"], 16),
            hash=to_hex(raw["hash"]),
            send_count=int(raw.get("sendCount") or "0x0", 16),
            l1_block_number=int(raw.get("l1BlockNumber") or "0x0", 16),
        )

    async def send_count(self, l2_block_hash: str) -> int:
        """Number of L2-to-L1 messages sent up to and including a block."""
        return (await self.l2_block_info(l2_block_hash)).send_count

    # Finality and timing

    async def classify_finality(self, l1_block: int, latest: int | None = None) -> L1FinalityTier:
        if latest is None:
            latest = await self.l1.block_number()
        return classify_finality_tier(l1_block, latest, self.search.epoch_slots)

    async def estimate_confirmation_date(self, node: RollupNode) -> datetime:
        """
        Estimate when a node becomes confirmable.

        The deadline is expressed in L1 blocks; the remaining blocks are turned
        into seconds with the configured average L1 block time.
        """
        block = await self.l1.get_block(node.created_at_l1_block)
        blocks_to_deadline = node.deadline_l1_block - node.created_at_l1_block
        seconds = block["timestamp"] + blocks_to_deadline * self.search.l1_block_time
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    async def node_containing_l2_block(self, l2_block: int) -> RollupNode | None:
        """
        Find the first node whose after state reaches a given L2 block.

        Heuristic: nodes are posted roughly hourly, so only NodeCreated events
        within the lookback padding after the block's L1 block number are
        considered.
        """
        info = await self.l2_block_info(l2_block)
        padding = self.search.node_lookback_blocks
        latest_l1 = await self.l1.block_number()
        window = BlockWindow.forward_from(
            info.l1_block_number,
            min(latest_l1, info.l1_block_number + padding),
            chunk_size=self.search.chunk_size,
            max_blocks=padding + 1,
        )
        criteria = EventCriteria(ROLLUP_CONTRACT, "NodeCreated", address=self.contracts.rollup)

        async for event in self.l1_scanner.scan(window, criteria):
            after_state = _global_state(event.args["assertion"]["afterState"])
            try:
                after_block = await self.l2_block_info(after_state.l2_block_hash)
            except NotFoundError:
                logger.debug(f"After state block {after_state.l2_block_hash} of node {event.args['nodeNum']} not on L2")
                continue
            if after_block.number >= l2_block:
                return await self.get_node(event.args["nodeNum"], created_event=event)

        low, high = window.bounds()
        if high < latest_l1:
            logger.warning(
                SearchBudgetExceeded(
                    chain=self.l1.name,
                    event="RollupCore.NodeCreated",
                    from_block=low,
                    to_block=high,
                    blocks_scanned=window.blocks_in_budget,
                )
            )
        else:
            logger.info(f"No node reaches L2 block {l2_block} in L1 blocks {low}-{high}")
        return None

    async def block_confirmation_report(self, l2_block: int) -> BlockConfirmationReport:
        """Where an L2 block stands in the confirmation process."""
        confirmed_id, latest_l1 = await asyncio.gather(
            self.latest_confirmed_id(),
            self.l1.block_number(),
        )
        try:
            node = await self.node_containing_l2_block(l2_block)
        except NotFoundError as e:
            logger.warning(f"L2 block {l2_block} is not available: {e}")
            return BlockConfirmationReport(
                l2_block_number=l2_block,
                latest_confirmed_node_id=confirmed_id,
                latest_l1_block=latest_l1,
                note=f"L2 block {l2_block} does not exist on the rollup chain",
            )
        if node is None:
            logger.info(f"L2 block {l2_block} is not part of any node yet")
            return BlockConfirmationReport(
                l2_block_number=l2_block,
                latest_confirmed_node_id=confirmed_id,
                latest_l1_block=latest_l1,
            )

        if node.id > confirmed_id:
            return BlockConfirmationReport(
                l2_block_number=l2_block,
                latest_confirmed_node_id=confirmed_id,
                node=node,
                latest_l1_block=latest_l1,
                estimated_confirmation=await self.estimate_confirmation_date(node),
            )

        confirmation_block = None
        finality = None
        try:
            event = await self.find_node_confirmed_event(node.id, node.deadline_l1_block)
            confirmation_block = event.block_number
            finality = classify_finality_tier(confirmation_block, latest_l1, self.search.epoch_slots)
        except NotFoundError as e:
            logger.warning(f"Node {node.id} is confirmed but its NodeConfirmed event was not found: {e}")

        return BlockConfirmationReport(
            l2_block_number=l2_block,
            latest_confirmed_node_id=confirmed_id,
            node=node,
            confirmed=True,
            confirmation_l1_block=confirmation_block,
            finality=finality,
            latest_l1_block=latest_l1,
        )

    async def verify_node(self, node: RollupNode) -> NodeVerification:
        """
        Authenticate a node's after state against L2.

        Checks keccak(blockHash ++ sendRoot) against the stored confirm data and
        re-hashes the L2 block header the after state points to.
        """
        after = node.after_state
        expected = MessageEncoder.confirm_data_hash(after.l2_block_hash, after.send_root)
        confirm_data_matches = HexBytes(expected) == HexBytes(node.confirm_data_hash)

        try:
            raw_block = await self.l2.get_raw_block(after.l2_block_hash)
        except NotFoundError:
            logger.warning(f"After state block {after.l2_block_hash} of node {node.id} not found on L2")
            return NodeVerification(node.id, None, confirm_data_matches, False)

        calculated = MessageEncoder.compute_l2_block_hash(raw_block)
        return NodeVerification(
            node_id=node.id,
            l2_block_number=int(raw_block["number"], 16),
            confirm_data_matches=confirm_data_matches,
            block_hash_matches=HexBytes(calculated) == HexBytes(after.l2_block_hash),
        )

    # Outbox

    async def is_spent(self, position: int) -> bool:
        return await self.l1.call(self.contracts.outbox, self.outbox_abi, "isSpent", position)

    async def outbox_status(self, position: int) -> OutboxStatus:
        """
        Classify an L2-to-L1 message by its position in the send accumulator.

        A message is confirmed once the latest confirmed node's after-state
        block has sent more messages than its position. Otherwise the node
        graph is walked forward to find the first pending node that covers it.
        """
        confirmed, latest_created = await asyncio.gather(
            self.latest_confirmed_node(),
            self.latest_created_id(),
        )
        confirmed_count = await self.send_count(confirmed.after_state.l2_block_hash)
        if position < confirmed_count:
            spent = await self.is_spent(position)
            status = MessageStatus.EXECUTED if spent else MessageStatus.CONFIRMED
            return OutboxStatus(status, node_id=confirmed.id)

        graph = self.node_graph or LinearNodeGraph(latest_created)
        node_id = confirmed.id
        while (next_id := graph.next_on_canonical_path(node_id)) is not None:
            node_id = next_id
            try:
                node = await self.get_node(node_id)
            except NodeNotFoundError:
                logger.debug(f"Skipping missing node {node_id}")
                continue
            if await self.send_count(node.after_state.l2_block_hash) > position:
                return OutboxStatus(
                    MessageStatus.UNCONFIRMED_PENDING_NODE,
                    node_id=node.id,
                    estimated_confirmation=await self.estimate_confirmation_date(node),
                )

        return OutboxStatus(MessageStatus.UNCONFIRMED)
