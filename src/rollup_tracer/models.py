"""
Shared data models for the rollup message tracer.

This module contains the records produced while correlating bridge events:
rollup node state, the cross-chain message variants and the partially
populated search results handed to the presentation layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Mapping


class ChainSide(str, Enum):
    """Which side of the bridge a transaction lives on."""
    L1 = "L1"
    L2 = "L2"


class L1FinalityTier(IntEnum):
    """L1 finality tiers, ordered from least to most final."""
    UNSAFE = 0
    SAFE = 1
    FINALIZED = 2


class MessageStatus(str, Enum):
    """Lifecycle status of a cross-chain message."""
    NOT_FOUND = "not_found"
    PENDING = "pending"
    CREATION_FAILED = "creation_failed"
    FUNDS_DEPOSITED_ON_L2 = "funds_deposited_on_l2"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REDEEM_NOT_FOUND = "redeem_not_found"
    DEPOSITED = "deposited"
    UNCONFIRMED = "unconfirmed"
    UNCONFIRMED_PENDING_NODE = "unconfirmed_pending_node"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"


@dataclass(frozen=True, slots=True)
class DecodedEvent:
    """A log decoded against a known contract event.

    Attributes:
        contract: Name of the contract ABI the log was decoded with
        event: Event name
        args: Decoded arguments keyed by ABI parameter name
        address: Address of the emitting contract
        block_number: Block number where the event occurred
        log_index: Position of the log within the block
        transaction_hash: Transaction hash where the event was emitted
        block_hash: Hash of the containing block, when known
    """
    contract: str
    event: str
    args: Mapping[str, Any]
    address: str
    block_number: int
    log_index: int
    transaction_hash: str
    block_hash: str | None = None


@dataclass(frozen=True, slots=True)
class GlobalState:
    """Machine global state committed by a rollup assertion."""
    l2_block_hash: str
    send_root: str
    inbox_position: int
    position_in_message: int


@dataclass(frozen=True, slots=True)
class RollupNode:
    """A rollup assertion (RBlock) as stored by the rollup core contract.

    Attributes:
        id: Node number
        parent_id: Node number of the parent assertion
        created_at_l1_block: L1 block where the node was created
        deadline_l1_block: L1 block after which the node can be confirmed
        confirm_data_hash: keccak256(afterState.blockHash ++ afterState.sendRoot)
        before_state: Global state before the assertion
        after_state: Global state after the assertion
        num_blocks: Number of L2 blocks processed by the assertion
        creation_tx_hash: L1 transaction that emitted NodeCreated
    """
    id: int
    parent_id: int
    created_at_l1_block: int
    deadline_l1_block: int
    confirm_data_hash: str
    before_state: GlobalState
    after_state: GlobalState
    num_blocks: int = 0
    creation_tx_hash: str | None = None


@dataclass(frozen=True, slots=True)
class L2BlockInfo:
    """Arbitrum-specific fields of an L2 block."""
    number: int
    hash: str
    send_count: int
    l1_block_number: int


@dataclass(frozen=True, slots=True)
class RetryableTicket:
    """An L1-to-L2 retryable ticket submission."""
    source_tx_hash: str
    ticket_id: str
    message_number: int
    sender: str
    destination: str
    l2_call_value: int
    data: bytes
    status: MessageStatus = MessageStatus.PENDING
    source_chain: ChainSide = ChainSide.L1
    redeem_tx_hash: str | None = None
    creation_receipt: Any = None
    redeem_receipt: Any = None


@dataclass(frozen=True, slots=True)
class EthDeposit:
    """An L1-to-L2 ETH deposit."""
    source_tx_hash: str
    deposit_tx_hash: str
    message_number: int
    sender: str
    destination: str
    value: int
    status: MessageStatus = MessageStatus.PENDING
    source_chain: ChainSide = ChainSide.L1
    deposit_receipt: Any = None


@dataclass(frozen=True, slots=True)
class L2ToL1Message:
    """An L2-to-L1 message sent through ArbSys and executed through the outbox.

    Attributes:
        position: Leaf index in the send Merkle accumulator
        l1_block_number: L1 block number seen by L2 when the message was sent
    """
    source_tx_hash: str
    position: int
    destination: str
    caller: str
    l1_block_number: int
    l2_block_number: int
    call_value: int
    data: bytes
    status: MessageStatus = MessageStatus.UNCONFIRMED
    source_chain: ChainSide = ChainSide.L2
    outbox_execution_receipt: Any = None


CrossChainMessage = RetryableTicket | EthDeposit | L2ToL1Message


@dataclass
class MessageSearchResult:
    """Accumulator populated as correlation proceeds.

    Every field other than the queried hash may be absent; callers must
    tolerate partial results (e.g. a ticket created but not yet redeemed).
    """
    tx_hash: str
    found_on: ChainSide | None = None
    l1_receipt: Any = None
    l2_receipt: Any = None
    messages: list[CrossChainMessage] = field(default_factory=list)
    retryable_ticket_id: str | None = None
    retryable_receipt: Any = None
    redeem_event: DecodedEvent | None = None
    outbox_event: DecodedEvent | None = None
    pending_node_id: int | None = None
    estimated_confirmation: datetime | None = None
    search_budget_exceeded: bool = False
    notes: list[str] = field(default_factory=list)

    @property
    def status(self) -> MessageStatus:
        """Status of the last correlated message, NOT_FOUND if none."""
        if not self.messages:
            return MessageStatus.NOT_FOUND
        return self.messages[-1].status


@dataclass(frozen=True, slots=True)
class OutboxStatus:
    """Outcome of classifying an outbox position against rollup state."""
    status: MessageStatus
    node_id: int | None = None
    estimated_confirmation: datetime | None = None


@dataclass(frozen=True, slots=True)
class BlockConfirmationReport:
    """Where an L2 block stands in the rollup confirmation process."""
    l2_block_number: int
    latest_confirmed_node_id: int
    node: RollupNode | None = None
    confirmed: bool = False
    confirmation_l1_block: int | None = None
    finality: L1FinalityTier | None = None
    latest_l1_block: int | None = None
    estimated_confirmation: datetime | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class NodeVerification:
    """Result of authenticating a node's after state."""
    node_id: int
    l2_block_number: int | None
    confirm_data_matches: bool
    block_hash_matches: bool


@dataclass(frozen=True, slots=True)
class BatchInfo:
    """The sequencer batch that carried an L2 transaction to L1."""
    l2_tx_hash: str
    l2_block_number: int | None = None
    batch_number: int | None = None
    l1_tx_hash: str | None = None
    l1_block_number: int | None = None
    confirmations: int = 0
