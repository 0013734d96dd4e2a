"""
Sequencer batch lookup for L2 transactions.
"""

import logging

from hexbytes import HexBytes
from web3.exceptions import ContractLogicError

from .chain import ChainRef
from .config import NODE_INTERFACE_ADDRESS, RollupContractsConfig
from .errors import NotFoundError
from .log_scanner import EventCriteria, WindowedLogScanner
from .models import BatchInfo, DecodedEvent
from .utils.contract_utility import ContractUtility, to_hex, validate_tx_hash

logger = logging.getLogger(__name__)


class BatchLocator:
    """Finds the L1 batch that carried an L2 block and its L1 confirmations."""

    def __init__(
        self,
        l1: ChainRef,
        l2: ChainRef,
        contracts: RollupContractsConfig,
        contract_util: ContractUtility | None = None,
    ):
        self.l1 = l1
        self.l2 = l2
        self.contracts = contracts
        self.contract_util = contract_util or ContractUtility()
        self.l1_scanner = WindowedLogScanner(l1, self.contract_util)
        self.node_interface_abi = self.contract_util.get_contract_abi("NodeInterface")

    async def batch_number_for_block(self, l2_block: int) -> int:
        """
        Sequencer batch number containing an L2 block.

        Raises:
            NotFoundError: If the block has not been posted to L1 yet
        """
        try:
            return await self.l2.call(
                NODE_INTERFACE_ADDRESS, self.node_interface_abi,
                "findBatchContainingBlock", l2_block,
            )
        except ContractLogicError as e:
            raise NotFoundError(f"L2 block {l2_block} is not in a posted batch yet: {e}") from e

    async def find_batch_event(self, batch_number: int) -> DecodedEvent:
        """
        Full-history lookup of the SequencerBatchDelivered event of a batch.

        Raises:
            NotFoundError: If no event carries that batch number
        """
        criteria = EventCriteria(
            "SequencerInbox", "SequencerBatchDelivered",
            address=self.contracts.sequencer_inbox,
            indexed={"batchSequenceNumber": batch_number},
        )
        latest = await self.l1.block_number()
        events = await self.l1_scanner.fetch(criteria, 0, latest)
        if not events:
            raise NotFoundError(f"Batch {batch_number} was not delivered to the sequencer inbox")
        return events[0]

    async def l1_anchor_block(self, l2_block: int) -> int:
        """L1 block of the batch containing an L2 block."""
        batch_number = await self.batch_number_for_block(l2_block)
        return (await self.find_batch_event(batch_number)).block_number

    async def find_batch(self, tx_hash: str) -> BatchInfo:
        """
        Locate the L1 batch of an L2 transaction.

        Returns a partially populated BatchInfo when the transaction is
        unknown or has not been batched yet.

        Raises:
            InvalidTransactionHash: If tx_hash is malformed
        """
        tx_hash = validate_tx_hash(tx_hash)
        receipt = await self.l2.get_transaction_receipt(tx_hash)
        if receipt is None:
            logger.warning(f"Transaction {tx_hash} not found on {self.l2.name}")
            return BatchInfo(l2_tx_hash=tx_hash)

        l2_block = receipt["blockNumber"]
        try:
            batch_number = await self.batch_number_for_block(l2_block)
            event = await self.find_batch_event(batch_number)
        except NotFoundError as e:
            logger.info(f"{e}")
            return BatchInfo(l2_tx_hash=tx_hash, l2_block_number=l2_block)

        confirmations = await self.l2.call(
            NODE_INTERFACE_ADDRESS, self.node_interface_abi,
            "getL1Confirmations", HexBytes(receipt["blockHash"]),
        )
        logger.info(f"Transaction {tx_hash} is in batch {batch_number} ({event.transaction_hash})")
        return BatchInfo(
            l2_tx_hash=tx_hash,
            l2_block_number=l2_block,
            batch_number=batch_number,
            l1_tx_hash=to_hex(event.transaction_hash),
            l1_block_number=event.block_number,
            confirmations=confirmations,
        )
