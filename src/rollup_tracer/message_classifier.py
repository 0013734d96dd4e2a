"""
Cross-chain message classifier.

Correlates a single transaction hash with the bridge events on both chains:

- L1 submissions are followed forward to the L2 ticket creation, deposit or
  redemption transaction.
- L2 executions are followed backward to the L1 submission that caused them.
- L2-to-L1 messages are classified against the rollup confirmation state and
  matched with their outbox execution.

Absence of data is never an error here: the partially populated
``MessageSearchResult`` is returned with notes explaining what is missing.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Sequence

from hexbytes import HexBytes
from web3.exceptions import ContractLogicError

from .batch_locator import BatchLocator
from .chain import ChainRef
from .config import (
    ARB_RETRYABLE_TX_ADDRESS,
    ARB_SYS_ADDRESS,
    RollupContractsConfig,
    SearchConfig,
)
from .errors import (
    AmbiguousMatchError,
    DecodeError,
    NotFoundError,
    SearchBudgetExceeded,
)
from .log_scanner import BlockWindow, EventCriteria, WindowedLogScanner
from .models import (
    ChainSide,
    DecodedEvent,
    EthDeposit,
    L2ToL1Message,
    MessageSearchResult,
    MessageStatus,
    RetryableTicket,
)
from .rollup_state import RollupStateReader
from .utils.contract_utility import ContractUtility, to_hex, validate_tx_hash
from .utils.message_encoder import (
    ARB_DEPOSIT_TX_TYPE,
    ARB_RETRY_TX_TYPE,
    ARB_SUBMIT_RETRYABLE_TX_TYPE,
    L1_MESSAGE_TYPE_ETH_DEPOSIT,
    L1_MESSAGE_TYPE_SUBMIT_RETRYABLE,
    MessageEncoder,
)

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value or 0)


class MessageClassifier:
    """
    Locates and classifies the cross-chain messages of a transaction.
    """

    def __init__(
        self,
        l1: ChainRef,
        l2: ChainRef,
        contracts: RollupContractsConfig,
        search: SearchConfig | None = None,
        contract_util: ContractUtility | None = None,
        state: RollupStateReader | None = None,
        batches: BatchLocator | None = None,
    ):
        """
        Initialize the classifier.

        Args:
            l1: Base chain
            l2: Rollup chain
            contracts: Rollup contract addresses on L1
            search: Search limits and heuristics
            contract_util: ABI helper shared by every component
            state: Rollup state reader (built from the chains when omitted)
            batches: Batch locator (built from the chains when omitted)
        """
        self.l1 = l1
        self.l2 = l2
        self.contracts = contracts
        self.search = search or SearchConfig()
        self.contract_util = contract_util or ContractUtility()
        self.state = state or RollupStateReader(l1, l2, contracts, self.search, self.contract_util)
        self.batches = batches or BatchLocator(l1, l2, contracts, self.contract_util)
        self.l1_scanner = WindowedLogScanner(l1, self.contract_util)
        self.l2_scanner = WindowedLogScanner(l2, self.contract_util)
        self.retryable_abi = self.contract_util.get_contract_abi("ArbRetryableTx")

    # Inbox messages

    def delivered_messages(self, logs: Sequence[Any]) -> list[tuple[DecodedEvent, DecodedEvent]]:
        """
        Pair bridge MessageDelivered events with inbox InboxMessageDelivered
        events by message number.
        """
        delivered = self.contract_util.decode_logs(logs, "Bridge", "MessageDelivered", self.contracts.bridge)
        inbox = self.contract_util.decode_logs(logs, "Inbox", "InboxMessageDelivered", self.contracts.inbox)
        return self.delivered_messages_from_events(delivered + inbox)

    def message_from_events(
        self,
        delivered: DecodedEvent,
        inbox_event: DecodedEvent,
    ) -> RetryableTicket | EthDeposit | None:
        """
        Build the message described by a delivered/inbox event pair.

        Returns None for message kinds that are neither retryables nor ETH
        deposits, and for payloads that cannot be decoded.
        """
        kind = delivered.args["kind"]
        message_number = delivered.args["messageIndex"]
        sender = delivered.args["sender"]
        try:
            if kind == L1_MESSAGE_TYPE_SUBMIT_RETRYABLE:
                payload = MessageEncoder.parse_retryable_data(inbox_event.args["data"])
                ticket_id = MessageEncoder.calculate_submit_retryable_id(
                    self.l2.chain_id, sender, message_number,
                    delivered.args["baseFeeL1"], payload,
                )
                return RetryableTicket(
                    source_tx_hash=delivered.transaction_hash,
                    ticket_id=ticket_id,
                    message_number=message_number,
                    sender=sender,
                    destination=payload.destination,
                    l2_call_value=payload.l2_call_value,
                    data=payload.data,
                )
            if kind == L1_MESSAGE_TYPE_ETH_DEPOSIT:
                payload = MessageEncoder.parse_eth_deposit_data(inbox_event.args["data"])
                deposit_tx_hash = MessageEncoder.calculate_deposit_tx_id(
                    self.l2.chain_id, message_number, sender, payload,
                )
                return EthDeposit(
                    source_tx_hash=delivered.transaction_hash,
                    deposit_tx_hash=deposit_tx_hash,
                    message_number=message_number,
                    sender=sender,
                    destination=payload.destination,
                    value=payload.value,
                )
        except DecodeError as e:
            logger.debug(f"Skipping message {message_number}: {e}")
            return None

        logger.debug(f"Ignoring message {message_number} of kind {kind}")
        return None

    def messages_from_l1_receipt(self, receipt: Any) -> list[RetryableTicket | EthDeposit]:
        messages = []
        for delivered, inbox_event in self.delivered_messages(receipt["logs"]):
            message = self.message_from_events(delivered, inbox_event)
            if message is not None:
                messages.append(message)
        return messages

    # Top-level operations

    async def locate(self, tx_hash: str) -> MessageSearchResult:
        """
        Trace the L1-to-L2 messages (retryables and deposits) of a transaction.

        The hash may belong to either chain: an L1 submission is followed
        forward, an L2 transaction is followed backward to its L1 origin.

        Raises:
            InvalidTransactionHash: If tx_hash is malformed
            AmbiguousMatchError: If a ticket has several redeem candidates
        """
        tx_hash = validate_tx_hash(tx_hash)
        result = MessageSearchResult(tx_hash=tx_hash)

        l1_receipt, l2_receipt = await asyncio.gather(
            self.l1.get_transaction_receipt(tx_hash),
            self.l2.get_transaction_receipt(tx_hash),
        )

        if l1_receipt is not None:
            logger.info(f"Transaction {tx_hash} found on {self.l1.name}")
            result.found_on = ChainSide.L1
            result.l1_receipt = l1_receipt
            await self._search_from_l1(result)
        elif l2_receipt is not None:
            logger.info(f"Transaction {tx_hash} found on {self.l2.name}")
            result.found_on = ChainSide.L2
            result.l2_receipt = l2_receipt
            await self._search_from_l2(result)
        else:
            logger.warning(f"Transaction {tx_hash} not found on either chain")
            result.notes.append("Transaction not found on L1 or L2")

        return result

    async def locate_l2_to_l1(self, tx_hash: str) -> MessageSearchResult:
        """
        Trace the L2-to-L1 messages of an L2 transaction through the outbox.

        Raises:
            InvalidTransactionHash: If tx_hash is malformed
        """
        tx_hash = validate_tx_hash(tx_hash)
        result = MessageSearchResult(tx_hash=tx_hash)

        receipt = await self.l2.get_transaction_receipt(tx_hash)
        if receipt is None:
            logger.warning(f"Transaction {tx_hash} not found on {self.l2.name}")
            result.notes.append("Transaction not found on L2")
            return result
        result.found_on = ChainSide.L2
        result.l2_receipt = receipt

        events = self.contract_util.decode_logs(receipt["logs"], "ArbSys", "L2ToL1Tx", ARB_SYS_ADDRESS)
        if not events:
            logger.warning(f"Transaction {tx_hash} did not send any L2-to-L1 message")
            result.notes.append("No L2ToL1Tx event in the transaction")
            return result

        for event in events:
            message = L2ToL1Message(
                source_tx_hash=tx_hash,
                position=event.args["position"],
                destination=event.args["destination"],
                caller=event.args["caller"],
                l1_block_number=event.args["ethBlockNum"],
                l2_block_number=event.args["arbBlockNum"],
                call_value=event.args["callvalue"],
                data=event.args["data"],
            )
            result.messages.append(await self._follow_l2_to_l1(message, result))

        return result

    # L1 -> L2, forward

    async def _search_from_l1(self, result: MessageSearchResult) -> None:
        messages = self.messages_from_l1_receipt(result.l1_receipt)
        if not messages:
            logger.warning(f"No retryable or deposit messages in {result.tx_hash}")
            result.notes.append("No L1-to-L2 messages were found in the transaction")
            return

        logger.info(f"Found {len(messages)} L1-to-L2 message(s) in {result.tx_hash}")
        for message in messages:
            if isinstance(message, RetryableTicket):
                message = await self.follow_retryable(message, result)
            else:
                message = await self.follow_deposit(message, result)
            result.messages.append(message)

    async def follow_deposit(self, deposit: EthDeposit, result: MessageSearchResult) -> EthDeposit:
        """Look up the L2 deposit transaction of an ETH deposit."""
        receipt = await self.l2.get_transaction_receipt(deposit.deposit_tx_hash)
        if receipt is None:
            logger.info(f"Deposit {deposit.deposit_tx_hash} not executed on L2 yet")
            result.notes.append(f"Deposit transaction {deposit.deposit_tx_hash} not found on L2 (it might still be pending)")
            return deposit

        result.l2_receipt = receipt
        return dataclasses.replace(deposit, status=MessageStatus.DEPOSITED, deposit_receipt=receipt)

    async def follow_retryable(self, ticket: RetryableTicket, result: MessageSearchResult) -> RetryableTicket:
        """
        Follow a retryable ticket from creation to redemption.

        Raises:
            AmbiguousMatchError: If the creation receipt schedules several redeems
        """
        result.retryable_ticket_id = ticket.ticket_id

        creation_receipt = await self.l2.get_transaction_receipt(ticket.ticket_id)
        if creation_receipt is None:
            logger.info(f"Retryable ticket {ticket.ticket_id} not created on L2 yet")
            result.notes.append(
                f"Retryable ticket {ticket.ticket_id} not found on L2 (if it was just submitted it might still be pending)"
            )
            return ticket

        result.retryable_receipt = creation_receipt
        ticket = dataclasses.replace(ticket, creation_receipt=creation_receipt)
        if _as_int(creation_receipt["status"]) == 0:
            logger.warning(f"Retryable ticket {ticket.ticket_id} failed to be created")
            result.notes.append("Ticket creation failed (the submission fees may not have covered the L2 transaction)")
            return dataclasses.replace(ticket, status=MessageStatus.CREATION_FAILED)

        # Auto-redeem scheduled in the creation transaction
        scheduled = self.contract_util.decode_logs(
            creation_receipt["logs"], "ArbRetryableTx", "RedeemScheduled", ARB_RETRYABLE_TX_ADDRESS,
        )
        if len(scheduled) > 1:
            raise AmbiguousMatchError(
                f"redeem of ticket {ticket.ticket_id}",
                tuple(to_hex(e.args["retryTxHash"]) for e in scheduled),
            )

        checked: set[str] = set()
        if scheduled:
            redeem_event = scheduled[0]
            result.redeem_event = redeem_event
            redeem_receipt = await self._successful_redeem(redeem_event)
            checked.add(to_hex(redeem_event.args["retryTxHash"]))
            if redeem_receipt is not None:
                logger.info(f"Ticket {ticket.ticket_id} was auto-redeemed")
                return self._redeemed(ticket, redeem_event, redeem_receipt, result)
            logger.info(f"Auto-redeem of ticket {ticket.ticket_id} did not succeed")
        else:
            logger.info(f"Ticket {ticket.ticket_id} was not auto-redeemed")

        # Manual redeems, scanning forward from the creation block
        latest_l2 = await self.l2.block_number()
        window = BlockWindow.forward_from(
            _as_int(creation_receipt["blockNumber"]), latest_l2,
            chunk_size=self.search.chunk_size,
            max_blocks=self.search.l2_max_blocks,
        )
        criteria = EventCriteria(
            "ArbRetryableTx", "RedeemScheduled",
            address=ARB_RETRYABLE_TX_ADDRESS,
            indexed={"ticketId": ticket.ticket_id},
        )
        async for redeem_event in self.l2_scanner.scan(window, criteria):
            retry_tx_hash = to_hex(redeem_event.args["retryTxHash"])
            if retry_tx_hash in checked:
                continue
            checked.add(retry_tx_hash)
            redeem_receipt = await self._successful_redeem(redeem_event)
            if redeem_receipt is not None:
                logger.info(f"Ticket {ticket.ticket_id} was manually redeemed in {retry_tx_hash}")
                result.redeem_event = redeem_event
                return self._redeemed(ticket, redeem_event, redeem_receipt, result)

        if await self._ticket_expired(ticket.ticket_id):
            if window.budget_limited:
                # Redeemed tickets are deleted too; a redeem past the window is indistinguishable from expiry
                logger.info(f"Ticket {ticket.ticket_id} no longer exists and no redeem was found in the search window")
                result.search_budget_exceeded = True
                result.notes.append(
                    f"No successful redeem within {window.blocks_in_budget} L2 blocks of the ticket creation; "
                    "the ticket was either redeemed later or expired"
                )
                return dataclasses.replace(ticket, status=MessageStatus.REDEEM_NOT_FOUND)
            logger.info(f"Ticket {ticket.ticket_id} has expired")
            return dataclasses.replace(ticket, status=MessageStatus.EXPIRED)

        logger.info(f"Ticket {ticket.ticket_id} is waiting to be redeemed")
        return dataclasses.replace(ticket, status=MessageStatus.FUNDS_DEPOSITED_ON_L2)

    async def _successful_redeem(self, redeem_event: DecodedEvent) -> Any | None:
        receipt = await self.l2.get_transaction_receipt(to_hex(redeem_event.args["retryTxHash"]))
        if receipt is None or _as_int(receipt["status"]) != 1:
            return None
        return receipt

    def _redeemed(
        self,
        ticket: RetryableTicket,
        redeem_event: DecodedEvent,
        redeem_receipt: Any,
        result: MessageSearchResult,
    ) -> RetryableTicket:
        if result.found_on is ChainSide.L1:
            result.l2_receipt = redeem_receipt
        return dataclasses.replace(
            ticket,
            status=MessageStatus.REDEEMED,
            redeem_tx_hash=to_hex(redeem_event.args["retryTxHash"]),
            redeem_receipt=redeem_receipt,
        )

    async def _ticket_expired(self, ticket_id: str) -> bool:
        """getTimeout reverts once a ticket no longer exists (expired or redeemed)."""
        try:
            await self.l2.call(ARB_RETRYABLE_TX_ADDRESS, self.retryable_abi, "getTimeout", HexBytes(ticket_id))
        except ContractLogicError:
            return True
        return False

    # L1 -> L2, backward

    async def _search_from_l2(self, result: MessageSearchResult) -> None:
        receipt = result.l2_receipt
        tx_hash = result.tx_hash
        transaction = await self.l2.get_transaction(tx_hash)
        tx_type = _as_int(transaction.get("type")) if transaction is not None else 0

        ticket_id = None
        if tx_type == ARB_SUBMIT_RETRYABLE_TX_TYPE:
            ticket_id = tx_hash
        elif tx_type == ARB_RETRY_TX_TYPE:
            ticket_id = await self._ticket_of_redeem(result)
            if ticket_id is None:
                logger.warning(f"No ticket found for retry transaction {tx_hash}")
                result.notes.append("The retryable ticket redeemed by this transaction was not found")
                return
        elif tx_type != ARB_DEPOSIT_TX_TYPE:
            logger.warning(f"Transaction {tx_hash} (type {tx_type:#x}) is not an L1-to-L2 message execution")
            result.notes.append("The transaction is not a retryable or deposit execution on L2")
            return

        if ticket_id is not None:
            result.retryable_ticket_id = ticket_id
            logger.info(f"Transaction {tx_hash} belongs to retryable ticket {ticket_id}")
        else:
            logger.info(f"Transaction {tx_hash} is an ETH deposit")

        try:
            anchor = await self.batches.l1_anchor_block(_as_int(receipt["blockNumber"]))
        except NotFoundError as e:
            logger.warning(f"Could not anchor {tx_hash} on L1: {e}")
            result.notes.append("The transaction was not found in any submitted batch")
            return

        window = BlockWindow.backward_from(
            anchor,
            chunk_size=self.search.chunk_size,
            max_blocks=self.search.l1_max_blocks,
        )
        criteria = [
            EventCriteria("Bridge", "MessageDelivered", address=self.contracts.bridge),
            EventCriteria("Inbox", "InboxMessageDelivered", address=self.contracts.inbox),
        ]
        async for _, events in self.l1_scanner.chunks_of(window, criteria):
            for delivered, inbox_event in self.delivered_messages_from_events(events):
                message = self.message_from_events(delivered, inbox_event)
                if isinstance(message, RetryableTicket) and ticket_id is not None:
                    if message.ticket_id != ticket_id:
                        continue
                    logger.info(f"Found L1 submission {message.source_tx_hash}")
                    result.l1_receipt = await self.l1.get_transaction_receipt(message.source_tx_hash)
                    result.messages.append(await self.follow_retryable(message, result))
                    return
                if isinstance(message, EthDeposit) and ticket_id is None:
                    if message.deposit_tx_hash != tx_hash:
                        continue
                    logger.info(f"Found L1 deposit {message.source_tx_hash}")
                    result.l1_receipt = await self.l1.get_transaction_receipt(message.source_tx_hash)
                    result.messages.append(
                        dataclasses.replace(message, status=MessageStatus.DEPOSITED, deposit_receipt=receipt)
                    )
                    return

        logger.warning(f"Could not find the L1 origin of {tx_hash}")
        if window.budget_limited:
            result.search_budget_exceeded = True
        result.notes.append(f"L1 origin not found after searching {window.blocks_in_budget} L1 blocks")

    def delivered_messages_from_events(
        self,
        events: Sequence[DecodedEvent],
    ) -> list[tuple[DecodedEvent, DecodedEvent]]:
        """Pair already decoded MessageDelivered and InboxMessageDelivered events."""
        inbox = {e.args["messageNum"]: e for e in events if e.event == "InboxMessageDelivered"}
        pairs = []
        for event in events:
            if event.event != "MessageDelivered":
                continue
            inbox_event = inbox.get(event.args["messageIndex"])
            if inbox_event is None:
                logger.debug(f"Message {event.args['messageIndex']} has no inbox payload")
                continue
            pairs.append((event, inbox_event))
        return pairs

    async def _ticket_of_redeem(self, result: MessageSearchResult) -> str | None:
        """
        Scan L2 backward for the RedeemScheduled event of a retry transaction.

        Raises:
            AmbiguousMatchError: If several events name the same retry transaction
        """
        window = BlockWindow.backward_from(
            _as_int(result.l2_receipt["blockNumber"]),
            chunk_size=self.search.chunk_size,
            max_blocks=self.search.l2_max_blocks,
        )
        criteria = EventCriteria(
            "ArbRetryableTx", "RedeemScheduled",
            address=ARB_RETRYABLE_TX_ADDRESS,
            indexed={"retryTxHash": result.tx_hash},
        )
        try:
            matches = await self.l2_scanner.find_first_chunk(window, criteria)
        except SearchBudgetExceeded as e:
            logger.info(f"{e}")
            result.search_budget_exceeded = True
            result.notes.append(f"No RedeemScheduled event within {e.blocks_scanned} L2 blocks")
            return None
        except NotFoundError as e:
            logger.info(f"{e}")
            return None

        if len(matches) > 1:
            raise AmbiguousMatchError(
                f"ticket redeemed by {result.tx_hash}",
                tuple(to_hex(e.args["ticketId"]) for e in matches),
            )
        result.redeem_event = matches[0]
        return to_hex(matches[0].args["ticketId"])

    # L2 -> L1

    async def _follow_l2_to_l1(self, message: L2ToL1Message, result: MessageSearchResult) -> L2ToL1Message:
        outbox = await self.state.outbox_status(message.position)
        logger.info(f"L2-to-L1 message {message.position} is {outbox.status.value}")

        if outbox.status is MessageStatus.UNCONFIRMED_PENDING_NODE:
            result.pending_node_id = outbox.node_id
            result.estimated_confirmation = outbox.estimated_confirmation
            return dataclasses.replace(message, status=outbox.status)

        if outbox.status is not MessageStatus.EXECUTED:
            return dataclasses.replace(message, status=outbox.status)

        latest_l1 = await self.l1.block_number()
        window = BlockWindow.forward_from(
            message.l1_block_number + self.search.l1_one_week_blocks, latest_l1,
            chunk_size=self.search.chunk_size,
            max_blocks=self.search.l1_max_blocks,
        )
        criteria = EventCriteria(
            "Outbox", "OutBoxTransactionExecuted",
            address=self.contracts.outbox,
            indexed={"to": message.destination, "l2Sender": message.caller},
            where={"transactionIndex": message.position},
        )
        try:
            event = await self.l1_scanner.find_first(window, criteria)
        except SearchBudgetExceeded as e:
            logger.info(f"{e}")
            result.search_budget_exceeded = True
            result.notes.append(f"Outbox execution not found within {e.blocks_scanned} L1 blocks")
            return dataclasses.replace(message, status=outbox.status)
        except NotFoundError as e:
            logger.info(f"{e}")
            result.notes.append("Outbox execution event not found")
            return dataclasses.replace(message, status=outbox.status)

        result.outbox_event = event
        receipt = await self.l1.get_transaction_receipt(event.transaction_hash)
        result.l1_receipt = receipt
        return dataclasses.replace(message, status=outbox.status, outbox_execution_receipt=receipt)
