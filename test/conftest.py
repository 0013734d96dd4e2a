#!/usr/bin/env python3
"""Shared fixtures: in-memory chains, ABI-encoded logs and a fake rollup."""

from typing import Any, Callable

import pytest
from eth_abi import encode
from eth_utils import collapse_if_tuple, event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3

from rollup_tracer.config import RollupContractsConfig, SearchConfig
from rollup_tracer.errors import NotFoundError
from rollup_tracer.utils.contract_utility import ContractUtility
from rollup_tracer.utils.message_encoder import MessageEncoder


def h(seed: int | str) -> str:
    """Deterministic 32 byte hex value for test fixtures."""
    return Web3.to_hex(Web3.keccak(text=str(seed)))


def addr(seed: int | str) -> str:
    """Deterministic checksum address for test fixtures."""
    return Web3.to_checksum_address(Web3.keccak(text=f"address-{seed}")[-20:])


class FakeChain:
    """
    In-memory stand-in for ChainRef.

    eth_getLogs honours block range, address and topic filters so windowed
    scans can be asserted query by query.
    """

    def __init__(self, name: str, chain_id: int, head: int = 0):
        self.name = name
        self.chain_id = chain_id
        self.head = head
        self.logs: list[dict[str, Any]] = []
        self.receipts: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.blocks: dict[int, dict[str, Any]] = {}
        self.raw_blocks: dict[int | str, dict[str, Any]] = {}
        self.calls: dict[str, Callable[..., Any]] = {}
        self.log_queries: list[dict[str, Any]] = []
        self.call_log: list[tuple[str, tuple]] = []

    async def block_number(self) -> int:
        return self.head

    async def get_block(self, block_id: int | str) -> dict[str, Any]:
        return self.blocks[block_id]

    async def get_raw_block(self, block_id: int | str) -> dict[str, Any]:
        key = block_id if isinstance(block_id, int) else block_id.lower()
        if key not in self.raw_blocks:
            raise NotFoundError(f"Block {block_id} not found on {self.name}")
        return dict(self.raw_blocks[key])

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        return self.transactions.get(tx_hash.lower())

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return self.receipts.get(tx_hash.lower())

    async def get_logs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.log_queries.append(params)
        return [log for log in self.logs if self._matches(log, params)]

    async def call(self, address: str, abi: Any, function: str, *args: Any) -> Any:
        self.call_log.append((function, args))
        return self.calls[function](*args)

    @staticmethod
    def _matches(log: dict[str, Any], params: dict[str, Any]) -> bool:
        if not params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]:
            return False
        address = params.get("address")
        if address is not None:
            allowed = [address] if isinstance(address, str) else address
            if log["address"].lower() not in {a.lower() for a in allowed}:
                return False
        for position, expected in enumerate(params.get("topics", [])):
            if expected is None:
                continue
            if position >= len(log["topics"]):
                return False
            options = [expected] if isinstance(expected, str) else expected
            if log["topics"][position].lower() not in {o.lower() for o in options}:
                return False
        return True

    def add_receipt(self, tx_hash: str, block_number: int, logs: list[dict[str, Any]], status: int = 1) -> dict[str, Any]:
        receipt = {
            "transactionHash": tx_hash,
            "blockNumber": block_number,
            "blockHash": h(f"{self.name}-block-{block_number}"),
            "status": status,
            "logs": logs,
        }
        self.receipts[tx_hash.lower()] = receipt
        return receipt


class LogFactory:
    """Builds raw logs by ABI-encoding event arguments."""

    def __init__(self):
        self.contract_util = ContractUtility()
        self._log_index = 0

    def make(
        self,
        contract: str,
        event: str,
        args: dict[str, Any],
        address: str,
        block_number: int,
        tx_hash: str,
        log_index: int | None = None,
    ) -> dict[str, Any]:
        event_abi = self.contract_util.get_event_abi(contract, event)
        topics = [Web3.to_hex(event_abi_to_log_topic(event_abi))]
        data_types, data_values = [], []
        for abi_input in event_abi["inputs"]:
            abi_type = collapse_if_tuple(abi_input)
            value = args[abi_input["name"]]
            if abi_input.get("indexed"):
                topics.append(Web3.to_hex(encode([abi_type], [value])))
            else:
                data_types.append(abi_type)
                data_values.append(value)

        if log_index is None:
            log_index = self._log_index
            self._log_index += 1
        return {
            "address": address,
            "topics": topics,
            "data": Web3.to_hex(encode(data_types, data_values)),
            "blockNumber": block_number,
            "logIndex": log_index,
            "transactionHash": tx_hash,
            "blockHash": h(f"block-{block_number}"),
        }

    # Bridge events

    def message_delivered(self, contracts, message_index, kind, sender, base_fee, block_number, tx_hash):
        return self.make("Bridge", "MessageDelivered", {
            "messageIndex": message_index,
            "beforeInboxAcc": HexBytes(h(f"acc-{message_index}")),
            "inbox": contracts.inbox,
            "kind": kind,
            "sender": sender,
            "messageDataHash": HexBytes(h(f"data-{message_index}")),
            "baseFeeL1": base_fee,
            "timestamp": 1_700_000_000,
        }, contracts.bridge, block_number, tx_hash)

    def inbox_message(self, contracts, message_num, data, block_number, tx_hash):
        return self.make("Inbox", "InboxMessageDelivered", {
            "messageNum": message_num,
            "data": data,
        }, contracts.inbox, block_number, tx_hash)

    def redeem_scheduled(self, ticket_id, retry_tx_hash, block_number, tx_hash, sequence_num=0):
        return self.make("ArbRetryableTx", "RedeemScheduled", {
            "ticketId": HexBytes(ticket_id),
            "retryTxHash": HexBytes(retry_tx_hash),
            "sequenceNum": sequence_num,
            "donatedGas": 100_000,
            "gasDonor": addr("donor"),
            "maxRefund": 0,
            "submissionFeeRefund": 0,
        }, "0x000000000000000000000000000000000000006E", block_number, tx_hash)

    def batch_delivered(self, contracts, batch_number, block_number, tx_hash):
        return self.make("SequencerInbox", "SequencerBatchDelivered", {
            "batchSequenceNumber": batch_number,
            "beforeAcc": HexBytes(h(f"before-{batch_number}")),
            "afterAcc": HexBytes(h(f"after-{batch_number}")),
            "delayedAcc": HexBytes(h(f"delayed-{batch_number}")),
            "afterDelayedMessagesRead": 10,
            "timeBounds": (0, 2**63, 0, 2**63),
            "dataLocation": 0,
        }, contracts.sequencer_inbox, block_number, tx_hash)

    def node_created(self, contracts, node_id, after_block_hash, send_root, block_number, tx_hash, num_blocks=100):
        before = ((HexBytes(h("before-block")), HexBytes(h("before-root"))), (node_id, 0))
        after = ((HexBytes(after_block_hash), HexBytes(send_root)), (node_id + 1, 0))
        return self.make("RollupCore", "NodeCreated", {
            "nodeNum": node_id,
            "parentNodeHash": HexBytes(h(f"node-{node_id - 1}")),
            "nodeHash": HexBytes(h(f"node-{node_id}")),
            "executionHash": HexBytes(h(f"exec-{node_id}")),
            "assertion": ((before, 1), (after, 1), num_blocks),
            "afterInboxBatchAcc": HexBytes(h(f"inbox-acc-{node_id}")),
            "wasmModuleRoot": HexBytes(h("wasm")),
            "inboxMaxCount": node_id + 2,
        }, contracts.rollup, block_number, tx_hash)

    def node_confirmed(self, contracts, node_id, block_hash, send_root, block_number, tx_hash):
        return self.make("RollupCore", "NodeConfirmed", {
            "nodeNum": node_id,
            "blockHash": HexBytes(block_hash),
            "sendRoot": HexBytes(send_root),
        }, contracts.rollup, block_number, tx_hash)

    def l2_to_l1_tx(self, caller, destination, position, arb_block, eth_block, block_number, tx_hash, call_value=0):
        return self.make("ArbSys", "L2ToL1Tx", {
            "caller": caller,
            "destination": destination,
            "hash": position + 10**6,
            "position": position,
            "arbBlockNum": arb_block,
            "ethBlockNum": eth_block,
            "timestamp": 1_700_000_000,
            "callvalue": call_value,
            "data": b"\x12\x34",
        }, "0x0000000000000000000000000000000000000064", block_number, tx_hash)

    def outbox_executed(self, contracts, to, l2_sender, position, block_number, tx_hash):
        return self.make("Outbox", "OutBoxTransactionExecuted", {
            "to": to,
            "l2Sender": l2_sender,
            "zero": 0,
            "transactionIndex": position,
        }, contracts.outbox, block_number, tx_hash)


def make_raw_l2_block(number: int, send_count: int, l1_block_number: int) -> dict[str, Any]:
    """Raw Arbitrum block whose hash is consistent with its header fields."""
    send_root = h(f"send-root-{number}")
    raw = {
        "parentHash": h(f"l2-parent-{number}"),
        "sha3Uncles": h("uncles"),
        "miner": "0xa4b000000000000000000073657175656e636572",
        "stateRoot": h(f"state-{number}"),
        "transactionsRoot": h(f"txs-{number}"),
        "receiptsRoot": h(f"receipts-{number}"),
        "logsBloom": "0x" + "00" * 256,
        "difficulty": "0x1",
        "number": hex(number),
        "gasLimit": hex(2**50),
        "gasUsed": hex(21000),
        "timestamp": hex(1_700_000_000 + number),
        "extraData": send_root,
        "mixHash": "0x" + send_count.to_bytes(8, "big").hex() + l1_block_number.to_bytes(8, "big").hex() + "00" * 16,
        "nonce": "0x0000000000000001",
        "baseFeePerGas": hex(100_000_000),
        "sendCount": hex(send_count),
        "sendRoot": send_root,
        "l1BlockNumber": hex(l1_block_number),
    }
    raw["hash"] = MessageEncoder.compute_l2_block_hash(raw)
    return raw


class FakeRollup:
    """Rollup core, outbox and L2 block state backing two FakeChains."""

    def __init__(self, l1: FakeChain, l2: FakeChain, contracts: RollupContractsConfig, logs: LogFactory):
        self.l1 = l1
        self.l2 = l2
        self.contracts = contracts
        self.logs = logs
        self.nodes: dict[int, tuple] = {}
        self.latest_confirmed = 0
        self.latest_created = 0
        self.spent: set[int] = set()
        l1.calls.update({
            "latestConfirmed": lambda: self.latest_confirmed,
            "latestNodeCreated": lambda: self.latest_created,
            "getNode": self._get_node,
            "isSpent": lambda index: index in self.spent,
        })

    def _get_node(self, node_id: int) -> tuple:
        zero = b"\x00" * 32
        return self.nodes.get(node_id, (zero, zero, zero, 0, 0, 0, 0, 0, 0, 0, 0, zero))

    def add_l2_block(self, number: int, send_count: int, l1_block_number: int) -> dict[str, Any]:
        raw = make_raw_l2_block(number, send_count, l1_block_number)
        self.l2.raw_blocks[number] = raw
        self.l2.raw_blocks[raw["hash"].lower()] = raw
        return raw

    def add_node(
        self,
        node_id: int,
        l2_block: dict[str, Any],
        created_at: int,
        deadline: int,
        timestamp: int = 1_700_000_000,
    ) -> str:
        """Register a node whose after state is the given raw L2 block; returns its creation tx hash."""
        send_root = l2_block["sendRoot"]
        confirm_data = MessageEncoder.confirm_data_hash(l2_block["hash"], send_root)
        self.nodes[node_id] = (
            HexBytes(h(f"state-{node_id}")), b"\x00" * 32, HexBytes(confirm_data),
            max(node_id - 1, 0), deadline, 0, 1, 0, 0, 0, created_at,
            HexBytes(h(f"node-{node_id}")),
        )
        tx_hash = h(f"node-created-tx-{node_id}")
        self.l1.logs.append(
            self.logs.node_created(self.contracts, node_id, l2_block["hash"], send_root, created_at, tx_hash)
        )
        self.l1.blocks[created_at] = {"number": created_at, "timestamp": timestamp}
        self.latest_created = max(self.latest_created, node_id)
        return tx_hash

    def confirm_node(self, node_id: int, l2_block: dict[str, Any], at_block: int) -> None:
        self.l1.logs.append(self.logs.node_confirmed(
            self.contracts, node_id, l2_block["hash"], l2_block["sendRoot"], at_block, h(f"confirm-tx-{node_id}"),
        ))
        self.latest_confirmed = max(self.latest_confirmed, node_id)


@pytest.fixture
def contracts():
    """Arbitrum One contract set."""
    return RollupContractsConfig.for_network("arbitrum-one")


@pytest.fixture
def search():
    """Default search heuristics."""
    return SearchConfig()


@pytest.fixture
def l1():
    """Empty in-memory base chain."""
    return FakeChain("L1", 1, head=100_000)


@pytest.fixture
def l2():
    """Empty in-memory rollup chain."""
    return FakeChain("L2", 42161, head=50_000)


@pytest.fixture
def logs():
    """ABI log builder."""
    return LogFactory()


@pytest.fixture
def rollup(l1, l2, contracts, logs):
    """Fake rollup state backed by the l1/l2 fixtures."""
    return FakeRollup(l1, l2, contracts, logs)
