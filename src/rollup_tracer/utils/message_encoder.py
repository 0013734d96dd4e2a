"""
Message encoding utilities for the rollup message tracer.

This module provides the payload parsers and RLP/keccak derivations needed to
predict the L2 transaction hash of an L1-to-L2 message, plus the hashing used
to authenticate rollup node state.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Union

import rlp
from eth_abi import decode
from hexbytes import HexBytes
from web3 import Web3

from ..errors import DecodeError

logger = logging.getLogger(__name__)

# Inbox message kinds (L1MessageType_* in the Nitro contracts)
L1_MESSAGE_TYPE_SUBMIT_RETRYABLE = 9
L1_MESSAGE_TYPE_ETH_DEPOSIT = 12

# EIP-2718 type bytes of the Arbitrum internal transactions
ARB_DEPOSIT_TX_TYPE = 0x64
ARB_RETRY_TX_TYPE = 0x68
ARB_SUBMIT_RETRYABLE_TX_TYPE = 0x69

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_RETRYABLE_HEADER_WORDS = 9
_WORD = 32


@dataclass(frozen=True, slots=True)
class RetryableMessageData:
    """Decoded payload of a submit-retryable inbox message."""
    destination: str
    l2_call_value: int
    l1_value: int
    max_submission_fee: int
    excess_fee_refund_address: str
    call_value_refund_address: str
    gas_limit: int
    max_fee_per_gas: int
    data: bytes


@dataclass(frozen=True, slots=True)
class EthDepositData:
    """Decoded payload of an ETH deposit inbox message."""
    destination: str
    value: int


class MessageEncoder:
    """Utilities for decoding inbox payloads and deriving message ids."""

    @staticmethod
    def to_bytes_safe(value: Union[HexBytes, bytes, str]) -> bytes:
        """
        Safely convert value to bytes, handling HexBytes, bytes, and hex strings.

        Args:
            value: Value to convert (HexBytes, bytes, or hex string)

        Returns:
            Bytes representation
        """
        if isinstance(value, HexBytes):
            return bytes(value)
        elif isinstance(value, bytes):
            return value
        else:
            return Web3.to_bytes(hexstr=value)

    @staticmethod
    def format_number(value: int) -> bytes:
        """Big-endian bytes of an integer with leading zeros stripped (0 -> b'')."""
        return value.to_bytes((value.bit_length() + 7) // 8, "big")

    @staticmethod
    def _address_from_word(word: int) -> str:
        return Web3.to_checksum_address(word.to_bytes(_WORD, "big")[-20:])

    @staticmethod
    def parse_retryable_data(payload: Union[HexBytes, bytes, str]) -> RetryableMessageData:
        """
        Parse the data of an InboxMessageDelivered event for a retryable.

        The payload is nine 32 byte words (destination, l2CallValue, l1Value,
        maxSubmissionFee, excessFeeRefundAddress, callValueRefundAddress,
        gasLimit, maxFeePerGas, dataLength) followed by the raw call data.

        Raises:
            DecodeError: If the payload is too short for its declared layout
        """
        raw = MessageEncoder.to_bytes_safe(payload)
        header_size = _RETRYABLE_HEADER_WORDS * _WORD
        if len(raw) < header_size:
            raise DecodeError(f"Retryable payload too short: {len(raw)} bytes")

        words = decode(["uint256"] * _RETRYABLE_HEADER_WORDS, raw[:header_size])
        data_length = words[8]
        if header_size + data_length > len(raw):
            raise DecodeError(
                f"Retryable payload declares {data_length} data bytes but only "
                f"{len(raw) - header_size} are present"
            )
        call_data = raw[len(raw) - data_length:] if data_length else b""

        return RetryableMessageData(
            destination=MessageEncoder._address_from_word(words[0]),
            l2_call_value=words[1],
            l1_value=words[2],
            max_submission_fee=words[3],
            excess_fee_refund_address=MessageEncoder._address_from_word(words[4]),
            call_value_refund_address=MessageEncoder._address_from_word(words[5]),
            gas_limit=words[6],
            max_fee_per_gas=words[7],
            data=call_data,
        )

    @staticmethod
    def parse_eth_deposit_data(payload: Union[HexBytes, bytes, str]) -> EthDepositData:
        """
        Parse the packed (address, uint256) payload of an ETH deposit.

        Raises:
            DecodeError: If the payload does not hold an address and a value
        """
        raw = MessageEncoder.to_bytes_safe(payload)
        if len(raw) <= 20:
            raise DecodeError(f"Deposit payload too short: {len(raw)} bytes")
        return EthDepositData(
            destination=Web3.to_checksum_address(raw[:20]),
            value=int.from_bytes(raw[20:], "big"),
        )

    @staticmethod
    def calculate_submit_retryable_id(
        l2_chain_id: int,
        sender: str,
        message_number: int,
        l1_base_fee: int,
        message: RetryableMessageData,
    ) -> str:
        """
        Derive the L2 hash of the ticket-creation transaction (type 0x69).

        Args:
            l2_chain_id: Chain id of the rollup
            sender: Sender recorded by the bridge (already aliased)
            message_number: Inbox message number
            l1_base_fee: L1 base fee recorded by the bridge
            message: Parsed retryable payload

        Returns:
            Ticket id as 0x hex string
        """
        fmt = MessageEncoder.format_number
        destination = (
            b"" if message.destination.lower() == ZERO_ADDRESS
            else MessageEncoder.to_bytes_safe(message.destination)
        )
        fields = [
            fmt(l2_chain_id),
            fmt(message_number).rjust(32, b"\0"),
            MessageEncoder.to_bytes_safe(sender),
            fmt(l1_base_fee),
            fmt(message.l1_value),
            fmt(message.max_fee_per_gas),
            fmt(message.gas_limit),
            destination,
            fmt(message.l2_call_value),
            MessageEncoder.to_bytes_safe(message.call_value_refund_address),
            fmt(message.max_submission_fee),
            MessageEncoder.to_bytes_safe(message.excess_fee_refund_address),
            message.data,
        ]
        encoded = bytes([ARB_SUBMIT_RETRYABLE_TX_TYPE]) + rlp.encode(fields)
        return Web3.to_hex(Web3.keccak(encoded))

    @staticmethod
    def calculate_deposit_tx_id(
        l2_chain_id: int,
        message_number: int,
        sender: str,
        deposit: EthDepositData,
    ) -> str:
        """
        Derive the L2 hash of the deposit transaction (type 0x64).

        Returns:
            Deposit transaction hash as 0x hex string
        """
        fmt = MessageEncoder.format_number
        fields = [
            fmt(l2_chain_id),
            fmt(message_number).rjust(32, b"\0"),
            MessageEncoder.to_bytes_safe(Web3.to_checksum_address(sender)),
            MessageEncoder.to_bytes_safe(deposit.destination),
            fmt(deposit.value),
        ]
        encoded = bytes([ARB_DEPOSIT_TX_TYPE]) + rlp.encode(fields)
        return Web3.to_hex(Web3.keccak(encoded))

    @staticmethod
    def confirm_data_hash(l2_block_hash: Union[HexBytes, bytes, str], send_root: Union[HexBytes, bytes, str]) -> str:
        """keccak256(blockHash ++ sendRoot), as stored in a node's confirmData."""
        packed = MessageEncoder.to_bytes_safe(l2_block_hash) + MessageEncoder.to_bytes_safe(send_root)
        return Web3.to_hex(Web3.keccak(packed))

    @staticmethod
    def encode_l2_block_header(raw_block: Mapping[str, Any]) -> bytes:
        """
        RLP encode an Arbitrum L2 block header from a raw JSON-RPC block.

        Arbitrum headers carry the London field set; the send root and L1
        block number live inside extraData and mixHash.

        Args:
            raw_block: Block as returned by eth_getBlockByHash (hex strings)

        Returns:
            RLP encoded header
        """
        to_bytes = MessageEncoder.to_bytes_safe

        def quantity(key: str) -> int:
            return int(raw_block[key], 16)

        header_fields = [
            to_bytes(raw_block["parentHash"]),
            to_bytes(raw_block["sha3Uncles"]),
            to_bytes(raw_block["miner"]),
            to_bytes(raw_block["stateRoot"]),
            to_bytes(raw_block["transactionsRoot"]),
            to_bytes(raw_block["receiptsRoot"]),
            to_bytes(raw_block["logsBloom"]),
            quantity("difficulty"),
            quantity("number"),
            quantity("gasLimit"),
            quantity("gasUsed"),
            quantity("timestamp"),
            to_bytes(raw_block["extraData"]),
            to_bytes(raw_block["mixHash"]),
            to_bytes(raw_block["nonce"]),
        ]
        if raw_block.get("baseFeePerGas") is not None:
            header_fields.append(quantity("baseFeePerGas"))
        return rlp.encode(header_fields)

    @staticmethod
    def compute_l2_block_hash(raw_block: Mapping[str, Any]) -> str:
        """Recompute the hash of a raw L2 block from its header fields."""
        calculated = Web3.keccak(MessageEncoder.encode_l2_block_header(raw_block))
        block_hash = raw_block.get("hash")
        if block_hash is not None and calculated != HexBytes(block_hash):
            logger.debug(
                f"Header hash mismatch. Calculated: {Web3.to_hex(calculated)}, "
                f"Expected: {block_hash}"
            )
        return Web3.to_hex(calculated)
