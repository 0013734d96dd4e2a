import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping

from eth_abi import decode, encode
from eth_utils import collapse_if_tuple, event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3

from ..errors import DecodeError, InvalidTransactionHash
from ..models import DecodedEvent

logger = logging.getLogger(__name__)

CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@lru_cache(maxsize=None)
def _load_abi(contract_name: str) -> tuple[dict[str, Any], ...]:
    contract_path = (CONTRACTS_DIR / f"{contract_name}.json").resolve()
    with contract_path.open() as file:
        contract_data = json.load(file)
    return tuple(contract_data["abi"])


def to_hex(value: Any) -> str:
    """Normalize bytes, HexBytes or hex strings to a lowercase 0x string."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(HexBytes(value))


def validate_tx_hash(tx_hash: Any) -> str:
    """
    Check and normalize a transaction hash.

    Raises:
        InvalidTransactionHash: If the value is not a 0x-prefixed 32 byte hex string
    """
    if not isinstance(tx_hash, str) or not _TX_HASH_RE.match(tx_hash):
        raise InvalidTransactionHash(f"Invalid transaction hash: {tx_hash!r}")
    return tx_hash.lower()


def same_value(left: Any, right: Any) -> bool:
    """Compare decoded ABI values, ignoring address case and hex encoding."""
    if isinstance(left, (bytes, str)) and isinstance(right, (bytes, str)):
        return to_hex(left) == to_hex(right)
    return left == right


class ContractUtility:
    """
    Utility for ABI loading and log decoding.

    ABIs are read from the bundled contracts folder. Only the events and
    view functions used by the tracer are described there.
    """

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the contracts folder"""
        return list(_load_abi(contract_name))

    def get_event_abi(self, contract_name: str, event_name: str) -> dict[str, Any]:
        for item in _load_abi(contract_name):
            if item.get("type") == "event" and item.get("name") == event_name:
                return item
        raise ValueError(f"Event {event_name} not found in {contract_name} ABI")

    def event_topic(self, contract_name: str, event_name: str) -> str:
        """Return the topic0 of an event as a 0x hex string."""
        return to_hex(event_abi_to_log_topic(self.get_event_abi(contract_name, event_name)))

    def encode_topic(self, contract_name: str, event_name: str, arg_name: str, value: Any) -> str:
        """
        Encode the value of an indexed event parameter as a 32 byte topic.

        Args:
            contract_name: Contract ABI name
            event_name: Event name
            arg_name: Name of the indexed parameter
            value: Value to encode (address, integer or bytes32)

        Returns:
            Topic as 0x hex string
        """
        event_abi = self.get_event_abi(contract_name, event_name)
        for abi_input in event_abi["inputs"]:
            if abi_input["name"] == arg_name:
                if not abi_input.get("indexed"):
                    raise ValueError(f"{event_name}.{arg_name} is not indexed")
                abi_type = collapse_if_tuple(abi_input)
                return to_hex(encode([abi_type], [self._normalize_input(abi_type, value)]))
        raise ValueError(f"{event_name} has no parameter named {arg_name}")

    def indexed_position(self, contract_name: str, event_name: str, arg_name: str) -> int:
        """Topic position (1-based) of an indexed event parameter."""
        event_abi = self.get_event_abi(contract_name, event_name)
        indexed = [i["name"] for i in event_abi["inputs"] if i.get("indexed")]
        if arg_name not in indexed:
            raise ValueError(f"{event_name}.{arg_name} is not indexed")
        return indexed.index(arg_name) + 1

    def decode_log(self, contract_name: str, event_name: str, log: Mapping[str, Any]) -> DecodedEvent:
        """
        Decode a raw log against an event ABI.

        Raises:
            DecodeError: If topics or data do not match the event layout
        """
        event_abi = self.get_event_abi(contract_name, event_name)
        try:
            topics = [HexBytes(topic) for topic in log["topics"]]
            if not topics or topics[0] != HexBytes(event_abi_to_log_topic(event_abi)):
                raise DecodeError(f"Log is not a {event_name} event")

            indexed_inputs = [i for i in event_abi["inputs"] if i.get("indexed")]
            data_inputs = [i for i in event_abi["inputs"] if not i.get("indexed")]
            if len(topics) != len(indexed_inputs) + 1:
                raise DecodeError(
                    f"{event_name} expects {len(indexed_inputs)} indexed topics, got {len(topics) - 1}"
                )

            args: dict[str, Any] = {}
            for abi_input, topic in zip(indexed_inputs, topics[1:]):
                (value,) = decode([collapse_if_tuple(abi_input)], bytes(topic))
                args[abi_input["name"]] = self._name_value(abi_input, value)

            data_values = decode([collapse_if_tuple(i) for i in data_inputs], bytes(HexBytes(log["data"])))
            for abi_input, value in zip(data_inputs, data_values):
                args[abi_input["name"]] = self._name_value(abi_input, value)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"Could not decode {event_name} log: {e}") from e

        block_hash = log.get("blockHash")
        return DecodedEvent(
            contract=contract_name,
            event=event_name,
            args=args,
            address=Web3.to_checksum_address(log["address"]),
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex", 0)),
            transaction_hash=to_hex(log["transactionHash"]),
            block_hash=to_hex(block_hash) if block_hash is not None else None,
        )

    def decode_logs(
        self,
        logs: Iterable[Mapping[str, Any]],
        contract_name: str,
        event_name: str,
        address: str | None = None,
    ) -> list[DecodedEvent]:
        """
        Decode every log of a receipt (or log list) that matches an event.

        Logs from other contracts or with another topic0 are ignored; logs
        that match but fail to decode are skipped.
        """
        topic0 = HexBytes(self.event_topic(contract_name, event_name))
        events = []
        for log in logs:
            if address and to_hex(log["address"]) != to_hex(address):
                continue
            if not log["topics"] or HexBytes(log["topics"][0]) != topic0:
                continue
            try:
                events.append(self.decode_log(contract_name, event_name, log))
            except DecodeError as e:
                logger.debug(f"Skipping undecodable {event_name} log: {e}")
        return events

    @staticmethod
    def _normalize_input(abi_type: str, value: Any) -> Any:
        if abi_type == "address":
            return Web3.to_checksum_address(value)
        if abi_type.startswith("bytes") and abi_type != "bytes":
            return bytes(HexBytes(value))
        if abi_type.startswith(("uint", "int")):
            return int(value)
        return value

    @classmethod
    def _name_value(cls, abi_input: Mapping[str, Any], value: Any) -> Any:
        """Turn decoded tuples into dicts keyed by component names."""
        abi_type = abi_input["type"]
        if abi_type == "tuple":
            return {
                component["name"]: cls._name_value(component, item)
                for component, item in zip(abi_input["components"], value)
            }
        if abi_type.startswith("tuple["):
            element = dict(abi_input, type="tuple")
            return [cls._name_value(element, item) for item in value]
        if abi_type == "address":
            return Web3.to_checksum_address(value)
        return value
