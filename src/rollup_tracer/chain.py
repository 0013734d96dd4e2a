"""
Chain data port.

``ChainRef`` wraps one synchronous web3 HTTP provider behind coroutines so the
tracer can run independent queries concurrently. Blocking calls are pushed to
worker threads with ``asyncio.to_thread``.
"""

import asyncio
import logging
from typing import Any, Sequence

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .errors import NotFoundError, TransportError

logger = logging.getLogger(__name__)


class ChainRef:
    """
    Handle to one chain endpoint.

    Instances are created once per process and passed explicitly to every
    component that needs chain data.
    """

    def __init__(self, name: str, w3: Web3, chain_id: int):
        """
        Initialize the chain handle.

        Args:
            name: Label used in logs and diagnostics ("L1" or "L2")
            w3: Connected Web3 instance
            chain_id: Chain id reported by the endpoint
        """
        self.name = name
        self.w3 = w3
        self.chain_id = chain_id

    def __repr__(self) -> str:
        return f"ChainRef(name={self.name!r}, chain_id={self.chain_id})"

    @classmethod
    async def from_rpc_url(cls, name: str, rpc_url: str, request_timeout: int = 30) -> "ChainRef":
        """
        Connect to an HTTP RPC endpoint and read its chain id.

        Args:
            name: Label of the chain
            rpc_url: HTTP(S) endpoint
            request_timeout: Timeout of each HTTP request in seconds

        Returns:
            Connected ChainRef
        """
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        chain_id = await asyncio.to_thread(lambda: w3.eth.chain_id)
        logger.info(f"Connected to {name} (chain id {chain_id})")
        return cls(name, w3, chain_id)

    async def block_number(self) -> int:
        """Current head block number."""
        return await asyncio.to_thread(lambda: self.w3.eth.block_number)

    async def get_block(self, block_id: int | str) -> Any:
        """Block by number, hash or tag, without full transactions."""
        return await asyncio.to_thread(self.w3.eth.get_block, block_id)

    async def get_raw_block(self, block_id: int | str) -> dict[str, Any]:
        """
        Fetch a block as the raw JSON-RPC object.

        The raw payload keeps the Arbitrum-specific fields (``sendCount``,
        ``l1BlockNumber``, ``sendRoot``) that web3's formatters drop.

        Args:
            block_id: Block number or 0x block hash

        Returns:
            Raw block dictionary with hex string values

        Raises:
            NotFoundError: If the endpoint has no such block
            TransportError: If the endpoint returned an error payload
        """
        if isinstance(block_id, int):
            method, params = "eth_getBlockByNumber", [hex(block_id), False]
        else:
            method, params = "eth_getBlockByHash", [Web3.to_hex(HexBytes(block_id)), False]

        response = await asyncio.to_thread(self.w3.provider.make_request, method, params)
        if response.get("error"):
            raise TransportError(f"{self.name} {method} failed: {response['error']}")
        block = response.get("result")
        if block is None:
            raise NotFoundError(f"Block {block_id} not found on {self.name}")
        return dict(block)

    async def get_transaction(self, tx_hash: str) -> Any | None:
        """Transaction by hash, or None when the endpoint does not know it."""
        try:
            return await asyncio.to_thread(self.w3.eth.get_transaction, tx_hash)
        except TransactionNotFound:
            return None

    async def get_transaction_receipt(self, tx_hash: str) -> Any | None:
        """Transaction receipt by hash, or None when not (yet) mined."""
        try:
            return await asyncio.to_thread(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None

    async def get_logs(self, filter_params: dict[str, Any]) -> list[Any]:
        """Run a single eth_getLogs query."""
        return list(await asyncio.to_thread(self.w3.eth.get_logs, filter_params))

    async def call(self, address: str, abi: Sequence[dict[str, Any]], function: str, *args: Any) -> Any:
        """
        Call a view function.

        Reverts surface as web3's ``ContractLogicError`` so callers can treat
        them as data (e.g. an expired retryable ticket).
        """
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=list(abi))
        fn = getattr(contract.functions, function)(*args)
        return await asyncio.to_thread(fn.call)
