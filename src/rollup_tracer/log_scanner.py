"""
Windowed log scanner.

Bounded, chunked, directional event search over one chain. Public RPC
endpoints cap the block range of eth_getLogs, so every search is split into
fixed-size chunks and stops once a block budget has been spent.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, Sequence

from web3 import Web3

from .chain import ChainRef
from .errors import DecodeError, NotFoundError, SearchBudgetExceeded
from .models import DecodedEvent
from .utils.contract_utility import ContractUtility, same_value, to_hex

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_MAX_BLOCKS = 10_000


class ScanDirection(str, Enum):
    """Order in which a window is walked."""
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass(frozen=True, slots=True)
class BlockWindow:
    """A block range plus the chunking and budget used to scan it.

    Attributes:
        from_block: Lowest block of the window (inclusive)
        to_block: Highest block of the window (inclusive)
        chunk_size: Blocks per eth_getLogs query
        max_blocks: Total blocks scanned across all chunks
        direction: FORWARD starts at from_block, BACKWARD at to_block
    """
    from_block: int
    to_block: int
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_blocks: int = DEFAULT_MAX_BLOCKS
    direction: ScanDirection = ScanDirection.FORWARD

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.max_blocks <= 0:
            raise ValueError(f"Block budget must be positive, got {self.max_blocks}")

    @classmethod
    def forward_from(
        cls,
        from_block: int,
        to_block: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_blocks: int = DEFAULT_MAX_BLOCKS,
    ) -> "BlockWindow":
        return cls(max(0, from_block), to_block, chunk_size, max_blocks, ScanDirection.FORWARD)

    @classmethod
    def backward_from(
        cls,
        to_block: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_blocks: int = DEFAULT_MAX_BLOCKS,
        from_block: int = 0,
    ) -> "BlockWindow":
        return cls(max(0, from_block), to_block, chunk_size, max_blocks, ScanDirection.BACKWARD)

    @property
    def is_empty(self) -> bool:
        return self.from_block > self.to_block

    def bounds(self) -> tuple[int, int]:
        """Part of the window reachable within the block budget."""
        if self.direction is ScanDirection.FORWARD:
            return self.from_block, min(self.to_block, self.from_block + self.max_blocks - 1)
        return max(self.from_block, self.to_block - self.max_blocks + 1), self.to_block

    @property
    def budget_limited(self) -> bool:
        """True when the budget cuts the window short."""
        if self.is_empty:
            return False
        low, high = self.bounds()
        return (high - low + 1) < (self.to_block - self.from_block + 1)

    @property
    def blocks_in_budget(self) -> int:
        if self.is_empty:
            return 0
        low, high = self.bounds()
        return high - low + 1

    def chunks(self) -> Iterator[tuple[int, int]]:
        """
        Yield inclusive, non-overlapping (from, to) ranges in scan order.

        Produces at most ceil(max_blocks / chunk_size) ranges.
        """
        if self.is_empty:
            return
        low, high = self.bounds()
        if self.direction is ScanDirection.FORWARD:
            start = low
            while start <= high:
                end = min(start + self.chunk_size - 1, high)
                yield start, end
                start = end + 1
        else:
            end = high
            while end >= low:
                start = max(end - self.chunk_size + 1, low)
                yield start, end
                end = start - 1


@dataclass(frozen=True, slots=True)
class EventCriteria:
    """Filter for one event of one contract.

    Attributes:
        contract: Contract ABI name
        event: Event name
        address: Emitting address (or addresses); None matches any emitter
        indexed: Equality constraints on indexed parameters (sent to the node)
        where: Equality constraints on decoded non-indexed arguments
    """
    contract: str
    event: str
    address: str | tuple[str, ...] | None = None
    indexed: tuple[tuple[str, Any], ...] = field(default_factory=tuple)
    where: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept mappings and lists, store immutable tuples
        if isinstance(self.indexed, Mapping):
            object.__setattr__(self, "indexed", tuple(self.indexed.items()))
        if isinstance(self.where, Mapping):
            object.__setattr__(self, "where", tuple(self.where.items()))
        if isinstance(self.address, str):
            object.__setattr__(self, "address", (Web3.to_checksum_address(self.address),))
        elif self.address is not None:
            object.__setattr__(self, "address", tuple(Web3.to_checksum_address(a) for a in self.address))

    @property
    def label(self) -> str:
        return f"{self.contract}.{self.event}"

    def emitted_by(self, address: str) -> bool:
        if self.address is None:
            return True
        return to_hex(address) in {to_hex(a) for a in self.address}

    def accepts(self, event: DecodedEvent) -> bool:
        """Check the non-indexed argument constraints."""
        return all(same_value(event.args.get(name), value) for name, value in self.where)


class WindowedLogScanner:
    """
    Chunked eth_getLogs search over a single chain.

    Several criteria can be scanned in one pass; their addresses are merged and
    their topic0 values OR-ed so each chunk is a single query.
    """

    def __init__(self, chain: ChainRef, contract_util: ContractUtility | None = None):
        self.chain = chain
        self.contract_util = contract_util or ContractUtility()

    @staticmethod
    def _as_list(criteria: EventCriteria | Sequence[EventCriteria]) -> list[EventCriteria]:
        if isinstance(criteria, EventCriteria):
            return [criteria]
        items = list(criteria)
        if not items:
            raise ValueError("At least one event criteria is required")
        return items

    def build_filter(
        self,
        criteria: EventCriteria | Sequence[EventCriteria],
        from_block: int,
        to_block: int,
    ) -> dict[str, Any]:
        """
        Build eth_getLogs filter parameters.

        Raises:
            ValueError: If indexed constraints are combined with several criteria
        """
        items = self._as_list(criteria)
        params: dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block}

        if all(c.address is not None for c in items):
            addresses = sorted({a for c in items for a in c.address})
            params["address"] = addresses[0] if len(addresses) == 1 else addresses

        topic0s = [self.contract_util.event_topic(c.contract, c.event) for c in items]
        if len(items) == 1:
            single = items[0]
            topics: list[Any] = [topic0s[0]]
            for name, value in single.indexed:
                position = self.contract_util.indexed_position(single.contract, single.event, name)
                while len(topics) <= position:
                    topics.append(None)
                topics[position] = self.contract_util.encode_topic(single.contract, single.event, name, value)
            params["topics"] = topics
        else:
            if any(c.indexed for c in items):
                raise ValueError("Indexed constraints are only supported for a single event criteria")
            params["topics"] = [sorted(set(topic0s))]
        return params

    def _decode(self, items: list[EventCriteria], logs: Sequence[Any]) -> list[DecodedEvent]:
        topics = {
            to_hex(self.contract_util.event_topic(c.contract, c.event)): c for c in items
        }
        events = []
        for log in logs:
            if not log["topics"]:
                continue
            criteria = topics.get(to_hex(log["topics"][0]))
            if criteria is None or not criteria.emitted_by(log["address"]):
                continue
            try:
                event = self.contract_util.decode_log(criteria.contract, criteria.event, log)
            except DecodeError as e:
                logger.debug(f"Skipping undecodable {criteria.label} log on {self.chain.name}: {e}")
                continue
            if criteria.accepts(event):
                events.append(event)
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    async def fetch(
        self,
        criteria: EventCriteria | Sequence[EventCriteria],
        from_block: int,
        to_block: int,
    ) -> list[DecodedEvent]:
        """Single-shot, non-windowed query over [from_block, to_block]."""
        items = self._as_list(criteria)
        if from_block > to_block:
            return []
        logs = await self.chain.get_logs(self.build_filter(items, from_block, to_block))
        return self._decode(items, logs)

    async def chunks_of(
        self,
        window: BlockWindow,
        criteria: EventCriteria | Sequence[EventCriteria],
    ) -> AsyncIterator[tuple[tuple[int, int], list[DecodedEvent]]]:
        """Yield (range, events) per chunk; the next chunk is only queried on demand."""
        items = self._as_list(criteria)
        labels = ", ".join(c.label for c in items)
        for start, end in window.chunks():
            logger.debug(f"Scanning {self.chain.name} blocks {start}-{end} for {labels}")
            yield (start, end), await self.fetch(items, start, end)

    async def scan(
        self,
        window: BlockWindow,
        criteria: EventCriteria | Sequence[EventCriteria],
    ) -> AsyncIterator[DecodedEvent]:
        """
        Iterate decoded events of a window in scan order.

        Within a chunk events come in ascending (block, log index) order. The
        iterator is finite and not restartable; each call starts a new scan.
        """
        async for _, events in self.chunks_of(window, criteria):
            for event in events:
                yield event

    async def find_first_chunk(
        self,
        window: BlockWindow,
        criteria: EventCriteria | Sequence[EventCriteria],
        predicate: Callable[[DecodedEvent], bool] | None = None,
    ) -> list[DecodedEvent]:
        """
        Return every accepted event of the first chunk that has any.

        Raises:
            SearchBudgetExceeded: If the budget ran out before a match
            NotFoundError: If the whole window was scanned without a match
        """
        async for _, events in self.chunks_of(window, criteria):
            matches = [e for e in events if predicate is None or predicate(e)]
            if matches:
                return matches

        labels = ", ".join(c.label for c in self._as_list(criteria))
        if window.budget_limited:
            low, high = window.bounds()
            raise SearchBudgetExceeded(
                chain=self.chain.name,
                event=labels,
                from_block=low,
                to_block=high,
                blocks_scanned=window.blocks_in_budget,
            )
        raise NotFoundError(
            f"No {labels} event on {self.chain.name} in blocks {window.from_block}-{window.to_block}"
        )

    async def find_first(
        self,
        window: BlockWindow,
        criteria: EventCriteria | Sequence[EventCriteria],
        predicate: Callable[[DecodedEvent], bool] | None = None,
    ) -> DecodedEvent:
        """First accepted event in scan order; see find_first_chunk for errors."""
        matches = await self.find_first_chunk(window, criteria, predicate)
        return matches[0]
