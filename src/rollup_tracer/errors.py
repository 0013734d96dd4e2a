"""Error taxonomy for the rollup message tracer.

Absence of data (``NotFoundError`` and ``SearchBudgetExceeded``) is an
expected outcome and is converted into structured absence on the result
records. ``DecodeError`` is absorbed at the scan level. Everything else
propagates to the caller of the top-level operation.
"""

from dataclasses import dataclass


class TracerError(Exception):
    """Base class for all tracer errors."""


class NotFoundError(TracerError):
    """A transaction, message, event or node does not exist (yet)."""


@dataclass(eq=False)
class NodeNotFoundError(NotFoundError):
    """A rollup node id was never created or has been pruned."""

    node_id: int

    def __str__(self) -> str:
        return f"Rollup node {self.node_id} not found"


@dataclass(eq=False)
class SearchBudgetExceeded(NotFoundError):
    """A windowed scan spent its block budget without a match."""

    chain: str
    event: str
    from_block: int
    to_block: int
    blocks_scanned: int

    def __str__(self) -> str:
        return (
            f"No {self.event} event on {self.chain} after scanning "
            f"{self.blocks_scanned} blocks ({self.from_block}-{self.to_block})"
        )


@dataclass(eq=False)
class AmbiguousMatchError(TracerError):
    """More than one candidate matched where exactly one was expected."""

    what: str
    candidates: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"Ambiguous match for {self.what}: {len(self.candidates)} candidates"


class DecodeError(TracerError, ValueError):
    """A single log or message payload could not be decoded."""


class TransportError(TracerError):
    """The RPC endpoint returned an error payload."""


class InvalidTransactionHash(ValueError):
    """The supplied value is not a 0x-prefixed 32 byte hash."""


__all__ = [
    "TracerError",
    "NotFoundError",
    "NodeNotFoundError",
    "SearchBudgetExceeded",
    "AmbiguousMatchError",
    "DecodeError",
    "TransportError",
    "InvalidTransactionHash",
]
