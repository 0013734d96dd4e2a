"""
Rollup message tracer package.

Traces cross-chain messages of an Arbitrum Nitro rollup from a single
transaction hash using two JSON-RPC endpoints.
"""

from .config import TracerConfig
from .message_classifier import MessageClassifier
from .models import MessageSearchResult, MessageStatus
from .rollup_state import RollupStateReader
from .tracer import RollupTracer

__all__ = ["TracerConfig", "RollupTracer", "MessageClassifier", "RollupStateReader", "MessageSearchResult", "MessageStatus"]
__version__ = "0.1.0"
