"""
Human-readable rendering of tracer results.

Every helper writes through the module logger so output honours the
configured log level and format.
"""

import dataclasses
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from web3 import Web3

from .models import BatchInfo, BlockConfirmationReport, MessageSearchResult, NodeVerification, RollupNode
from .utils.contract_utility import to_hex

logger = logging.getLogger(__name__)

_RECEIPT_FIELDS = {"creation_receipt", "redeem_receipt", "deposit_receipt", "outbox_execution_receipt"}


def _format_value(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value) if value else "0x"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _format_record(record: Any, skip: set[str] = frozenset()) -> str:
    lines = []
    for f in dataclasses.fields(record):
        if f.name in skip:
            continue
        lines.append(f"  {f.name}: {_format_value(getattr(record, f.name))}")
    return "\n".join(lines)


def log_section(title: str, contents: Any) -> None:
    """Log a titled block; receipts and web3 objects are rendered as JSON."""
    if contents is None:
        return
    if dataclasses.is_dataclass(contents):
        body = _format_record(contents, _RECEIPT_FIELDS)
    elif isinstance(contents, (str, int)):
        body = str(contents)
    else:
        body = Web3.to_json(contents)

    logger.info("*" * 26)
    logger.info(f"** {title}")
    logger.info("*" * 26)
    for line in body.splitlines():
        logger.info(line)


def log_search_result(result: MessageSearchResult) -> None:
    """Log every populated part of a message search result."""
    if result.found_on is None:
        logger.info(f"Transaction with hash {result.tx_hash} was NOT found on L1 or L2")
    else:
        logger.info(f"Transaction with hash {result.tx_hash} found on {result.found_on.value}")

    log_section("L1 transaction receipt", result.l1_receipt)
    for message in result.messages:
        log_section(type(message).__name__, message)
    log_section("Retryable ticket id", result.retryable_ticket_id)
    log_section("Retryable transaction receipt", result.retryable_receipt)
    if result.redeem_event is not None:
        log_section("Redeem event", dict(result.redeem_event.args))
    log_section("L2 transaction receipt", result.l2_receipt)
    if result.outbox_event is not None:
        log_section("Outbox execution event", dict(result.outbox_event.args))
    if result.pending_node_id is not None:
        log_section("Pending node", result.pending_node_id)
    if result.estimated_confirmation is not None:
        log_section("Estimated confirmation", result.estimated_confirmation.isoformat())

    logger.info(f"Status: {result.status.value}")
    if result.search_budget_exceeded:
        logger.warning("Search budget exhausted; the result may be incomplete")
    for note in result.notes:
        logger.info(f"Note: {note}")


def log_batch(info: BatchInfo) -> None:
    if info.l1_tx_hash is None:
        logger.info(f"Txn {info.l2_tx_hash} has not been included in L1 yet")
    elif info.confirmations <= 0:
        logger.info(
            f"Txn {info.l2_tx_hash} has been included in an L1 batch in txn {info.l1_tx_hash} "
            "but it has not been confirmed yet"
        )
    else:
        logger.info(
            f"Txn {info.l2_tx_hash} was included in an L1 batch in txn {info.l1_tx_hash} "
            f"which has {info.confirmations} confirmations"
        )
    log_section("Batch", info)


def log_block_report(report: BlockConfirmationReport) -> None:
    if report.note:
        logger.warning(report.note)
    elif report.node is None:
        logger.info(f"L2 block {report.l2_block_number} has not been included in a node yet")
    elif report.confirmed:
        finality = report.finality.name if report.finality is not None else "unknown"
        logger.info(
            f"L2 block {report.l2_block_number} is in node {report.node.id}, confirmed at "
            f"L1 block {report.confirmation_l1_block} ({finality})"
        )
    else:
        logger.info(
            f"L2 block {report.l2_block_number} is in node {report.node.id}, not confirmed yet "
            f"(latest confirmed node {report.latest_confirmed_node_id})"
        )
    if report.node is not None:
        log_section("Node", report.node)
    log_section("Report", dataclasses.replace(report, node=None))


def log_node(node: RollupNode, verification: NodeVerification) -> None:
    log_section(f"Node {node.id}", node)
    log_section("Verification", verification)
    if not (verification.confirm_data_matches and verification.block_hash_matches):
        logger.warning(f"Node {node.id} after state could not be fully verified")
