#!/usr/bin/env python3
"""Tests for sequencer batch lookup."""

import pytest
from web3.exceptions import ContractLogicError

from conftest import h
from rollup_tracer.batch_locator import BatchLocator
from rollup_tracer.errors import InvalidTransactionHash, NotFoundError


@pytest.fixture
def locator(l1, l2, contracts):
    return BatchLocator(l1, l2, contracts)


@pytest.fixture
def batched(l1, l2, contracts, logs):
    """L2 transaction in block 3000, posted in batch 77 at L1 block 9000."""
    receipt = l2.add_receipt(h("l2-tx"), 3000, [])
    l2.calls["findBatchContainingBlock"] = lambda block: 77
    l2.calls["getL1Confirmations"] = lambda block_hash: 120
    l1.logs.append(logs.batch_delivered(contracts, 76, 8700, h("batch-76")))
    l1.logs.append(logs.batch_delivered(contracts, 77, 9000, h("batch-77")))
    return receipt


class TestBatchLocator:
    """Tests for BatchLocator."""

    @pytest.mark.asyncio
    async def test_malformed_hash_is_rejected_before_querying(self, locator, batched, l1, l2):
        """Test a short hash raises without touching either chain."""
        with pytest.raises(InvalidTransactionHash):
            await locator.find_batch("0x1234")

        assert l2.call_log == []
        assert l1.log_queries == []

    @pytest.mark.asyncio
    async def test_find_batch(self, locator, batched, l2):
        """Test the batch, its L1 transaction and the confirmations are reported."""
        info = await locator.find_batch(h("l2-tx"))

        assert info.batch_number == 77
        assert info.l2_block_number == 3000
        assert info.l1_tx_hash == h("batch-77")
        assert info.l1_block_number == 9000
        assert info.confirmations == 120
        assert ("findBatchContainingBlock", (3000,)) in l2.call_log

    @pytest.mark.asyncio
    async def test_batch_event_uses_indexed_number(self, locator, batched, l1):
        """Test the batch event query filters on the batch number topic."""
        await locator.find_batch_event(77)

        assert l1.log_queries[-1]["topics"][1] == "0x" + (77).to_bytes(32, "big").hex()

    @pytest.mark.asyncio
    async def test_anchor_block(self, locator, batched):
        """Test the L1 anchor of an L2 block is its batch delivery block."""
        assert await locator.l1_anchor_block(3000) == 9000

    @pytest.mark.asyncio
    async def test_unbatched_block(self, locator, batched, l2):
        """Test a block not posted yet gives a partial result."""
        def not_batched(block):
            raise ContractLogicError("execution reverted: requested block is after latest on-chain block")

        l2.calls["findBatchContainingBlock"] = not_batched

        info = await locator.find_batch(h("l2-tx"))

        assert info.l2_block_number == 3000
        assert info.batch_number is None
        assert info.confirmations == 0

    @pytest.mark.asyncio
    async def test_batch_event_missing(self, locator, batched, l2):
        """Test a batch number without a delivery event raises NotFoundError."""
        l2.calls["findBatchContainingBlock"] = lambda block: 78

        with pytest.raises(NotFoundError):
            await locator.l1_anchor_block(3000)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, locator):
        """Test an unknown hash yields only the hash."""
        info = await locator.find_batch(h("missing"))

        assert info.l2_tx_hash == h("missing")
        assert info.l2_block_number is None
