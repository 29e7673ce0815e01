"""Tests for the reduction buffer."""

import pytest
import torch

from cvkit.model.engine.buffer import ReductionBuffer
from cvkit.model.engine.errors import BufferConsumedError, BufferSizeError, DerivativeIndexError
from cvkit.model.engine.quantity import Quantity


class TestDeposit:

    def test_value_and_derivatives_land_in_block(self):
        buffer = ReductionBuffer(nblocks=2, nderivatives=3)
        buffer.deposit(1, Quantity.from_items(3, 2.5, [(2, 1.0), (0, -1.0)]))
        raw = buffer.consume()
        assert raw.shape == (2, 4)
        torch.testing.assert_close(raw[0], torch.zeros(4, dtype=torch.float64))
        torch.testing.assert_close(raw[1], torch.tensor([2.5, -1.0, 0.0, 1.0], dtype=torch.float64))

    def test_deposit_is_additive(self):
        buffer = ReductionBuffer(1, 2)
        q = Quantity.from_items(2, 1.0, [(1, 1.0)])
        buffer.deposit(0, q)
        buffer.deposit(0, q, factor=2.0)
        assert buffer.value(0) == 3.0
        torch.testing.assert_close(buffer.derivative_block(0), torch.tensor([0.0, 3.0], dtype=torch.float64))

    def test_without_derivatives_only_values_are_kept(self):
        buffer = ReductionBuffer(2, 10, derivatives=False)
        assert buffer.layout == (2, 1)
        buffer.deposit(0, Quantity.from_items(10, 4.0, [(9, 1.0)]))
        assert buffer.consume().tolist() == [[4.0], [0.0]]

    def test_block_out_of_range(self):
        buffer = ReductionBuffer(2, 1)
        with pytest.raises(BufferSizeError):
            buffer.deposit(2, Quantity(1, 1.0))

    def test_quantity_from_larger_space(self):
        buffer = ReductionBuffer(1, 2)
        with pytest.raises(DerivativeIndexError):
            buffer.deposit(0, Quantity.from_items(5, 1.0, [(4, 1.0)]))


class TestCombineAndConsume:

    def test_combine_sums_elementwise(self):
        a, b = ReductionBuffer(2, 1), ReductionBuffer(2, 1)
        a.deposit(0, Quantity.from_items(1, 1.0, [(0, 2.0)]))
        b.deposit(0, Quantity.from_items(1, 3.0, [(0, 1.0)]))
        b.deposit(1, Quantity(1, 5.0))
        raw = a.combine(b).consume()
        assert raw.tolist() == [[4.0, 3.0], [5.0, 0.0]]

    def test_combine_layout_mismatch(self):
        with pytest.raises(BufferSizeError):
            ReductionBuffer(2, 1).combine(ReductionBuffer(2, 2))

    def test_empty_like_is_zeroed(self):
        a = ReductionBuffer(3, 2)
        a.add_value(1, 1.0)
        b = a.empty_like()
        assert b.layout == a.layout
        assert b.data.abs().sum() == 0

    def test_all_reduce_without_process_group_is_identity(self):
        a = ReductionBuffer(1, 0)
        a.add_value(0, 2.0)
        assert a.all_reduce().value(0) == 2.0

    def test_consumed_once(self):
        buffer = ReductionBuffer(1, 1)
        buffer.consume()
        with pytest.raises(BufferConsumedError):
            buffer.consume()
