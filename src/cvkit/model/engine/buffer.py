"""
Reduction buffer shared by the tasks of one evaluation.

The buffer is a flat float64 tensor split into blocks, one per aggregate
quantity. A block has width ``1 + D``: slot 0 accumulates the value and slot
``1 + i`` the derivative with respect to global index ``i``. When derivatives
are disabled ``D = 0``.
"""

from typing import Tuple

import torch
import torch.distributed as dist

from cvkit.model.engine.errors import (
    BufferConsumedError,
    BufferSizeError,
    DerivativeIndexError,
)
from cvkit.model.engine.quantity import Quantity


class ReductionBuffer:
    """
    Additive accumulator for per-task contributions.

    Args:
        nblocks: Number of aggregate quantities tracked
        nderivatives: Size of the derivative space of each aggregate
        derivatives: If False, only values are accumulated
    """

    def __init__(self, nblocks: int, nderivatives: int, derivatives: bool = True):
        self.nblocks = int(nblocks)
        self.nderivatives = int(nderivatives) if derivatives else 0
        self.width = 1 + self.nderivatives
        self.data = torch.zeros(self.nblocks * self.width, dtype=torch.float64)
        self._consumed = False

    @property
    def derivatives(self) -> bool:
        return self.nderivatives > 0

    @property
    def layout(self) -> Tuple[int, int]:
        return self.nblocks, self.width

    def empty_like(self) -> "ReductionBuffer":
        """Zeroed buffer with the same layout (per-worker partial)."""
        return ReductionBuffer(self.nblocks, self.nderivatives, derivatives=self.derivatives)

    def offset(self, block: int) -> int:
        if block < 0 or block >= self.nblocks:
            raise BufferSizeError(f"Block {block} outside buffer with {self.nblocks} blocks")
        return block * self.width

    def add_value(self, block: int, value: float) -> None:
        self.data[self.offset(block)] += value

    def deposit(self, block: int, quantity: Quantity, factor: float = 1.0) -> None:
        """
        Add ``factor * quantity`` to ``block``.

        The value goes to slot 0 and each active derivative ``d`` to slot
        ``1 + d``. Derivatives are skipped when the buffer does not track them.
        """
        start = self.offset(block)
        self.data[start] += factor * quantity.value
        if not self.derivatives or quantity.nactive == 0:
            return
        if quantity.nderivatives > self.nderivatives:
            raise DerivativeIndexError(
                f"Quantity with {quantity.nderivatives} derivatives deposited into "
                f"buffer with {self.nderivatives} derivative slots"
            )
        idx, der = quantity.as_tensors(self.data.dtype)
        self.data.index_add_(0, start + 1 + idx, factor * der)

    def combine(self, other: "ReductionBuffer") -> "ReductionBuffer":
        """Elementwise sum of ``other`` into this buffer."""
        if self.layout != other.layout:
            raise BufferSizeError(
                f"Cannot combine buffers with layouts {self.layout} and {other.layout}"
            )
        self.data += other.data
        return self

    def all_reduce(self) -> "ReductionBuffer":
        """Sum the buffer across ranks when a process group is running."""
        if dist.is_available() and dist.is_initialized():
            dist.all_reduce(self.data, op=dist.ReduceOp.SUM)
        return self

    def value(self, block: int) -> float:
        return float(self.data[self.offset(block)])

    def derivative_block(self, block: int) -> torch.Tensor:
        start = self.offset(block)
        return self.data[start + 1:start + self.width]

    def consume(self) -> torch.Tensor:
        """
        Hand the raw sums to finalization.

        A buffer is read exactly once; it is discarded afterwards.
        """
        if self._consumed:
            raise BufferConsumedError("Reduction buffer was already finalized")
        self._consumed = True
        return self.data.view(self.nblocks, self.width)
