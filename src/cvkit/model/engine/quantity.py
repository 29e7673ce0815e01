"""
Sparse value + derivative representation.

A Quantity holds a scalar value and an ordered sparse map from global
derivative index to partial derivative. Any single quantity typically depends
on a handful of atoms while the derivative space grows with the total atom
count, so only touched indices are stored. Iteration follows insertion order.
"""

from typing import Dict, ItemsView, Iterable, KeysView, List, Optional, Tuple

import torch

from cvkit.model.engine.errors import DerivativeIndexError


class Quantity:
    """
    Scalar value with sparse derivatives.

    Attributes:
        value: Current value
        nderivatives: Size of the global derivative space this quantity lives in
    """

    __slots__ = ("value", "nderivatives", "_derivatives")

    def __init__(self, nderivatives: int, value: float = 0.0):
        if nderivatives < 0:
            raise DerivativeIndexError(f"Negative derivative space size: {nderivatives}")
        self.value = float(value)
        self.nderivatives = int(nderivatives)
        self._derivatives: Dict[int, float] = {}

    def __repr__(self) -> str:
        return f"Quantity(value={self.value!r}, nactive={len(self._derivatives)}, nderivatives={self.nderivatives})"

    def _check_index(self, idx: int) -> None:
        if idx < 0 or idx >= self.nderivatives:
            raise DerivativeIndexError(
                f"Derivative index {idx} outside declared space [0, {self.nderivatives})"
            )

    def add_value(self, amount: float) -> None:
        self.value += amount

    def set_value(self, value: float) -> None:
        self.value = float(value)

    def add_derivative(self, idx: int, amount: float) -> None:
        """Accumulate ``amount`` into the derivative for ``idx``."""
        self._check_index(idx)
        self._derivatives[idx] = self._derivatives.get(idx, 0.0) + amount

    def get_derivative(self, idx: int) -> float:
        self._check_index(idx)
        return self._derivatives.get(idx, 0.0)

    def active_indices(self) -> KeysView:
        """
        Indices with (potentially) nonzero derivatives.

        The returned view is lazy, finite and can be iterated any number of
        times; order is insertion order.
        """
        return self._derivatives.keys()

    @property
    def nactive(self) -> int:
        return len(self._derivatives)

    def items(self) -> ItemsView:
        return self._derivatives.items()

    def clear(self) -> None:
        self.value = 0.0
        self._derivatives.clear()

    def copy(self) -> "Quantity":
        other = Quantity(self.nderivatives, self.value)
        other._derivatives = dict(self._derivatives)
        return other

    def scaled(self, factor: float) -> "Quantity":
        """Return a new quantity equal to ``factor * self``."""
        other = Quantity(self.nderivatives, factor * self.value)
        other._derivatives = {idx: factor * der for idx, der in self._derivatives.items()}
        return other

    def accumulate(self, other: "Quantity", factor: float = 1.0, offset: int = 0) -> None:
        """
        Add ``factor * other`` to this quantity.

        Derivative indices of ``other`` are shifted by ``offset``, which is how
        an upstream derivative space is embedded in a downstream one.
        """
        self.value += factor * other.value
        for idx, der in other.items():
            self.add_derivative(offset + idx, factor * der)

    def project(self, other: "Quantity") -> float:
        """Dot product of the derivative vectors of two quantities."""
        if len(other._derivatives) < len(self._derivatives):
            small, large = other._derivatives, self._derivatives
        else:
            small, large = self._derivatives, other._derivatives
        return sum(der * large[idx] for idx, der in small.items() if idx in large)

    def to_dense(self, dtype: torch.dtype = torch.float64) -> torch.Tensor:
        dense = torch.zeros(self.nderivatives, dtype=dtype)
        if self._derivatives:
            idx, der = self.as_tensors(dtype)
            dense.index_add_(0, idx, der)
        return dense

    def as_tensors(self, dtype: torch.dtype = torch.float64) -> Tuple[torch.Tensor, torch.Tensor]:
        """Active indices and their derivatives as a pair of 1D tensors."""
        idx = torch.tensor(list(self._derivatives.keys()), dtype=torch.long)
        der = torch.tensor(list(self._derivatives.values()), dtype=dtype)
        return idx, der

    @classmethod
    def from_items(cls, nderivatives: int, value: float, items: Iterable[Tuple[int, float]]) -> "Quantity":
        quantity = cls(nderivatives, value)
        for idx, der in items:
            quantity.add_derivative(idx, der)
        return quantity


def new_quantity(nderivatives: int) -> Quantity:
    """Zero-valued quantity with an empty derivative map."""
    return Quantity(nderivatives)


def add_derivative(quantity: Quantity, idx: int, amount: float) -> None:
    quantity.add_derivative(idx, amount)


def active_indices(quantity: Quantity) -> KeysView:
    return quantity.active_indices()


class TaskRecord:
    """
    Output of one task: the per-task quantities (one per stored stream) and
    the task's weight.

    Args:
        task: Task identifier
        nquantities: Number of per-task quantities
        nderivatives: Derivative space size shared by all quantities
        weight: Weight of the task, defaults to a constant 1 with no derivatives
    """

    __slots__ = ("task", "quantities", "weight", "blocks")

    def __init__(
        self,
        task: int,
        nquantities: int,
        nderivatives: int,
        weight: Optional[Quantity] = None,
    ):
        self.task = task
        self.quantities = [Quantity(nderivatives) for _ in range(nquantities)]
        self.weight = weight if weight is not None else Quantity(nderivatives, 1.0)
        # Buffer block of each quantity when it differs from its position
        self.blocks: Optional[List[int]] = None

    def add_sparse(self, block: int, quantity: Quantity) -> None:
        """Attach a quantity destined for an explicit buffer block."""
        if self.blocks is None:
            self.blocks = list(range(len(self.quantities)))
        self.blocks.append(block)
        self.quantities.append(quantity)

    def __getitem__(self, i: int) -> Quantity:
        return self.quantities[i]

    def __len__(self) -> int:
        return len(self.quantities)
