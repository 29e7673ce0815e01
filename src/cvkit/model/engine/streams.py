"""
Task-indexed argument streams and force accumulation.

An ArgumentStream is what one action hands to another: one Quantity per task,
whose derivatives live in the producer's derivative space. Streams supplied by
the host are leaves; element ``t`` of a leaf has derivative ``{t: 1}`` in a
space of size ``len(stream)``, so forces reaching a leaf are forces on the
host's numbers.
"""

from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

import torch

from cvkit.data.const import ATOM_DERIVATIVES
from cvkit.model.engine.errors import (
    BufferSizeError,
    ConfigurationError,
    InternalConsistencyError,
)
from cvkit.model.engine.quantity import Quantity

if TYPE_CHECKING:
    from cvkit.model.colvars.base import Action


class ForceAccumulator:
    """
    Collects back-propagated forces.

    Attributes:
        atoms: [N_atoms, 3] forces on the host atoms
        virial: [3, 3] force on the box
        arguments: Forces on the elements of leaf streams, keyed by stream name
    """

    def __init__(self, natoms: int):
        self.atoms = torch.zeros(natoms, 3, dtype=torch.float64)
        self.virial = torch.zeros(3, 3, dtype=torch.float64)
        self.arguments: Dict[str, torch.Tensor] = {}

    def add_atom_forces(self, indices: Sequence[int], forces: torch.Tensor) -> None:
        index = torch.as_tensor(list(indices), dtype=torch.long)
        self.atoms.index_add_(0, index, forces.reshape(-1, ATOM_DERIVATIVES))

    def add_virial(self, forces: torch.Tensor) -> None:
        self.virial += forces.reshape(3, 3)

    def add_argument_forces(self, name: str, forces: torch.Tensor) -> None:
        if name in self.arguments:
            self.arguments[name] = self.arguments[name] + forces
        else:
            self.arguments[name] = forces.clone()


class ArgumentStream:
    """
    Per-task values (with derivatives) produced by an action or by the host.

    Args:
        name: Stream name, ``label`` or ``label.component``
        ntasks: Number of elements
        nderivatives: Size of the derivative space of each element
        producer: Action producing the stream, None for host data
        component: Index of this stream among the producer's per-task quantities
    """

    def __init__(
        self,
        name: str,
        ntasks: int,
        nderivatives: int,
        producer: Optional["Action"] = None,
        component: int = 0,
    ):
        self.name = name
        self.ntasks = ntasks
        self.nderivatives = nderivatives
        self.producer = producer
        self.component = component
        self._quantities: Optional[List[Quantity]] = None

    @classmethod
    def from_values(cls, name: str, values: Sequence[float]) -> "ArgumentStream":
        values = [float(v) for v in values]
        stream = cls(name, len(values), len(values))
        stream.set_quantities(
            [Quantity.from_items(len(values), v, [(t, 1.0)]) for t, v in enumerate(values)]
        )
        return stream

    def __repr__(self) -> str:
        return f"ArgumentStream({self.name!r}, ntasks={self.ntasks}, nderivatives={self.nderivatives})"

    def __len__(self) -> int:
        return self.ntasks

    @property
    def is_leaf(self) -> bool:
        return self.producer is None

    @property
    def evaluated(self) -> bool:
        return self._quantities is not None

    def set_quantities(self, quantities: List[Quantity]) -> None:
        if len(quantities) != self.ntasks:
            raise BufferSizeError(
                f"Stream '{self.name}' expects {self.ntasks} elements, got {len(quantities)}"
            )
        self._quantities = quantities

    def __getitem__(self, task: int) -> Quantity:
        if self._quantities is None:
            raise InternalConsistencyError(f"Stream '{self.name}' read before it was evaluated")
        return self._quantities[task]

    @property
    def values(self) -> torch.Tensor:
        return torch.tensor([self[t].value for t in range(self.ntasks)], dtype=torch.float64)

    def derivatives(self) -> torch.Tensor:
        """Dense [ntasks, nderivatives] derivative matrix."""
        return torch.stack([self[t].to_dense() for t in range(self.ntasks)])

    def apply_forces(self, slot_forces: torch.Tensor, accumulator: ForceAccumulator) -> None:
        """Forward forces expressed in this stream's derivative space."""
        if slot_forces.shape[0] != self.nderivatives:
            raise BufferSizeError(
                f"Stream '{self.name}' got {slot_forces.shape[0]} slot forces, "
                f"expected {self.nderivatives}"
            )
        if self.is_leaf:
            accumulator.add_argument_forces(self.name, slot_forces)
        else:
            self.producer.apply_slot_forces(slot_forces, accumulator)


def resolve_stream(name: str, streams: Dict[str, ArgumentStream]) -> ArgumentStream:
    if name not in streams:
        available = ", ".join(sorted(streams)) or "none"
        raise ConfigurationError(f"Cannot find stream named {name} (available streams: {available})")
    return streams[name]
