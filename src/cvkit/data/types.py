"""Host-supplied atomic state."""

from dataclasses import dataclass, field
from typing import List, Optional

import torch

from cvkit.model.engine.errors import ConfigurationError


def _as_tensor(value, name: str, shape_tail: tuple = ()) -> torch.Tensor:
    tensor = torch.as_tensor(value, dtype=torch.float64)
    if shape_tail and tuple(tensor.shape[1:]) != shape_tail:
        raise ConfigurationError(f"{name} must have shape [N, {', '.join(map(str, shape_tail))}], got {list(tensor.shape)}")
    return tensor


@dataclass
class AtomicState:
    """
    Snapshot of the atomic degrees of freedom for one step.

    Attributes:
        positions: [N_atoms, 3] coordinates
        masses: [N_atoms] masses, NaN marks an unknown mass; None if not supplied
        charges: [N_atoms] charges; None means charges were not set this step
        box: [3, 3] lattice vectors as rows; None for a non-periodic system
        step: Simulation step counter
    """

    positions: torch.Tensor
    masses: Optional[torch.Tensor] = None
    charges: Optional[torch.Tensor] = None
    box: Optional[torch.Tensor] = None
    step: int = 0
    _positions_list: List[List[float]] = field(default=None, init=False, repr=False)
    _inverse_box: Optional[torch.Tensor] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.positions = _as_tensor(self.positions, "positions", (3,))
        if self.positions.dim() != 2:
            raise ConfigurationError(f"positions must be [N, 3], got {list(self.positions.shape)}")
        natoms = self.positions.shape[0]
        if self.masses is not None:
            self.masses = _as_tensor(self.masses, "masses").reshape(-1)
            if self.masses.shape[0] != natoms:
                raise ConfigurationError(f"Got {self.masses.shape[0]} masses for {natoms} atoms")
        if self.charges is not None:
            self.charges = _as_tensor(self.charges, "charges").reshape(-1)
            if self.charges.shape[0] != natoms:
                raise ConfigurationError(f"Got {self.charges.shape[0]} charges for {natoms} atoms")
        if self.box is not None:
            self.box = _as_tensor(self.box, "box").reshape(3, 3)
            if torch.linalg.det(self.box).abs() < 1e-12:
                raise ConfigurationError("Box matrix is singular")
            self._inverse_box = torch.linalg.inv(self.box)
        self._positions_list = self.positions.tolist()

    @property
    def natoms(self) -> int:
        return self.positions.shape[0]

    @property
    def charges_set(self) -> bool:
        return self.charges is not None

    def position(self, i: int) -> List[float]:
        return self._positions_list[i]

    def mass(self, i: int) -> float:
        if self.masses is None:
            return float("nan")
        return float(self.masses[i])

    def charge(self, i: int) -> float:
        if self.charges is None:
            raise ConfigurationError("Charges were not set for this step")
        return float(self.charges[i])

    def displacement(self, i: int, j: int) -> List[float]:
        """Vector from atom i to atom j, minimum image when a box is set."""
        pi, pj = self._positions_list[i], self._positions_list[j]
        delta = [pj[0] - pi[0], pj[1] - pi[1], pj[2] - pi[2]]
        if self.box is None:
            return delta
        frac = torch.tensor(delta, dtype=torch.float64) @ self._inverse_box
        frac = frac - torch.round(frac)
        return (frac @ self.box).tolist()
