"""
Regular grids used by density estimation.

Grid points are stored flat with the first dimension running fastest:

    index = i_0 + n_0 * (i_1 + n_1 * (i_2 + ...))

A non-periodic dimension with ``nbin`` bins has ``nbin + 1`` points (both
ends are grid points); a periodic one has ``nbin`` points since ``max`` is
the image of ``min``.
"""

import itertools
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch

from cvkit.data.const import GRID_TOLERANCE
from cvkit.model.engine.errors import ConfigurationError


@dataclass(frozen=True)
class GridHeader:
    """Metadata downstream consumers (e.g. file writers) need for a grid."""

    names: Tuple[str, ...]
    min: Tuple[float, ...]
    max: Tuple[float, ...]
    nbin: Tuple[int, ...]
    spacing: Tuple[float, ...]
    pbc: Tuple[bool, ...]

    def as_dict(self) -> dict:
        return {
            "names": list(self.names),
            "min": list(self.min),
            "max": list(self.max),
            "nbin": list(self.nbin),
            "spacing": list(self.spacing),
            "pbc": list(self.pbc),
        }


def _derive_dimension(
    name: str,
    gmin: float,
    gmax: float,
    nbin: Optional[int],
    spacing: Optional[float],
    periodic: bool,
) -> Tuple[float, float, int, float]:
    if not gmax > gmin:
        raise ConfigurationError(f"Grid dimension {name}: max ({gmax}) must be larger than min ({gmin})")
    width = gmax - gmin
    if nbin is None and spacing is None:
        raise ConfigurationError(f"Grid dimension {name}: either nbin or spacing must be given")
    if nbin is not None and nbin < 1:
        raise ConfigurationError(f"Grid dimension {name}: nbin must be positive, got {nbin}")
    if spacing is not None and spacing <= 0:
        raise ConfigurationError(f"Grid dimension {name}: spacing must be positive, got {spacing}")

    if nbin is not None and spacing is not None:
        if abs(nbin * spacing - width) > GRID_TOLERANCE * width:
            raise ConfigurationError(
                f"Grid dimension {name}: nbin ({nbin}) x spacing ({spacing}) does not span max - min ({width})"
            )
    elif nbin is None:
        nbin = int(math.ceil(width / spacing - GRID_TOLERANCE))
        if periodic and abs(nbin * spacing - width) > GRID_TOLERANCE * width:
            raise ConfigurationError(
                f"Grid dimension {name}: spacing {spacing} does not divide the periodic domain {width}"
            )
        # the last bin is stretched to a whole spacing
        gmax = gmin + nbin * spacing
    else:
        spacing = width / nbin
    return float(gmin), float(gmax), int(nbin), float(spacing)


class Grid:
    """
    Regular, optionally periodic grid.

    Args:
        names: Name of each dimension
        mins: Lower bound per dimension
        maxs: Upper bound per dimension
        nbins: Number of bins per dimension (or None to derive from spacing)
        spacings: Spacing per dimension (or None to derive from nbins)
        periodic: Periodicity flag per dimension
    """

    def __init__(
        self,
        names: Sequence[str],
        mins: Sequence[float],
        maxs: Sequence[float],
        nbins: Optional[Sequence[Optional[int]]] = None,
        spacings: Optional[Sequence[Optional[float]]] = None,
        periodic: Optional[Sequence[bool]] = None,
    ):
        self._locked = False
        self.set_bounds(names, mins, maxs, nbins, spacings, periodic)

    def set_bounds(self, names, mins, maxs, nbins=None, spacings=None, periodic=None) -> None:
        if self._locked:
            raise ConfigurationError("Grid header cannot change after the first deposition")
        ndim = len(names)
        nbins = list(nbins) if nbins is not None else [None] * ndim
        spacings = list(spacings) if spacings is not None else [None] * ndim
        periodic = list(periodic) if periodic is not None else [False] * ndim
        if ndim == 0:
            raise ConfigurationError("A grid needs at least one dimension")
        for what, values in (("min", mins), ("max", maxs), ("nbin", nbins), ("spacing", spacings), ("periodic", periodic)):
            if len(values) != ndim:
                raise ConfigurationError(f"Grid has {ndim} dimensions but {len(values)} {what} values")
        dims = [
            _derive_dimension(names[d], float(mins[d]), float(maxs[d]), nbins[d], spacings[d], bool(periodic[d]))
            for d in range(ndim)
        ]
        self.header = GridHeader(
            names=tuple(names),
            min=tuple(d[0] for d in dims),
            max=tuple(d[1] for d in dims),
            nbin=tuple(d[2] for d in dims),
            spacing=tuple(d[3] for d in dims),
            pbc=tuple(bool(p) for p in periodic),
        )
        self.npoints_per_dim = [
            nbin if pbc else nbin + 1 for nbin, pbc in zip(self.header.nbin, self.header.pbc)
        ]
        self._strides = [1]
        for n in self.npoints_per_dim[:-1]:
            self._strides.append(self._strides[-1] * n)

    def lock(self) -> None:
        self._locked = True

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def ndim(self) -> int:
        return len(self.header.names)

    @property
    def npoints(self) -> int:
        return math.prod(self.npoints_per_dim)

    def point_indices(self, index: int) -> List[int]:
        indices = []
        for n in self.npoints_per_dim:
            indices.append(index % n)
            index //= n
        return indices

    def index_of(self, indices: Sequence[int]) -> int:
        return sum(i * s for i, s in zip(indices, self._strides))

    def point_coordinates(self, index: int) -> List[float]:
        return [
            self.header.min[d] + i * self.header.spacing[d]
            for d, i in enumerate(self.point_indices(index))
        ]

    def coordinates(self) -> torch.Tensor:
        """[npoints, ndim] coordinates of every grid point."""
        return torch.tensor([self.point_coordinates(g) for g in range(self.npoints)], dtype=torch.float64)

    def difference(self, d: int, origin: float, target: float) -> float:
        """``target - origin`` along dimension ``d``, minimum image if periodic."""
        delta = target - origin
        if self.header.pbc[d]:
            period = self.header.max[d] - self.header.min[d]
            delta -= period * math.floor(delta / period + 0.5)
        return delta

    def in_bounds(self, d: int, value: float) -> bool:
        if self.header.pbc[d]:
            return True
        return self.header.min[d] <= value <= self.header.max[d]

    def neighbors(self, center: Sequence[float], nneigh: Sequence[int]) -> List[int]:
        """
        Flat indices of the grid points within ``nneigh`` spacings of ``center``.

        Periodic dimensions wrap; non-periodic ones are clipped, so a center far
        outside the grid has no neighbors.
        """
        per_dim = []
        for d in range(self.ndim):
            n = self.npoints_per_dim[d]
            base = int(math.floor((center[d] - self.header.min[d]) / self.header.spacing[d]))
            candidates = range(base - nneigh[d], base + nneigh[d] + 2)
            if self.header.pbc[d]:
                # dict keeps order and drops duplicate images of wide kernels
                idx = list(dict.fromkeys(i % n for i in candidates))
            else:
                idx = [i for i in candidates if 0 <= i < n]
            if not idx:
                return []
            per_dim.append(idx)
        return [self.index_of(combo) for combo in itertools.product(*per_dim)]
