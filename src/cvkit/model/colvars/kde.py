"""
Kernel density estimation on a regular grid.

Every task deposits one kernel centred on the task's argument vector s:

    G(p) += h * K((s - p) / bandwidth)

Only grid points inside the kernel support are visited, so the cost of a
deposition is set by the support and not by the grid size. When derivatives
are requested each touched grid point also receives

    h * dK/ds_d * ds_d/dk    (argument derivatives)
    K * dh/dk                (height derivatives)

in the derivative spaces of the argument and height streams.
"""

import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import torch

from cvkit.data.const import DP2CUTOFF, KERNEL_TYPES, NORMALIZATIONS, WEIGHT_EPSILON
from cvkit.data.types import AtomicState
from cvkit.model.colvars.base import ActionOutput, Capabilities, ReducingAction
from cvkit.model.colvars.grid import Grid, GridHeader
from cvkit.model.engine.errors import (
    BufferSizeError,
    ConfigurationError,
    DegenerateWeightError,
)
from cvkit.model.engine.quantity import Quantity, TaskRecord
from cvkit.model.engine.streams import ArgumentStream


def kernel_support(kernel: str, bandwidth: float) -> float:
    """Distance beyond which a kernel of the given bandwidth vanishes."""
    if kernel == "gaussian":
        return math.sqrt(2.0 * DP2CUTOFF) * bandwidth
    return bandwidth


def evaluate_kernel(kernel: str, diff: Sequence[float], bandwidth: Sequence[float]) -> Tuple[float, List[float]]:
    """
    Kernel value and gradient with respect to the kernel center.

    Args:
        kernel: "gaussian" or "triangular"
        diff: center - grid point, per dimension
        bandwidth: Width per dimension

    Returns:
        value, [dK/ds_d for each dimension]
    """
    scaled = [d / b for d, b in zip(diff, bandwidth)]
    r2 = sum(x * x for x in scaled)
    if kernel == "gaussian":
        if 0.5 * r2 >= DP2CUTOFF:
            return 0.0, [0.0] * len(diff)
        value = math.exp(-0.5 * r2)
        return value, [-value * x / b for x, b in zip(scaled, bandwidth)]
    r = math.sqrt(r2)
    if r >= 1.0:
        return 0.0, [0.0] * len(diff)
    value = 1.0 - r
    if r == 0.0:
        # the cusp: pick the zero subgradient
        return value, [0.0] * len(diff)
    return value, [-(x / b) / r for x, b in zip(scaled, bandwidth)]


class KernelDensity(ReducingAction):
    """
    Density estimate of argument streams on a grid.

    Args:
        label: Action label
        arguments: One stream per grid dimension, all with the same length
        grid: Grid receiving the depositions
        bandwidth: Kernel width per dimension
        kernel: Kernel type ("gaussian" or "triangular")
        heights: Optional stream with one height per deposition
        height: Constant height when no heights stream is given
        ignore_out_of_bounds: Skip depositions centred outside a non-periodic
                              dimension instead of clipping them at the edge
        normalization: "none", "true" (divide by the sum of heights) or
                       "ndata" (divide by the number of depositions)
    """

    capabilities = Capabilities(reads_arguments=True)

    def __init__(
        self,
        label: str,
        arguments: Sequence[ArgumentStream],
        grid: Grid,
        bandwidth: Sequence[float],
        kernel: str = "gaussian",
        heights: Optional[ArgumentStream] = None,
        height: float = 1.0,
        ignore_out_of_bounds: bool = False,
        normalization: str = "none",
    ):
        arguments = list(arguments)
        if not arguments:
            raise ConfigurationError(f"{label}: at least one argument is required")
        if len(arguments) != grid.ndim:
            raise ConfigurationError(
                f"{label}: {len(arguments)} arguments for a {grid.ndim} dimensional grid"
            )
        if len(bandwidth) != grid.ndim:
            raise ConfigurationError(
                f"{label}: {len(bandwidth)} bandwidths for a {grid.ndim} dimensional grid"
            )
        if any(b <= 0 for b in bandwidth):
            raise ConfigurationError(f"{label}: bandwidths must be positive, got {list(bandwidth)}")
        if kernel not in KERNEL_TYPES:
            raise ConfigurationError(f"{label}: unknown kernel {kernel!r}, use one of {KERNEL_TYPES}")
        if normalization not in NORMALIZATIONS:
            raise ConfigurationError(
                f"{label}: unknown normalization {normalization!r}, use one of {NORMALIZATIONS}"
            )
        ndata = {len(a) for a in arguments}
        if heights is not None:
            ndata.add(len(heights))
        if len(ndata) != 1:
            raise ConfigurationError(f"{label}: argument and height streams have different lengths")

        super().__init__(label, arguments=arguments + ([heights] if heights is not None else []))
        self.grid = grid
        self.ndim = grid.ndim
        self.bandwidth = [float(b) for b in bandwidth]
        self.kernel = kernel
        self.has_heights = heights is not None
        self.height = float(height)
        self.ignore_out_of_bounds = ignore_out_of_bounds
        self.normalization = normalization
        self.nneigh = [
            int(math.ceil(kernel_support(kernel, b) / s))
            for b, s in zip(self.bandwidth, grid.header.spacing)
        ]
        self.grid_values: Optional[torch.Tensor] = None
        self.grid_derivatives: Optional[torch.Tensor] = None

    @property
    def header(self) -> GridHeader:
        return self.grid.header

    @property
    def components(self) -> List[str]:
        return [f"{self.label}[{g}]" for g in range(self.grid.npoints)]

    @property
    def nblocks(self) -> int:
        # grid points plus the normalization accumulator
        return self.grid.npoints + 1

    def describe(self) -> str:
        h = self.grid.header
        dims = ", ".join(
            f"{n} in [{lo:g}, {hi:g}] nbin={nb}{' periodic' if p else ''}"
            for n, lo, hi, nb, p in zip(h.names, h.min, h.max, h.nbin, h.pbc)
        )
        return (
            f"{self.label}: {self.kernel} kernel density with bandwidth "
            f"{' '.join(f'{b:g}' for b in self.bandwidth)} on grid {dims}"
        )

    def ntasks(self, state: AtomicState) -> int:
        return len(self.arguments[0])

    def prepare(self, state: AtomicState) -> None:
        super().prepare(state)
        self.grid.lock()

    def _height(self, task: int, upstream: Optional[TaskRecord]) -> Quantity:
        height = Quantity(self.nderivatives, self.height)
        if self.has_heights:
            source = self.argument_value(self.ndim, task, upstream)
            height.set_value(source.value)
            self.add_argument_derivatives(height, self.ndim, source)
        return height

    def perform_task(
        self,
        task: int,
        state: AtomicState,
        derivatives: bool = True,
        upstream: Optional[TaskRecord] = None,
    ) -> TaskRecord:
        center = [self.argument_value(d, task, upstream) for d in range(self.ndim)]
        height = self._height(task, upstream)
        record = TaskRecord(task, 0, self.nderivatives, weight=height)

        coords = [c.value for c in center]
        if self.ignore_out_of_bounds and not all(self.grid.in_bounds(d, x) for d, x in enumerate(coords)):
            return record

        norm = height if self.normalization == "true" else Quantity(self.nderivatives, 1.0)
        record.add_sparse(self.grid.npoints, norm)

        h = height.value
        for g in self.grid.neighbors(coords, self.nneigh):
            point = self.grid.point_coordinates(g)
            diff = [self.grid.difference(d, point[d], coords[d]) for d in range(self.ndim)]
            value, grad = evaluate_kernel(self.kernel, diff, self.bandwidth)
            if value == 0.0:
                continue
            contribution = Quantity(self.nderivatives, h * value)
            if derivatives:
                for d in range(self.ndim):
                    self.add_argument_derivatives(contribution, d, center[d], h * grad[d])
                for idx, der in height.items():
                    contribution.add_derivative(idx, value * der)
            record.add_sparse(g, contribution)
        return record

    def finalize(self, raw: torch.Tensor, state: AtomicState) -> Dict[str, ActionOutput]:
        npoints = self.grid.npoints
        values = raw[:npoints, 0].clone()
        derivatives = raw[:npoints, 1:].clone() if raw.shape[1] > 1 else None
        if self.normalization != "none":
            norm = float(raw[npoints, 0])
            if not math.isfinite(norm) or abs(norm) < WEIGHT_EPSILON:
                raise DegenerateWeightError(
                    f"cannot normalize density by {norm:g}", label=self.label, step=state.step
                )
            values = values / norm
            if derivatives is not None:
                derivatives = derivatives / norm
                if self.normalization == "true":
                    # quotient rule with the sum of heights
                    derivatives = derivatives - values.unsqueeze(-1) * raw[npoints, 1:].unsqueeze(0) / norm
        self.grid_values = values
        self.grid_derivatives = derivatives
        self.outputs = {
            name: ActionOutput(
                name=name,
                value=float(values[g]),
                derivatives=derivatives[g] if derivatives is not None else None,
            )
            for g, name in enumerate(self.components)
        }
        return self.outputs

    def output_forces(self, forces: Union[Mapping[str, float], Sequence[float], torch.Tensor]) -> torch.Tensor:
        """Slot forces from one force per grid point."""
        if isinstance(forces, Mapping):
            return super().output_forces(forces)
        if self.grid_values is None:
            raise ConfigurationError(f"{self.label}: forces applied before evaluation")
        if self.grid_derivatives is None:
            raise ConfigurationError(f"{self.label}: derivatives were not computed, cannot apply forces")
        forces = torch.as_tensor(forces, dtype=torch.float64).reshape(-1)
        if forces.shape[0] != self.grid.npoints:
            raise BufferSizeError(
                f"{self.label}: got {forces.shape[0]} grid forces for {self.grid.npoints} grid points"
            )
        return forces @ self.grid_derivatives
