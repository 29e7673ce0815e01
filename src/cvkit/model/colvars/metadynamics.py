"""
Metadynamics with adaptive Gaussian hills.

Implements standard and well-tempered metadynamics on scalar argument streams
where the hill shape is the bounded inverse of an adaptive metric.
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence, Tuple

import torch

from cvkit.data.types import AtomicState
from cvkit.model.colvars.adaptive_metric import AdaptiveMetric, symmetric_from_upper
from cvkit.model.engine.errors import ConfigurationError
from cvkit.model.engine.quantity import Quantity
from cvkit.model.engine.streams import ArgumentStream, ForceAccumulator


def atomic_gradient(stream: ArgumentStream, natoms: int) -> Quantity:
    """
    Gradient of a single-element stream with respect to the atomic positions.

    A unit force is pushed through the stream; the atomic part of the result
    is the gradient as a quantity over the 3 * natoms coordinates.
    """
    element = stream[0]
    accumulator = ForceAccumulator(natoms)
    stream.apply_forces(element.to_dense(), accumulator)
    flat = accumulator.atoms.reshape(-1)
    nonzero = torch.nonzero(flat).flatten().tolist()
    return Quantity.from_items(flat.shape[0], element.value, [(i, float(flat[i])) for i in nonzero])


class AdaptiveMetadynamics:
    """
    Metadynamics bias with adaptive Gaussians.

    The bias potential is:
        V(s) = sum_i h_i * exp(-0.5 * (s - s_i)^T M_i (s - s_i))

    where s_i are hill centers, h_i the hill heights and M_i the inverse of
    the adaptive metric at the time hill i was deposited.

    For well-tempered metadynamics:
        h_i = h_0 * exp(-V(s_i) / (kT * (gamma - 1)))

    Attributes:
        arguments: Single-element streams the bias acts on
        metric: Adaptive metric shaping the hills
        hills: List of deposited hills with {center, height, inverse, step}
    """

    def __init__(
        self,
        arguments: Sequence[ArgumentStream],
        metric: AdaptiveMetric,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            arguments: One single-element stream per biased variable
            metric: Adaptive metric over the same variables
            parameters: Dict with metadynamics settings:
                - name: Label used in the export (default: "metad")
                - hill_height: Base height of the hills (default: 0.5)
                - hill_interval: Steps between hill deposits (default: 5)
                - well_tempered: Use well-tempered metadynamics (default: False)
                - bias_factor: Bias factor gamma for well-tempered (default: 10.0)
                - kT: Temperature kT for well-tempered (default: 2.5)
                - max_hills: Maximum number of hills to store (default: 1000)
        """
        self.arguments = list(arguments)
        self.metric = metric
        self.parameters = parameters or {}
        if len(self.arguments) != metric.ncv:
            raise ConfigurationError(
                f"metadynamics has {len(self.arguments)} arguments but the metric tracks {metric.ncv}"
            )
        for arg in self.arguments:
            if len(arg) != 1:
                raise ConfigurationError(f"metadynamics argument {arg.name} must be a scalar, has {len(arg)} elements")
        self.hills: List[Dict[str, Any]] = []

        self._name = self.parameters.get('name', 'metad')
        self._hill_height = self.parameters.get('hill_height', 0.5)
        self._hill_interval = self.parameters.get('hill_interval', 5)
        self._well_tempered = self.parameters.get('well_tempered', False)
        self._bias_factor = self.parameters.get('bias_factor', 10.0)
        if self._well_tempered and self._bias_factor <= 1.0:
            warnings.warn(
                f"bias_factor must be > 1.0 for well-tempered metadynamics, got {self._bias_factor}. "
                f"Falling back to standard metadynamics."
            )
            self._well_tempered = False
        self._kT = self.parameters.get('kT', 2.5)
        self._max_hills = self.parameters.get('max_hills', 1000)
        if self._hill_interval < 1:
            raise ConfigurationError(f"hill_interval must be >= 1, got {self._hill_interval}")

    @property
    def label(self) -> str:
        return self._name

    @property
    def well_tempered(self) -> bool:
        return self._well_tempered

    def reset_hills(self):
        """Clear all deposited hills."""
        self.hills = []

    def current_values(self) -> List[float]:
        return [arg[0].value for arg in self.arguments]

    def _difference(self, center: Sequence[float], values: Sequence[float]) -> torch.Tensor:
        return torch.tensor(
            [self.metric.difference(i, c, v) for i, (c, v) in enumerate(zip(center, values))],
            dtype=torch.float64,
        )

    def compute_bias(self, values: Sequence[float]) -> Tuple[float, torch.Tensor]:
        """
        Bias and its gradient at ``values``.

        Returns:
            energy: V(s)
            dV_ds: [ncv] derivative with respect to each argument
        """
        energy = 0.0
        dV_ds = torch.zeros(self.metric.ncv, dtype=torch.float64)
        for hill in self.hills:
            diff = self._difference(hill['center'], values)
            inverse = symmetric_from_upper(torch.tensor(hill['inverse'], dtype=torch.float64), self.metric.ncv)
            md = inverse @ diff
            gaussian = hill['height'] * float(torch.exp(-0.5 * diff.dot(md)))
            energy += gaussian
            dV_ds -= gaussian * md
        return energy, dV_ds

    def compute_bias_at(self, values: Sequence[float]) -> float:
        """Bias at ``values``, used for the well-tempered height scaling."""
        return self.compute_bias(values)[0]

    def deposit_hill(self, values: Sequence[float], step: int):
        """
        Deposit a hill at ``values`` shaped by the current metric inverse.

        For well-tempered metadynamics, height is scaled by:
            h = h_0 * exp(-V(values) / (kT * (gamma - 1)))
        """
        values = [float(v) for v in values]
        if self._well_tempered:
            dT = self._kT * (self._bias_factor - 1)
            height = self._hill_height * float(torch.exp(torch.tensor(-self.compute_bias_at(values) / dT)))
        else:
            height = self._hill_height

        self.hills.append({
            'center': values,
            'height': height,
            'inverse': self.metric.inverse_matrix().tolist(),
            'step': step,
        })

        if len(self.hills) > self._max_hills:
            self.hills = self.hills[-self._max_hills:]

    def update(self, state: AtomicState) -> bool:
        """
        Advance the metric and deposit a hill every ``hill_interval`` steps.

        Returns:
            Whether a hill was deposited
        """
        values = self.current_values()
        deposit = state.step % self._hill_interval == 0
        gradients = None
        if self.metric.mode == "geometry" and deposit:
            gradients = [atomic_gradient(arg, state.natoms) for arg in self.arguments]
        self.metric.update(values, deposit=deposit, gradients=gradients)
        if deposit:
            self.deposit_hill(values, state.step)
        return deposit

    def apply_forces(self, accumulator: ForceAccumulator) -> float:
        """
        Push the bias forces -dV/ds back through the argument streams.

        Returns:
            The bias energy at the current argument values
        """
        energy, dV_ds = self.compute_bias(self.current_values())
        for arg, dv in zip(self.arguments, dV_ds.tolist()):
            if dv == 0.0:
                continue
            arg.apply_forces(-dv * arg[0].to_dense(), accumulator)
        return energy

    def describe(self) -> str:
        kind = "well-tempered" if self._well_tempered else "standard"
        text = (
            f"{self._name}: {kind} metadynamics on {' '.join(a.name for a in self.arguments)} "
            f"with hill height {self._hill_height:g} every {self._hill_interval} steps"
        )
        if self._well_tempered:
            text += f", bias factor {self._bias_factor:g} at kT {self._kT:g}"
        return text

    def get_hill_summary(self) -> Dict[str, Any]:
        """
        Get summary statistics about deposited hills.

        Returns:
            Dict with hill statistics
        """
        if len(self.hills) == 0:
            return {
                'n_hills': 0,
                'total_height': 0.0,
            }
        heights = [h['height'] for h in self.hills]
        return {
            'n_hills': len(self.hills),
            'total_height': sum(heights),
            'mean_height': sum(heights) / len(heights),
            'first_step': self.hills[0]['step'],
            'last_step': self.hills[-1]['step'],
        }

    def export_data(self) -> Dict[str, Any]:
        """
        Export metadynamics data for JSON serialization.

        Returns:
            Dict with parameters, metric state and hills
        """
        return {
            'name': self._name,
            'arguments': [a.name for a in self.arguments],
            'parameters': {
                'hill_height': self._hill_height,
                'hill_interval': self._hill_interval,
                'max_hills': self._max_hills,
                'well_tempered': self._well_tempered,
                'bias_factor': self._bias_factor if self._well_tempered else None,
                'kT': self._kT if self._well_tempered else None,
            },
            'metric': {
                'mode': self.metric.mode,
                'matrix': self.metric.matrix().tolist(),
            },
            'hills': self.hills,
            'summary': self.get_hill_summary(),
        }
