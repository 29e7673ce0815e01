"""
Weighted average of atomic positions (virtual atom).

    X = sum_i w_i * x_i / sum_i w_i

The weights are the atomic masses (center of mass), the charges (center of
charge), a literal vector, all ones (geometric center), or the elements of an
argument stream produced by another action. In the last case the derivatives
of the weights with respect to their own sources are carried through the
quotient rule so that forces on X reach them.
"""

import math
from typing import Dict, Optional, Sequence, Union

import torch

from cvkit.data.const import WEIGHT_EPSILON
from cvkit.data.types import AtomicState
from cvkit.model.colvars.base import ActionOutput, Capabilities, ReducingAction
from cvkit.model.engine.errors import ConfigurationError, DegenerateWeightError
from cvkit.model.engine.quantity import Quantity, TaskRecord
from cvkit.model.engine.streams import ArgumentStream

WeightSpec = Union[None, str, ArgumentStream, Sequence[float]]

COMPONENTS = ("x", "y", "z")


class WeightedAverage(ReducingAction):
    """
    Weighted center of a group of atoms.

    Args:
        label: Action label
        atoms: Global indices of the atoms to average
        weights: None (geometric center), "@masses", "@charges", an
                 ArgumentStream with one element per atom, or a literal list
                 of weights
        mass: Shortcut for weights="@masses"
    """

    capabilities = Capabilities(reads_atoms=True, reads_arguments=True)

    def __init__(
        self,
        label: str,
        atoms: Sequence[int],
        weights: WeightSpec = None,
        mass: bool = False,
    ):
        if mass:
            if weights is not None:
                raise ConfigurationError(f"{label}: MASS is incompatible with WEIGHTS")
            weights = "@masses"

        stream = weights if isinstance(weights, ArgumentStream) else None
        super().__init__(label, atoms=atoms, arguments=[stream] if stream is not None else None)

        self.literal_weights: Optional[list] = None
        if weights is None:
            self.mode = "geometric"
            self.literal_weights = [1.0] * len(self.atoms)
        elif isinstance(weights, str):
            if weights == "@masses":
                self.mode = "masses"
            elif weights == "@charges":
                self.mode = "charges"
            else:
                raise ConfigurationError(
                    f"{label}: unknown weight specification {weights!r}, bind named streams before construction"
                )
        elif stream is not None:
            self.mode = "stream"
            if len(stream) != len(self.atoms):
                raise ConfigurationError(
                    f"{label}: value input for WEIGHTS has {len(stream)} elements for {len(self.atoms)} atoms"
                )
        else:
            self.mode = "literal"
            self.literal_weights = [float(w) for w in weights]
            if len(self.literal_weights) != len(self.atoms):
                raise ConfigurationError(
                    f"{label}: number of elements in weight vector does not match the number of atoms"
                )
        self.total_weight: Optional[float] = None

    @property
    def components(self):
        return [f"{self.label}.{c}" for c in COMPONENTS]

    @property
    def nblocks(self) -> int:
        # x, y, z numerators and the total weight
        return len(COMPONENTS) + 1

    @property
    def weight_stream(self) -> Optional[ArgumentStream]:
        return self.arguments[0] if self.arguments else None

    def describe(self) -> str:
        what = {
            "geometric": "the geometric center",
            "masses": "the center of mass",
            "charges": "the center of charge",
            "stream": "the weighted center",
            "literal": "the weighted center",
        }[self.mode]
        text = f"{self.label}: computing {what} of atoms: {' '.join(str(a) for a in self.atoms)}"
        if self.mode == "stream":
            text += f"\n  atoms are weighted by values in vector labelled {self.weight_stream.name}"
        elif self.mode == "literal":
            text += f"\n  with weights: {' '.join(f'{w:f}' for w in self.literal_weights)}"
        return text

    def ntasks(self, state: AtomicState) -> int:
        return len(self.atoms)

    def prepare(self, state: AtomicState) -> None:
        super().prepare(state)
        if self.mode == "masses":
            masses = [state.mass(a) for a in self.atoms]
            if any(math.isnan(m) for m in masses):
                raise ConfigurationError(
                    f"{self.label}: you are trying to compute a center of mass but masses are not known"
                )
        elif self.mode == "charges" and not state.charges_set:
            raise ConfigurationError(
                f"{self.label}: you are trying to compute a center of charge but charges are not known"
            )

    def _weight(self, task: int, state: AtomicState, upstream: Optional[TaskRecord]) -> Quantity:
        weight = Quantity(self.nderivatives)
        if self.mode == "masses":
            weight.set_value(state.mass(self.atoms[task]))
        elif self.mode == "charges":
            weight.set_value(state.charge(self.atoms[task]))
        elif self.mode == "stream":
            source = self.argument_value(0, task, upstream)
            weight.set_value(source.value)
            self.add_argument_derivatives(weight, 0, source)
        else:
            weight.set_value(self.literal_weights[task])
        return weight

    def perform_task(
        self,
        task: int,
        state: AtomicState,
        derivatives: bool = True,
        upstream: Optional[TaskRecord] = None,
    ) -> TaskRecord:
        pos = state.position(self.atoms[task])
        weight = self._weight(task, state, upstream)
        w = weight.value
        record = TaskRecord(task, self.nblocks, self.nderivatives, weight=weight)
        for j in range(len(COMPONENTS)):
            numerator = record[j]
            numerator.add_value(w * pos[j])
            if derivatives:
                der = [0.0, 0.0, 0.0]
                der[j] = w
                self.add_atom_derivatives(numerator, task, der, pos)
                for idx, dw in weight.items():
                    numerator.add_derivative(idx, pos[j] * dw)
        record.quantities[len(COMPONENTS)] = weight
        return record

    def finalize(self, raw: torch.Tensor, state: AtomicState) -> Dict[str, ActionOutput]:
        ncomp = len(COMPONENTS)
        ww = float(raw[ncomp, 0])
        if not math.isfinite(ww) or abs(ww) < WEIGHT_EPSILON:
            raise DegenerateWeightError(
                f"total weight {ww:g} cannot normalize the weighted average",
                label=self.label,
                step=state.step,
            )
        self.total_weight = ww
        derivatives = raw.shape[1] > 1
        outputs = {}
        for j, name in enumerate(self.components):
            value = float(raw[j, 0]) / ww
            der = None
            if derivatives:
                # quotient rule: dN/W - N dW / W^2
                der = raw[j, 1:] / ww - value * raw[ncomp, 1:] / ww
            outputs[name] = ActionOutput(name=name, value=value, derivatives=der)
        self.outputs = outputs
        return outputs

    @property
    def position(self) -> torch.Tensor:
        """The virtual atom position from the last evaluation."""
        if not self.outputs:
            raise ConfigurationError(f"{self.label}: position requested before evaluation")
        return torch.tensor([o.value for o in self.outputs.values()], dtype=torch.float64)
