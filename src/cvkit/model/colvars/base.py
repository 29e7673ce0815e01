"""
Base classes for actions evaluated by the task engine.

An action declares what it can do through a Capabilities record instead of
inheriting from a stack of host base classes. Two concrete shapes exist:

- VectorAction: every task produces its own per-task quantities, published as
  ArgumentStreams (e.g. spherical harmonics per central atom)
- ReducingAction: task contributions are summed into a ReductionBuffer and
  closed by ``finalize`` (weighted averages, sums, grids)

Derivative index layout of every action:
    [3 * n_atoms atomic slots][9 virial slots][argument stream slots ...]
The atomic and virial slots are only present for actions that read atoms.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union

import torch

from cvkit.data.const import ATOM_DERIVATIVES, VIRIAL_DERIVATIVES
from cvkit.data.types import AtomicState
from cvkit.model.engine.buffer import ReductionBuffer
from cvkit.model.engine.errors import BufferSizeError, ConfigurationError
from cvkit.model.engine.quantity import Quantity, TaskRecord
from cvkit.model.engine.streams import ArgumentStream, ForceAccumulator


@dataclass(frozen=True)
class Capabilities:
    produces_value: bool = True
    has_derivatives: bool = True
    reads_atoms: bool = False
    reads_arguments: bool = False


@dataclass
class ActionOutput:
    """Finalized component: value and dense derivatives in the action's space."""

    name: str
    value: float
    derivatives: Optional[torch.Tensor] = None


class Action(ABC):
    """
    Common bookkeeping for all actions.

    Args:
        label: Name other actions use to refer to this one
        atoms: Global indices of the atoms the action reads
        arguments: Argument streams the action reads
    """

    capabilities = Capabilities()
    # Streams are read element-by-element with the task index
    arguments_per_task = True

    def __init__(
        self,
        label: str,
        atoms: Optional[Sequence[int]] = None,
        arguments: Optional[Sequence[ArgumentStream]] = None,
    ):
        self.label = label
        self.atoms: List[int] = [int(a) for a in (atoms or [])]
        self.arguments: List[ArgumentStream] = list(arguments or [])
        if self.capabilities.reads_atoms and len(self.atoms) == 0:
            raise ConfigurationError(f"{self.label}: at least one atom should be specified")
        if self.atoms and not self.capabilities.reads_atoms:
            raise ConfigurationError(f"{self.label}: this action does not read atoms")
        if self.arguments and not self.capabilities.reads_arguments:
            raise ConfigurationError(f"{self.label}: this action does not read arguments")
        for arg in self.arguments:
            if arg.producer is not None and not arg.producer.capabilities.produces_value:
                raise ConfigurationError(
                    f"{self.label}: {arg.producer.label} does not produce values to read from {arg.name}"
                )
        self._argument_offsets: List[int] = []
        offset = self.n_atom_slots
        for arg in self.arguments:
            self._argument_offsets.append(offset)
            offset += arg.nderivatives
        self._nderivatives = offset
        self.upstream_link = None

    @property
    def n_atom_slots(self) -> int:
        if not self.capabilities.reads_atoms:
            return 0
        return ATOM_DERIVATIVES * len(self.atoms) + VIRIAL_DERIVATIVES

    @property
    def virial_offset(self) -> int:
        return ATOM_DERIVATIVES * len(self.atoms)

    @property
    def nderivatives(self) -> int:
        return self._nderivatives

    def argument_offset(self, i: int) -> int:
        return self._argument_offsets[i]

    @property
    def components(self) -> List[str]:
        return [self.label]

    def describe(self) -> str:
        return f"{type(self).__name__} with label {self.label}"

    @abstractmethod
    def ntasks(self, state: AtomicState) -> int:
        raise NotImplementedError

    def prepare(self, state: AtomicState) -> None:
        """Per-step checks run before any task."""
        for arg in self.arguments:
            if len(arg) != self.ntasks(state) and self.arguments_per_task:
                raise ConfigurationError(
                    f"{self.label}: stream {arg.name} has {len(arg)} elements for "
                    f"{self.ntasks(state)} tasks"
                )

    @abstractmethod
    def perform_task(
        self,
        task: int,
        state: AtomicState,
        derivatives: bool = True,
        upstream: Optional[TaskRecord] = None,
    ) -> TaskRecord:
        raise NotImplementedError

    def argument_value(
        self, i: int, task: int, upstream: Optional[TaskRecord] = None
    ) -> Quantity:
        """
        Element ``task`` of argument ``i``.

        When this action is chained to the producer of the argument, the value
        is read straight from the producer's per-task record.
        """
        arg = self.arguments[i]
        if upstream is not None and self.upstream_link is not None and arg.producer is self.upstream_link.upstream:
            return upstream[arg.component]
        return arg[task]

    # Derivative helpers

    def add_atom_derivatives(self, quantity: Quantity, iatom: int, der: Sequence[float], position: Sequence[float]) -> None:
        """Derivative of ``quantity`` with respect to the absolute position of local atom ``iatom``."""
        base = ATOM_DERIVATIVES * iatom
        virial = self.virial_offset
        for b in range(3):
            quantity.add_derivative(base + b, der[b])
        for a in range(3):
            for b in range(3):
                quantity.add_derivative(virial + 3 * a + b, -position[a] * der[b])

    def add_bond_derivatives(self, quantity: Quantity, iatom: int, jatom: int, der: Sequence[float], distance: Sequence[float]) -> None:
        """Derivative of ``quantity`` with respect to the vector from local atom i to local atom j."""
        ibase, jbase = ATOM_DERIVATIVES * iatom, ATOM_DERIVATIVES * jatom
        virial = self.virial_offset
        for b in range(3):
            quantity.add_derivative(ibase + b, -der[b])
            quantity.add_derivative(jbase + b, der[b])
        for a in range(3):
            for b in range(3):
                quantity.add_derivative(virial + 3 * a + b, -distance[a] * der[b])

    def add_argument_derivatives(self, quantity: Quantity, i: int, source: Quantity, factor: float = 1.0) -> None:
        """Chain rule: ``factor * d(source)/dk`` onto the slots of argument ``i``."""
        offset = self._argument_offsets[i]
        for idx, der in source.items():
            quantity.add_derivative(offset + idx, factor * der)

    # Force back-propagation

    def apply_slot_forces(self, slot_forces: torch.Tensor, accumulator: ForceAccumulator) -> None:
        """Distribute forces given on this action's derivative slots."""
        if slot_forces.shape[0] != self.nderivatives:
            raise BufferSizeError(
                f"{self.label}: got {slot_forces.shape[0]} slot forces, expected {self.nderivatives}"
            )
        if not self.capabilities.has_derivatives:
            raise ConfigurationError(f"{self.label}: forces cannot be applied to an action without derivatives")
        if self.capabilities.reads_atoms:
            accumulator.add_atom_forces(self.atoms, slot_forces[:self.virial_offset])
            accumulator.add_virial(slot_forces[self.virial_offset:self.n_atom_slots])
        for i, arg in enumerate(self.arguments):
            start = self._argument_offsets[i]
            arg.apply_forces(slot_forces[start:start + arg.nderivatives], accumulator)


class VectorAction(Action):
    """Action whose per-task quantities are published as streams."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._streams: Dict[str, ArgumentStream] = {}

    @abstractmethod
    def component_names(self) -> List[str]:
        raise NotImplementedError

    @property
    @abstractmethod
    def nelements(self) -> int:
        """Length of the published streams, fixed when the action is built."""
        raise NotImplementedError

    def streams(self, ntasks: Optional[int] = None) -> Dict[str, ArgumentStream]:
        """Streams published by this action, created once."""
        if ntasks is None:
            ntasks = self.nelements
        if not self._streams:
            for c, name in enumerate(self.component_names()):
                full = f"{self.label}.{name}"
                self._streams[full] = ArgumentStream(full, ntasks, self.nderivatives, producer=self, component=c)
        return self._streams

    def publish(self, records: List[TaskRecord]) -> Dict[str, ArgumentStream]:
        streams = self.streams(len(records))
        for stream in streams.values():
            stream.set_quantities([record[stream.component] for record in records])
        return streams


class ReducingAction(Action):
    """Action whose task contributions are accumulated in a ReductionBuffer."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.outputs: Dict[str, ActionOutput] = {}
        self._streams: Dict[str, ArgumentStream] = {}

    @property
    @abstractmethod
    def nblocks(self) -> int:
        raise NotImplementedError

    def streams(self) -> Dict[str, ArgumentStream]:
        """One single-element stream per finalized component, created once."""
        if not self._streams:
            for c, name in enumerate(self.components):
                self._streams[name] = ArgumentStream(name, 1, self.nderivatives, producer=self, component=c)
        return self._streams

    def publish(self) -> Dict[str, ArgumentStream]:
        """Expose the finalized components to downstream actions."""
        streams = self.streams()
        for name, stream in streams.items():
            output = self.outputs[name]
            quantity = Quantity(self.nderivatives, output.value)
            if output.derivatives is not None:
                nonzero = torch.nonzero(output.derivatives).flatten().tolist()
                for idx in nonzero:
                    quantity.add_derivative(idx, float(output.derivatives[idx]))
            stream.set_quantities([quantity])
        return streams

    def gather(self, record: TaskRecord, buffer: ReductionBuffer) -> None:
        """Deposit the per-task quantities of ``record``, one block each."""
        blocks = record.blocks if record.blocks is not None else range(len(record.quantities))
        for block, quantity in zip(blocks, record.quantities):
            buffer.deposit(block, quantity)

    @abstractmethod
    def finalize(self, raw: torch.Tensor, state: AtomicState) -> Dict[str, ActionOutput]:
        raise NotImplementedError

    def output_forces(self, forces: Union[Mapping[str, float], Sequence[float], torch.Tensor]) -> torch.Tensor:
        """Slot forces ``sum_j f_j * d(output_j)/d(slot)``."""
        if not self.outputs:
            raise ConfigurationError(f"{self.label}: forces applied before evaluation")
        if isinstance(forces, Mapping):
            pairs = [(self.outputs[name], float(f)) for name, f in forces.items()]
        else:
            forces = [float(f) for f in forces]
            if len(forces) != len(self.outputs):
                raise BufferSizeError(
                    f"{self.label}: got {len(forces)} forces for {len(self.outputs)} components"
                )
            pairs = list(zip(self.outputs.values(), forces))
        slot_forces = torch.zeros(self.nderivatives, dtype=torch.float64)
        for output, f in pairs:
            if output.derivatives is None:
                raise ConfigurationError(
                    f"{self.label}: derivatives were not computed, cannot apply forces"
                )
            slot_forces += f * output.derivatives
        return slot_forces

    def apply_forces(self, forces, accumulator: ForceAccumulator) -> torch.Tensor:
        """
        Back-propagate external forces on the finalized components.

        Args:
            forces: One force per component (sequence) or a mapping name -> force
            accumulator: Receives atomic, virial and leaf-stream forces

        Returns:
            slot_forces: Forces on this action's derivative slots
        """
        slot_forces = self.output_forces(forces)
        self.apply_slot_forces(slot_forces, accumulator)
        return slot_forces
