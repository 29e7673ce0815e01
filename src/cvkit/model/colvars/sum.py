"""Sum of all the elements of an argument stream."""

from typing import Dict, Optional

import torch

from cvkit.data.types import AtomicState
from cvkit.model.colvars.base import ActionOutput, Capabilities, ReducingAction
from cvkit.model.engine.quantity import TaskRecord
from cvkit.model.engine.streams import ArgumentStream


class Sum(ReducingAction):
    """
    Adds every element of one stream, derivatives included.

    Args:
        label: Action label
        argument: Stream to sum over
    """

    capabilities = Capabilities(reads_arguments=True)

    def __init__(self, label: str, argument: ArgumentStream):
        super().__init__(label, arguments=[argument])

    @property
    def nblocks(self) -> int:
        return 1

    def describe(self) -> str:
        return f"{self.label}: the sum of all the values in {self.arguments[0].name}"

    def ntasks(self, state: AtomicState) -> int:
        return len(self.arguments[0])

    def perform_task(
        self,
        task: int,
        state: AtomicState,
        derivatives: bool = True,
        upstream: Optional[TaskRecord] = None,
    ) -> TaskRecord:
        source = self.argument_value(0, task, upstream)
        record = TaskRecord(task, 1, self.nderivatives)
        record[0].set_value(source.value)
        if derivatives:
            self.add_argument_derivatives(record[0], 0, source)
        return record

    def finalize(self, raw: torch.Tensor, state: AtomicState) -> Dict[str, ActionOutput]:
        der = raw[0, 1:].clone() if raw.shape[1] > 1 else None
        self.outputs = {self.label: ActionOutput(name=self.label, value=float(raw[0, 0]), derivatives=der)}
        return self.outputs
