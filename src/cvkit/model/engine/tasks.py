"""
Task evaluation.

Tasks of one action are independent, so they are split into contiguous
chunks, one per worker. Each worker deposits into its own partial buffer and
the partials are summed afterwards, followed by the cross-rank sum. The sum
is the only synchronization point; a failing task aborts the whole step and
no partial buffer survives it.
"""

from dataclasses import dataclass
from multiprocessing.pool import ThreadPool
from typing import TYPE_CHECKING, Dict, List, Optional

from cvkit.data.types import AtomicState
from cvkit.model.engine.buffer import ReductionBuffer
from cvkit.model.engine.errors import ConfigurationError
from cvkit.model.engine.quantity import TaskRecord
from cvkit.model.engine.streams import ArgumentStream

if TYPE_CHECKING:
    from cvkit.model.colvars.base import ActionOutput, ReducingAction, VectorAction


@dataclass
class ChainLink:
    """
    Marks that ``downstream`` reads ``upstream``'s per-task tape directly.

    Only an evaluation-order optimization: evaluating the upstream into its
    streams first and then the downstream gives the same result.
    """

    upstream: "VectorAction"
    downstream: "ReducingAction"


def bind_chain(upstream: "VectorAction", downstream: "ReducingAction") -> ChainLink:
    """
    Link two actions for fused evaluation.

    Done once when sources are bound, not per step.
    """
    if not any(arg.producer is upstream for arg in downstream.arguments):
        raise ConfigurationError(
            f"{downstream.label} does not read any stream produced by {upstream.label}"
        )
    producers = {id(arg.producer) for arg in downstream.arguments if arg.producer is not None}
    if producers != {id(upstream)}:
        raise ConfigurationError(
            f"{downstream.label} reads streams from other actions and cannot be chained to {upstream.label}"
        )
    link = ChainLink(upstream=upstream, downstream=downstream)
    downstream.upstream_link = link
    return link


def _chunks(ntasks: int, nchunks: int) -> List[range]:
    nchunks = max(1, min(nchunks, ntasks))
    size, extra = divmod(ntasks, nchunks)
    chunks, start = [], 0
    for i in range(nchunks):
        stop = start + size + (1 if i < extra else 0)
        chunks.append(range(start, stop))
        start = stop
    return chunks


class TaskEvaluator:
    """
    Runs the tasks of an action and reduces their contributions.

    Args:
        num_workers: Number of worker threads (1 runs everything inline)
    """

    def __init__(self, num_workers: int = 1):
        if num_workers < 1:
            raise ConfigurationError(f"num_workers must be >= 1, got {num_workers}")
        self.num_workers = num_workers

    def _map(self, func, chunks):
        if self.num_workers == 1 or len(chunks) == 1:
            return [func(chunk) for chunk in chunks]
        with ThreadPool(min(self.num_workers, len(chunks))) as pool:
            return pool.map(func, chunks)

    def evaluate(
        self,
        action: "ReducingAction",
        state: AtomicState,
        derivatives: bool = True,
    ) -> Dict[str, "ActionOutput"]:
        """Evaluate a reducing action whose argument streams are already filled."""
        derivatives = derivatives and action.capabilities.has_derivatives
        action.prepare(state)
        ntasks = action.ntasks(state)
        template = ReductionBuffer(action.nblocks, action.nderivatives, derivatives)

        def run_chunk(chunk: range) -> ReductionBuffer:
            partial = template.empty_like()
            for task in chunk:
                action.gather(action.perform_task(task, state, derivatives), partial)
            return partial

        return self._reduce_and_finalize(action, state, template, self._map(run_chunk, _chunks(ntasks, self.num_workers)))

    def evaluate_vector(
        self,
        action: "VectorAction",
        state: AtomicState,
        derivatives: bool = True,
    ) -> Dict[str, ArgumentStream]:
        """Evaluate a vector action into its streams."""
        derivatives = derivatives and action.capabilities.has_derivatives
        action.prepare(state)
        ntasks = action.ntasks(state)

        def run_chunk(chunk: range) -> List[TaskRecord]:
            return [action.perform_task(task, state, derivatives) for task in chunk]

        records = [r for part in self._map(run_chunk, _chunks(ntasks, self.num_workers)) for r in part]
        return action.publish(records)

    def evaluate_chain(
        self,
        link: ChainLink,
        state: AtomicState,
        derivatives: bool = True,
    ) -> Dict[str, "ActionOutput"]:
        """
        Fused evaluation: one task loop runs the upstream and the downstream.

        The upstream's streams are filled as a side effect so other consumers
        can still read them.
        """
        upstream, downstream = link.upstream, link.downstream
        derivatives = derivatives and all(a.capabilities.has_derivatives for a in (upstream, downstream))
        if downstream.upstream_link is not link:
            raise ConfigurationError(f"{downstream.label} is not chained to {upstream.label}")
        upstream.prepare(state)
        downstream.prepare(state)
        ntasks = upstream.ntasks(state)
        if downstream.ntasks(state) != ntasks:
            raise ConfigurationError(
                f"Chained actions {upstream.label} and {downstream.label} have different task counts"
            )
        template = ReductionBuffer(downstream.nblocks, downstream.nderivatives, derivatives)

        def run_chunk(chunk: range):
            partial = template.empty_like()
            records = []
            for task in chunk:
                up = upstream.perform_task(task, state, derivatives)
                records.append(up)
                downstream.gather(downstream.perform_task(task, state, derivatives, upstream=up), partial)
            return partial, records

        results = self._map(run_chunk, _chunks(ntasks, self.num_workers))
        upstream.publish([r for _, records in results for r in records])
        return self._reduce_and_finalize(downstream, state, template, [partial for partial, _ in results])

    def _reduce_and_finalize(
        self,
        action: "ReducingAction",
        state: AtomicState,
        buffer: ReductionBuffer,
        partials: List[ReductionBuffer],
    ) -> Dict[str, "ActionOutput"]:
        for partial in partials:
            buffer.combine(partial)
        buffer.all_reduce()
        outputs = action.finalize(buffer.consume(), state)
        action.publish()
        return outputs


def evaluate(
    action: "ReducingAction",
    state: AtomicState,
    derivatives: bool = True,
    evaluator: Optional[TaskEvaluator] = None,
) -> Dict[str, "ActionOutput"]:
    return (evaluator or TaskEvaluator()).evaluate(action, state, derivatives)
