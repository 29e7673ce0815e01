"""
Factory for creating actions from a parsed cvkit configuration.

Actions are created in file order. Every action publishes its outputs as
named argument streams (``label.component``) that later actions can read.
Once all sources are bound, a vector action consumed task-by-task by a single
reducing action is chained to it so both run in one task loop.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from cvkit.data.parse.schema import (
    CenterConfig,
    CVKitConfig,
    KDEConfig,
    MetadynamicsConfig,
    MetricConfig,
    SphericalHarmonicConfig,
    SumConfig,
)
from cvkit.data.types import AtomicState
from cvkit.model.colvars.adaptive_metric import AdaptiveMetric
from cvkit.model.colvars.base import Action, ActionOutput, ReducingAction, VectorAction
from cvkit.model.colvars.grid import Grid
from cvkit.model.colvars.kde import KernelDensity
from cvkit.model.colvars.metadynamics import AdaptiveMetadynamics, atomic_gradient
from cvkit.model.colvars.spherical_harmonic import RationalSwitch, SphericalHarmonic
from cvkit.model.colvars.sum import Sum
from cvkit.model.colvars.weighted_average import WeightedAverage
from cvkit.model.engine.errors import ConfigurationError
from cvkit.model.engine.streams import ArgumentStream, ForceAccumulator, resolve_stream
from cvkit.model.engine.tasks import ChainLink, TaskEvaluator, bind_chain

Streams = Dict[str, ArgumentStream]
ActionFactory = Callable[[Any, Streams], Action]


class ActionRegistry:
    """Maps action type names to factory functions."""

    def __init__(self):
        self._factories: Dict[str, ActionFactory] = {}

    def register(self, name: str, factory: ActionFactory) -> None:
        if name in self._factories:
            raise ConfigurationError(f"Action type {name!r} is already registered")
        self._factories[name] = factory

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str, config: Any, streams: Streams) -> Action:
        """
        Create an action of type ``name``.

        Args:
            name: Registered type name
            config: Config record of the action
            streams: Streams published so far, by name

        Returns:
            The new action
        """
        if name not in self._factories:
            raise ConfigurationError(f"Unknown action type: {name}. Available types: {self.names()}")
        try:
            return self._factories[name](config, streams)
        except ConfigurationError:
            raise
        except (TypeError, ValueError, KeyError) as e:
            raise ConfigurationError(f"{config.label}: cannot create {name} action: {e}") from e


def create_center(config: CenterConfig, streams: Streams) -> WeightedAverage:
    weights = config.weights
    if isinstance(weights, str) and not weights.startswith("@"):
        weights = resolve_stream(weights, streams)
    return WeightedAverage(config.label, config.atoms, weights=weights, mass=config.mass)


def create_kde(config: KDEConfig, streams: Streams) -> KernelDensity:
    arguments = [resolve_stream(name, streams) for name in config.arguments]
    grid = Grid(
        names=config.arguments,
        mins=[g.min for g in config.grid],
        maxs=[g.max for g in config.grid],
        nbins=[g.nbin for g in config.grid],
        spacings=[g.spacing for g in config.grid],
        periodic=[g.periodic for g in config.grid],
    )
    heights = resolve_stream(config.heights, streams) if config.heights is not None else None
    return KernelDensity(
        config.label,
        arguments,
        grid,
        config.bandwidth,
        kernel=config.kernel,
        heights=heights,
        height=config.height,
        ignore_out_of_bounds=config.ignore_out_of_bounds,
        normalization=config.normalization,
    )


def create_spherical_harmonic(config: SphericalHarmonicConfig, streams: Streams) -> SphericalHarmonic:
    switching = RationalSwitch(
        config.switching.r0,
        nn=config.switching.nn,
        mm=config.switching.mm,
        d_max=config.switching.d_max,
    )
    return SphericalHarmonic(config.label, config.l, config.centers, switching, neighbors=config.neighbors)


def create_sum(config: SumConfig, streams: Streams) -> Sum:
    return Sum(config.label, resolve_stream(config.argument, streams))


def default_registry() -> ActionRegistry:
    """Registry with every action type cvkit ships."""
    registry = ActionRegistry()
    registry.register("center", create_center)
    registry.register("kde", create_kde)
    registry.register("spherical_harmonic", create_spherical_harmonic)
    registry.register("sum", create_sum)
    return registry


def create_metric(config: MetricConfig) -> AdaptiveMetric:
    return AdaptiveMetric(
        config.arguments,
        mode=config.mode,
        tau=config.tau,
        width=config.width,
        sigma_min=config.sigma_min,
        sigma_max=config.sigma_max,
        periodic=config.periodic,
        label=config.label,
    )


def create_metadynamics(
    config: MetadynamicsConfig, metric: AdaptiveMetric, streams: Streams
) -> AdaptiveMetadynamics:
    arguments = [resolve_stream(name, streams) for name in config.arguments]
    return AdaptiveMetadynamics(arguments, metric, config.to_parameters())


def _auto_chain(actions: List[Action]) -> List[ChainLink]:
    """Chain each vector action to its single per-task consumer, if any."""
    links = []
    for upstream in actions:
        if not isinstance(upstream, VectorAction):
            continue
        consumers = [
            a for a in actions
            if any(arg.producer is upstream for arg in a.arguments)
        ]
        if len(consumers) != 1:
            continue
        downstream = consumers[0]
        if not isinstance(downstream, ReducingAction) or not downstream.arguments_per_task:
            continue
        producers = {id(arg.producer) for arg in downstream.arguments if arg.producer is not None}
        if producers != {id(upstream)}:
            continue
        links.append(bind_chain(upstream, downstream))
    return links


class ActionSet:
    """
    The actions of one input file, evaluated in file order.

    Attributes:
        actions: Actions by label, in file order
        streams: Every stream published by the actions or the host, by name
        links: Chains bound between vector actions and their consumers
        metric: Adaptive metric, if configured
        metadynamics: Metadynamics bias, if configured
    """

    def __init__(
        self,
        actions: List[Action],
        streams: Streams,
        links: List[ChainLink],
        metric: Optional[AdaptiveMetric] = None,
        metadynamics: Optional[AdaptiveMetadynamics] = None,
    ):
        self.actions: Dict[str, Action] = {a.label: a for a in actions}
        self.streams = streams
        self.links = links
        self.metric = metric
        self.metadynamics = metadynamics
        self._chained_upstream = {id(link.upstream): link for link in links}
        self._chained_downstream = {id(link.downstream) for link in links}

    def __iter__(self):
        return iter(self.actions.values())

    def __getitem__(self, label: str) -> Action:
        return self.actions[label]

    def describe(self) -> List[str]:
        lines = [action.describe() for action in self]
        for link in self.links:
            lines.append(f"{link.downstream.label} is evaluated in one task loop with {link.upstream.label}")
        if self.metric is not None:
            lines.append(self.metric.describe())
        if self.metadynamics is not None:
            lines.append(self.metadynamics.describe())
        return lines

    def evaluate(
        self,
        state: AtomicState,
        evaluator: Optional[TaskEvaluator] = None,
        derivatives: bool = True,
        update_bias: bool = True,
    ) -> Dict[str, ActionOutput]:
        """
        Evaluate every action and advance the metric and the bias.

        Returns:
            Finalized components of all reducing actions, by name
        """
        evaluator = evaluator or TaskEvaluator()
        outputs: Dict[str, ActionOutput] = {}
        for action in self:
            if id(action) in self._chained_downstream:
                continue
            link = self._chained_upstream.get(id(action))
            if link is not None:
                outputs.update(evaluator.evaluate_chain(link, state, derivatives))
            elif isinstance(action, VectorAction):
                evaluator.evaluate_vector(action, state, derivatives)
            else:
                outputs.update(evaluator.evaluate(action, state, derivatives))

        if update_bias:
            if self.metadynamics is not None:
                self.metadynamics.update(state)
            elif self.metric is not None:
                self._update_metric(state)
        return outputs

    def _update_metric(self, state: AtomicState) -> None:
        arguments = [self.streams[name] for name in self.metric.names]
        values = [arg[0].value for arg in arguments]
        gradients = None
        if self.metric.mode == "geometry":
            gradients = [atomic_gradient(arg, state.natoms) for arg in arguments]
        self.metric.update(values, deposit=True, gradients=gradients)

    def apply_bias(self, accumulator: ForceAccumulator) -> float:
        """Forces of the metadynamics bias, returns the bias energy."""
        if self.metadynamics is None:
            raise ConfigurationError("No metadynamics bias is configured")
        return self.metadynamics.apply_forces(accumulator)


def build_actions(
    config: CVKitConfig,
    registry: ActionRegistry,
    host_streams: Optional[Union[Streams, Mapping[str, List[float]]]] = None,
) -> ActionSet:
    """
    Instantiate the actions of a configuration.

    Args:
        config: Parsed configuration
        registry: Action types available
        host_streams: Extra leaf streams supplied by the host, either as
                      ArgumentStreams or as plain lists of numbers

    Returns:
        The bound action set
    """
    streams: Streams = {}
    for name, values in (host_streams or {}).items():
        streams[name] = values if isinstance(values, ArgumentStream) else ArgumentStream.from_values(name, values)

    actions: List[Action] = []
    for entry in config.actions:
        action = registry.create(entry.type, entry.config, streams)
        for name, stream in action.streams().items():
            if name in streams:
                raise ConfigurationError(f"Stream {name} is defined twice")
            streams[name] = stream
        actions.append(action)

    links = _auto_chain(actions)

    metric = metadynamics = None
    if config.metric is not None:
        for name in config.metric.arguments:
            stream = resolve_stream(name, streams)
            if len(stream) != 1:
                raise ConfigurationError(f"metric argument {name} must be a scalar, has {len(stream)} elements")
        metric = create_metric(config.metric)
    if config.metadynamics is not None:
        metadynamics = create_metadynamics(config.metadynamics, metric, streams)
    return ActionSet(actions, streams, links, metric=metric, metadynamics=metadynamics)
