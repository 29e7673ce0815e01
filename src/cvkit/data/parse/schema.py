from dataclasses import MISSING, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

from cvkit.data import const
from cvkit.model.engine.errors import ConfigurationError

####################################################################################################
# CONFIG RECORDS
####################################################################################################


def _check_labels(*labels: str) -> None:
    for label in labels:
        if not isinstance(label, str) or not label:
            raise ConfigurationError(f"Labels must be non-empty strings, got {label!r}")
        if "." in label or "[" in label:
            raise ConfigurationError(f"Label {label!r} may not contain '.' or '['")


def _check_atoms(label: str, atoms: List[int], what: str = "atoms") -> None:
    if not atoms:
        raise ConfigurationError(f"{label}: at least one atom should be specified in {what}")
    if any(not isinstance(a, int) or isinstance(a, bool) or a < 0 for a in atoms):
        raise ConfigurationError(f"{label}: {what} must be non-negative integers, got {atoms}")


@dataclass
class CenterConfig:
    """Weighted average of atomic positions."""

    label: str
    atoms: List[int]
    weights: Optional[Union[str, List[float]]] = None
    mass: bool = False

    def __post_init__(self):
        _check_labels(self.label)
        _check_atoms(self.label, self.atoms)
        if self.mass and self.weights is not None:
            raise ConfigurationError(f"{self.label}: mass is incompatible with weights")
        if isinstance(self.weights, list) and len(self.weights) != len(self.atoms):
            raise ConfigurationError(
                f"{self.label}: number of elements in weight vector does not match the number of atoms"
            )


@dataclass
class GridDimensionConfig:
    """One dimension of a grid."""

    min: float
    max: float
    nbin: Optional[int] = None
    spacing: Optional[float] = None
    periodic: bool = False

    def __post_init__(self):
        if self.nbin is None and self.spacing is None:
            raise ConfigurationError("Grid dimensions need either nbin or spacing")
        if not self.max > self.min:
            raise ConfigurationError(f"Grid dimension max ({self.max}) must be larger than min ({self.min})")


@dataclass
class KDEConfig:
    """Kernel density estimate on a grid."""

    label: str
    arguments: List[str]
    bandwidth: List[float]
    grid: List[GridDimensionConfig]
    kernel: str = "gaussian"
    heights: Optional[str] = None
    height: float = 1.0
    ignore_out_of_bounds: bool = False
    normalization: str = "none"

    def __post_init__(self):
        _check_labels(self.label)
        self.grid = [
            g if isinstance(g, GridDimensionConfig) else _build(GridDimensionConfig, g, f"{self.label}.grid")
            for g in self.grid
        ]
        if not (len(self.arguments) == len(self.bandwidth) == len(self.grid)):
            raise ConfigurationError(
                f"{self.label}: arguments, bandwidth and grid need one entry per dimension"
            )
        if self.kernel not in const.KERNEL_TYPES:
            raise ConfigurationError(f"{self.label}: unknown kernel {self.kernel!r}")
        if self.normalization not in const.NORMALIZATIONS:
            raise ConfigurationError(f"{self.label}: unknown normalization {self.normalization!r}")


@dataclass
class SwitchingConfig:
    """Rational switching function."""

    r0: float
    nn: int = 6
    mm: int = 0
    d_max: Optional[float] = None

    def __post_init__(self):
        if self.r0 <= 0:
            raise ConfigurationError(f"Switching function r0 must be positive, got {self.r0}")
        if self.d_max is not None and self.d_max <= 0:
            raise ConfigurationError(f"Switching function d_max must be positive, got {self.d_max}")


@dataclass
class SphericalHarmonicConfig:
    """Switching-weighted spherical harmonics around central atoms."""

    label: str
    l: int
    centers: List[int]
    switching: SwitchingConfig
    neighbors: Optional[List[int]] = None

    def __post_init__(self):
        _check_labels(self.label)
        if not isinstance(self.switching, SwitchingConfig):
            self.switching = _build(SwitchingConfig, self.switching, f"{self.label}.switching")
        if self.l not in range(const.MAX_ANGULAR_ORDER + 1):
            raise ConfigurationError(
                f"{self.label}: unsupported order {self.l!r} for spherical harmonics, "
                f"use 0 to {const.MAX_ANGULAR_ORDER}"
            )
        _check_atoms(self.label, self.centers, "centers")
        if self.neighbors is not None:
            _check_atoms(self.label, self.neighbors, "neighbors")


@dataclass
class SumConfig:
    """Sum over the elements of a stream."""

    label: str
    argument: str

    def __post_init__(self):
        _check_labels(self.label)


@dataclass
class MetricConfig:
    """Adaptive metric over scalar arguments."""

    arguments: List[str]
    mode: str = "diffusion"
    tau: Optional[float] = None
    width: Optional[float] = None
    sigma_min: Optional[List[float]] = None
    sigma_max: Optional[List[float]] = None
    periodic: Optional[List[Optional[Tuple[float, float]]]] = None
    label: str = "metric"

    def __post_init__(self):
        if not self.arguments:
            raise ConfigurationError("metric: at least one argument is required")
        if self.mode not in const.METRIC_MODES:
            raise ConfigurationError(f"metric: unknown mode {self.mode!r}, use one of {const.METRIC_MODES}")
        if self.mode == "diffusion" and (self.tau is None or self.tau <= 0):
            raise ConfigurationError("metric: diffusion mode needs a positive tau")
        if self.mode == "geometry" and (self.width is None or self.width <= 0):
            raise ConfigurationError("metric: geometry mode needs a positive width")
        for name in ("sigma_min", "sigma_max", "periodic"):
            value = getattr(self, name)
            if value is not None and len(value) != len(self.arguments):
                raise ConfigurationError(f"metric: {name} needs one entry per argument")
        if self.periodic is not None:
            self.periodic = [tuple(p) if p is not None else None for p in self.periodic]


@dataclass
class MetadynamicsConfig:
    """Adaptive-hill metadynamics; well-tempered when bias_factor is given."""

    arguments: List[str]
    height: float = 0.5
    pace: int = 5
    bias_factor: Optional[float] = None
    kT: float = 2.5
    max_hills: int = 1000
    label: str = "metad"

    def __post_init__(self):
        if self.pace < 1:
            raise ConfigurationError(f"metadynamics: pace must be >= 1, got {self.pace}")
        if self.height <= 0:
            raise ConfigurationError(f"metadynamics: height must be positive, got {self.height}")

    def to_parameters(self) -> Dict[str, Any]:
        return {
            "name": self.label,
            "hill_height": self.height,
            "hill_interval": self.pace,
            "well_tempered": self.bias_factor is not None,
            "bias_factor": self.bias_factor if self.bias_factor is not None else 10.0,
            "kT": self.kT,
            "max_hills": self.max_hills,
        }


ACTION_CONFIGS: Dict[str, Type] = {
    "center": CenterConfig,
    "kde": KDEConfig,
    "spherical_harmonic": SphericalHarmonicConfig,
    "sum": SumConfig,
}


@dataclass
class ActionEntry:
    """One action of the input file: its registered type and its config."""

    type: str
    config: Any


@dataclass
class CVKitConfig:
    """Parsed input file."""

    actions: List[ActionEntry] = field(default_factory=list)
    metric: Optional[MetricConfig] = None
    metadynamics: Optional[MetadynamicsConfig] = None

    def __post_init__(self):
        labels = [entry.config.label for entry in self.actions]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate action labels: {', '.join(duplicates)}")
        if self.metadynamics is not None:
            if self.metric is None:
                raise ConfigurationError("metadynamics needs a metric section")
            if list(self.metadynamics.arguments) != list(self.metric.arguments):
                raise ConfigurationError("metadynamics and metric must use the same arguments")


####################################################################################################
# PARSING
####################################################################################################


def _build(cls: Type, data: Any, where: str):
    """Instantiate a config dataclass from a mapping, rejecting unknown keys."""
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(data).__name__}")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(
            f"{where}: unknown keys {unknown}, allowed keys are {sorted(known)}"
        )
    missing = [
        name for name, f in known.items()
        if name not in data and f.default is MISSING and f.default_factory is MISSING
    ]
    if missing:
        raise ConfigurationError(f"{where}: missing required keys {missing}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigurationError(f"{where}: {e}") from e


def parse_cvkit_schema(data: Mapping[str, Any]) -> CVKitConfig:
    """Parse the content of an input file.

    Parameters
    ----------
    data : Mapping
        The loaded YAML document.

    Returns
    -------
    CVKitConfig
        The validated configuration.

    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("The input file must contain a mapping at the top level")
    unknown = sorted(set(data) - {"actions", "metric", "metadynamics"})
    if unknown:
        raise ConfigurationError(f"Unknown top-level sections: {unknown}")

    raw_actions = data.get("actions") or []
    if not isinstance(raw_actions, list):
        raise ConfigurationError("'actions' must be a list")

    actions = []
    for i, item in enumerate(raw_actions):
        if not isinstance(item, Mapping) or len(item) != 1:
            raise ConfigurationError(f"actions[{i}]: each action must be a mapping with a single type key")
        action_type, body = next(iter(item.items()))
        if action_type not in ACTION_CONFIGS:
            raise ConfigurationError(
                f"actions[{i}]: unknown action type {action_type!r}, "
                f"available types: {sorted(ACTION_CONFIGS)}"
            )
        config = _build(ACTION_CONFIGS[action_type], body, f"actions[{i}] ({action_type})")
        actions.append(ActionEntry(type=action_type, config=config))

    metric = _build(MetricConfig, data["metric"], "metric") if data.get("metric") else None
    metadynamics = (
        _build(MetadynamicsConfig, data["metadynamics"], "metadynamics")
        if data.get("metadynamics")
        else None
    )
    return CVKitConfig(actions=actions, metric=metric, metadynamics=metadynamics)
