from pathlib import Path
from typing import Union

import yaml

from cvkit.data.parse.schema import CVKitConfig, parse_cvkit_schema
from cvkit.model.engine.errors import ConfigurationError


def parse_yaml(path: Union[str, Path]) -> CVKitConfig:
    """Parse a cvkit input yaml.

    The input file should be a yaml file with the following format:

    actions:
        - center:
            label: com
            atoms: [0, 1, 2]
            weights: "@masses"
        - spherical_harmonic:
            label: q4
            l: 4
            centers: [0]
            neighbors: [1, 2]
            switching: {r0: 1.5, nn: 6, mm: 12, d_max: 3.0}
        - center:
            label: wc
            atoms: [0]
            weights: q4.norm
        - kde:
            label: dens
            arguments: [com.x]
            bandwidth: [0.2]
            grid:
                - {min: -2, max: 2, nbin: 40}
    metric:
        mode: diffusion
        arguments: [com.x, com.y]
        tau: 100
        sigma_min: [0.05, 0.05]
    metadynamics:
        arguments: [com.x, com.y]
        height: 0.5
        pace: 10
        bias_factor: 10.0

    Parameters
    ----------
    path : Path
        Path to the YAML input file.

    Returns
    -------
    CVKitConfig
        The parsed configuration.

    """
    path = Path(path)
    try:
        with path.open("r") as file:
            data = yaml.safe_load(file)
    except yaml.YAMLError as e:
        msg = f"Could not parse {path}: {e}"
        raise ConfigurationError(msg) from e

    if data is None:
        msg = f"Input file {path} is empty"
        raise ConfigurationError(msg)
    return parse_cvkit_schema(data)
