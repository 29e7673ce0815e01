import json
import warnings
from pathlib import Path
from typing import Optional

import click
import numpy as np
import torch

from cvkit.data.parse.yaml import parse_yaml
from cvkit.data.types import AtomicState
from cvkit.model.colvars.factory import ActionSet, build_actions, default_registry
from cvkit.model.colvars.kde import KernelDensity
from cvkit.model.engine.errors import CVError
from cvkit.model.engine.streams import ForceAccumulator
from cvkit.model.engine.tasks import TaskEvaluator


def load_state(path: Path) -> AtomicState:
    """Load an atomic state from an npz file.

    The file must hold ``positions`` ([N, 3]) and may hold ``masses``,
    ``charges``, ``box`` ([3, 3]) and ``step``.

    Parameters
    ----------
    path : Path
        Path to the npz file.

    Returns
    -------
    AtomicState
        The loaded state.

    """
    with np.load(path) as data:
        if "positions" not in data:
            msg = f"{path} does not contain a positions array"
            raise click.ClickException(msg)
        optional = {
            key: torch.from_numpy(np.asarray(data[key], dtype=np.float64))
            for key in ("masses", "charges", "box")
            if key in data
        }
        step = int(data["step"]) if "step" in data else 0
        positions = torch.from_numpy(np.asarray(data["positions"], dtype=np.float64))
    return AtomicState(positions=positions, step=step, **optional)


def build_from_config(config: Path) -> ActionSet:
    return build_actions(parse_yaml(config), default_registry())


def collect_results(
    actions: ActionSet,
    outputs: dict,
    state: AtomicState,
    bias: Optional[dict] = None,
) -> dict:
    """Gather everything worth writing into a JSON serializable dict."""
    results = {
        "step": state.step,
        "components": {name: output.value for name, output in outputs.items()},
    }
    grids = {}
    for action in actions:
        if isinstance(action, KernelDensity) and action.grid_values is not None:
            grids[action.label] = {
                "header": action.header.as_dict(),
                "values": action.grid_values.tolist(),
            }
    if grids:
        results["grids"] = grids
    if actions.metric is not None:
        results["metric"] = {
            "mode": actions.metric.mode,
            "arguments": actions.metric.names,
            "matrix": actions.metric.matrix().tolist(),
            "sigmas": actions.metric.sigmas().tolist(),
        }
    if actions.metadynamics is not None:
        results["metadynamics"] = actions.metadynamics.export_data()
    if bias is not None:
        results["bias"] = bias
    return results


@click.group()
def cli() -> None:
    """cvkit."""
    return


@cli.command()
@click.argument("config", type=click.Path(exists=True))
def check(config: str) -> None:
    """Parse a configuration and describe the actions it creates."""
    try:
        actions = build_from_config(Path(config))
    except CVError as e:
        raise click.ClickException(str(e)) from e
    for line in actions.describe():
        click.echo(line)
    for action in actions:
        if isinstance(action, KernelDensity):
            click.echo(f"{action.label}: grid header {json.dumps(action.header.as_dict())}")


@cli.command()
@click.argument("config", type=click.Path(exists=True))
@click.argument("state", type=click.Path(exists=True))
@click.option(
    "--out_dir",
    type=click.Path(exists=False),
    help="The path where to save the results.",
    default="./",
)
@click.option(
    "--workers",
    type=int,
    help="The number of worker threads used per action. Default is 1.",
    default=1,
)
@click.option(
    "--no-derivatives",
    "no_derivatives",
    is_flag=True,
    help="Only compute values. Default False",
)
def evaluate(
    config: str,
    state: str,
    out_dir: str = "./",
    workers: int = 1,
    no_derivatives: bool = False,
) -> None:
    """Evaluate every action of CONFIG on the atomic STATE (npz)."""
    out_dir = Path(out_dir).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        actions = build_from_config(Path(config))
        atomic_state = load_state(Path(state))
        for line in actions.describe():
            click.echo(line)

        derivatives = not no_derivatives
        if not derivatives and actions.metadynamics is not None:
            warnings.warn("Derivatives are disabled, metadynamics forces will not be computed.")
        outputs = actions.evaluate(atomic_state, TaskEvaluator(workers), derivatives=derivatives)

        bias = None
        if actions.metadynamics is not None and derivatives:
            accumulator = ForceAccumulator(atomic_state.natoms)
            energy = actions.apply_bias(accumulator)
            bias = {"energy": energy, "forces": accumulator.atoms.tolist()}
    except CVError as e:
        raise click.ClickException(str(e)) from e

    results = collect_results(actions, outputs, atomic_state, bias)
    with (out_dir / "values.json").open("w") as f:
        json.dump(results, f, indent=2)

    if derivatives:
        np.savez(
            out_dir / "derivatives.npz",
            **{
                name: output.derivatives.numpy()
                for name, output in outputs.items()
                if output.derivatives is not None
            },
        )
    click.echo(f"Wrote {len(outputs)} components to {out_dir / 'values.json'}")


if __name__ == "__main__":
    cli()
