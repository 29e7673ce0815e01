"""Tests for the command line interface."""

import json

import click
import numpy as np
import pytest
from click.testing import CliRunner

from cvkit.main import cli, load_state

CONFIG = """\
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
"""


@pytest.fixture
def inputs(tmp_path):
    config = tmp_path / "input.yaml"
    config.write_text(CONFIG)
    state = tmp_path / "state.npz"
    np.savez(
        state,
        positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
        masses=np.array([1.0, 2.0, 1.0]),
        step=np.array(20),
    )
    return config, state


def test_check(inputs):
    config, _ = inputs
    result = CliRunner().invoke(cli, ["check", str(config)])
    assert result.exit_code == 0, result.output
    assert "com: computing the center of mass of atoms: 0 1 2" in result.output
    assert "wc is evaluated in one task loop with q4" in result.output
    assert "dens: grid header" in result.output


def test_check_reports_configuration_errors(tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("actions:\n  - center: {label: c, atoms: [0], colour: red}\n")
    result = CliRunner().invoke(cli, ["check", str(config)])
    assert result.exit_code == 1
    assert "unknown keys" in result.output


def test_evaluate(inputs, tmp_path):
    config, state = inputs
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(cli, ["evaluate", str(config), str(state), "--out_dir", str(out_dir)])
    assert result.exit_code == 0, result.output

    values = json.loads((out_dir / "values.json").read_text())
    assert values["step"] == 20
    assert values["components"]["com.x"] == pytest.approx(0.5)
    assert values["components"]["com.y"] == pytest.approx(0.25)
    assert values["components"]["wc.x"] == pytest.approx(0.0)
    assert len(values["grids"]["dens"]["values"]) == 41
    assert values["grids"]["dens"]["header"]["nbin"] == [40]
    assert values["metadynamics"]["summary"]["n_hills"] == 1
    assert values["bias"]["energy"] == pytest.approx(0.5)
    assert len(values["bias"]["forces"]) == 3

    with np.load(out_dir / "derivatives.npz") as derivatives:
        assert derivatives["com.x"][3] == pytest.approx(0.5)


def test_evaluate_without_derivatives(inputs, tmp_path):
    config, state = inputs
    out_dir = tmp_path / "out"
    with pytest.warns(UserWarning, match="Derivatives are disabled"):
        result = CliRunner().invoke(
            cli, ["evaluate", str(config), str(state), "--out_dir", str(out_dir), "--no-derivatives"]
        )
    assert result.exit_code == 0, result.output
    assert (out_dir / "values.json").exists()
    assert not (out_dir / "derivatives.npz").exists()
    assert "bias" not in json.loads((out_dir / "values.json").read_text())


def test_evaluate_with_workers(inputs, tmp_path):
    config, state = inputs
    result = CliRunner().invoke(
        cli, ["evaluate", str(config), str(state), "--out_dir", str(tmp_path / "out"), "--workers", "2"]
    )
    assert result.exit_code == 0, result.output


def test_numerical_failure_is_reported(tmp_path):
    config = tmp_path / "input.yaml"
    config.write_text("actions:\n  - center: {label: c, atoms: [0, 1], weights: [1.0, -1.0]}\n")
    state = tmp_path / "state.npz"
    np.savez(state, positions=np.zeros((2, 3)))
    result = CliRunner().invoke(cli, ["evaluate", str(config), str(state), "--out_dir", str(tmp_path)])
    assert result.exit_code == 1
    assert "total weight" in result.output


def test_load_state_requires_positions(tmp_path):
    path = tmp_path / "state.npz"
    np.savez(path, masses=np.ones(3))
    with pytest.raises(click.ClickException, match="positions"):
        load_state(path)


def test_load_state(inputs):
    _, state = inputs
    loaded = load_state(state)
    assert loaded.natoms == 3
    assert loaded.step == 20
    assert loaded.mass(1) == 2.0
    assert not loaded.charges_set
