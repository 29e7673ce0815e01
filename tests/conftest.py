"""Shared fixtures for the cvkit test suite."""

import pytest
import torch

from cvkit.data.types import AtomicState
from cvkit.model.colvars.grid import Grid


def moved(state: AtomicState, atom: int, component: int, delta: float) -> AtomicState:
    """Copy of ``state`` with one coordinate shifted by ``delta``."""
    positions = state.positions.clone()
    positions[atom, component] += delta
    return AtomicState(
        positions=positions,
        masses=state.masses,
        charges=state.charges,
        box=state.box,
        step=state.step,
    )


@pytest.fixture
def three_atoms():
    """Three atoms at (0,0,0), (1,0,0), (0,1,0) with masses (1, 2, 1)."""
    return AtomicState(
        positions=torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=torch.float64),
        masses=torch.tensor([1.0, 2.0, 1.0], dtype=torch.float64),
        charges=torch.tensor([1.0, -0.5, 2.0], dtype=torch.float64),
        step=7,
    )


@pytest.fixture
def cluster():
    """A small irregular cluster used by the spherical harmonic tests."""
    positions = torch.tensor(
        [
            [0.0, 0.0, 0.0],
            [1.1, 0.2, -0.3],
            [-0.4, 0.9, 0.5],
            [0.3, -0.7, 1.0],
            [-0.8, -0.6, -0.4],
            [2.9, 0.1, 0.0],
        ],
        dtype=torch.float64,
    )
    return AtomicState(positions=positions, masses=torch.ones(6, dtype=torch.float64))


@pytest.fixture
def line_grid():
    """One dimensional grid on [0, 10] with unit spacing (11 points)."""
    return Grid(names=["s"], mins=[0.0], maxs=[10.0], nbins=[10])
