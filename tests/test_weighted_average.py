"""Tests for weighted averages of atomic positions (virtual atoms)."""

import pytest
import torch

from conftest import moved
from cvkit.data.types import AtomicState
from cvkit.model.colvars.weighted_average import WeightedAverage
from cvkit.model.engine.errors import ConfigurationError, DegenerateWeightError
from cvkit.model.engine.streams import ArgumentStream, ForceAccumulator
from cvkit.model.engine.tasks import TaskEvaluator, evaluate

EPS = 1e-6


def com_x(state: AtomicState) -> float:
    action = WeightedAverage("com", [0, 1, 2], weights="@masses")
    return evaluate(action, state)["com.x"].value


class TestCenterOfMass:

    def test_value(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        out = evaluate(action, three_atoms)
        assert out["com.x"].value == pytest.approx(0.5)
        assert out["com.y"].value == pytest.approx(0.25)
        assert out["com.z"].value == pytest.approx(0.0)
        torch.testing.assert_close(action.position, torch.tensor([0.5, 0.25, 0.0], dtype=torch.float64))
        assert action.total_weight == pytest.approx(4.0)

    def test_mass_shortcut(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], mass=True)
        assert action.mode == "masses"
        assert evaluate(action, three_atoms)["com.y"].value == pytest.approx(0.25)

    def test_derivative_matches_finite_difference(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        out = evaluate(action, three_atoms)
        # x of the second local atom
        analytic = float(out["com.x"].derivatives[3])
        assert analytic == pytest.approx(0.5)
        numeric = (com_x(moved(three_atoms, 1, 0, EPS)) - com_x(moved(three_atoms, 1, 0, -EPS))) / (2 * EPS)
        assert numeric == pytest.approx(analytic, abs=1e-6)

    def test_cross_components_vanish(self, three_atoms):
        out = evaluate(WeightedAverage("com", [0, 1, 2], weights="@masses"), three_atoms)
        der = out["com.x"].derivatives
        for atom in range(3):
            assert der[3 * atom + 1] == 0.0
            assert der[3 * atom + 2] == 0.0

    def test_geometric_center(self, three_atoms):
        out = evaluate(WeightedAverage("c", [0, 1, 2]), three_atoms)
        assert out["c.x"].value == pytest.approx(1.0 / 3.0)
        assert out["c.y"].value == pytest.approx(1.0 / 3.0)

    def test_center_of_charge(self, three_atoms):
        out = evaluate(WeightedAverage("coc", [0, 1, 2], weights="@charges"), three_atoms)
        assert out["coc.x"].value == pytest.approx(-0.5 / 2.5)
        assert out["coc.y"].value == pytest.approx(2.0 / 2.5)

    def test_literal_weights(self, three_atoms):
        out = evaluate(WeightedAverage("w", [1, 2], weights=[3.0, 1.0]), three_atoms)
        assert out["w.x"].value == pytest.approx(0.75)
        assert out["w.y"].value == pytest.approx(0.25)

    def test_threads_match_serial(self, cluster):
        serial = evaluate(WeightedAverage("g", [0, 1, 2, 3, 4, 5], weights="@masses"), cluster)
        threaded = TaskEvaluator(num_workers=3).evaluate(
            WeightedAverage("g", [0, 1, 2, 3, 4, 5], weights="@masses"), cluster
        )
        for name in serial:
            assert threaded[name].value == pytest.approx(serial[name].value)
            torch.testing.assert_close(threaded[name].derivatives, serial[name].derivatives)

    def test_without_derivatives(self, three_atoms):
        out = evaluate(WeightedAverage("com", [0, 1, 2], weights="@masses"), three_atoms, derivatives=False)
        assert out["com.x"].value == pytest.approx(0.5)
        assert out["com.x"].derivatives is None

    def test_description(self):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        assert action.describe() == "com: computing the center of mass of atoms: 0 1 2"


class TestStreamWeights:

    def evaluate_with(self, state, weights):
        stream = ArgumentStream.from_values("w", weights)
        action = WeightedAverage("wc", [0, 1, 2], weights=stream)
        return action, evaluate(action, state)

    def test_value_is_weighted_mean(self, three_atoms):
        _, out = self.evaluate_with(three_atoms, [1.0, 2.0, 1.0])
        assert out["wc.x"].value == pytest.approx(0.5)

    def test_weight_derivative_follows_quotient_rule(self, three_atoms):
        action, out = self.evaluate_with(three_atoms, [1.0, 2.0, 1.0])
        offset = action.argument_offset(0)
        der = out["wc.x"].derivatives[offset:offset + 3]
        # (x_k - X) / W
        torch.testing.assert_close(der, torch.tensor([-0.125, 0.125, -0.125], dtype=torch.float64))

    @pytest.mark.parametrize("k", [0, 1, 2])
    def test_weight_derivative_matches_finite_difference(self, three_atoms, k):
        weights = [1.0, 2.0, 1.0]
        action, out = self.evaluate_with(three_atoms, weights)
        analytic = float(out["wc.y"].derivatives[action.argument_offset(0) + k])
        plus, minus = list(weights), list(weights)
        plus[k] += EPS
        minus[k] -= EPS
        numeric = (
            self.evaluate_with(three_atoms, plus)[1]["wc.y"].value
            - self.evaluate_with(three_atoms, minus)[1]["wc.y"].value
        ) / (2 * EPS)
        assert numeric == pytest.approx(analytic, abs=1e-6)

    def test_stream_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            WeightedAverage("wc", [0, 1, 2], weights=ArgumentStream.from_values("w", [1.0, 2.0]))


class TestForces:

    def test_forces_reach_atoms_and_virial(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        evaluate(action, three_atoms)
        accumulator = ForceAccumulator(three_atoms.natoms)
        action.apply_forces([1.0, 0.0, 0.0], accumulator)
        torch.testing.assert_close(accumulator.atoms[:, 0], torch.tensor([0.25, 0.5, 0.25], dtype=torch.float64))
        assert accumulator.atoms[:, 1:].abs().sum() == 0
        # d(X)/d(box) for a position-like quantity is -X_a in column b = x
        torch.testing.assert_close(accumulator.virial[:, 0], torch.tensor([-0.5, -0.25, 0.0], dtype=torch.float64))

    def test_forces_by_name(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        evaluate(action, three_atoms)
        accumulator = ForceAccumulator(three_atoms.natoms)
        action.apply_forces({"com.y": 2.0}, accumulator)
        torch.testing.assert_close(accumulator.atoms[:, 1], torch.tensor([0.5, 1.0, 0.5], dtype=torch.float64))

    def test_forces_reach_leaf_stream(self, three_atoms):
        stream = ArgumentStream.from_values("w", [1.0, 2.0, 1.0])
        action = WeightedAverage("wc", [0, 1, 2], weights=stream)
        evaluate(action, three_atoms)
        accumulator = ForceAccumulator(three_atoms.natoms)
        action.apply_forces([1.0, 0.0, 0.0], accumulator)
        torch.testing.assert_close(accumulator.arguments["w"], torch.tensor([-0.125, 0.125, -0.125], dtype=torch.float64))

    def test_forces_before_evaluation(self):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        with pytest.raises(ConfigurationError):
            action.apply_forces([1.0, 0.0, 0.0], ForceAccumulator(3))


class TestFaults:

    def test_degenerate_total_weight(self, three_atoms):
        action = WeightedAverage("bad", [0, 1], weights=[1.0, -1.0])
        with pytest.raises(DegenerateWeightError) as info:
            evaluate(action, three_atoms)
        assert info.value.label == "bad"
        assert info.value.step == 7
        assert "bad" in str(info.value)

    def test_missing_masses(self):
        state = AtomicState(positions=torch.zeros(2, 3, dtype=torch.float64))
        with pytest.raises(ConfigurationError, match="masses"):
            evaluate(WeightedAverage("com", [0, 1], weights="@masses"), state)

    def test_nan_mass(self):
        state = AtomicState(
            positions=torch.zeros(2, 3, dtype=torch.float64),
            masses=torch.tensor([1.0, float("nan")], dtype=torch.float64),
        )
        with pytest.raises(ConfigurationError):
            evaluate(WeightedAverage("com", [0, 1], weights="@masses"), state)

    def test_masses_checked_on_every_step(self, three_atoms):
        action = WeightedAverage("com", [0, 1, 2], weights="@masses")
        assert evaluate(action, three_atoms)["com.x"].value == pytest.approx(0.5)
        later = AtomicState(positions=three_atoms.positions.clone(), step=8)
        with pytest.raises(ConfigurationError, match="masses"):
            evaluate(action, later)

    def test_non_finite_stream_weight(self, three_atoms):
        weights = ArgumentStream.from_values("w", [1.0, float("nan"), 1.0])
        with pytest.raises(DegenerateWeightError, match="total weight"):
            evaluate(WeightedAverage("c", [0, 1, 2], weights=weights), three_atoms)

    def test_missing_charges(self):
        state = AtomicState(positions=torch.zeros(2, 3, dtype=torch.float64))
        with pytest.raises(ConfigurationError, match="charges"):
            evaluate(WeightedAverage("coc", [0, 1], weights="@charges"), state)

    def test_literal_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            WeightedAverage("w", [0, 1, 2], weights=[1.0, 2.0])

    def test_mass_and_weights(self):
        with pytest.raises(ConfigurationError):
            WeightedAverage("w", [0, 1], weights=[1.0, 2.0], mass=True)

    def test_unknown_weight_keyword(self):
        with pytest.raises(ConfigurationError):
            WeightedAverage("w", [0, 1], weights="@volumes")

    def test_no_atoms(self):
        with pytest.raises(ConfigurationError):
            WeightedAverage("w", [])
