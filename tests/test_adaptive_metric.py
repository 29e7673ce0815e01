"""Tests for the adaptive metric."""

import math

import pytest
import torch

from cvkit.model.colvars.adaptive_metric import (
    AdaptiveMetric,
    symmetric_from_upper,
    triangle_size,
    upper_triangle,
)
from cvkit.model.engine.errors import ConfigurationError, DegenerateMatrixError
from cvkit.model.engine.quantity import Quantity


def with_matrix(upper, **kwargs):
    kwargs.setdefault("tau", 10.0)
    metric = AdaptiveMetric(["a", "b"], **kwargs)
    metric.covariance = torch.tensor(upper, dtype=torch.float64)
    return metric


class TestTriangles:

    def test_round_trip(self):
        matrix = torch.tensor([[1.0, 2.0, 3.0], [2.0, 4.0, 5.0], [3.0, 5.0, 6.0]], dtype=torch.float64)
        upper = upper_triangle(matrix)
        assert upper.tolist() == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
        torch.testing.assert_close(symmetric_from_upper(upper, 3), matrix)
        assert triangle_size(3) == 6


class TestDiffusion:

    def test_first_update_only_sets_mean(self):
        metric = AdaptiveMetric(["a", "b"], tau=5.0)
        metric.update([1.0, 2.0])
        assert metric.mean == [1.0, 2.0]
        assert metric.matrix().abs().sum() == 0

    def test_converges_to_sample_covariance(self):
        generator = torch.Generator().manual_seed(1234)
        target = torch.tensor([[1.0, 0.5], [0.5, 2.0]], dtype=torch.float64)
        chol = torch.linalg.cholesky(target)
        samples = torch.randn(40000, 2, generator=generator, dtype=torch.float64) @ chol.T + torch.tensor([3.0, -1.0], dtype=torch.float64)
        metric = AdaptiveMetric(["a", "b"], tau=2000.0)
        for row in samples.tolist():
            metric.update(row)
        assert metric.mean == pytest.approx([3.0, -1.0], abs=0.15)
        torch.testing.assert_close(metric.full_matrix(), target, atol=0.25, rtol=0.0)
        assert metric.nupdates == 40000

    def test_single_update_formula(self):
        metric = AdaptiveMetric(["a"], tau=4.0)
        metric.update([0.0])
        metric.update([2.0])
        assert metric.mean == [0.5]
        assert float(metric.matrix()[0]) == pytest.approx(0.25 * 4.0)

    def test_periodic_mean_stays_on_the_boundary(self):
        metric = AdaptiveMetric(["phi"], tau=2.0, periodic=[(-math.pi, math.pi)])
        for _ in range(20):
            metric.update([3.1])
            metric.update([-3.1])
        assert abs(abs(metric.mean[0]) - math.pi) < 0.1
        # the spread is measured across the boundary, not across the domain
        assert float(metric.matrix()[0]) < 0.1

    def test_reset(self):
        metric = AdaptiveMetric(["a"], tau=2.0)
        metric.update([1.0])
        metric.update([3.0])
        metric.reset()
        assert metric.mean is None
        assert metric.nupdates == 0
        assert metric.matrix().abs().sum() == 0


class TestGeometry:

    def test_projection_of_gradients(self):
        metric = AdaptiveMetric(["a", "b"], mode="geometry", width=0.5)
        ga = Quantity.from_items(4, 0.0, [(0, 1.0)])
        gb = Quantity.from_items(4, 0.0, [(0, 1.0), (1, 1.0)])
        metric.update([0.0, 0.0], deposit=False, gradients=[ga, gb])
        assert metric.matrix().abs().sum() == 0
        metric.update([0.0, 0.0], deposit=True, gradients=[ga, gb])
        assert metric.matrix().tolist() == pytest.approx([0.25, 0.25, 0.5])

    def test_missing_gradients(self):
        metric = AdaptiveMetric(["a"], mode="geometry", width=1.0)
        with pytest.raises(ConfigurationError):
            metric.update([0.0], deposit=True)


class TestInverse:

    def test_unbounded_inverse(self):
        metric = with_matrix([2.0, 0.3, 1.0])
        expected = torch.linalg.inv(metric.full_matrix())
        torch.testing.assert_close(metric.inverse_full_matrix(), expected)
        torch.testing.assert_close(metric.inverse_matrix(), upper_triangle(expected))

    def test_sigma_max_limits_the_wide_direction(self):
        metric = with_matrix([4.0, 0.0, 0.01], sigma_max=[1.0, -1.0])
        assert metric.inverse_matrix().tolist() == pytest.approx([1.0, 0.0, 100.0])

    def test_sigma_min_widens_the_narrow_direction(self):
        metric = with_matrix([1.0e-4, 0.0, 1.0], sigma_min=[0.1, -1.0])
        assert metric.inverse_matrix().tolist() == pytest.approx([100.0, 0.0, 1.0])

    def test_clamping_reduces_spread(self):
        metric = with_matrix([4.0, 0.0, 0.01])
        before = metric.clamped_eigensystem()[0]
        metric.limit_max = [True, False]
        metric.sigma_max2 = [1.0, 0.0]
        after = metric.clamped_eigensystem()[0]
        assert float(after.max() / after.min()) < float(before.max() / before.min())

    def test_zero_matrix_with_lower_bounds(self):
        metric = with_matrix([0.0, 0.0, 0.0], sigma_min=[0.5, 0.2])
        assert metric.inverse_matrix().tolist() == pytest.approx([4.0, 0.0, 25.0])

    def test_zero_matrix_without_bounds(self):
        metric = with_matrix([0.0, 0.0, 0.0])
        with pytest.raises(DegenerateMatrixError):
            metric.inverse_matrix()

    def test_non_finite_matrix(self):
        metric = with_matrix([float("nan"), 0.0, 1.0])
        with pytest.raises(DegenerateMatrixError) as info:
            metric.clamped_eigensystem()
        assert info.value.label == "metric"

    def test_sigmas(self):
        metric = with_matrix([4.0, 0.1, 0.25])
        assert metric.sigmas().tolist() == pytest.approx([2.0, 0.5])


class TestConfiguration:

    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(mode="diffusion"),
            dict(mode="diffusion", tau=0.0),
            dict(mode="geometry"),
            dict(mode="random", tau=1.0),
            dict(tau=1.0, sigma_min=[0.1]),
            dict(tau=1.0, periodic=[(1.0, 1.0), None]),
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            AdaptiveMetric(["a", "b"], **kwargs)

    def test_no_arguments(self):
        with pytest.raises(ConfigurationError):
            AdaptiveMetric([], tau=1.0)

    def test_value_count(self):
        with pytest.raises(ConfigurationError):
            AdaptiveMetric(["a", "b"], tau=1.0).update([1.0])

    def test_describe(self):
        text = AdaptiveMetric(["a", "b"], tau=1.0, sigma_min=[0.1, -1.0]).describe()
        assert "CV a: Min 0.1 Max No" in text
        assert "CV b: Min No Max No" in text
