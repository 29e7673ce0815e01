"""
Adaptive metric for hills whose shape follows the collective variables.

Two ways of estimating the (co)variance matrix are supported:

- diffusion: exponentially weighted running covariance of the arguments,
  updated every step with decay 1 / tau
- geometry: width^2 times the projection of the argument gradients onto each
  other, updated only when a hill is deposited

The matrix is stored as its upper triangle, row by row:
(0,0), (0,1), ..., (0,n-1), (1,1), ..., (n-1,n-1).

Before inversion the eigenvalues are clamped so that the hill widths stay
inside the optional per-dimension sigma bounds.
"""

import math
from typing import List, Optional, Sequence, Tuple

import torch

from cvkit.data.const import METRIC_MODES
from cvkit.model.engine.errors import ConfigurationError, DegenerateMatrixError
from cvkit.model.engine.quantity import Quantity

Periodicity = Optional[Tuple[float, float]]


def triangle_size(ncv: int) -> int:
    return ncv * (ncv + 1) // 2


def upper_triangle(matrix: torch.Tensor) -> torch.Tensor:
    rows, cols = torch.triu_indices(matrix.shape[0], matrix.shape[1])
    return matrix[rows, cols]


def symmetric_from_upper(upper: torch.Tensor, ncv: int) -> torch.Tensor:
    matrix = torch.zeros(ncv, ncv, dtype=torch.float64)
    rows, cols = torch.triu_indices(ncv, ncv)
    matrix[rows, cols] = upper
    matrix[cols, rows] = upper
    return matrix


class AdaptiveMetric:
    """
    Running covariance / gradient-projection matrix with bounded inverse.

    Args:
        names: Names of the tracked arguments
        mode: "diffusion" or "geometry"
        tau: Decay time in steps (diffusion mode)
        width: Hill width in the argument gradient norm (geometry mode)
        sigma_min: Lower bound on the hill width per argument, <= 0 for none
        sigma_max: Upper bound on the hill width per argument, <= 0 for none
        periodic: (min, max) domain per argument, None if not periodic
        label: Name used in error messages
    """

    def __init__(
        self,
        names: Sequence[str],
        mode: str = "diffusion",
        tau: Optional[float] = None,
        width: Optional[float] = None,
        sigma_min: Optional[Sequence[float]] = None,
        sigma_max: Optional[Sequence[float]] = None,
        periodic: Optional[Sequence[Periodicity]] = None,
        label: str = "metric",
    ):
        self.names = list(names)
        self.ncv = len(self.names)
        self.label = label
        if self.ncv == 0:
            raise ConfigurationError(f"{label}: the adaptive metric needs at least one argument")
        if mode not in METRIC_MODES:
            raise ConfigurationError(f"{label}: unknown metric mode {mode!r}, use one of {METRIC_MODES}")
        self.mode = mode
        if mode == "diffusion":
            if tau is None or tau <= 0:
                raise ConfigurationError(f"{label}: diffusion mode needs a positive tau, got {tau}")
            self.decay = 1.0 / tau
        else:
            if width is None or width <= 0:
                raise ConfigurationError(f"{label}: geometry mode needs a positive width, got {width}")
        self.tau = tau
        self.width = width

        sigma_min = list(sigma_min) if sigma_min is not None else [-1.0] * self.ncv
        sigma_max = list(sigma_max) if sigma_max is not None else [-1.0] * self.ncv
        if len(sigma_min) != self.ncv or len(sigma_max) != self.ncv:
            raise ConfigurationError(
                f"{label}: sigma bounds need one value per argument ({self.ncv})"
            )
        self.limit_min = [s > 0 for s in sigma_min]
        self.limit_max = [s > 0 for s in sigma_max]
        # the matrix holds sigma^2, so the bounds are kept squared
        self.sigma_min2 = [s * s if s > 0 else 0.0 for s in sigma_min]
        self.sigma_max2 = [s * s if s > 0 else 0.0 for s in sigma_max]

        periodic = list(periodic) if periodic is not None else [None] * self.ncv
        if len(periodic) != self.ncv:
            raise ConfigurationError(f"{label}: periodicity needs one entry per argument ({self.ncv})")
        for name, domain in zip(self.names, periodic):
            if domain is not None and not domain[1] > domain[0]:
                raise ConfigurationError(f"{label}: periodic domain of {name} is empty: {domain}")
        self.periodic: List[Periodicity] = periodic

        self.reset()

    def reset(self) -> None:
        """Forget the running mean and the covariance."""
        self.mean: Optional[List[float]] = None
        self.covariance = torch.zeros(triangle_size(self.ncv), dtype=torch.float64)
        self.nupdates = 0

    def difference(self, i: int, origin: float, target: float) -> float:
        delta = target - origin
        domain = self.periodic[i]
        if domain is not None:
            period = domain[1] - domain[0]
            delta -= period * math.floor(delta / period + 0.5)
        return delta

    def bring_back(self, i: int, value: float) -> float:
        domain = self.periodic[i]
        if domain is None:
            return value
        period = domain[1] - domain[0]
        return domain[0] + (value - domain[0]) % period

    def update(
        self,
        values: Sequence[float],
        deposit: bool = False,
        gradients: Optional[Sequence[Quantity]] = None,
    ) -> None:
        """
        Advance the estimate by one step.

        Args:
            values: Current argument values
            deposit: Whether a hill is deposited this step (geometry mode)
            gradients: Argument quantities whose derivatives are projected onto
                       each other (geometry mode, required when depositing)
        """
        values = [float(v) for v in values]
        if len(values) != self.ncv:
            raise ConfigurationError(f"{self.label}: got {len(values)} values for {self.ncv} arguments")
        self.nupdates += 1

        if self.mode == "diffusion":
            if self.mean is None:
                self.mean = values
                return
            delta = [self.difference(i, self.mean[i], values[i]) for i in range(self.ncv)]
            self.mean = [
                self.bring_back(i, self.mean[i] + self.decay * delta[i]) for i in range(self.ncv)
            ]
            k = 0
            for i in range(self.ncv):
                for j in range(i, self.ncv):
                    self.covariance[k] += self.decay * (delta[i] * delta[j] - self.covariance[k])
                    k += 1
            return

        if not deposit:
            return
        if gradients is None or len(gradients) != self.ncv:
            raise ConfigurationError(
                f"{self.label}: geometry mode needs one gradient per argument when depositing"
            )
        k = 0
        for i in range(self.ncv):
            for j in range(i, self.ncv):
                self.covariance[k] = self.width * self.width * gradients[i].project(gradients[j])
                k += 1

    def matrix(self) -> torch.Tensor:
        """Upper triangle of the current (co)variance matrix."""
        return self.covariance.clone()

    def full_matrix(self) -> torch.Tensor:
        return symmetric_from_upper(self.covariance, self.ncv)

    def clamped_eigensystem(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Eigen-decomposition with eigenvalues clamped to the sigma bounds.

        Returns:
            eigenvalues: [ncv] clamped eigenvalues
            eigenvectors: [ncv, ncv], row j is eigenvector j
        """
        matrix = self.full_matrix()
        if not torch.isfinite(matrix).all():
            raise DegenerateMatrixError(
                "adaptive metric contains non-finite entries", label=self.label, step=self.nupdates
            )
        try:
            eigvals, eigvecs = torch.linalg.eigh(matrix)
        except RuntimeError as e:
            raise DegenerateMatrixError(
                f"diagonalization of the adaptive metric failed: {e}", label=self.label, step=self.nupdates
            ) from e
        lam = eigvals.tolist()
        vecs = eigvecs.T.tolist()
        n = self.ncv

        for i in range(n):
            if not self.limit_max[i]:
                continue
            # every component larger than the bound is limited
            for j in range(n):
                if (lam[j] * vecs[j][i]) ** 2 > self.sigma_max2[i] ** 2:
                    lam[j] = abs(self.sigma_max2[i] / vecs[j][i]) * math.copysign(1.0, lam[j])

        for i in range(n):
            if not self.limit_min[i]:
                continue
            # the largest component is rescaled if it is still below the bound;
            # eigenvectors orthogonal to dimension i cannot be rescaled along it
            imax, fmax = None, -1.0e10
            for j in range(n):
                if vecs[j][i] == 0.0:
                    continue
                fact = (lam[j] * vecs[j][i]) ** 2
                if fact > fmax:
                    imax, fmax = j, fact
            if imax is None:
                raise DegenerateMatrixError(
                    f"cannot impose sigma_min on {self.names[i]}: no eigenvector has a component along it",
                    label=self.label,
                    step=self.nupdates,
                )
            if fmax < self.sigma_min2[i] ** 2:
                lam[imax] = abs(self.sigma_min2[i] / vecs[imax][i]) * math.copysign(1.0, lam[imax])

        return torch.tensor(lam, dtype=torch.float64), torch.tensor(vecs, dtype=torch.float64)

    def inverse_full_matrix(self) -> torch.Tensor:
        lam, vecs = self.clamped_eigensystem()
        if (lam == 0).any() or not torch.isfinite(lam).all():
            raise DegenerateMatrixError(
                "adaptive metric has a zero eigenvalue and cannot be inverted",
                label=self.label,
                step=self.nupdates,
            )
        # sum_j v_j v_j^T / lambda_j
        return vecs.T @ torch.diag(1.0 / lam) @ vecs

    def inverse_matrix(self) -> torch.Tensor:
        """Upper triangle of the bounded inverse."""
        return upper_triangle(self.inverse_full_matrix())

    def sigmas(self) -> torch.Tensor:
        """Hill width per argument implied by the current matrix."""
        return self.full_matrix().diagonal().clamp(min=0.0).sqrt()

    def describe(self) -> str:
        lines = [f"{self.label}: adaptive metric in {self.mode} mode"]
        lines.append("  Limits for sigmas using adaptive hills:")
        for i, name in enumerate(self.names):
            lo = f"Min {math.sqrt(self.sigma_min2[i]):g}" if self.limit_min[i] else "Min No"
            hi = f"Max {math.sqrt(self.sigma_max2[i]):g}" if self.limit_max[i] else "Max No"
            lines.append(f"   CV {name}: {lo} {hi}")
        return "\n".join(lines)
