"""
Spherical harmonics of bond directions.

For a bond vector d = (x, y, z) of length r the harmonic of order L is

    Y_lm(d) = N_lm * P_l^(m)(z / r) * ((x + i y) / r)^m

where P_l^(m) is the m-th derivative of the Legendre polynomial and N_lm
carries the normalization and the Condon-Shortley sign. Only m >= 0 is
computed; the negative orders follow from Y_l,-m = (-1)^m conj(Y_lm).
"""

import math
from typing import List, Optional, Sequence, Tuple

from cvkit.data.const import FOUR_PI, MAX_ANGULAR_ORDER
from cvkit.data.types import AtomicState
from cvkit.model.colvars.base import Capabilities, VectorAction
from cvkit.model.engine.errors import ConfigurationError, NumericalError
from cvkit.model.engine.quantity import Quantity, TaskRecord

# Legendre polynomial coefficients, lowest power first
LEGENDRE_COEFFICIENTS = {
    0: (1.0,),
    1: (0.0, 1.0),
    2: (-0.5, 0.0, 1.5),
    3: (0.0, -1.5, 0.0, 2.5),
    4: (0.375, 0.0, -3.75, 0.0, 4.375),
    5: (0.0, 1.875, 0.0, -8.75, 0.0, 7.875),
    6: (-0.3125, 0.0, 6.5625, 0.0, -19.6875, 0.0, 14.4375),
}

# Derivative slots of the quantities returned by spherical_harmonic
DIRECTION_SLOTS = (0, 1, 2)
WEIGHT_SLOT = 3


def check_order(l: int) -> int:
    if not isinstance(l, int) or isinstance(l, bool) or l not in LEGENDRE_COEFFICIENTS:
        raise ConfigurationError(
            f"unsupported order {l!r} for spherical harmonics, use 0 to {MAX_ANGULAR_ORDER}"
        )
    return l


def normalization_factors(l: int) -> List[float]:
    """sqrt((2L+1)(L-m)! / (4 pi (L+m)!)) for m = 0..L, negated for odd m."""
    factors = []
    for m in range(l + 1):
        norm = math.sqrt((2 * l + 1) * math.factorial(l - m) / (FOUR_PI * math.factorial(l + m)))
        factors.append(-norm if m % 2 == 1 else norm)
    return factors


def component_names(l: int) -> List[str]:
    """Real parts for m = -L..L followed by the imaginary parts."""
    orders = range(-l, l + 1)
    return [f"rm-[{m}]" for m in orders] + [f"im-[{m}]" for m in orders]


def deriv_poly(m: int, x: float, l: int, normaliz: Optional[Sequence[float]] = None) -> Tuple[float, float]:
    """
    Normalized m-th derivative of the Legendre polynomial of order l at x.

    Args:
        m: Derivative order (0 <= m <= l)
        x: Evaluation point, z / r
        l: Polynomial order
        normaliz: Precomputed normalization factors, computed if omitted

    Returns:
        value: N_lm * d^m P_l / dx^m
        derivative: Derivative of value with respect to x
    """
    coeffs = LEGENDRE_COEFFICIENTS[check_order(l)]
    if normaliz is None:
        normaliz = normalization_factors(l)
    res = coeffs[m] * math.factorial(m)
    df = 0.0
    xi, dxi, power = x, 1.0, 1.0
    for i in range(m + 1, l + 1):
        # i! / (i - m)!
        fact = math.factorial(i) / math.factorial(i - m)
        res += coeffs[i] * fact * xi
        df += power * coeffs[i] * fact * dxi
        xi *= x
        dxi *= x
        power += 1.0
    return normaliz[m] * res, normaliz[m] * df


def spherical_harmonic(l: int, direction: Sequence[float], weight: float = 1.0) -> List[Quantity]:
    """
    Weighted spherical harmonic components of one direction.

    Args:
        l: Angular order, 0 to 6
        direction: Bond vector (x, y, z), need not be normalized
        weight: Multiplies every component

    Returns:
        2 * (2L + 1) quantities ordered as ``component_names(l)``. Derivative
        slots 0..2 are with respect to the direction vector and slot 3 with
        respect to the weight.
    """
    check_order(l)
    x, y, z = (float(c) for c in direction)
    r2 = x * x + y * y + z * z
    if r2 == 0.0:
        raise NumericalError("spherical harmonics are undefined for a zero-length direction")
    r = math.sqrt(r2)
    r3 = r2 * r
    normaliz = normalization_factors(l)
    out = [Quantity(WEIGHT_SLOT + 1) for _ in range(2 * (2 * l + 1))]
    im0 = 3 * l + 1

    def deposit(k: int, value: float, grad: Sequence[float]) -> None:
        out[k].add_value(weight * value)
        for slot, g in zip(DIRECTION_SLOTS, grad):
            out[k].add_derivative(slot, weight * g)
        out[k].add_derivative(WEIGHT_SLOT, value)

    # d(z/r)/d(x, y, z)
    dz = [-z * x / r3, -z * y / r3, -z * z / r3 + 1.0 / r]

    poly, dpoly = deriv_poly(0, z / r, l, normaliz)
    deposit(l, poly, [dpoly * c for c in dz])

    com1 = complex(x / r, y / r)
    powered = complex(1.0, 0.0)
    for m in range(1, l + 1):
        poly, dpoly = deriv_poly(m, z / r, l, normaliz)
        zm = com1 * powered
        # d((x + iy) / r)^m / d(x, y, z)
        dp = [
            m * powered * complex(1.0 / r - x * x / r3, -x * y / r3),
            m * powered * complex(-x * y / r3, 1.0 / r - y * y / r3),
            m * powered * complex(-x * z / r3, -y * z / r3),
        ]
        real_grad = [dpoly * zm.real * dz[b] + poly * dp[b].real for b in range(3)]
        imag_grad = [dpoly * zm.imag * dz[b] + poly * dp[b].imag for b in range(3)]
        deposit(l + m, poly * zm.real, real_grad)
        deposit(im0 + m, poly * zm.imag, imag_grad)
        pref = -1.0 if m % 2 == 1 else 1.0
        deposit(l - m, pref * poly * zm.real, [pref * g for g in real_grad])
        deposit(im0 - m, -pref * poly * zm.imag, [-pref * g for g in imag_grad])
        powered *= com1
    return out


class RationalSwitch:
    """
    s(r) = (1 - (r/r0)^n) / (1 - (r/r0)^m), zero beyond d_max.

    Args:
        r0: Switching distance
        nn: Numerator exponent
        mm: Denominator exponent, 2 * nn when 0
        d_max: Cutoff, no cutoff when None
    """

    def __init__(self, r0: float, nn: int = 6, mm: int = 0, d_max: Optional[float] = None):
        if r0 <= 0:
            raise ConfigurationError(f"switching function r0 must be positive, got {r0}")
        if mm == 0:
            mm = 2 * nn
        if nn <= 0 or mm <= 0 or nn == mm:
            raise ConfigurationError(f"invalid switching exponents nn={nn} mm={mm}")
        self.r0 = float(r0)
        self.nn = int(nn)
        self.mm = int(mm)
        self.d_max = float(d_max) if d_max is not None else math.inf

    def __call__(self, r: float) -> Tuple[float, float]:
        """Returns s(r) and ds/dr / r."""
        if r >= self.d_max:
            return 0.0, 0.0
        x = r / self.r0
        if abs(x - 1.0) < 1.0e-8:
            value = self.nn / self.mm
            dfunc = 0.5 * self.nn * (self.nn - self.mm) / self.mm
        else:
            num = 1.0 - x ** self.nn
            den = 1.0 - x ** self.mm
            value = num / den
            dfunc = (-self.nn * x ** (self.nn - 1) * den + self.mm * x ** (self.mm - 1) * num) / (den * den)
        # chain through x = r / r0
        dfunc /= self.r0
        return value, (dfunc / r if r > 0 else 0.0)

    def describe(self) -> str:
        cutoff = f", d_max={self.d_max:g}" if math.isfinite(self.d_max) else ""
        return f"rational switching r0={self.r0:g} nn={self.nn} mm={self.mm}{cutoff}"


class SphericalHarmonic(VectorAction):
    """
    Switching-weighted sum of spherical harmonics over the bonds of each center.

    For central atom c the components are sum_j s(r_cj) Y_lm(d_cj) over the
    neighbor atoms j != c inside the cutoff. Each task additionally publishes
    ``norm = sum_m |Q_lm|^2``.

    Args:
        label: Action label
        l: Angular order, 0 to 6
        centers: Global indices of the central atoms (one task each)
        neighbors: Global indices of the neighbor atoms, the centers if None
        switching: Bond weight as a function of distance
    """

    capabilities = Capabilities(reads_atoms=True)

    def __init__(
        self,
        label: str,
        l: int,
        centers: Sequence[int],
        switching: RationalSwitch,
        neighbors: Optional[Sequence[int]] = None,
    ):
        self.l = check_order(l)
        centers = [int(a) for a in centers]
        neighbors = centers if neighbors is None else [int(a) for a in neighbors]
        if not centers:
            raise ConfigurationError(f"{label}: at least one central atom should be specified")
        atoms = list(dict.fromkeys(centers + neighbors))
        super().__init__(label, atoms=atoms)
        local = {a: i for i, a in enumerate(self.atoms)}
        self.centers = centers
        self.neighbors = neighbors
        self._center_local = [local[a] for a in centers]
        self._neighbor_local = [local[a] for a in neighbors]
        self.switching = switching
        self._names = component_names(self.l)

    @property
    def nelements(self) -> int:
        return len(self.centers)

    def component_names(self) -> List[str]:
        return self._names + ["norm"]

    @property
    def components(self) -> List[str]:
        return [f"{self.label}.{name}" for name in self.component_names()]

    def describe(self) -> str:
        return (
            f"{self.label}: calculating {self.l}th order spherical harmonics around atoms "
            f"{' '.join(str(a) for a in self.centers)} with {self.switching.describe()}"
        )

    def ntasks(self, state: AtomicState) -> int:
        return len(self.centers)

    def perform_task(
        self,
        task: int,
        state: AtomicState,
        derivatives: bool = True,
        upstream: Optional[TaskRecord] = None,
    ) -> TaskRecord:
        ncomp = len(self._names)
        record = TaskRecord(task, ncomp + 1, self.nderivatives)
        center, ic = self.centers[task], self._center_local[task]
        for neighbor, jn in zip(self.neighbors, self._neighbor_local):
            if neighbor == center:
                continue
            d = state.displacement(center, neighbor)
            r = math.sqrt(d[0] * d[0] + d[1] * d[1] + d[2] * d[2])
            if r == 0.0:
                continue
            s, dfunc = self.switching(r)
            if s == 0.0 and dfunc == 0.0:
                continue
            for k, q in enumerate(spherical_harmonic(self.l, d, s)):
                record[k].add_value(q.value)
                if derivatives:
                    dw = q.get_derivative(WEIGHT_SLOT)
                    der = [q.get_derivative(b) + dw * dfunc * d[b] for b in DIRECTION_SLOTS]
                    self.add_bond_derivatives(record[k], ic, jn, der, d)

        norm = record[ncomp]
        for k in range(ncomp):
            q = record[k]
            norm.add_value(q.value * q.value)
            for idx, der in q.items():
                norm.add_derivative(idx, 2.0 * q.value * der)
        return record
