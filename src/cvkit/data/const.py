"""Constants shared across cvkit."""

import math

# Derivative slots per atom and for the box (virial) derivatives
ATOM_DERIVATIVES = 3
VIRIAL_DERIVATIVES = 9

# Total weights below this are treated as degenerate
WEIGHT_EPSILON = 1.0e-12

# Highest angular order with tabulated Legendre coefficients
MAX_ANGULAR_ORDER = 6

# Gaussian kernels vanish where 0.5 * d^2 / sigma^2 exceeds DP2CUTOFF
DP2CUTOFF = 6.25

# Relative tolerance for bin count x spacing == max - min
GRID_TOLERANCE = 1.0e-6

FOUR_PI = 4.0 * math.pi

KERNEL_TYPES = ("gaussian", "triangular")
NORMALIZATIONS = ("none", "true", "ndata")
METRIC_MODES = ("diffusion", "geometry")
