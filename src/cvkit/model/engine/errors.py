"""
Exceptions raised by the derivative engine and the collective variables.

Every fault is surfaced synchronously where it is detected and none of them
is meant to be retried:

- ConfigurationError: bad or missing input (unsupported order, missing masses,
  inconsistent grid, mismatched weight vector, ...)
- NumericalError: the arithmetic itself is ill-defined (degenerate total
  weight, diagonalization failure)
- InternalConsistencyError: a wiring or sizing bug (derivative index outside
  the declared space, buffer size mismatch, buffer consumed twice)
"""

from typing import Optional


class CVError(Exception):
    """Base class for all cvkit errors."""


class ConfigurationError(CVError, ValueError):
    """Invalid or incomplete configuration / host data."""


class NumericalError(CVError, ArithmeticError):
    """
    A computation that cannot be carried out numerically.

    Args:
        message: What went wrong
        label: Label of the action that failed
        step: Simulation step at which the failure happened
    """

    def __init__(self, message: str, label: Optional[str] = None, step: Optional[int] = None):
        self.label = label
        self.step = step
        context = []
        if label is not None:
            context.append(f"action '{label}'")
        if step is not None:
            context.append(f"step {step}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class DegenerateWeightError(NumericalError):
    """Total weight of a weighted average is zero or negligible."""


class DegenerateMatrixError(NumericalError):
    """Diagonalization of the adaptive metric failed."""


class InternalConsistencyError(CVError, RuntimeError):
    """Wiring or sizing bug inside the engine."""


class DerivativeIndexError(InternalConsistencyError, IndexError):
    """Derivative index outside the declared derivative space."""


class BufferSizeError(InternalConsistencyError):
    """Reduction buffers of different layouts were combined or read."""


class BufferConsumedError(InternalConsistencyError):
    """A reduction buffer was finalized more than once."""
