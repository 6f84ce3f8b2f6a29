"""Exceptions raised by newton-cg-jax."""

from typing import Any


class NewtonCGError(RuntimeError):
    """Base class for Newton-CG solve failures.

    Attributes:
        solution: The partial solution at the point of failure, if any.
    """

    def __init__(self, message: str, solution: Any = None):
        super().__init__(message)
        self.solution = solution


class DescentDirectionError(NewtonCGError):
    """The CG solver could not produce a descent direction within the retry budget."""


class NumericalError(NewtonCGError):
    """The gradient or objective value became NaN or infinite."""


class DeviceError(NewtonCGError):
    """A dispatched device computation failed."""
