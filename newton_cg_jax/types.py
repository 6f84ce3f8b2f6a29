"""Type definitions for newton-cg-jax.

This module contains type aliases and custom types used throughout the package.
All types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type, optimistix convention: fn(x, args) -> (f_val, aux)
ObjectiveFn = Callable[[Vector, Any], tuple[Scalar, Any]]

# Gradient function type: takes parameters and args, returns gradient of objective
# grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Hessian-vector product function type for the objective
# hvp_fn(x, v, args) -> H_f(x) @ v
HVPFn = Callable[[Vector, Vector, Any], Vector]

# Hessian product bound to a point: v -> H(x) @ v
HessianProduct = Callable[[Vector], Vector]


# Result codes for solver termination
class SolverResult:
    """Constants for solver termination status."""

    SUCCESS = 0
    MAX_ITERATIONS = 1
    DESCENT_DIRECTION_FAILED = 2
    NUMERICAL_ERROR = 3

    @staticmethod
    def describe(code: int) -> str:
        return {
            SolverResult.SUCCESS: "converged",
            SolverResult.MAX_ITERATIONS: "maximum number of outer iterations reached",
            SolverResult.DESCENT_DIRECTION_FAILED: "failed to find a descent direction",
            SolverResult.NUMERICAL_ERROR: "non-finite objective value, gradient or Hessian product",
        }[code]
