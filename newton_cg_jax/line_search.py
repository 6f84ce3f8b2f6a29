"""Backtracking line search for Newton-CG.

Given a descent direction d at x, the step length α is halved from
``alpha_init`` until the Armijo sufficient-decrease condition holds:

    f(x + α d) <= f(x) + c1 * α * ∇f(x)^T d

The value and gradient at x are passed in rather than recomputed; the
outer loop already has them from the evaluation that produced d.
"""

from typing import NamedTuple

import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Int

from newton_cg_jax.objective import AbstractObjective
from newton_cg_jax.primitives import dot_product
from newton_cg_jax.types import Scalar, Vector


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        alpha: The step size found.
        x_new: The trial point x + alpha * d at that step size.
        f_val: Function value at the trial point.
        success: Whether the Armijo condition was satisfied.
        n_evals: Number of function evaluations.
    """

    alpha: Scalar
    x_new: Vector
    f_val: Scalar
    success: Bool[Array, ""]
    n_evals: Int[Array, ""]


class _LineSearchState(NamedTuple):
    alpha: Scalar
    x_new: Vector
    f_val: Scalar
    iteration: Int[Array, ""]
    done: Bool[Array, ""]


def backtracking(
    objective: AbstractObjective,
    x: Vector,
    direction: Vector,
    f_val: Scalar,
    grad: Vector,
    alpha_init: float = 1.0,
    c1: float = 1e-4,
    rho: float = 0.5,
    max_iter: int = 20,
) -> LineSearchResult:
    """Perform a backtracking line search along ``direction``.

    The search always terminates: after ``max_iter`` evaluations the smallest
    step tried, ``alpha_init * rho**(max_iter - 1)``, is returned with
    ``success=False``. ``x`` itself is never modified; the accepted point is
    returned in ``x_new`` for the caller to commit.

    Args:
        objective: Objective to evaluate at the trial points.
        x: Current point.
        direction: Search direction, expected to satisfy grad^T d < 0.
        f_val: Objective value at x.
        grad: Gradient of the objective at x.
        alpha_init: Initial step size (default 1.0, the full Newton step).
        c1: Armijo condition parameter (default 1e-4).
        rho: Step reduction factor (default 0.5).
        max_iter: Maximum number of function evaluations.

    Returns:
        LineSearchResult with the step size and the corresponding point.
    """
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")

    # Directional derivative of the objective along d
    grad_dot_d = dot_product(grad, direction)

    def evaluate_at_alpha(alpha: Scalar) -> tuple[Vector, Scalar]:
        x_new = x + alpha * direction
        f_new = objective.update_x(x_new, need_hessian=False).get_value()
        return x_new, f_new

    def sufficient_decrease(alpha: Scalar, f_new: Scalar) -> Bool[Array, ""]:
        # NaN trial values compare False and keep the search going
        return f_new <= f_val + c1 * alpha * grad_dot_d

    alpha0 = jnp.asarray(alpha_init, dtype=x.dtype)
    x_init, f_init = evaluate_at_alpha(alpha0)

    init_state = _LineSearchState(
        alpha=alpha0,
        x_new=x_init,
        f_val=f_init,
        iteration=jnp.array(1),
        done=sufficient_decrease(alpha0, f_init),
    )

    def cond_fn(state: _LineSearchState) -> Bool[Array, ""]:
        """Continue while not done and under iteration limit."""
        return ~state.done & (state.iteration < max_iter)

    def body_fn(state: _LineSearchState) -> _LineSearchState:
        alpha = rho * state.alpha
        x_new, f_new = evaluate_at_alpha(alpha)
        return _LineSearchState(
            alpha=alpha,
            x_new=x_new,
            f_val=f_new,
            iteration=state.iteration + 1,
            done=sufficient_decrease(alpha, f_new),
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    return LineSearchResult(
        alpha=final_state.alpha,
        x_new=final_state.x_new,
        f_val=final_state.f_val,
        success=final_state.done,
        n_evals=final_state.iteration,
    )
