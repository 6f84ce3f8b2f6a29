"""Truncated conjugate-gradient solver for the Newton system.

At each outer iteration Newton-CG needs a direction d with

    H d = -g

where H is the Hessian (available only through Hessian-vector products)
and g the gradient. Solving this exactly is unnecessary far from the
optimum, so the solve is truncated:

- it stops once the L1 norm of the residual falls below ``tol`` times the L1
  norm of the right-hand side (the inexact Newton forcing term),
- it stops when it meets a direction p with p^T H p <= 0. The quadratic model
  is unbounded below along p, so the iterate accumulated so far is returned
  unchanged. Starting from zero this means an immediate negative curvature
  leaves d = 0, which the outer loop recognizes as "not a descent direction",
- it stops when a Hessian product holds NaN or Inf and sets ``nonfinite``,
  which the outer loop reports as a numerical failure,
- it stops after ``max_iter`` Hessian products.

No preconditioner is used. The residual, search direction and Hessian
product live in the ``jax.lax.while_loop`` carry, which the loop owns for its
whole duration.
"""

from typing import Callable, NamedTuple

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from newton_cg_jax.primitives import dot_product, l1_norm


class CGResult(NamedTuple):
    """Result from the CG solver.

    Attributes:
        x: Approximate solution.
        iterations: Number of Hessian-vector products taken in the loop.
        negative_curvature: Whether the solve stopped on a direction of
            non-positive (or non-finite) curvature.
        converged: Whether the residual tolerance was met.
        nonfinite: Whether a Hessian product was NaN or infinite.
    """

    x: Float[Array, " n"]
    iterations: Int[Array, ""]
    negative_curvature: Bool[Array, ""]
    converged: Bool[Array, ""]
    nonfinite: Bool[Array, ""]


class _CGState(NamedTuple):
    """Internal state for the conjugate gradient loop."""

    x: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    r_norm_sq: Float[Array, ""]
    iteration: Int[Array, ""]
    negative_curvature: Bool[Array, ""]
    converged: Bool[Array, ""]
    nonfinite: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def cg_solve(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    rhs: Float[Array, " n"],
    x0: Float[Array, " n"],
    tol: float | Float[Array, ""],
    max_iter: int,
) -> CGResult:
    """Approximately solve H x = rhs by truncated conjugate gradient.

    Args:
        hvp_fn: Hessian-vector product function v -> H @ v.
        rhs: Right-hand side (the negated gradient in Newton-CG).
        x0: Initial guess.
        tol: Relative tolerance on the L1 norm of the residual.
        max_iter: Maximum number of CG iterations.

    Returns:
        CGResult with the approximate solution and loop diagnostics.
    """
    termcond = tol * l1_norm(rhs)

    Hx0 = hvp_fn(x0)
    r0 = rhs - Hx0

    init_state = _CGState(
        x=x0,
        r=r0,
        p=r0,
        r_norm_sq=dot_product(r0, r0),
        iteration=jnp.array(0),
        negative_curvature=jnp.array(False),
        converged=l1_norm(r0) <= termcond,
        nonfinite=~jnp.all(jnp.isfinite(Hx0)),
    )

    def cond_fn(state: _CGState) -> Bool[Array, ""]:
        return (
            ~state.converged
            & ~state.negative_curvature
            & ~state.nonfinite
            & (state.iteration < max_iter)
        )

    def body_fn(state: _CGState) -> _CGState:
        Hp = hvp_fn(state.p)
        curvature = dot_product(state.p, Hp)

        nonfinite = ~jnp.all(jnp.isfinite(Hp))
        # Also catches NaN curvature
        negative_curvature = ~(curvature > 0)
        stop = negative_curvature | nonfinite
        safe_curvature = jnp.where(stop, jnp.ones_like(curvature), curvature)

        alpha = state.r_norm_sq / safe_curvature
        x_new = state.x + alpha * state.p
        r_new = state.r - alpha * Hp
        r_new_norm_sq = dot_product(r_new, r_new)

        beta = r_new_norm_sq / state.r_norm_sq
        p_new = r_new + beta * state.p

        stepped = _CGState(
            x=x_new,
            r=r_new,
            p=p_new,
            r_norm_sq=r_new_norm_sq,
            iteration=state.iteration + 1,
            negative_curvature=negative_curvature,
            converged=l1_norm(r_new) <= termcond,
            nonfinite=nonfinite,
        )
        # On negative curvature or a non-finite product keep the last iterate
        truncated = state._replace(
            iteration=state.iteration + 1,
            negative_curvature=negative_curvature,
            nonfinite=nonfinite,
        )
        return jax.tree_util.tree_map(
            lambda a, b: jnp.where(stop, a, b), truncated, stepped
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    return CGResult(
        x=final_state.x,
        iterations=final_state.iteration,
        negative_curvature=final_state.negative_curvature,
        converged=final_state.converged,
        nonfinite=final_state.nonfinite,
    )
