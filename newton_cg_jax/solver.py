"""Newton-CG solver implementation using Optimistix.

This module contains the main Newton-CG solver class, which extends
optimistix.AbstractMinimiser with a damped, truncated Newton method for
unconstrained minimization of smooth objectives such as the
logistic-regression loss.

Each outer iteration:

1. Evaluates the objective at the current point, with its gradient g and a
   Hessian-vector product operator.
2. Chooses the forcing term tol_k = min(sqrt(||g||_1), 0.5).
3. Solves H d = -g with truncated CG starting from d = 0. If the result is not
   a descent direction (<-g, d> <= 0, typically after hitting negative
   curvature), tol_k is divided by 10 and CG is resumed from the last d,
   up to ``max_descent_retries`` attempts in total. If every attempt fails
   the solve stops without moving. A NaN or infinite Hessian product
   stops the solve at once as a numerical failure.
4. Runs a backtracking line search along d from a unit step.
5. Commits the accepted point.

The sole convergence test is max_i |g_i| < atol, evaluated before every
step. All of an outer iteration runs on device; the retry loop and the line
search are ``jax.lax`` control flow, so ``step`` can be JIT compiled.

The Hessian is never formed. It is accessed through the objective's
Hessian-vector product: analytic for :class:`~newton_cg_jax.objective.AbstractObjective`
implementations, user-supplied via ``obj_hvp_fn``, or forward-over-reverse
automatic differentiation otherwise.
"""

from collections.abc import Callable
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import optimistix as optx
from jaxtyping import Array, Bool, Float, Int

from newton_cg_jax.cg_solver import cg_solve
from newton_cg_jax.line_search import backtracking
from newton_cg_jax.objective import AbstractObjective, FunctionObjective, ObjectivePoint
from newton_cg_jax.primitives import (
    dot_product,
    element_wise,
    fill,
    l1_norm,
    max_abs,
    negate,
)
from newton_cg_jax.types import GradFn, HessianProduct, HVPFn, SolverResult


class NewtonCGState(eqx.Module):
    """State for the Newton-CG solver.

    This is a JAX PyTree (via eqx.Module) that holds all mutable state
    needed across outer iterations. Gradient statistics always refer to the
    current iterate.

    Attributes:
        step_count: Number of accepted Newton steps.
        inner_step_count: Cumulative number of CG iterations.
        f_val: Objective value at the current iterate.
        grad: Gradient at the current iterate.
        grad_norm: L1 norm of the gradient.
        grad_max_abs: Largest absolute gradient component (``norm`` of the gradient).
        descent_attempts: CG attempts used by the last step.
        step_size: Step length accepted by the last line search.
        update_norm: ||d||_2 * step_size for the last step.
        line_search_success: Whether the last line search met the Armijo condition.
        descent_failed: Whether the last step failed to find a descent direction.
        hessian_nonfinite: Whether the last step met a NaN or infinite Hessian product.
    """

    # Iteration tracking
    step_count: Int[Array, ""]
    inner_step_count: Int[Array, ""]

    # Current function value and gradient
    f_val: Float[Array, ""]
    grad: Float[Array, " n"]
    grad_norm: Float[Array, ""]
    grad_max_abs: Float[Array, ""]

    # Diagnostics of the last step
    descent_attempts: Int[Array, ""]
    step_size: Float[Array, ""]
    update_norm: Float[Array, ""]
    line_search_success: Bool[Array, ""]
    descent_failed: Bool[Array, ""]
    hessian_nonfinite: Bool[Array, ""]


class DescentSearchResult(NamedTuple):
    """Result of the descent-direction search.

    Attributes:
        direction: The last direction produced by CG.
        tol: The forcing term used by the last attempt.
        attempts: Number of CG solves performed.
        desc: <-g, direction>; positive for a descent direction.
        inner_iterations: CG iterations summed over all attempts.
        nonfinite: Whether a Hessian product was NaN or infinite.
    """

    direction: Float[Array, " n"]
    tol: Float[Array, ""]
    attempts: Int[Array, ""]
    desc: Float[Array, ""]
    inner_iterations: Int[Array, ""]
    nonfinite: Bool[Array, ""]

    @property
    def found(self) -> Bool[Array, ""]:
        return (self.desc > 0) & ~self.nonfinite


class NewtonCG(optx.AbstractMinimiser):
    """Newton-CG minimizer with truncated CG and backtracking line search.

    Works with ``optimistix.minimise`` or by calling ``init``/``step``/
    ``terminate`` directly, as :func:`newton_cg_jax.newton_cg` does. The
    iterate must be a 1-D array with at least one entry; its dtype sets the
    working precision.

    Users can optionally supply their own derivative functions:
    - obj_grad_fn: Gradient of objective (else jax.grad).
    - obj_hvp_fn: HVP of objective (else forward-over-reverse AD).

    When ``fn`` is an :class:`~newton_cg_jax.objective.AbstractObjective`,
    its own gradient and Hessian product are used and these are ignored.

    Attributes:
        rtol: Not used; convergence is an absolute test on the gradient.
        atol: Convergence threshold on ``norm(gradient)``.
        norm: Gradient norm for the convergence test (default max-abs).
        max_steps: Maximum number of accepted Newton steps.
        max_inner_steps: Maximum CG iterations per CG solve.
        max_descent_retries: CG attempts allowed per step to find a descent direction.
        armijo_c1: Sufficient-decrease constant of the line search.
        line_search_rho: Step reduction factor of the line search.
        line_search_max_steps: Maximum objective evaluations per line search.
        obj_grad_fn: Optional gradient of objective.
        obj_hvp_fn: Optional Hessian-vector product of objective.

    Example:
        >>> import jax.numpy as jnp
        >>> import optimistix as optx
        >>> from newton_cg_jax import NewtonCG
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum((x - 1.0) ** 2)
        >>>
        >>> sol = optx.minimise(objective, NewtonCG(atol=1e-8), jnp.zeros(3))
    """

    # Convergence tolerances
    rtol: float = 0.0
    atol: float = 1e-4

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=max_abs)

    # Maximum outer iterations
    max_steps: int = 100

    # CG parameters
    max_inner_steps: int = eqx.field(static=True, default=100)
    max_descent_retries: int = eqx.field(static=True, default=10)

    # Line search parameters
    armijo_c1: float = 1e-4
    line_search_rho: float = 0.5
    line_search_max_steps: int = eqx.field(static=True, default=20)

    # Optional user-supplied derivative functions
    obj_grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    obj_hvp_fn: Optional[HVPFn] = eqx.field(static=True, default=None)

    def __check_init__(self):
        if self.atol < 0:
            raise ValueError(f"atol must be non-negative, got {self.atol}")
        if self.max_steps < 0:
            raise ValueError(f"max_steps must be non-negative, got {self.max_steps}")
        if self.max_inner_steps < 1:
            raise ValueError(
                f"max_inner_steps must be positive, got {self.max_inner_steps}"
            )
        if self.max_descent_retries < 1:
            raise ValueError(
                f"max_descent_retries must be positive, got {self.max_descent_retries}"
            )
        if not 0 < self.line_search_rho < 1:
            raise ValueError(
                f"line_search_rho must lie in (0, 1), got {self.line_search_rho}"
            )

    def _as_objective(self, fn: Callable, args: Any) -> AbstractObjective:
        """Use ``fn`` directly if it is an objective, else wrap it for AD."""
        if isinstance(fn, AbstractObjective):
            return fn
        return FunctionObjective(
            fn=fn, args=args, grad_fn=self.obj_grad_fn, hvp_fn=self.obj_hvp_fn
        )

    def _gradient_stats(
        self, point: ObjectivePoint
    ) -> tuple[Float[Array, ""], Float[Array, ""]]:
        grad = point.get_gradient()
        return l1_norm(grad), self.norm(grad)

    def find_descent_direction(
        self,
        hvp_fn: HessianProduct,
        rhs: Float[Array, " n"],
        direction: Float[Array, " n"],
        tol: Float[Array, ""],
    ) -> DescentSearchResult:
        """Run CG with a shrinking forcing term until it yields a descent direction.

        Args:
            hvp_fn: Hessian-vector product at the current iterate.
            rhs: The negated gradient.
            direction: Initial guess for the first CG solve (zero in ``step``).
            tol: Forcing term for the first attempt.

        Returns:
            DescentSearchResult; ``found`` is False when every attempt failed
            or a Hessian product was not finite.
        """

        def cond_fn(search: DescentSearchResult) -> Bool[Array, ""]:
            # Also retries when desc is NaN, but not after a non-finite product
            return (
                ~(search.desc > 0)
                & ~search.nonfinite
                & (search.attempts < self.max_descent_retries)
            )

        def body_fn(search: DescentSearchResult) -> DescentSearchResult:
            tol_k = jnp.where(search.attempts > 0, search.tol / 10, search.tol)
            cg_result = cg_solve(
                hvp_fn, rhs, search.direction, tol_k, self.max_inner_steps
            )
            return DescentSearchResult(
                direction=cg_result.x,
                tol=tol_k,
                attempts=search.attempts + 1,
                # <-grad, direction> should be > 0 for a descent direction
                desc=dot_product(rhs, cg_result.x),
                inner_iterations=search.inner_iterations + cg_result.iterations,
                nonfinite=cg_result.nonfinite,
            )

        init_search = DescentSearchResult(
            direction=direction,
            tol=tol,
            attempts=jnp.array(0),
            desc=-jnp.ones((), dtype=rhs.dtype),
            inner_iterations=jnp.array(0),
            nonfinite=jnp.array(False),
        )
        return jax.lax.while_loop(cond_fn, body_fn, init_search)

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> NewtonCGState:
        """Initialize the Newton-CG solver state.

        Evaluates the objective and its gradient at the initial point so that
        the first ``terminate`` call can test convergence before any step.

        Args:
            fn: Objective function with signature fn(y, args) -> (f_val, aux),
                or an AbstractObjective.
            y: Initial parameter values.
            args: Additional arguments passed to fn.
            options: Runtime options dictionary.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial NewtonCGState.
        """
        if y.ndim != 1 or y.shape[0] < 1:
            raise ValueError(
                f"Newton-CG needs a 1-D iterate with at least one entry, got shape {y.shape}"
            )

        point = self._as_objective(fn, args).update_x(y, need_hessian=False)
        grad_norm, grad_max_abs = self._gradient_stats(point)
        zero = jnp.zeros((), dtype=y.dtype)

        return NewtonCGState(
            step_count=jnp.array(0),
            inner_step_count=jnp.array(0),
            f_val=point.get_value(),
            grad=point.get_gradient(),
            grad_norm=grad_norm,
            grad_max_abs=grad_max_abs,
            descent_attempts=jnp.array(0),
            step_size=zero,
            update_norm=zero,
            line_search_success=jnp.array(True),
            descent_failed=jnp.array(False),
            hessian_nonfinite=jnp.array(False),
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NewtonCGState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], NewtonCGState, Any]:
        """Perform one Newton-CG outer iteration.

        This method:
        1. Re-evaluates the objective at y with its Hessian product.
        2. Searches for a descent direction with truncated CG.
        3. Performs the backtracking line search along it.
        4. Evaluates the gradient at the accepted point for ``terminate``.

        If no descent direction is found, y is returned unchanged and
        ``descent_failed`` is set.

        Args:
            fn: Objective function.
            y: Current parameter values.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        objective = self._as_objective(fn, args)

        # Step 1: Fresh evaluation with the Hessian product
        point = objective.update_x(y, need_hessian=True)
        grad = point.get_gradient()
        hvp_fn = point.get_hessian_product()

        # Step 2: Descent direction for H d = -g, starting from d = 0
        tol_k = jnp.minimum(jnp.sqrt(l1_norm(grad)), 0.5)
        rhs = element_wise(negate, grad)
        search = self.find_descent_direction(hvp_fn, rhs, fill(grad, 0.0), tol_k)
        found = search.found

        # Step 3: Line search, only along a descent direction
        def line_search():
            ls_result = backtracking(
                objective,
                y,
                search.direction,
                point.get_value(),
                grad,
                alpha_init=1.0,
                c1=self.armijo_c1,
                rho=self.line_search_rho,
                max_iter=self.line_search_max_steps,
            )
            return ls_result.x_new, ls_result.alpha, ls_result.success

        def stay():
            return y, jnp.zeros((), dtype=y.dtype), jnp.array(False)

        y_new, step_size, ls_success = jax.lax.cond(found, line_search, stay)
        update_norm = jnp.sqrt(dot_product(search.direction, search.direction)) * step_size

        # Step 4: Gradient at the committed point
        new_point = objective.update_x(y_new, need_hessian=False)
        grad_norm, grad_max_abs = self._gradient_stats(new_point)

        # Auxiliary output comes from the evaluation above
        aux = new_point.aux

        new_state = NewtonCGState(
            step_count=jnp.where(found, state.step_count + 1, state.step_count),
            inner_step_count=state.inner_step_count + search.inner_iterations,
            f_val=new_point.get_value(),
            grad=new_point.get_gradient(),
            grad_norm=grad_norm,
            grad_max_abs=grad_max_abs,
            descent_attempts=search.attempts,
            step_size=step_size,
            update_norm=update_norm,
            line_search_success=ls_success,
            descent_failed=~found,
            hessian_nonfinite=search.nonfinite,
        )

        return y_new, new_state, aux

    def status(self, state: NewtonCGState) -> Int[Array, ""]:
        """The SolverResult code for ``state``, or -1 while the solve should continue."""
        nonfinite = (
            ~jnp.isfinite(state.grad_max_abs)
            | ~jnp.isfinite(state.f_val)
            | state.hessian_nonfinite
        )
        converged = state.grad_max_abs < self.atol
        max_iters_reached = state.step_count >= self.max_steps
        return jnp.select(
            [nonfinite, state.descent_failed, converged, max_iters_reached],
            [
                SolverResult.NUMERICAL_ERROR,
                SolverResult.DESCENT_DIRECTION_FAILED,
                SolverResult.SUCCESS,
                SolverResult.MAX_ITERATIONS,
            ],
            default=-1,
        )

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NewtonCGState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Terminates when the gradient is small enough, when the last step
        failed to find a descent direction, when the gradient, objective value
        or a Hessian product is not finite, or when ``max_steps`` steps have
        been accepted.

        Args:
            fn: Objective function.
            y: Current parameter values.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (done, result) where done is a bool indicating
            termination and result is the termination status code.
        """
        status = self.status(state)
        done = status >= 0

        result = optx.RESULTS.where(
            (status == SolverResult.NUMERICAL_ERROR)
            | (status == SolverResult.DESCENT_DIRECTION_FAILED),
            optx.RESULTS.nonlinear_divergence,
            optx.RESULTS.where(
                status == SolverResult.MAX_ITERATIONS,
                optx.RESULTS.max_steps_reached,
                optx.RESULTS.successful,
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: NewtonCGState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Post-process the optimization result.

        Args:
            fn: Objective function.
            y: Final parameter values.
            aux: Auxiliary output from last function evaluation.
            args: Additional arguments.
            options: Runtime options.
            state: Final solver state.
            tags: Lineax tags.
            result: Termination result code.

        Returns:
            Tuple of (y, aux, stats) where stats is a dictionary
            containing solver statistics.
        """
        stats = {
            "num_steps": state.step_count,
            "num_inner_steps": state.inner_step_count,
            "final_objective": state.f_val,
            "final_grad_norm": state.grad_norm,
            "final_grad_max_abs": state.grad_max_abs,
            "status": self.status(state),
        }

        return y, aux, stats
