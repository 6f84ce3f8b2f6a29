"""Host-side entry point for Newton-CG.

:func:`newton_cg` steps a :class:`~newton_cg_jax.solver.NewtonCG` solver from
Python. Each outer iteration is dispatched as one compiled ``step`` call and
runs asynchronously; the host blocks exactly once per iteration, to read the
scalars the termination decision and the iteration log need.

Per-iteration diagnostics go to the ``newton_cg_jax.driver`` logger at INFO
level and, if given, to a ``callback`` receiving an :class:`IterationInfo`.
Neither affects the iteration itself.
"""

import dataclasses
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp

from newton_cg_jax.errors import DescentDirectionError, NumericalError
from newton_cg_jax.events import Event, submit
from newton_cg_jax.objective import AbstractObjective
from newton_cg_jax.primitives import copy
from newton_cg_jax.solver import NewtonCG, NewtonCGState
from newton_cg_jax.types import SolverResult, Vector

logger = logging.getLogger(__name__)


class IterationInfo(NamedTuple):
    """Host copy of the solver diagnostics at one termination check.

    ``iteration`` is the number of accepted Newton steps so far; the other
    ``step_*`` fields describe the step that led here and are zero before
    the first step.
    """

    iteration: int
    loss: float
    grad_norm: float
    grad_max_abs: float
    step_size: float
    update_norm: float
    inner_iterations: int
    descent_attempts: int
    line_search_success: bool
    status: int


@dataclasses.dataclass(frozen=True)
class NewtonCGSolution:
    """Outcome of :func:`newton_cg`.

    Unpacks as ``event, num_steps, num_inner_steps``.

    Attributes:
        event: Completion handle for the final iterate and state.
        value: Final iterate. On descent-direction failure this is the last
            committed iterate.
        num_steps: Accepted Newton steps.
        num_inner_steps: CG iterations over all steps and retries.
        result: SolverResult code.
        state: Final solver state.
    """

    event: Event
    value: Vector
    num_steps: int
    num_inner_steps: int
    result: int
    state: NewtonCGState

    @property
    def converged(self) -> bool:
        return self.result == SolverResult.SUCCESS

    @property
    def message(self) -> str:
        return SolverResult.describe(self.result)

    def __iter__(self) -> Iterator[Any]:
        return iter((self.event, self.num_steps, self.num_inner_steps))


def _diagnostics(solver: NewtonCG, state: NewtonCGState) -> dict[str, jax.Array]:
    return {
        "iteration": state.step_count,
        "loss": state.f_val,
        "grad_norm": state.grad_norm,
        "grad_max_abs": state.grad_max_abs,
        "step_size": state.step_size,
        "update_norm": state.update_norm,
        "inner_iterations": state.inner_step_count,
        "descent_attempts": state.descent_attempts,
        "line_search_success": state.line_search_success,
        "status": solver.status(state),
    }


def _to_info(values: dict[str, Any]) -> IterationInfo:
    return IterationInfo(
        iteration=int(values["iteration"]),
        loss=float(values["loss"]),
        grad_norm=float(values["grad_norm"]),
        grad_max_abs=float(values["grad_max_abs"]),
        step_size=float(values["step_size"]),
        update_norm=float(values["update_norm"]),
        inner_iterations=int(values["inner_iterations"]),
        descent_attempts=int(values["descent_attempts"]),
        line_search_success=bool(values["line_search_success"]),
        status=int(values["status"]),
    )


def _log_iteration(info: IterationInfo) -> None:
    logger.info(
        "Newton-CG iter %d: loss=%.6e grad_norm=%.6e max_abs=%.6e "
        "step_size=%.3e update_norm=%.3e inner_iters=%d",
        info.iteration,
        info.loss,
        info.grad_norm,
        info.grad_max_abs,
        info.step_size,
        info.update_norm,
        info.inner_iterations,
    )
    if info.iteration > 0 and not info.line_search_success:
        logger.debug(
            "Line search did not satisfy the Armijo condition; "
            "took the smallest step %.3e",
            info.step_size,
        )


def newton_cg(
    objective: AbstractObjective,
    x: Vector,
    tol: float = 1e-4,
    max_outer_iters: int = 100,
    max_inner_iters: int = 100,
    deps: Iterable[Event] = (),
    *,
    callback: Optional[Callable[[IterationInfo], None]] = None,
    throw: bool = True,
    solver: Optional[NewtonCG] = None,
) -> NewtonCGSolution:
    """Minimize ``objective`` from ``x`` with Newton-CG.

    The dtype of ``x`` sets the working precision; float32 and float64 are
    both supported (float64 needs ``jax_enable_x64``).

    Args:
        objective: The objective to minimize.
        x: Initial point, a 1-D array with at least one entry. It is copied,
            never modified.
        tol: Stop when the largest absolute gradient component is below this.
        max_outer_iters: Maximum number of accepted Newton steps.
        max_inner_iters: Maximum CG iterations per CG solve.
        deps: Events producing ``x``; their failures surface at the first wait.
        callback: Called with an IterationInfo at every termination check.
        throw: Raise on fatal failures instead of returning the status code.
        solver: A configured NewtonCG to use instead of one built from
            ``tol``, ``max_outer_iters`` and ``max_inner_iters``.

    Returns:
        NewtonCGSolution. ``num_steps`` is 0 when x already satisfies ``tol``.

    Raises:
        DescentDirectionError: If ``throw`` and CG could not produce a descent
            direction within the solver's retry budget.
        NumericalError: If ``throw`` and the objective value, the gradient or
            a Hessian product became non-finite.
        DeviceError: If a device computation failed.
        ValueError: On invalid arguments.
    """
    if solver is None:
        if tol < 0:
            raise ValueError(f"tol must be non-negative, got {tol}")
        if max_outer_iters < 0:
            raise ValueError(f"max_outer_iters must be non-negative, got {max_outer_iters}")
        if max_inner_iters < 1:
            raise ValueError(f"max_inner_iters must be positive, got {max_inner_iters}")
        solver = NewtonCG(
            atol=tol, max_steps=max_outer_iters, max_inner_steps=max_inner_iters
        )

    init = eqx.filter_jit(solver.init)
    step = eqx.filter_jit(solver.step)
    args, options, tags = None, {}, frozenset()

    x_event = submit(copy, jnp.asarray(x), deps=deps)
    y = x_event.result()
    state = init(objective, y, args, options, None, None, tags)
    last = Event((y, state), deps=[x_event])

    while True:
        # The only host synchronization of the iteration
        info = _to_info(submit(_diagnostics, solver, state, deps=[last]).read())
        _log_iteration(info)
        if callback is not None:
            callback(info)
        if info.status >= 0:
            break
        y, state, _ = step(objective, y, args, options, state, tags)
        last = Event((y, state), deps=[last])

    solution = NewtonCGSolution(
        event=last,
        value=y,
        num_steps=info.iteration,
        num_inner_steps=info.inner_iterations,
        result=info.status,
        state=state,
    )

    if info.status == SolverResult.SUCCESS:
        logger.info(
            "Newton-CG converged after %d steps (%d CG iterations)",
            solution.num_steps,
            solution.num_inner_steps,
        )
    elif info.status == SolverResult.MAX_ITERATIONS:
        logger.warning(
            "Newton-CG stopped after %d steps without converging: max_abs=%.6e >= tol",
            solution.num_steps,
            info.grad_max_abs,
        )
    elif info.status == SolverResult.DESCENT_DIRECTION_FAILED:
        logger.warning(
            "Newton-CG failed to find a descent direction after %d CG attempts "
            "at step %d",
            info.descent_attempts,
            solution.num_steps + 1,
        )
        if throw:
            raise DescentDirectionError(solution.message, solution)
    else:
        logger.warning(
            "Newton-CG hit a non-finite value at step %d: loss=%s max_abs=%s",
            solution.num_steps,
            info.loss,
            info.grad_max_abs,
        )
        if throw:
            raise NumericalError(solution.message, solution)

    return solution
