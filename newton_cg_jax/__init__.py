"""newton-cg-jax: Newton-Conjugate-Gradient minimization in pure JAX.

This package provides a GPU-compatible truncated Newton method for smooth
unconstrained problems, built on JAX, Equinox and the Optimistix framework.
The Hessian is only ever applied through Hessian-vector products, and the
Newton system is solved inexactly by conjugate gradient with a
negative-curvature stop, so the method scales to large parameter vectors.
The main application is fitting generalized linear models such as logistic
regression.
"""

from newton_cg_jax.cg_solver import CGResult, cg_solve
from newton_cg_jax.driver import IterationInfo, NewtonCGSolution, newton_cg
from newton_cg_jax.errors import (
    DescentDirectionError,
    DeviceError,
    NewtonCGError,
    NumericalError,
)
from newton_cg_jax.events import Event, submit, wait_all
from newton_cg_jax.line_search import LineSearchResult, backtracking
from newton_cg_jax.logloss import LogLoss, predict, predict_proba
from newton_cg_jax.objective import (
    AbstractObjective,
    FunctionObjective,
    ObjectivePoint,
    QuadraticFunction,
)
from newton_cg_jax.solver import DescentSearchResult, NewtonCG, NewtonCGState
from newton_cg_jax.types import GradFn, HessianProduct, HVPFn, SolverResult

__all__ = [
    # Main solver
    "NewtonCG",
    "NewtonCGState",
    "DescentSearchResult",
    "newton_cg",
    "NewtonCGSolution",
    "IterationInfo",
    # Types
    "GradFn",
    "HVPFn",
    "HessianProduct",
    "SolverResult",
    # Objectives
    "AbstractObjective",
    "ObjectivePoint",
    "QuadraticFunction",
    "FunctionObjective",
    "LogLoss",
    "predict",
    "predict_proba",
    # CG solver
    "cg_solve",
    "CGResult",
    # Line search
    "backtracking",
    "LineSearchResult",
    # Asynchronous dispatch
    "Event",
    "submit",
    "wait_all",
    # Errors
    "NewtonCGError",
    "DescentDirectionError",
    "NumericalError",
    "DeviceError",
]
