"""Tests for ill-conditioned and badly scaled problems.

Truncated CG only ever sees the Hessian through products, and its forcing
term tightens as the gradient shrinks. These tests check that the outer loop
still reaches tight tolerances when the Hessian spans many orders of
magnitude or the variables live on very different scales.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from scipy.optimize import minimize as scipy_minimize

from newton_cg_jax import FunctionObjective, LogLoss, NewtonCG, QuadraticFunction, newton_cg

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _run_solver(solver, objective, x0, args=None, max_steps=None):
    """Run the Newton-CG solver loop and return final iterate."""
    if max_steps is None:
        max_steps = solver.max_steps + 1
    state = solver.init(objective, x0, args, {}, None, None, frozenset())
    y = x0
    for _ in range(max_steps):
        done, _ = solver.terminate(objective, y, args, {}, state, frozenset())
        if done:
            break
        y, state, _ = solver.step(objective, y, args, {}, state, frozenset())
    return y, state


class TestIllConditionedHessian:
    """Tests for problems with ill-conditioned Hessian matrices."""

    @pytest.mark.parametrize("decades", [2, 4, 6])
    def test_high_condition_number_quadratic(self, decades):
        """minimize sum_i 0.5 * 10^(decades*i/(n-1)) * x_i^2 from all-ones."""
        n = 10
        weights = jnp.logspace(0, decades, n)
        objective = QuadraticFunction(weights)

        solution = newton_cg(objective, jnp.ones(n), tol=1e-8)

        assert solution.converged
        # |x_i| = |g_i| / w_i <= tol / w_i
        assert np.all(np.abs(np.asarray(solution.value)) * np.asarray(weights) < 1e-8)

    def test_rotated_ill_conditioned_quadratic(self):
        """Dense quadratic Q diag(w) Q^T with condition number 1e5."""
        n = 8
        rng = np.random.default_rng(0)
        Q, _ = np.linalg.qr(rng.normal(size=(n, n)))
        A = Q @ np.diag(np.logspace(0, 5, n)) @ Q.T
        A = 0.5 * (A + A.T)
        b = rng.normal(size=n)

        solution = newton_cg(
            QuadraticFunction(jnp.asarray(A), jnp.asarray(b)), jnp.zeros(n), tol=1e-4
        )

        assert solution.converged
        np.testing.assert_allclose(
            solution.value, np.linalg.solve(A, b), atol=1e-3
        )

    def test_inner_iteration_cap(self):
        """A tiny CG budget still converges, taking more outer steps instead."""
        weights = jnp.logspace(0, 1, 20)
        objective = QuadraticFunction(weights, jnp.ones(20))

        capped = newton_cg(objective, jnp.zeros(20), tol=1e-6, max_inner_iters=5)
        full = newton_cg(objective, jnp.zeros(20), tol=1e-6)

        assert capped.converged
        assert capped.num_inner_steps <= 5 * capped.num_steps
        np.testing.assert_allclose(capped.value, full.value, rtol=1e-5, atol=1e-6)

    def test_ill_conditioned_vs_scipy(self):
        """Badly scaled features in logistic regression, checked against SciPy."""
        rng = np.random.default_rng(1)
        X = rng.normal(size=(150, 4)) * np.array([1e-2, 1.0, 10.0, 100.0])
        w = np.array([50.0, 1.0, 0.1, 0.005])
        y = (rng.uniform(size=150) < 1.0 / (1.0 + np.exp(-X @ w))).astype(np.float64)
        loss = LogLoss(X, y, l2=1e-3)

        def fun(p):
            return float(loss.update_x(jnp.asarray(p), need_hessian=False).get_value())

        def jac(p):
            return np.asarray(loss.update_x(jnp.asarray(p), need_hessian=False).get_gradient())

        x0 = np.zeros(loss.n_params)
        result_scipy = scipy_minimize(fun, x0, jac=jac, method="BFGS", options={"gtol": 1e-10})
        solution = newton_cg(loss, jnp.asarray(x0), tol=1e-5)

        assert solution.converged
        assert float(solution.state.f_val) <= result_scipy.fun + 1e-6


class TestNumericalStability:
    """Tests for numerical stability edge cases."""

    def test_very_small_gradients(self):
        """Flat quartic: the Hessian vanishes at the optimum."""

        def objective(x, args):
            return jnp.sum(x**4), None

        solver = NewtonCG(atol=1e-8, max_steps=100)
        y, state = _run_solver(solver, objective, jnp.array([0.5, 0.5]))

        # Newton converges linearly here, x_{k+1} = 2/3 x_k
        assert int(state.step_count) < 100
        assert float(state.grad_max_abs) < 1e-8
        np.testing.assert_allclose(y, [0.0, 0.0], atol=2e-3)

    def test_large_initial_point(self):
        """Problem starting far from optimum."""

        def objective(x, args):
            return jnp.sum(x**2), None

        solver = NewtonCG(atol=1e-4, max_steps=100)
        y, state = _run_solver(solver, objective, jnp.array([1e4, 1e4]))

        np.testing.assert_allclose(y, [0.0, 0.0], atol=1e-8)
        assert int(state.step_count) == 1

    def test_mixed_large_small_values(self):
        """Variables with natural scales 0.1 and 10."""

        def objective(x, args):
            return (x[0] * 10 - 1) ** 2 + (x[1] * 0.1 - 1) ** 2, None

        solution = newton_cg(FunctionObjective(objective), jnp.zeros(2), tol=1e-10)

        assert solution.converged
        np.testing.assert_allclose(solution.value, [0.1, 10.0], rtol=1e-8)

    def test_float32_ill_conditioned(self):
        weights = jnp.logspace(0, 3, 6, dtype=jnp.float32)
        objective = QuadraticFunction(weights)

        solution = newton_cg(objective, jnp.ones(6, dtype=jnp.float32), tol=1e-4)

        assert solution.converged
        assert solution.value.dtype == jnp.float32
