"""Comparison tests between newton-cg-jax and scipy.optimize.minimize(method='Newton-CG').

SciPy's Newton-CG uses the same inexact-Newton scheme (truncated CG on the
Newton system with a gradient-dependent forcing term, then a line search), so
on smooth convex problems both must reach the same minimizer.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from scipy.optimize import minimize as scipy_minimize

from newton_cg_jax import FunctionObjective, LogLoss, QuadraticFunction, newton_cg

# Enable 64-bit precision for fair comparison
jax.config.update("jax_enable_x64", True)


def _scipy_newton_cg(objective, x0):
    """Minimize an AbstractObjective with SciPy, using its analytic derivatives."""

    def fun(x):
        return float(objective.update_x(jnp.asarray(x), need_hessian=False).get_value())

    def jac(x):
        return np.asarray(
            objective.update_x(jnp.asarray(x), need_hessian=False).get_gradient()
        )

    def hessp(x, p):
        hvp = objective.update_x(jnp.asarray(x)).get_hessian_product()
        return np.asarray(hvp(jnp.asarray(p)))

    return scipy_minimize(
        fun,
        np.asarray(x0),
        jac=jac,
        hessp=hessp,
        method="Newton-CG",
        options={"xtol": 1e-12, "maxiter": 200},
    )


class TestUnconstrainedOptimization:
    """Tests for unconstrained optimization problems."""

    def test_quadratic_2d(self):
        """minimize 0.5 x^T A x - b^T x with A = [[3, 1], [1, 2]]."""
        A = jnp.array([[3.0, 1.0], [1.0, 2.0]])
        b = jnp.array([1.0, -1.0])
        objective = QuadraticFunction(A, b)
        x0 = jnp.array([5.0, 5.0])

        result_scipy = _scipy_newton_cg(objective, x0)
        solution = newton_cg(objective, x0, tol=1e-7)

        np.testing.assert_allclose(solution.value, result_scipy.x, rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(
            solution.value, np.linalg.solve(np.asarray(A), np.asarray(b)), rtol=1e-6
        )

    def test_smooth_convex(self):
        """sum(exp(x) - x) + 0.5 ||x - c||^2 has no closed form."""
        c = jnp.array([0.5, -1.0, 2.0, 0.0])

        def fn(x, args):
            return jnp.sum(jnp.exp(x) - x) + 0.5 * jnp.sum((x - args) ** 2), None

        objective = FunctionObjective(fn, args=c)
        x0 = jnp.zeros(4)

        result_scipy = _scipy_newton_cg(objective, x0)
        solution = newton_cg(objective, x0, tol=1e-7)

        assert solution.converged
        np.testing.assert_allclose(solution.value, result_scipy.x, rtol=1e-5, atol=1e-6)

    @pytest.mark.parametrize("fit_intercept", [True, False])
    @pytest.mark.parametrize("l2", [0.01, 1.0])
    def test_regularized_logistic_regression(self, fit_intercept, l2):
        rng = np.random.default_rng(5)
        X = rng.normal(size=(200, 5))
        w = rng.normal(size=5)
        y = (rng.uniform(size=200) < 1.0 / (1.0 + np.exp(-X @ w))).astype(np.float64)
        loss = LogLoss(X, y, l2=l2, fit_intercept=fit_intercept)
        x0 = jnp.zeros(loss.n_params)

        result_scipy = _scipy_newton_cg(loss, x0)
        solution = newton_cg(loss, x0, tol=1e-7)

        assert solution.converged
        np.testing.assert_allclose(solution.value, result_scipy.x, rtol=1e-5, atol=1e-5)
        np.testing.assert_allclose(
            float(solution.state.f_val), result_scipy.fun, rtol=1e-10
        )


class TestEdgeCases:
    """Edge cases for comparison."""

    def test_starting_at_optimum(self):
        """Both solvers stay put when started at the minimizer."""
        objective = QuadraticFunction(jnp.array([1.0, 2.0]), jnp.array([1.0, 2.0]))
        x0 = jnp.array([1.0, 1.0])

        result_scipy = _scipy_newton_cg(objective, x0)
        solution = newton_cg(objective, x0, tol=1e-8)

        assert solution.num_steps == 0
        np.testing.assert_allclose(result_scipy.x, x0, atol=1e-10)
        np.testing.assert_array_equal(solution.value, x0)

    def test_single_variable(self):
        """minimize (x - 3)^2 in one dimension."""

        def fn(x, args):
            return jnp.sum((x - 3.0) ** 2), None

        objective = FunctionObjective(fn)
        x0 = jnp.array([0.0])

        result_scipy = _scipy_newton_cg(objective, x0)
        solution = newton_cg(objective, x0, tol=1e-7)

        assert solution.num_steps == 1
        np.testing.assert_allclose(solution.value, result_scipy.x, rtol=1e-8)
        np.testing.assert_allclose(solution.value, [3.0], rtol=1e-12)
