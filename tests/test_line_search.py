"""Tests for the Armijo backtracking line search."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from newton_cg_jax import LogLoss, QuadraticFunction, backtracking

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _search(objective, x, direction, **kwargs):
    point = objective.update_x(x, need_hessian=False)
    return backtracking(
        objective, x, direction, point.get_value(), point.get_gradient(), **kwargs
    )


class TestBacktracking:
    """Tests for backtracking()."""

    def test_full_newton_step_accepted(self):
        objective = QuadraticFunction(jnp.array([1.0, 2.0]))
        x = jnp.array([1.0, 1.0])
        newton_direction = -x

        result = _search(objective, x, newton_direction)

        assert bool(result.success)
        assert float(result.alpha) == 1.0
        assert int(result.n_evals) == 1
        np.testing.assert_allclose(result.x_new, [0.0, 0.0], atol=1e-15)
        np.testing.assert_allclose(result.f_val, 0.0, atol=1e-15)

    def test_halves_until_armijo(self):
        """An overlong step is halved until sufficient decrease holds."""
        objective = QuadraticFunction(jnp.ones(1))
        x = jnp.array([1.0])

        # f(1 - 4a) for a = 1, 0.5 fails, a = 0.25 hits the minimum
        result = _search(objective, x, jnp.array([-4.0]))

        assert bool(result.success)
        assert float(result.alpha) == 0.25
        assert int(result.n_evals) == 3
        np.testing.assert_allclose(result.x_new, [0.0], atol=1e-15)

    def test_armijo_condition_holds(self):
        objective = QuadraticFunction(jnp.array([1.0, 10.0, 100.0]))
        x = jnp.array([1.0, 1.0, 1.0])
        point = objective.update_x(x, need_hessian=False)
        direction = -point.get_gradient()

        result = _search(objective, x, direction, c1=1e-4)

        assert bool(result.success)
        expected_bound = point.get_value() + 1e-4 * result.alpha * jnp.dot(
            point.get_gradient(), direction
        )
        assert float(result.f_val) <= float(expected_bound)

    def test_never_increases_objective(self):
        """Accepted points along descent directions never increase f."""
        rng = np.random.default_rng(3)
        X = rng.normal(size=(40, 3))
        y = (rng.uniform(size=40) < 0.5).astype(np.float64)
        objective = LogLoss(X, y, l2=0.1)
        x = jnp.asarray(rng.normal(size=4))
        point = objective.update_x(x, need_hessian=False)

        for _ in range(5):
            # -D g with D positive diagonal is always a descent direction
            scaling = jnp.asarray(rng.uniform(0.5, 20.0, size=4))
            result = _search(objective, x, -scaling * point.get_gradient())
            assert bool(result.success)
            assert float(result.f_val) <= float(point.get_value())

    def test_failure_returns_smallest_step(self):
        """Along an ascent direction the search gives up after max_iter."""
        objective = QuadraticFunction(jnp.ones(2))
        x = jnp.array([1.0, 1.0])

        result = _search(objective, x, x, max_iter=5)

        assert not bool(result.success)
        assert int(result.n_evals) == 5
        np.testing.assert_allclose(result.alpha, 0.5**4)
        np.testing.assert_allclose(result.x_new, x + 0.5**4 * x)

    def test_x_unchanged(self):
        objective = QuadraticFunction(jnp.ones(2))
        x = jnp.array([1.0, 1.0])
        _search(objective, x, -4.0 * x)
        np.testing.assert_array_equal(x, [1.0, 1.0])

    def test_custom_rho(self):
        objective = QuadraticFunction(jnp.ones(1))
        result = _search(objective, jnp.array([1.0]), jnp.array([-4.0]), rho=0.25)
        assert float(result.alpha) == 0.25
        assert int(result.n_evals) == 2

    def test_float32(self):
        objective = QuadraticFunction(jnp.ones(2, dtype=jnp.float32))
        x = jnp.ones(2, dtype=jnp.float32)
        result = _search(objective, x, -x)
        assert result.alpha.dtype == jnp.float32
        assert result.x_new.dtype == jnp.float32

    def test_jit(self):
        objective = QuadraticFunction(jnp.ones(1))

        @jax.jit
        def search(x, d):
            return _search(objective, x, d).alpha

        assert float(search(jnp.array([1.0]), jnp.array([-4.0]))) == 0.25

    def test_invalid_max_iter(self):
        objective = QuadraticFunction(jnp.ones(1))
        with pytest.raises(ValueError, match="max_iter"):
            _search(objective, jnp.array([1.0]), jnp.array([-1.0]), max_iter=0)
