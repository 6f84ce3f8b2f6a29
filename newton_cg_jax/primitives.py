"""Reduction and elementwise primitives used by the optimizer.

These are thin wrappers over ``jax.numpy`` with fixed numeric contracts, so the
solver code reads in terms of the operations it needs rather than the array
calls that implement them. All of them are traceable; to dispatch one from the
host with a completion handle, use :func:`newton_cg_jax.events.submit`::

    event = submit(l1_norm, grad, deps=[update_event])
    grad_norm = float(event.read())
"""

from collections.abc import Callable

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from newton_cg_jax.types import Scalar, Vector


@jaxtyped(typechecker=beartype)
def l1_norm(x: Vector) -> Scalar:
    """Sum of absolute values, ``||x||_1``."""
    return jnp.sum(jnp.abs(x))


@jaxtyped(typechecker=beartype)
def max_abs(x: Vector) -> Scalar:
    """Largest absolute component, ``||x||_inf``."""
    return jnp.max(jnp.abs(x))


@jaxtyped(typechecker=beartype)
def dot_product(a: Vector, b: Vector) -> Scalar:
    """Inner product ``<a, b>``. Both vectors must have the same length."""
    return jnp.dot(a, b)


def element_wise(
    fn: Callable[[Array, Array], Array],
    x: Vector,
    param: float | Float[Array, ""] = 0.0,
) -> Vector:
    """Apply the scalar kernel ``fn(x_i, param)`` to every component of ``x``.

    The parameter is cast to the dtype of ``x`` so the result keeps the
    input precision.
    """
    param = jnp.asarray(param, dtype=x.dtype)
    return jax.vmap(fn, in_axes=(0, None))(x, param)


def fill(like: Vector, value: float) -> Vector:
    """A vector shaped and typed like ``like`` with every entry set to ``value``."""
    return jnp.full_like(like, value)


def copy(src: Vector) -> Vector:
    """A fresh device buffer holding the contents of ``src``."""
    return jnp.array(src, copy=True)


def negate(value: Array, _: Array) -> Array:
    """Elementwise kernel for :func:`element_wise` returning ``-value``."""
    return -value
