from typing import Any, Callable, TypeVar

import jax

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def value_closure(
    fn: Callable[[jax.Array, T], tuple[jax.Array, Any]], args: T
) -> Callable[[jax.Array], jax.Array]:
    """Close over ``args`` and drop the auxiliary output of ``fn(x, args) -> (f, aux)``."""

    def wrapped(x: jax.Array) -> jax.Array:
        value, _ = fn(x, args)
        return value

    return wrapped
