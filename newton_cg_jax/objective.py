"""Objective functions for Newton-CG.

The optimizer talks to the function being minimized through a small
capability interface. ``update_x`` evaluates the objective at a point and
returns an :class:`ObjectivePoint` holding the value, the gradient and,
when requested, a Hessian-vector product operator bound to that point:

    point = objective.update_x(x, need_hessian=True)
    point.get_value()              # f(x)
    point.get_gradient()           # ∇f(x)
    point.get_hessian_product()    # v -> ∇²f(x) @ v

Evaluation is pure: nothing is cached between calls, so calling
``update_x`` twice at the same point gives identical results, and the
solver never relies on a previous evaluation being current.

The Hessian is never formed by the solver. Concrete objectives decide how
to apply it: a stored matrix, an analytic formula (see
:mod:`newton_cg_jax.logloss`) or forward-over-reverse automatic
differentiation.
"""

import abc
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from newton_cg_jax.types import GradFn, HessianProduct, HVPFn, ObjectiveFn, Scalar, Vector
from newton_cg_jax.utils import args_closure, value_closure


class ObjectivePoint(eqx.Module):
    """An objective evaluated at a point.

    Attributes:
        x: The point of evaluation.
        value: Objective value f(x).
        gradient: Gradient ∇f(x).
        hessian_product: Operator v -> ∇²f(x) @ v, or None when the point was
            evaluated without ``need_hessian``.
        aux: Auxiliary output of the objective function, if it has one.
    """

    x: Vector
    value: Scalar
    gradient: Vector
    hessian_product: Optional[HessianProduct] = None
    aux: Any = None

    def get_value(self) -> Scalar:
        return self.value

    def get_gradient(self) -> Vector:
        return self.gradient

    def get_hessian_product(self) -> HessianProduct:
        if self.hessian_product is None:
            raise ValueError(
                "Hessian product was not prepared; evaluate the objective with "
                "update_x(x, need_hessian=True)."
            )
        return self.hessian_product


class AbstractObjective(eqx.Module):
    """Interface for objectives consumed by the Newton-CG solver.

    Subclasses implement :meth:`update_x`. An objective is also callable with
    the optimistix signature ``objective(x, args) -> (f_val, aux)`` so it can
    be handed to :func:`optimistix.minimise` directly; in that case optimistix
    wraps it and the solver falls back to automatic differentiation of the
    value.
    """

    @abc.abstractmethod
    def update_x(self, x: Vector, need_hessian: bool = True) -> ObjectivePoint:
        """Evaluate the objective, its gradient and optionally its Hessian product at x."""

    def __call__(self, x: Vector, args: Any = None) -> tuple[Scalar, None]:
        return self.update_x(x, need_hessian=False).get_value(), None


class QuadraticFunction(AbstractObjective):
    """Quadratic objective f(x) = 0.5 x^T A x - b^T x.

    Attributes:
        hessian: A, either a dense (n, n) matrix or a vector holding the
            diagonal of a diagonal matrix.
        linear: b.
    """

    hessian: Float[Array, "n n"] | Float[Array, " n"]
    linear: Float[Array, " n"]

    def __init__(
        self,
        hessian: Float[Array, "n n"] | Float[Array, " n"],
        linear: Optional[Float[Array, " n"]] = None,
    ):
        self.hessian = jnp.asarray(hessian)
        n = self.hessian.shape[0]
        if linear is None:
            self.linear = jnp.zeros((n,), dtype=self.hessian.dtype)
        else:
            self.linear = jnp.asarray(linear)

    def _matvec(self, v: Vector) -> Vector:
        hessian = self.hessian.astype(v.dtype)
        if hessian.ndim == 1:
            return hessian * v
        return hessian @ v

    def update_x(self, x: Vector, need_hessian: bool = True) -> ObjectivePoint:
        linear = self.linear.astype(x.dtype)
        Ax = self._matvec(x)
        return ObjectivePoint(
            x=x,
            value=0.5 * jnp.dot(x, Ax) - jnp.dot(linear, x),
            gradient=Ax - linear,
            hessian_product=self._matvec if need_hessian else None,
        )


class FunctionObjective(AbstractObjective):
    """Objective built from an optimistix-style function fn(x, args) -> (f_val, aux).

    The gradient comes from ``grad_fn`` when supplied, else from
    :func:`jax.value_and_grad`. The Hessian product comes from ``hvp_fn`` when
    supplied, else from linearizing the gradient at x (forward-over-reverse
    AD), which is done once per evaluation and reused for every product.

    Attributes:
        fn: Objective function.
        args: Extra arguments passed to every function.
        grad_fn: Optional gradient grad_fn(x, args) -> ∇f(x).
        hvp_fn: Optional Hessian-vector product hvp_fn(x, v, args) -> ∇²f(x) @ v.
    """

    fn: ObjectiveFn
    args: Any = None
    grad_fn: Optional[GradFn] = None
    hvp_fn: Optional[HVPFn] = None

    def update_x(self, x: Vector, need_hessian: bool = True) -> ObjectivePoint:
        value_fn = value_closure(self.fn, self.args)

        if self.grad_fn is None:
            (value, aux), gradient = jax.value_and_grad(
                lambda y: self.fn(y, self.args), has_aux=True
            )(x)
            gradient_fn = jax.grad(value_fn)
        else:
            value, aux = self.fn(x, self.args)
            gradient_fn = args_closure(self.grad_fn, self.args)
            gradient = gradient_fn(x)

        hessian_product = None
        if need_hessian:
            if self.hvp_fn is not None:
                hvp_fn = self.hvp_fn
                args = self.args

                def hessian_product(v: Vector) -> Vector:
                    return hvp_fn(x, v, args)

            else:
                _, hessian_product = jax.linearize(gradient_fn, x)

        return ObjectivePoint(
            x=x,
            value=value,
            gradient=gradient,
            hessian_product=hessian_product,
            aux=aux,
        )
