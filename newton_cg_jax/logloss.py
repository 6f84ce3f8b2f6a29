"""Binary logistic-regression loss for Newton-CG.

For a design matrix X (m samples, p features), labels y in {0, 1} and
coefficients w with optional intercept b, the objective is the mean
binary cross-entropy with an L2 penalty on the coefficients:

    f(b, w) = (1/m) Σ_i [log(1 + exp(z_i)) - y_i z_i] + l2 * ||w||²,
    z = X w + b.

The intercept is never penalized. When ``fit_intercept`` is enabled the
parameter vector is laid out as [b, w_1, ..., w_p], so it has p + 1 entries.

With p = σ(z) and residual r = (p - y) / m, the gradient is

    ∇_w f = X^T r + 2 l2 w,    ∂f/∂b = Σ_i r_i,

and the Hessian acts on a direction v = [v_b, v_w] as

    ∇²f v = [Σ_i s_i, X^T s + 2 l2 v_w],    s = D (X v_w + v_b),

where D = diag(p (1 - p)) / m. The curvature weights D are computed once per
evaluation and shared by every Hessian product taken at that point.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from newton_cg_jax.objective import AbstractObjective, ObjectivePoint
from newton_cg_jax.types import Vector


def _split(params: Vector, fit_intercept: bool) -> tuple[Float[Array, ""], Vector]:
    if fit_intercept:
        return params[0], params[1:]
    return jnp.zeros((), dtype=params.dtype), params


def _join(intercept: Float[Array, ""], coef: Vector, fit_intercept: bool) -> Vector:
    if fit_intercept:
        return jnp.concatenate([intercept[None], coef])
    return coef


def _linear_predictor(
    data: Float[Array, "m p"], params: Vector, fit_intercept: bool
) -> Float[Array, " m"]:
    intercept, coef = _split(params, fit_intercept)
    return data @ coef + intercept


class _LogLossHessian(eqx.Module):
    """Hessian-vector product of :class:`LogLoss` at a fixed point."""

    data: Float[Array, "m p"]
    weights: Float[Array, " m"]
    l2: float
    fit_intercept: bool = eqx.field(static=True)

    def __call__(self, v: Vector) -> Vector:
        s = self.weights * _linear_predictor(self.data, v, self.fit_intercept)
        _, v_coef = _split(v, self.fit_intercept)
        coef_part = self.data.T @ s + 2 * self.l2 * v_coef
        return _join(jnp.sum(s), coef_part, self.fit_intercept)


class LogLoss(AbstractObjective):
    """Logistic-regression loss with analytic gradient and Hessian product.

    Attributes:
        data: Design matrix, shape (m, p).
        labels: Binary labels, shape (m,).
        l2: L2 regularization strength applied to the coefficients.
        fit_intercept: Whether parameter slot 0 holds an intercept.

    Example:
        >>> loss = LogLoss(X, y, l2=0.0, fit_intercept=True)
        >>> x0 = jnp.zeros(X.shape[1] + 1)
        >>> solution = newton_cg(loss, x0, tol=1e-6)
    """

    data: Float[Array, "m p"] = eqx.field(converter=jnp.asarray)
    labels: Float[Array, " m"] = eqx.field(converter=jnp.asarray)
    l2: float = 0.0
    fit_intercept: bool = eqx.field(static=True, default=True)

    def __check_init__(self):
        if self.data.ndim != 2:
            raise ValueError(f"data must be a 2-D array, got shape {self.data.shape}")
        if self.labels.shape != (self.data.shape[0],):
            raise ValueError(
                f"labels must have shape ({self.data.shape[0]},), "
                f"got {self.labels.shape}"
            )
        if self.l2 < 0:
            raise ValueError(f"l2 must be non-negative, got {self.l2}")

    @property
    def n_params(self) -> int:
        """Length of the parameter vector, including the intercept slot."""
        return self.data.shape[1] + int(self.fit_intercept)

    def update_x(self, x: Vector, need_hessian: bool = True) -> ObjectivePoint:
        m = self.data.shape[0]
        data = self.data.astype(x.dtype)
        labels = self.labels.astype(x.dtype)

        z = _linear_predictor(data, x, self.fit_intercept)
        _, coef = _split(x, self.fit_intercept)

        # log(1 + exp(z)) - y z, written with softplus for large |z|
        value = jnp.mean(jax.nn.softplus(z) - labels * z) + self.l2 * jnp.dot(
            coef, coef
        )

        prob = jax.nn.sigmoid(z)
        residual = (prob - labels) / m
        gradient = _join(
            jnp.sum(residual), data.T @ residual + 2 * self.l2 * coef, self.fit_intercept
        )

        hessian_product = None
        if need_hessian:
            hessian_product = _LogLossHessian(
                data=data,
                weights=prob * (1 - prob) / m,
                l2=self.l2,
                fit_intercept=self.fit_intercept,
            )

        return ObjectivePoint(
            x=x, value=value, gradient=gradient, hessian_product=hessian_product
        )


def predict_proba(
    params: Vector, data: Float[Array, "m p"], fit_intercept: bool = True
) -> Float[Array, " m"]:
    """Probability of the positive class for each row of ``data``."""
    return jax.nn.sigmoid(
        _linear_predictor(data.astype(params.dtype), params, fit_intercept)
    )


def predict(
    params: Vector, data: Float[Array, "m p"], fit_intercept: bool = True
) -> Array:
    """Class labels (0 or 1), thresholding the probability at 0.5."""
    return (predict_proba(params, data, fit_intercept) >= 0.5).astype(jnp.int32)
