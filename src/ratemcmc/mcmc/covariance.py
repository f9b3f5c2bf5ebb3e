"""
Covariance decomposition utilities.

Rate matrices are proposed on a separation parameterization: a correlation
matrix plus a vector of variances (standard deviations squared). This module
converts between the two forms and provides the log Jacobian of the map from
(standard deviations, correlations) to covariance entries.

All functions are pure and operate on single (k, k) matrices or on
(p, k, k) stacks.
"""

import jax.numpy as jnp


def cov2cor(sigma):
    """Correlation matrix of a covariance matrix (works on stacks)."""
    sd = jnp.sqrt(jnp.diagonal(sigma, axis1=-2, axis2=-1))
    corr = sigma / (sd[..., :, None] * sd[..., None, :])
    # Exact unit diagonal
    k = sigma.shape[-1]
    eye = jnp.eye(k, dtype=corr.dtype)
    return corr * (1.0 - eye) + eye


def decompose_cov(sigma):
    """
    Split a covariance matrix into correlation and variance components.

    Args:
        sigma: (k, k) or (p, k, k) covariance matrix

    Returns:
        (correlation, variances): correlation has sigma's shape,
        variances is the diagonal, shape (..., k)
    """
    variances = jnp.diagonal(sigma, axis1=-2, axis2=-1)
    return cov2cor(sigma), variances


def rebuild_cov(corr, variances):
    """
    Reassemble a covariance matrix from correlation and variances.

    sigma = diag(sqrt v) @ corr @ diag(sqrt v)

    The result is symmetric positive-definite whenever corr is a valid
    correlation matrix and all variances are positive.
    """
    sd = jnp.sqrt(variances)
    sigma = corr * sd[..., :, None] * sd[..., None, :]
    return 0.5 * (sigma + jnp.swapaxes(sigma, -1, -2))


def log_jacobian(sigma):
    """
    Log Jacobian of (standard deviations, correlations) -> covariance.

    With sigma_ij = s_i s_j r_ij the determinant is 2^k prod(s_i)^k, i.e.
    (k / 2) * sum(log v_i) + k log 2 in terms of the variances v_i. The
    constant k log 2 cancels in every acceptance ratio and is dropped.

    Args:
        sigma: (k, k) or (p, k, k) covariance matrix

    Returns:
        Scalar, or (p,) array for a stack
    """
    k = sigma.shape[-1]
    variances = jnp.diagonal(sigma, axis1=-2, axis2=-1)
    return 0.5 * k * jnp.sum(jnp.log(variances), axis=-1)
