"""
Common utilities for proposal distributions.

This module provides shared functions used across the root and rate-matrix
proposals.

Functions:
    sliding_window: Uniform sliding-window step of a given width
    sample_inverse_wishart: Draw from an inverse-Wishart via Bartlett decomposition
    inverse_wishart_logpdf: Log density of the inverse-Wishart distribution
"""

from collections import namedtuple

import jax.numpy as jnp
import jax.random as random
import jax.scipy.special


# Named tuples for the proposal operands
RootOperand = namedtuple('RootOperand', ['key', 'root', 'w_mu', 'data_corr'])
MatrixOperand = namedtuple('MatrixOperand', ['key', 'correlations', 'sds', 'v', 'w_sd'])


def sliding_window(key, center, width):
    """
    Uniform sliding-window step: U(center - width/2, center + width/2).

    Symmetric, so it contributes nothing to the Hastings ratio.
    """
    offset = random.uniform(key, shape=jnp.shape(center), minval=-0.5, maxval=0.5)
    return center + width * offset


def sample_inverse_wishart(key, df, scale):
    """
    Draw X ~ IW(df, scale) using the Bartlett decomposition of X^-1 ~ W(df, scale^-1).

    Args:
        key: JAX random key
        df: Degrees of freedom (> k - 1)
        scale: (k, k) positive-definite scale matrix

    Returns:
        (k, k) inverse-Wishart draw
    """
    k = scale.shape[-1]
    chi_key, normal_key = random.split(key)

    # Bartlett factor: sqrt(chi2(df - i)) on the diagonal, N(0, 1) below it
    dof = df - jnp.arange(k)
    chi2 = 2.0 * random.gamma(chi_key, dof / 2.0, shape=(k,))
    lower = jnp.tril(random.normal(normal_key, shape=(k, k)), -1)
    A = lower + jnp.diag(jnp.sqrt(chi2))

    L = jnp.linalg.cholesky(jnp.linalg.inv(scale))
    LA = L @ A
    wishart = LA @ LA.T
    draw = jnp.linalg.inv(wishart)
    return 0.5 * (draw + draw.T)


def inverse_wishart_logpdf(x, df, scale):
    """
    Log density of X under IW(df, scale).

    log p = (df/2) log|S| - (df k/2) log 2 - log Gamma_k(df/2)
            - ((df + k + 1)/2) log|X| - tr(S X^-1)/2
    """
    k = x.shape[-1]
    _, logdet_scale = jnp.linalg.slogdet(scale)
    _, logdet_x = jnp.linalg.slogdet(x)
    trace_term = jnp.trace(scale @ jnp.linalg.inv(x))
    return (0.5 * df * logdet_scale
            - 0.5 * df * k * jnp.log(2.0)
            - jax.scipy.special.multigammaln(0.5 * df, k)
            - 0.5 * (df + k + 1) * logdet_x
            - 0.5 * trace_term)
