"""
Rate-Matrix Proposal for MCMC Sampling

Updates one regime's rate matrix through its separation parameterization
(correlation matrix C and standard deviations s):

    1. Pick regime i uniformly among the p fitted matrices.
    2. Correlation: W ~ IW(v, (v - k - 1) C_i), C_i' = cov2cor(W).
       The inverse-Wishart is centred on C_i (its mean is the scale divided
       by v - k - 1) and v controls how concentrated the step is.
    3. Standard deviations: log s' = log s + U(-w_sd/2, w_sd/2) per trait,
       which keeps them positive.

Hastings ratio:
    log IW(C_i | v, (v-k-1) C_i') - log IW(C_i' | v, (v-k-1) C_i)
    + sum(log s' - log s)

The second term is the Jacobian of the log-scale sliding window.

Operand tuple:
    (key, correlations, sds, v, w_sd)
    correlations: (p, k, k), sds: (p, k)

Returns:
    (regime, proposed_correlations, proposed_sds), log_hastings_ratio, new_key
"""

import jax.numpy as jnp
import jax.random as random

from ..mcmc.covariance import cov2cor
from .common import (
    MatrixOperand,
    inverse_wishart_logpdf,
    sample_inverse_wishart,
    sliding_window,
)


def correlation_hastings_ratio(current, proposed, v):
    """
    log q(current | proposed) - log q(proposed | current) for the IW correlation step.
    """
    k = current.shape[-1]
    center = v - k - 1
    reverse = inverse_wishart_logpdf(current, v, center * proposed)
    forward = inverse_wishart_logpdf(proposed, v, center * current)
    return reverse - forward


def rate_matrix_proposal(operand):
    """
    Propose a new correlation matrix and sd vector for one regime.

    Args:
        operand: Tuple of (key, correlations, sds, v, w_sd)

    Returns:
        (regime, proposed_correlations, proposed_sds): regime index and the
            full stacks with only that regime changed
        log_hastings_ratio: Correlation IW term plus log-window Jacobian
        new_key: Updated random key
    """
    op = MatrixOperand(*operand)
    new_key, regime_key, iw_key, sd_key = random.split(op.key, 4)

    p, k = op.sds.shape
    regime = random.randint(regime_key, shape=(), minval=0, maxval=p)

    corr = op.correlations[regime]
    center = op.v - k - 1
    draw = sample_inverse_wishart(iw_key, op.v, center * corr)
    corr_new = cov2cor(draw)

    sd = op.sds[regime]
    log_sd_new = sliding_window(sd_key, jnp.log(sd), op.w_sd)
    sd_new = jnp.exp(log_sd_new)

    log_hastings = (correlation_hastings_ratio(corr, corr_new, op.v)
                    + jnp.sum(log_sd_new - jnp.log(sd)))

    correlations = op.correlations.at[regime].set(corr_new)
    sds = op.sds.at[regime].set(sd_new)

    return (regime, correlations, sds), log_hastings, new_key
