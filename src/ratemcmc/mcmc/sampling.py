"""
MCMC Sampling Functions.

Core Metropolis-Hastings steps for the two parameter blocks:
- SamplerContext: everything a step needs besides the chain state
- log_acceptance_ratio: sanitised MH log ratio (NaN/Inf -> rejection)
- metropolis_accept: the uniform draw and accept/reject decision
- propose_tree: candidate active tree for a tree sample
- root_step: propose, evaluate and accept/reject a new root vector
- matrix_step: propose, evaluate and accept/reject one regime's rate matrix

Each step returns the next ChainState (the candidate when accepted, the
current state otherwise), whether it accepted, and the updated key.
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Tuple

import jax.numpy as jnp
import jax.random as random
import numpy as np

from .covariance import log_jacobian, rebuild_cov
from .likelihood import log_likelihood
from .types import ChainState, PriorBundle


@dataclass(frozen=True)
class SamplerContext:
    """
    Fixed inputs shared by every generation of a run.

    root_proposal and matrix_proposal are the compiled proposal functions
    selected once at setup.
    """
    X: Any                      # (n_tips, k) data matrix
    plans: Tuple[Any, ...]      # one TraversalPlan per tree
    prior: PriorBundle
    root_proposal: Callable
    matrix_proposal: Callable
    data_corr: Any              # (k, k) tip-data correlation (identity unless DATA_CORR)
    w_mu: float
    w_sd: float
    v: float

    @property
    def n_trees(self) -> int:
        return len(self.plans)


def log_acceptance_ratio(proposed, current, log_hastings=0.0):
    """
    MH log ratio with non-finite values mapped to -inf.

    Args:
        proposed: Unnormalised log posterior at the candidate
        current: Unnormalised log posterior at the current state
        log_hastings: log q(current|candidate) - log q(candidate|current)

    Returns:
        Python float; -inf whenever the candidate or the ratio is not finite
    """
    proposed = float(proposed)
    log_hastings = float(log_hastings)
    if not (math.isfinite(proposed) and math.isfinite(log_hastings)):
        return -math.inf
    ratio = proposed - float(current) + log_hastings
    return -math.inf if math.isnan(ratio) else ratio


def metropolis_accept(key, log_ratio):
    """
    Accept when log(U) < log_ratio, U ~ Uniform(0, 1).

    Returns:
        (accept, new_key)
    """
    new_key, accept_key = random.split(key)
    if log_ratio == -math.inf:
        return False, new_key
    log_uniform = float(jnp.log(random.uniform(accept_key, shape=())))
    return log_uniform < log_ratio, new_key


def propose_tree(key, state: ChainState, n_trees: int):
    """Uniform candidate tree for a tree sample; the active tree otherwise."""
    new_key, tree_key = random.split(key)
    if n_trees == 1:
        return state.tree_index, new_key
    return int(random.randint(tree_key, shape=(), minval=0, maxval=n_trees)), new_key


def root_step(key, state: ChainState, ctx: SamplerContext):
    """
    One MH update of the root vector.

    Returns:
        next_state, accepted, new_key
    """
    operand = (key, state.root, ctx.w_mu, ctx.data_corr)
    proposal, log_hastings, key = ctx.root_proposal(operand)
    tree, key = propose_tree(key, state, ctx.n_trees)

    log_lik = float(log_likelihood(ctx.X, ctx.plans[tree], state.covariances, proposal))
    if math.isfinite(log_lik):
        root_prior = float(ctx.prior.root(np.asarray(proposal)))
    else:
        root_prior = -math.inf

    log_ratio = log_acceptance_ratio(
        log_lik + root_prior,
        state.log_lik + state.root_prior,
        log_hastings,
    )
    accept, key = metropolis_accept(key, log_ratio)
    if not accept:
        return state, False, key

    next_state = replace(state, root=proposal, log_lik=log_lik,
                         root_prior=root_prior, tree_index=tree)
    return next_state, True, key


def matrix_step(key, state: ChainState, ctx: SamplerContext):
    """
    One MH update of a single regime's rate matrix.

    Returns:
        next_state, accepted, regime (0-based index of the proposed matrix), new_key
    """
    operand = (key, state.correlations, state.sds, ctx.v, ctx.w_sd)
    (regime, correlations, sds), log_hastings, key = ctx.matrix_proposal(operand)
    regime = int(regime)
    tree, key = propose_tree(key, state, ctx.n_trees)

    covariances = state.covariances.at[regime].set(rebuild_cov(correlations[regime], sds[regime] ** 2))
    log_lik = float(log_likelihood(ctx.X, ctx.plans[tree], covariances, state.root))

    if math.isfinite(log_lik):
        matrix_prior = float(ctx.prior.matrices([np.asarray(c) for c in covariances]))
        sd_prior = float(ctx.prior.sds([np.asarray(s) for s in sds]))
        jacobians = log_jacobian(covariances)
        total_jacobian = float(jnp.sum(jacobians))
    else:
        matrix_prior = sd_prior = total_jacobian = -math.inf
        jacobians = None

    log_ratio = log_acceptance_ratio(
        log_lik + matrix_prior + sd_prior + total_jacobian,
        state.log_lik + state.matrix_prior + state.sd_prior + float(jnp.sum(state.jacobians)),
        log_hastings,
    )
    accept, key = metropolis_accept(key, log_ratio)
    if not accept:
        return state, False, regime, key

    next_state = replace(
        state,
        correlations=correlations,
        sds=sds,
        covariances=covariances,
        log_lik=log_lik,
        matrix_prior=matrix_prior,
        sd_prior=sd_prior,
        jacobians=jacobians,
        tree_index=tree,
    )
    return next_state, True, regime, key
