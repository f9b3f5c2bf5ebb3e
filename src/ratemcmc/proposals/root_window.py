"""
Root Proposals for MCMC Sampling

Three sliding-window strategies for the root (phylogenetic mean) vector.
Exactly one is selected per run from RootProposal:

    TRAITWISE  - slide one uniformly chosen trait by U(-w_mu/2, w_mu/2)
    JOINT      - slide every trait at once with one draw from the k-dim window
    DATA_CORR  - x' ~ N(x, w_mu * C_data), C_data the correlation of the tip data

All three are symmetric: q(x'|x) = q(x|x'), so the Hastings ratio is 0.

DATA_CORR steps along the major axes of the observed trait correlation,
which mixes faster when traits are strongly correlated.

All proposal functions accept a single operand tuple:
    (key, root, w_mu, data_corr)
and return (proposal, log_hastings_ratio, new_key).
"""

import jax.numpy as jnp
import jax.random as random

from ..settings import RootProposal
from .common import RootOperand, sliding_window


def traitwise_root_proposal(operand):
    """
    Slide a single trait of the root vector.

    Only one uniformly chosen trait moves per call. An independent window
    for every trait at once is the same move as joint_root_proposal.

    Args:
        operand: Tuple of (key, root, w_mu, data_corr)
            data_corr is unused

    Returns:
        proposal: Root vector with one trait moved
        log_hastings_ratio: 0.0 (symmetric proposal)
        new_key: Updated random key
    """
    op = RootOperand(*operand)
    new_key, trait_key, window_key = random.split(op.key, 3)

    k = op.root.shape[0]
    trait = random.randint(trait_key, shape=(), minval=0, maxval=k)
    moved = sliding_window(window_key, op.root[trait], op.w_mu)
    proposal = op.root.at[trait].set(moved)

    return proposal, 0.0, new_key


def joint_root_proposal(operand):
    """
    Slide every trait of the root vector in one joint draw.

    Args:
        operand: Tuple of (key, root, w_mu, data_corr)
            data_corr is unused

    Returns:
        proposal: Root vector with every trait moved
        log_hastings_ratio: 0.0 (symmetric proposal)
        new_key: Updated random key
    """
    op = RootOperand(*operand)
    new_key, window_key = random.split(op.key)
    proposal = sliding_window(window_key, op.root, op.w_mu)
    return proposal, 0.0, new_key


def data_corr_root_proposal(operand):
    """
    Multivariate normal root step shaped by the tip-data correlation.

    Proposal: x' ~ N(x, w_mu * C_data)

    Args:
        operand: Tuple of (key, root, w_mu, data_corr)

    Returns:
        proposal: Proposed root vector
        log_hastings_ratio: 0.0 (symmetric proposal)
        new_key: Updated random key
    """
    op = RootOperand(*operand)
    new_key, proposal_key = random.split(op.key)

    L = jnp.linalg.cholesky(op.w_mu * op.data_corr)
    noise = random.normal(proposal_key, shape=op.root.shape)
    proposal = op.root + L @ noise

    return proposal, 0.0, new_key


# Map from RootProposal enum value to proposal function
ROOT_PROPOSAL_REGISTRY = {
    int(RootProposal.TRAITWISE): traitwise_root_proposal,
    int(RootProposal.JOINT): joint_root_proposal,
    int(RootProposal.DATA_CORR): data_corr_root_proposal,
}


def get_root_proposal(mode):
    """Look up the root proposal function for a RootProposal value."""
    return ROOT_PROPOSAL_REGISTRY[int(mode)]
