"""
Proposal Distributions for MCMC Sampling

This package implements the proposal distributions for the two parameter
blocks. RootProposal is defined in settings.py.

To add a new root proposal:
1. Add enum value to RootProposal in settings.py
2. Implement the proposal function in root_window.py
3. Add it to ROOT_PROPOSAL_REGISTRY

Each proposal function computes its own Hastings ratio and returns
(proposal, log_hastings_ratio, new_key). The driver selects one root
proposal at setup and never re-branches on configuration flags.
"""

from .root_window import (
    traitwise_root_proposal,
    joint_root_proposal,
    data_corr_root_proposal,
    get_root_proposal,
    ROOT_PROPOSAL_REGISTRY,
)
from .rate_matrix import rate_matrix_proposal, correlation_hastings_ratio

__all__ = [
    'traitwise_root_proposal',
    'joint_root_proposal',
    'data_corr_root_proposal',
    'get_root_proposal',
    'ROOT_PROPOSAL_REGISTRY',
    'rate_matrix_proposal',
    'correlation_hastings_ratio',
]
