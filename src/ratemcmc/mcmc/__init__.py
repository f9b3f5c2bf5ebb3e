"""
MCMC Subpackage - Core sampling implementation.

This package contains the sampler:
- single_run: The chain driver (rate_mcmc)
- config: Configuration and initialization
- traversal: Tree validation and postorder traversal plans
- likelihood: Pruning log-likelihood under multivariate Brownian motion
- covariance: Correlation / variance decomposition of rate matrices
- sampling: Metropolis-Hastings steps for the root and rate-matrix blocks
- diagnostics: Acceptance summaries
- types: Core data structures (TraversalPlan, ChainState, RunDescriptor)
- utils: Miscellaneous utilities
"""

# Import types first (registers the TraversalPlan pytree)
from .types import (
    NodeType,
    TraversalPlan,
    TraitData,
    PriorBundle,
    StartState,
    ChainState,
    RunDescriptor,
)

# Import main entry point
from .single_run import rate_mcmc

# Import commonly used functions
from .config import configure_mcmc_system, initialize_chain_state
from .traversal import build_traversal_plan, build_traversal_plans, validate_tree
from .likelihood import log_likelihood
from .diagnostics import acceptance_summary, print_acceptance_summary

__all__ = [
    # Main entry point
    'rate_mcmc',
    # Types
    'NodeType',
    'TraversalPlan',
    'TraitData',
    'PriorBundle',
    'StartState',
    'ChainState',
    'RunDescriptor',
    # Config
    'configure_mcmc_system',
    'initialize_chain_state',
    # Tree preprocessing and likelihood
    'build_traversal_plan',
    'build_traversal_plans',
    'validate_tree',
    'log_likelihood',
    # Diagnostics
    'acceptance_summary',
    'print_acceptance_summary',
]
