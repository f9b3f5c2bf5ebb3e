"""
ratemcmc - MCMC estimation of evolutionary rate matrices

Samples the root vector and one rate matrix per regime for multivariate
Brownian-motion trait evolution on a phylogeny (or a sample of phylogenies)
with regimes mapped onto the branches.

Public API:
    Sampling:
        rate_mcmc - Run one chain and write it to disk
        load_chain - Read the chain files of a finished run

    Inputs:
        MappedTree - Tree with per-edge regime times
        TraitData - Tip data with row and column labels
        StartState - Starting root, matrices and optional sds
        PriorBundle - Log-density callables for root, matrices and sds

    Results:
        RunDescriptor - Handle returned by rate_mcmc
        acceptance_summary - Per-block acceptance counts and rates

    Utilities:
        log_likelihood - Pruning log-likelihood for one tree
        build_traversal_plan - Preprocess a tree for log_likelihood
        simulate_traits - Simulate tip data on a mapped tree
        decompose_cov / rebuild_cov - Separation parameterization helpers

Example:
    from ratemcmc import MappedTree, TraitData, StartState, PriorBundle, rate_mcmc

    tree = MappedTree(edge=edge, mapped_edge=mapped, tip_labels=labels)
    data = TraitData(values=X, tip_labels=labels)
    start = StartState(root=np.zeros(2), matrices=[np.eye(2), np.eye(2)])
    prior = PriorBundle(root=log_prior_root, matrices=log_prior_mats, sds=log_prior_sds)

    run = rate_mcmc(data, tree, start, prior, {'gen': 10000, 'dir': 'chains'})
    chain = load_chain(run, burn=0.25)
"""
# CRITICAL: Import jax_config FIRST to set environment variables before JAX loads
from . import jax_config  # noqa: F401

# Import mcmc subpackage to register the TraversalPlan pytree
from . import mcmc as _mcmc  # noqa: F401

from .settings import RootProposal, UpdateBlock, CONFIG_DEFAULTS
from .tree import MappedTree, as_tree_sample, simulate_traits
from .mcmc.types import (
    NodeType,
    TraversalPlan,
    TraitData,
    PriorBundle,
    StartState,
    ChainState,
    RunDescriptor,
)
from .mcmc.traversal import build_traversal_plan, build_traversal_plans
from .mcmc.likelihood import log_likelihood
from .mcmc.covariance import cov2cor, decompose_cov, rebuild_cov, log_jacobian
from .mcmc.diagnostics import acceptance_summary, print_acceptance_summary
from .chain_io import ChainWriter, ChunkBuffer, load_chain

# Main MCMC entry point
from .mcmc import rate_mcmc
