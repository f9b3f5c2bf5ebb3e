"""
MCMC Configuration and Initialization.

This module handles setting up and validating a run:
- configure_mcmc_system: Main configuration entry point
- initialize_chain_state: Build the generation-1 ChainState from the start values
- data_correlation: Correlation of the tip data for DATA_CORR root proposals
- gen_rng_keys: Generate JAX random keys

All config keys use lowercase with underscores (e.g., 'gen', 'w_mu').
"""

import math
from typing import Any, Dict, Tuple

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from ..error_handling import validate_mcmc_config, validate_start
from ..proposals import get_root_proposal, rate_matrix_proposal
from ..settings import RootProposal, resolve_root_proposal
from ..tree import as_tree_sample
from .covariance import cov2cor, decompose_cov, log_jacobian, rebuild_cov
from .likelihood import log_likelihood
from .sampling import SamplerContext
from .traversal import build_traversal_plans
from .types import ChainState, PriorBundle, StartState, TraitData
from .utils import clean_config

import logging
logger = logging.getLogger('ratemcmc')

# Smallest eigenvalue accepted for the data correlation used by DATA_CORR root proposals
PD_TOL = 1e-10


def gen_rng_keys(rng_seed: int) -> Tuple[Any, Any]:
    """Generate JAX random keys from seed.

    Returns:
        (master_key, init_key): Tuple of JAX PRNGKeys
    """
    mkey = jax.random.PRNGKey(rng_seed)
    master_key, init_key = random.split(mkey, 2)
    return master_key, init_key


def data_correlation(X: np.ndarray) -> np.ndarray:
    """Correlation matrix of the tip data (traits in columns)."""
    cov = np.atleast_2d(np.cov(np.asarray(X, dtype=np.float64), rowvar=False))
    return np.asarray(cov2cor(jnp.asarray(cov)))


def initialize_chain_state(init_key, start: StartState, X, plans, prior: PriorBundle) -> ChainState:
    """
    Build the generation-1 chain state and its cached quantities.

    When start.sds is given each start matrix is rebuilt from its own
    correlation and those standard deviations.

    Raises:
        ValueError: If the start has a non-finite likelihood or prior
    """
    matrices = jnp.stack([jnp.asarray(m, dtype=jnp.float64) for m in start.matrices])
    if start.sds is not None:
        sds = jnp.stack([jnp.asarray(s, dtype=jnp.float64) for s in start.sds])
        matrices = rebuild_cov(cov2cor(matrices), sds ** 2)

    correlations, variances = decompose_cov(matrices)
    sds = jnp.sqrt(variances)
    root = jnp.asarray(start.root, dtype=jnp.float64)

    tree_index = 0
    if len(plans) > 1:
        tree_index = int(random.randint(init_key, shape=(), minval=0, maxval=len(plans)))

    log_lik = float(log_likelihood(X, plans[tree_index], matrices, root))
    root_prior = float(prior.root(np.asarray(root)))
    matrix_prior = float(prior.matrices([np.asarray(m) for m in matrices]))
    sd_prior = float(prior.sds([np.asarray(s) for s in sds]))

    errors = []
    if not math.isfinite(log_lik):
        errors.append(f"log-likelihood is {log_lik}")
    for name, value in (('root', root_prior), ('matrix', matrix_prior), ('sd', sd_prior)):
        if not math.isfinite(value):
            errors.append(f"{name} prior log density is {value}")
    if errors:
        raise ValueError("Starting state is outside the support:\n  " + "\n  ".join(errors))

    return ChainState(
        root=root,
        correlations=correlations,
        sds=sds,
        covariances=matrices,
        log_lik=log_lik,
        root_prior=root_prior,
        matrix_prior=matrix_prior,
        sd_prior=sd_prior,
        jacobians=log_jacobian(matrices),
        tree_index=tree_index,
    )


def configure_mcmc_system(
    mcmc_config: Dict[str, Any],
    data: TraitData,
    trees,
    start: StartState,
    prior: PriorBundle,
) -> Tuple[Dict[str, Any], SamplerContext, ChainState, Any]:
    """
    Configure a run from config, data, trees, start values and priors.

    Everything that can fail does so here, before any generation runs.

    Args:
        mcmc_config: Input configuration dict (see settings.CONFIG_DEFAULTS)
        data: TraitData with tip values
        trees: MappedTree or sequence of MappedTree (a tree sample)
        start: StartState
        prior: PriorBundle

    Returns:
        user_config: Clean config dict with user values + derived values
        ctx: SamplerContext shared by every generation
        initial_state: ChainState for generation 1
        master_key: JAX key driving the chain
    """
    user_config = clean_config(mcmc_config)
    validate_mcmc_config(user_config, n_traits=data.n_traits)

    trees = as_tree_sample(trees)
    plans = build_traversal_plans(trees, data.tip_labels)
    n_regimes = plans[0].n_regimes
    validate_start(start.root, start.matrices, start.sds, data.n_traits, n_regimes)

    if user_config['rng_seed'] is None:
        user_config['rng_seed'] = int(np.random.default_rng().integers(2**31 - 1))
    master_key, init_key = gen_rng_keys(user_config['rng_seed'])
    logger.info(f"Chain seed: {user_config['rng_seed']}")

    mode = resolve_root_proposal(user_config['traitwise'], user_config['use_corr'])
    user_config['root_proposal'] = mode.name.lower()
    if mode == RootProposal.DATA_CORR:
        logger.info("Using a data informed joint proposal for the root, value of 'traitwise' ignored.")
    elif mode == RootProposal.TRAITWISE:
        logger.info("Using an independent proposal for the root value of each trait.")
    else:
        logger.info("Using a joint proposal for the root.")

    X = jnp.asarray(data.values, dtype=jnp.float64)
    data_corr = np.eye(data.n_traits)
    if mode == RootProposal.DATA_CORR:
        data_corr = data_correlation(data.values)
        if not np.all(np.isfinite(data_corr)) or np.linalg.eigvalsh(data_corr).min() <= PD_TOL:
            raise ValueError(
                "Data correlation is not positive-definite; "
                "'use_corr' needs at least k + 1 tips with non-constant, non-collinear traits"
            )

    if len(plans) == 1:
        logger.info("MCMC chain will use a single tree.")
    else:
        logger.info(f"MCMC chain will integrate over a sample of {len(plans)} trees.")

    prop = np.asarray(user_config['prop'], dtype=float)
    user_config['prop'] = tuple((prop / prop.sum()).tolist())
    user_config['n_traits'] = data.n_traits
    user_config['n_regimes'] = n_regimes
    user_config['n_trees'] = len(plans)

    ctx = SamplerContext(
        X=X,
        plans=plans,
        prior=prior,
        root_proposal=jax.jit(get_root_proposal(mode)),
        matrix_proposal=jax.jit(rate_matrix_proposal),
        data_corr=jnp.asarray(data_corr),
        w_mu=float(user_config['w_mu']),
        w_sd=float(user_config['w_sd']),
        v=float(user_config['v']),
    )

    initial_state = initialize_chain_state(init_key, start, X, plans, prior)
    return user_config, ctx, initial_state, master_key
