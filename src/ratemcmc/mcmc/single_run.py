"""
MCMC Single Run - the chain driver.

This module provides rate_mcmc(), which runs one chain for a fixed number of
generations:

    select block (root vs. one rate matrix, by the 'prop' probabilities)
      -> propose -> likelihood + priors -> accept/reject
      -> record acceptance -> buffer snapshot -> flush every 'chunk' generations

Generation 1 is the starting state and is always recorded as accepted.
Generations run strictly in sequence; independent chains are independent
calls (each gets its own identifier and output files).

Helper functions:
- _select_blocks: Pre-draw the block updated at every generation
- _log_generation: One line of the per-generation chain log
"""

import time
from typing import Any, Dict

import jax.random as random
import numpy as np

from ..chain_io import ChainWriter, ChunkBuffer, chain_file_paths, make_run_id
from ..error_handling import validate_output_dir
from ..settings import ACCEPT_REJECTED, ACCEPT_ROOT, UpdateBlock
from ..tree import as_tree_sample
from .config import configure_mcmc_system
from .diagnostics import acceptance_summary, print_acceptance_summary
from .sampling import matrix_step, root_step
from .types import PriorBundle, RunDescriptor, StartState, TraitData

import logging
logger = logging.getLogger('ratemcmc')

__all__ = ['rate_mcmc']


def _select_blocks(key, gen: int, prop) -> np.ndarray:
    """Block updated at each generation (index 0 is the start and unused)."""
    p_matrix = prop[1] / (prop[0] + prop[1])
    draws = random.bernoulli(key, p_matrix, shape=(gen,))
    return np.where(np.asarray(draws), int(UpdateBlock.MATRIX), int(UpdateBlock.ROOT))


def _log_generation(writer, generation: int, label: str, accepted: bool, state) -> None:
    status = 'accepted' if accepted else 'rejected'
    tree = f"\t{state.tree_index + 1}"
    writer.log(f"{generation}\t{label}\t{status}\t{state.log_lik:.6f}{tree}")


def rate_mcmc(
    data: TraitData,
    trees,
    start: StartState,
    prior: PriorBundle,
    mcmc_config: Dict[str, Any],
) -> RunDescriptor:
    """
    Run an MCMC chain for the root vector and the per-regime rate matrices.

    Args:
        data: TraitData (rows must match the tree tip labels)
        trees: MappedTree or sequence of MappedTree sharing the same tips
        start: StartState with root, one matrix per regime and optional sds
        prior: PriorBundle of log-density callables
        mcmc_config: Dict with at least 'gen'; see settings.CONFIG_DEFAULTS

    Returns:
        RunDescriptor identifying the chain files and records

    Raises:
        ValueError: Invalid configuration, data, trees or start (before sampling)
        PermissionError: Output directory not writable (before sampling)
        OSError: A chunk could not be written; earlier chunks stay on disk
    """
    run_start = time.time()
    trees = as_tree_sample(trees)
    user_config, ctx, state, key = configure_mcmc_system(mcmc_config, data, trees, start, prior)

    gen = user_config['gen']
    chunk = user_config['chunk']
    n_regimes = user_config['n_regimes']
    output_dir = validate_output_dir(user_config['dir'])
    run_id = make_run_id(user_config['id_len'])
    paths = chain_file_paths(output_dir, user_config['outname'], run_id, n_regimes)
    logger.info(f"Run {run_id}: {gen} generations, chunk {chunk}, "
                f"{data.n_traits} trait(s), {n_regimes} regime(s), output in {output_dir}")

    acceptance = np.zeros(gen, dtype=np.int64)
    proposals = np.full(gen, -1, dtype=np.int64)
    tree_index = np.zeros(gen, dtype=np.int64) if ctx.n_trees > 1 else None
    acceptance[0] = ACCEPT_ROOT
    if tree_index is not None:
        tree_index[0] = state.tree_index

    key, block_key = random.split(key)
    blocks = _select_blocks(block_key, gen, user_config['prop'])

    buffer = ChunkBuffer(chunk, state)
    with ChainWriter(paths, run_id, log_capacity=chunk) as writer:
        writer.log("generation\tblock\tstatus\tloglik\ttree")
        _log_generation(writer, 1, 'start', True, state)

        for g in range(1, gen):
            if blocks[g] == UpdateBlock.ROOT:
                state, accepted, key = root_step(key, state, ctx)
                proposals[g] = 0
                code = ACCEPT_ROOT
                label = 'root'
            else:
                state, accepted, regime, key = matrix_step(key, state, ctx)
                proposals[g] = regime + 1
                code = ACCEPT_ROOT + regime + 1
                label = f"matrix_{regime + 1}"

            acceptance[g] = code if accepted else ACCEPT_REJECTED
            if tree_index is not None:
                tree_index[g] = state.tree_index
            _log_generation(writer, g + 1, label, accepted, state)

            buffer.append(state)
            if buffer.is_full:
                writer.write_states(buffer.take_chunk())
                logger.info(f"Run {run_id}: generation {writer.lines_written}/{gen} written")

        writer.write_states(buffer.drain())

    run_time = time.time() - run_start
    logger.info(f"Run {run_id} finished: {writer.lines_written} generations in {run_time:.1f}s")
    print_acceptance_summary(acceptance_summary(acceptance, proposals, n_regimes))

    return RunDescriptor(
        acceptance=acceptance,
        proposals=proposals,
        tree_index=tree_index,
        n_traits=data.n_traits,
        n_regimes=n_regimes,
        run_id=run_id,
        output_dir=output_dir,
        outname=user_config['outname'],
        trait_names=data.trait_names,
        data=data,
        trees=trees,
        prior=prior,
        start=start,
        gen=gen,
        run_time=run_time,
        config=user_config,
    )
