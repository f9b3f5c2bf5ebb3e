"""
Acceptance diagnostics.

Per-block proposal counts and acceptance rates computed from the
acceptance and proposal records of a run. Convergence diagnostics are
left to downstream tools that read the chain files.
"""

from typing import Any, Dict

import numpy as np

from ..settings import ACCEPT_ROOT

import logging
logger = logging.getLogger('ratemcmc')


def acceptance_summary(acceptance, proposals, n_regimes: int) -> Dict[str, Any]:
    """
    Proposal counts and acceptance rates per block.

    The first generation is the synthetic start and is excluded.

    Args:
        acceptance: (gen,) acceptance codes (0 reject, 1 root, 1 + i matrix i)
        proposals: (gen,) proposed block (-1 start, 0 root, i matrix i)
        n_regimes: Number of rate matrices

    Returns:
        Dict mapping block label ('root', 'matrix_1', ...) to a dict with
        'proposed', 'accepted' and 'rate' (NaN when never proposed), plus
        'overall' for all blocks together
    """
    acceptance = np.asarray(acceptance)[1:]
    proposals = np.asarray(proposals)[1:]

    summary = {}
    labels = ['root'] + [f"matrix_{i + 1}" for i in range(n_regimes)]
    for block, label in enumerate(labels):
        proposed = int(np.sum(proposals == block))
        accepted = int(np.sum(acceptance == ACCEPT_ROOT + block))
        rate = accepted / proposed if proposed else float('nan')
        summary[label] = {'proposed': proposed, 'accepted': accepted, 'rate': rate}

    total = int(proposals.size)
    accepted_total = int(np.sum(acceptance > 0))
    summary['overall'] = {
        'proposed': total,
        'accepted': accepted_total,
        'rate': accepted_total / total if total else float('nan'),
    }
    return summary


def print_acceptance_summary(summary: Dict[str, Any]) -> None:
    """Log acceptance rates, warning about blocks below 10%."""
    logger.info("--- MH Acceptance Rates ---")
    low = []
    for label, stats in summary.items():
        if stats['proposed'] == 0:
            logger.info(f"  {label}: never proposed")
            continue
        logger.info(f"  {label}: {stats['rate']:.1%} ({stats['accepted']}/{stats['proposed']})")
        if label != 'overall' and stats['rate'] < 0.10:
            low.append(label)

    if low:
        logger.warning(f"  WARNING: {len(low)} block(s) have acceptance rate < 10%: {', '.join(low)}")
