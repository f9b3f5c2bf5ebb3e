"""
Error Handling and Validation Utilities

This module provides validation functions run before any generation:
- validate_mcmc_config: sanity checks on the cleaned configuration
- validate_start: shapes and positive-definiteness of the starting parameters
- validate_output_dir: create the output directory and check it is writable

All checks collect every problem found and raise a single ValueError.
"""

import os
from pathlib import Path
from typing import Any, Dict, Sequence

import numpy as np

import logging
logger = logging.getLogger('ratemcmc')


def validate_mcmc_config(mcmc_config: Dict[str, Any], n_traits: int = None) -> None:
    """
    Validates that MCMC configuration is sensible.

    Args:
        mcmc_config: Cleaned configuration dictionary
        n_traits: Number of traits, used to check the inverse-Wishart df

    Raises:
        ValueError: If configuration is invalid
    """
    errors = []

    if 'gen' not in mcmc_config:
        errors.append("Missing required config key: 'gen'")
    elif int(mcmc_config['gen']) < 1:
        errors.append(f"gen must be >= 1, got {mcmc_config['gen']}")

    if 'chunk' in mcmc_config and int(mcmc_config['chunk']) < 1:
        errors.append(f"chunk must be >= 1, got {mcmc_config['chunk']}")

    for key in ('w_sd', 'w_mu'):
        if key in mcmc_config and not mcmc_config[key] > 0:
            errors.append(f"{key} must be > 0, got {mcmc_config[key]}")

    if 'prop' in mcmc_config:
        prop = np.asarray(mcmc_config['prop'], dtype=float)
        if prop.shape != (2,):
            errors.append(f"prop must have two entries (root, matrix), got {mcmc_config['prop']}")
        elif np.any(prop < 0) or not prop.sum() > 0:
            errors.append(f"prop must be non-negative with a positive sum, got {mcmc_config['prop']}")

    if 'v' in mcmc_config and n_traits is not None:
        if not mcmc_config['v'] > n_traits + 1:
            errors.append(
                f"v must be > n_traits + 1 = {n_traits + 1} for the inverse-Wishart proposal, "
                f"got {mcmc_config['v']}"
            )

    if 'id_len' in mcmc_config and int(mcmc_config['id_len']) < 1:
        errors.append(f"id_len must be >= 1, got {mcmc_config['id_len']}")

    if 'outname' in mcmc_config and not str(mcmc_config['outname']):
        errors.append("outname must be a non-empty string")

    if errors:
        raise ValueError("Invalid MCMC configuration:\n  " + "\n  ".join(errors))


def validate_start(root, matrices: Sequence[Any], sds, n_traits: int, n_regimes: int) -> None:
    """
    Validates the starting parameter set.

    Args:
        root: Starting root vector
        matrices: Starting rate matrices, one per regime
        sds: Optional starting sd vectors, one per regime
        n_traits: Number of traits in the data
        n_regimes: Number of regimes mapped on the tree(s)

    Raises:
        ValueError: If any starting value has the wrong shape or is not PD
    """
    errors = []

    root = np.asarray(root, dtype=float)
    if root.shape != (n_traits,):
        errors.append(f"Start root must have length {n_traits}, got shape {root.shape}")
    elif not np.all(np.isfinite(root)):
        errors.append("Start root must be finite")

    if len(matrices) != n_regimes:
        errors.append(
            f"Tree maps {n_regimes} regime(s) but {len(matrices)} start matrices were given"
        )

    for i, m in enumerate(matrices):
        m = np.asarray(m, dtype=float)
        if m.shape != (n_traits, n_traits):
            errors.append(f"Start matrix {i + 1} must be {n_traits}x{n_traits}, got {m.shape}")
            continue
        if not np.allclose(m, m.T):
            errors.append(f"Start matrix {i + 1} is not symmetric")
            continue
        if np.any(np.linalg.eigvalsh(m) <= 0):
            errors.append(f"Start matrix {i + 1} is not positive-definite")

    if sds is not None:
        if len(sds) != len(matrices):
            errors.append(f"Got {len(sds)} start sd vectors for {len(matrices)} matrices")
        for i, s in enumerate(sds):
            s = np.asarray(s, dtype=float)
            if s.shape != (n_traits,):
                errors.append(f"Start sd vector {i + 1} must have length {n_traits}, got {s.shape}")
            elif np.any(s <= 0):
                errors.append(f"Start sd vector {i + 1} must be strictly positive")

    if errors:
        raise ValueError("Invalid starting state:\n  " + "\n  ".join(errors))


def validate_output_dir(output_dir) -> Path:
    """
    Create the output directory if needed and check that it is writable.

    Returns:
        Path to the output directory

    Raises:
        PermissionError: If the directory cannot be created or written to
    """
    path = Path(output_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PermissionError(f"Cannot create output directory {path}: {e}") from e

    if not path.is_dir() or not os.access(path, os.W_OK):
        raise PermissionError(f"Output directory {path} is not writable")
    return path
