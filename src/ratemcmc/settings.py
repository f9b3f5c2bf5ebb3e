"""
Sampler settings and enumerations.

This module defines the named constants shared across the package:
- RootProposal: the closed set of root proposal strategies
- UpdateBlock: which parameter block a generation updates
- ACCEPT_*: integer codes stored in the acceptance record
- CONFIG_DEFAULTS: default values for every recognised config key

The root proposal strategy is resolved once at run setup from the
'traitwise' and 'use_corr' flags (see resolve_root_proposal), so the
sampling loop never re-branches on raw flags.
"""

from enum import IntEnum


class RootProposal(IntEnum):
    """
    Root (phylogenetic mean) proposal strategies.

    Exactly one strategy is active per run.
    """
    TRAITWISE = 0   # Slide a single, uniformly chosen trait
    JOINT = 1       # Slide every trait in one joint draw from the k-dim window
    DATA_CORR = 2   # Multivariate normal step shaped by the tip-data correlation

    def __str__(self):
        return self.name.replace('_', ' ').title()


class UpdateBlock(IntEnum):
    """Parameter block selected for update at a generation."""
    ROOT = 0
    MATRIX = 1

    def __str__(self):
        return self.name.title()


# Acceptance record codes. A matrix acceptance is stored as 1 + i for regime i
# (1-based), so 2 means the first matrix was accepted, 3 the second, and so on.
ACCEPT_REJECTED = 0
ACCEPT_ROOT = 1


# Default values for each config key (all lowercase)
CONFIG_DEFAULTS = {
    'v': 50,
    'w_sd': 0.5,
    'w_mu': 0.5,
    'prop': (0.1, 0.9),
    'dir': None,
    'outname': 'mcmc_ratematrix',
    'id_len': 5,
    'traitwise': False,
    'use_corr': False,
    'rng_seed': None,
}

# Characters used for run identifiers
ID_ALPHABET = 'abcdefghijklmnopqrstuvwxyz0123456789'


def resolve_root_proposal(traitwise, use_corr):
    """
    Resolve the root proposal strategy from the user flags.

    'use_corr' overrides any trait-wise configuration.

    Args:
        traitwise: Propose the root trait by trait
        use_corr: Use the tip-data correlation to shape root proposals

    Returns:
        RootProposal member
    """
    if use_corr:
        return RootProposal.DATA_CORR
    if traitwise:
        return RootProposal.TRAITWISE
    return RootProposal.JOINT
