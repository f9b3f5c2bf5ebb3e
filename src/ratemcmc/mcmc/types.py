"""
MCMC Data Structures and Type Definitions.

This module contains the core data structures used by the sampler:
- NodeType: Classification of internal nodes by the kind of their children
- TraversalPlan: Immutable per-tree pruning arrays (registered JAX pytree)
- TraitData: Tip data matrix with its row and column labels
- PriorBundle: Opaque log-density callables for root, matrices and sds
- StartState: User-supplied starting parameters
- ChainState: Chain state at one generation (frozen; updated via replace)
- RunDescriptor: Handle returned to the caller at the end of a run
"""

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np


class NodeType(IntEnum):
    """
    Classification of an internal node by its immediate children.

    The likelihood evaluator picks the combination rule for a node from
    this code instead of re-deriving it every generation.
    """
    TIPS = 0    # All children are tips
    NODES = 1   # All children are internal nodes
    MIXED = 2   # One tip child and one internal child (tip stored first)

    def __str__(self):
        return self.name.title()


@dataclass(frozen=True)
class TraversalPlan:
    """
    Pre-computed postorder traversal arrays for one tree.

    Built once per tree by build_traversal_plan and passed by reference into
    every likelihood call. Never mutated.

    Registered as a JAX pytree: arrays are traced children, counts are static
    auxiliary data. Trees with the same tip, node and regime counts (every
    fully bifurcating tree of a sample) share one compiled kernel; a tree
    with knuckle nodes has a different node count and compiles its own.
    """
    # Postorder edge arrays (children before parents)
    anc: jnp.ndarray             # (n_edges,) ancestor node of each edge
    des: jnp.ndarray             # (n_edges,) descendant node of each edge
    mapped_edge: jnp.ndarray     # (n_edges, n_regimes) regime times per edge

    # Internal nodes in postorder; the root is last
    nodes: jnp.ndarray           # (n_internal,) node ids
    node_types: jnp.ndarray      # (n_internal,) NodeType codes
    child_nodes: jnp.ndarray     # (n_internal, 2) child node ids (-1 for a missing second child)
    child_edges: jnp.ndarray     # (n_internal, 2) postorder edge index of each child branch
    n_children: jnp.ndarray      # (n_internal,) 1 for knuckles, 2 otherwise

    # Tip node i takes its values from row tip_rows[i] of the data matrix
    tip_rows: jnp.ndarray        # (n_tips,)

    # Metadata
    n_tips: int
    n_nodes: int
    n_regimes: int


def _plan_flatten(plan):
    """Flatten TraversalPlan for JAX pytree."""
    children = (
        plan.anc, plan.des, plan.mapped_edge, plan.nodes, plan.node_types,
        plan.child_nodes, plan.child_edges, plan.n_children, plan.tip_rows,
    )
    aux_data = (plan.n_tips, plan.n_nodes, plan.n_regimes)
    return children, aux_data


def _plan_unflatten(aux_data, children):
    """Unflatten TraversalPlan from JAX pytree."""
    (anc, des, mapped_edge, nodes, node_types,
     child_nodes, child_edges, n_children, tip_rows) = children
    n_tips, n_nodes, n_regimes = aux_data
    return TraversalPlan(
        anc=anc,
        des=des,
        mapped_edge=mapped_edge,
        nodes=nodes,
        node_types=node_types,
        child_nodes=child_nodes,
        child_edges=child_edges,
        n_children=n_children,
        tip_rows=tip_rows,
        n_tips=n_tips,
        n_nodes=n_nodes,
        n_regimes=n_regimes,
    )


# Register TraversalPlan as a JAX pytree
jax.tree_util.register_pytree_node(
    TraversalPlan,
    _plan_flatten,
    _plan_unflatten
)


@dataclass(frozen=True)
class TraitData:
    """
    Tip data: rows are tips, columns are traits.

    Fields:
        values: (n_tips, k) float array
        tip_labels: Row labels, must match the tree tip labels
        trait_names: Column labels (default: trait_1 .. trait_k)
    """
    values: np.ndarray
    tip_labels: Tuple[str, ...]
    trait_names: Tuple[str, ...] = ()

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, None]
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'tip_labels', tuple(str(t) for t in self.tip_labels))
        if not self.trait_names:
            names = tuple(f"trait_{i + 1}" for i in range(values.shape[1]))
        else:
            names = tuple(str(t) for t in self.trait_names)
        object.__setattr__(self, 'trait_names', names)

    @classmethod
    def from_dict(cls, rows: Dict[str, Sequence[float]], trait_names: Sequence[str] = ()):
        """Build from a {tip_label: trait values} mapping."""
        labels = list(rows.keys())
        return cls(values=np.array([rows[t] for t in labels], dtype=np.float64),
                   tip_labels=tuple(labels), trait_names=tuple(trait_names))

    @property
    def n_traits(self) -> int:
        return self.values.shape[1]

    @property
    def n_tips(self) -> int:
        return self.values.shape[0]


@dataclass(frozen=True)
class PriorBundle:
    """
    Prior log-density capabilities supplied by the caller.

    Fields:
        root: fn(root vector) -> log density
        matrices: fn(list of covariance matrices) -> joint log density
        sds: fn(list of standard deviation vectors) -> joint log density

    Treated as opaque functions; never mutated by the sampler.
    """
    root: Callable[[Any], float]
    matrices: Callable[[Sequence[Any]], float]
    sds: Callable[[Sequence[Any]], float]


@dataclass(frozen=True)
class StartState:
    """
    Starting parameters.

    Fields:
        root: (k,) root vector
        matrices: One (k, k) rate matrix per regime
        sds: Optional standard deviation vector per regime; when given each
             start matrix is rebuilt from its correlation and these sds
    """
    root: Any
    matrices: Sequence[Any]
    sds: Optional[Sequence[Any]] = None


@dataclass(frozen=True)
class ChainState:
    """
    State of the chain at one generation.

    Cached log-likelihood, priors and Jacobians always correspond to the
    parameter values held in the same object. Updates go through
    dataclasses.replace, so a snapshot is just a reference to the state.
    """
    root: jnp.ndarray            # (k,)
    correlations: jnp.ndarray    # (p, k, k)
    sds: jnp.ndarray             # (p, k)
    covariances: jnp.ndarray     # (p, k, k), rebuilt from correlations and sds
    log_lik: float
    root_prior: float
    matrix_prior: float
    sd_prior: float
    jacobians: jnp.ndarray       # (p,) log Jacobian per matrix
    tree_index: int = 0


@dataclass(frozen=True)
class RunDescriptor:
    """
    Handle for a finished chain.

    Carries everything needed to reload and interpret the chain files
    without re-running the sampler (see chain_io.load_chain).
    """
    acceptance: np.ndarray           # (gen,) acceptance codes, first entry is the start
    proposals: np.ndarray            # (gen,) block proposed: -1 start, 0 root, i matrix i
    tree_index: Optional[np.ndarray] # (gen,) active tree per generation, None for one tree
    n_traits: int
    n_regimes: int
    run_id: str
    output_dir: Path
    outname: str
    trait_names: Tuple[str, ...]
    data: TraitData
    trees: Tuple[Any, ...]
    prior: PriorBundle
    start: StartState
    gen: int
    run_time: float = 0.0
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def files(self) -> Dict[str, Any]:
        """Paths of the chain files written by this run."""
        from ..chain_io import chain_file_paths
        return chain_file_paths(self.output_dir, self.outname, self.run_id, self.n_regimes)
