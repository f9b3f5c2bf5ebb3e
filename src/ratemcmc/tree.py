"""
Phylogeny data model with regimes mapped onto branches.

A MappedTree is the contract between tree loading / regime mapping (done
elsewhere) and the sampler. It uses a flat edge-list layout:

    edge:         (n_edges, 2) integer array of (ancestor, descendant) node ids
    mapped_edge:  (n_edges, n_regimes) time spent in each regime on each edge
    tip_labels:   labels of tips 0..n_tips-1

Node ids are 0-based: tips are 0..n_tips-1 and internal nodes (including the
root) are n_tips..n_nodes-1. The branch length of an edge is the row sum of
mapped_edge.

A tree sample is simply a sequence of MappedTree objects sharing the same tip
labels; a single tree is a sample of size one.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import jax.numpy as jnp
import jax.random as random


@dataclass(frozen=True)
class MappedTree:
    """
    Rooted tree with per-edge regime length partitions.

    Fields:
        edge: (n_edges, 2) int array of (ancestor, descendant) node ids
        mapped_edge: (n_edges, n_regimes) float array of regime times per edge
        tip_labels: Tuple of tip labels, index i labels node i
        regime_names: Optional tuple naming the mapped_edge columns
    """
    edge: np.ndarray
    mapped_edge: np.ndarray
    tip_labels: Tuple[str, ...]
    regime_names: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        edge = np.asarray(self.edge, dtype=np.int64)
        mapped = np.asarray(self.mapped_edge, dtype=np.float64)
        if mapped.ndim == 1:
            mapped = mapped[:, None]
        object.__setattr__(self, 'edge', edge)
        object.__setattr__(self, 'mapped_edge', mapped)
        object.__setattr__(self, 'tip_labels', tuple(str(t) for t in self.tip_labels))
        if self.regime_names is not None:
            object.__setattr__(self, 'regime_names', tuple(self.regime_names))

    @classmethod
    def single_regime(cls, edge, edge_length, tip_labels, regime_name='1'):
        """Build a tree whose whole length is mapped to one regime."""
        edge_length = np.asarray(edge_length, dtype=np.float64)
        return cls(edge=edge, mapped_edge=edge_length[:, None],
                   tip_labels=tip_labels, regime_names=(regime_name,))

    @property
    def n_tips(self) -> int:
        return len(self.tip_labels)

    @property
    def n_edges(self) -> int:
        return self.edge.shape[0]

    @property
    def n_nodes(self) -> int:
        return int(self.edge.max()) + 1 if self.n_edges else self.n_tips

    @property
    def n_regimes(self) -> int:
        return self.mapped_edge.shape[1]

    @property
    def edge_length(self) -> np.ndarray:
        return self.mapped_edge.sum(axis=1)

    @property
    def root(self) -> int:
        """The single node that never appears as a descendant."""
        descendants = set(self.edge[:, 1].tolist())
        ancestors = [a for a in self.edge[:, 0].tolist() if a not in descendants]
        if not ancestors:
            raise ValueError("Tree has no root: every node is a descendant")
        return ancestors[0]


def as_tree_sample(trees) -> Tuple[MappedTree, ...]:
    """Normalise a single tree or a sequence of trees into a tuple of trees."""
    if isinstance(trees, MappedTree):
        return (trees,)
    sample = tuple(trees)
    if not sample:
        raise ValueError("Tree sample is empty")
    for i, tree in enumerate(sample):
        if not isinstance(tree, MappedTree):
            raise ValueError(f"Tree {i} is a {type(tree).__name__}, expected MappedTree")
    return sample


def _preorder_edges(tree: MappedTree):
    """Edge indices ordered so that every parent edge precedes its children."""
    children = {}
    for e, (anc, _) in enumerate(tree.edge.tolist()):
        children.setdefault(anc, []).append(e)

    order = []
    stack = [tree.root]
    while stack:
        node = stack.pop()
        for e in children.get(node, []):
            order.append(e)
            stack.append(int(tree.edge[e, 1]))
    return order


def simulate_traits(key, tree: MappedTree, rates, root, tip_order: Optional[Sequence[str]] = None):
    """
    Simulate tip data under multivariate Brownian motion with mapped regimes.

    Each edge adds an independent MVN(0, sum_r mapped_edge[e, r] * R_r)
    increment to its ancestor's value, starting from `root` at the root node.

    Args:
        key: JAX random key
        tree: MappedTree
        rates: (n_regimes, k, k) array or list of rate matrices
        root: (k,) root vector
        tip_order: Optional label order for the returned rows (default: tree order)

    Returns:
        (n_tips, k) numpy array of tip values
    """
    rates = jnp.asarray(rates, dtype=jnp.float64)
    if rates.ndim == 2:
        rates = rates[None]
    root = jnp.asarray(root, dtype=jnp.float64)
    k = root.shape[0]

    branch_cov = jnp.einsum('er,rij->eij', jnp.asarray(tree.mapped_edge), rates)
    keys = random.split(key, tree.n_edges)

    values = {tree.root: root}
    for e in _preorder_edges(tree):
        anc, des = int(tree.edge[e, 0]), int(tree.edge[e, 1])
        step = random.multivariate_normal(keys[e], jnp.zeros(k), branch_cov[e], method='eigh')
        values[des] = values[anc] + step

    tips = np.stack([np.asarray(values[i]) for i in range(tree.n_tips)])
    if tip_order is not None:
        index = {label: i for i, label in enumerate(tree.tip_labels)}
        tips = tips[[index[label] for label in tip_order]]
    return tips
