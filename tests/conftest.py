"""
Pytest configuration and shared fixtures for ratemcmc tests.
"""

import math

import pytest
import numpy as np

# Import the package first so double precision is enabled before JAX loads
import ratemcmc  # noqa: F401
from ratemcmc.tree import MappedTree
from ratemcmc.mcmc.types import PriorBundle, StartState, TraitData


# ============================================================================
# TREE BUILDERS
# ============================================================================

def make_four_tip_tree(mapped_edge=None):
    """
    ((A:1, B:1):0.5, (C:0.7, D:0.3):0.8) with root node 4.

    Both internal nodes below the root have two tips (TIPS), the root has two
    internal children (NODES).
    """
    edge = np.array([
        [4, 5],
        [5, 0],
        [5, 1],
        [4, 6],
        [6, 2],
        [6, 3],
    ])
    if mapped_edge is None:
        mapped_edge = np.array([0.5, 1.0, 1.0, 0.8, 0.7, 0.3])[:, None]
    return MappedTree(edge=edge, mapped_edge=mapped_edge, tip_labels=('A', 'B', 'C', 'D'))


def make_two_regime_tree():
    """Four-tip tree with the C/D clade partly in a second regime."""
    mapped_edge = np.array([
        [0.5, 0.0],
        [1.0, 0.0],
        [1.0, 0.0],
        [0.3, 0.5],
        [0.0, 0.7],
        [0.1, 0.2],
    ])
    return make_four_tip_tree(mapped_edge)


def make_mixed_tree():
    """(A:1, (B:0.5, C:0.5):0.5) - the root has one tip and one internal child."""
    edge = np.array([
        [3, 4],
        [4, 1],
        [4, 2],
        [3, 0],
    ])
    return MappedTree.single_regime(edge, [0.5, 0.5, 0.5, 1.0], ('A', 'B', 'C'))


def make_single_tip_tree(length=1.0):
    """One tip hanging from the root."""
    return MappedTree.single_regime(np.array([[1, 0]]), [length], ('A',))


def balanced_tree(depth, branch_length=1.0, n_regimes=1):
    """
    Fully balanced tree with 2**depth tips and equal branch lengths.

    With n_regimes > 1, edge e is split evenly between regimes
    e % n_regimes and (e + 1) % n_regimes.
    """
    n_tips = 2 ** depth
    edges = []
    counters = {'tip': 0, 'internal': n_tips}

    def grow(level):
        if level == depth:
            node = counters['tip']
            counters['tip'] += 1
            return node
        node = counters['internal']
        counters['internal'] += 1
        for _ in range(2):
            edges.append((node, grow(level + 1)))
        return node

    grow(0)
    edge = np.array(edges)
    mapped = np.zeros((len(edges), n_regimes))
    for e in range(len(edges)):
        mapped[e, e % n_regimes] += 0.5 * branch_length
        mapped[e, (e + 1) % n_regimes] += 0.5 * branch_length
    labels = tuple(f"t{i}" for i in range(n_tips))
    return MappedTree(edge=edge, mapped_edge=mapped, tip_labels=labels)


def two_clade_tree(depth, branch_length=1.0):
    """
    Balanced tree where each root clade evolves under its own regime.

    Every edge in the first root clade (including its stem) is in regime 1,
    every edge in the second in regime 2.
    """
    tree = balanced_tree(depth, branch_length)
    root = tree.n_tips
    parent = {int(des): int(anc) for anc, des in tree.edge}
    stem_nodes = [int(des) for anc, des in tree.edge if anc == root]

    mapped = np.zeros((len(tree.edge), 2))
    for e, (_, des) in enumerate(tree.edge):
        node = int(des)
        while parent[node] != root:
            node = parent[node]
        mapped[e, stem_nodes.index(node)] = branch_length
    return MappedTree(edge=tree.edge, mapped_edge=mapped, tip_labels=tree.tip_labels)


# ============================================================================
# REFERENCE LIKELIHOOD
# ============================================================================

def tree_vcv(tree):
    """
    Shared root-to-tip time per regime.

    Returns:
        (n_regimes, n_tips, n_tips) array; entry [r, i, j] is the time spent in
        regime r on the path shared by tips i and j
    """
    parent_edge = {int(d): e for e, d in enumerate(tree.edge[:, 1])}
    paths = []
    for tip in range(tree.n_tips):
        path = set()
        node = tip
        while node in parent_edge:
            e = parent_edge[node]
            path.add(e)
            node = int(tree.edge[e, 0])
        paths.append(path)

    vcv = np.zeros((tree.n_regimes, tree.n_tips, tree.n_tips))
    for i in range(tree.n_tips):
        for j in range(tree.n_tips):
            shared = sorted(paths[i] & paths[j])
            if shared:
                vcv[:, i, j] = tree.mapped_edge[shared].sum(axis=0)
    return vcv


def dense_bm_loglik(X, tip_labels, tree, rates, root):
    """Log-likelihood from the full (n*k)-dimensional multivariate normal."""
    rates = np.asarray(rates, dtype=float)
    root = np.asarray(root, dtype=float)
    row_of = {label: i for i, label in enumerate(tip_labels)}
    X_tree = np.asarray(X, dtype=float)[[row_of[t] for t in tree.tip_labels]]

    vcv = tree_vcv(tree)
    cov = sum(np.kron(vcv[r], rates[r]) for r in range(tree.n_regimes))
    resid = X_tree.reshape(-1) - np.tile(root, tree.n_tips)
    _, logdet = np.linalg.slogdet(cov)
    quad = resid @ np.linalg.solve(cov, resid)
    return -0.5 * (resid.size * math.log(2 * math.pi) + logdet + quad)


def mvn_logpdf_np(x, mean, cov):
    x = np.asarray(x, dtype=float) - np.asarray(mean, dtype=float)
    _, logdet = np.linalg.slogdet(cov)
    return -0.5 * (x.size * math.log(2 * math.pi) + logdet + x @ np.linalg.solve(cov, x))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def rng_seed():
    """Default RNG seed for reproducible tests."""
    return 42


@pytest.fixture
def four_tip_tree():
    return make_four_tip_tree()


@pytest.fixture
def two_regime_tree():
    return make_two_regime_tree()


@pytest.fixture
def four_tip_data():
    """Two traits on the four-tip tree, rows deliberately not in tree order."""
    return TraitData(
        values=np.array([
            [0.3, -0.2],
            [1.1, 0.4],
            [-0.5, 0.9],
            [0.2, 0.1],
        ]),
        tip_labels=('C', 'A', 'D', 'B'),
        trait_names=('body_size', 'beak_depth'),
    )


@pytest.fixture
def flat_prior():
    """Improper flat prior on every block."""
    return PriorBundle(
        root=lambda root: 0.0,
        matrices=lambda matrices: 0.0,
        sds=lambda sds: 0.0,
    )


@pytest.fixture
def weak_prior():
    """Proper, weakly informative prior: normal root, exponential sds."""
    def log_prior_root(root):
        return float(-0.5 * np.sum((np.asarray(root) / 10.0) ** 2))

    def log_prior_sds(sds):
        return float(-np.sum([np.sum(s) for s in sds]))

    return PriorBundle(root=log_prior_root, matrices=lambda matrices: 0.0, sds=log_prior_sds)


@pytest.fixture
def identity_start():
    """Two-trait start with the root at the origin and identity matrices."""
    def make(n_regimes=1):
        return StartState(root=np.zeros(2), matrices=[np.eye(2) for _ in range(n_regimes)])
    return make
