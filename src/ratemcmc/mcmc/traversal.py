"""
Tree traversal preprocessing.

Turns a MappedTree into an immutable TraversalPlan:
- edges reordered into postorder (children before parents)
- internal nodes listed in postorder with the root last
- each internal node classified as TIPS / NODES / MIXED
- the regime-by-edge matrix aligned with the postorder edges
- the mapping from tip nodes to data rows

Pure data transformation, no randomness. Plans are computed once per tree
at run setup and reused for every likelihood evaluation.
"""

from typing import Sequence, Tuple

import numpy as np
import jax.numpy as jnp

from ..tree import MappedTree
from .types import NodeType, TraversalPlan

import logging
logger = logging.getLogger('ratemcmc')


def validate_tree(tree: MappedTree) -> None:
    """
    Check that a tree is rooted, connected, acyclic and at most bifurcating.

    Raises:
        ValueError: Listing every structural problem found
    """
    errors = []
    n_tips = tree.n_tips
    edge = tree.edge

    if edge.ndim != 2 or edge.shape[1] != 2:
        raise ValueError(f"Tree edge array must have shape (n_edges, 2), got {edge.shape}")
    if tree.mapped_edge.shape[0] != tree.n_edges:
        errors.append(
            f"mapped_edge has {tree.mapped_edge.shape[0]} rows but tree has {tree.n_edges} edges"
        )
    if np.any(tree.mapped_edge < 0) or not np.all(np.isfinite(tree.mapped_edge)):
        errors.append("mapped_edge must contain finite, non-negative regime times")
    if len(set(tree.tip_labels)) != n_tips:
        errors.append("Tree tip labels must be unique")
    if edge.size and edge.min() < 0:
        errors.append("Node ids must be non-negative")

    n_nodes = tree.n_nodes
    anc, des = edge[:, 0], edge[:, 1]

    tip_parents = anc[anc < n_tips]
    if tip_parents.size:
        errors.append(f"Tips cannot have children (tip ids {sorted(set(tip_parents.tolist()))})")

    des_counts = np.bincount(des, minlength=n_nodes)
    if np.any(des_counts > 1):
        errors.append("Every node must have a single parent")

    roots = [n for n in range(n_tips, n_nodes) if des_counts[n] == 0]
    if n_nodes > n_tips and len(roots) != 1:
        errors.append(f"Tree must have exactly one root, found {len(roots)}")

    child_counts = np.bincount(anc, minlength=n_nodes)
    internal = np.arange(n_tips, n_nodes)
    if np.any(child_counts[internal] == 0):
        errors.append("Every internal node must have at least one child")
    if np.any(child_counts > 2):
        wide = np.flatnonzero(child_counts > 2).tolist()
        errors.append(f"Tree must be bifurcating, nodes {wide} have more than two children")

    missing_tips = [i for i in range(n_tips) if des_counts[i] == 0]
    if missing_tips:
        errors.append(f"Tips {missing_tips} are not attached to the tree")

    if not errors and len(roots) == 1:
        visited = set(_postorder_nodes(tree, roots[0]))
        if len(visited) != n_nodes:
            errors.append("Tree is not connected (or contains a cycle)")

    if errors:
        raise ValueError("Invalid tree:\n  " + "\n  ".join(errors))


def _postorder_nodes(tree: MappedTree, root: int):
    """Node ids in postorder (each node after all of its descendants)."""
    children = {}
    for anc, des in tree.edge.tolist():
        children.setdefault(anc, []).append(des)

    order = []
    seen = set()
    stack = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            order.append(node)
            continue
        if node in seen:
            break  # cycle
        seen.add(node)
        stack.append((node, True))
        for child in reversed(children.get(node, [])):
            stack.append((child, False))
    return order


def build_traversal_plan(tree: MappedTree, tip_labels: Sequence[str]) -> TraversalPlan:
    """
    Build the TraversalPlan for one tree.

    Args:
        tree: MappedTree to preprocess
        tip_labels: Row labels of the data matrix

    Returns:
        TraversalPlan with postorder arrays

    Raises:
        ValueError: If the tree is malformed or its tips do not match the data
    """
    validate_tree(tree)
    check_tip_labels(tree, tip_labels)

    n_tips = tree.n_tips
    n_nodes = tree.n_nodes
    root = tree.root

    postorder = _postorder_nodes(tree, root)
    edge_of_des = {int(d): e for e, d in enumerate(tree.edge[:, 1].tolist())}

    # Postorder edges: one per non-root node, ordered by descendant
    edge_ids = [edge_of_des[n] for n in postorder if n != root]
    post_index = {e: i for i, e in enumerate(edge_ids)}
    anc = tree.edge[edge_ids, 0]
    des = tree.edge[edge_ids, 1]
    mapped_edge = tree.mapped_edge[edge_ids]

    internal = [n for n in postorder if n >= n_tips]
    n_internal = len(internal)

    child_nodes = np.full((n_internal, 2), -1, dtype=np.int64)
    child_edges = np.zeros((n_internal, 2), dtype=np.int64)
    n_children = np.zeros(n_internal, dtype=np.int64)
    node_types = np.zeros(n_internal, dtype=np.int64)

    for j, node in enumerate(internal):
        kids = [int(d) for d in des[anc == node]]
        # Mixed nodes keep the tip first so the evaluator knows which side is which
        kids.sort(key=lambda c: (c >= n_tips, c))
        is_tip = [c < n_tips for c in kids]
        if all(is_tip):
            node_types[j] = NodeType.TIPS
        elif not any(is_tip):
            node_types[j] = NodeType.NODES
        else:
            node_types[j] = NodeType.MIXED
        n_children[j] = len(kids)
        for slot, child in enumerate(kids):
            child_nodes[j, slot] = child
            child_edges[j, slot] = post_index[edge_of_des[child]]

    row_of = {label: i for i, label in enumerate(tip_labels)}
    tip_rows = np.array([row_of[label] for label in tree.tip_labels], dtype=np.int64)

    return TraversalPlan(
        anc=jnp.asarray(anc),
        des=jnp.asarray(des),
        mapped_edge=jnp.asarray(mapped_edge, dtype=jnp.float64),
        nodes=jnp.asarray(np.array(internal, dtype=np.int64)),
        node_types=jnp.asarray(node_types),
        child_nodes=jnp.asarray(child_nodes),
        child_edges=jnp.asarray(child_edges),
        n_children=jnp.asarray(n_children),
        tip_rows=jnp.asarray(tip_rows),
        n_tips=n_tips,
        n_nodes=n_nodes,
        n_regimes=tree.n_regimes,
    )


def build_traversal_plans(trees: Sequence[MappedTree], tip_labels: Sequence[str]) -> Tuple[TraversalPlan, ...]:
    """
    Build one TraversalPlan per tree of a sample.

    All trees must map the same number of regimes.
    """
    regime_counts = {tree.n_regimes for tree in trees}
    if len(regime_counts) > 1:
        raise ValueError(f"Trees in the sample map different numbers of regimes: {sorted(regime_counts)}")

    plans = tuple(build_traversal_plan(tree, tip_labels) for tree in trees)
    logger.info(f"Built traversal plans for {len(plans)} tree(s), "
                f"{plans[0].n_tips} tips, {plans[0].n_regimes} regime(s)")
    return plans


def check_tip_labels(tree: MappedTree, tip_labels: Sequence[str]) -> None:
    """
    Check that data row labels and tree tip labels are the same set.

    Raises:
        ValueError: Naming the labels found on only one side
    """
    data_labels = [str(t) for t in tip_labels]
    if len(set(data_labels)) != len(data_labels):
        raise ValueError("Data row labels must be unique")

    tree_set = set(tree.tip_labels)
    data_set = set(data_labels)
    if tree_set != data_set:
        only_tree = sorted(tree_set - data_set)
        only_data = sorted(data_set - tree_set)
        raise ValueError(
            "Tip labels in the data do not match the tree:\n"
            f"  only in tree: {only_tree}\n"
            f"  only in data: {only_data}"
        )
