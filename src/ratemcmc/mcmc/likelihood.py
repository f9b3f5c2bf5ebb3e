"""
Pruning log-likelihood for multivariate Brownian motion with mapped regimes.

The evaluator walks the internal nodes of a TraversalPlan in postorder.
At each node the two child branches carry a value x and a variance V:

    V = sum_r mapped_edge[e, r] * R_r  (+ accumulated node variance for internal children)

The contrast x_a - x_b ~ MVN(0, V_a + V_b) contributes to the log-likelihood,
and the node is replaced by the precision-weighted mean of its children,

    x = V_b S^-1 x_a + V_a S^-1 x_b,   V = V_a S^-1 V_b,   S = V_a + V_b

whose variance is then added to the node's own branch. Only S is factored,
so zero-length tip branches are allowed. Knuckle nodes (one child) pass
value and variance through.
At the root, x_root ~ MVN(root_vector, V_root).

Any rate matrix that is not symmetric positive-definite, or any non-finite
intermediate result, yields a log-likelihood of -inf rather than an error,
so the sampler can reject the proposal.
"""

import math

import jax
import jax.numpy as jnp
import jax.scipy.linalg

from .types import NodeType, TraversalPlan


LOG_2PI = math.log(2.0 * math.pi)

# Relative tolerance for the symmetry check on rate matrices
SYMMETRY_TOL = 1e-8


def _mvn_logpdf_chol(d, L):
    """Zero-mean MVN log density at d given the lower Cholesky factor L of the covariance."""
    k = d.shape[0]
    y = jax.scipy.linalg.solve_triangular(L, d, lower=True)
    log_det = 2.0 * jnp.sum(jnp.log(jnp.diag(L)))
    return -0.5 * (k * LOG_2PI + log_det + jnp.sum(y ** 2))


def mvn_logpdf(x, mean, cov):
    """
    Multivariate normal log density via Cholesky factor.

    Returns NaN when cov is not positive-definite (the Cholesky factor is NaN).
    """
    return _mvn_logpdf_chol(x - mean, jnp.linalg.cholesky(cov))


def is_positive_definite(matrices):
    """
    True when every matrix in a (p, k, k) stack is symmetric positive-definite.
    """
    scale = jnp.max(jnp.abs(matrices)) + 1.0
    symmetric = jnp.all(jnp.abs(matrices - jnp.swapaxes(matrices, -1, -2)) <= SYMMETRY_TOL * scale)
    chol = jnp.linalg.cholesky(matrices)
    return symmetric & jnp.all(jnp.isfinite(chol))


def branch_covariances(mapped_edge, rates):
    """
    Per-edge covariance blended across regimes: sum_r mapped_edge[e, r] * R_r.

    Args:
        mapped_edge: (n_edges, p) time spent in each regime
        rates: (p, k, k) rate matrices

    Returns:
        (n_edges, k, k) branch covariances
    """
    return jnp.einsum('er,rij->eij', mapped_edge, rates)


def _combine_pair(x_a, x_b, V_a, V_b):
    """
    Contrast log density, weighted mean and accumulated variance for two children.

    Only S = V_a + V_b is factored, so a child with a zero-length branch
    (V = 0) is handled exactly: the node takes that child's value and zero
    variance.
    """
    L = jnp.linalg.cholesky(V_a + V_b)
    contrast_ll = _mvn_logpdf_chol(x_a - x_b, L)
    S_inv_V_b = jax.scipy.linalg.cho_solve((L, True), V_b)
    V_node = V_a @ S_inv_V_b
    V_node = 0.5 * (V_node + V_node.T)
    x_node = S_inv_V_b.T @ x_a + (jnp.eye(x_a.shape[0], dtype=x_a.dtype) - S_inv_V_b.T) @ x_b
    return contrast_ll, x_node, V_node


@jax.jit
def log_likelihood(X, plan: TraversalPlan, rates, root):
    """
    Log-likelihood of tip data under multivariate Brownian motion.

    Args:
        X: (n_tips, k) data matrix, rows ordered as the data labels
        plan: TraversalPlan for the active tree
        rates: (p, k, k) rate matrices, one per regime
        root: (k,) root vector

    Returns:
        Scalar log-likelihood; -inf for invalid rate matrices or non-finite results
    """
    dtype = jnp.result_type(float)
    X = jnp.asarray(X, dtype=dtype)
    rates = jnp.asarray(rates, dtype=dtype)
    root = jnp.asarray(root, dtype=dtype)
    k = X.shape[1]
    n_nodes = plan.n_nodes
    n_internal = plan.nodes.shape[0]

    branch_cov = branch_covariances(plan.mapped_edge, rates)

    values = jnp.zeros((n_nodes, k), dtype=X.dtype)
    values = values.at[:plan.n_tips].set(X[plan.tip_rows])
    node_cov = jnp.zeros((n_nodes, k, k), dtype=X.dtype)

    # Child branch variances by node type. Tips carry only their branch;
    # internal children add the variance accumulated below them.
    def tips_rule(operand):
        c_a, c_b, e_a, e_b, node_cov = operand
        return branch_cov[e_a], branch_cov[e_b]

    def nodes_rule(operand):
        c_a, c_b, e_a, e_b, node_cov = operand
        return branch_cov[e_a] + node_cov[c_a], branch_cov[e_b] + node_cov[c_b]

    def mixed_rule(operand):
        c_a, c_b, e_a, e_b, node_cov = operand
        return branch_cov[e_a], branch_cov[e_b] + node_cov[c_b]

    rules = [None] * len(NodeType)
    rules[NodeType.TIPS] = tips_rule
    rules[NodeType.NODES] = nodes_rule
    rules[NodeType.MIXED] = mixed_rule

    def body(j, carry):
        values, node_cov, logl = carry
        node = plan.nodes[j]
        c_a = plan.child_nodes[j, 0]
        c_b = jnp.maximum(plan.child_nodes[j, 1], 0)
        e_a = plan.child_edges[j, 0]
        e_b = plan.child_edges[j, 1]

        V_a, V_b = jax.lax.switch(plan.node_types[j], rules, (c_a, c_b, e_a, e_b, node_cov))
        x_a = values[c_a]
        x_b = values[c_b]

        def pair(_):
            return _combine_pair(x_a, x_b, V_a, V_b)

        def knuckle(_):
            return jnp.zeros((), dtype=X.dtype), x_a, V_a

        contrast_ll, x_node, V_node = jax.lax.cond(plan.n_children[j] == 2, pair, knuckle, None)

        values = values.at[node].set(x_node)
        node_cov = node_cov.at[node].set(V_node)
        return values, node_cov, logl + contrast_ll

    values, node_cov, logl = jax.lax.fori_loop(
        0, n_internal, body, (values, node_cov, jnp.zeros((), dtype=X.dtype))
    )

    root_node = plan.nodes[n_internal - 1]
    logl = logl + mvn_logpdf(values[root_node], root, node_cov[root_node])

    valid = is_positive_definite(rates) & jnp.isfinite(logl)
    return jnp.where(valid, logl, -jnp.inf)

