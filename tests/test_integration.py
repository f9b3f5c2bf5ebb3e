"""
Integration tests: full chains written to disk.

Run with: pytest tests/test_integration.py -v
"""

import numpy as np
import jax.random
import pytest

from ratemcmc import (
    MappedTree,
    StartState,
    TraitData,
    acceptance_summary,
    build_traversal_plan,
    load_chain,
    log_likelihood,
    rate_mcmc,
    simulate_traits,
)

from .conftest import balanced_tree, make_four_tip_tree, make_two_regime_tree, tree_vcv, two_clade_tree


def count_lines(path):
    return len(path.read_text().splitlines())


def run_config(tmp_path, **overrides):
    cfg = {'gen': 25, 'chunk': 4, 'dir': str(tmp_path), 'outname': 'test_chain', 'rng_seed': 11}
    cfg.update(overrides)
    return cfg


# ============================================================================
# SINGLE TREE
# ============================================================================

class TestSingleTreeRun:
    """Records and files of a short chain on one tree."""

    def test_records(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path))
        assert run.acceptance.shape == (25,)
        assert run.acceptance[0] == 1
        assert run.proposals[0] == -1
        assert set(np.unique(run.acceptance)) <= {0, 1, 2}
        assert set(np.unique(run.proposals[1:])) <= {0, 1}
        accepted = run.acceptance[1:] > 0
        np.testing.assert_array_equal(run.acceptance[1:][accepted], run.proposals[1:][accepted] + 1)
        assert run.tree_index is None
        assert len(run.run_id) == 5
        assert run.n_traits == 2
        assert run.n_regimes == 1
        assert run.trait_names == ('body_size', 'beak_depth')
        assert run.gen == 25
        assert run.run_time > 0

    def test_files_hold_every_generation(self, tmp_path, four_tip_data, flat_prior, identity_start):
        # 25 generations in chunks of 4 leaves a final partial chunk
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path))
        files = run.files
        assert files['loglik'].name == f"test_chain.{run.run_id}.loglik"
        assert count_lines(files['loglik']) == 25
        assert count_lines(files['root']) == 25
        assert count_lines(files['matrices'][0]) == 25
        # Header plus one line per generation
        assert count_lines(files['log']) == 26

    @pytest.mark.parametrize("gen, chunk", [(1, 1), (7, 1), (7, 7), (7, 100), (12, 5)])
    def test_line_counts(self, tmp_path, four_tip_data, flat_prior, identity_start, gen, chunk):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path, gen=gen, chunk=chunk))
        assert count_lines(run.files['loglik']) == gen
        assert count_lines(run.files['matrices'][0]) == gen

    def test_first_line_is_start(self, tmp_path, four_tip_data, flat_prior, identity_start):
        tree = make_four_tip_tree()
        run = rate_mcmc(four_tip_data, tree, identity_start(), flat_prior, run_config(tmp_path))
        chain = load_chain(run)

        plan = build_traversal_plan(tree, four_tip_data.tip_labels)
        start_ll = float(log_likelihood(four_tip_data.values, plan, np.eye(2)[None], np.zeros(2)))
        assert chain['loglik'][0] == pytest.approx(start_ll)
        np.testing.assert_allclose(chain['root'][0], np.zeros(2))
        np.testing.assert_allclose(chain['matrices'][0][0], np.eye(2))

    def test_saved_loglik_matches_saved_parameters(self, tmp_path, four_tip_data, flat_prior, identity_start):
        tree = make_four_tip_tree()
        run = rate_mcmc(four_tip_data, tree, identity_start(), flat_prior, run_config(tmp_path, gen=40))
        chain = load_chain(run)
        plan = build_traversal_plan(tree, four_tip_data.tip_labels)
        for g in (5, 17, 39):
            expected = float(log_likelihood(four_tip_data.values, plan,
                                            chain['matrices'][0][g][None], chain['root'][g]))
            assert chain['loglik'][g] == pytest.approx(expected, rel=1e-8)

    def test_rejected_generations_repeat_state(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path, gen=60))
        chain = load_chain(run)
        for g in np.flatnonzero(run.acceptance == 0):
            assert chain['loglik'][g] == chain['loglik'][g - 1]
            np.testing.assert_array_equal(chain['root'][g], chain['root'][g - 1])

    def test_same_seed_same_chain(self, tmp_path, four_tip_data, flat_prior, identity_start):
        runs = [rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                          run_config(tmp_path, gen=30)) for _ in range(2)]
        np.testing.assert_array_equal(runs[0].acceptance, runs[1].acceptance)
        assert runs[0].run_id != runs[1].run_id
        a, b = (load_chain(r) for r in runs)
        np.testing.assert_array_equal(a['loglik'], b['loglik'])

    def test_invalid_config_writes_nothing(self, tmp_path, four_tip_data, flat_prior, identity_start):
        with pytest.raises(ValueError, match="gen must be >= 1"):
            rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                      run_config(tmp_path, gen=0))
        assert list(tmp_path.iterdir()) == []


# ============================================================================
# PROPOSAL BLOCKS
# ============================================================================

class TestBlocks:
    """Block selection and root proposal modes."""

    def test_root_only_traitwise(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path, gen=40, prop=(1.0, 0.0), traitwise=True))
        assert np.all(run.proposals[1:] == 0)
        chain = load_chain(run)
        steps = np.abs(np.diff(chain['root'], axis=0))
        assert np.all(np.count_nonzero(steps, axis=1) <= 1)
        assert np.all(chain['matrices'][0] == np.eye(2))

    def test_matrix_only(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path, gen=40, prop=(0.0, 1.0)))
        assert np.all(run.proposals[1:] == 1)
        chain = load_chain(run)
        assert np.all(chain['root'] == 0.0)
        for sigma in chain['matrices'][0]:
            assert np.all(np.linalg.eigvalsh(sigma) > 0)

    def test_data_corr_root(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_four_tip_tree(), identity_start(), flat_prior,
                        run_config(tmp_path, gen=20, use_corr=True, traitwise=True))
        assert run.config['root_proposal'] == 'data_corr'
        assert count_lines(run.files['root']) == 20

    def test_two_regimes(self, tmp_path, four_tip_data, flat_prior, identity_start):
        run = rate_mcmc(four_tip_data, make_two_regime_tree(), identity_start(2), flat_prior,
                        run_config(tmp_path, gen=60))
        assert run.n_regimes == 2
        assert len(run.files['matrices']) == 2
        assert set(np.unique(run.acceptance)) <= {0, 1, 2, 3}
        assert set(np.unique(run.proposals[1:])) <= {0, 1, 2}
        for path in run.files['matrices']:
            assert count_lines(path) == 60

        chain = load_chain(run)
        # A matrix only changes in generations where it was accepted
        for i in range(2):
            changed = np.flatnonzero(np.any(np.diff(chain['matrices'][i], axis=0) != 0, axis=(1, 2))) + 1
            assert np.all(run.acceptance[changed] == 2 + i)

        summary = acceptance_summary(run.acceptance, run.proposals, run.n_regimes)
        assert summary['overall']['proposed'] == 59
        assert sum(summary[b]['proposed'] for b in ('root', 'matrix_1', 'matrix_2')) == 59


# ============================================================================
# TREE SAMPLE
# ============================================================================

class TestTreeSample:
    """Integrating over a sample of trees."""

    def test_tree_index_recorded(self, tmp_path, four_tip_data, flat_prior, identity_start):
        trees = [make_four_tip_tree(), make_four_tip_tree(np.ones((6, 1))),
                 make_four_tip_tree(0.2 * np.ones((6, 1)))]
        run = rate_mcmc(four_tip_data, trees, identity_start(), flat_prior, run_config(tmp_path, gen=50))
        assert run.tree_index.shape == (50,)
        assert set(np.unique(run.tree_index)) <= {0, 1, 2}
        # The active tree only changes on acceptance
        changed = np.flatnonzero(np.diff(run.tree_index) != 0) + 1
        assert np.all(run.acceptance[changed] > 0)

        chain = load_chain(run, burn=0.5)
        assert chain['tree_index'].shape == (25,)

    def test_saved_loglik_uses_active_tree(self, tmp_path, four_tip_data, flat_prior, identity_start):
        trees = [make_four_tip_tree(), make_four_tip_tree(3.0 * np.ones((6, 1)))]
        run = rate_mcmc(four_tip_data, trees, identity_start(), flat_prior, run_config(tmp_path, gen=30))
        chain = load_chain(run)
        plans = [build_traversal_plan(t, four_tip_data.tip_labels) for t in trees]
        for g in range(30):
            plan = plans[run.tree_index[g]]
            expected = float(log_likelihood(four_tip_data.values, plan,
                                            chain['matrices'][0][g][None], chain['root'][g]))
            assert chain['loglik'][g] == pytest.approx(expected, rel=1e-8)

    def test_sample_with_knuckle_tree(self, tmp_path, flat_prior, identity_start):
        # (A:1, B:1) and ((A:0.4):0.6, B:1) have different node counts
        plain = MappedTree.single_regime(np.array([[2, 0], [2, 1]]), [1.0, 1.0], ('A', 'B'))
        knuckle = MappedTree.single_regime(np.array([[2, 3], [3, 0], [2, 1]]), [0.6, 0.4, 1.0], ('A', 'B'))
        data = TraitData(values=np.array([[0.3, 0.2], [-0.1, 0.7]]), tip_labels=('A', 'B'))
        trees = [plain, knuckle]

        run = rate_mcmc(data, trees, identity_start(), flat_prior, run_config(tmp_path, gen=30))
        chain = load_chain(run)
        plans = [build_traversal_plan(t, data.tip_labels) for t in trees]
        assert plans[0].n_nodes != plans[1].n_nodes
        for g in range(30):
            expected = float(log_likelihood(data.values, plans[run.tree_index[g]],
                                            chain['matrices'][0][g][None], chain['root'][g]))
            assert np.isfinite(chain['loglik'][g])
            assert chain['loglik'][g] == pytest.approx(expected, rel=1e-8)


# ============================================================================
# RECOVERY
# ============================================================================

class TestRecovery:
    """The posterior concentrates near the simulating parameters."""

    def test_rate_matrix_and_root_recovered(self, tmp_path, weak_prior):
        tree = balanced_tree(6, branch_length=0.5)
        true_rate = np.array([[1.0, 0.6], [0.6, 0.8]])
        true_root = np.array([1.0, -0.5])
        values = simulate_traits(jax.random.PRNGKey(2024), tree, true_rate[None], true_root)
        data = TraitData(values=values, tip_labels=tree.tip_labels)
        # Start the root away from the truth so it has to move
        start = StartState(root=np.array([-2.0, 2.0]), matrices=[np.eye(2)])

        run = rate_mcmc(data, tree, start, weak_prior,
                        {'gen': 3000, 'dir': str(tmp_path), 'rng_seed': 5, 'prop': (0.3, 0.7)})
        chain = load_chain(run, burn=0.5)
        posterior_rate = chain['matrices'][0].mean(axis=0)

        np.testing.assert_allclose(np.diag(posterior_rate), np.diag(true_rate), rtol=0.5)
        corr = posterior_rate[0, 1] / np.sqrt(posterior_rate[0, 0] * posterior_rate[1, 1])
        assert corr > 0.3
        assert 0.01 < acceptance_summary(run.acceptance, run.proposals, 1)['overall']['rate'] < 0.95

        # Sampling sd of the GLS root estimate: sqrt(R_ii / (1' C^-1 1))
        C = tree_vcv(tree)[0]
        root_sd = np.sqrt(np.diag(true_rate) / np.sum(np.linalg.inv(C)))
        assert np.all(np.abs(chain['root'].mean(axis=0) - true_root) < 3.0 * root_sd)

    def test_two_regimes_recovered(self, tmp_path, weak_prior):
        tree = two_clade_tree(7, branch_length=0.5)
        true_rates = np.stack([
            np.array([[1.0, 0.5], [0.5, 1.0]]),
            np.array([[0.25, 0.0], [0.0, 3.0]]),
        ])
        values = simulate_traits(jax.random.PRNGKey(7), tree, true_rates, np.zeros(2))
        data = TraitData(values=values, tip_labels=tree.tip_labels)
        start = StartState(root=np.zeros(2), matrices=[np.eye(2), np.eye(2)])

        run = rate_mcmc(data, tree, start, weak_prior,
                        {'gen': 4000, 'dir': str(tmp_path), 'rng_seed': 3})
        chain = load_chain(run, burn=0.5)
        posterior = [m.mean(axis=0) for m in chain['matrices']]

        for estimate, truth in zip(posterior, true_rates):
            np.testing.assert_allclose(np.diag(estimate), np.diag(truth), rtol=0.6)
        assert posterior[0][0, 0] > posterior[1][0, 0]
        assert posterior[0][1, 1] < posterior[1][1, 1]
        corr = posterior[0][0, 1] / np.sqrt(posterior[0][0, 0] * posterior[0][1, 1])
        assert corr > 0.1


class TestSingleTip:
    """A one-tip tree still runs (likelihood is a single MVN)."""

    def test_single_tip_run(self, tmp_path, flat_prior, identity_start):
        tree = MappedTree.single_regime(np.array([[1, 0]]), [1.0], ('A',))
        data = TraitData(values=np.array([[0.4, -0.2]]), tip_labels=('A',))
        run = rate_mcmc(data, tree, identity_start(), flat_prior, run_config(tmp_path, gen=10))
        assert count_lines(run.files['loglik']) == 10
