"""Tests for components of variation."""

import numpy as np
import pandas as pd
import pytest

import weitrix as wx


def _corr(a, b):
    return abs(np.corrcoef(a, b)[0, 1])


class TestDesignOnly:
    """p = 0 is weighted least squares of each row on the design."""

    def test_intercept_is_weighted_mean(self, small_weitrix):
        comp = wx.weitrix_components(small_weitrix, p=0)
        x = np.nan_to_num(small_weitrix['x'])
        w = small_weitrix['weights']
        expected = np.sum(w * x, axis=1) / np.sum(w, axis=1)
        assert np.allclose(comp['row'][:, 0], expected)
        assert comp['converged']
        assert comp.p == 0
        assert comp.k == 1

    def test_matches_closed_form(self, simwei):
        cols = pd.DataFrame({'group': ['A', 'A', 'A', 'B', 'B', 'B']})
        wei = wx.make_weitrix(simwei['x'], simwei['weights'], cols=cols)
        comp = wx.weitrix_components(wei, p=0, design='~group')
        X = comp['design']
        for i in [0, 10, 49]:
            W = np.diag(wei['weights'][i])
            beta = np.linalg.solve(X.T @ W @ X, X.T @ W @ wei['x'][i])
            assert np.allclose(comp['row'][i], beta)

    def test_single_row(self):
        wei = wx.make_weitrix(np.array([[1.0, 2.0, np.nan, 5.0]]),
                              np.array([[1.0, 3.0, 0.0, 2.0]]))
        comp = wx.weitrix_components(wei, p=0)
        assert abs(comp['row'][0, 0] - (1 + 6 + 10) / 6) < 1e-12
        assert wx.row_degrees_of_freedom(wei, comp)[0] == 2

    def test_empty_row_is_zero(self):
        x = np.array([[1.0, 2.0, 3.0], [np.nan, np.nan, np.nan]])
        comp = wx.weitrix_components(wx.make_weitrix(x), p=0)
        assert np.all(comp['row'][1] == 0)


class TestComponents:
    """Alternating fit and identifiability."""

    def test_recovers_truth(self, simulated):
        wei, truth = simulated
        comp = wx.weitrix_components(wei, p=1)
        assert comp['converged']
        assert comp['col'].shape == (6, 2)
        assert comp['row'].shape == (50, 2)
        assert _corr(comp['col'][:, 1], truth['col'][:, 0]) > 0.95
        assert _corr(comp['row'][:, 1], truth['row'][:, 0]) > 0.95

    def test_recovers_trend_and_step(self):
        r = np.random.RandomState(3)
        n, m = 50, 6
        truth = np.column_stack([np.arange(m) - 2.5, [-1, -1, -1, 1, 1, 1]])
        loadings = r.normal(scale=3.0, size=(n, 2))
        w = r.choice([1.0, 5.0, 20.0], size=(n, m))
        x = (r.normal(size=n)[:, None] + loadings @ truth.T
             + r.normal(size=(n, m)) / np.sqrt(w))
        comp = wx.weitrix_components(wx.make_weitrix(x, w), p=2)
        assert comp['converged']

        # Varimax may rotate the pair, so compare spans
        basis = np.column_stack([np.ones(m), comp['col'][:, comp['ind_components']]])
        for j in range(2):
            fitted = basis @ np.linalg.lstsq(basis, truth[:, j], rcond=None)[0]
            assert _corr(fitted, truth[:, j]) > 0.95

    def test_design_held_exactly(self, simwei):
        comp = wx.weitrix_components(simwei, p=2)
        assert np.array_equal(comp['col'][:, 0], np.ones(6))
        assert np.array_equal(comp['design'], np.ones((6, 1)))

    def test_scores_orthonormal(self, simwei):
        comp = wx.weitrix_components(simwei, p=2)
        scores = comp['col'][:, comp['ind_components']]
        assert np.allclose(scores.T @ scores, np.eye(2), atol=1e-8)
        assert np.allclose(comp['design'].T @ scores, 0, atol=1e-8)

    def test_positive_skew(self, simwei):
        comp = wx.weitrix_components(simwei, p=2)
        loadings = comp['row'][:, comp['ind_components']]
        assert np.all(np.sum(loadings ** 3, axis=0) >= 0)

    def test_varimax_does_not_change_fit(self, simwei):
        a = wx.weitrix_components(simwei, p=2, use_varimax=True)
        b = wx.weitrix_components(simwei, p=2, use_varimax=False)
        assert np.allclose(a.fitted(), b.fitted(), atol=1e-8)
        assert abs(a['rss'] - b['rss']) < 1e-8 * b['rss']

    def test_unrotated_ordered_by_sum_of_squares(self, simwei):
        comp = wx.weitrix_components(simwei, p=2, use_varimax=False)
        ss = np.sum(comp['row'][:, comp['ind_components']] ** 2, axis=0)
        assert ss[0] >= ss[1]

    def test_missing_values_ignored(self, simwei):
        x = simwei['x'].copy()
        w = simwei['weights'].copy()
        w[::7, 2] = 0
        x[::7, 2] = np.nan
        a = wx.weitrix_components(wx.make_weitrix(x, w), p=1)
        x[::7, 2] = 1e6
        b = wx.weitrix_components(wx.make_weitrix(x, w), p=1)
        assert np.allclose(a['row'], b['row'])
        assert np.allclose(a['col'], b['col'])

    def test_empty_design(self, simwei):
        comp = wx.weitrix_components(simwei, p=2, design='~0')
        assert comp.k == 0
        assert comp['col'].shape == (6, 2)
        assert comp['component_names'] == ['C1', 'C2']

    def test_restarts_never_worse(self, simwei):
        one = wx.weitrix_components(simwei, p=2)
        many = wx.weitrix_components(simwei, p=2, n_restarts=3, random_state=1)
        assert many['rss'] <= one['rss'] * (1 + 1e-9)

    def test_initial(self, simwei):
        init = np.random.RandomState(0).normal(size=(6, 1))
        comp = wx.weitrix_components(simwei, p=1, initial=init)
        ref = wx.weitrix_components(simwei, p=1)
        assert abs(comp['rss'] - ref['rss']) < 1e-2 * ref['rss']

    def test_non_convergence_warns(self, simwei):
        with pytest.warns(wx.ConvergenceWarning):
            comp = wx.weitrix_components(simwei, p=2, max_iter=1)
        assert not comp['converged']
        assert comp['iterations'] == 1

    def test_verbose(self, simwei, capsys):
        wx.weitrix_components(simwei, p=1, verbose=True)
        out = capsys.readouterr().out
        assert "Iteration 1" in out
        assert "Done" in out

    def test_frames(self, simwei):
        comp = wx.weitrix_components(simwei, p=1)
        assert list(comp.row_frame().columns) == ['Intercept', 'C1']
        assert list(comp.col_frame().index) == simwei.col_names


class TestValidation:
    """Configuration errors."""

    def test_too_many_components(self, simwei):
        with pytest.raises(ValueError, match="identifiable"):
            wx.weitrix_components(simwei, p=6)

    def test_negative_p(self, simwei):
        with pytest.raises(ValueError):
            wx.weitrix_components(simwei, p=-1)

    def test_design_rows(self, simwei):
        with pytest.raises(ValueError, match="rows"):
            wx.weitrix_components(simwei, p=1, design=np.ones((5, 1)))

    def test_rank_deficient(self, simwei):
        design = np.column_stack([np.ones(6), np.ones(6)])
        with pytest.raises(ValueError, match="rank"):
            wx.weitrix_components(simwei, p=1, design=design)

    def test_unknown_formula_variable(self, simwei):
        with pytest.raises(ValueError, match="unknown"):
            wx.weitrix_components(simwei, p=1, design='~batch')

    def test_initial_shape(self, simwei):
        with pytest.raises(ValueError, match="initial"):
            wx.weitrix_components(simwei, p=2, initial=np.ones((6, 1)))

    def test_restarts(self, simwei):
        with pytest.raises(ValueError):
            wx.weitrix_components(simwei, p=1, n_restarts=0)


class TestVarimax:
    """varimax()."""

    def test_rotation_orthogonal(self, rng):
        x = rng.normal(size=(30, 3))
        rotated, rotation = wx.varimax(x)
        assert np.allclose(rotation.T @ rotation, np.eye(3))
        assert np.allclose(rotated, x @ rotation)

    def test_simple_structure(self, rng):
        # Two clusters of loadings rotated by 30 degrees
        base = np.zeros((20, 2))
        base[:10, 0] = rng.uniform(1, 2, 10)
        base[10:, 1] = rng.uniform(1, 2, 10)
        theta = np.pi / 6
        rot = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        rotated, _ = wx.varimax(base @ rot)
        # Each row should load on a single factor again
        small = np.min(np.abs(rotated), axis=1)
        assert np.all(small < 0.05)

    def test_single_column(self):
        x = np.arange(5.0).reshape(-1, 1)
        rotated, rotation = wx.varimax(x)
        assert np.array_equal(rotated, x)
        assert rotation.shape == (1, 1)
