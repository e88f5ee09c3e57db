"""Shared fixtures for weitrix tests."""

import numpy as np
import pandas as pd
import pytest

import weitrix as wx


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture(scope="module")
def simulated():
    """50 rows x 6 columns, one true component, weights from {1, 5, 20}."""
    return wx.simulate_weitrix(50, 6, p=1, random_state=42)


@pytest.fixture(scope="module")
def simwei(simulated):
    """The weitrix from ``simulated``."""
    return simulated[0]


@pytest.fixture
def small_weitrix():
    """4 rows x 3 columns with one missing element and covariates."""
    x = np.array([
        [1.0, 2.0, 3.0],
        [4.0, np.nan, 6.0],
        [7.0, 8.0, 10.0],
        [0.5, 0.0, -0.5],
    ])
    w = np.array([
        [1.0, 1.0, 2.0],
        [1.0, 0.0, 1.0],
        [0.5, 1.0, 1.0],
        [3.0, 3.0, 3.0],
    ])
    rows = pd.DataFrame({'gene': ['a', 'b', 'c', 'd']})
    cols = pd.DataFrame({'group': ['A', 'A', 'B']})
    return wx.make_weitrix(x, w, rows=rows, cols=cols,
                           row_names=['g1', 'g2', 'g3', 'g4'],
                           col_names=['s1', 's2', 's3'])


@pytest.fixture(scope="module")
def hetero():
    """300 rows x 8 columns whose noise standard deviation is ``scale``.

    Weights are all 1, so the dispersion of each row is about scale^2.
    """
    r = np.random.RandomState(7)
    n, m = 300, 8
    scale = np.exp(r.uniform(0, np.log(4), size=n))
    x = r.normal(size=(n, m)) * scale[:, None] + r.normal(size=n)[:, None]
    rows = pd.DataFrame({'scale': scale})
    return wx.make_weitrix(x, rows=rows)
