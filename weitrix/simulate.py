"""
Random data: null-model randomization and synthetic weitrices.
"""

import numpy as np

from .weitrix import as_weitrix, make_weitrix


def weitrix_randomize(weitrix, random_state=None):
    """Replace measurements with random noise under the weights.

    Each observed element is drawn from a normal distribution with mean 0
    and variance ``1 / weight``. Unobserved elements become NaN. Useful to
    see what components or calibration look like when there is no signal.

    Parameters
    ----------
    weitrix : Weitrix
    random_state : int or Generator, optional

    Returns
    -------
    Weitrix
        New object with the same weights, names and covariates.
    """
    weitrix = as_weitrix(weitrix)
    rng = np.random.default_rng(random_state)
    w = weitrix['weights']
    present = w > 0
    noise = rng.standard_normal(w.shape)
    x = np.full(w.shape, np.nan)
    x[present] = noise[present] / np.sqrt(w[present])
    return weitrix._replace(x=x, metadata=dict(weitrix['metadata']))


def simulate_weitrix(n_rows, n_cols, p=1, weight_levels=(1.0, 5.0, 20.0),
                     signal_scale=3.0, missing=0.0, random_state=None):
    """Simulate a weitrix with known components.

    Column scores are orthonormal and centred, row loadings are normal with
    standard deviation ``signal_scale``. Each element gets a weight chosen
    uniformly from ``weight_levels`` and noise with variance
    ``1 / weight``. A row intercept is added.

    Parameters
    ----------
    n_rows, n_cols : int
    p : int
        Number of true components.
    weight_levels : sequence of float
    signal_scale : float
    missing : float
        Probability that an element is missing (weight 0, value NaN).
    random_state : int or Generator, optional

    Returns
    -------
    (Weitrix, dict)
        The weitrix, and the truth with keys ``row`` (n_rows x p),
        ``col`` (n_cols x p), ``intercept`` (n_rows) and ``signal``.
    """
    if p < 0 or p + 1 > n_cols:
        raise ValueError("Need 0 <= p < n_cols")
    rng = np.random.default_rng(random_state)

    scores = rng.standard_normal((n_cols, p))
    scores = scores - scores.mean(axis=0)
    if p > 0:
        scores, _ = np.linalg.qr(scores)
    loadings = rng.standard_normal((n_rows, p)) * signal_scale
    intercept = rng.standard_normal(n_rows)
    signal = intercept[:, None] + loadings @ scores.T

    levels = np.asarray(weight_levels, dtype=np.float64)
    weights = rng.choice(levels, size=(n_rows, n_cols))
    x = signal + rng.standard_normal((n_rows, n_cols)) / np.sqrt(weights)

    if missing > 0:
        gone = rng.random((n_rows, n_cols)) < missing
        weights[gone] = 0.0
        x[gone] = np.nan

    wei = make_weitrix(x, weights)
    truth = {'row': loadings, 'col': scores, 'intercept': intercept, 'signal': signal}
    return wei, truth
