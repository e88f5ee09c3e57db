"""
GLM fitting for dispersion trends.

Iteratively reweighted least squares for a log link with variance
proportional to the squared mean (the gamma variance function, fitted as
a quasi-likelihood so that zero responses are allowed).
"""

import numpy as np
import warnings
from .classes import ConvergenceWarning


def gamma_quasi_deviance(y, mu, weights=None):
    """Unit deviances for the quasi model with variance mu^2.

    Zero responses use the limit ``log(1/mu)`` for ``log(y/mu)``.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.asarray(mu, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = np.where(y == 0, 1.0, y) / mu
        dev = -2.0 * (np.log(ratio) - (y - mu) / mu)
    dev = np.maximum(dev, 0)
    if weights is not None:
        dev = dev * weights
    return dev


def glm_log_quasi(y, X, prior_weights=None, offset=None, mustart=None,
                  tol=1e-8, maxit=100):
    """Fit a log-link GLM with variance proportional to mu^2.

    Parameters
    ----------
    y : ndarray
        Non-negative response.
    X : ndarray
        Model matrix (observations x coefficients). May have no columns.
    prior_weights : ndarray, optional
        Observation weights. Observations with zero weight do not influence
        the fit but still receive fitted values.
    offset : ndarray, optional
        Offset on the log scale.
    mustart : float or ndarray, optional
        Starting fitted values. Defaults to the weighted mean of y.
    tol : float
        Convergence tolerance on relative change in deviance.
    maxit : int
        Maximum iterations.

    Returns
    -------
    dict with 'coefficients', 'fitted.values', 'linear.predictors',
    'deviance', 'dispersion', 'df.residual', 'iter', 'converged'.
    """
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    n, ncoef = X.shape
    if len(y) != n:
        raise ValueError("y and X have different numbers of observations")

    if prior_weights is None:
        w = np.ones(n)
    else:
        w = np.asarray(prior_weights, dtype=np.float64)
    if offset is None:
        off = np.zeros(n)
    else:
        off = np.broadcast_to(np.asarray(offset, dtype=np.float64), (n,)).copy()

    good = (w > 0) & np.isfinite(y) & np.isfinite(off) & np.all(np.isfinite(X), axis=1)
    if not np.any(good):
        raise ValueError("No observations with positive weight and finite values")
    if np.any(y[good] < 0):
        raise ValueError("Negative responses not allowed")

    yg, Xg, wg, offg = y[good], X[good], w[good], off[good]

    if mustart is None:
        mustart = np.sum(wg * yg) / np.sum(wg)
    mu = np.broadcast_to(np.asarray(mustart, dtype=np.float64), (n,))[good].copy()
    if not np.all(np.isfinite(mu)) or np.any(mu <= 0):
        raise ValueError("Starting values must be positive and finite")
    eta = np.log(mu)

    sqrt_w = np.sqrt(wg)
    # Start from the coefficients closest to mustart
    if ncoef > 0:
        beta = np.linalg.lstsq(Xg * sqrt_w[:, None], (eta - offg) * sqrt_w, rcond=None)[0]
    else:
        beta = np.zeros(0)
    dev = np.sum(gamma_quasi_deviance(yg, mu, wg))
    converged = False
    it = 0

    if ncoef == 0:
        eta = offg
        mu = np.exp(eta)
        dev = np.sum(gamma_quasi_deviance(yg, mu, wg))
        converged = True
    else:
        for it in range(1, maxit + 1):
            # For the log link with variance mu^2 the working weights are
            # the prior weights
            z = (eta - offg) + (yg - mu) / mu
            beta_new = np.linalg.lstsq(Xg * sqrt_w[:, None], z * sqrt_w, rcond=None)[0]

            eta_new = Xg @ beta_new + offg
            mu_new = np.exp(np.clip(eta_new, -700, 700))
            dev_new = np.sum(gamma_quasi_deviance(yg, mu_new, wg))

            # Step halving when the deviance blows up or increases
            halvings = 0
            while (not np.isfinite(dev_new) or (it > 1 and dev_new > dev * (1 + 1e-10))) \
                    and halvings < 30:
                beta_new = (beta_new + beta) / 2
                eta_new = Xg @ beta_new + offg
                mu_new = np.exp(np.clip(eta_new, -700, 700))
                dev_new = np.sum(gamma_quasi_deviance(yg, mu_new, wg))
                halvings += 1
            if not np.isfinite(dev_new):
                raise ValueError("GLM fit failed: non-finite deviance")

            change = abs(dev_new - dev) / (abs(dev_new) + 0.1)
            beta, eta, mu, dev = beta_new, eta_new, mu_new, dev_new
            if change < tol:
                converged = True
                break

        if not converged:
            warnings.warn(
                f"Trend GLM did not converge in {maxit} iterations",
                ConvergenceWarning, stacklevel=2)

    rank = np.linalg.matrix_rank(Xg) if ncoef > 0 else 0
    df_residual = int(np.sum(good)) - int(rank)
    if df_residual > 0:
        dispersion = float(np.sum(wg * (yg - mu) ** 2 / mu ** 2) / df_residual)
    else:
        dispersion = np.nan

    eta_all = np.full(n, np.nan)
    ok_x = np.all(np.isfinite(X), axis=1) & np.isfinite(off)
    eta_all[ok_x] = X[ok_x] @ beta + off[ok_x]

    return {
        'coefficients': beta,
        'fitted.values': np.exp(eta_all),
        'linear.predictors': eta_all,
        'deviance': float(dev),
        'dispersion': dispersion,
        'df.residual': df_residual,
        'iter': it,
        'converged': converged,
    }
