"""
Empirical Bayes variance moderation and design checks.

Moment-matching fit of a scaled F prior to row dispersions, used to supply
a degrees-of-freedom prior to downstream differential testing, plus
rank checks for design matrices.
"""

import numpy as np
from scipy.special import polygamma


def squeeze_var(var, df):
    """Empirical Bayes moderation of row-wise variances.

    Parameters
    ----------
    var : array-like
        Row variances (dispersions). NaN entries are ignored.
    df : array-like or float
        Residual degrees of freedom for each row.

    Returns
    -------
    dict with keys: var_post, var_prior, df_prior
    """
    var = np.asarray(var, dtype=np.float64).copy()
    n = len(var)
    if n == 0:
        raise ValueError("var is empty")

    df = np.atleast_1d(np.asarray(df, dtype=np.float64))
    if len(df) == 1:
        df = np.full(n, df[0])
    if len(df) != n:
        raise ValueError("df must be a scalar or have one entry per row")

    ok = np.isfinite(var) & np.isfinite(df) & (df > 0)
    if np.sum(ok) < 3:
        return {'var_post': var, 'var_prior': np.nan, 'df_prior': 0.0}

    fit = _fit_f_dist(var[ok], df[ok])
    var_post = np.full(n, np.nan)
    var_post[ok] = _posterior_var(var[ok], df[ok], fit['s2'], fit['df2'])
    return {'var_post': var_post, 'var_prior': fit['s2'], 'df_prior': fit['df2']}


def _posterior_var(var, df, var_prior, df_prior):
    """(df*var + df_prior*var_prior) / (df + df_prior)."""
    if np.isinf(df_prior):
        return np.full(len(var), var_prior, dtype=np.float64)
    total_df = df + df_prior
    return (df * var + df_prior * var_prior) / total_df


def _fit_f_dist(x, df1):
    """Fit a scaled F distribution to variances by moment matching on log scale.

    Returns
    -------
    dict with 's2' (prior scale) and 'df2' (prior degrees of freedom).
    """
    x = np.maximum(np.asarray(x, dtype=np.float64), 0.0)
    df1 = np.asarray(df1, dtype=np.float64)
    n = len(x)

    # Guard against zeros before taking logs
    m = np.median(x)
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) + logmdigamma(df1 / 2)
    emean = np.mean(e)
    evar = np.sum((e - emean) ** 2) / (n - 1)
    evar = evar - np.mean(polygamma(1, df1 / 2))

    if evar > 0:
        df2 = 2.0 * _trigamma_inverse(evar)
        if df2 > 1e15:
            df2 = np.inf
        s2 = float(np.exp(emean - logmdigamma(df2 / 2))) if np.isfinite(df2) \
            else float(np.exp(emean))
    else:
        df2 = np.inf
        s2 = float(np.mean(x))
    return {'s2': max(s2, 1e-15), 'df2': df2}


def _trigamma_inverse(x):
    """Solve trigamma(y) = x for y by Newton's method."""
    x = float(x)
    if x > 1e7 or x < 1e-6:
        return 1.0 / x
    y = 1.0 / x if x > 0.5 else 1.0 / (x * (1 + x))
    for _ in range(50):
        tri = float(polygamma(1, y))
        step = tri * (1 - tri / x) / float(polygamma(2, y))
        y = y + step
        if y <= 0:
            y = x
        if abs(step / y) < 1e-10:
            break
    return y


def logmdigamma(x):
    """log(x) - digamma(x), avoiding cancellation for large x."""
    x = np.asarray(x, dtype=np.float64)
    scalar_input = x.ndim == 0
    x = np.atleast_1d(x)
    out = np.full_like(x, np.nan)

    def _asymptotic(z):
        inv_z2 = 1.0 / (z * z)
        tail = inv_z2 * (-1.0/12 + inv_z2 * (1.0/120 + inv_z2 * (-1.0/252 + inv_z2 * (
            1.0/240 + inv_z2 * (-1.0/132 + inv_z2 * (691.0/32760 + inv_z2 * (
            -1.0/12 + 3617.0/8160 * inv_z2)))))))
        return 1.0 / (2.0 * z) - tail

    large = x >= 5
    small = (x > 0) & ~large
    out[large] = _asymptotic(x[large])
    if np.any(small):
        # Shift by 5 with the recurrence digamma(z+1) = digamma(z) + 1/z
        z = x[small]
        out[small] = (np.log(z / (z + 5.0)) + _asymptotic(z + 5.0)
                      + 1.0/z + 1.0/(z+1) + 1.0/(z+2) + 1.0/(z+3) + 1.0/(z+4))
    return float(out[0]) if scalar_input else out


def non_estimable(x):
    """Indices of coefficients that cannot be estimated from a design matrix.

    Returns None if every coefficient is estimable.
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    p = x.shape[1]
    if p == 0:
        return None
    _, R = np.linalg.qr(x)
    d = np.abs(np.diag(R))
    if len(d) < p:
        d = np.concatenate([d, np.zeros(p - len(d))])
    tol = np.max(d) * max(x.shape) * np.finfo(np.float64).eps if np.max(d) > 0 else 0
    non_est = np.where(d <= tol)[0]
    if len(non_est) == 0:
        return None
    return non_est


def is_fullrank(x):
    """Check if a matrix has full column rank."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    if x.shape[1] == 0:
        return True
    return np.linalg.matrix_rank(x) == x.shape[1]
