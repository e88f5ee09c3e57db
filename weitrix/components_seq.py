"""
Sequences of component fits, for choosing the number of components.
"""

import numpy as np
import pandas as pd

from .classes import ComponentsSeq
from .components import residual_eigenvectors, weitrix_components
from .formula import resolve_design
from .weitrix import as_weitrix, observed_x


def weitrix_components_seq(weitrix, p, design="~1", use_varimax=True,
                           executor=None, verbose=False, **kwargs):
    """Find components of variation for each of 0, 1, ..., p components.

    Each fit is warm started from the previous fit's component scores plus
    one new column taken from the leading eigenvector of the previous fit's
    residuals, so the sequence is much cheaper than independent fits.

    Parameters
    ----------
    weitrix : Weitrix
    p : int
        Largest number of components.
    design : str, DataFrame or ndarray
        Design, as for ``weitrix_components``.
    use_varimax : bool
    executor : callable, optional
    verbose : bool
    **kwargs
        Passed to ``weitrix_components`` (``tol``, ``max_iter``, ...).

    Returns
    -------
    ComponentsSeq
        ``seq[j]`` is the fit with j components.
    """
    weitrix = as_weitrix(weitrix)
    if 'initial' in kwargs:
        raise ValueError("'initial' cannot be given for a sequence of fits")
    design_mat, _ = resolve_design(design, weitrix)
    k = design_mat.shape[1]
    p = int(p)
    if p < 0:
        raise ValueError("p must be non-negative")
    if k + p > weitrix.ncol:
        raise ValueError(
            f"Design columns ({k}) plus components ({p}) exceed the number of "
            f"columns ({weitrix.ncol})")

    x = observed_x(weitrix)
    w = weitrix['weights']

    fits = []
    prev = None
    for j in range(p + 1):
        if verbose:
            print(f"Fitting {j} of {p} components")
        initial = None
        if j > 0:
            resid = np.where(w > 0, x - prev.fitted(), 0.0)
            initial = np.hstack([prev['col'][:, k:], residual_eigenvectors(resid, 1)])
        comp = weitrix_components(weitrix, p=j, design=design, use_varimax=use_varimax,
                                  initial=initial, executor=executor, verbose=False,
                                  **kwargs)
        fits.append(comp)
        prev = comp

    seq = ComponentsSeq()
    seq['fits'] = fits
    seq['rss'] = np.array([c['rss'] for c in fits])
    seq['rss_null'] = float(np.sum(w * x * x))
    seq['r2'] = _r2(seq['rss'], seq['rss'][0])
    return seq


def _r2(rss, rss_baseline):
    with np.errstate(divide='ignore', invalid='ignore'):
        return 1.0 - np.asarray(rss, dtype=np.float64) / rss_baseline


def components_seq_r2(seq, baseline="design", p=None, design="~1", **kwargs):
    """Weighted R-squared of each fit in a sequence.

    R-squared is ``1 - RSS_p / RSS_baseline``, where the baseline is the
    fit of the design alone (``'design'``) or no model at all (``'null'``,
    the weighted sum of squares of the measurements).

    Parameters
    ----------
    seq : ComponentsSeq or Weitrix
        A fitted sequence, or a weitrix to fit one for (``p`` required).
    baseline : str
        'design' or 'null'.
    p, design, **kwargs
        Passed to ``weitrix_components_seq`` when ``seq`` is a weitrix.

    Returns
    -------
    ndarray
        R-squared for 0, 1, ..., p components.
    """
    if baseline not in ("design", "null"):
        raise ValueError("baseline must be 'design' or 'null'")
    if not isinstance(seq, ComponentsSeq):
        if p is None:
            raise ValueError("p is required to fit a sequence")
        seq = weitrix_components_seq(seq, p, design=design, **kwargs)
    rss = seq['rss']
    rss_baseline = rss[0] if baseline == "design" else seq['rss_null']
    return _r2(rss, rss_baseline)


def components_seq_screeplot_data(seq, baseline="design"):
    """R-squared and its increase with each added component.

    Returns
    -------
    DataFrame
        Columns ``p``, ``R2`` and ``R2_increase``.
    """
    r2 = components_seq_r2(seq, baseline=baseline)
    return pd.DataFrame({
        'p': np.arange(len(r2)),
        'R2': r2,
        'R2_increase': np.diff(r2, prepend=0.0),
    })
