"""
Components of variation.

A weighted, missing-data tolerant generalization of PCA. Each row of a
weitrix is modelled as a linear combination of the columns of a
``col`` matrix whose first k columns are a fixed design matrix and whose
remaining p columns are discovered from the data:

    x ~ row @ col.T

The fit alternates between weighted least squares for each row given
``col`` and weighted least squares for the discovered part of each column
given ``row``, using only observed (weight > 0) cells.
"""

import numpy as np
import warnings
from scipy import linalg as sla

from .classes import Components, ConvergenceWarning
from .formula import resolve_design
from .limma_port import is_fullrank, non_estimable
from .parallel import run_by_rows
from .weitrix import as_weitrix, observed_x

# Relative singular value cutoff for rank-deficient least squares. Systems
# with fewer observations than unknowns get the minimum-norm solution.
RCOND = 1e-10
DEFAULT_TOL = 1e-5
DEFAULT_MAX_ITER = 1000


def _wls_rows(x, w, basis, rcond=RCOND):
    """Weighted least squares of each row of x on the columns of basis.

    Parameters
    ----------
    x : ndarray (n, m)
        Responses, zero where w is zero.
    w : ndarray (n, m)
        Weights.
    basis : ndarray (m, q)

    Returns
    -------
    ndarray (n, q)
    """
    n = x.shape[0]
    q = basis.shape[1]
    out = np.zeros((n, q))
    if q == 0:
        return out
    present = w > 0
    for i in range(n):
        keep = present[i]
        if not np.any(keep):
            continue
        sw = np.sqrt(w[i, keep])
        out[i] = np.linalg.lstsq(basis[keep] * sw[:, None], x[i, keep] * sw,
                                 rcond=rcond)[0]
    return out


def _wls_cols(xt, wt, design, row, rcond=RCOND):
    """Novel column scores for a block of columns, design part held fixed.

    ``xt`` and ``wt`` are transposed blocks (columns x rows) and ``design``
    the matching rows of the design matrix.
    """
    k = design.shape[1]
    target = xt - design @ row[:, :k].T
    return _wls_rows(target, wt, row[:, k:], rcond)


def fit_rows(x, w, col, executor=None, rcond=RCOND):
    """Row coefficients given the column matrix.

    Parameters
    ----------
    x : ndarray (n, m)
        Measurements, zero where weight is zero.
    w : ndarray (n, m)
        Weights.
    col : ndarray (m, q)
        Column matrix.
    executor : callable, optional
        Parallel executor, see ``weitrix.parallel``.

    Returns
    -------
    ndarray (n, q)
    """
    return run_by_rows(_wls_rows, (x, w), shared=(col, rcond), executor=executor)


def fit_cols(x, w, row, design, executor=None, rcond=RCOND):
    """Column matrix given row coefficients.

    The first k columns of the result are ``design`` exactly; the remaining
    columns are the weighted least squares scores of each column of ``x``
    on the non-design part of ``row``.

    Returns
    -------
    ndarray (m, q)
    """
    novel = run_by_rows(_wls_cols, (x.T, w.T, design), shared=(row, rcond),
                        executor=executor, cost_per_row=x.shape[0])
    return np.hstack([design, novel])


def weighted_rss(x, w, row, col):
    """Weighted residual sum of squares over observed cells."""
    resid = np.where(w > 0, x - row @ col.T, 0.0)
    return float(np.sum(w * resid * resid))


def varimax(x, normalize=True, eps=1e-5, max_iter=1000):
    """Varimax rotation of a loadings matrix.

    Parameters
    ----------
    x : ndarray (n, p)
        Loadings.
    normalize : bool
        Apply Kaiser normalization (rows scaled to unit length while the
        rotation is found).
    eps : float
        Relative tolerance on the criterion.

    Returns
    -------
    (rotated, rotation) : ndarray (n, p), ndarray (p, p)
        ``rotated = x @ rotation``; ``rotation`` is orthogonal.
    """
    x = np.asarray(x, dtype=np.float64)
    n, p = x.shape
    if p < 2:
        return x.copy(), np.eye(p)

    if normalize:
        sc = np.sqrt(np.sum(x * x, axis=1))
        sc[sc == 0] = 1.0
        x = x / sc[:, None]

    rotation = np.eye(p)
    d = 0.0
    for _ in range(max_iter):
        z = x @ rotation
        b = x.T @ (z ** 3 - z * (np.sum(z * z, axis=0) / n))
        u, s, vt = np.linalg.svd(b)
        rotation = u @ vt
        d_past = d
        d = np.sum(s)
        if d < d_past * (1 + eps):
            break

    z = x @ rotation
    if normalize:
        z = z * sc[:, None]
    return z, rotation


def residual_eigenvectors(resid, p):
    """Leading p eigenvectors of ``resid.T @ resid``, largest first.

    Missing cells should be 0 in ``resid``.
    """
    ncol = resid.shape[1]
    cross = resid.T @ resid
    vals, vecs = sla.eigh(cross, subset_by_index=[ncol - p, ncol - 1])
    return vecs[:, ::-1]


def _initial_scores(x, w, design, p, executor, rcond=RCOND):
    """Starting scores from the leading eigenvectors of the residual cross-product."""
    row = fit_rows(x, w, design, executor=executor, rcond=rcond)
    resid = np.where(w > 0, x - row @ design.T, 0.0)
    return residual_eigenvectors(resid, p)


def _tidy(row, col, k, p, use_varimax):
    """Put the discovered components in a canonical form.

    The product ``row @ col.T`` is unchanged. Novel column scores are made
    orthogonal to the design and orthonormal, ordered by the sum of squares
    they explain, optionally varimax rotated, with signs chosen so each
    column of row loadings has non-negative skew.
    """
    row = row.copy()
    design, novel = col[:, :k], col[:, k:]
    row_design, row_novel = row[:, :k], row[:, k:]

    if k > 0:
        coef = np.linalg.lstsq(design, novel, rcond=None)[0]
        novel = novel - design @ coef
        row_design = row_design + row_novel @ coef.T

    q, r = np.linalg.qr(novel)
    m = row_novel @ r.T
    # Fewer rows than components needs the full set of right singular vectors
    u, s, vt = np.linalg.svd(m, full_matrices=m.shape[0] < p)
    row_novel = np.zeros_like(m)
    row_novel[:, :len(s)] = u[:, :len(s)] * s
    novel = q @ vt.T

    if use_varimax:
        row_novel, rotation = varimax(row_novel)
        novel = novel @ rotation

    signs = np.sign(np.sum(row_novel ** 3, axis=0))
    signs[signs == 0] = 1.0
    row_novel = row_novel * signs
    novel = novel * signs

    return np.hstack([row_design, row_novel]), np.hstack([design, novel])


def _als(x, w, design, scores, tol, max_iter, executor, verbose, rcond=RCOND):
    """Alternating weighted least squares from the given starting scores."""
    col = np.hstack([design, scores])
    history = []
    rss_prev = np.inf
    converged = False
    it = 0
    for it in range(1, max_iter + 1):
        row = fit_rows(x, w, col, executor=executor, rcond=rcond)
        col = fit_cols(x, w, row, design, executor=executor, rcond=rcond)
        rss = weighted_rss(x, w, row, col)
        history.append(rss)
        if verbose and (it == 1 or it % 10 == 0):
            print(f"Iteration {it}: weighted RSS = {rss:.6g}")
        if np.isfinite(rss_prev) and rss_prev - rss <= tol * rss_prev:
            converged = True
            break
        rss_prev = rss

    row = fit_rows(x, w, col, executor=executor, rcond=rcond)
    rss = weighted_rss(x, w, row, col)
    return row, col, rss, history, converged, it


def weitrix_components(weitrix, p=1, design="~1", use_varimax=True,
                       tol=DEFAULT_TOL, max_iter=DEFAULT_MAX_ITER, n_restarts=1,
                       initial=None, random_state=None, executor=None,
                       verbose=False, rcond=RCOND):
    """Find components of variation.

    Parameters
    ----------
    weitrix : Weitrix
        Measurements and weights.
    p : int
        Number of components to find beyond the design.
    design : str, DataFrame or ndarray
        Design matrix (columns x k), or a formula over the weitrix's column
        covariates. Never altered. ``'~0'`` gives an empty design.
    use_varimax : bool
        Varimax rotate the discovered components. Otherwise they are left
        ordered by the sum of squares they explain.
    tol : float
        Stop when the relative decrease in weighted RSS is below this.
    max_iter : int
        Maximum number of alternating iterations.
    n_restarts : int
        Number of starts. The first uses ``initial`` or an eigenvector
        initialization, further starts use random scores. The best fit is
        kept.
    initial : ndarray (columns x p), optional
        Starting column scores.
    random_state : int or Generator, optional
        Seed for random restarts.
    executor : callable, optional
        Parallel executor for row and column steps.
    verbose : bool
        Print progress.
    rcond : float
        Relative singular value cutoff for each least squares solve.
        Rank-deficient rows and columns get the minimum-norm solution.

    Returns
    -------
    Components
    """
    weitrix = as_weitrix(weitrix)
    design_mat, design_names = resolve_design(design, weitrix)
    nrow, ncol = weitrix.shape
    k = design_mat.shape[1]

    p = int(p)
    if p < 0:
        raise ValueError("p must be non-negative")
    if k + p > ncol:
        raise ValueError(
            f"Design columns ({k}) plus components ({p}) exceed the number of "
            f"columns ({ncol}); the model is not identifiable")
    if not is_fullrank(design_mat):
        bad = non_estimable(design_mat)
        names = ", ".join(design_names[i] for i in bad) if bad is not None else ""
        raise ValueError(f"Design matrix is not full column rank ({names})")
    if n_restarts < 1:
        raise ValueError("n_restarts must be at least 1")

    x = observed_x(weitrix)
    w = weitrix['weights']

    if p == 0:
        row = fit_rows(x, w, design_mat, executor=executor, rcond=rcond)
        col = design_mat.copy()
        rss = weighted_rss(x, w, row, col)
        history, converged, iterations = [rss], True, 0
    else:
        if initial is not None:
            first = np.asarray(initial, dtype=np.float64)
            if first.shape != (ncol, p):
                raise ValueError(f"initial must have shape ({ncol}, {p})")
        else:
            first = _initial_scores(x, w, design_mat, p, executor, rcond)

        rng = np.random.default_rng(random_state)
        best = None
        for start in range(n_restarts):
            scores = first if start == 0 else rng.standard_normal((ncol, p))
            if verbose:
                print(f"Start {start + 1} of {n_restarts}")
            result = _als(x, w, design_mat, scores, tol, max_iter, executor, verbose,
                          rcond)
            if best is None or result[2] < best[2]:
                best = result
        row, col, rss, history, converged, iterations = best

        if not converged:
            warnings.warn(
                f"Components did not converge in {max_iter} iterations",
                ConvergenceWarning, stacklevel=2)

        row, col = _tidy(row, col, k, p, use_varimax)

    if verbose:
        print(f"Done: p={p}, weighted RSS = {rss:.6g}")

    comp = Components()
    comp['row'] = row
    comp['col'] = col
    comp['design'] = design_mat
    comp['design_names'] = list(design_names)
    comp['component_names'] = [f"C{i + 1}" for i in range(p)]
    comp['ind_design'] = np.arange(k)
    comp['ind_components'] = np.arange(k, k + p)
    comp['rss'] = rss
    comp['rss_history'] = np.asarray(history)
    comp['converged'] = converged
    comp['iterations'] = iterations
    comp['use_varimax'] = bool(use_varimax)
    comp['row_names'] = weitrix.row_names
    comp['col_names'] = weitrix.col_names
    return comp
