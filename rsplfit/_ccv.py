"""
Curvature compensation values (ccv).

Two-pass smoothing first fits with very little smoothing, measures the
curvature of that fit, low-pass filters it, and then refits asking the
curvature term to match the filtered field instead of zero. The field is
computed at the full grid resolution and resampled onto every rung of the
second pass.
"""
import numpy as np

from ._grid import node_coords, resample_multilinear

TWOPASS_ORDER = 2       # Generalized Gaussian order, 2 is a true Gaussian
TWOPASS_SUBSAMPLE = 9   # Sub-samples per filter tap


def compute_ccv(level):
    """
    Second difference of a solved level's ``x`` along every axis.

    Returns
    -------
    ndarray, shape (gno, D)
        ``w0 x[c-1] - (w0 + w1) x[c] + w1 x[c+1]`` at interior nodes of each
        axis, 0 on that axis's boundary nodes.
    """
    x = level.x
    G = node_coords(level.res)
    ccv = np.zeros((level.gno, level.di))
    for e in range(level.di):
        r = level.res[e]
        if r < 3:
            continue
        ci = int(level.stencil.strides[e])
        w0, w1 = level.axis_weights(e)
        rows = np.nonzero((G[:, e] >= 1) & (G[:, e] <= r - 2))[0]
        c = G[rows, e]
        ccv[rows, e] = (w0[c] * x[rows - ci] - (w0[c] + w1[c]) * x[rows]
                        + w1[c] * x[rows + ci])
    return ccv


def _curvature_scale(res, symdom):
    """Per axis ``(R - 1)**2``, the second difference of a unit quadratic."""
    res = np.asarray(res, dtype=float)
    if symdom:
        rs = res
    else:
        rs = np.full(res.shape, np.prod(res) ** (1.0 / len(res)))
    return (rs - 1.0) ** 2


def resample_ccv(ccv, src_res, dst_res, symdom=False):
    """
    Resample a ccv field onto another resolution.

    Values are interpolated multilinearly and then rescaled by the ratio of
    squared grid spacings, so a field measured on a quadratic stays the
    quadratic's second difference at the destination resolution.
    """
    out = resample_multilinear(ccv, src_res, dst_res)
    out *= _curvature_scale(src_res, symdom) / _curvature_scale(dst_res, symdom)
    return out


def _kernel(stdev, cres, nmax, order):
    k2 = 1.0 / (2.0 * abs(stdev) ** order)
    span = 5.0 * stdev * (cres - 1.0)
    kmin = int(min(max(np.floor(-span), -(nmax - 1)), -1))
    kmax = int(max(min(np.ceil(span), nmax - 1), 1))
    half = TWOPASS_SUBSAMPLE // 2
    sub = np.arange(-half, half + 1) / float(TWOPASS_SUBSAMPLE)
    taps = np.arange(kmin, kmax + 1)
    u = (taps[:, None] + sub[None, :]) / (cres - 1.0)
    wts = np.exp(-k2 * np.abs(u) ** order).sum(axis=1)
    return kmin, kmax, wts / wts.sum()


def filter_ccv(ccv, res, stdev, symdom=False, order=TWOPASS_ORDER):
    """
    Separable generalized Gaussian filter of a ccv field.

    Parameters
    ----------
    ccv : ndarray, shape (prod(res), D)
        Field to filter, Fortran node order.
    res : tuple of int
        Resolution the field lives on.
    stdev : float
        Filter width as a fraction of the domain. A width of 0 returns the
        field unchanged.
    symdom : bool, optional
        Measure the width against each axis's own resolution instead of the
        geometric mean resolution.
    order : float, optional
        Exponent of the generalized Gaussian.

    Returns
    -------
    ndarray, shape (prod(res), D)

    Notes
    -----
    Every component is filtered along every axis. Beyond the grid the field
    is extended by odd reflection about the edge value
    (``2 f[0] - f[i]``), so a linear trend runs through the border.
    """
    if stdev == 0.0:
        return ccv
    res = tuple(res)
    di = len(res)
    stdev = abs(stdev)
    mres = int(np.prod(np.asarray(res, float)) ** (1.0 / di))
    field = np.reshape(ccv, res + (ccv.shape[1],), order="F")
    for e in range(di):
        cres = max(res[e] if symdom else mres, 2)
        kmin, kmax, wts = _kernel(stdev, cres, res[e], order)
        pad = [(0, 0)] * field.ndim
        pad[e] = (-kmin, kmax)
        padded = np.pad(field, pad, mode="reflect", reflect_type="odd")
        out = np.zeros_like(field)
        for j, wj in enumerate(wts):
            sl = [slice(None)] * field.ndim
            sl[e] = slice(j, j + res[e])
            out += wj * padded[tuple(sl)]
        field = out
    return np.reshape(field, ccv.shape, order="F")
