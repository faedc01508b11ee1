"""
Grid and scattered data containers, plus multilinear helpers.

Node ``i`` of a grid with resolution ``res`` sits at integer coordinates
``g = unravel_index(i, res, order="F")``: axis 0 varies fastest, so the
linear stride of axis ``e`` is ``prod(res[:e])``.
"""
import numpy as np

from ._stencil import stencil_for


def node_coords(res):
    """Integer coordinates of every node, shape ``(prod(res), len(res))``."""
    res = tuple(res)
    gno = int(np.prod(res))
    return np.stack(np.unravel_index(np.arange(gno), res, order="F"), axis=1)


def cell_weights(t, res):
    """
    Locate points in grid cells and compute their multilinear weights.

    Parameters
    ----------
    t : ndarray, shape (n, D)
        Point positions in index space (0 at the first node, ``res - 1`` at
        the last).
    res : tuple of int
        Grid resolution.

    Returns
    -------
    base : ndarray of int, shape (n,)
        Linear index of each point's lower cell corner.
    w : ndarray, shape (n, 2**D)
        Weight of every cell corner, ordered like ``SparseStencil.corners``.

    Notes
    -----
    The cell index is clamped to ``[0, res - 2]`` so a point on the upper
    bound lands in the last cell with a weight of 1 on its upper side.
    """
    stencil = stencil_for(tuple(res))
    t = np.asarray(t, dtype=float)
    n, di = t.shape
    res_arr = np.asarray(res)
    mi = np.clip(np.floor(t).astype(np.int64), 0, np.maximum(res_arr - 2, 0))
    we = t - mi
    base = mi @ stencil.strides

    w = np.empty((n, 1 << di), dtype=float)
    w[:, 0] = 1.0
    g = 1
    for e in range(di):
        w[:, g:2 * g] = w[:, :g] * we[:, e, None]
        w[:, :g] *= (1.0 - we[:, e, None])
        g *= 2
    return base, w


def resample_multilinear(src, src_res, dst_res):
    """
    Multilinearly resample node values onto another resolution.

    Each destination node ``g`` maps to ``g / (dst_res - 1) * (src_res - 1)``
    in the source index space, so both grids span the same domain.

    Parameters
    ----------
    src : ndarray, shape (prod(src_res),) or (prod(src_res), k)
        Source node values (Fortran order).
    src_res, dst_res : tuple of int
        Source and destination resolutions.

    Returns
    -------
    ndarray
        Destination node values, with ``src``'s trailing shape.
    """
    src_res, dst_res = tuple(src_res), tuple(dst_res)
    g = node_coords(dst_res).astype(float)
    scale = (np.asarray(src_res) - 1.0) / (np.asarray(dst_res) - 1.0)
    base, w = cell_weights(g * scale, src_res)
    corners = stencil_for(src_res).corners

    src = np.asarray(src, dtype=float)
    out = np.zeros((g.shape[0],) + src.shape[1:], dtype=float)
    for j, c in enumerate(corners):
        wj = w[:, j].reshape((-1,) + (1,) * (src.ndim - 1))
        out += wj * src[base + c]
    return out


class ScatteredData:
    """
    Scattered samples to fit.

    Attributes
    ----------
    p : ndarray, shape (n, D)
        Positions.
    v : ndarray, shape (n, F)
        Values.
    k : ndarray, shape (n, F)
        Per channel weights.
    cv : ndarray, shape (n, F)
        Corrected targets. Start equal to ``v``; extra-fit passes move them to
        cancel the smoothing bias of the previous pass.
    """

    def __init__(self, p, v, k=None):
        self.p = np.array(p, dtype=float)
        self.v = np.array(v, dtype=float)
        if k is None:
            k = np.ones_like(self.v)
        k = np.asarray(k, dtype=float)
        if k.ndim == 1:
            k = np.repeat(k[:, None], self.v.shape[1], axis=1)
        self.k = np.array(k, dtype=float)
        self.cv = self.v.copy()

    @property
    def no(self):
        return self.p.shape[0]

    @property
    def di(self):
        return self.p.shape[1]

    @property
    def fdi(self):
        return self.v.shape[1]


class RegularGrid:
    """
    Regular grid holding the fitted values.

    Parameters
    ----------
    res : sequence of int
        Resolution per axis, each >= 2.
    fdi : int
        Number of output channels.
    lo, hi : sequence of float, optional
        Domain bounds. Default to 0 and 1 on every axis.
    ipos : sequence of (array or None), optional
        Non-uniform sample position table per axis, used to weight the
        curvature of unevenly spaced axes.

    Attributes
    ----------
    values : ndarray, shape ``res + (fdi,)``
        Node values, written by the fit.
    vlow, vhigh : ndarray, shape (fdi,)
        Value range per channel, used to normalize curvature strength.
    """

    def __init__(self, res, fdi=1, lo=None, hi=None, ipos=None):
        self.res = tuple(int(r) for r in res)
        self.di = len(self.res)
        self.fdi = int(fdi)
        self.lo = np.zeros(self.di) if lo is None else np.array(lo, float)
        self.hi = np.ones(self.di) if hi is None else np.array(hi, float)
        if ipos is None:
            ipos = [None] * self.di
        self.ipos = [None if a is None else np.array(a, float) for a in ipos]
        self.vlow = np.zeros(self.fdi)
        self.vhigh = np.ones(self.fdi)
        self.values = np.zeros(self.res + (self.fdi,), dtype=float)

    @property
    def width(self):
        return (self.hi - self.lo) / (np.asarray(self.res) - 1.0)

    @property
    def vwidth(self):
        return self.vhigh - self.vlow

    @property
    def gno(self):
        return int(np.prod(self.res))

    def expand_to(self, p, v):
        """Grow the domain and value range to enclose the data."""
        if p.shape[0] == 0:
            return
        self.lo = np.minimum(self.lo, p.min(axis=0))
        self.hi = np.maximum(self.hi, p.max(axis=0))
        self.vlow = np.minimum(self.vlow, v.min(axis=0))
        self.vhigh = np.maximum(self.vhigh, v.max(axis=0))

    def set_channel(self, f, x):
        """Store a flat (Fortran order) solution vector as channel ``f``."""
        self.values[..., f] = np.reshape(x, self.res, order="F")

    def channel(self, f):
        """Channel ``f`` as a flat (Fortran order) vector."""
        return np.ravel(self.values[..., f], order="F")

    def interp(self, x):
        """
        Evaluate the grid at points ``x`` by multilinear interpolation.

        Parameters
        ----------
        x : array_like, shape (n, D) or (D,)
            Evaluation points. Points outside the domain are extrapolated
            linearly from the border cells. A 1-D grid also takes a flat
            array of n points.

        Returns
        -------
        ndarray, shape (n, fdi) or (fdi,)
        """
        x = np.asarray(x, dtype=float)
        if x.ndim == 1 and self.di == 1:
            x = x[:, None]
        single = x.ndim == 1
        x = np.atleast_2d(x)
        if x.shape[1] != self.di:
            raise ValueError(f"x should have {self.di} columns")
        base, w = cell_weights((x - self.lo) / self.width, self.res)
        flat = np.reshape(self.values, (self.gno, self.fdi), order="F")
        out = np.zeros((x.shape[0], self.fdi))
        for j, c in enumerate(stencil_for(self.res).corners):
            out += w[:, j, None] * flat[base + c]
        return out[0] if single else out


def grid_is_non_monotonic(grid):
    """
    Default post-fit monotonicity check.

    Returns True if any channel changes direction along any axis, i.e. is
    neither non-decreasing nor non-increasing along every grid line of that
    axis.
    """
    for f in range(grid.fdi):
        vals = grid.values[..., f]
        for e in range(grid.di):
            d = np.diff(vals, axis=e)
            if not (np.all(d >= 0.0) or np.all(d <= 0.0)):
                return True
    return False
