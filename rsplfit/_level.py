"""
One rung of the multigrid ladder and its normal equations.

A ``MultigridLevel`` is built for one (resolution, channel) combination. It
precomputes where every data point falls on its grid and the per-axis
curvature weights, then ``setup_solve`` assembles ``A x = b`` in packed
symmetric storage (see ``_stencil``) such that ``x`` minimizes

    sum_e cw_e * sum_c (w0 x[c-1] - (w0 + w1) x[c] + w1 x[c+1] - ccv[c])^2
    + sum_p k_p (cv_p - sum_j w_pj x[base_p + corner_j])^2
    + wdfw * sum_n (x_n - dfunc(n))^2

with all three terms written as the gradient of a squared residual, hence
the factors of two below.
"""
import numpy as np

from ._grid import cell_weights, node_coords, resample_multilinear
from ._smoothing import opt_smooth
from ._stencil import alloc_packed, stencil_for

WEAKW = 0.1             # Weak default function scale
EDGE_WEIGHTS = (2.0, 1.15)  # Stiffening of the outer and next to outer nodes
MIN_NORMB = 1e-4


def _add_rhs(b, rows, vals):
    """
    Add ``vals`` into ``b[rows]`` and return the growth of ``sum(b**2)``.

    Uses ``(b + d)**2 - b**2 = (2 b + d) d`` so the norm of b never needs a
    separate pass. ``rows`` may contain repeats.
    """
    delta = np.bincount(rows, weights=vals, minlength=b.shape[0])
    inc = float(np.dot(2.0 * b + delta, delta))
    b += delta
    return inc


def _add_ccv(b, rows, vals):
    """Add curvature compensation into ``b``; it does not count in ``normb``."""
    b += np.bincount(rows, weights=vals, minlength=b.shape[0])


def _side_stiffening(g, res, k0w, k1w):
    return np.where((g == 0) | (g == res - 1), k0w,
                    np.where((g == 1) | (g == res - 2), k1w, 1.0))


def _centre_stiffening(c, res, k0w, k1w):
    return np.where((c == 1) | (c == res - 2), k0w,
                    np.where((c == 2) | (c == res - 3), k1w, 1.0))


class MultigridLevel:
    """
    Geometry, data weights and linear system of one resolution rung.

    Parameters
    ----------
    grid : RegularGrid
        Target grid; supplies bounds, full resolution and ``ipos`` tables.
    data : ScatteredData
        Points to fit.
    res : tuple of int
        Resolution of this rung.
    f : int
        Output channel being fitted.
    smooth : float
        Smoothing factor. Negative values select raw mode, where ``-smooth``
        is used instead of the optimal smoothing table.
    avgdev : float
        Expected average deviation of channel ``f``.
    weak : float, optional
        Weak default function weight.
    lsm : float or None, optional
        Fixed ``log10`` smoothing factor, used by two-pass smoothing.
    symdom : bool, optional
        Scale curvature by each axis's own resolution instead of the
        geometric mean resolution.

    Raises
    ------
    ValueError
        If a data point lies outside the grid bounds.
    """

    def __init__(self, grid, data, res, f, smooth, avgdev, weak=1.0,
                 lsm=None, symdom=False):
        self.res = tuple(int(r) for r in res)
        self.f = f
        self.di = len(self.res)
        self.symdom = symdom
        self.stencil = stencil_for(self.res)
        self.gno = self.stencil.gno

        res_arr = np.asarray(self.res)
        self.bres = int(res_arr.max())
        self.brix = int(res_arr.argmax())
        self.mres = float(np.prod(res_arr.astype(float)) ** (1.0 / self.di))
        self.lo = grid.lo.copy()
        self.hi = grid.hi.copy()
        self.width = (self.hi - self.lo) / (res_arr - 1.0)

        self.ipos = []
        for e in range(self.di):
            tab = grid.ipos[e]
            if tab is None:
                self.ipos.append(None)
            else:
                src = np.arange(len(tab), dtype=float)
                at = np.linspace(0.0, len(tab) - 1.0, self.res[e])
                self.ipos.append(np.interp(at, src, tab))
        self._axis_weights = [self._compute_axis_weights(e)
                              for e in range(self.di)]

        t = (data.p - self.lo) / self.width
        eps = 1e-9
        if np.any(t < -eps) or np.any(t > res_arr - 1.0 + eps):
            raise ValueError("data point outside grid bounds")
        self.base, self.w = cell_weights(t, self.res)

        nigc = max(int(np.prod(res_arr - 2)), 1)
        if lsm is None and smooth >= 0.0:
            opt = opt_smooth(self.di, data.no, avgdev)
        cw = np.empty(self.di)
        for e in range(self.di):
            rs = self.res[e] if symdom else self.mres
            rsm = (rs - 1.0) ** 4 / nigc
            if lsm is not None:
                cw[e] = 10.0 ** lsm * rsm
            elif smooth >= 0.0:
                cw[e] = smooth * opt * rsm
            else:
                cw[e] = -smooth * rsm
        self.cw = cw
        self.wdfw = weak * WEAKW / (self.gno * self.di)

        self.A = None
        self.b = None
        self.normb = None
        self.x = None
        self.ccv = None

    def _compute_axis_weights(self, e):
        """Second difference weights ``(w0, w1)`` along axis ``e``."""
        r = self.res[e]
        w0, w1 = np.ones(r), np.ones(r)
        pos = self.ipos[e]
        if pos is not None and r >= 3:
            d0 = np.abs(pos[1:-1] - pos[:-2])
            d1 = np.abs(pos[2:] - pos[1:-1])
            t = np.sqrt(d0 * d1)
            w0[1:-1] = t / d0
            w1[1:-1] = t / d1
        return w0, w1

    def axis_weights(self, e):
        return self._axis_weights[e]

    def node_positions(self):
        """Domain coordinates of every node, shape (gno, D)."""
        return self.lo + node_coords(self.res) * self.width

    def setup_solve(self, data, vwidth, final=True, edge_weights=EDGE_WEIGHTS,
                    weak_values=None):
        """
        Assemble ``A`` and ``b`` for this level's channel.

        Parameters
        ----------
        data : ScatteredData
            Points; their corrected targets ``cv[:, f]`` are fitted.
        vwidth : float
            Value range of the channel. Curvature strength is proportional to
            it so the balance with the data term is scale free.
        final : bool, optional
            True on the last rung. Edge stiffening is only applied there.
        edge_weights : tuple of float, optional
            ``(k0w, k1w)`` stiffening of curvature centred on, or evaluated
            across, the outermost and next to outermost nodes.
        weak_values : ndarray, shape (gno,), optional
            Weak default function value of every node for this channel.

        Notes
        -----
        Only the diagonal and the columns to its right are written. When a
        curvature compensation field ``self.ccv`` is present its
        contributions are added to ``b`` only and are left out of ``normb``.
        """
        st = self.stencil
        A = alloc_packed(st)
        b = np.zeros(self.gno)
        nbsum = 0.0
        k0w, k1w = edge_weights if final else (1.0, 1.0)

        G = node_coords(self.res)
        sides = [_side_stiffening(G[:, e], self.res[e], k0w, k1w)
                 for e in range(self.di)]
        ccv = self.ccv

        for e in range(self.di):
            r = self.res[e]
            if r < 3:
                continue
            ci = int(st.strides[e])
            g = G[:, e]
            xx = np.ones(self.gno)
            for k in range(self.di):
                if k != e:
                    xx *= sides[k]
            base = 2.0 * self.cw[e] * vwidth
            w0, w1 = self.axis_weights(e)
            c1 = st.column(ci)

            # Curvature centred one node below
            rows = np.nonzero(g >= 2)[0]
            c = g[rows] - 1
            kw = base * xx[rows] * _centre_stiffening(c, r, k0w, k1w)
            A[rows, 0] += kw * w1[c] ** 2
            if ccv is not None:
                _add_ccv(b, rows, kw * w1[c] * ccv[rows - ci, e])

            # Curvature centred on this node
            rows = np.nonzero((g >= 1) & (g <= r - 2))[0]
            c = g[rows]
            kw = base * xx[rows] * _centre_stiffening(c, r, k0w, k1w)
            s = w0[c] + w1[c]
            A[rows, 0] += kw * s * s
            A[rows, c1] -= kw * s * w1[c]
            if ccv is not None:
                _add_ccv(b, rows, -kw * s * ccv[rows, e])

            # Curvature centred one node above
            rows = np.nonzero(g <= r - 3)[0]
            c = g[rows] + 1
            kw = base * xx[rows] * _centre_stiffening(c, r, k0w, k1w)
            s = w0[c] + w1[c]
            A[rows, 0] += kw * w0[c] ** 2
            A[rows, c1] -= kw * w0[c] * s
            A[rows, st.column(2 * ci)] += kw * w0[c] * w1[c]
            if ccv is not None:
                _add_ccv(b, rows, kw * w0[c] * ccv[rows + ci, e])

        if weak_values is not None and self.wdfw > 0.0:
            d = 2.0 * self.wdfw
            A[:, 0] += d
            nbsum += _add_rhs(b, np.arange(self.gno), d * weak_values)

        kf = data.k[:, self.f]
        cv = data.cv[:, self.f]
        corners = st.corners
        for j in range(len(corners)):
            aj = self.base + corners[j]
            d = 2.0 * kf * self.w[:, j]
            nbsum += _add_rhs(b, aj, d * cv)
            np.add.at(A[:, 0], aj, d * self.w[:, j])
            for k in range(j + 1, len(corners)):
                col = st.column(int(corners[k] - corners[j]))
                np.add.at(A[:, col], aj, d * self.w[:, k])

        self.A = A
        self.b = b
        self.normb = max(np.sqrt(max(nbsum, 0.0)), MIN_NORMB)

    def drop_system(self):
        """Release the matrix and right hand side once solved."""
        self.A = None
        self.b = None

    def seed_uniform(self, value):
        self.x = np.full(self.gno, float(value))

    def seed_from(self, prev):
        """Warm start from a coarser level's solution."""
        self.x = resample_multilinear(prev.x, prev.res, self.res)

    def interp_points(self, x=None):
        """Value of the fitted grid at every data point."""
        if x is None:
            x = self.x
        out = np.zeros(self.base.shape[0])
        for j, c in enumerate(self.stencil.corners):
            out += self.w[:, j] * x[self.base + c]
        return out
