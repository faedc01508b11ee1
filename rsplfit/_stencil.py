"""
Packed symmetric storage for the regularized spline normal equations.

The matrix of a level couples every grid node to a small neighbourhood:
all combinations of +-1 on every axis (the multilinear cube used by the data
term) plus +-2 along a single axis (the second difference used by the
curvature term). Because the matrix is symmetric only the neighbours with a
non-negative linear offset are stored, one row per node and one column per
packed offset, much like the upper band storage ``ab[u - k, j]`` used with
``solveh_banded``.

``SparseStencil`` describes the packing for one grid topology and is shared
by every row and every level with the same resolution. The helpers below
operate on the ``(n, ncols)`` value array that goes with it.
"""
import functools
import itertools

import numpy as np
from scipy import sparse

# Inverse table entry for offsets that are not part of the stencil.
DISALLOWED = -0x7fffffff


class SparseStencil:
    """
    Column packing of a symmetric grid operator.

    Parameters
    ----------
    res : sequence of int
        Grid resolution per axis. Axis 0 varies fastest in the linear node
        index.
    third_order : bool, optional
        Also allow a single axis at +-3. Not needed by the second order
        curvature term, by default False.

    Attributes
    ----------
    res : tuple of int
        Resolution per axis.
    strides : ndarray of int, shape (D,)
        Linear index increment per axis (``1, res[0], res[0]*res[1], ...``).
    corners : ndarray of int, shape (2**D,)
        Linear offsets of the corners of a grid cell. Bit ``e`` of the corner
        number selects the upper node along axis ``e``.
    vectors : tuple of tuple of int
        Axis offset vector of every packed column.
    offsets : ndarray of int
        Forward table, packed column -> linear offset. ``offsets[0] == 0`` is
        the diagonal and the table is strictly increasing.
    inverse : ndarray of int
        Inverse table, linear offset -> packed column, ``DISALLOWED`` where the
        offset is not stored.

    Notes
    -----
    Small resolutions can map two axis offset vectors to the same linear
    offset (e.g. ``+2`` on axis 0 and ``(-1, +1)`` when ``res[0] == 3``). Only
    the first vector is kept; the assembly only ever writes node pairs that
    exist on the grid, so both describe the same coupling.
    """

    def __init__(self, res, third_order=False):
        self.res = tuple(int(r) for r in res)
        self.third_order = bool(third_order)
        di = len(self.res)

        strides = np.ones(di, dtype=np.int64)
        for e in range(1, di):
            strides[e] = strides[e - 1] * self.res[e - 1]
        self.strides = strides

        corners = np.zeros(1 << di, dtype=np.int64)
        for j in range(1 << di):
            for e in range(di):
                if j & (1 << e):
                    corners[j] += strides[e]
        self.corners = corners

        span = 3 if self.third_order else 2
        found = {}
        for vec in itertools.product(range(-span, span + 1), repeat=di):
            mags = [abs(v) for v in vec]
            nz = mags.count(0)
            far = mags.count(2) + mags.count(3)
            if far == 0:
                ok = True
            elif far == 1 and nz == di - 1:
                ok = True
            else:
                ok = False
            if not ok:
                continue
            off = int(np.dot(vec, strides))
            if off >= 0 and off not in found:
                found[off] = tuple(vec)

        order = sorted(found)
        self.offsets = np.array(order, dtype=np.int64)
        self.vectors = tuple(found[o] for o in order)
        inverse = np.full(order[-1] + 1, DISALLOWED, dtype=np.int64)
        inverse[self.offsets] = np.arange(len(order))
        self.inverse = inverse

        for arr in (self.strides, self.corners, self.offsets, self.inverse):
            arr.flags.writeable = False

    @property
    def ncols(self):
        return len(self.offsets)

    @property
    def gno(self):
        return int(np.prod(self.res))

    def column(self, offset):
        """Packed column of a non-negative linear ``offset``."""
        if offset < 0 or offset >= len(self.inverse) \
                or self.inverse[offset] == DISALLOWED:
            raise KeyError(f"offset {offset} is not part of the stencil")
        return int(self.inverse[offset])

    def __eq__(self, other):
        if not isinstance(other, SparseStencil):
            return NotImplemented
        return (self.res, self.third_order) == (other.res, other.third_order)

    def __hash__(self):
        return hash((self.res, self.third_order))

    def __repr__(self):
        return (f"SparseStencil(res={self.res}, ncols={self.ncols}, "
                f"third_order={self.third_order})")


@functools.lru_cache(maxsize=32)
def stencil_for(res, third_order=False):
    """Shared ``SparseStencil`` for a resolution tuple."""
    return SparseStencil(tuple(res), third_order=third_order)


def alloc_packed(stencil):
    """Zeroed ``(gno, ncols)`` value array for ``stencil``."""
    return np.zeros((stencil.gno, stencil.ncols), dtype=float)


def packed_matvec(A, offsets, x, out=None):
    """
    Compute ``A @ x`` for a matrix held in packed symmetric storage.

    Column ``k`` of row ``i`` holds the coupling between nodes ``i`` and
    ``i + offsets[k]``; its mirror image below the diagonal is applied from
    the same entry.
    """
    n = x.shape[0]
    if out is None:
        out = np.empty(n, dtype=float)
    np.multiply(A[:, 0], x, out=out)
    for k in range(1, len(offsets)):
        o = int(offsets[k])
        if o >= n:
            break
        col = A[:n - o, k]
        out[:n - o] += col * x[o:]
        out[o:] += col * x[:n - o]
    return out


def packed_rows_matvec(A, offsets, x, rows):
    """
    Compute ``(A @ x)[rows]`` without forming the full product.

    Parameters
    ----------
    A : ndarray, shape (n, ncols)
        Packed symmetric values.
    offsets : ndarray of int
        Forward table of the stencil.
    x : ndarray, shape (n,)
        Vector to multiply.
    rows : ndarray of int
        Row indices to evaluate.
    """
    n = x.shape[0]
    out = A[rows, 0] * x[rows]
    for k in range(1, len(offsets)):
        o = int(offsets[k])
        right = rows + o
        ok = right < n
        if np.any(ok):
            r = rows[ok]
            out[ok] += A[r, k] * x[right[ok]]
        left = rows - o
        ok = left >= 0
        if np.any(ok):
            l = left[ok]
            out[ok] += A[l, k] * x[l]
    return out


def packed_to_csr(A, offsets):
    """Expand packed symmetric storage into a full ``scipy.sparse`` matrix."""
    n = A.shape[0]
    diags, ks = [], []
    for k in range(1, len(offsets)):
        o = int(offsets[k])
        if o >= n:
            break
        diags.append(A[:n - o, k])
        ks.append(o)
    upper = sparse.diags([A[:, 0]] + diags, [0] + ks, shape=(n, n),
                         format="csr")
    strict = sparse.triu(upper, k=1)
    return (upper + strict.T).tocsr()
