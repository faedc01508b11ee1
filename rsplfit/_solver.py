"""
Iterative solution of one level's packed symmetric system.

Two building blocks are combined:

* ``cg_line`` - Jacobi preconditioned conjugate gradient restricted to a set
  of free unknowns (a grid line, or every unknown) with the rest held fixed.
* ``Relaxation`` - weighted Gauss-Seidel sweeps over all unknowns in natural
  order, done as a sparse triangular solve.

``solve_level`` picks between them: tiny grids are solved in one CG call,
larger ones by an outer loop of optional line-CG sweeps followed by batches
of relaxation sweeps, until the relative residual drops below ``tol`` or
stops improving.
"""
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve_triangular

from ._stencil import packed_matvec, packed_rows_matvec, packed_to_csr

TOL = 1e-6              # Target relative residual
TOL_IMP = 0.998         # Minimum worthwhile per sweep improvement
MAX_OUTER = 500         # Outer iteration cap
MAXNI = 16              # Maximum relaxation sweeps per residual check
LINE_CG_CUTOFF = 0.8    # Give up on line CG above this improvement ratio
DIRECT_MAX_RES = 4      # Solve directly up to this largest axis resolution


class CGWorkspace:
    """
    Scratch vectors for ``cg_line``, grown on demand and reused across
    lines, levels and channels.
    """

    def __init__(self):
        self._size = 0
        self._bufs = {}

    def get(self, n):
        if n > self._size:
            self._size = n
            self._bufs = {name: np.empty(n) for name in
                          ("r", "z", "xx", "q", "nul")}
        return tuple(self._bufs[name][:n] for name in
                     ("r", "z", "xx", "q", "nul"))


def soln_err(A, offsets, b, x, normb):
    """Relative residual ``||b - A x|| / normb``."""
    r = b - packed_matvec(A, offsets, x)
    return float(np.linalg.norm(r)) / normb


def cg_line(A, offsets, b, x, rows, max_it, tol, ws=None):
    """
    Solve for ``x[rows]`` with every other unknown held fixed.

    Parameters
    ----------
    A : ndarray, shape (n, ncols)
        Packed symmetric matrix.
    offsets : ndarray of int
        Stencil forward table.
    b : ndarray, shape (n,)
        Right hand side.
    x : ndarray, shape (n,)
        Current solution, updated in place.
    rows : ndarray of int
        Free unknowns.
    max_it : int
        Iteration cap.
    tol : float
        Target residual relative to ``||b[rows]||``.
    ws : CGWorkspace, optional
        Scratch buffers.

    Returns
    -------
    float
        Final relative residual of the line.

    Notes
    -----
    The search direction is stored in ``x[rows]`` so the packed product can
    be reused. With the free unknowns zeroed, ``A x`` restricted to ``rows``
    is the fixed unknowns' contribution ("null response"); subtracting it
    from ``A p`` leaves the restricted operator applied to ``p``.
    """
    if ws is None:
        ws = CGWorkspace()
    n = len(rows)
    r, z, xx, q, nul = ws.get(n)

    normb = float(np.linalg.norm(b[rows]))
    if normb == 0.0:
        normb = 1.0
    r[:] = b[rows] - packed_rows_matvec(A, offsets, x, rows)
    xx[:] = x[rows]
    x[rows] = 0.0
    nul[:] = packed_rows_matvec(A, offsets, x, rows)
    diag = A[rows, 0]
    nzd = diag != 0.0

    resid = float(np.linalg.norm(r)) / normb
    p = None
    rho_1 = 1.0
    for it in range(max_it):
        if resid <= tol:
            break
        z[:] = r
        np.divide(r, diag, out=z, where=nzd)
        rho = float(np.dot(r, z))
        if p is None:
            p = z.copy()
        else:
            p = z + (rho / rho_1) * p
        x[rows] = p
        q[:] = packed_rows_matvec(A, offsets, x, rows) - nul
        den = float(np.dot(p, q))
        alpha = rho / den if den != 0.0 else 0.5
        xx += alpha * p
        r -= alpha * q
        rho_1 = rho
        resid = float(np.linalg.norm(r)) / normb
    x[rows] = xx
    return resid


class Relaxation:
    """
    Weighted Gauss-Seidel in natural order.

    One sweep performs, for ``i = 0 .. n-1`` and using the latest values,
    ``x[i] += ovsh * ((b[i] - sum_{j != i} a_ij x[j]) / a_ii - x[i])``,
    written as ``(D + ovsh L) x_new = ovsh b - (ovsh U + (ovsh - 1) D) x``.
    Unknowns with a zero diagonal are left unchanged.
    """

    def __init__(self, A, offsets, b):
        full = packed_to_csr(A, offsets)
        self.diag = full.diagonal()
        self.lower = sparse.tril(full, k=-1, format="csr")
        self.upper = sparse.triu(full, k=1, format="csr")
        self.b = b
        self._omega = None

    def _factor(self, omega):
        if omega != self._omega:
            zero = self.diag == 0.0
            d_lo = np.where(zero, 1.0, self.diag)
            d_up = np.where(zero, -1.0, (omega - 1.0) * self.diag)
            self._left = (sparse.diags(d_lo) + omega * self.lower).tocsr()
            self._right = (sparse.diags(d_up) + omega * self.upper).tocsr()
            self._omega = omega

    def sweep(self, x, omega=1.0, nsweeps=1):
        self._factor(omega)
        for _ in range(nsweeps):
            rhs = omega * self.b - self._right @ x
            x[:] = spsolve_triangular(self._left, rhs, lower=True)
        return x


def line_sets(res, strides, e):
    """
    Grid lines along axis ``e`` in red/black order.

    Returns a list of index arrays; lines whose other coordinates sum to an
    even number come first.
    """
    res = tuple(res)
    others = [k for k in range(len(res)) if k != e]
    along = np.arange(res[e]) * int(strides[e])
    if others:
        sub = [res[k] for k in others]
        coords = np.stack(np.unravel_index(np.arange(int(np.prod(sub))),
                                           sub, order="F"), axis=1)
        starts = coords @ np.asarray([strides[k] for k in others])
        parity = coords.sum(axis=1) % 2
    else:
        starts = np.zeros(1, dtype=np.int64)
        parity = np.zeros(1, dtype=np.int64)
    order = np.concatenate([np.nonzero(parity == 0)[0],
                            np.nonzero(parity == 1)[0]])
    return [starts[i] + along for i in order]


def line_sweep(A, offsets, b, x, res, strides, max_it, tol, ws):
    """One line-CG pass along every axis."""
    for e in range(len(res)):
        for rows in line_sets(res, strides, e):
            cg_line(A, offsets, b, x, rows, max_it, tol, ws)


def solve_level(level, tol=TOL, line_sweeps=0, tol_imp=TOL_IMP,
                max_outer=MAX_OUTER, direct_max_res=DIRECT_MAX_RES,
                overrelax=False, ws=None, verbose=False):
    """
    Solve a level's assembled system in place.

    Parameters
    ----------
    level : MultigridLevel
        Level with ``A``, ``b``, ``normb`` assembled and ``x`` seeded.
    tol : float, optional
        Target relative residual.
    line_sweeps : int, optional
        Number of leading outer iterations that use line-CG sweeps.
    tol_imp : float, optional
        Stop once the per sweep improvement ratio lies in ``(tol_imp, 1]``.
    max_outer : int, optional
        Outer iteration cap.
    direct_max_res : int, optional
        Largest axis resolution solved by a single CG call over every
        unknown.
    overrelax : bool, optional
        Raise the relaxation weight when convergence is slow.
    ws : CGWorkspace, optional
        Shared scratch buffers.
    verbose : bool, optional
        Print progress.

    Returns
    -------
    float
        Final relative residual. Running out of iterations is not an error;
        the best solution found is kept.
    """
    A, b, x = level.A, level.b, level.x
    offsets = level.stencil.offsets
    normb = level.normb
    if ws is None:
        ws = CGWorkspace()

    if level.bres <= direct_max_res:
        cg_line(A, offsets, b, x, np.arange(level.gno), 10 * level.gno,
                tol, ws)
        err = soln_err(A, offsets, b, x, normb)
        if verbose:
            print(f"[solve] res={level.res} direct cg err={err:.3e}")
        return err

    err = soln_err(A, offsets, b, x, normb)
    if verbose:
        print(f"[solve] res={level.res} initial err={err:.3e}")
    if err < tol:
        return err

    relax = Relaxation(A, offsets, b)
    use_lines = line_sweeps > 0
    relaxed = False
    ovsh = 1.0
    derr = 1.0
    for it in range(max_outer):
        if use_lines and it < line_sweeps:
            lerr = err
            line_sweep(A, offsets, b, x, level.res, level.stencil.strides,
                       int(level.mres), tol, ws)
            err = soln_err(A, offsets, b, x, normb)
            derr = err / lerr
            if derr > LINE_CG_CUTOFF:
                use_lines = False
            if verbose:
                print(f"[solve] it={it} line cg err={err:.3e} "
                      f"ratio={derr:.4f}")
        else:
            if not relaxed or not 0.0 < derr < 1.0:
                ni = 1
            else:
                ni = int((np.log(tol) - np.log(err)) / np.log(derr))
                ni = min(max(ni, 1), MAXNI)
            relaxed = True
            relax.sweep(x, ovsh, ni)
            lerr = err
            err = soln_err(A, offsets, b, x, normb)
            derr = (err / lerr) ** (1.0 / ni) if lerr > 0.0 else 0.0
            if verbose:
                print(f"[solve] it={it} relax ni={ni} err={err:.3e} "
                      f"ratio={derr:.4f}")
            if overrelax and 0.7 < derr < 1.0:
                ovsh = derr / 0.7
        if err < tol or (tol_imp < derr <= 1.0):
            break
    return err
