#!/usr/bin/env python3
"""
Regularized spline fit of scattered data on a regular grid
==========================================================

1) Overview
-----------
This module fits a smooth D-dimensional, F-channel function to irregularly
scattered, noisy samples `(x[n], y[n])` by solving for the values of a
regular grid. The grid values minimize a discretized energy

    E = sum_e cw_e ||L_e g||^2                              (curvature)
      + sum_n w_n (y_n - interp(g, x_n))^2                  (data)
      + wdfw sum_i (g_i - dfunc(node_i))^2                  (weak default)

where `L_e` is the second difference along axis `e` and `interp` is
multilinear interpolation in the grid cell containing `x_n`. The fitted grid
is returned inside a `RegularSplinePython` that can be evaluated like any
other interpolant.

**Key conventions**
- **Smoothing is relative.** The curvature weight of every axis is
  `smooth * opt_smooth(D, n, avgdev) * (R - 1)**4 / prod(res - 2)`, so the
  same `smooth` behaves the same way at any resolution. `smooth == 1` is
  the measured optimum for data with the given average deviation.
- `smooth < 0` is **raw mode**: `-smooth` replaces the table factor. It is
  meant for calibrating the table itself.
- The curvature weight of a channel is scaled by its value range
  `vhigh - vlow`, so wide ranged channels are not under-smoothed.

2) Sparse normal equations
--------------------------
Minimizing (E) gives a symmetric positive (semi-)definite system `A g = b`.
Every grid node only couples to its `3**D` cube neighbours (data term) and
to the nodes two steps away along one axis (curvature term), so `A` is kept
in **packed symmetric storage**: one row per node, one column per stencil
offset with a non-negative linear index step (`_stencil.SparseStencil`).
The norm of `b` is accumulated while it is assembled.

3) Solver
---------
- Grids whose largest axis has at most 4 nodes are solved by one
  Jacobi preconditioned conjugate gradient over all unknowns.
- Larger grids use an outer loop (at most 500 iterations) of optional
  line-CG sweeps (each grid line solved with the rest of the grid frozen,
  lines visited in red/black order) followed by batches of Gauss-Seidel
  sweeps. The batch size is extrapolated from the observed convergence rate
  and clamped to [1, 16].
- Iteration stops at `||b - A g|| / ||b|| < tol` or when a sweep improves
  the residual by less than 0.2%. Running out of iterations is not an error.

4) Multigrid continuation
-------------------------
Gauss-Seidel removes high frequency error quickly and low frequency error
very slowly, so the grid is solved on a **ladder of resolutions** starting
at 4 and growing by about 2 per rung up to the requested resolution. Each
rung is seeded with the multilinear resample of the previous rung's
solution; the first with the data average.

Optional extras:
- **Two-pass smoothing**: fit once with very light smoothing, measure its
  per axis curvature, Gaussian filter it, then refit asking the curvature
  to follow the filtered field instead of zero.
- **Extra-fit**: after a pass, move every data point's target by its
  residual and refit, cancelling the bias smoothing puts on peaks.
- **Weak default function**: a fallback value at every node with a small
  weight, to hold the fit where there is no data.
- **Non-uniform axes** (`ipos`): the second difference is weighted by the
  local ratio of sample spacings.

5) Execution flow (who calls whom)
----------------------------------
1. **`rspl_python`** builds a `RegularSplinePython` and calls its `fit`.
2. **`RegularSplinePython.fit`**
   - `_validate_input` checks shapes, weights and `ipos` tables, raising
     `ValueError` before anything is allocated,
   - expands the grid bounds and value range to the data,
   - runs `_multigrid.MultigridFitter` over all channels,
   - returns the advisory non-monotonic flag from `is_mono`.
3. **`MultigridFitter.fit_channel`** runs extra-fit passes, two-pass
   sub-passes and the resolution ladder: build (`MultigridLevel.setup_solve`)
   -> warm start -> solve (`_solver.solve_level`) -> compensate
   (`_ccv`) -> transfer into the grid.
"""
import numpy as np

from ._grid import RegularGrid, ScatteredData, grid_is_non_monotonic
from ._level import EDGE_WEIGHTS
from ._multigrid import TWOPASS_LSM, MultigridFitter
from ._solver import TOL

DEFAVGDEV = 0.005       # Default average deviation, 0.5% of the value range
MIN_IPOS_GAP = 1e-12


def _validate_input(x, y, w, res, ipos):
    """
    Validate and normalize basic inputs.

    Parameters
    ----------
    x : array_like, shape (n, D) or (n,)
        Sample positions.
    y : array_like, shape (n, F) or (n,)
        Sample values.
    w : array_like or None
        Weights, shape (n,) or (n, F).
    res : sequence of int
        Grid resolution per axis.
    ipos : sequence or None
        Optional per axis sample position tables.

    Returns
    -------
    x, y, w, res, ipos
        Normalized inputs; ``x`` and ``y`` are 2-D, ``w`` is None or 2-D.

    Raises
    ------
    ValueError
        If shapes are inconsistent, values are not finite, weights are
        negative, a resolution is below 2, or an ``ipos`` table has the
        wrong length, is not strictly monotonic, or has two entries closer
        than 1e-12.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.ndim == 1:
        x = x[:, None]
    if y.ndim == 1:
        y = y[:, None]
    if x.ndim != 2 or y.ndim != 2:
        raise ValueError("x and y should be 1-D or 2-D arrays")
    if x.shape[0] != y.shape[0]:
        raise ValueError("x and y should have a same length")
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise ValueError("x and y should be finite")

    res = tuple(int(r) for r in np.atleast_1d(res))
    if len(res) == 1 and x.shape[1] > 1:
        res = res * x.shape[1]
    if len(res) != x.shape[1]:
        raise ValueError("res should have one entry per input dimension")
    if any(r < 2 for r in res):
        raise ValueError("res should be res >= 2 on every axis")

    if w is not None:
        w = np.asarray(w, dtype=float)
        if w.ndim == 1:
            w = np.repeat(w[:, None], y.shape[1], axis=1)
        if w.shape != y.shape:
            raise ValueError("x, y, and w should have a same length")
        if not np.all(w >= 0.0):
            raise ValueError("w should be positive")

    if ipos is not None:
        if len(ipos) != len(res):
            raise ValueError("ipos should have one entry per input dimension")
        tabs = []
        for e, tab in enumerate(ipos):
            if tab is None:
                tabs.append(None)
                continue
            tab = np.asarray(tab, dtype=float)
            if tab.shape != (res[e],):
                raise ValueError(f"ipos[{e}] should have res[{e}] entries")
            gaps = np.diff(tab)
            if np.any(np.abs(gaps) < MIN_IPOS_GAP):
                raise ValueError(f"ipos[{e}] has adjacent entries closer "
                                 f"than {MIN_IPOS_GAP}")
            if not (np.all(gaps > 0.0) or np.all(gaps < 0.0)):
                raise ValueError(f"ipos[{e}] should be strictly monotonic")
            tabs.append(tab)
        ipos = tabs

    return x, y, w, res, ipos


class RegularSplinePython:
    """
    Regular grid fitted to scattered data.

    Parameters
    ----------
    res : sequence of int
        Grid resolution per axis.
    fdi : int, optional
        Number of output channels, by default 1.

    Attributes
    ----------
    grid : RegularGrid or None
        Fitted grid, None until ``fit`` has run.
    residuals : ndarray or None
        Relative residual of the last solve of every channel.
    non_monotonic : bool
        Advisory flag returned by the last fit.
    """

    def __init__(self, res, fdi=1):
        self.res = tuple(int(r) for r in np.atleast_1d(res))
        self.fdi = int(fdi)
        self.grid = None
        self.residuals = None
        self.non_monotonic = False

    def fit(self, x, y, w=None, *, bbox=None, vrange=None, smooth=1.0,
            avgdev=None, ipos=None, weak=1.0, weak_function=None,
            two_pass=False, extra_fit=0, symdom=False, tol=TOL,
            line_sweeps=0, edge_weights=EDGE_WEIGHTS,
            two_pass_lsm=TWOPASS_LSM, overrelax=False, is_mono=None,
            verbose=False):
        """
        Fit the grid to scattered samples.

        See ``rspl_python`` for the parameters.

        Returns
        -------
        bool
            True if ``is_mono`` reports the fitted grid as non-monotonic.
            This is advisory, the fit itself has succeeded.
        """
        x, y, w, res, ipos = _validate_input(x, y, w, self.res, ipos)
        self.res = res
        if y.shape[1] != self.fdi:
            raise ValueError(f"y should have {self.fdi} columns")
        di = x.shape[1]

        lo = hi = None
        if bbox is not None:
            lo, hi = (np.broadcast_to(np.asarray(b, float), (di,))
                      for b in bbox)
        grid = RegularGrid(res, self.fdi, lo=lo, hi=hi, ipos=ipos)
        if vrange is not None:
            grid.vlow = np.broadcast_to(np.asarray(vrange[0], float),
                                        (self.fdi,)).copy()
            grid.vhigh = np.broadcast_to(np.asarray(vrange[1], float),
                                         (self.fdi,)).copy()
        grid.expand_to(x, y)
        if np.any(grid.hi <= grid.lo):
            raise ValueError("bbox should have lo < hi on every axis")
        self.grid = grid

        if avgdev is None:
            avgdev = np.full(self.fdi, DEFAVGDEV)
        avgdev = np.broadcast_to(np.asarray(avgdev, float), (self.fdi,))

        if x.shape[0] == 0:
            if verbose:
                print("[rspl] no data points, nothing to fit")
            self.residuals = np.full(self.fdi, np.nan)
            self.non_monotonic = False
            return False

        data = ScatteredData(x, y, w)
        fitter = MultigridFitter(
            grid, data, smooth, avgdev, weak=weak,
            weak_function=weak_function, two_pass=two_pass,
            extra_fit=extra_fit, symdom=symdom, tol=tol,
            line_sweeps=line_sweeps, edge_weights=edge_weights,
            two_pass_lsm=two_pass_lsm, overrelax=overrelax, verbose=verbose)
        if verbose:
            print(f"[rspl] fitting {data.no} points, di={di} "
                  f"fdi={self.fdi} res={res} ladder={fitter.ladder}")
        self.residuals = fitter.run()

        if is_mono is None:
            is_mono = grid_is_non_monotonic
        self.non_monotonic = bool(is_mono(grid))
        return self.non_monotonic

    def __call__(self, x):
        """Evaluate the fitted grid at ``x`` (see ``RegularGrid.interp``)."""
        if self.grid is None:
            raise ValueError("the spline has not been fitted")
        return self.grid.interp(x)

    @property
    def values(self):
        return None if self.grid is None else self.grid.values


def rspl_python(
    x, y, w=None, *,
    res, bbox=None, vrange=None,
    smooth=1.0, avgdev=None,
    ipos=None, weak=1.0, weak_function=None,
    two_pass=False, extra_fit=0, symdom=False,
    tol=TOL, line_sweeps=0,
    edge_weights=EDGE_WEIGHTS, two_pass_lsm=TWOPASS_LSM,
    overrelax=False, is_mono=None, verbose=False
) -> RegularSplinePython:
    """
    Public entry point. Fit a regular grid to scattered data.

    Parameters
    ----------
    x : array_like, shape (n, D) or (n,)
        Sample positions.
    y : array_like, shape (n, F) or (n,)
        Sample values, one column per output channel.
    w : array_like or None
        Nonnegative weights, per point (n,) or per point and channel (n, F).
        If None all ones are used.
    res : int or sequence of int
        Grid resolution per axis, each >= 2. A single value is used for
        every axis.
    bbox : (lo, hi) or None
        Grid bounds. Default [0, 1] per axis. Always expanded to contain
        every sample; the expanded bounds must have lo < hi on every axis.
    vrange : (vlow, vhigh) or None
        Value range per channel. Default [0, 1]. Always expanded to contain
        every value.
    smooth : float
        Smoothing factor relative to the optimum. Negative selects raw mode.
    avgdev : float or array_like or None
        Expected average deviation of the values per channel, as a fraction
        of the value range. Default 0.005.
    ipos : sequence of (array or None) or None
        Per axis sample positions of the grid nodes, for curvature weighting
        of non-uniformly spaced axes. Each must be strictly monotonic with
        adjacent entries at least 1e-12 apart.
    weak : float
        Weight of ``weak_function``.
    weak_function : callable or None
        ``weak_function(pos) -> array of F`` fallback value at a grid node.
    two_pass : bool
        Enable two-pass smoothing with curvature compensation.
    extra_fit : int
        Number of extra-fit bias correction passes.
    symdom : bool
        Scale each axis's curvature by its own resolution rather than the
        geometric mean resolution.
    tol : float
        Target relative residual of every solve.
    line_sweeps : int
        Number of outer iterations using line-CG sweeps before relaxation.
    edge_weights : tuple of float
        Stiffening of the outer and next to outer nodes on the final rung.
    two_pass_lsm : tuple of float
        ``log10`` smoothing factors of the two two-pass sub-passes.
    overrelax : bool
        Adaptive over-relaxation of the Gauss-Seidel sweeps.
    is_mono : callable or None
        ``is_mono(grid) -> bool`` post-fit monotonicity check. Default flags
        any channel that changes direction along an axis.
    verbose : bool
        If True print progress logs.

    Returns
    -------
    spline : RegularSplinePython
        Fitted spline; ``spline.non_monotonic`` holds the advisory flag.

    Notes
    -----
    This function validates inputs, sets defaults, and calls the multigrid
    solver.
    """
    y_arr = np.asarray(y)
    fdi = 1 if y_arr.ndim == 1 else y_arr.shape[1]
    spline = RegularSplinePython(res, fdi)
    spline.fit(x, y, w, bbox=bbox, vrange=vrange, smooth=smooth,
               avgdev=avgdev, ipos=ipos, weak=weak,
               weak_function=weak_function, two_pass=two_pass,
               extra_fit=extra_fit, symdom=symdom, tol=tol,
               line_sweeps=line_sweeps, edge_weights=edge_weights,
               two_pass_lsm=two_pass_lsm, overrelax=overrelax,
               is_mono=is_mono, verbose=verbose)
    return spline
