"""
Multigrid continuation driver.

Every output channel is fitted independently by the same pipeline of stages:

    for each extra-fit pass:
        for each two-pass sub-pass (just one when two-pass is off):
            for each rung of the resolution ladder:
                build -> warm start -> solve -> release previous rung
            after sub-pass 0: compensate (ccv from the finest rung)
        between passes: correct the data targets
    transfer the finest rung into the grid

The stage functions only communicate through ``_ChannelState`` and the
levels they return, and at most two levels (previous and current) are alive
at any time.
"""
import numpy as np

from ._ccv import compute_ccv, filter_ccv, resample_ccv
from ._level import EDGE_WEIGHTS, MultigridLevel
from ._solver import TOL, CGWorkspace, solve_level

SRES = 4                # Starting resolution of the ladder
GRATIO = 2.0            # Nominal resolution ratio between rungs
TWOPASS_LSM = (-6.0, -4.0)  # log10 smoothing of the two sub-passes
TWOPASS_FSTDEV = 0.05   # ccv filter width per unit of smoothing


def resolution_ladder(res, start=SRES, ratio=GRATIO):
    """
    Resolutions solved in turn, coarsest first.

    Parameters
    ----------
    res : sequence of int
        Final resolution per axis.
    start : int, optional
        Resolution of the first rung.
    ratio : float, optional
        Largest resolution ratio between consecutive rungs. It is reduced so
        that the last rung lands exactly on ``max(res)``.

    Returns
    -------
    list of tuple of int
        At least two rungs; the last one equals ``res``. An axis switches to
        its final resolution as soon as the nominal rung resolution comes
        within one of it.
    """
    res = tuple(int(r) for r in res)
    bres = max(res)
    if bres / start <= ratio:
        steps = 1
        ratio = bres / start
    else:
        steps = int(np.ceil(np.log(bres / start) / np.log(ratio)))
        ratio = np.exp(np.log(bres / start) / steps)

    rungs = []
    r = float(start)
    for _ in range(steps + 1):
        ires = int(r + 0.5)
        rungs.append(tuple(re if ires + 1 >= re else ires for re in res))
        r *= ratio
    assert rungs[-1] == res, f"ladder ends at {rungs[-1]}, not {res}"
    return rungs


class _ChannelState:
    """Mutable record carried through the stages for one channel."""

    def __init__(self, f, avgdev, seed):
        self.f = f
        self.avgdev = avgdev
        self.seed = seed
        self.sub_pass = None
        self.ccv = None
        self.error = None


class MultigridFitter:
    """
    Fit every channel of a grid to scattered data.

    Parameters
    ----------
    grid : RegularGrid
        Output grid, bounds and value range already expanded to the data.
    data : ScatteredData
        Samples to fit.
    smooth : float
        Smoothing factor (negative for raw mode).
    avgdev : ndarray, shape (F,)
        Expected average deviation per channel.
    weak : float
        Weak default function weight.
    weak_function : callable or None
        ``weak_function(pos) -> (F,)`` fallback values.
    two_pass : bool
        Enable two-pass smoothing with curvature compensation.
    extra_fit : int
        Number of extra-fit bias correction passes.
    symdom : bool
        Symmetric domain curvature scaling.
    tol : float
        Target relative residual of every solve.
    line_sweeps : int
        Line-CG outer iterations before relaxation.
    edge_weights : tuple of float
        Edge stiffening of the final rung.
    two_pass_lsm : tuple of float
        ``log10`` smoothing of the two sub-passes.
    overrelax : bool
        Adaptive over-relaxation in the Gauss-Seidel sweeps.
    verbose : bool
        Print progress.
    """

    def __init__(self, grid, data, smooth, avgdev, weak=1.0,
                 weak_function=None, two_pass=False, extra_fit=0,
                 symdom=False, tol=TOL, line_sweeps=0,
                 edge_weights=EDGE_WEIGHTS, two_pass_lsm=TWOPASS_LSM,
                 overrelax=False, verbose=False):
        self.grid = grid
        self.data = data
        self.smooth = smooth
        self.avgdev = np.asarray(avgdev, dtype=float)
        self.weak = weak
        self.weak_function = weak_function
        self.two_pass = two_pass
        self.extra_fit = int(extra_fit)
        self.symdom = symdom
        self.tol = tol
        self.line_sweeps = line_sweeps
        self.edge_weights = edge_weights
        self.two_pass_lsm = two_pass_lsm
        self.overrelax = overrelax
        self.verbose = verbose
        self.ladder = resolution_ladder(grid.res)
        self.ws = CGWorkspace()
        self.errors = np.full(grid.fdi, np.nan)

    # Stages

    def _build(self, state, rung, final):
        lsm = None
        if state.sub_pass is not None:
            lsm = self.two_pass_lsm[state.sub_pass]
        level = MultigridLevel(self.grid, self.data, rung, state.f,
                               self.smooth, state.avgdev, weak=self.weak,
                               lsm=lsm, symdom=self.symdom)
        if state.sub_pass == 1 and state.ccv is not None:
            level.ccv = resample_ccv(state.ccv, self.grid.res, rung,
                                     self.symdom)
        weak_values = None
        if self.weak_function is not None:
            vals = [np.atleast_1d(np.asarray(self.weak_function(p), float))
                    for p in level.node_positions()]
            weak_values = np.array(vals)[:, state.f]
        level.setup_solve(self.data, self.grid.vwidth[state.f], final=final,
                          edge_weights=self.edge_weights,
                          weak_values=weak_values)
        return level

    @staticmethod
    def _warm_start(state, level, prev):
        if prev is None:
            level.seed_uniform(state.seed)
        else:
            level.seed_from(prev)

    def _solve(self, level):
        err = solve_level(level, tol=self.tol, line_sweeps=self.line_sweeps,
                          overrelax=self.overrelax, ws=self.ws,
                          verbose=self.verbose)
        level.drop_system()
        return err

    def _compensate(self, state, level):
        if self.smooth >= 0.0:
            stdev = TWOPASS_FSTDEV * self.smooth
        else:
            stdev = -self.smooth
        state.ccv = filter_ccv(compute_ccv(level), level.res, stdev,
                               self.symdom)

    def _correct_targets(self, state, level):
        f = state.f
        self.data.cv[:, f] += self.data.v[:, f] - level.interp_points()

    def _transfer(self, state, level):
        self.grid.set_channel(state.f, level.x)
        self.errors[state.f] = state.error

    # Drivers

    def _run_ladder(self, state):
        prev = None
        nrungs = len(self.ladder)
        for nn, rung in enumerate(self.ladder):
            level = self._build(state, rung, final=nn == nrungs - 1)
            self._warm_start(state, level, prev)
            state.error = self._solve(level)
            if self.verbose:
                print(f"[multigrid f={state.f}] rung {nn + 1}/{nrungs} "
                      f"res={rung} err={state.error:.3e}")
            prev = level
        return prev

    def fit_channel(self, f):
        """Run the full pipeline for channel ``f`` and store the result."""
        data = self.data
        state = _ChannelState(f, self.avgdev[f], float(np.mean(data.v[:, f])))
        sub_passes = (0, 1) if self.two_pass else (None,)
        level = None
        for zf in range(self.extra_fit + 1):
            if zf > 0:
                self._correct_targets(state, level)
            for sp in sub_passes:
                state.sub_pass = sp
                level = self._run_ladder(state)
                if sp == 0:
                    self._compensate(state, level)
            if self.verbose and self.extra_fit:
                print(f"[extrafit f={f}] pass {zf + 1}/{self.extra_fit + 1} "
                      f"max |v - fit|="
                      f"{np.max(np.abs(data.v[:, f] - level.interp_points())):.3e}")
        state.ccv = None
        self._transfer(state, level)

    def run(self):
        for f in range(self.grid.fdi):
            self.fit_channel(f)
        return self.errors
