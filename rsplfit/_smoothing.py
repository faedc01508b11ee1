"""
Optimal smoothing factor lookup.

The base curvature weight of a fit is chosen from a measured table indexed by
dimensionality, the equivalent number of samples per axis (``ndp ** (1/di)``)
and the expected average deviation of the data values. The table holds
``log10`` of the factor; lookups are log-linear in both indices and bilinear
in the table.
"""
import numpy as np

# Equivalent samples per axis breakpoints, per dimensionality.
_NC_BREAKS = (
    (5.0, 10.0, 20.0, 50.0, 100.0, 200.0),
    (5.0, 10.0, 20.0, 50.0, 100.0, 200.0),
    (2.92, 3.68, 4.22, 5.0, 6.3, 7.94, 10.0, 12.6, 20.0, 50.0),
    (2.66, 3.16, 3.76, 4.61, 5.0, 5.48, 6.51, 7.75, 10.0, 20.0, 31.62),
)

# Average deviation breakpoints, per dimensionality.
_AD_BREAKS = (
    (0.0001, 0.0025, 0.005, 0.0125, 0.025, 0.05),
    (0.0001, 0.0025, 0.005, 0.0125, 0.025, 0.05),
    (0.0001, 0.0025, 0.005, 0.0125, 0.025, 0.05),
    (0.0001, 0.0025, 0.005, 0.0075, 0.0125, 0.025, 0.05),
)

# log10 smoothing factor, [dimensionality][nc break][ad break].
_LOG_SMOOTH = (
    (
        (-5.0, -5.3, -5.2, -4.4, -3.5, -0.8),
        (-6.4, -5.6, -5.1, -4.5, -4.0, -3.6),
        (-6.4, -5.9, -5.5, -4.6, -3.9, -3.3),
        (-6.8, -6.0, -5.6, -4.9, -4.4, -3.7),
        (-6.9, -6.2, -5.6, -4.9, -4.3, -3.5),
        (-6.9, -5.9, -5.5, -5.1, -4.7, -4.4),
    ),
    (
        (-5.0, -5.0, -5.0, -4.8, -4.2, -3.2),
        (-5.1, -4.9, -4.6, -3.9, -3.3, -2.6),
        (-5.9, -5.0, -4.6, -4.1, -3.6, -3.1),
        (-6.7, -5.1, -4.7, -4.2, -3.7, -3.1),
        (-6.8, -5.0, -4.6, -4.0, -3.6, -3.0),
        (-6.8, -4.9, -4.4, -3.9, -3.5, -3.1),
    ),
    (
        (-5.2, -5.0, -5.0, -4.9, -3.6, -2.2),
        (-5.5, -5.6, -5.6, -5.2, -4.4, -2.4),
        (-4.7, -4.8, -5.7, -5.9, -5.9, -2.3),
        (-4.1, -4.1, -5.0, -3.8, -3.4, -2.6),
        (-4.8, -4.6, -4.6, -4.1, -3.8, -3.4),
        (-4.7, -4.7, -4.7, -3.8, -3.3, -2.9),
        (-4.7, -4.8, -4.6, -3.9, -3.4, -3.0),
        (-5.2, -4.7, -4.4, -4.0, -3.4, -2.9),
        (-5.5, -5.0, -4.3, -3.6, -3.1, -2.8),
        (-5.1, -4.7, -4.3, -3.8, -3.3, -2.8),
    ),
    (
        (-5.5, -5.6, -4.9, -4.8, -4.5, -2.8, -3.1),
        (-4.3, -4.2, -4.0, -3.6, -3.2, -2.8, -2.6),
        (-4.3, -4.2, -4.0, -3.8, -3.2, -2.8, -1.5),
        (-4.5, -3.9, -3.5, -3.2, -3.0, -2.4, -1.9),
        (-4.5, -4.3, -3.7, -3.3, -3.0, -2.3, -1.9),
        (-4.7, -4.5, -4.3, -3.9, -3.2, -2.0, -0.9),
        (-4.3, -4.3, -4.1, -3.9, -3.1, -2.3, -1.6),
        (-4.5, -4.4, -3.8, -3.5, -3.1, -2.4, -1.6),
        (-4.9, -4.3, -3.6, -3.2, -2.8, -2.2, -1.6),
        (-4.8, -3.5, -3.0, -2.8, -2.5, -2.2, -1.9),
        (-5.1, -3.7, -3.0, -2.7, -2.3, -1.9, -1.5),
    ),
)


def _log_bracket(breaks, val):
    """Lower break index and log-linear weight of ``val``, clamped."""
    i = 0
    while i < len(breaks) - 2 and val > breaks[i + 1]:
        i += 1
    lo, hi = np.log(breaks[i]), np.log(breaks[i + 1])
    t = (np.log(val) - lo) / (hi - lo)
    return i, float(np.clip(t, 0.0, 1.0))


def opt_smooth(di, ndp, ad):
    """
    Optimal base smoothing factor.

    Parameters
    ----------
    di : int
        Input dimensionality. Values outside 1..4 use the nearest table.
    ndp : int
        Number of data points.
    ad : float
        Expected average deviation of the data values, as a fraction of the
        value range (e.g. 0.005 for 0.5%).

    Returns
    -------
    float
        Factor that scales the resolution derived curvature weight.

    Notes
    -----
    The equivalent samples per axis is computed with the true dimensionality
    before it is clamped for the table lookup.
    """
    nc = float(max(ndp, 1)) ** (1.0 / max(di, 1))
    di = int(min(max(di, 1), 4))
    ad = max(float(ad), 1e-12)

    ncix, ncw = _log_bracket(_NC_BREAKS[di - 1], max(nc, 1e-12))
    adix, adw = _log_bracket(_AD_BREAKS[di - 1], ad)
    tab = _LOG_SMOOTH[di - 1]

    lsm = ((1.0 - ncw) * (1.0 - adw) * tab[ncix][adix]
           + (1.0 - ncw) * adw * tab[ncix][adix + 1]
           + ncw * (1.0 - adw) * tab[ncix + 1][adix]
           + ncw * adw * tab[ncix + 1][adix + 1])
    return 10.0 ** lsm
