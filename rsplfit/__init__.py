"""
Multigrid regularized spline fitting of scattered data.
"""
from ._grid import RegularGrid, ScatteredData, grid_is_non_monotonic
from ._multigrid import MultigridFitter, resolution_ladder
from ._smoothing import opt_smooth
from ._stencil import SparseStencil, stencil_for
from ._rspl_python import RegularSplinePython, rspl_python

__all__ = [
    "RegularGrid",
    "RegularSplinePython",
    "MultigridFitter",
    "ScatteredData",
    "SparseStencil",
    "grid_is_non_monotonic",
    "opt_smooth",
    "resolution_ladder",
    "rspl_python",
    "stencil_for",
]
