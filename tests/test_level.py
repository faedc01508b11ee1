import numpy as np
import pytest
from numpy.testing import assert_allclose

from rsplfit import RegularGrid, ScatteredData
from rsplfit._ccv import compute_ccv
from rsplfit._level import MIN_NORMB, MultigridLevel
from rsplfit._stencil import packed_to_csr


def empty_data(di, fdi=1):
    return ScatteredData(np.zeros((0, di)), np.zeros((0, fdi)))


def second_difference(level, e):
    """Dense (R-2, R) second difference matrix along axis e."""
    r = level.res[e]
    w0, w1 = level.axis_weights(e)
    L = np.zeros((r - 2, r))
    for c in range(1, r - 1):
        L[c - 1, c - 1:c + 2] = [w0[c], -(w0[c] + w1[c]), w1[c]]
    return L


def dense(level):
    return packed_to_csr(level.A, level.stencil.offsets).toarray()


def test_curvature_matches_dense_1d():
    grid = RegularGrid((6,))
    level = MultigridLevel(grid, empty_data(1), (6,), 0, smooth=-1.0,
                           avgdev=0.005)
    assert_allclose(level.cw, [5.0 ** 4 / 4.0])
    level.setup_solve(empty_data(1), vwidth=1.0, final=False)
    L = second_difference(level, 0)
    assert_allclose(dense(level), 2.0 * level.cw[0] * L.T @ L, rtol=1e-12)
    assert np.all(level.b == 0.0)


def test_curvature_edge_stiffening_is_symmetric():
    grid = RegularGrid((8,))
    level = MultigridLevel(grid, empty_data(1), (8,), 0, smooth=-1.0,
                           avgdev=0.005)
    level.setup_solve(empty_data(1), vwidth=1.0, final=True,
                      edge_weights=(2.0, 1.15))
    L = second_difference(level, 0)
    # centres 1..6; outermost centres 1, 6 and next ones 2, 5
    K = np.diag([2.0, 1.15, 1.0, 1.0, 1.15, 2.0])
    M = dense(level)
    assert_allclose(M, M.T)
    assert_allclose(M, 2.0 * level.cw[0] * L.T @ K @ L, rtol=1e-12)


def test_curvature_non_uniform_axis():
    ipos = np.array([0.0, 0.1, 0.3, 0.35, 0.6, 0.8, 1.0])
    grid = RegularGrid((7,), ipos=[ipos])
    level = MultigridLevel(grid, empty_data(1), (7,), 0, smooth=-1.0,
                           avgdev=0.005)
    w0, w1 = level.axis_weights(0)
    d0, d1 = ipos[2] - ipos[1], ipos[3] - ipos[2]
    assert_allclose(w0[2], np.sqrt(d0 * d1) / d0)
    assert_allclose(w1[2], np.sqrt(d0 * d1) / d1)
    level.setup_solve(empty_data(1), vwidth=1.0, final=False)
    L = second_difference(level, 0)
    assert_allclose(dense(level), 2.0 * level.cw[0] * L.T @ L, rtol=1e-12)


def test_curvature_matches_kronecker_2d():
    res = (5, 6)
    grid = RegularGrid(res)
    level = MultigridLevel(grid, empty_data(2), res, 0, smooth=-0.5,
                           avgdev=0.005)
    level.setup_solve(empty_data(2), vwidth=2.0, final=False)
    Lx, Ly = second_difference(level, 0), second_difference(level, 1)
    expect = (2.0 * level.cw[0] * 2.0 * np.kron(np.eye(6), Lx.T @ Lx)
              + 2.0 * level.cw[1] * 2.0 * np.kron(Ly.T @ Ly, np.eye(5)))
    assert_allclose(dense(level), expect, rtol=1e-12, atol=1e-12)


def test_symmetric_domain_scales_each_axis():
    res = (5, 9)
    grid = RegularGrid(res)
    level = MultigridLevel(grid, empty_data(2), res, 0, smooth=-1.0,
                           avgdev=0.005, symdom=True)
    assert_allclose(level.cw[1] / level.cw[0], 16.0)
    level = MultigridLevel(grid, empty_data(2), res, 0, smooth=-1.0,
                           avgdev=0.005, symdom=False)
    assert_allclose(level.cw[1], level.cw[0])


def test_data_term_single_point():
    grid = RegularGrid((5,))
    data = ScatteredData([[0.3]], [[0.7]], [[1.5]])
    level = MultigridLevel(grid, data, (5,), 0, smooth=-1.0, avgdev=0.005)
    level.setup_solve(data, vwidth=1.0, final=False)
    bare = MultigridLevel(grid, empty_data(1), (5,), 0, smooth=-1.0,
                          avgdev=0.005)
    bare.setup_solve(empty_data(1), vwidth=1.0, final=False)

    w = np.zeros(5)
    w[1:3] = [0.8, 0.2]
    assert_allclose(dense(level) - dense(bare),
                    2.0 * 1.5 * np.outer(w, w), atol=1e-9)
    assert_allclose(level.b, 2.0 * 1.5 * 0.7 * w, atol=1e-12)
    assert_allclose(level.normb, np.linalg.norm(level.b))
    assert_allclose(level.interp_points(np.arange(5.0)), [1.2])


def test_weak_default_term():
    grid = RegularGrid((5, 5))
    level = MultigridLevel(grid, empty_data(2), (5, 5), 0, smooth=-1.0,
                           avgdev=0.005, weak=2.0)
    assert_allclose(level.wdfw, 2.0 * 0.1 / (25 * 2))
    level.setup_solve(empty_data(2), vwidth=1.0, final=False,
                      weak_values=np.full(25, 0.7))
    bare = MultigridLevel(grid, empty_data(2), (5, 5), 0, smooth=-1.0,
                          avgdev=0.005)
    bare.setup_solve(empty_data(2), vwidth=1.0, final=False)
    d = 2.0 * level.wdfw
    assert_allclose(dense(level) - dense(bare), d * np.eye(25), atol=1e-9)
    assert_allclose(level.b, d * 0.7)


def test_ccv_injection_reproduces_curvature_of_field():
    # A field whose own curvature is injected is a solution of the
    # curvature only system
    res = (6, 7)
    grid = RegularGrid(res)
    level = MultigridLevel(grid, empty_data(2), res, 0, smooth=-1.0,
                           avgdev=0.005)
    np.random.seed(5)
    level.x = np.random.rand(level.gno)
    level.ccv = compute_ccv(level)
    level.setup_solve(empty_data(2), vwidth=1.0, final=True)
    assert_allclose(level.b, dense(level) @ level.x, rtol=1e-10, atol=1e-8)


def test_point_outside_grid_raises():
    grid = RegularGrid((5,))
    data = ScatteredData([[1.5]], [[0.0]])
    with pytest.raises(ValueError, match="outside"):
        MultigridLevel(grid, data, (5,), 0, smooth=1.0, avgdev=0.005)


def test_drop_system_and_seed():
    grid = RegularGrid((4,))
    data = ScatteredData([[0.5]], [[0.25]])
    level = MultigridLevel(grid, data, (4,), 0, smooth=1.0, avgdev=0.005)
    level.setup_solve(data, vwidth=1.0)
    level.seed_uniform(0.25)
    level.drop_system()
    assert level.A is None and level.b is None
    finer = MultigridLevel(grid, data, (7,), 0, smooth=1.0, avgdev=0.005)
    finer.seed_from(level)
    assert_allclose(finer.x, 0.25)


def test_ccv_terms_do_not_count_in_normb():
    res = (9,)
    grid = RegularGrid(res)
    np.random.seed(2)
    field = np.random.rand(9)

    bare = MultigridLevel(grid, empty_data(1), res, 0, smooth=-1.0,
                          avgdev=0.005)
    bare.x = field
    bare.ccv = compute_ccv(bare)
    bare.setup_solve(empty_data(1), vwidth=1.0)
    assert np.linalg.norm(bare.b) > 1.0
    assert bare.normb == MIN_NORMB

    data = ScatteredData([[0.3], [0.55]], [[0.7], [0.2]])
    level = MultigridLevel(grid, data, res, 0, smooth=-1.0, avgdev=0.005)
    # small enough that the data terms dominate b
    level.ccv = 1e-6 * bare.ccv
    level.setup_solve(data, vwidth=1.0)
    expect = np.sum(level.b ** 2) - np.sum((1e-6 * bare.b) ** 2)
    assert_allclose(level.normb ** 2, expect, rtol=1e-9)
