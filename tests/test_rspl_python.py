import importlib

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from rsplfit import RegularSplinePython, rspl_python

rspl_module = importlib.import_module("rsplfit._rspl_python")


def scattered_2d(n=200, seed=7):
    rng = np.random.RandomState(seed)
    x = rng.rand(n, 2)
    y = np.column_stack([
        0.5 + 0.3 * np.sin(3.0 * x[:, 0]) * np.cos(2.0 * x[:, 1]),
        x[:, 0] * x[:, 1],
    ])
    return x, y


def test_five_points_1d():
    x = np.array([0.0, 0.25, 0.5, 0.75, 1.0])
    y = np.array([0.0, 1.0, 0.0, 1.0, 0.0])
    spl = rspl_python(x, y, res=9)
    assert spl.values.shape == (9, 1)
    assert spl.residuals[0] <= 1e-6
    v = spl.values[:, 0]
    assert abs(v[0]) < 0.25 and abs(v[-1]) < 0.25
    assert np.all((v >= -0.5) & (v <= 1.5))
    assert_allclose(spl(x[:, None])[:, 0], y, atol=0.1)


def test_evaluation_shapes():
    x, y = scattered_2d()
    spl = rspl_python(x, y, res=(9, 9))
    assert spl.values.shape == (9, 9, 2)
    assert spl(x).shape == (200, 2)
    assert spl(x[0]).shape == (2,)
    assert np.all(np.isfinite(spl.values))


def test_bbox_is_expanded_to_data():
    x = np.array([[-0.5], [0.2], [1.4]])
    y = np.array([0.1, 0.2, 0.3])
    spl = rspl_python(x, y, res=5, bbox=([0.0], [1.0]))
    assert_allclose(spl.grid.lo, [-0.5])
    assert_allclose(spl.grid.hi, [1.4])


def test_ipos_gap_fails_before_fitting(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("fitter should not be built")

    monkeypatch.setattr(rspl_module, "MultigridFitter", refuse)
    ipos = [np.array([0.0, 0.5, 0.5 + 1e-13, 1.0])]
    with pytest.raises(ValueError, match="closer"):
        rspl_python([[0.1], [0.9]], [0.0, 1.0], res=4, ipos=ipos)


@pytest.mark.parametrize("ipos", [
    [np.array([0.0, 0.5, 0.4, 1.0])],
    [np.array([0.0, 0.5, 1.0])],
    [None, None],
])
def test_bad_ipos_raises(ipos):
    with pytest.raises(ValueError):
        rspl_python([[0.1], [0.9]], [0.0, 1.0], res=4, ipos=ipos)


def test_decreasing_ipos_is_accepted():
    ipos = [np.array([1.0, 0.6, 0.3, 0.0])]
    spl = rspl_python([[0.1], [0.9]], [0.0, 1.0], res=4, ipos=ipos)
    assert np.all(np.isfinite(spl.values))


def test_invalid_inputs_raise():
    x = np.linspace(0.0, 1.0, 5)
    y = x ** 2
    with pytest.raises(ValueError, match="res"):
        rspl_python(x, y, res=1)
    with pytest.raises(ValueError, match="same length"):
        rspl_python(x, y[:4], res=5)
    with pytest.raises(ValueError, match="positive"):
        rspl_python(x, y, w=[1.0, 1.0, -1.0, 1.0, 1.0], res=5)
    with pytest.raises(ValueError, match="finite"):
        rspl_python(x, np.r_[y[:4], np.nan], res=5)
    with pytest.raises(ValueError, match="one entry"):
        rspl_python(np.column_stack([x, x]), y, res=(5, 5, 5))
    with pytest.raises(ValueError):
        RegularSplinePython(5, fdi=2).fit(x, y)


def test_per_point_and_per_channel_weights_agree():
    x, y = scattered_2d(n=120)
    w = np.linspace(0.5, 2.0, 120)
    a = rspl_python(x, y, w, res=(7, 7))
    b = rspl_python(x, y, np.column_stack([w, w]), res=(7, 7))
    assert_array_equal(a.values, b.values)


def test_more_smoothing_means_less_curvature():
    rng = np.random.RandomState(11)
    x = rng.rand(60)
    y = 0.5 + 0.3 * np.sin(6.0 * x) + 0.05 * rng.randn(60)
    energy = []
    for smooth in [0.01, 0.1, 1.0, 10.0]:
        spl = rspl_python(x, y, res=17, smooth=smooth, tol=1e-10,
                          edge_weights=(1.0, 1.0))
        energy.append(np.sum(np.diff(spl.values[:, 0], 2) ** 2))
    for lo, hi in zip(energy[:-1], energy[1:]):
        assert hi <= lo * (1.0 + 1e-3)
    assert energy[-1] < energy[0]


def test_zero_data_points_returns_false(capsys):
    spl = RegularSplinePython((5,))
    flag = spl.fit(np.zeros((0, 1)), np.zeros((0, 1)), verbose=True)
    assert flag is False
    assert np.all(np.isnan(spl.residuals))
    assert "no data points" in capsys.readouterr().out


def test_custom_is_mono_flag():
    x = np.linspace(0.0, 1.0, 10)
    spl = rspl_python(x, x, res=5, is_mono=lambda grid: True)
    assert spl.non_monotonic is True
    spl = rspl_python(x, x, res=5)
    assert spl.non_monotonic is False


def test_verbose_prints_progress(capsys):
    x, y = scattered_2d(n=50)
    rspl_python(x, y, res=(9, 9), verbose=True)
    out = capsys.readouterr().out
    assert "[rspl]" in out
    assert "[multigrid" in out


def test_line_sweeps_reach_same_solution():
    x, y = scattered_2d()
    plain = rspl_python(x, y, res=(9, 9), tol=1e-9)
    lines = rspl_python(x, y, res=(9, 9), tol=1e-9, line_sweeps=3)
    assert_allclose(lines.values, plain.values, atol=1e-4)


def test_uniform_ipos_matches_plain_grid():
    x, y = scattered_2d()
    plain = rspl_python(x, y, res=(9, 9), tol=1e-9)
    tab = np.linspace(0.0, 1.0, 9)
    spaced = rspl_python(x, y, res=(9, 9), tol=1e-9, ipos=[tab, tab])
    assert_allclose(spaced.values, plain.values, atol=1e-6)


def test_symmetric_domain_fit():
    x, y = scattered_2d()
    spl = rspl_python(x, y, res=(5, 17), symdom=True)
    assert spl.values.shape == (5, 17, 2)
    assert np.all(np.isfinite(spl.values))
    assert np.all(spl.residuals <= 1e-6)


@pytest.mark.parametrize("bbox", [([0.5], [0.5]), ([0.9], [0.1])])
def test_degenerate_bbox_raises(bbox):
    with pytest.raises(ValueError, match="lo < hi"):
        rspl_python([[0.5], [0.5]], [0.3, 0.4], res=5, bbox=bbox)


def test_flat_points_on_1d_spline():
    x = np.linspace(0.0, 1.0, 10)
    spl = rspl_python(x, 2.0 * x, res=5)
    pts = np.array([0.1, 0.2, 0.7])
    out = spl(pts)
    assert out.shape == (3, 1)
    assert_allclose(out, spl(pts[:, None]))


def test_scalar_res_is_broadcast_per_axis():
    x, y = scattered_2d(n=50)
    spl = rspl_python(x, y, res=5)
    assert spl.res == (5, 5)
    assert spl.grid.res == (5, 5)
