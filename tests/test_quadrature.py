import numpy as np
import pytest

from weakfem.integration.quadrature import edge, gauss_legendre, volume


@pytest.mark.parametrize("degree", [0, 1, 2, 3, 4, 5, 6, 7])
def test_gauss_legendre_exactness(degree):
    pts, wts = gauss_legendre(degree)
    exact = 0.0 if degree % 2 else 2.0 / (degree + 1)
    assert np.isclose(np.sum(wts * pts**degree), exact)


def test_quad_rule():
    pts, wts = volume("quad", 4)
    assert np.isclose(wts.sum(), 4.0)
    assert np.isclose(np.sum(wts * pts[:, 0]**4), 0.8)
    assert np.isclose(np.sum(wts * pts[:, 0]**2 * pts[:, 1]**2), 4.0 / 9.0)


def test_tri_rule():
    pts, wts = volume("tri", 4)
    assert np.isclose(wts.sum(), 0.5)
    # int x^a y^b over the unit triangle = a! b! / (a + b + 2)!
    assert np.isclose(np.sum(wts * pts[:, 0]**2 * pts[:, 1]**2), 4.0 / 720.0)
    assert np.isclose(np.sum(wts * pts[:, 1]**4), 24.0 / 720.0)


def test_edge_rule_lies_on_the_edge():
    pts, w, half = edge("quad", 1, 3)
    assert np.allclose(pts[:, 0], 1.0)
    assert np.isclose(w.sum(), 2.0)
    assert np.allclose(half, [0.0, 1.0])
    pts, w, half = edge("tri", 1, 2)
    assert np.allclose(pts.sum(axis=1), 1.0)
