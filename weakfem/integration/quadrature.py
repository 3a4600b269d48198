"""weakfem.integration.quadrature
Gauss rules for lines, triangles and quads, selected by polynomial degree.
"""
from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss

from weakfem.fem import transform


def _n_points(degree: int) -> int:
    """Smallest Gauss-Legendre point count exact for the given degree."""
    if degree < 0:
        raise ValueError(degree)
    return max(1, (degree + 2) // 2)


# -------------------------------------------------------------------------
# 1-D Gauss-Legendre
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def gauss_legendre(degree: int):
    """Points and weights on [-1, 1], exact up to *degree*."""
    return leggauss(_n_points(degree))


# -------------------------------------------------------------------------
# Tensor-product and collapsed rules
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def quad_rule(degree: int):
    xi, wi = gauss_legendre(degree)
    pts = np.array([[x, y] for y in xi for x in xi])
    wts = np.array([wx * wy for wy in wi for wx in wi])
    return pts, wts


@lru_cache(maxsize=None)
def tri_rule(degree: int):
    """Collapsed (Duffy) rule on the reference triangle.

    The collapse adds one polynomial degree in the radial direction.
    """
    xi, wi = gauss_legendre(degree + 1)
    u = 0.5 * (xi + 1.0)
    w_u = 0.5 * wi
    pts, wts = [], []
    for i, ui in enumerate(u):
        for j, vj in enumerate(u):
            pts.append([ui, vj * (1.0 - ui)])
            wts.append(w_u[i] * w_u[j] * (1.0 - ui))
    return np.array(pts), np.array(wts)


# -------------------------------------------------------------------------
# Public API
# -------------------------------------------------------------------------
def volume(element_type: str, degree: int = 2):
    if element_type == "tri":
        return tri_rule(degree)
    if element_type == "quad":
        return quad_rule(degree)
    raise KeyError(element_type)


def edge(element_type: str, local_edge: int, degree: int = 2):
    """
    Rule on a local edge, in the element's reference coordinates.

    Returns points (nq, 2), 1-D weights (nq,) on [-1, 1] and the half tangent
    used by :func:`weakfem.fem.transform.facet_measure`.
    """
    s, w = gauss_legendre(degree)
    pts, half = transform.edge_points(element_type, local_edge, s)
    return pts, w, half
