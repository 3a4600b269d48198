# weakfem.fem.reference
"""
Order-agnostic reference-element factory.

Reference domains: the triangle (0,0)-(1,0)-(0,1) and the square [-1,1]^2.
Local edges run counter-clockwise between consecutive corners.
"""
from functools import lru_cache
from importlib import import_module

import numpy as np
import sympy as sp

REFERENCE_CORNERS = {
    "tri": np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
    "quad": np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]]),
}

EDGE_TABLE = {
    "tri": ((0, 1), (1, 2), (2, 0)),
    "quad": ((0, 1), (1, 2), (2, 3), (3, 0)),
}


def _vectorise(exprs, symbols):
    """Lambdify each expression separately so constants broadcast to the point shape."""
    fns = [sp.lambdify(symbols, e, "numpy") for e in exprs]

    def evaluate(xi, eta):
        return np.stack(
            [np.broadcast_to(np.asarray(f(xi, eta), dtype=float), xi.shape) for f in fns],
            axis=-1,
        )
    return evaluate


class Ref:
    """Lagrange-type reference element: lattice nodes, values and gradients."""

    def __init__(self, element_type: str, order: int, nodes: np.ndarray, basis, grads):
        xi, eta = sp.symbols("xi eta")
        self.element_type = element_type
        self.order = order
        self.nodes = nodes
        self.n_basis = len(basis)
        self._shape = _vectorise(basis, (xi, eta))
        self._dxi = _vectorise([g[0] for g in grads], (xi, eta))
        self._deta = _vectorise([g[1] for g in grads], (xi, eta))

    def shape(self, points: np.ndarray) -> np.ndarray:
        """(nq, n_basis) basis values at reference points (nq, 2)."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        return self._shape(pts[:, 0], pts[:, 1])

    def grad(self, points: np.ndarray) -> np.ndarray:
        """(nq, n_basis, 2) reference gradients."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        return np.stack((self._dxi(pts[:, 0], pts[:, 1]), self._deta(pts[:, 0], pts[:, 1])), axis=-1)

    def nodes_on_edge(self, local_edge: int, tol: float = 1e-12) -> np.ndarray:
        """Indices of lattice nodes lying on a local edge, ordered along it."""
        a, b = (REFERENCE_CORNERS[self.element_type][c] for c in EDGE_TABLE[self.element_type][local_edge])
        t = b - a
        rel = self.nodes - a
        cross = np.abs(rel[:, 0] * t[1] - rel[:, 1] * t[0])
        s = rel @ t / (t @ t)
        on = np.flatnonzero((cross < tol) & (s > -tol) & (s < 1.0 + tol))
        return on[np.argsort(s[on])]

    def __repr__(self):
        return f"Ref({self.element_type}, order={self.order}, n_basis={self.n_basis})"


@lru_cache(maxsize=None)
def get_reference(element_type: str, poly_order: int = 1) -> Ref:
    if element_type == "quad":
        mod = import_module("weakfem.fem.reference.quad_qn")
        basis, grads = mod.quad_qn(poly_order)
    elif element_type == "tri":
        mod = import_module("weakfem.fem.reference.tri_pn")
        basis, grads = mod.tri_pn(poly_order)
    else:
        raise KeyError(element_type)
    return Ref(element_type, poly_order, mod.lattice(poly_order), basis, grads)


def contains(element_type: str, ref_point, tol: float = 1e-10) -> bool:
    xi, eta = float(ref_point[0]), float(ref_point[1])
    if element_type == "tri":
        return xi >= -tol and eta >= -tol and xi + eta <= 1.0 + tol
    if element_type == "quad":
        return abs(xi) <= 1.0 + tol and abs(eta) <= 1.0 + tol
    raise KeyError(element_type)
