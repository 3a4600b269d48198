from functools import lru_cache
import sympy as sp
import numpy as np


def lattice(n: int) -> np.ndarray:
    """Equispaced Pn nodes on (0,0)-(1,0)-(0,1), rows of constant eta."""
    if n == 0:
        return np.array([[1.0 / 3.0, 1.0 / 3.0]])
    return np.array([[i / n, j / n] for j in range(n + 1) for i in range(n + 1 - j)], dtype=float)


@lru_cache(maxsize=None)
def tri_pn(n: int):
    """
    Symbolic Lagrange basis of degree n on the reference triangle.

    Returns
    -------
    (basis, grads) : tuple of lists of sympy expressions in (xi, eta).
        ``basis[k]`` is one at lattice node k and zero at the others;
        ``grads[k]`` is the pair (d/dxi, d/deta).
    """
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    xi, eta = sp.symbols("xi eta")
    if n == 0:
        return [sp.S(1)], [(sp.S(0), sp.S(0))]

    nodes = [(sp.Rational(i, n), sp.Rational(j, n)) for j in range(n + 1) for i in range(n + 1 - j)]
    monomials = [xi**p * eta**(d - p) for d in range(n + 1) for p in range(d + 1)]

    V = sp.Matrix([[m.subs({xi: a, eta: b}) for m in monomials] for a, b in nodes])
    # column k of V^{-1} holds the monomial coefficients of basis function k
    coeffs = V.inv()
    mono = sp.Matrix(monomials)
    basis = [sp.expand((coeffs[:, k].T * mono)[0, 0]) for k in range(len(nodes))]
    grads = [(sp.diff(phi, xi), sp.diff(phi, eta)) for phi in basis]
    return basis, grads
